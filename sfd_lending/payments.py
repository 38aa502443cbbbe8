"""
Payment Recorder Module

Appends repayments against active loans. A payment row is written once and
never updated. Recording a payment advances the loan's next due date and,
when cumulative payments reach the amount due, completes the loan in the
same unit of work.

A payment made more than ``late_penalty_after_days`` after the due date is
charged a late penalty of ``late_penalty_rate`` percent of the monthly
payment. The penalty is added to the loan balance and written as a
``LoanPenalty`` row in the payment's unit of work.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .amortization import add_months
from .currency import Currency, round_amount, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import ActivityLog, ActivityType
from .loans import Loan, LoanRecordStore, LoanStatus
from .notifications import NotificationType
from .exceptions import InvalidAmountError, LoanNotActiveError, ValidationError


logger = logging.getLogger("sfd_lending.payments")

HUNDRED = Decimal('100')


class PaymentStatus(Enum):
    """Payment states; rows are only ever written as completed"""
    COMPLETED = "completed"


class PenaltyType(Enum):
    LATE_PAYMENT = "late_payment"


@dataclass
class LoanPayment(StorageRecord):
    """Immutable repayment record"""
    loan_id: str
    amount: Decimal
    payment_method: str
    payment_date: date
    status: PaymentStatus = PaymentStatus.COMPLETED
    reference: Optional[str] = None
    recorded_by: Optional[str] = None
    penalty_amount: Decimal = Decimal('0')  # Penalty charged with this payment

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['penalty_amount'] = Decimal(data.get('penalty_amount', '0'))
        data['payment_date'] = date.fromisoformat(data['payment_date'])
        data['status'] = PaymentStatus(data['status'])
        return super().from_dict(data)


@dataclass
class LoanPenalty(StorageRecord):
    """Penalty charged on a loan"""
    loan_id: str
    amount: Decimal
    penalty_type: PenaltyType
    days_overdue: int
    due_date: date
    payment_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPenalty':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['penalty_type'] = PenaltyType(data['penalty_type'])
        data['due_date'] = date.fromisoformat(data['due_date'])
        return super().from_dict(data)


class PaymentRecorder:
    """Records repayments, charges late penalties and drives loan completion"""

    def __init__(
        self,
        storage: StorageInterface,
        activity_log: ActivityLog,
        loans: LoanRecordStore,
        currency: Currency = Currency.XOF,
        payment_cadence_months: int = 1,
        late_penalty_rate: Decimal = Decimal('5'),
        late_penalty_after_days: int = 7
    ):
        self.storage = storage
        self.activity_log = activity_log
        self.loans = loans
        self.currency = currency
        self.payment_cadence_months = payment_cadence_months
        self.late_penalty_rate = late_penalty_rate
        self.late_penalty_after_days = late_penalty_after_days
        self.table_name = "loan_payments"
        self.penalties_table = "loan_penalties"

    def _parse_amount(self, amount: Any) -> Decimal:
        try:
            amount = to_decimal(amount)
        except ValueError as e:
            raise InvalidAmountError(f"Invalid payment amount: {e}", {"amount": str(amount)})
        if amount <= 0:
            raise InvalidAmountError("Payment amount must be positive", {"amount": str(amount)})
        if round_amount(amount, self.currency) != amount:
            raise InvalidAmountError(
                f"Payment amount has more precision than the {self.currency.code} minor unit",
                {"amount": str(amount)}
            )
        return amount

    def late_penalty_for(self, loan: Loan, payment_date: date) -> Tuple[Decimal, int]:
        """
        Penalty owed by a payment made on ``payment_date``.

        Returns:
            (penalty amount, days overdue); the amount is zero within the
            tolerance window
        """
        if loan.next_payment_date is None or self.late_penalty_rate <= 0:
            return Decimal('0'), 0
        days_overdue = (payment_date - loan.next_payment_date).days
        if days_overdue <= self.late_penalty_after_days:
            return Decimal('0'), max(days_overdue, 0)
        penalty = round_amount(loan.monthly_payment * self.late_penalty_rate / HUNDRED, self.currency)
        return penalty, days_overdue

    def _charge_penalty(self, loan: Loan, payment_id: str, penalty: Decimal,
                        days_overdue: int, recorded_by: Optional[str]) -> LoanPenalty:
        """Persist a late penalty and add it to the loan balance (caller's unit of work)"""
        now = datetime.now(timezone.utc)
        record = LoanPenalty(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=penalty,
            penalty_type=PenaltyType.LATE_PAYMENT,
            days_overdue=days_overdue,
            due_date=loan.next_payment_date,
            payment_id=payment_id
        )
        self.storage.save(self.penalties_table, record.id, record.to_dict())
        loan.penalty_amount += penalty

        self.activity_log.record(
            ActivityType.PENALTY_APPLIED, "loan", loan.id,
            f"Late payment penalty of {penalty} charged, {days_overdue} days overdue",
            performed_by=recorded_by,
            details={"penalty_id": record.id, "amount": penalty,
                     "days_overdue": days_overdue, "due_date": record.due_date,
                     "payment_id": payment_id}
        )
        return record

    def record_payment(
        self,
        loan_id: str,
        amount: Any,
        method: str,
        reference: Optional[str] = None,
        recorded_by: Optional[str] = None,
        payment_date: Optional[date] = None
    ) -> LoanPayment:
        """
        Record a repayment against an active loan.

        A payment whose reference was already recorded for the same loan is
        returned as-is instead of being applied twice. A late payment is
        charged its penalty first; the amount may then settle at most the
        outstanding balance including that penalty.

        Raises:
            InvalidAmountError: If amount <= 0 or exceeds the outstanding balance
            LoanNotActiveError: If the loan is not active
            NotFoundError: If the loan does not exist
        """
        amount = self._parse_amount(amount)
        if not method or not method.strip():
            raise ValidationError("A payment method is required")
        payment_date = payment_date or date.today()

        def operation() -> Tuple[LoanPayment, Loan, bool]:
            loan = self.loans.require(loan_id)

            if reference:
                existing = self.storage.find(self.table_name,
                                             {"loan_id": loan_id, "reference": reference})
                if existing:
                    return LoanPayment.from_dict(existing[0]), loan, False

            if loan.status != LoanStatus.ACTIVE:
                raise LoanNotActiveError(
                    f"Loan {loan_id} is {loan.status.value}, payments require an active loan",
                    {"loan_id": loan_id, "status": loan.status.value}
                )

            payment_id = str(uuid.uuid4())
            penalty, days_overdue = self.late_penalty_for(loan, payment_date)
            balance = loan.outstanding_amount + penalty
            if amount > balance:
                raise InvalidAmountError(
                    f"Payment amount {amount} exceeds remaining balance of {balance}",
                    {"amount": str(amount), "outstanding": str(balance)}
                )
            if penalty > 0:
                self._charge_penalty(loan, payment_id, penalty, days_overdue, recorded_by)

            now = datetime.now(timezone.utc)
            payment = LoanPayment(
                id=payment_id,
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount=amount,
                payment_method=method.strip(),
                payment_date=payment_date,
                reference=reference,
                recorded_by=recorded_by,
                penalty_amount=penalty
            )
            self.storage.save(self.table_name, payment.id, payment.to_dict())

            loan.amount_paid += amount
            loan.last_payment_date = payment_date
            loan.next_payment_date = add_months(payment_date, self.payment_cadence_months)
            loan.updated_at = now
            self.loans.save(loan)

            self.activity_log.record(
                ActivityType.PAYMENT_RECORDED, "loan", loan_id,
                f"Payment of {amount} recorded via {payment.payment_method}",
                performed_by=recorded_by,
                details={"payment_id": payment.id, "amount": amount,
                         "reference": reference, "amount_paid": loan.amount_paid,
                         "penalty_amount": penalty,
                         "next_payment_date": loan.next_payment_date}
            )

            if loan.is_fully_paid:
                self.loans.mark_completed(loan, recorded_by)

            return payment, loan, True

        payment, loan, applied = self.storage.run_atomic(operation)

        if not applied:
            logger.info(f"Payment {reference} for loan {loan_id} already recorded")
            return payment

        if payment.penalty_amount > 0:
            logger.warning(f"Late penalty of {payment.penalty_amount} charged on loan {loan_id}")
        logger.info(f"Payment of {amount} recorded for loan {loan_id}")
        self.loans.notify(loan, NotificationType.PAYMENT_RECEIVED,
                          subject_id=payment.id, status=payment.status.value,
                          amount=amount, outstanding=loan.outstanding_amount)
        if loan.status == LoanStatus.COMPLETED:
            logger.info(f"Loan {loan_id} completed")
            self.loans.notify(loan, NotificationType.LOAN_COMPLETED)
        return payment

    def list_payments(self, loan_id: str) -> List[LoanPayment]:
        payments = [LoanPayment.from_dict(d)
                    for d in self.storage.find(self.table_name, {"loan_id": loan_id})]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def list_penalties(self, loan_id: str) -> List[LoanPenalty]:
        penalties = [LoanPenalty.from_dict(d)
                     for d in self.storage.find(self.penalties_table, {"loan_id": loan_id})]
        penalties.sort(key=lambda p: p.created_at)
        return penalties

    def outstanding_balance(self, loan_id: str) -> Decimal:
        """Amount due, penalties included, not yet covered by payments"""
        return self.loans.require(loan_id).outstanding_amount
