"""
Loan Module

Loan origination and the loan state machine:

    pending -> approved -> active -> completed
    pending -> rejected
    active  -> defaulted

Every transition re-reads the loan and re-checks its status inside the same
unit of work as the write, and records its activity entry in that unit of
work. Notifications are sent only after the unit of work commits.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .amortization import (
    InstallmentEntry, add_months, calculate_amortization, generate_schedule
)
from .currency import Currency, round_amount, require_decimal
from .storage import StorageInterface, StorageRecord
from .audit import ActivityLog, ActivityType
from .plans import LoanPlanCatalog
from .notifications import NotificationDispatcher, NotificationType
from .exceptions import InvalidTransitionError, NotFoundError, ValidationError


logger = logging.getLogger("sfd_lending.loans")

HUNDRED = Decimal('100')


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Requested, awaiting decision
    APPROVED = "approved"      # Approved, awaiting disbursement
    ACTIVE = "active"          # Disbursed, repayments running
    COMPLETED = "completed"    # Fully repaid
    REJECTED = "rejected"      # Refused before disbursement
    DEFAULTED = "defaulted"    # Overdue past the grace period


@dataclass
class LoanCreateInput:
    """Validated input for a new loan request"""
    client_id: str
    sfd_id: str
    amount: Any
    duration_months: int
    interest_rate: Any = None
    plan_id: Optional[str] = None
    purpose: str = ""
    subsidy_amount: Any = None
    subsidy_rate: Any = None


@dataclass
class Loan(StorageRecord):
    """Loan with its derived repayment figures and lifecycle fields"""
    client_id: str
    sfd_id: str
    amount: Decimal
    duration_months: int
    interest_rate: Decimal
    monthly_payment: Decimal
    total_interest: Decimal
    total_repayment: Decimal
    status: LoanStatus = LoanStatus.PENDING
    plan_id: Optional[str] = None
    plan_version: Optional[int] = None  # Plan terms the loan was validated against
    purpose: str = ""
    subsidy_amount: Decimal = Decimal('0')
    subsidy_rate: Decimal = Decimal('0')
    amount_paid: Decimal = Decimal('0')
    penalty_amount: Decimal = Decimal('0')  # Late penalties added to the balance
    created_by: Optional[str] = None

    # Decisions
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    # Disbursement and repayment
    disbursed_at: Optional[datetime] = None
    disbursed_by: Optional[str] = None
    disbursement_key: Optional[str] = None
    last_payment_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None

    @property
    def total_due(self) -> Decimal:
        return self.total_repayment + self.penalty_amount

    @property
    def outstanding_amount(self) -> Decimal:
        return max(self.total_due - self.amount_paid, Decimal('0'))

    @property
    def is_fully_paid(self) -> bool:
        return self.amount_paid >= self.total_due

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        for key in ('amount', 'interest_rate', 'monthly_payment', 'total_interest',
                    'total_repayment', 'subsidy_amount', 'subsidy_rate', 'amount_paid'):
            data[key] = Decimal(data[key])
        data['penalty_amount'] = Decimal(data.get('penalty_amount', '0'))
        for key in ('approved_at', 'rejected_at', 'disbursed_at', 'completed_at', 'defaulted_at'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        for key in ('last_payment_date', 'next_payment_date'):
            if data.get(key):
                data[key] = date.fromisoformat(data[key])
        data['status'] = LoanStatus(data['status'])
        return super().from_dict(data)


class LoanRecordStore:
    """Owner of loan records and their state transitions"""

    def __init__(
        self,
        storage: StorageInterface,
        activity_log: ActivityLog,
        plans: LoanPlanCatalog,
        notifier: Optional[NotificationDispatcher] = None,
        currency: Currency = Currency.XOF,
        grace_period_days: int = 30,
        payment_cadence_months: int = 1
    ):
        self.storage = storage
        self.activity_log = activity_log
        self.plans = plans
        self.notifier = notifier
        self.currency = currency
        self.grace_period_days = grace_period_days
        self.payment_cadence_months = payment_cadence_months

        self.table_name = "loans"
        self.schedule_table = "loan_schedules"

    # Origination

    def create(self, data: LoanCreateInput, created_by: Optional[str] = None) -> Loan:
        """
        Create a pending loan request.

        Raises:
            ValidationError: On malformed input or terms outside the plan's range
            PlanInactiveError: If the referenced plan has been deactivated
        """
        if not data.client_id or not data.sfd_id:
            raise ValidationError("client_id and sfd_id are required")

        amount = require_decimal(data.amount, "amount")
        if amount <= 0:
            raise ValidationError("Loan amount must be positive", {"amount": str(amount)})
        duration = data.duration_months
        if isinstance(duration, bool) or not isinstance(duration, int) or duration < 1:
            raise ValidationError("Duration must be a whole number of months >= 1",
                                  {"duration_months": duration})

        rate = None
        if data.interest_rate is not None:
            rate = require_decimal(data.interest_rate, "interest_rate")
            if rate < 0:
                raise ValidationError("Interest rate cannot be negative",
                                      {"interest_rate": str(rate)})

        plan_version = None
        if data.plan_id:
            plan = self.plans.validate_loan_terms(data.plan_id, data.sfd_id, amount, duration, rate)
            plan_version = plan.version
            if rate is None:
                rate = plan.interest_rate
        elif rate is None:
            raise ValidationError("interest_rate is required when no plan is given")

        terms = calculate_amortization(amount, duration, rate, self.currency)
        subsidy_amount, subsidy_rate = self._resolve_subsidy(data, amount, terms.total_interest)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=data.client_id,
            sfd_id=data.sfd_id,
            amount=amount,
            duration_months=duration,
            interest_rate=rate,
            monthly_payment=terms.monthly_payment,
            total_interest=terms.total_interest,
            total_repayment=terms.total_repayment,
            plan_id=data.plan_id,
            plan_version=plan_version,
            purpose=data.purpose or "",
            subsidy_amount=subsidy_amount,
            subsidy_rate=subsidy_rate,
            created_by=created_by
        )

        with self.storage.atomic():
            self.save(loan)
            self.activity_log.record(
                ActivityType.LOAN_CREATED, "loan", loan.id,
                f"Loan request of {amount} over {duration} months created",
                performed_by=created_by,
                details={"client_id": loan.client_id, "sfd_id": loan.sfd_id,
                         "amount": amount, "interest_rate": rate,
                         "monthly_payment": loan.monthly_payment,
                         "subsidy_amount": subsidy_amount, "plan_id": loan.plan_id,
                         "plan_version": plan_version}
            )

        logger.info(f"Loan {loan.id} created for client {loan.client_id} (SFD {loan.sfd_id})")
        return loan

    def _resolve_subsidy(self, data: LoanCreateInput, amount: Decimal,
                         total_interest: Decimal) -> Tuple[Decimal, Decimal]:
        subsidy_rate = Decimal('0')
        if data.subsidy_rate is not None:
            subsidy_rate = require_decimal(data.subsidy_rate, "subsidy_rate")
            if not Decimal('0') <= subsidy_rate <= HUNDRED:
                raise ValidationError("Subsidy rate must be between 0 and 100",
                                      {"subsidy_rate": str(subsidy_rate)})

        if data.subsidy_amount is not None:
            subsidy_amount = require_decimal(data.subsidy_amount, "subsidy_amount")
        else:
            # Subsidy rate is the share of the interest cost covered by the pool
            subsidy_amount = round_amount(total_interest * subsidy_rate / HUNDRED, self.currency)

        if subsidy_amount < 0:
            raise ValidationError("Subsidy amount cannot be negative",
                                  {"subsidy_amount": str(subsidy_amount)})
        if subsidy_amount > amount:
            raise ValidationError("Subsidy amount cannot exceed the loan amount",
                                  {"subsidy_amount": str(subsidy_amount), "amount": str(amount)})
        if round_amount(subsidy_amount, self.currency) != subsidy_amount:
            raise ValidationError(
                f"Subsidy amount has more precision than the {self.currency.code} minor unit",
                {"subsidy_amount": str(subsidy_amount)}
            )
        return subsidy_amount, subsidy_rate

    # Transitions

    def _require_status(self, loan: Loan, *allowed: LoanStatus, action: str) -> None:
        if loan.status not in allowed:
            raise InvalidTransitionError(
                f"Cannot {action} loan {loan.id} in status {loan.status.value}",
                {"loan_id": loan.id, "status": loan.status.value,
                 "allowed": [s.value for s in allowed]}
            )

    def approve(self, loan_id: str, approver_id: str) -> Loan:
        """Approve a pending loan"""
        with self.storage.atomic():
            loan = self.require(loan_id)
            self._require_status(loan, LoanStatus.PENDING, action="approve")

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.APPROVED
            loan.approved_at = now
            loan.approved_by = approver_id
            loan.updated_at = now

            self.save(loan)
            self.activity_log.record(
                ActivityType.LOAN_APPROVED, "loan", loan.id,
                "Loan approved", performed_by=approver_id,
                details={"amount": loan.amount, "monthly_payment": loan.monthly_payment}
            )

        logger.info(f"Loan {loan_id} approved by {approver_id}")
        self.notify(loan, NotificationType.LOAN_APPROVED)
        return loan

    def reject(self, loan_id: str, actor_id: str, reason: str) -> Loan:
        """Reject a pending loan; terminal"""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")

        with self.storage.atomic():
            loan = self.require(loan_id)
            self._require_status(loan, LoanStatus.PENDING, action="reject")

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.REJECTED
            loan.rejected_at = now
            loan.rejected_by = actor_id
            loan.rejection_reason = reason.strip()
            loan.updated_at = now

            self.save(loan)
            self.activity_log.record(
                ActivityType.LOAN_REJECTED, "loan", loan.id,
                f"Loan rejected: {loan.rejection_reason}", performed_by=actor_id,
                details={"reason": loan.rejection_reason}
            )

        logger.info(f"Loan {loan_id} rejected by {actor_id}")
        self.notify(loan, NotificationType.LOAN_REJECTED, reason=loan.rejection_reason)
        return loan

    def mark_disbursed(self, loan: Loan, disburser_id: str,
                       disbursement_key: Optional[str] = None) -> List[InstallmentEntry]:
        """
        Activate an approved loan and persist its installment schedule.

        Must run inside the caller's unit of work (see DisbursementCoordinator).
        """
        self._require_status(loan, LoanStatus.APPROVED, action="disburse")

        now = datetime.now(timezone.utc)
        today = now.date()
        loan.status = LoanStatus.ACTIVE
        loan.disbursed_at = now
        loan.disbursed_by = disburser_id
        loan.disbursement_key = disbursement_key
        loan.next_payment_date = add_months(today, self.payment_cadence_months)
        loan.updated_at = now

        schedule = generate_schedule(
            loan.amount, loan.duration_months, loan.interest_rate, today,
            self.currency, monthly_payment=loan.monthly_payment
        )
        for entry in schedule:
            row = entry.to_dict(loan.id)
            self.storage.save(self.schedule_table, row['id'], row)

        self.save(loan)
        self.activity_log.record(
            ActivityType.LOAN_DISBURSED, "loan", loan.id,
            f"Loan disbursed, first payment due {loan.next_payment_date.isoformat()}",
            performed_by=disburser_id,
            details={"amount": loan.amount, "subsidy_amount": loan.subsidy_amount,
                     "next_payment_date": loan.next_payment_date,
                     "disbursement_key": disbursement_key,
                     "installments": len(schedule)}
        )
        return schedule

    def mark_completed(self, loan: Loan, actor_id: Optional[str] = None) -> None:
        """
        Close a fully repaid active loan.

        Must run inside the caller's unit of work.
        """
        self._require_status(loan, LoanStatus.ACTIVE, action="complete")
        if not loan.is_fully_paid:
            raise InvalidTransitionError(
                f"Loan {loan.id} still has {loan.outstanding_amount} outstanding",
                {"loan_id": loan.id, "amount_paid": str(loan.amount_paid),
                 "total_due": str(loan.total_due)}
            )

        now = datetime.now(timezone.utc)
        loan.status = LoanStatus.COMPLETED
        loan.completed_at = now
        loan.next_payment_date = None
        loan.updated_at = now

        self.save(loan)
        self.activity_log.record(
            ActivityType.LOAN_COMPLETED, "loan", loan.id,
            "Loan fully repaid", performed_by=actor_id,
            details={"amount_paid": loan.amount_paid, "total_repayment": loan.total_repayment,
                     "penalty_amount": loan.penalty_amount}
        )

    def complete(self, loan_id: str, actor_id: Optional[str] = None) -> Loan:
        """Complete an active loan whose repayments cover the total repayment"""
        with self.storage.atomic():
            loan = self.require(loan_id)
            self.mark_completed(loan, actor_id)

        logger.info(f"Loan {loan_id} completed")
        self.notify(loan, NotificationType.LOAN_COMPLETED)
        return loan

    def _check_overdue(self, loan: Loan, as_of: date) -> None:
        if loan.next_payment_date is None:
            raise InvalidTransitionError(f"Loan {loan.id} has no payment due",
                                         {"loan_id": loan.id})
        default_date = loan.next_payment_date + timedelta(days=self.grace_period_days)
        if as_of < default_date:
            raise InvalidTransitionError(
                f"Loan {loan.id} is within its grace period until {default_date.isoformat()}",
                {"loan_id": loan.id, "next_payment_date": loan.next_payment_date.isoformat(),
                 "grace_period_days": self.grace_period_days}
            )

    def record_default(self, loan_id: str, actor_id: Optional[str] = None,
                       as_of: Optional[date] = None) -> Loan:
        """
        Declare an active loan in default.

        Allowed only once the grace period after ``next_payment_date`` has
        elapsed with no payment.
        """
        as_of = as_of or date.today()

        with self.storage.atomic():
            loan = self.require(loan_id)
            self._require_status(loan, LoanStatus.ACTIVE, action="default")
            self._check_overdue(loan, as_of)

            now = datetime.now(timezone.utc)
            days_past_due = (as_of - loan.next_payment_date).days
            loan.status = LoanStatus.DEFAULTED
            loan.defaulted_at = now
            loan.updated_at = now

            self.save(loan)
            self.activity_log.record(
                ActivityType.LOAN_DEFAULTED, "loan", loan.id,
                f"Loan defaulted, {days_past_due} days past due", performed_by=actor_id,
                details={"next_payment_date": loan.next_payment_date,
                         "days_past_due": days_past_due,
                         "outstanding": loan.outstanding_amount}
            )

        logger.warning(f"Loan {loan_id} defaulted ({days_past_due} days past due)")
        self.notify(loan, NotificationType.LOAN_DEFAULTED)
        return loan

    def process_overdue_loans(self, as_of: Optional[date] = None,
                              actor_id: str = "system") -> Dict[str, int]:
        """Default every active loan past its grace period, one unit of work each"""
        as_of = as_of or date.today()
        results = {"checked": 0, "defaulted": 0, "errors": 0}

        for loan in self.list_by_status(LoanStatus.ACTIVE):
            results["checked"] += 1
            if loan.next_payment_date is None:
                continue
            if as_of < loan.next_payment_date + timedelta(days=self.grace_period_days):
                continue
            try:
                self.record_default(loan.id, actor_id, as_of)
                results["defaulted"] += 1
            except InvalidTransitionError as e:
                # Paid or changed between the scan and the transition
                logger.info(f"Skipping loan {loan.id}: {e.message}")
            except Exception:
                results["errors"] += 1
                logger.exception(f"Failed to default loan {loan.id}")

        return results

    # Notifications

    def notify(self, loan: Loan, notification_type: NotificationType,
               subject_id: Optional[str] = None, status: Optional[str] = None,
               **extra) -> None:
        """
        Send a post-commit notification about a loan; never raises.

        Deduplicated on (subject_id, status), the loan and its status by default.
        """
        if self.notifier is None:
            return
        data = {
            "loan_id": loan.id,
            "amount": loan.amount,
            "duration_months": loan.duration_months,
            "monthly_payment": loan.monthly_payment,
            "next_payment_date": loan.next_payment_date.isoformat() if loan.next_payment_date else "",
            "amount_paid": loan.amount_paid,
        }
        data.update(extra)
        self.notifier.notify(notification_type, loan.client_id,
                             subject_id or loan.id, status or loan.status.value, data)

    # Persistence and queries

    def save(self, loan: Loan) -> None:
        self.storage.save(self.table_name, loan.id, loan.to_dict())

    def get(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.table_name, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require(self, loan_id: str) -> Loan:
        loan = self.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return loan

    def _find(self, filters: Dict[str, Any]) -> List[Loan]:
        loans = [Loan.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def list_for_sfd(self, sfd_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {"sfd_id": sfd_id}
        if status:
            filters["status"] = status.value
        return self._find(filters)

    def list_for_client(self, client_id: str) -> List[Loan]:
        return self._find({"client_id": client_id})

    def list_by_status(self, status: LoanStatus) -> List[Loan]:
        return self._find({"status": status.value})

    def get_schedule(self, loan_id: str) -> List[InstallmentEntry]:
        """Installment schedule generated at disbursement (empty before)"""
        rows = self.storage.find(self.schedule_table, {"loan_id": loan_id})
        entries = [InstallmentEntry.from_dict(r) for r in rows]
        entries.sort(key=lambda e: e.installment_number)
        return entries
