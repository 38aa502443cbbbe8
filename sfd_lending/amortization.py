"""
Amortization Module

Equal-installment (annuity) loan math: monthly payment, total interest and
total repayment, plus the per-installment schedule generated when a loan is
disbursed. Pure functions, Decimal only, so identical inputs always produce
identical outputs and audit trails stay reproducible.
"""

from decimal import Decimal, Context, ROUND_HALF_EVEN, localcontext
from datetime import date
from dataclasses import dataclass
from typing import Any, List, Optional
import calendar

from .currency import Currency, round_amount, to_decimal
from .exceptions import InvalidInputError


# Fixed arithmetic context so results never depend on the caller's context
_CONTEXT = Context(prec=28, rounding=ROUND_HALF_EVEN)

MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class AmortizationResult:
    """Rounded repayment figures for one loan"""
    monthly_payment: Decimal
    total_interest: Decimal
    total_repayment: Decimal


@dataclass(frozen=True)
class InstallmentEntry:
    """Single entry in an installment schedule"""
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    total_amount: Decimal
    remaining_principal: Decimal

    def to_dict(self, loan_id: str) -> dict:
        return {
            'id': f"{loan_id}_{self.installment_number}",
            'loan_id': loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'principal_amount': str(self.principal_amount),
            'interest_amount': str(self.interest_amount),
            'total_amount': str(self.total_amount),
            'remaining_principal': str(self.remaining_principal)
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'InstallmentEntry':
        return cls(
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=Decimal(data['principal_amount']),
            interest_amount=Decimal(data['interest_amount']),
            total_amount=Decimal(data['total_amount']),
            remaining_principal=Decimal(data['remaining_principal'])
        )


def _validate(principal: Any, duration_months: Any, annual_interest_rate: Any,
              currency: Currency):
    try:
        principal = to_decimal(principal)
        annual_interest_rate = to_decimal(annual_interest_rate)
    except ValueError as e:
        raise InvalidInputError(str(e))

    if principal <= 0:
        raise InvalidInputError("Principal must be positive", {"principal": str(principal)})
    if round_amount(principal, currency) != principal:
        raise InvalidInputError(
            f"Principal has more precision than the {currency.code} minor unit",
            {"principal": str(principal)}
        )
    if isinstance(duration_months, bool) or not isinstance(duration_months, int):
        raise InvalidInputError("Duration must be a whole number of months",
                                {"duration_months": duration_months})
    if duration_months < 1:
        raise InvalidInputError("Duration must be at least one month",
                                {"duration_months": duration_months})
    if annual_interest_rate < 0:
        raise InvalidInputError("Interest rate cannot be negative",
                                {"annual_interest_rate": str(annual_interest_rate)})

    return principal, duration_months, annual_interest_rate


def monthly_rate(annual_interest_rate: Decimal) -> Decimal:
    """Convert an annual percentage rate to a monthly fraction"""
    with localcontext(_CONTEXT):
        return annual_interest_rate / HUNDRED / MONTHS_PER_YEAR


def calculate_amortization(
    principal: Any,
    duration_months: int,
    annual_interest_rate: Any,
    currency: Currency = Currency.XOF
) -> AmortizationResult:
    """
    Calculate the annuity repayment figures for a loan.

    The monthly payment is rounded half-up to the currency minor unit first;
    total repayment and total interest are derived from the rounded payment so
    ``total_repayment == monthly_payment * duration`` and
    ``total_interest == total_repayment - principal`` hold exactly.

    Args:
        principal: Amount lent, > 0
        duration_months: Number of monthly installments, >= 1
        annual_interest_rate: Annual rate in percent (5.5 means 5.5 %), >= 0
        currency: Currency defining the minor unit

    Raises:
        InvalidInputError: On out-of-range inputs
    """
    principal, n, annual_rate = _validate(principal, duration_months, annual_interest_rate, currency)

    with localcontext(_CONTEXT):
        r = monthly_rate(annual_rate)
        if r == 0:
            raw_payment = principal / Decimal(n)
        else:
            factor = (Decimal('1') + r) ** n
            raw_payment = principal * r * factor / (factor - Decimal('1'))

        payment = round_amount(raw_payment, currency)
        total_repayment = payment * Decimal(n)
        total_interest = total_repayment - principal

    return AmortizationResult(
        monthly_payment=payment,
        total_interest=total_interest,
        total_repayment=total_repayment
    )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_schedule(
    principal: Any,
    duration_months: int,
    annual_interest_rate: Any,
    start_date: date,
    currency: Currency = Currency.XOF,
    monthly_payment: Optional[Decimal] = None
) -> List[InstallmentEntry]:
    """
    Generate the monthly installment schedule for an annuity loan.

    Interest accrues on the remaining principal each month; the final
    installment absorbs the rounding residue so the remaining principal ends
    at exactly zero.
    """
    principal, n, annual_rate = _validate(principal, duration_months, annual_interest_rate, currency)
    if monthly_payment is None:
        monthly_payment = calculate_amortization(principal, n, annual_rate, currency).monthly_payment

    schedule = []
    remaining = principal

    with localcontext(_CONTEXT):
        r = monthly_rate(annual_rate)
        for number in range(1, n + 1):
            interest = round_amount(remaining * r, currency)

            if number == n:
                principal_part = remaining
            else:
                principal_part = min(monthly_payment - interest, remaining)
                if principal_part < 0:
                    principal_part = Decimal('0')

            remaining = remaining - principal_part
            schedule.append(InstallmentEntry(
                installment_number=number,
                due_date=add_months(start_date, number),
                principal_amount=principal_part,
                interest_amount=interest,
                total_amount=principal_part + interest,
                remaining_principal=remaining
            ))

    return schedule
