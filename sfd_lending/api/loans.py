"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status

from .system import LendingSystem, get_lending_system
from .schemas import (
    ApproveLoanRequest, CreateLoanRequest, DefaultLoanRequest, DisburseLoanRequest,
    LoanPaymentRequest, RejectLoanRequest, installment_response, loan_response,
    payment_response, penalty_response
)
from ..loans import LoanStatus
from ..exceptions import ValidationError


router = APIRouter()


def check_as_of(as_of: Optional[date]) -> Optional[date]:
    """Reject evaluation dates in the future"""
    if as_of is not None and as_of > date.today():
        raise ValidationError("as_of cannot be in the future", {"as_of": as_of.isoformat()})
    return as_of


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit a loan request"""
    loan = system.loans.create(request.to_input(), created_by=request.created_by)
    return loan_response(loan)


@router.get("")
def list_loans(
    sfd_id: Optional[str] = None,
    client_id: Optional[str] = None,
    loan_status: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List loans by SFD, client or status"""
    parsed_status = None
    if loan_status:
        try:
            parsed_status = LoanStatus(loan_status)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown loan status: {loan_status}")

    if sfd_id:
        loans = system.loans.list_for_sfd(sfd_id, parsed_status)
    elif client_id:
        loans = system.loans.list_for_client(client_id)
        if parsed_status:
            loans = [l for l in loans if l.status == parsed_status]
    elif parsed_status:
        loans = system.loans.list_by_status(parsed_status)
    else:
        raise HTTPException(status_code=422, detail="Filter by sfd_id, client_id or loan_status")

    return {"loans": [loan_response(l) for l in loans]}


@router.post("/process-overdue")
def process_overdue_loans(
    as_of: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Default every active loan past its grace period"""
    return system.loans.process_overdue_loans(check_as_of(as_of))


@router.post("/process-reminders")
def send_payment_reminders(
    as_of: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Send reminders for installments falling due"""
    return system.reminders.send_due_reminders(check_as_of(as_of))


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan details"""
    return loan_response(system.loans.require(loan_id))


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Approve a pending loan"""
    return loan_response(system.loans.approve(loan_id, request.approver_id))


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Reject a pending loan"""
    return loan_response(system.loans.reject(loan_id, request.actor_id, request.reason))


@router.post("/{loan_id}/disburse")
def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Disburse an approved loan, debiting its subsidy from the SFD's pool"""
    loan = system.disbursements.disburse(loan_id, request.disburser_id, request.idempotency_key)
    return loan_response(loan)


@router.post("/{loan_id}/default")
def default_loan(
    loan_id: str,
    request: DefaultLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Declare an overdue loan in default"""
    loan = system.loans.record_default(loan_id, request.actor_id, check_as_of(request.as_of))
    return loan_response(loan)


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def record_payment(
    loan_id: str,
    request: LoanPaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Record a repayment"""
    payment = system.payments.record_payment(
        loan_id=loan_id,
        amount=request.amount,
        method=request.method,
        reference=request.reference,
        recorded_by=request.recorded_by,
        payment_date=request.payment_date
    )
    loan = system.loans.require(loan_id)
    return {
        "payment": payment_response(payment),
        "loan_status": loan.status.value,
        "outstanding_amount": str(loan.outstanding_amount),
        "penalty_applied": str(payment.penalty_amount)
    }


@router.get("/{loan_id}/payments")
def list_payments(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List repayments of a loan"""
    system.loans.require(loan_id)
    return {"payments": [payment_response(p) for p in system.payments.list_payments(loan_id)]}


@router.get("/{loan_id}/schedule")
def get_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get the installment schedule generated at disbursement"""
    system.loans.require(loan_id)
    schedule = system.loans.get_schedule(loan_id)
    return {"schedule": [installment_response(loan_id, e) for e in schedule]}


@router.get("/{loan_id}/penalties")
def list_penalties(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List late payment penalties charged on a loan"""
    system.loans.require(loan_id)
    return {"penalties": [penalty_response(p) for p in system.payments.list_penalties(loan_id)]}
