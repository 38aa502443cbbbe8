"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..loans import Loan, LoanCreateInput
from ..plans import LoanPlan
from ..subsidies import SubsidyAllocation
from ..subsidy_requests import SubsidyRequest, SubsidyRequestInput
from ..payments import LoanPayment, LoanPenalty
from ..amortization import InstallmentEntry
from ..audit import ActivityLogEntry


# Plan schemas
class CreatePlanRequest(BaseModel):
    sfd_id: str
    name: str
    min_amount: str = Field(..., description="Decimal amount as string")
    max_amount: str = Field(..., description="Decimal amount as string")
    min_duration: int = Field(..., description="Minimum duration in months")
    max_duration: int = Field(..., description="Maximum duration in months")
    interest_rate: str = Field(..., description="Annual rate in percent, e.g. 5.5")
    fee_rate: str = "0"
    description: str = ""
    requirements: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None


class UpdatePlanRequest(BaseModel):
    actor_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    min_amount: Optional[str] = None
    max_amount: Optional[str] = None
    min_duration: Optional[int] = None
    max_duration: Optional[int] = None
    interest_rate: Optional[str] = None
    fee_rate: Optional[str] = None
    requirements: Optional[List[str]] = None

    def changes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump(exclude={"actor_id"}).items() if v is not None}


class ActorRequest(BaseModel):
    actor_id: str


# Loan schemas
class CreateLoanRequest(BaseModel):
    client_id: str
    sfd_id: str
    amount: str = Field(..., description="Decimal amount as string")
    duration_months: int
    interest_rate: Optional[str] = Field(None, description="Annual rate in percent; plan rate when omitted")
    plan_id: Optional[str] = None
    purpose: str = ""
    subsidy_amount: Optional[str] = None
    subsidy_rate: Optional[str] = Field(None, description="Share of the interest covered, in percent")
    created_by: Optional[str] = None

    def to_input(self) -> LoanCreateInput:
        return LoanCreateInput(
            client_id=self.client_id,
            sfd_id=self.sfd_id,
            amount=self.amount,
            duration_months=self.duration_months,
            interest_rate=self.interest_rate,
            plan_id=self.plan_id,
            purpose=self.purpose,
            subsidy_amount=self.subsidy_amount,
            subsidy_rate=self.subsidy_rate
        )


class ApproveLoanRequest(BaseModel):
    approver_id: str


class RejectLoanRequest(BaseModel):
    actor_id: str
    reason: str


class DisburseLoanRequest(BaseModel):
    disburser_id: str
    idempotency_key: Optional[str] = None


class DefaultLoanRequest(BaseModel):
    actor_id: str
    as_of: Optional[date] = None


class LoanPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    method: str = Field(..., description="mobile_money, cash, bank_transfer, ...")
    reference: Optional[str] = None
    recorded_by: Optional[str] = None
    payment_date: Optional[date] = None


# Subsidy schemas
class CreateSubsidyRequest(BaseModel):
    sfd_id: str
    amount: str = Field(..., description="Decimal amount as string")
    purpose: str
    justification: str = ""
    priority: str = Field("normal", description="low, normal, high or urgent")
    region: str = ""
    expected_impact: str = ""
    requested_by: Optional[str] = None

    def to_input(self) -> SubsidyRequestInput:
        return SubsidyRequestInput(
            sfd_id=self.sfd_id,
            amount=self.amount,
            purpose=self.purpose,
            justification=self.justification,
            priority=self.priority,
            region=self.region,
            expected_impact=self.expected_impact,
            requested_by=self.requested_by
        )


class DecideSubsidyRequest(BaseModel):
    actor_id: str
    status: str = Field(..., description="approved or rejected")
    comments: Optional[str] = None
    approved_amount: Optional[str] = None


class CreateAlertThresholdRequest(BaseModel):
    threshold_name: str
    threshold_amount: str = Field(..., description="Decimal amount as string")
    sfd_id: Optional[str] = None
    notification_emails: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None


# Response builders

def plan_response(plan: LoanPlan) -> Dict[str, Any]:
    return plan.to_dict()


def loan_response(loan: Loan) -> Dict[str, Any]:
    result = loan.to_dict()
    result["outstanding_amount"] = str(loan.outstanding_amount)
    return result


def payment_response(payment: LoanPayment) -> Dict[str, Any]:
    return payment.to_dict()


def penalty_response(penalty: LoanPenalty) -> Dict[str, Any]:
    return penalty.to_dict()


def installment_response(loan_id: str, entry: InstallmentEntry) -> Dict[str, Any]:
    return entry.to_dict(loan_id)


def allocation_response(allocation: SubsidyAllocation) -> Dict[str, Any]:
    result = allocation.to_dict()
    result["remaining_amount"] = str(allocation.remaining_amount)
    result["usage_percent"] = str(allocation.usage_percent)
    return result


def subsidy_request_response(request: SubsidyRequest) -> Dict[str, Any]:
    return request.to_dict()


def activity_response(entry: ActivityLogEntry) -> Dict[str, Any]:
    return entry.to_dict()
