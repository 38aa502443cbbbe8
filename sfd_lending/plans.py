"""
Loan Plan Catalog Module

Per-SFD loan plans: amount and duration bounds, interest and fee rates, the
documents a client must provide, and an active flag. Plans are versioned on
every edit and soft-deactivated, never deleted, because historical loans keep
referencing them.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging
import uuid

from .currency import require_decimal
from .storage import StorageInterface, StorageRecord
from .audit import ActivityLog, ActivityType
from .exceptions import NotFoundError, PlanInactiveError, ValidationError


logger = logging.getLogger("sfd_lending.plans")

# Fields an update may change
EDITABLE_FIELDS = (
    "name", "description", "min_amount", "max_amount", "min_duration",
    "max_duration", "interest_rate", "fee_rate", "requirements"
)


@dataclass
class LoanPlan(StorageRecord):
    """Loan plan offered by one SFD"""
    sfd_id: str
    name: str
    min_amount: Decimal
    max_amount: Decimal
    min_duration: int
    max_duration: int
    interest_rate: Decimal  # Annual percent
    fee_rate: Decimal = Decimal('0')
    description: str = ""
    requirements: List[str] = field(default_factory=list)
    is_active: bool = True
    version: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPlan':
        data = dict(data)
        for key in ('min_amount', 'max_amount', 'interest_rate', 'fee_rate'):
            data[key] = Decimal(data[key])
        return super().from_dict(data)

    def validate(self) -> None:
        """Check the plan's own bounds are coherent"""
        if not self.sfd_id:
            raise ValidationError("Plan must belong to an SFD")
        if not self.name or not self.name.strip():
            raise ValidationError("Plan name is required")
        if self.min_amount <= 0:
            raise ValidationError("Minimum amount must be positive",
                                  {"min_amount": str(self.min_amount)})
        if self.max_amount < self.min_amount:
            raise ValidationError("Maximum amount is below minimum amount",
                                  {"min_amount": str(self.min_amount),
                                   "max_amount": str(self.max_amount)})
        if isinstance(self.min_duration, bool) or not isinstance(self.min_duration, int) \
                or isinstance(self.max_duration, bool) or not isinstance(self.max_duration, int):
            raise ValidationError("Durations must be whole numbers of months")
        if self.min_duration < 1:
            raise ValidationError("Minimum duration must be at least one month",
                                  {"min_duration": self.min_duration})
        if self.max_duration < self.min_duration:
            raise ValidationError("Maximum duration is below minimum duration",
                                  {"min_duration": self.min_duration,
                                   "max_duration": self.max_duration})
        if self.interest_rate < 0:
            raise ValidationError("Interest rate cannot be negative",
                                  {"interest_rate": str(self.interest_rate)})
        if self.fee_rate < 0:
            raise ValidationError("Fee rate cannot be negative",
                                  {"fee_rate": str(self.fee_rate)})
        if not all(isinstance(r, str) for r in self.requirements):
            raise ValidationError("Requirements must be a list of strings")


class LoanPlanCatalog:
    """Manager for loan plan definitions"""

    def __init__(self, storage: StorageInterface, activity_log: ActivityLog):
        self.storage = storage
        self.activity_log = activity_log
        self.table_name = "loan_plans"

    def create_plan(
        self,
        sfd_id: str,
        name: str,
        min_amount: Any,
        max_amount: Any,
        min_duration: int,
        max_duration: int,
        interest_rate: Any,
        fee_rate: Any = 0,
        description: str = "",
        requirements: Optional[List[str]] = None,
        created_by: Optional[str] = None
    ) -> LoanPlan:
        """Create a new, active loan plan"""
        now = datetime.now(timezone.utc)
        plan = LoanPlan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            sfd_id=sfd_id,
            name=name,
            min_amount=require_decimal(min_amount, "min_amount"),
            max_amount=require_decimal(max_amount, "max_amount"),
            min_duration=min_duration,
            max_duration=max_duration,
            interest_rate=require_decimal(interest_rate, "interest_rate"),
            fee_rate=require_decimal(fee_rate, "fee_rate"),
            description=description or "",
            requirements=list(requirements or [])
        )
        plan.validate()

        with self.storage.atomic():
            self.storage.save(self.table_name, plan.id, plan.to_dict())
            self.activity_log.record(
                ActivityType.PLAN_CREATED, "loan_plan", plan.id,
                f"Loan plan '{plan.name}' created",
                performed_by=created_by,
                details={"sfd_id": sfd_id, "min_amount": plan.min_amount,
                         "max_amount": plan.max_amount,
                         "interest_rate": plan.interest_rate}
            )

        logger.info(f"Loan plan {plan.id} created for SFD {sfd_id}")
        return plan

    def update_plan(self, plan_id: str, actor_id: Optional[str] = None, **changes) -> LoanPlan:
        """Edit a plan, bumping its version"""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update plan fields: {', '.join(sorted(unknown))}")

        for key in ('min_amount', 'max_amount', 'interest_rate', 'fee_rate'):
            if key in changes:
                changes[key] = require_decimal(changes[key], key)

        with self.storage.atomic():
            plan = self.require(plan_id)
            old_version = plan.version
            for key, value in changes.items():
                setattr(plan, key, list(value) if key == 'requirements' else value)
            plan.validate()
            plan.version += 1
            plan.updated_at = datetime.now(timezone.utc)

            self.storage.save(self.table_name, plan.id, plan.to_dict())
            self.activity_log.record(
                ActivityType.PLAN_UPDATED, "loan_plan", plan.id,
                f"Loan plan '{plan.name}' updated to version {plan.version}",
                performed_by=actor_id,
                details={"old_version": old_version, "new_version": plan.version,
                         "changes": changes}
            )

        return plan

    def deactivate(self, plan_id: str, actor_id: Optional[str] = None) -> LoanPlan:
        """Soft-deactivate a plan; existing loans are unaffected"""
        with self.storage.atomic():
            plan = self.require(plan_id)
            if not plan.is_active:
                return plan
            plan.is_active = False
            plan.updated_at = datetime.now(timezone.utc)

            self.storage.save(self.table_name, plan.id, plan.to_dict())
            self.activity_log.record(
                ActivityType.PLAN_DEACTIVATED, "loan_plan", plan.id,
                f"Loan plan '{plan.name}' deactivated",
                performed_by=actor_id
            )

        logger.info(f"Loan plan {plan_id} deactivated")
        return plan

    def get(self, plan_id: str) -> Optional[LoanPlan]:
        """Get plan by ID"""
        data = self.storage.load(self.table_name, plan_id)
        if data:
            return LoanPlan.from_dict(data)
        return None

    def require(self, plan_id: str) -> LoanPlan:
        plan = self.get(plan_id)
        if plan is None:
            raise NotFoundError(f"Loan plan {plan_id} not found", {"plan_id": plan_id})
        return plan

    def list_for_sfd(self, sfd_id: str, active_only: bool = False) -> List[LoanPlan]:
        filters = {"sfd_id": sfd_id}
        if active_only:
            filters["is_active"] = True
        plans = [LoanPlan.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        plans.sort(key=lambda p: p.created_at)
        return plans

    def list_active(self) -> List[LoanPlan]:
        plans = [LoanPlan.from_dict(d)
                 for d in self.storage.find(self.table_name, {"is_active": True})]
        plans.sort(key=lambda p: p.created_at)
        return plans

    def validate_loan_terms(
        self,
        plan_id: str,
        sfd_id: str,
        amount: Decimal,
        duration_months: int,
        interest_rate: Optional[Decimal] = None
    ) -> LoanPlan:
        """
        Check a loan request against a plan's bounds.

        Raises:
            PlanInactiveError: If the plan has been deactivated
            ValidationError: If the plan is unknown, belongs to another SFD or a
                term is out of range
        """
        plan = self.get(plan_id)
        if plan is None:
            raise ValidationError(f"Loan plan {plan_id} does not exist", {"plan_id": plan_id})
        if not plan.is_active:
            raise PlanInactiveError(f"Loan plan {plan_id} is not active", {"plan_id": plan_id})
        if plan.sfd_id != sfd_id:
            raise ValidationError(
                f"Loan plan {plan_id} belongs to another SFD",
                {"plan_id": plan_id, "plan_sfd_id": plan.sfd_id, "sfd_id": sfd_id}
            )

        if not plan.min_amount <= amount <= plan.max_amount:
            raise ValidationError(
                f"Amount {amount} is outside plan range {plan.min_amount} - {plan.max_amount}",
                {"amount": str(amount), "min_amount": str(plan.min_amount),
                 "max_amount": str(plan.max_amount)}
            )
        if not plan.min_duration <= duration_months <= plan.max_duration:
            raise ValidationError(
                f"Duration {duration_months} is outside plan range "
                f"{plan.min_duration} - {plan.max_duration} months",
                {"duration_months": duration_months, "min_duration": plan.min_duration,
                 "max_duration": plan.max_duration}
            )
        if interest_rate is not None and interest_rate > plan.interest_rate:
            raise ValidationError(
                f"Interest rate {interest_rate}% exceeds plan rate {plan.interest_rate}%",
                {"interest_rate": str(interest_rate), "plan_rate": str(plan.interest_rate)}
            )

        return plan
