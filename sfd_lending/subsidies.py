"""
Subsidy Allocation Ledger Module

Per-SFD subsidy pools funded by MEREF. Each SFD has one allocation row
holding the allocated ``amount`` and the ``used_amount`` drawn by disbursed
loans. The row carries a ``version`` counter; both mutators (``credit`` and
``reserve``) read the row, compute the new balance and write it back with a
conditional update on the version they read, retrying on conflict. This keeps
``0 <= used_amount <= amount`` under concurrent writers.

Every reservation also leaves a usage row keyed by the loan it funds, so a
loan can draw from the pool at most once.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .currency import Currency, round_amount, require_decimal
from .storage import StorageInterface, StorageRecord
from .audit import ActivityLog, ActivityType
from .notifications import NotificationDispatcher, NotificationType
from .exceptions import (
    InsufficientSubsidyError, InvalidAmountError, InvalidTransitionError,
    NotFoundError, ValidationError
)


logger = logging.getLogger("sfd_lending.subsidies")


class AllocationStatus(Enum):
    """Subsidy allocation states"""
    ACTIVE = "active"
    DEPLETED = "depleted"    # used_amount == amount
    REVOKED = "revoked"      # Withdrawn by MEREF, no longer usable


@dataclass
class SubsidyAllocation(StorageRecord):
    """Subsidy pool of one SFD"""
    sfd_id: str
    amount: Decimal
    used_amount: Decimal = Decimal('0')
    status: AllocationStatus = AllocationStatus.ACTIVE
    version: int = 1
    source_request_id: Optional[str] = None

    @property
    def remaining_amount(self) -> Decimal:
        return self.amount - self.used_amount

    @property
    def usage_percent(self) -> Decimal:
        if self.amount == 0:
            return Decimal('0')
        return (self.used_amount / self.amount * Decimal('100')).quantize(Decimal('0.01'))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubsidyAllocation':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['used_amount'] = Decimal(data['used_amount'])
        data['status'] = AllocationStatus(data['status'])
        return super().from_dict(data)


@dataclass
class SubsidyUsage(StorageRecord):
    """Amount a loan drew from its SFD's pool; id is the loan id"""
    allocation_id: str
    sfd_id: str
    loan_id: str
    amount: Decimal
    used_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubsidyUsage':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        return super().from_dict(data)


@dataclass
class SubsidyAlertThreshold(StorageRecord):
    """Low-balance alert; sfd_id None applies to every SFD"""
    threshold_name: str
    threshold_amount: Decimal
    sfd_id: Optional[str] = None
    notification_emails: List[str] = field(default_factory=list)
    is_active: bool = True
    created_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubsidyAlertThreshold':
        data = dict(data)
        data['threshold_amount'] = Decimal(data['threshold_amount'])
        return super().from_dict(data)


def allocation_id_for(sfd_id: str) -> str:
    return f"allocation-{sfd_id}"


class SubsidyAllocationLedger:
    """Owner of the per-SFD subsidy balances"""

    def __init__(
        self,
        storage: StorageInterface,
        activity_log: ActivityLog,
        notifier: Optional[NotificationDispatcher] = None,
        currency: Currency = Currency.XOF,
        max_retries: int = 5
    ):
        self.storage = storage
        self.activity_log = activity_log
        self.notifier = notifier
        self.currency = currency
        self.max_retries = max_retries

        self.table_name = "subsidy_allocations"
        self.usage_table = "subsidy_usage"
        self.thresholds_table = "subsidy_alert_thresholds"

    def _parse_amount(self, amount: Any) -> Decimal:
        amount = require_decimal(amount, "amount")
        if amount <= 0:
            raise InvalidAmountError("Amount must be positive", {"amount": str(amount)})
        if round_amount(amount, self.currency) != amount:
            raise InvalidAmountError(
                f"Amount has more precision than the {self.currency.code} minor unit",
                {"amount": str(amount)}
            )
        return amount

    def credit(
        self,
        sfd_id: str,
        amount: Any,
        actor_id: Optional[str] = None,
        source_request_id: Optional[str] = None
    ) -> SubsidyAllocation:
        """
        Add funds to an SFD's pool, creating the pool on first credit.

        Joins the caller's transaction when there is one.

        Raises:
            InvalidAmountError: If amount <= 0
            InvalidTransitionError: If the SFD's allocation has been revoked
            ConcurrentUpdateError: If version conflicts persist past the retry bound
        """
        amount = self._parse_amount(amount)

        def operation() -> SubsidyAllocation:
            allocation_id = allocation_id_for(sfd_id)
            current = self.storage.load(self.table_name, allocation_id)
            now = datetime.now(timezone.utc)

            if current is None:
                allocation = SubsidyAllocation(
                    id=allocation_id,
                    created_at=now,
                    updated_at=now,
                    sfd_id=sfd_id,
                    amount=amount,
                    source_request_id=source_request_id
                )
                self.storage.compare_and_save(self.table_name, allocation.id,
                                              allocation.to_dict(), None)
            else:
                allocation = SubsidyAllocation.from_dict(current)
                if allocation.status == AllocationStatus.REVOKED:
                    raise InvalidTransitionError(
                        f"Subsidy allocation for {sfd_id} has been revoked",
                        {"sfd_id": sfd_id, "allocation_id": allocation.id}
                    )
                expected_version = allocation.version
                allocation.amount += amount
                allocation.status = AllocationStatus.ACTIVE
                allocation.version += 1
                allocation.updated_at = now
                if source_request_id:
                    allocation.source_request_id = source_request_id
                self.storage.compare_and_save(self.table_name, allocation.id,
                                              allocation.to_dict(), expected_version)

            self.activity_log.record(
                ActivityType.SUBSIDY_CREDITED, "subsidy_allocation", allocation.id,
                f"Subsidy pool of {sfd_id} credited with {amount}",
                performed_by=actor_id,
                details={"sfd_id": sfd_id, "amount": amount,
                         "allocated": allocation.amount,
                         "source_request_id": source_request_id}
            )
            return allocation

        allocation = self.storage.run_atomic(operation, self.max_retries)
        logger.info(f"Credited {amount} to subsidy pool of {sfd_id} (allocated {allocation.amount})")
        return allocation

    def reserve(
        self,
        sfd_id: str,
        amount: Any,
        loan_id: str,
        actor_id: Optional[str] = None
    ) -> SubsidyUsage:
        """
        Atomically check the pool covers ``amount`` and debit it for a loan.

        A second reservation for the same loan returns the existing usage row
        without debiting again. Joins the caller's transaction when there is
        one; low-balance alerts are only checked here when there is not.

        Raises:
            InvalidAmountError: If amount <= 0
            InsufficientSubsidyError: If the pool is missing, revoked or too small
            ConcurrentUpdateError: If version conflicts persist past the retry bound
        """
        amount = self._parse_amount(amount)
        if not loan_id:
            raise ValidationError("loan_id is required for a subsidy reservation")
        standalone = not self.storage.in_transaction

        def operation() -> SubsidyUsage:
            existing = self.storage.load(self.usage_table, loan_id)
            if existing:
                logger.info(f"Subsidy for loan {loan_id} already reserved")
                return SubsidyUsage.from_dict(existing)

            current = self.storage.load(self.table_name, allocation_id_for(sfd_id))
            if current is None:
                raise InsufficientSubsidyError(
                    f"SFD {sfd_id} has no subsidy allocation",
                    {"sfd_id": sfd_id, "requested": str(amount), "remaining": "0"}
                )
            allocation = SubsidyAllocation.from_dict(current)
            if allocation.status == AllocationStatus.REVOKED:
                raise InsufficientSubsidyError(
                    f"Subsidy allocation for {sfd_id} has been revoked",
                    {"sfd_id": sfd_id, "requested": str(amount), "remaining": "0"}
                )
            if allocation.used_amount + amount > allocation.amount:
                raise InsufficientSubsidyError(
                    f"Subsidy pool of {sfd_id} has {allocation.remaining_amount} remaining, "
                    f"{amount} requested",
                    {"sfd_id": sfd_id, "requested": str(amount),
                     "remaining": str(allocation.remaining_amount)}
                )

            now = datetime.now(timezone.utc)
            expected_version = allocation.version
            allocation.used_amount += amount
            if allocation.used_amount == allocation.amount:
                allocation.status = AllocationStatus.DEPLETED
            allocation.version += 1
            allocation.updated_at = now
            self.storage.compare_and_save(self.table_name, allocation.id,
                                          allocation.to_dict(), expected_version)

            usage = SubsidyUsage(
                id=loan_id,
                created_at=now,
                updated_at=now,
                allocation_id=allocation.id,
                sfd_id=sfd_id,
                loan_id=loan_id,
                amount=amount,
                used_by=actor_id
            )
            self.storage.compare_and_save(self.usage_table, usage.id, usage.to_dict(), None)

            self.activity_log.record(
                ActivityType.SUBSIDY_RESERVED, "subsidy_allocation", allocation.id,
                f"{amount} reserved for loan {loan_id}",
                performed_by=actor_id,
                details={"sfd_id": sfd_id, "loan_id": loan_id, "amount": amount,
                         "used_amount": allocation.used_amount,
                         "remaining": allocation.remaining_amount}
            )
            return usage

        usage = self.storage.run_atomic(operation, self.max_retries)
        logger.info(f"Reserved {amount} from subsidy pool of {sfd_id} for loan {loan_id}")
        if standalone:
            self.check_alerts(sfd_id)
        return usage

    # Queries

    def get_allocation(self, sfd_id: str) -> Optional[SubsidyAllocation]:
        data = self.storage.load(self.table_name, allocation_id_for(sfd_id))
        if data:
            return SubsidyAllocation.from_dict(data)
        return None

    def require_allocation(self, sfd_id: str) -> SubsidyAllocation:
        allocation = self.get_allocation(sfd_id)
        if allocation is None:
            raise NotFoundError(f"No subsidy allocation for SFD {sfd_id}", {"sfd_id": sfd_id})
        return allocation

    def list_allocations(self) -> List[SubsidyAllocation]:
        return [SubsidyAllocation.from_dict(d) for d in self.storage.load_all(self.table_name)]

    def get_balance(self, sfd_id: str) -> Dict[str, Any]:
        """Balance summary; zeros when the SFD has no pool yet"""
        allocation = self.get_allocation(sfd_id)
        if allocation is None:
            zero = Decimal('0')
            return {"sfd_id": sfd_id, "allocated": zero, "used": zero, "remaining": zero,
                    "usage_percent": zero, "status": None}
        return {
            "sfd_id": sfd_id,
            "allocated": allocation.amount,
            "used": allocation.used_amount,
            "remaining": allocation.remaining_amount,
            "usage_percent": allocation.usage_percent,
            "status": allocation.status.value
        }

    def list_usage(self, sfd_id: str) -> List[SubsidyUsage]:
        usage = [SubsidyUsage.from_dict(d)
                 for d in self.storage.find(self.usage_table, {"sfd_id": sfd_id})]
        usage.sort(key=lambda u: u.created_at)
        return usage

    # Alerts

    def add_alert_threshold(
        self,
        threshold_name: str,
        threshold_amount: Any,
        sfd_id: Optional[str] = None,
        notification_emails: Optional[List[str]] = None,
        created_by: Optional[str] = None
    ) -> SubsidyAlertThreshold:
        """Register a low-balance alert for one SFD or, with no sfd_id, all of them"""
        if not threshold_name or not threshold_name.strip():
            raise ValidationError("Threshold name is required")
        threshold_amount = require_decimal(threshold_amount, "threshold_amount")
        if threshold_amount < 0:
            raise ValidationError("Threshold amount cannot be negative",
                                  {"threshold_amount": str(threshold_amount)})

        now = datetime.now(timezone.utc)
        threshold = SubsidyAlertThreshold(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            threshold_name=threshold_name.strip(),
            threshold_amount=threshold_amount,
            sfd_id=sfd_id,
            notification_emails=list(notification_emails or []),
            created_by=created_by
        )

        with self.storage.atomic():
            self.storage.save(self.thresholds_table, threshold.id, threshold.to_dict())
            self.activity_log.record(
                ActivityType.ALERT_THRESHOLD_CREATED, "subsidy_alert_threshold", threshold.id,
                f"Alert threshold '{threshold.threshold_name}' at {threshold_amount}",
                performed_by=created_by,
                details={"sfd_id": sfd_id, "threshold_amount": threshold_amount}
            )
        return threshold

    def list_alert_thresholds(self, sfd_id: Optional[str] = None) -> List[SubsidyAlertThreshold]:
        """Active thresholds applying to an SFD (global ones included)"""
        thresholds = [SubsidyAlertThreshold.from_dict(d)
                      for d in self.storage.find(self.thresholds_table, {"is_active": True})]
        if sfd_id is not None:
            thresholds = [t for t in thresholds if t.sfd_id in (None, sfd_id)]
        thresholds.sort(key=lambda t: t.threshold_amount)
        return thresholds

    def check_alerts(self, sfd_id: str) -> List[SubsidyAlertThreshold]:
        """
        Notify for every active threshold the SFD's remaining balance has
        reached. Must be called after the reservation commits.
        """
        allocation = self.get_allocation(sfd_id)
        if allocation is None:
            return []

        triggered = [t for t in self.list_alert_thresholds(sfd_id)
                     if allocation.remaining_amount <= t.threshold_amount]

        for threshold in triggered:
            logger.warning(
                f"Subsidy pool of {sfd_id} at {allocation.remaining_amount}, "
                f"below threshold '{threshold.threshold_name}' ({threshold.threshold_amount})"
            )
            if self.notifier is not None:
                # One alert per threshold until the pool is credited again
                self.notifier.notify(
                    NotificationType.SUBSIDY_LOW_BALANCE, sfd_id, allocation.id,
                    f"low_balance:{threshold.id}:{allocation.amount}",
                    {"threshold_name": threshold.threshold_name,
                     "threshold_amount": threshold.threshold_amount,
                     "sfd_id": sfd_id,
                     "remaining_amount": allocation.remaining_amount}
                )

        return triggered
