"""
Subsidy Request Workflow Module

SFDs ask MEREF for subsidy funds; MEREF reviews and decides:

    pending -> under_review -> approved | rejected
    pending -> approved | rejected

Approval credits the SFD's subsidy pool in the same unit of work as the
status change.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import logging
import uuid

from .currency import Currency, round_amount, require_decimal
from .storage import StorageInterface, StorageRecord
from .audit import ActivityLog, ActivityType
from .subsidies import SubsidyAllocationLedger
from .notifications import NotificationDispatcher, NotificationType
from .exceptions import InvalidAmountError, InvalidTransitionError, NotFoundError, ValidationError


logger = logging.getLogger("sfd_lending.subsidy_requests")


class RequestStatus(Enum):
    """Subsidy request states"""
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class Priority(Enum):
    """Queue priority; never gates a transition"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return {"low": 0, "normal": 1, "high": 2, "urgent": 3}[self.value]


OPEN_STATUSES = (RequestStatus.PENDING, RequestStatus.UNDER_REVIEW)


@dataclass
class SubsidyRequestInput:
    """Input for a new subsidy request"""
    sfd_id: str
    amount: Any
    purpose: str
    justification: str = ""
    priority: Union[Priority, str] = Priority.NORMAL
    region: str = ""
    expected_impact: str = ""
    requested_by: Optional[str] = None


@dataclass
class SubsidyRequest(StorageRecord):
    """Subsidy request from an SFD"""
    sfd_id: str
    amount: Decimal
    purpose: str
    justification: str = ""
    priority: Priority = Priority.NORMAL
    region: str = ""
    expected_impact: str = ""
    status: RequestStatus = RequestStatus.PENDING
    requested_by: Optional[str] = None
    decision_comments: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    approved_amount: Optional[Decimal] = None
    allocation_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SubsidyRequest':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        if data.get('approved_amount') is not None:
            data['approved_amount'] = Decimal(data['approved_amount'])
        if data.get('reviewed_at'):
            data['reviewed_at'] = datetime.fromisoformat(data['reviewed_at'])
        data['priority'] = Priority(data['priority'])
        data['status'] = RequestStatus(data['status'])
        return super().from_dict(data)


def _parse_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {field_name} '{value}', expected one of: {allowed}",
                              {field_name: value})


class SubsidyRequestWorkflow:
    """Owner of subsidy requests and their approval state machine"""

    def __init__(
        self,
        storage: StorageInterface,
        activity_log: ActivityLog,
        ledger: SubsidyAllocationLedger,
        notifier: Optional[NotificationDispatcher] = None,
        currency: Currency = Currency.XOF,
        max_approval_ratio: Decimal = Decimal('1.5'),
        max_retries: int = 5
    ):
        self.storage = storage
        self.activity_log = activity_log
        self.ledger = ledger
        self.notifier = notifier
        self.currency = currency
        self.max_approval_ratio = Decimal(str(max_approval_ratio))
        self.max_retries = max_retries
        self.table_name = "subsidy_requests"

    def submit(self, data: SubsidyRequestInput) -> SubsidyRequest:
        """Submit a new pending request"""
        if not data.sfd_id:
            raise ValidationError("sfd_id is required")
        if not data.purpose or not data.purpose.strip():
            raise ValidationError("A purpose is required")
        amount = require_decimal(data.amount, "amount")
        if amount <= 0:
            raise InvalidAmountError("Requested amount must be positive", {"amount": str(amount)})
        if round_amount(amount, self.currency) != amount:
            raise InvalidAmountError(
                f"Amount has more precision than the {self.currency.code} minor unit",
                {"amount": str(amount)}
            )
        priority = _parse_enum(Priority, data.priority, "priority")

        now = datetime.now(timezone.utc)
        request = SubsidyRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            sfd_id=data.sfd_id,
            amount=amount,
            purpose=data.purpose.strip(),
            justification=data.justification or "",
            priority=priority,
            region=data.region or "",
            expected_impact=data.expected_impact or "",
            requested_by=data.requested_by
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, request.id, request.to_dict())
            self.activity_log.record(
                ActivityType.REQUEST_CREATED, "subsidy_request", request.id,
                f"Subsidy request of {amount} submitted by {data.sfd_id}",
                performed_by=data.requested_by,
                details={"sfd_id": data.sfd_id, "amount": amount,
                         "priority": priority.value, "region": request.region}
            )

        logger.info(f"Subsidy request {request.id} submitted by SFD {data.sfd_id}")
        return request

    def mark_under_review(self, request_id: str, actor_id: str) -> SubsidyRequest:
        """Move a pending request to under_review"""
        with self.storage.atomic():
            request = self.require(request_id)
            if request.status != RequestStatus.PENDING:
                raise InvalidTransitionError(
                    f"Cannot review request {request_id} in status {request.status.value}",
                    {"request_id": request_id, "status": request.status.value}
                )

            now = datetime.now(timezone.utc)
            request.status = RequestStatus.UNDER_REVIEW
            request.reviewed_by = actor_id
            request.reviewed_at = now
            request.updated_at = now

            self.storage.save(self.table_name, request.id, request.to_dict())
            self.activity_log.record(
                ActivityType.REQUEST_UNDER_REVIEW, "subsidy_request", request.id,
                "Subsidy request under review", performed_by=actor_id
            )

        return request

    def decide(
        self,
        request_id: str,
        actor_id: str,
        status: Union[RequestStatus, str],
        comments: Optional[str] = None,
        approved_amount: Any = None
    ) -> SubsidyRequest:
        """
        Approve or reject an open request.

        Approval credits the SFD's pool with ``approved_amount`` (the requested
        amount by default) in the same unit of work. Rejection requires
        comments.

        Raises:
            ValidationError: Bad decision status, missing rejection comments or
                an approved amount outside (0, ratio * requested]
            InvalidTransitionError: If the request was already decided
        """
        status = _parse_enum(RequestStatus, status, "status")
        if status not in (RequestStatus.APPROVED, RequestStatus.REJECTED):
            raise ValidationError("Decision must be 'approved' or 'rejected'",
                                  {"status": status.value})
        comments = comments.strip() if comments else None
        if status == RequestStatus.REJECTED and not comments:
            raise ValidationError("Comments are required when rejecting a subsidy request")
        if approved_amount is not None:
            approved_amount = require_decimal(approved_amount, "approved_amount")

        def operation() -> SubsidyRequest:
            request = self.require(request_id)
            if request.status not in OPEN_STATUSES:
                raise InvalidTransitionError(
                    f"Request {request_id} is already {request.status.value}",
                    {"request_id": request_id, "status": request.status.value}
                )

            now = datetime.now(timezone.utc)
            request.status = status
            request.decision_comments = comments
            request.reviewed_by = actor_id
            request.reviewed_at = now
            request.updated_at = now

            if status == RequestStatus.APPROVED:
                amount = self._approved_amount(request, approved_amount)
                allocation = self.ledger.credit(request.sfd_id, amount, actor_id,
                                                source_request_id=request.id)
                request.approved_amount = amount
                request.allocation_id = allocation.id
                activity_type = ActivityType.REQUEST_APPROVED
                description = f"Subsidy request approved for {amount}"
            else:
                activity_type = ActivityType.REQUEST_REJECTED
                description = "Subsidy request rejected"

            self.storage.save(self.table_name, request.id, request.to_dict())
            self.activity_log.record(
                activity_type, "subsidy_request", request.id, description,
                performed_by=actor_id,
                details={"sfd_id": request.sfd_id, "comments": comments,
                         "approved_amount": request.approved_amount,
                         "allocation_id": request.allocation_id}
            )
            return request

        request = self.storage.run_atomic(operation, self.max_retries)
        logger.info(f"Subsidy request {request_id} {request.status.value} by {actor_id}")

        if self.notifier is not None:
            self.notifier.notify(
                NotificationType.SUBSIDY_REQUEST_DECIDED, request.sfd_id, request.id,
                request.status.value,
                {"request_id": request.id, "status": request.status.value,
                 "amount": request.approved_amount or request.amount,
                 "comments": comments or ""}
            )
        return request

    def _approved_amount(self, request: SubsidyRequest, approved_amount: Optional[Decimal]) -> Decimal:
        if approved_amount is None:
            return request.amount
        ceiling = request.amount * self.max_approval_ratio
        if approved_amount <= 0 or approved_amount > ceiling:
            raise ValidationError(
                f"Approved amount must be positive and at most {ceiling}",
                {"approved_amount": str(approved_amount), "requested": str(request.amount)}
            )
        return approved_amount

    # Queries

    def get(self, request_id: str) -> Optional[SubsidyRequest]:
        data = self.storage.load(self.table_name, request_id)
        if data:
            return SubsidyRequest.from_dict(data)
        return None

    def require(self, request_id: str) -> SubsidyRequest:
        request = self.get(request_id)
        if request is None:
            raise NotFoundError(f"Subsidy request {request_id} not found",
                                {"request_id": request_id})
        return request

    def list_for_sfd(self, sfd_id: str) -> List[SubsidyRequest]:
        requests = [SubsidyRequest.from_dict(d)
                    for d in self.storage.find(self.table_name, {"sfd_id": sfd_id})]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def list_queue(self, region: Optional[str] = None) -> List[SubsidyRequest]:
        """Open requests, most urgent first, oldest first within a priority"""
        requests = [SubsidyRequest.from_dict(d) for d in self.storage.load_all(self.table_name)]
        requests = [r for r in requests if r.status in OPEN_STATUSES]
        if region:
            requests = [r for r in requests if r.region == region]
        requests.sort(key=lambda r: (-r.priority.rank, r.created_at))
        return requests
