"""
Subsidy request and allocation endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .system import LendingSystem, get_lending_system
from .schemas import (
    ActorRequest, CreateAlertThresholdRequest, CreateSubsidyRequest, DecideSubsidyRequest,
    allocation_response, subsidy_request_response
)


router = APIRouter()


@router.post("/requests", status_code=status.HTTP_201_CREATED)
def submit_request(
    request: CreateSubsidyRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Submit a subsidy request"""
    return subsidy_request_response(system.subsidy_requests.submit(request.to_input()))


@router.get("/requests")
def list_requests(
    sfd_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List the subsidy requests of one SFD"""
    requests = system.subsidy_requests.list_for_sfd(sfd_id)
    return {"requests": [subsidy_request_response(r) for r in requests]}


@router.get("/requests/queue")
def review_queue(
    region: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Open requests, most urgent first"""
    requests = system.subsidy_requests.list_queue(region)
    return {"requests": [subsidy_request_response(r) for r in requests]}


@router.get("/requests/{request_id}")
def get_request(
    request_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get subsidy request details"""
    return subsidy_request_response(system.subsidy_requests.require(request_id))


@router.post("/requests/{request_id}/review")
def review_request(
    request_id: str,
    request: ActorRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Move a pending request under review"""
    result = system.subsidy_requests.mark_under_review(request_id, request.actor_id)
    return subsidy_request_response(result)


@router.post("/requests/{request_id}/decide")
def decide_request(
    request_id: str,
    request: DecideSubsidyRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Approve (crediting the SFD's pool) or reject a request"""
    result = system.subsidy_requests.decide(
        request_id, request.actor_id, request.status,
        comments=request.comments, approved_amount=request.approved_amount
    )
    return subsidy_request_response(result)


@router.get("/allocations/{sfd_id}")
def get_allocation(
    sfd_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get the subsidy pool of an SFD"""
    return allocation_response(system.ledger.require_allocation(sfd_id))


@router.get("/allocations/{sfd_id}/usage")
def list_usage(
    sfd_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """List reservations drawn from an SFD's pool"""
    return {"usage": [u.to_dict() for u in system.ledger.list_usage(sfd_id)]}


@router.post("/alerts", status_code=status.HTTP_201_CREATED)
def create_alert_threshold(
    request: CreateAlertThresholdRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Register a low-balance alert threshold"""
    threshold = system.ledger.add_alert_threshold(
        threshold_name=request.threshold_name,
        threshold_amount=request.threshold_amount,
        sfd_id=request.sfd_id,
        notification_emails=request.notification_emails,
        created_by=request.created_by
    )
    return threshold.to_dict()


@router.get("/alerts")
def list_alert_thresholds(
    sfd_id: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """List active alert thresholds"""
    return {"thresholds": [t.to_dict() for t in system.ledger.list_alert_thresholds(sfd_id)]}
