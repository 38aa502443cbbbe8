"""
Loan plan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .system import LendingSystem, get_lending_system
from .schemas import ActorRequest, CreatePlanRequest, UpdatePlanRequest, plan_response


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_plan(
    request: CreatePlanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a loan plan for an SFD"""
    plan = system.plans.create_plan(
        sfd_id=request.sfd_id,
        name=request.name,
        min_amount=request.min_amount,
        max_amount=request.max_amount,
        min_duration=request.min_duration,
        max_duration=request.max_duration,
        interest_rate=request.interest_rate,
        fee_rate=request.fee_rate,
        description=request.description,
        requirements=request.requirements,
        created_by=request.created_by
    )
    return plan_response(plan)


@router.get("")
def list_plans(
    sfd_id: Optional[str] = None,
    active_only: bool = False,
    system: LendingSystem = Depends(get_lending_system)
):
    """List plans of one SFD, or every active plan"""
    if sfd_id:
        plans = system.plans.list_for_sfd(sfd_id, active_only=active_only)
    else:
        plans = system.plans.list_active()
    return {"plans": [plan_response(p) for p in plans]}


@router.get("/{plan_id}")
def get_plan(
    plan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get plan details"""
    return plan_response(system.plans.require(plan_id))


@router.patch("/{plan_id}")
def update_plan(
    plan_id: str,
    request: UpdatePlanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Edit a plan (bumps its version)"""
    plan = system.plans.update_plan(plan_id, request.actor_id, **request.changes())
    return plan_response(plan)


@router.post("/{plan_id}/deactivate")
def deactivate_plan(
    plan_id: str,
    request: ActorRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Soft-deactivate a plan"""
    return plan_response(system.plans.deactivate(plan_id, request.actor_id))
