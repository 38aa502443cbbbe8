"""
Activity log and notification outbox endpoints
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends

from .system import LendingSystem, get_lending_system
from .schemas import activity_response


router = APIRouter()


@router.get("/integrity")
def verify_integrity(system: LendingSystem = Depends(get_lending_system)):
    """Verify the hash chain of the activity log"""
    return system.activity_log.verify_integrity()


@router.get("/notifications")
def list_notifications(
    recipient_id: Optional[str] = None,
    limit: int = 50,
    system: LendingSystem = Depends(get_lending_system)
):
    """Notification outbox, newest first"""
    notifications = system.notifier.get_notifications(recipient_id=recipient_id, limit=limit)
    return {"notifications": [n.to_dict() for n in notifications]}


@router.post("/notifications/retry")
def retry_notifications(system: LendingSystem = Depends(get_lending_system)):
    """Retry failed notifications"""
    return system.notifier.retry_failed()


@router.get("/{subject_id}")
def subject_activity(
    subject_id: str,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    limit: Optional[int] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Activity entries of one loan, request, allocation or plan, oldest first"""
    entries = system.activity_log.entries_for_subject(subject_id, start_time, end_time, limit)
    return {"subject_id": subject_id, "entries": [activity_response(e) for e in entries]}
