"""
Activity Log Module

Hash-chained, append-only activity log with SHA-256 for tamper detection.
Every state transition in the engine writes one entry here, inside the same
unit of work as the transition it documents.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, to_storable


class ActivityType(Enum):
    """Types of activity entries"""
    # Loan plan events
    PLAN_CREATED = "plan_created"
    PLAN_UPDATED = "plan_updated"
    PLAN_DEACTIVATED = "plan_deactivated"

    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_COMPLETED = "loan_completed"
    PAYMENT_RECORDED = "payment_recorded"
    PENALTY_APPLIED = "penalty_applied"
    PAYMENT_REMINDER_SENT = "payment_reminder_sent"

    # Subsidy request events
    REQUEST_CREATED = "request_created"
    REQUEST_UNDER_REVIEW = "request_under_review"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"

    # Subsidy ledger events
    SUBSIDY_CREDITED = "subsidy_credited"
    SUBSIDY_RESERVED = "subsidy_reserved"
    ALERT_THRESHOLD_CREATED = "alert_threshold_created"


@dataclass
class ActivityLogEntry(StorageRecord):
    """
    Immutable activity entry with hash chaining for tamper detection
    """
    sequence: int
    subject_type: str   # loan, subsidy_request, subsidy_allocation, loan_plan
    subject_id: str
    activity_type: ActivityType
    description: str
    performed_at: datetime
    previous_hash: str
    current_hash: str
    performed_by: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Details must be JSON serializable for hashing and storage
        self.details = to_storable(self.details or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'subject_type': self.subject_type,
            'subject_id': self.subject_id,
            'activity_type': self.activity_type.value,
            'description': self.description,
            'performed_by': self.performed_by,
            'performed_at': self.performed_at.isoformat(),
            'previous_hash': self.previous_hash,
            'details': self.details
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ActivityLogEntry':
        """Create entry from dictionary with proper enum deserialization"""
        data = dict(data)
        for key in ('created_at', 'updated_at', 'performed_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        if isinstance(data['activity_type'], str):
            data['activity_type'] = ActivityType(data['activity_type'])
        return cls(**data)


class ActivityLog:
    """
    Hash-chained activity log.

    The chain head (last sequence number and hash) is stored as a row of its
    own so it commits or rolls back together with the entry that moved it.
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "activity_log"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"

    def _load_head(self) -> Dict[str, Any]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        return head or {"sequence": 0, "hash": ""}

    def record(
        self,
        activity_type: ActivityType,
        subject_type: str,
        subject_id: str,
        description: str,
        performed_by: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> ActivityLogEntry:
        """
        Append an activity entry to the chain

        Args:
            activity_type: Type of activity
            subject_type: Type of entity the activity concerns
            subject_id: ID of that entity
            description: Human readable summary
            performed_by: ID of the actor
            details: Additional activity-specific data

        Returns:
            Created ActivityLogEntry
        """
        with self.storage.atomic():
            head = self._load_head()
            now = datetime.now(timezone.utc)

            entry = ActivityLogEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                sequence=head["sequence"] + 1,
                subject_type=subject_type,
                subject_id=subject_id,
                activity_type=activity_type,
                description=description,
                performed_by=performed_by,
                performed_at=now,
                previous_hash=head["hash"],
                current_hash="",
                details=details or {}
            )
            entry.current_hash = entry.calculate_hash()

            self.storage.save(self.table_name, entry.id, entry.to_dict())
            self.storage.save(self.head_table, self.HEAD_ID, {
                "id": self.HEAD_ID,
                "sequence": entry.sequence,
                "hash": entry.current_hash
            })

        return entry

    def _sorted(self, rows: List[Dict[str, Any]]) -> List[ActivityLogEntry]:
        entries = [ActivityLogEntry.from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.sequence)
        return entries

    @staticmethod
    def _in_range(entries: List[ActivityLogEntry], start_time: Optional[datetime],
                  end_time: Optional[datetime]) -> List[ActivityLogEntry]:
        # Naive bounds are taken as UTC
        if start_time and start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)
        if end_time and end_time.tzinfo is None:
            end_time = end_time.replace(tzinfo=timezone.utc)
        if start_time:
            entries = [e for e in entries if e.performed_at >= start_time]
        if end_time:
            entries = [e for e in entries if e.performed_at <= end_time]
        return entries

    def entries_for_subject(
        self,
        subject_id: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[ActivityLogEntry]:
        """
        Get entries for one subject, ordered oldest first

        Args:
            subject_id: ID of the subject
            start_time: Start of time range (inclusive)
            end_time: End of time range (inclusive)
            limit: Keep only the most recent N entries
        """
        rows = self.storage.find(self.table_name, {'subject_id': subject_id})
        entries = self._in_range(self._sorted(rows), start_time, end_time)
        if limit:
            entries = entries[-limit:]
        return entries

    def entries_by_type(
        self,
        activity_type: ActivityType,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> List[ActivityLogEntry]:
        """Get entries of one activity type within a time range"""
        rows = self.storage.find(self.table_name, {'activity_type': activity_type.value})
        return self._in_range(self._sorted(rows), start_time, end_time)

    def all_entries(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> List[ActivityLogEntry]:
        """Get every entry within a time range"""
        return self._in_range(self._sorted(self.storage.load_all(self.table_name)),
                              start_time, end_time)

    def count_entries(self) -> int:
        return self.storage.count(self.table_name)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self.all_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
