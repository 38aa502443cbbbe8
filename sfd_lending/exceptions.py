"""
Error hierarchy for the lending engine.

Every operation raises one of these instead of a bare ValueError so callers
can tell terminal failures from ones worth retrying.
"""

from typing import Any, Dict, Optional


class SFDLendingError(Exception):
    """Base exception for all lending engine errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(SFDLendingError):
    """Raised when input is malformed or out of range."""


class InvalidInputError(ValidationError):
    """Raised when amortization inputs are invalid."""


class InvalidAmountError(ValidationError):
    """Raised when a monetary amount is zero or negative."""


class NotFoundError(SFDLendingError):
    """Raised when a referenced entity does not exist."""


class InvalidTransitionError(SFDLendingError):
    """Raised when a state machine transition is not allowed."""


class LoanNotActiveError(InvalidTransitionError):
    """Raised when a payment targets a loan that is not active."""


class PlanInactiveError(SFDLendingError):
    """Raised when a loan references a deactivated plan."""


class InsufficientSubsidyError(SFDLendingError):
    """Raised when the subsidy pool cannot cover a reservation."""


class ConcurrentUpdateError(SFDLendingError):
    """Raised when optimistic-concurrency retries are exhausted."""

    retryable = True


class StaleRecordError(SFDLendingError):
    """Raised by the storage layer when a row version no longer matches."""

    retryable = True
