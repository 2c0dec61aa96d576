"""
Error taxonomy for PatientMatch.

Every mutating operation either succeeds or raises one of these errors;
the service layer turns them into explicit result values for callers.
"""

from typing import Optional


class PatientMatchError(Exception):
    """Base class for all engine errors."""

    retryable = False
    user_message = "The operation could not be completed."

    def __init__(self, message: str, entity_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "entity_id": self.entity_id,
            "retryable": self.retryable,
            "user_message": self.user_message,
        }


class StateConflict(PatientMatchError):
    """Transition attempted from a state other than the expected one."""

    retryable = True
    user_message = "This item was just updated, please refresh."

    def __init__(self, message: str, entity_id: Optional[str] = None,
                 expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message, entity_id)
        self.expected = expected
        self.actual = actual


class AlreadyResolved(PatientMatchError):
    """A conflict record was already resolved with a different action."""

    retryable = False
    user_message = "This item was just updated, please refresh."

    def __init__(self, message: str, entity_id: Optional[str] = None,
                 resolution_action: Optional[str] = None):
        super().__init__(message, entity_id)
        self.resolution_action = resolution_action


class MergeFailure(PatientMatchError):
    """A merge transaction was rolled back; the candidate stays confirmed_match."""

    retryable = True

    def __init__(self, message: str, entity_id: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message, entity_id)
        self.cause = cause

    @property
    def user_message(self) -> str:
        if self.cause is not None:
            return f"Merge failed and was rolled back ({self.cause}). Retry after investigating."
        return f"Merge failed and was rolled back ({self.message}). Retry after investigating."


class InsufficientData(PatientMatchError):
    """A record or pair lacks the data needed for blocking or scoring.

    Not a failure: callers count it as a metric and move on.
    """

    user_message = "Not enough demographic data to compare this record."


class ScoringConfigError(PatientMatchError):
    """Weights or thresholds are invalid. Raised at startup, never while scoring."""


class NotFound(PatientMatchError):
    """Referenced identity, candidate, merge or conflict does not exist."""

    user_message = "The requested item no longer exists."


class InvalidRequest(PatientMatchError, ValueError):
    """Caller input is malformed, such as an unknown decision or a missing actor."""

    user_message = "The request is invalid."
