"""
Bonded Ledger Exception Hierarchy

Structured exception classes for the ledger recalculation engine and the
batch job scheduler. All exceptions include code, message and details for
the job history audit trail.

Exception Hierarchy:
    LedgerBaseError
    ├── RecalcError
    │   ├── ConflictError        (retryable)
    │   ├── RecalcTimeoutError   (retryable)
    │   └── NotFoundError
    ├── ValidationError
    └── SchedulerError
        └── UnknownJobError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class LedgerBaseError(Exception):
    """
    Base exception for all Bonded Ledger custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        retryable: Whether re-enqueueing the same work can succeed
    """

    default_code: str = "LEDGER_ERROR"
    default_severity: str = "P2"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# RECALCULATION ERRORS
# =============================================================================

class RecalcError(LedgerBaseError):
    """Base exception for ledger recalculation failures."""
    default_code = "RECALC_ERROR"
    default_severity = "P1"

    def __init__(self, message: str, item: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if item is not None:
            details["item"] = item
        super().__init__(message, details=details, **kwargs)


class ConflictError(RecalcError):
    """Another transaction touched the same item's chain mid-cascade."""
    default_code = "RECALC_CONFLICT"
    default_severity = "P2"
    retryable = True


class RecalcTimeoutError(RecalcError):
    """Recalculation exceeded its transaction timeout and was rolled back."""
    default_code = "RECALC_TIMEOUT"
    default_severity = "P1"
    retryable = True

    def __init__(self, message: str, timeout_seconds: Optional[float] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["timeout_seconds"] = timeout_seconds
        super().__init__(message, details=details, **kwargs)


class NotFoundError(RecalcError):
    """Recalculation requested for an item with no mutation history."""
    default_code = "RECALC_ITEM_NOT_FOUND"
    default_severity = "P3"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(LedgerBaseError):
    """Malformed queue key, negative priority or other rejected input."""
    default_code = "VALIDATION_FAILED"
    default_severity = "P3"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if field is not None:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# SCHEDULER ERRORS
# =============================================================================

class SchedulerError(LedgerBaseError):
    """Base exception for batch job scheduler errors."""
    default_code = "SCHEDULER_ERROR"
    default_severity = "P1"


class UnknownJobError(SchedulerError):
    """Trigger requested for a job type that is not registered."""
    default_code = "UNKNOWN_JOB"
    default_severity = "P3"


EXCEPTION_CATALOG = {
    "RECALC_CONFLICT": {"class": ConflictError, "severity": "P2"},
    "RECALC_TIMEOUT": {"class": RecalcTimeoutError, "severity": "P1"},
    "RECALC_ITEM_NOT_FOUND": {"class": NotFoundError, "severity": "P3"},
    "VALIDATION_FAILED": {"class": ValidationError, "severity": "P3"},
    "UNKNOWN_JOB": {"class": UnknownJobError, "severity": "P3"},
}
