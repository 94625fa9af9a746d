"""Error taxonomy for the presence admission pipeline.

Two layers:
- ErrorCode: the stable codes surfaced in AdmissionResult.error. These are the
  only failure details a caller ever sees; storage messages and tracebacks stay
  in the logs.
- PresenceError and subclasses: raised by collaborator adapters and caught by
  services at their documented seams (rate limiter fails open, device trust and
  policy load fail closed, the pipeline converts anything else to INTERNAL_ERROR).
"""

from enum import StrEnum


class ErrorCode(StrEnum):
    """Terminal and local error codes produced by the pipeline."""

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    DEVICE_TRUST_FAILED = "DEVICE_TRUST_FAILED"
    NO_POLICY_FOUND = "NO_POLICY_FOUND"
    FACTOR_EVALUATION_ERROR = "FACTOR_EVALUATION_ERROR"
    MOTION_VIOLATION = "MOTION_VIOLATION"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    ATTENDANCE_NOT_FOUND = "ATTENDANCE_NOT_FOUND"
    ALREADY_CHECKED_OUT = "ALREADY_CHECKED_OUT"


class PresenceError(Exception):
    """Base error for the presence admission package.

    Attributes:
        message: Human-readable error description.
        code: Optional ErrorCode this error maps to.
    """

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        """Initialize PresenceError.

        Args:
            message: Error description.
            code: Optional error code.
        """
        super().__init__(message)
        self.message = message
        self.code = code


class NotFoundError(PresenceError):
    """Raised when a requested resource does not exist."""


class ValidationError(PresenceError):
    """Raised when a document fails validation.

    Attributes:
        field: Name of the offending field, when known.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class StoreUnavailableError(PresenceError):
    """Raised by adapters when a backing store cannot be reached."""


class TransientStoreError(StoreUnavailableError):
    """A store failure that is worth exactly one retry."""


class ConflictError(PresenceError):
    """Raised when a write loses an optimistic version check."""
