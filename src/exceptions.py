"""Custom exceptions for structured error handling and propagation.

Errors fall into four families that the pipeline treats differently:

- transient infrastructure errors are retried once inline, then the user is
  asked to try again and pending state is left as it was;
- validation errors become a corrective prompt and the pending action is
  switched to await the corrected value;
- contract errors (programming bugs) are logged with a trace id and the user
  gets a generic apology;
- duplicate deliveries are not errors at all and never reach this module.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standard error codes for categorizing failures."""

    # Input/validation errors (1xxx)
    INVALID_AMOUNT = "INPUT_1001"
    INVALID_TIME = "INPUT_1002"
    UNKNOWN_REFERENCE = "INPUT_1003"
    VALIDATION_ERROR = "INPUT_1004"

    # Concurrency errors (2xxx)
    LOCK_BUSY = "CONCURRENCY_2001"
    DUPLICATE_IN_FLIGHT = "CONCURRENCY_2002"

    # Integration errors (3xxx)
    DATABASE_ERROR = "INTEGRATION_3001"
    TWILIO_ERROR = "INTEGRATION_3002"
    TRANSCRIPTION_ERROR = "INTEGRATION_3003"
    OCR_ERROR = "INTEGRATION_3004"
    CLASSIFIER_ERROR = "INTEGRATION_3005"

    # Business logic errors (4xxx)
    EXECUTOR_NOT_FOUND = "LOGIC_4001"
    INVALID_TRANSITION = "LOGIC_4002"
    PENDING_KIND_NOT_OWNED = "LOGIC_4003"

    # System errors (5xxx)
    INTERNAL_ERROR = "SYSTEM_5001"
    TIMEOUT_ERROR = "SYSTEM_5002"
    CONFIGURATION_ERROR = "SYSTEM_5003"


class LedgerlineException(Exception):
    """Base exception for all Ledgerline application errors.

    All custom exceptions should inherit from this to enable
    structured error handling and propagation.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        """Initialize exception with structured error information.

        Args:
            message: Technical error message (for logging)
            error_code: Standard error code for categorization
            user_message: User-friendly message (for display)
            details: Additional error context
            original_exception: Original exception if wrapping
        """
        super().__init__(message)
        self.error_code = error_code
        self.user_message = user_message or "Sorry, something went wrong."
        self.details = details or {}
        self.original_exception = original_exception

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_code": self.error_code.value,
            "message": str(self),
            "user_message": self.user_message,
            "details": self.details,
        }


class TransientInfraException(LedgerlineException):
    """Raised when a store or collaborator fails in a way worth retrying."""

    def __init__(self, operation: str, error_code: ErrorCode = ErrorCode.DATABASE_ERROR, **kwargs):
        super().__init__(
            message=f"Transient failure during {operation}",
            error_code=error_code,
            user_message="⚠️ I couldn't save that just now. Please try again.",
            details={"operation": operation},
            **kwargs,
        )


class ValidationException(LedgerlineException):
    """Raised by an executor when user-supplied values cannot be accepted.

    The user message is shown as a corrective prompt and the pending action
    switches to awaiting a corrected value.
    """

    def __init__(
        self,
        field: str,
        reason: str,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        **kwargs,
    ):
        super().__init__(
            message=f"Invalid {field}: {reason}",
            error_code=error_code,
            user_message=reason,
            details={"field": field},
            **kwargs,
        )
        self.field = field
        self.reason = reason


class ContractException(LedgerlineException):
    """Raised when components disagree about their contract (a bug)."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.INTERNAL_ERROR, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            user_message="😕 Sorry, something went wrong on my side. Nothing was saved.",
            **kwargs,
        )


class LockBusyException(LedgerlineException):
    """Raised when the per-user lock could not be acquired in time."""

    def __init__(self, lock_key: str, **kwargs):
        super().__init__(
            message=f"Lock busy: {lock_key}",
            error_code=ErrorCode.LOCK_BUSY,
            user_message="⏳ Still processing your previous message. Try again in a moment.",
            details={"lock_key": lock_key},
            **kwargs,
        )
