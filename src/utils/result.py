"""Result wrapper for pipeline stages.

Stages return a Result instead of raising so the pipeline can decide, in one
place, how each failure family is shown to the user.
"""
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar, Union

from src.exceptions import ErrorCode, LedgerlineException

T = TypeVar('T')


@dataclass
class Result(Generic[T]):
    """Result wrapper for operations that can succeed or fail."""

    success: bool
    data: Optional[T] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    user_message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    exception: Optional[Exception] = None

    @staticmethod
    def ok(data: T) -> 'Result[T]':
        """Create a successful result."""
        return Result(success=True, data=data)

    @staticmethod
    def from_exception(exc: Union[LedgerlineException, Exception]) -> 'Result[T]':
        """Create a failed result from an exception, keeping the exception.

        Args:
            exc: Application exception, or anything unexpected

        Returns:
            Failed Result carrying the error code and user-facing message
        """
        if isinstance(exc, LedgerlineException):
            return Result(
                success=False,
                error_code=exc.error_code,
                error_message=str(exc),
                user_message=exc.user_message,
                details=exc.details,
                exception=exc,
            )
        return Result(
            success=False,
            error_code=ErrorCode.INTERNAL_ERROR,
            error_message=str(exc),
            user_message="😕 Sorry, something went wrong on my side. Nothing was saved.",
            details={"exception_type": type(exc).__name__},
            exception=exc,
        )
