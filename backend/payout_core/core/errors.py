"""
Error taxonomy for the payout core and its translation into standardized
HTTP error responses.

Domain exceptions are raised by the services and never carry HTTP concerns;
the API layer maps them onto ``ErrorCode`` values with
``http_error_from_payout_error``.
"""

from typing import Dict, Any, Optional
from enum import Enum
from fastapi import HTTPException, status

from .logging import get_logger

logger = get_logger(__name__)


class PayoutError(Exception):
    """Base class for all payout core errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class PayoutValidationError(PayoutError):
    """Bad amount, unknown or foreign method, unsupported currency.
    Raised before any state is created."""


class PayoutNotFoundError(PayoutError):
    pass


class PayoutMethodError(PayoutError):
    """Payout method registry rule violated (limit reached, method in use)."""


class TransitionConflictError(PayoutError):
    """A transition could not be applied; the caller must re-fetch."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.current_status = current_status


class InvalidTransitionError(TransitionConflictError):
    """Transition not allowed from the current state (e.g. already resolved)."""


class StaleTransitionError(TransitionConflictError):
    """The record changed underneath the writer; the transition was superseded."""


class CancellationRejectedError(InvalidTransitionError):
    """Cancel attempted after a dispatch attempt was recorded."""


class ErrorCode(Enum):
    """Standardized error codes for frontend handling."""

    # 401, not retried
    AUTH_REQUIRED = "auth_required"
    TOKEN_INVALID = "token_invalid"

    # 400, not retried
    VALIDATION_ERROR = "validation_error"

    # 500, safe to retry
    INTERNAL_SERVER_ERROR = "internal_server_error"

    # 409, re-fetch before acting again
    PAYOUT_METHOD_ERROR = "payout_method_error"
    TRANSITION_CONFLICT = "transition_conflict"
    ALREADY_RESOLVED = "already_resolved"
    ALREADY_DISPATCHED = "already_dispatched"

    # 404
    PAYOUT_NOT_FOUND = "payout_not_found"
    PAYOUT_METHOD_NOT_FOUND = "payout_method_not_found"


class ErrorResponse:
    """Standardized error response format."""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.correlation_id = correlation_id
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        response = {
            "error": self.error_code.value,
            "message": self.message,
            "correlation_id": self.correlation_id
        }

        if self.details:
            response["details"] = self.details

        return response


def create_error_response(
    error_code: ErrorCode,
    message: str,
    status_code: int,
    correlation_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None
) -> HTTPException:
    """HTTPException whose detail is the standard error body."""
    error_response = ErrorResponse(
        error_code=error_code,
        message=message,
        correlation_id=correlation_id,
        details=details
    )

    log = logger.error if status_code >= 500 else logger.info
    log("Error response created", extra={
        "error_code": error_code.value,
        "status_code": status_code,
        "correlation_id": correlation_id
    })

    return HTTPException(
        status_code=status_code,
        detail=error_response.to_dict(),
        headers=headers
    )


def create_auth_required_error(correlation_id: Optional[str] = None) -> HTTPException:
    """Create authentication required error."""
    return create_error_response(
        error_code=ErrorCode.AUTH_REQUIRED,
        message="Please log in to continue",
        status_code=status.HTTP_401_UNAUTHORIZED,
        correlation_id=correlation_id,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_token_invalid_error(correlation_id: Optional[str] = None) -> HTTPException:
    """Create invalid token error."""
    return create_error_response(
        error_code=ErrorCode.TOKEN_INVALID,
        message="Your session is invalid. Please log in again",
        status_code=status.HTTP_401_UNAUTHORIZED,
        correlation_id=correlation_id,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_internal_server_error(
    message: str = "Something went wrong. Please try again",
    correlation_id: Optional[str] = None
) -> HTTPException:
    """Create internal server error."""
    return create_error_response(
        error_code=ErrorCode.INTERNAL_SERVER_ERROR,
        message=message,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        correlation_id=correlation_id
    )


def http_error_from_payout_error(
    error: PayoutError,
    correlation_id: Optional[str] = None
) -> HTTPException:
    """Map a domain error onto its HTTP error response."""
    details = dict(error.details)

    if isinstance(error, PayoutValidationError):
        return create_error_response(
            error_code=ErrorCode.VALIDATION_ERROR,
            message=error.message,
            status_code=status.HTTP_400_BAD_REQUEST,
            correlation_id=correlation_id,
            details=details
        )

    if isinstance(error, PayoutNotFoundError):
        code = ErrorCode.PAYOUT_NOT_FOUND
        if details.get("resource") == "payout_method":
            code = ErrorCode.PAYOUT_METHOD_NOT_FOUND
        return create_error_response(
            error_code=code,
            message=error.message,
            status_code=status.HTTP_404_NOT_FOUND,
            correlation_id=correlation_id,
            details=details
        )

    if isinstance(error, PayoutMethodError):
        return create_error_response(
            error_code=ErrorCode.PAYOUT_METHOD_ERROR,
            message=error.message,
            status_code=status.HTTP_409_CONFLICT,
            correlation_id=correlation_id,
            details=details
        )

    if isinstance(error, TransitionConflictError):
        if error.current_status:
            details["current_status"] = error.current_status
        code = ErrorCode.TRANSITION_CONFLICT
        terminal = error.current_status in ("completed", "failed", "cancelled")
        if isinstance(error, InvalidTransitionError) and terminal:
            code = ErrorCode.ALREADY_RESOLVED
        elif isinstance(error, CancellationRejectedError):
            code = ErrorCode.ALREADY_DISPATCHED
        return create_error_response(
            error_code=code,
            message=error.message,
            status_code=status.HTTP_409_CONFLICT,
            correlation_id=correlation_id,
            details=details
        )

    return create_internal_server_error(correlation_id=correlation_id)
