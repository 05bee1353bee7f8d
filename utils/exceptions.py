"""
Custom Application Exceptions.

Provides a hierarchy of exceptions for consistent error handling.

Usage:
    from utils.exceptions import InvalidInputError, QuotaExceededError

    # In verifiers (before any registry call)
    raise InvalidInputError("Identity number is too short", field="identity_number")

    # In the quota guard
    raise QuotaExceededError(caller_id, limit=100)
"""
from typing import Optional, Dict, Any


class AppError(Exception):
    """
    Base exception for all application errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "QUOTA_EXCEEDED")
        status_code: HTTP status code to return
        details: Additional context for debugging
    """
    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "status": "error",
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# =============================================================================
# VERIFIER LAYER EXCEPTIONS
# =============================================================================

class VerifyError(AppError):
    """
    Base for everything a verifier can raise.

    `retryable` tells the session layer whether the same input may be
    submitted again by the user.
    """
    retryable = False


class InvalidInputError(VerifyError):
    """
    Precondition violated before any registry call.

    Use for: Missing names, short identity number, future birth date, empty frame.
    """
    retryable = True

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        _details = details or {}
        if field:
            _details["field"] = field
        self.field = field
        super().__init__(message, "INVALID_INPUT", status_code=422, details=_details)


class QuotaExceededError(VerifyError):
    """
    Daily registry budget for a caller is exhausted (or the registry throttled us).
    """
    def __init__(
        self,
        caller_id: str,
        limit: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        _details = details or {}
        _details["caller_id"] = caller_id
        if limit is not None:
            _details["limit"] = limit
        super().__init__(
            "Daily verification limit reached, please try again tomorrow",
            "QUOTA_EXCEEDED",
            status_code=429,
            details=_details
        )


class ServiceUnavailableError(VerifyError):
    """
    Registry unreachable or returned a technical error. Always user-retryable.
    """
    retryable = True

    def __init__(
        self,
        message: str = "Verification service temporarily unavailable, please try again",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, "SERVICE_UNAVAILABLE", status_code=503, details=details)


class UnauthenticatedError(VerifyError):
    """
    Registry rejected (or is missing) our credentials.

    This is an operator problem; the client only sees a generic message.
    """
    def __init__(
        self,
        reason: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.reason = reason
        super().__init__(
            "Verification service unavailable, please try later",
            "SERVICE_UNAVAILABLE",
            status_code=503,
            details=details
        )


class ImageRejectedError(VerifyError):
    """
    Registry could not find a usable face in the frame. Prompts a retake.
    """
    def __init__(
        self,
        message: str = "No face could be detected, please retake the photo",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, "IMAGE_REJECTED", status_code=422, details=details)


# =============================================================================
# CAPTURE LAYER EXCEPTIONS
# =============================================================================

class CaptureError(AppError):
    """Base for camera/capture failures. Never retried automatically."""

    def __init__(
        self,
        message: str,
        code: str = "DEVICE_ERROR",
        status_code: int = 503,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code, status_code=status_code, details=details)


class PermissionDeniedError(CaptureError):
    """User or OS declined camera access."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "Camera access was denied, please allow camera access and try again",
            "PERMISSION_DENIED",
            status_code=403,
            details=details
        )


class DeviceNotFoundError(CaptureError):
    """No camera for the requested facing."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "No camera was found on this device",
            "DEVICE_NOT_FOUND",
            status_code=404,
            details=details
        )


class DeviceError(CaptureError):
    """Any other acquisition failure (busy device, driver error)."""

    def __init__(
        self,
        message: str = "The camera could not be started",
        code: str = "DEVICE_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, code, status_code=503, details=details)


class CaptureNotReadyError(CaptureError):
    """Stream has not produced a frame yet."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "The camera is not ready yet, please wait a moment",
            "NOT_READY",
            status_code=409,
            details=details
        )


# =============================================================================
# SESSION / STORE EXCEPTIONS
# =============================================================================

class IllegalTransitionError(AppError):
    """Operation not allowed from the session's current state."""

    def __init__(
        self,
        state: str,
        event: str,
        details: Optional[Dict[str, Any]] = None
    ):
        _details = details or {}
        _details["state"] = state
        _details["event"] = event
        super().__init__(
            f"Cannot {event} while session is {state}",
            "ILLEGAL_TRANSITION",
            status_code=409,
            details=_details
        )


class SessionConflictError(AppError):
    """Another verification session is already active for the subject."""

    def __init__(
        self,
        subject_id: str,
        active_session_id: str,
        details: Optional[Dict[str, Any]] = None
    ):
        _details = details or {}
        _details["subject_id"] = subject_id
        _details["active_session_id"] = active_session_id
        super().__init__(
            "A verification is already in progress for this user",
            "SESSION_CONFLICT",
            status_code=409,
            details=_details
        )


class ResourceNotFoundError(AppError):
    """
    Requested resource not found.

    Use for: Unknown session id, missing trust profile.
    """
    def __init__(
        self,
        resource: str,
        identifier: str,
        details: Optional[Dict[str, Any]] = None
    ):
        _details = details or {}
        _details["resource"] = resource
        _details["identifier"] = identifier
        super().__init__(
            f"{resource} with identifier '{identifier}' not found",
            "NOT_FOUND",
            status_code=404,
            details=_details
        )


class StoreError(AppError):
    """
    A database write or read failed.

    `cause` carries the driver message for logs; it never reaches the
    client, which only sees the operation name.
    """
    def __init__(
        self,
        cause: str,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        _details = details or {}
        if operation:
            _details["operation"] = operation  # "insert_record", "reconcile_flags", "quota_increment"
        self.cause = cause
        super().__init__(
            "A storage error occurred, please try again later",
            "STORE_ERROR",
            status_code=500,
            details=_details
        )
