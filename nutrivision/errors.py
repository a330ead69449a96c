"""
Error taxonomy for the Nutri-Vision backend.

Component operations raise these typed failures; the HTTP boundary in
``main`` maps each one to its status code, a stable machine-readable
``reason`` and a human message.
"""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for all expected, typed failures."""

    status_code: int = 500
    default_reason: str = "ServiceError"

    def __init__(self, message: str, reason: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "reason": self.reason, "message": self.message}


class ValidationError(ServiceError):
    """Malformed or missing input. Always client-correctable."""

    status_code = 400
    default_reason = "ValidationError"


class AuthenticationError(ServiceError):
    """Credentials or session token rejected."""

    status_code = 401
    default_reason = "InvalidCredentials"


class AccessDeniedError(ServiceError):
    """Authenticated, but not a party to the resource or not allowed to act."""

    status_code = 403
    default_reason = "AccessDenied"


class NotFoundError(ServiceError):
    status_code = 404
    default_reason = "NotFound"


class ConflictError(ServiceError):
    status_code = 409
    default_reason = "Conflict"


class StateError(ServiceError):
    """Entity exists but is in the wrong state for the requested operation."""

    status_code = 400
    default_reason = "StateError"


class UpstreamError(ServiceError):
    """Record store or transport failure."""

    status_code = 503
    default_reason = "UpstreamError"


# Named failures used across components

def invalid_credentials() -> AuthenticationError:
    return AuthenticationError("Invalid email or password", reason="InvalidCredentials")


def account_inactive() -> AuthenticationError:
    return AuthenticationError("Account is deactivated", reason="AccountInactive")


def pending_approval() -> AccessDeniedError:
    return AccessDeniedError(
        "Your account is pending admin approval. You will be notified once approved.",
        reason="PendingApproval",
    )


def account_rejected() -> AccessDeniedError:
    return AccessDeniedError(
        "Your account application has been rejected. Please contact support for more information.",
        reason="Rejected",
    )


def invalid_token() -> AuthenticationError:
    return AuthenticationError("Invalid or expired token", reason="InvalidToken")


def subject_not_found() -> AuthenticationError:
    return AuthenticationError("Account not found or inactive", reason="SubjectNotFound")


def communication_not_enabled() -> StateError:
    return StateError(
        "Appointment not found or communication not enabled",
        reason="CommunicationNotEnabled",
        status_code=404,
    )


def no_active_call() -> StateError:
    return StateError("No active call found", reason="NoActiveCall")
