"""
Error taxonomy for the access engine.

Transient store failures degrade to the most restrictive result and never
reach the render path. Data-integrity failures (profile cannot be
provisioned) are the only errors that end a session. Unknown permission
modules are a policy decision (deny), not an error.
"""

from typing import Optional


class SalonAccessError(Exception):
    """Base class for every error raised by salon_access."""


class StoreUnavailableError(SalonAccessError):
    """A storage collaborator could not be reached or failed mid-query."""

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        self.message = message or f"Store operation failed: {operation}"
        super().__init__(self.message)


class ProfileProvisioningError(SalonAccessError):
    """The user's profile is missing and could not be created."""

    def __init__(self, user_id: str, message: str = ""):
        self.user_id = user_id
        self.message = message or f"Could not provision profile for user {user_id}"
        super().__init__(self.message)


class AuthenticationError(SalonAccessError):
    """Raised when a bearer token is missing, malformed or expired."""

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class AuthorizationError(SalonAccessError):
    """Raised when a gate denies access to a module or route."""

    def __init__(self, message: str, module: Optional[str] = None, reason: str = "permission_denied"):
        self.message = message
        self.module = module
        self.reason = reason
        super().__init__(message)


class ErrorCodes:
    """Machine-readable codes carried in HTTP error details."""

    # 401
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    INVALID_TOKEN = "INVALID_TOKEN"

    # 403
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"
    CONTEXT_NOT_ALLOWED = "CONTEXT_NOT_ALLOWED"
    ASSIGNMENT_PENDING = "ASSIGNMENT_PENDING"
    ONBOARDING_REQUIRED = "ONBOARDING_REQUIRED"

    # 402
    TRIAL_EXPIRED = "TRIAL_EXPIRED"

    # 409 / 503
    INVALID_CONTEXT = "INVALID_CONTEXT"
    SESSION_LOADING = "SESSION_LOADING"


def error_detail(code: str, message: str, details: Optional[dict] = None) -> dict:
    """Build the ``detail`` payload used by HTTP exceptions."""
    detail = {"code": code, "message": message}
    if details:
        detail["details"] = details
    return detail
