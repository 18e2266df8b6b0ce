"""
Route guards.

Two layers:

1. Pure decisions (``evaluate_protected_route``, ``evaluate_module_route``)
   over a SessionSnapshot. These return where the caller should go instead
   of rendering, and never raise.
2. FastAPI dependencies (``get_session_state``, ``require_module``,
   ``require_active_subscription``) that turn those decisions into HTTP
   errors for the API surface.

USAGE:
    @router.get("/reports")
    async def reports(machine: SessionStateMachine = Depends(require_module("reports"))):
        ...
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from .audit import AUDIT_ACCESS_DENIED, AUDIT_PAGE_VIEW, AuditEmitter
from .core.errors import AuthenticationError, ErrorCodes, error_detail
from .permissions import PermissionEvaluator
from .roles import AppRole
from .routes import (
    ACCESS_DENIED_ROUTE,
    ASSIGNMENT_PENDING_PATHS,
    ASSIGNMENT_PENDING_ROUTE,
    DASHBOARD_ROUTE,
    HOME_ROUTE,
    HUB_STAFF_ROUTE,
    LOCATION_STAFF_ROUTE,
    LOGIN_ROUTE,
    ONBOARDING_ROUTE,
    OVERVIEW_ROUTE,
    RESET_PASSWORD_ROUTE,
    is_module_allowed_in_context,
)
from .session import SessionPhase, SessionSnapshot, SessionStateMachine
from .tenancy.context import ContextType
from .trial import trial_status_for_tenant

logger = logging.getLogger(__name__)


# ============================================================================
# DECISIONS
# ============================================================================

@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    redirect_to: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_waiting(self) -> bool:
        return self.reason == "loading"


ALLOW = GuardDecision(allowed=True)
WAIT = GuardDecision(allowed=False, reason="loading")


def evaluate_protected_route(
    snapshot: SessionSnapshot,
    path: str,
    require_onboarding: bool = True,
) -> GuardDecision:
    """Gate for every signed-in page."""
    if snapshot.is_loading or snapshot.phase == SessionPhase.AUTHENTICATING:
        return WAIT

    if not snapshot.is_authenticated:
        return GuardDecision(False, LOGIN_ROUTE, "unauthenticated")

    # Back-office users have no salon profile.
    if snapshot.profile is None:
        return GuardDecision(False, LOGIN_ROUTE, "no_profile")

    if snapshot.user is not None and snapshot.user.requires_password_reset and not path.startswith("/reset-password"):
        return GuardDecision(False, RESET_PASSWORD_ROUTE, "password_reset_required")

    if require_onboarding and not snapshot.has_completed_onboarding:
        return GuardDecision(False, ONBOARDING_ROUTE, "onboarding_required")

    if snapshot.is_assignment_pending:
        if path not in ASSIGNMENT_PENDING_PATHS:
            return GuardDecision(False, ASSIGNMENT_PENDING_ROUTE, "assignment_pending")
    elif path == ASSIGNMENT_PENDING_ROUTE:
        return GuardDecision(False, HOME_ROUTE, "assignment_not_pending")

    return ALLOW


def landing_route(snapshot: SessionSnapshot) -> str:
    """Where a signed-in user goes from public pages (login, signup)."""
    if not snapshot.has_completed_onboarding:
        return ONBOARDING_ROUTE
    if snapshot.is_assignment_pending:
        return ASSIGNMENT_PENDING_ROUTE
    if snapshot.active_context_type == ContextType.OWNER_HUB:
        return OVERVIEW_ROUTE
    return DASHBOARD_ROUTE


def _is_bootstrapping(snapshot: SessionSnapshot) -> bool:
    if snapshot.is_loading or snapshot.phase == SessionPhase.AUTHENTICATING:
        return True
    return snapshot.has_completed_onboarding and (
        snapshot.current_tenant is None or snapshot.current_role is None
    )


def evaluate_module_route(
    snapshot: SessionSnapshot,
    evaluator: PermissionEvaluator,
    module: str,
    path: Optional[str] = None,
    audit: Optional[AuditEmitter] = None,
) -> GuardDecision:
    """
    Gate for a page that belongs to one permission module.

    A permission denial (as opposed to a context mismatch) is recorded as
    one ``access.denied`` audit event.
    """
    if _is_bootstrapping(snapshot):
        return WAIT

    if snapshot.is_assignment_pending:
        return GuardDecision(False, ASSIGNMENT_PENDING_ROUTE, "assignment_pending")

    has_module_access = evaluator.has_permission(module) or (
        module == "appointments" and evaluator.has_permission("appointments:own")
    )
    context_allowed = is_module_allowed_in_context(module, snapshot.active_context_type, path)
    requires_strict_context = path == HUB_STAFF_ROUTE
    owner_bypass = snapshot.current_role == AppRole.OWNER

    if not owner_bypass and requires_strict_context and not context_allowed:
        return GuardDecision(False, LOCATION_STAFF_ROUTE, "context_not_allowed")

    if owner_bypass or (has_module_access and (not requires_strict_context or context_allowed)):
        return ALLOW

    if not has_module_access and audit is not None and snapshot.current_tenant and snapshot.user:
        audit.log(
            snapshot.current_tenant.id,
            AUDIT_ACCESS_DENIED,
            "module",
            snapshot.user.id,
            {
                "module": module,
                "context_type": snapshot.active_context_type.value if snapshot.active_context_type else None,
                "reason": "permission_denied",
            },
        )
    return GuardDecision(False, ACCESS_DENIED_ROUTE, "permission_denied")


def record_page_view(audit: Optional[AuditEmitter], snapshot: SessionSnapshot, path: str) -> None:
    """Emit ``nav.page_view`` for a signed-in user with a tenant."""
    if audit is None or not snapshot.is_authenticated or snapshot.current_tenant is None or snapshot.user is None:
        return
    audit.log(
        snapshot.current_tenant.id,
        AUDIT_PAGE_VIEW,
        "route",
        snapshot.user.id,
        {
            "context_type": snapshot.active_context_type.value if snapshot.active_context_type else None,
            "route": path,
        },
    )


# ============================================================================
# FASTAPI DEPENDENCIES
# ============================================================================

def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        logger.warning("Authorization header missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_detail(ErrorCodes.AUTHENTICATION_REQUIRED, "Missing Authorization header"),
            headers={"WWW-Authenticate": "Bearer"},
        )
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        logger.warning(f"Invalid Authorization header format: {authorization[:20]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_detail(
                ErrorCodes.INVALID_TOKEN, "Invalid Authorization header format. Use: Bearer <token>"
            ),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return parts[1]


async def get_session_state(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> SessionStateMachine:
    """
    Resolve the caller's session from the bearer token.

    Raises:
        HTTPException 401: missing/invalid token, or the session could not be
            established (e.g. forced sign-out after profile provisioning failed)
    """
    token = _bearer_token(authorization)
    registry = request.app.state.sessions
    try:
        machine = await registry.session_for_token(token)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=e.status_code,
            detail=error_detail(ErrorCodes.INVALID_TOKEN, e.message),
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    if not machine.snapshot.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_detail(ErrorCodes.AUTHENTICATION_REQUIRED, "Session could not be established"),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return machine


_DECISION_ERRORS = {
    "loading": (status.HTTP_503_SERVICE_UNAVAILABLE, ErrorCodes.SESSION_LOADING, "Session is still loading"),
    "assignment_pending": (
        status.HTTP_403_FORBIDDEN,
        ErrorCodes.ASSIGNMENT_PENDING,
        "No locations have been assigned to you yet",
    ),
    "context_not_allowed": (
        status.HTTP_403_FORBIDDEN,
        ErrorCodes.CONTEXT_NOT_ALLOWED,
        "This page is not available in the current context",
    ),
    "permission_denied": (
        status.HTTP_403_FORBIDDEN,
        ErrorCodes.AUTHORIZATION_DENIED,
        "You do not have access to this module",
    ),
}


def raise_for_decision(decision: GuardDecision, module: Optional[str] = None) -> None:
    if decision.allowed:
        return
    status_code, code, message = _DECISION_ERRORS.get(
        decision.reason,
        (status.HTTP_403_FORBIDDEN, ErrorCodes.AUTHORIZATION_DENIED, "Access denied"),
    )
    details = {"redirect_to": decision.redirect_to}
    if module:
        details["module"] = module
    raise HTTPException(status_code=status_code, detail=error_detail(code, message, details))


def require_module(module: str, route_path: Optional[str] = None):
    """Dependency factory: the caller must be allowed into ``module``."""

    async def dependency(machine: SessionStateMachine = Depends(get_session_state)) -> SessionStateMachine:
        evaluator = await machine.current_permissions()
        snapshot = machine.snapshot
        decision = evaluate_module_route(snapshot, evaluator, module, route_path, machine.audit)
        if not decision.allowed:
            logger.warning(
                f"Module access denied: user={snapshot.user.id if snapshot.user else None} "
                f"module={module} reason={decision.reason}"
            )
        raise_for_decision(decision, module)
        return machine

    return dependency


async def require_active_subscription(
    machine: SessionStateMachine = Depends(get_session_state),
) -> SessionStateMachine:
    """Block tenants whose trial ended and whose grace window has passed."""
    snapshot = machine.snapshot
    trial = trial_status_for_tenant(snapshot.current_tenant)
    if trial.should_block_access:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=error_detail(
                ErrorCodes.TRIAL_EXPIRED,
                "Your free trial has ended. Subscribe to continue.",
                {"expires_at": trial.expires_at.isoformat() if trial.expires_at else None},
            ),
        )
    return machine
