"""
HTTP surface for the signed-in user's session.

All endpoints live under ``/me`` and act on the caller's own session, which
is looked up (or started) from the bearer token.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from .auth import JwtAuthProvider, decode_access_token
from .core.config import Settings
from .core.errors import AuthenticationError, ErrorCodes, error_detail
from .guards import (
    evaluate_module_route,
    evaluate_protected_route,
    get_session_state,
    record_page_view,
)
from .routes import route_for_path
from .rpc import SupabaseRpcClient
from .session import SessionSnapshot, SessionStateMachine
from .tenancy.context import ContextType
from .tenancy.stores import Tenant
from .trial import trial_status_for_tenant

logger = logging.getLogger(__name__)

SessionFactory = Callable[[JwtAuthProvider], SessionStateMachine]


# ────────────────────────────────────────────────────────────────
# Session registry
# ────────────────────────────────────────────────────────────────

class _Entry:
    def __init__(self, provider: JwtAuthProvider, machine: SessionStateMachine, ready: asyncio.Task):
        self.provider = provider
        self.machine = machine
        self.ready = ready
        self.expires_at: Optional[datetime] = None
        self.last_used: Optional[datetime] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRegistry:
    """
    One SessionStateMachine per user id.

    The first request for a user builds the machine and starts it;
    concurrent requests for the same user wait on that same start. Entries
    whose token has expired, or that sat idle past
    ``session_idle_timeout_seconds``, are evicted on the next lookup.
    """

    def __init__(self, settings: Settings, factory: SessionFactory):
        self.settings = settings
        self.factory = factory
        self._entries: dict[str, _Entry] = {}

    async def session_for_token(self, token: str) -> SessionStateMachine:
        session = decode_access_token(token, self.settings)
        user_id = session.user.id
        await self.evict_stale()

        entry = self._entries.get(user_id)
        if entry is None:
            provider = JwtAuthProvider(self.settings)
            await provider.set_access_token(token)
            machine = self.factory(provider)
            entry = _Entry(provider, machine, asyncio.ensure_future(machine.start()))
            self._entries[user_id] = entry
            logger.info(f"Started session for user {user_id}")
        entry.expires_at = session.expires_at
        entry.last_used = _utcnow()

        await entry.ready

        current = await entry.provider.get_session()
        if current is None:
            # Ended by the session itself (forced sign-out); the next request starts over.
            await self.discard(user_id)
            raise AuthenticationError("Session ended. Please sign in again.")
        if current.access_token != token:
            if isinstance(entry.machine.rpc, SupabaseRpcClient):
                entry.machine.rpc.access_token = token
            await entry.provider.set_access_token(token)
        return entry.machine

    def _is_stale(self, entry: _Entry, now: datetime) -> bool:
        if entry.expires_at is not None and entry.expires_at <= now:
            return True
        idle = timedelta(seconds=self.settings.session_idle_timeout_seconds)
        return entry.last_used is not None and now - entry.last_used > idle

    async def evict_stale(self, now: Optional[datetime] = None) -> int:
        """Discard expired and idle sessions. Returns how many were dropped."""
        now = now or _utcnow()
        stale = [user_id for user_id, entry in self._entries.items() if self._is_stale(entry, now)]
        for user_id in stale:
            logger.info(f"Evicting stale session for user {user_id}")
            await self.discard(user_id)
        return len(stale)

    def get(self, user_id: str) -> Optional[SessionStateMachine]:
        entry = self._entries.get(user_id)
        return entry.machine if entry else None

    async def discard(self, user_id: str) -> None:
        entry = self._entries.pop(user_id, None)
        if entry is None:
            return
        await entry.machine.close()
        if isinstance(entry.machine.rpc, SupabaseRpcClient):
            await entry.machine.rpc.aclose()
        logger.info(f"Discarded session for user {user_id}")

    async def close_all(self) -> None:
        for user_id in list(self._entries):
            await self.discard(user_id)

    def __len__(self) -> int:
        return len(self._entries)


# ────────────────────────────────────────────────────────────────
# Request / response models
# ────────────────────────────────────────────────────────────────

class TenantResponse(BaseModel):
    id: str
    name: str
    currency: str
    plan: str
    subscription_status: str
    trial_ends_at: datetime | None = None

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantResponse":
        return cls(
            id=tenant.id,
            name=tenant.name,
            currency=tenant.currency,
            plan=tenant.plan,
            subscription_status=tenant.subscription_status,
            trial_ends_at=tenant.trial_ends_at,
        )


class ContextOptionResponse(BaseModel):
    type: str
    location_id: str | None
    label: str


class SessionContextResponse(BaseModel):
    """Everything a page needs to decide what to render."""
    user_id: str | None
    current_tenant: TenantResponse | None
    tenants: list[TenantResponse]
    role: str | None
    active_context_type: str | None
    active_location_id: str | None
    assigned_location_ids: list[str]
    scoped_location_ids: list[str]
    available_contexts: list[ContextOptionResponse]
    can_use_owner_hub: bool
    is_assignment_pending: bool
    has_completed_onboarding: bool
    requires_password_change: bool
    is_loading: bool

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> "SessionContextResponse":
        return cls(
            user_id=snapshot.user.id if snapshot.user else None,
            current_tenant=TenantResponse.from_tenant(snapshot.current_tenant) if snapshot.current_tenant else None,
            tenants=[TenantResponse.from_tenant(t) for t in snapshot.tenants],
            role=snapshot.current_role.value if snapshot.current_role else None,
            active_context_type=snapshot.active_context_type.value if snapshot.active_context_type else None,
            active_location_id=snapshot.active_location_id,
            assigned_location_ids=list(snapshot.assigned_location_ids),
            scoped_location_ids=list(snapshot.scoped_location_ids),
            available_contexts=[
                ContextOptionResponse(type=o.type.value, location_id=o.location_id, label=o.label)
                for o in snapshot.available_contexts
            ],
            can_use_owner_hub=snapshot.can_use_owner_hub,
            is_assignment_pending=snapshot.is_assignment_pending,
            has_completed_onboarding=snapshot.has_completed_onboarding,
            requires_password_change=snapshot.requires_password_change,
            is_loading=snapshot.is_loading,
        )


class SetContextRequest(BaseModel):
    context_type: Literal["owner_hub", "location"]
    location_id: str | None = None


class SwitchTenantRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)


class PermissionsResponse(BaseModel):
    role: str | None
    is_owner: bool
    permissions: dict[str, bool]


class FirstRouteResponse(BaseModel):
    route: str


class RouteCheckResponse(BaseModel):
    allowed: bool
    redirect_to: str | None = None
    reason: str | None = None


class TrialResponse(BaseModel):
    is_trialing: bool
    days_remaining: int
    expires_at: datetime | None
    is_expired: bool
    is_grace_period: bool
    grace_days_remaining: int
    should_block_access: bool
    should_show_warning: bool
    should_show_urgent: bool


# ────────────────────────────────────────────────────────────────
# Endpoints
# ────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/me", tags=["session"])


@router.get("/context", response_model=SessionContextResponse)
async def get_context(machine: SessionStateMachine = Depends(get_session_state)):
    return SessionContextResponse.from_snapshot(machine.snapshot)


@router.post("/context", response_model=SessionContextResponse)
async def set_context(
    body: SetContextRequest,
    machine: SessionStateMachine = Depends(get_session_state),
):
    applied = await machine.set_active_context(ContextType(body.context_type), body.location_id)
    if not applied:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_detail(
                ErrorCodes.INVALID_CONTEXT,
                "Requested context is not available",
                {"context_type": body.context_type, "location_id": body.location_id},
            ),
        )
    return SessionContextResponse.from_snapshot(machine.snapshot)


@router.post("/tenant", response_model=SessionContextResponse)
async def switch_tenant(
    body: SwitchTenantRequest,
    machine: SessionStateMachine = Depends(get_session_state),
):
    switched = await machine.set_current_tenant(body.tenant_id)
    if not switched:
        raise HTTPException(status_code=404, detail="Tenant not found")
    return SessionContextResponse.from_snapshot(machine.snapshot)


@router.get("/permissions", response_model=PermissionsResponse)
async def get_permissions(machine: SessionStateMachine = Depends(get_session_state)):
    evaluator = await machine.current_permissions()
    return PermissionsResponse(
        role=evaluator.role.value if evaluator.role else None,
        is_owner=evaluator.is_owner,
        permissions=evaluator.permissions,
    )


@router.get("/first-route", response_model=FirstRouteResponse)
async def get_first_route(
    context_type: Optional[Literal["owner_hub", "location"]] = None,
    location_id: Optional[str] = None,
    machine: SessionStateMachine = Depends(get_session_state),
):
    route = await machine.get_first_allowed_route(
        ContextType(context_type) if context_type else None,
        location_id,
    )
    return FirstRouteResponse(route=route)


@router.get("/route-check", response_model=RouteCheckResponse)
async def check_route(
    path: str,
    machine: SessionStateMachine = Depends(get_session_state),
):
    """Run the page guards for ``path``; an allowed visit is recorded as a page view."""
    evaluator = await machine.current_permissions()
    snapshot = machine.snapshot
    decision = evaluate_protected_route(snapshot, path)
    if decision.allowed:
        definition = route_for_path(path)
        if definition is not None:
            decision = evaluate_module_route(
                snapshot, evaluator, definition.module, path, machine.audit
            )
    if decision.allowed:
        record_page_view(machine.audit, snapshot, path)
    return RouteCheckResponse(allowed=decision.allowed, redirect_to=decision.redirect_to, reason=decision.reason)


@router.get("/trial", response_model=TrialResponse)
async def get_trial(machine: SessionStateMachine = Depends(get_session_state)):
    trial = trial_status_for_tenant(machine.snapshot.current_tenant)
    return TrialResponse(
        is_trialing=trial.is_trialing,
        days_remaining=trial.days_remaining,
        expires_at=trial.expires_at,
        is_expired=trial.is_expired,
        is_grace_period=trial.is_grace_period,
        grace_days_remaining=trial.grace_days_remaining,
        should_block_access=trial.should_block_access,
        should_show_warning=trial.should_show_warning,
        should_show_urgent=trial.should_show_urgent,
    )


@router.post("/sign-out")
async def sign_out(request: Request, machine: SessionStateMachine = Depends(get_session_state)):
    user_id = machine.snapshot.user.id if machine.snapshot.user else None
    await machine.sign_out()
    if user_id:
        await request.app.state.sessions.discard(user_id)
    return {"signed_out": True}
