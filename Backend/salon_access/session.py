"""
Session state machine.

The single owner of mutable session state. Pages and route guards only
read ``snapshot`` and call the mutators below; resolvers stay pure.

STATES:
    anonymous -> authenticating -> resolved
                               \\-> error -> anonymous   (forced sign-out)

SUPERSESSION:
    Every login, tenant switch, context switch and sign-out takes a new
    generation token. Results computed under an older token are dropped
    instead of applied, and nothing is applied after ``close()``. Refreshes
    reuse the current token, so they yield to those writers and never
    supersede them. Nothing here holds a lock across an await;
    re-resolution is idempotent.

PERMISSIONS:
    The evaluator remembers the rule-cache version it was built against.
    Once the cache is invalidated for the current tenant it denies
    everything until ``current_permissions()`` rebuilds it.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .audit import AUDIT_AUTH_LOGIN, AUDIT_CONTEXT_SWITCH, AuditEmitter
from .auth import AuthEvent, AuthProvider, AuthSession, AuthUser
from .cache import ROLES, CacheKey, TTLCache
from .core.errors import ProfileProvisioningError, StoreUnavailableError
from .permissions import PermissionEvaluator, PermissionService
from .roles import HUB_ELIGIBLE_ROLES, AppRole, RoleStore
from .routes import ASSIGNMENT_PENDING_ROUTE, DASHBOARD_ROUTE, fallback_first_route
from .rpc import ContextRpc
from .tenancy.context import EMPTY_CONTEXT, ActiveContext, ContextOption, ContextResolver, ContextType, ResolvedContext
from .tenancy.local_state import CURRENT_TENANT_KEY, KeyValueStore, clear_session_keys
from .tenancy.stores import Profile, Tenant, TenantStore

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATING = "authenticating"
    RESOLVED = "resolved"
    ERROR = "error"


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view handed to pages and guards."""

    phase: SessionPhase = SessionPhase.ANONYMOUS
    user: Optional[AuthUser] = None
    profile: Optional[Profile] = None
    tenants: tuple[Tenant, ...] = ()
    roles: RoleStore = field(default_factory=RoleStore)
    current_tenant: Optional[Tenant] = None
    context: ResolvedContext = EMPTY_CONTEXT
    is_loading: bool = False
    requires_password_change: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.phase == SessionPhase.RESOLVED and self.user is not None

    @property
    def has_completed_onboarding(self) -> bool:
        return len(self.tenants) > 0

    @property
    def is_assignment_pending(self) -> bool:
        return self.context.is_assignment_pending

    @property
    def active_context_type(self) -> Optional[ContextType]:
        return self.context.active_context_type

    @property
    def active_location_id(self) -> Optional[str]:
        return self.context.active_location_id

    @property
    def assigned_location_ids(self) -> tuple[str, ...]:
        return self.context.assigned_location_ids

    @property
    def available_contexts(self) -> tuple[ContextOption, ...]:
        return self.context.available_contexts

    @property
    def can_use_owner_hub(self) -> bool:
        return self.context.can_use_owner_hub

    @property
    def current_role(self) -> Optional[AppRole]:
        return self.context.current_role

    @property
    def is_hub_context(self) -> bool:
        return self.active_context_type == ContextType.OWNER_HUB

    @property
    def scoped_location_ids(self) -> tuple[str, ...]:
        """
        Locations every data query must be filtered to.

        Location context: just the active location. Hub context: every
        tenant location for owners, the assigned set for managers and
        supervisors, nothing for anyone else.
        """
        if self.active_context_type == ContextType.LOCATION:
            return (self.active_location_id,) if self.active_location_id else ()
        if self.active_context_type == ContextType.OWNER_HUB:
            if self.current_role == AppRole.OWNER or self.current_role in HUB_ELIGIBLE_ROLES:
                return self.assigned_location_ids
        return ()

    @property
    def has_scope(self) -> bool:
        return len(self.scoped_location_ids) > 0


@dataclass(frozen=True)
class _BoundEvaluator:
    """An evaluator plus the rule-cache version and time it was built at."""

    evaluator: PermissionEvaluator
    tenant_id: Optional[str] = None
    version: Optional[tuple[int, int]] = None
    built_at: float = 0.0


DENY_ALL = _BoundEvaluator(PermissionEvaluator.deny_all())


class SessionStateMachine:
    def __init__(
        self,
        auth: AuthProvider,
        tenant_store: TenantStore,
        context_resolver: ContextResolver,
        permission_service: PermissionService,
        local_store: KeyValueStore,
        audit: Optional[AuditEmitter] = None,
        rpc: Optional[ContextRpc] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.auth = auth
        self.tenant_store = tenant_store
        self.context_resolver = context_resolver
        self.permission_service = permission_service
        self.local_store = local_store
        self.audit = audit
        self.rpc = rpc
        self.cache = cache

        self._snapshot = SessionSnapshot()
        self._bound = DENY_ALL
        self._generation = 0
        self._closed = False
        self._unsubscribe = None
        self._profile_repair_attempted: set[str] = set()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def permissions(self) -> PermissionEvaluator:
        """
        The current evaluator. Deny-all until a context is resolved, and
        deny-all once the rule cache was invalidated for the current tenant
        until ``current_permissions()`` rebuilds it.
        """
        if self._snapshot.phase != SessionPhase.RESOLVED or self._snapshot.is_loading:
            return PermissionEvaluator.deny_all()
        if self._is_invalidated(self._bound):
            return PermissionEvaluator.deny_all()
        return self._bound.evaluator

    async def current_permissions(self) -> PermissionEvaluator:
        """
        The current evaluator, rebuilt first when the rule cache was
        invalidated since it was built or it outlived the cache TTL.
        """
        snap = self._snapshot
        if (
            snap.phase == SessionPhase.RESOLVED
            and not snap.is_loading
            and (self._is_invalidated(self._bound) or self._is_expired(self._bound))
        ):
            await self._reload_permissions()
        return self.permissions

    def has_permission(self, module: str) -> bool:
        return self.permissions.has_permission(module)

    def _is_invalidated(self, bound: _BoundEvaluator) -> bool:
        cache = self.permission_service.cache
        if bound.tenant_id is None or cache is None:
            return False
        return cache.version(bound.tenant_id) != bound.version

    def _is_expired(self, bound: _BoundEvaluator) -> bool:
        if bound.tenant_id is None:
            return False
        cache = self.permission_service.cache
        if cache is None:
            # Nothing signals rule changes without a cache; always reload.
            return True
        return cache.now() - bound.built_at >= cache.ttl_seconds

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Generation tokens
    # ------------------------------------------------------------------

    def _begin(self) -> int:
        self._generation += 1
        return self._generation

    def _is_current(self, token: int) -> bool:
        return not self._closed and token == self._generation

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> SessionSnapshot:
        """Subscribe to the auth provider and resolve any live session."""
        if self._unsubscribe is None:
            self._unsubscribe = self.auth.on_auth_state_change(self.handle_auth_event)
        session = await self.auth.get_session()
        if session is None:
            self._reset()
        else:
            await self._authenticate(session)
        return self._snapshot

    async def handle_auth_event(self, event: AuthEvent, session: Optional[AuthSession]) -> None:
        if self._closed:
            return
        logger.debug(f"Auth state changed: {event.value} {session.user.id if session else None}")
        if event == AuthEvent.SIGNED_OUT or session is None:
            self._reset()
            return
        current = self._snapshot
        if (
            event == AuthEvent.TOKEN_REFRESHED
            and current.phase == SessionPhase.RESOLVED
            and current.user is not None
            and current.user.id == session.user.id
        ):
            return
        await self._authenticate(session)

    async def close(self) -> None:
        """Tear down: no in-flight work may touch state after this."""
        self._closed = True
        self._generation += 1
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _reset(self) -> None:
        self._begin()
        self._snapshot = SessionSnapshot()
        self._bound = DENY_ALL
        self._profile_repair_attempted.clear()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def _authenticate(self, session: AuthSession) -> None:
        token = self._begin()
        user = session.user
        self._snapshot = replace(self._snapshot, phase=SessionPhase.AUTHENTICATING, is_loading=True)

        profile = await self._ensure_profile(user)
        if not self._is_current(token):
            return
        if profile is None:
            await self._force_sign_out()
            return

        roles, tenants = await self._load_roles_and_tenants(user.id)
        if not self._is_current(token):
            return

        stored_tenant_id = self.local_store.get(CURRENT_TENANT_KEY)
        current_tenant = next((t for t in tenants if t.id == stored_tenant_id), tenants[0] if tenants else None)

        context, bound = await self._resolve_tenant(user.id, current_tenant, roles)
        if not self._is_current(token):
            logger.debug(f"Discarding superseded login resolution for user {user.id}")
            return

        self._snapshot = SessionSnapshot(
            phase=SessionPhase.RESOLVED,
            user=user,
            profile=profile,
            tenants=tenants,
            roles=roles,
            current_tenant=current_tenant,
            context=context,
            is_loading=False,
            requires_password_change=user.requires_password_change,
        )
        self._bound = bound

        if current_tenant is not None:
            self._audit(
                current_tenant.id,
                AUDIT_AUTH_LOGIN,
                "auth",
                user.id,
                {"context_type": context.active_context_type.value if context.active_context_type else None},
            )
        logger.info(f"Session resolved for user {user.id} (tenant={current_tenant.id if current_tenant else None})")

    async def _ensure_profile(self, user: AuthUser) -> Optional[Profile]:
        """
        Load the profile, creating it once per session when missing.

        Returns None when the profile cannot be provided; the caller then
        forces a sign-out.
        """
        try:
            profile = await self.tenant_store.get_profile(user.id)
        except StoreUnavailableError as e:
            logger.error(f"Error fetching profile for user {user.id}: {e}")
            profile = None
        if profile is not None:
            return profile

        if user.id in self._profile_repair_attempted:
            logger.error(f"Profile for user {user.id} still missing after self-heal attempt")
            return None
        self._profile_repair_attempted.add(user.id)

        logger.info(f"Profile not found for user {user.id} - attempting to create")
        try:
            return await self.tenant_store.create_profile(
                user.id,
                user.display_name(),
                user.user_metadata.get("phone"),
            )
        except (StoreUnavailableError, ProfileProvisioningError) as e:
            logger.error(f"Failed to create profile for user {user.id}: {e}")
            return None

    async def _force_sign_out(self) -> None:
        logger.warning("Forcing sign out - user data not found")
        self._begin()
        self._snapshot = SessionSnapshot(phase=SessionPhase.ERROR)
        self._bound = DENY_ALL
        clear_session_keys(self.local_store)
        try:
            await self.auth.sign_out()
        finally:
            self._reset()

    async def _load_roles(self, user_id: str) -> RoleStore:
        async def fetch() -> RoleStore:
            return RoleStore(await self.tenant_store.list_user_roles(user_id))

        if self.cache is not None:
            return await self.cache.get_or_load(CacheKey(ROLES, None, user_id), fetch, RoleStore())
        try:
            return await fetch()
        except StoreUnavailableError as e:
            logger.error(f"Error fetching roles for user {user_id}: {e}")
            return RoleStore()

    async def _load_roles_and_tenants(self, user_id: str) -> tuple[RoleStore, tuple[Tenant, ...]]:
        roles = await self._load_roles(user_id)
        tenant_ids = roles.tenant_ids()
        if not tenant_ids:
            return roles, ()
        try:
            tenants = tuple(await self.tenant_store.list_tenants(tenant_ids))
        except StoreUnavailableError as e:
            logger.error(f"Error fetching tenants for user {user_id}: {e}")
            return roles, ()
        return roles, tenants

    async def _resolve_tenant(
        self,
        user_id: str,
        tenant: Optional[Tenant],
        roles: RoleStore,
    ) -> tuple[ResolvedContext, _BoundEvaluator]:
        if tenant is None:
            return EMPTY_CONTEXT, DENY_ALL
        role = roles.role_for(tenant.id)
        context = await self.context_resolver.resolve(user_id, tenant.id, role)
        return context, await self._bind_evaluator(user_id, tenant.id, role)

    async def _bind_evaluator(self, user_id: str, tenant_id: str, role: Optional[AppRole]) -> _BoundEvaluator:
        cache = self.permission_service.cache
        # Read the version before loading so an invalidation during the load is seen.
        version = cache.version(tenant_id) if cache is not None else None
        built_at = cache.now() if cache is not None else 0.0
        evaluator = await self.permission_service.evaluator_for(user_id, tenant_id, role)
        return _BoundEvaluator(evaluator, tenant_id, version, built_at)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    async def set_current_tenant(self, tenant_id: str) -> bool:
        """
        Switch tenant. The previous snapshot stays visible (flagged loading)
        until the new tenant is resolved.
        """
        snap = self._snapshot
        if snap.phase != SessionPhase.RESOLVED or snap.user is None:
            return False
        tenant = next((t for t in snap.tenants if t.id == tenant_id), None)
        if tenant is None:
            logger.warning(f"User {snap.user.id} cannot switch to unknown tenant {tenant_id}")
            return False

        self.local_store.set(CURRENT_TENANT_KEY, tenant.id)
        token = self._begin()
        self._snapshot = replace(snap, current_tenant=tenant, is_loading=True)

        context, bound = await self._resolve_tenant(snap.user.id, tenant, snap.roles)
        if not self._is_current(token):
            logger.debug(f"Discarding superseded switch to tenant {tenant.id}")
            return False

        self._snapshot = replace(self._snapshot, current_tenant=tenant, context=context, is_loading=False)
        self._bound = bound
        return True

    async def set_active_context(self, context_type, location_id: Optional[str] = None) -> bool:
        """
        Switch between the owner hub and a single location.

        Requests the current resolution does not offer are ignored.
        Returns True when the switch was applied.
        """
        snap = self._snapshot
        if snap.phase != SessionPhase.RESOLVED or snap.is_loading:
            return False
        if snap.current_tenant is None or snap.user is None:
            return False

        try:
            context_type = ContextType(context_type)
        except ValueError:
            logger.warning(f"Ignoring unknown context type {context_type!r}")
            return False
        if context_type == ContextType.OWNER_HUB and not snap.can_use_owner_hub:
            return False
        if context_type == ContextType.LOCATION and (
            not location_id or not snap.context.offers(ContextType.LOCATION, location_id)
        ):
            return False

        next_context = (
            ActiveContext.owner_hub() if context_type == ContextType.OWNER_HUB else ActiveContext.location(location_id)
        )
        tenant_id = snap.current_tenant.id
        token = self._begin()
        await self.context_resolver.persist(tenant_id, next_context)
        if not self._is_current(token):
            return False

        self._snapshot = replace(
            self._snapshot,
            context=replace(
                self._snapshot.context,
                active_context_type=next_context.type,
                active_location_id=next_context.location_id,
            ),
        )
        self._audit(
            tenant_id,
            AUDIT_CONTEXT_SWITCH,
            "staff_session",
            snap.user.id,
            {"context_type": next_context.type.value, "location_id": next_context.location_id},
        )
        return True

    async def get_first_allowed_route(
        self,
        context_type: Optional[ContextType] = None,
        location_id: Optional[str] = None,
    ) -> str:
        """
        First route the user may land on.

        Assignment-pending users always get the pending route. Otherwise the
        server ranking is used when it answers with at least one route, and
        the context-type default when it does not.
        """
        snap = self._snapshot
        if snap.is_assignment_pending:
            return ASSIGNMENT_PENDING_ROUTE
        if snap.current_tenant is None:
            return DASHBOARD_ROUTE

        if context_type is not None:
            try:
                context_type = ContextType(context_type)
            except ValueError:
                logger.warning(f"Ignoring unknown context type {context_type!r}")
                context_type = None
        if context_type is None:
            context_type = snap.active_context_type
            location_id = snap.active_location_id

        if self.rpc is not None:
            result = await self.rpc.list_accessible_routes(
                snap.current_tenant.id,
                context_type.value if context_type else None,
                location_id,
            )
            if result.ok and result.value:
                return result.value[0]
            if not result.ok:
                logger.error(f"Failed to resolve first allowed route: {result.reason}")
        return fallback_first_route(context_type)

    # Refreshes never take a generation token of their own: they apply only
    # while no login, switch or sign-out has started since they began, and
    # they never supersede one.

    def _refreshable(self, snap: SessionSnapshot) -> bool:
        if snap.phase != SessionPhase.RESOLVED or snap.user is None:
            return False
        if snap.is_loading:
            logger.debug("Skipping refresh while a login or tenant switch is in flight")
            return False
        return True

    async def refresh_profile(self) -> None:
        snap = self._snapshot
        if snap.user is None:
            return
        token = self._generation
        try:
            profile = await self.tenant_store.get_profile(snap.user.id)
        except StoreUnavailableError as e:
            logger.error(f"Error refreshing profile for user {snap.user.id}: {e}")
            return
        if self._is_current(token):
            self._snapshot = replace(self._snapshot, profile=profile)

    async def refresh_tenants(self) -> None:
        """Reload roles and tenants, then re-resolve the current tenant."""
        snap = self._snapshot
        if not self._refreshable(snap):
            return
        user_id = snap.user.id
        if self.cache is not None:
            self.cache.invalidate(user_id=user_id)
        token = self._generation

        roles, tenants = await self._load_roles_and_tenants(user_id)
        if not self._is_current(token):
            return
        previous_id = snap.current_tenant.id if snap.current_tenant else None
        current_tenant = next((t for t in tenants if t.id == previous_id), tenants[0] if tenants else None)

        context, bound = await self._resolve_tenant(user_id, current_tenant, roles)
        if not self._is_current(token):
            return
        self._snapshot = replace(
            self._snapshot,
            tenants=tenants,
            roles=roles,
            current_tenant=current_tenant,
            context=context,
        )
        self._bound = bound

    async def refresh_permissions(self) -> None:
        """Reload rule sets for the current tenant."""
        if self._refreshable(self._snapshot):
            await self._reload_permissions()

    async def _reload_permissions(self) -> None:
        snap = self._snapshot
        if snap.user is None or snap.current_tenant is None:
            return
        user_id, tenant_id = snap.user.id, snap.current_tenant.id
        token = self._generation

        role = (await self._load_roles(user_id)).role_for(tenant_id)
        if not self._is_current(token):
            return
        if role != snap.roles.role_for(tenant_id):
            # Role change moves location scope and hub eligibility too.
            logger.info(f"Role for user {user_id} in tenant {tenant_id} changed; re-resolving tenant")
            await self.refresh_tenants()
            return

        bound = await self._bind_evaluator(user_id, tenant_id, role)
        if self._is_current(token):
            self._bound = bound

    def clear_password_change_flag(self) -> None:
        self._snapshot = replace(self._snapshot, requires_password_change=False)

    async def sign_out(self) -> None:
        """Full local sign-out: clear persisted state, end the auth session."""
        self._begin()
        self._snapshot = replace(self._snapshot, is_loading=True)
        clear_session_keys(self.local_store)
        try:
            await self.auth.sign_out()
        finally:
            self._reset()

    # ------------------------------------------------------------------

    def _audit(self, tenant_id: str, action: str, entity_type: str, entity_id: str, metadata: dict) -> None:
        if self.audit is not None:
            self.audit.log(tenant_id, action, entity_type, entity_id, metadata)
