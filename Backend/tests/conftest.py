"""
Pytest configuration and fixtures.

Protocol collaborators (tenant store, rule store, server RPC, auth provider,
audit sink) are replaced by in-memory fakes. SQL store tests run against a
fresh in-memory SQLite database per test.
"""
import asyncio
import uuid
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from salon_access import models  # noqa: F401  (registers tables on Base.metadata)
from salon_access.audit import AuditEmitter, AuditEvent
from salon_access.auth import AuthEvent, AuthSession, AuthUser
from salon_access.core.db import Base
from salon_access.core.errors import ProfileProvisioningError, StoreUnavailableError
from salon_access.permissions import PermissionService
from salon_access.roles import AppRole, RoleAssignment
from salon_access.rpc import RpcResult, ServerContextResolution
from salon_access.session import SessionStateMachine
from salon_access.tenancy.context import ContextPreferenceStore, ContextResolver
from salon_access.tenancy.local_state import MemoryKeyValueStore
from salon_access.tenancy.locations import LocationAssignmentResolver
from salon_access.tenancy.stores import (
    Location,
    Profile,
    RolePermissionRule,
    Tenant,
    UserPermissionOverride,
)


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class FakeTenantStore:
    """TenantStore over plain lists. Add names to ``fail`` to simulate outages."""

    def __init__(self):
        self.profiles: dict[str, Profile] = {}
        self.roles: list[RoleAssignment] = []
        self.tenants: dict[str, Tenant] = {}
        self.locations: list[Location] = []
        self.staff_locations: list[tuple[str, str, str]] = []
        self.fail: set[str] = set()
        self.create_profile_fails = False
        self.calls: list[str] = []
        # tenant_id -> Event; location reads for that tenant wait on it
        self.gates: dict[str, asyncio.Event] = {}

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail:
            raise StoreUnavailableError(operation, "simulated outage")

    # -- helpers -------------------------------------------------------

    def add_profile(self, user_id: str, full_name: str = "Test User") -> Profile:
        profile = Profile(user_id=user_id, full_name=full_name)
        self.profiles[user_id] = profile
        return profile

    def add_tenant(self, name: str = "Bella Salon", **kwargs) -> Tenant:
        tenant = Tenant(id=new_id(), name=name, **kwargs)
        self.tenants[tenant.id] = tenant
        return tenant

    def add_location(self, tenant: Tenant, name: str, is_default: bool = False) -> Location:
        location = Location(id=new_id(), tenant_id=tenant.id, name=name, is_default=is_default)
        self.locations.append(location)
        return location

    def add_member(
        self,
        user_id: str,
        tenant: Tenant,
        role: AppRole,
        locations=(),
        is_active: bool = True,
    ) -> None:
        self.roles.append(RoleAssignment(user_id=user_id, tenant_id=tenant.id, role=role, is_active=is_active))
        for location in locations:
            self.staff_locations.append((tenant.id, user_id, location.id))

    # -- TenantStore ---------------------------------------------------

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        self._check("get_profile")
        return self.profiles.get(user_id)

    async def create_profile(self, user_id: str, full_name: str, phone: Optional[str] = None) -> Profile:
        self._check("create_profile")
        if self.create_profile_fails:
            raise ProfileProvisioningError(user_id)
        profile = Profile(user_id=user_id, full_name=full_name, phone=phone)
        self.profiles[user_id] = profile
        return profile

    async def list_user_roles(self, user_id: str):
        self._check("list_user_roles")
        return [r for r in self.roles if r.user_id == user_id]

    async def list_tenants(self, tenant_ids):
        self._check("list_tenants")
        return [self.tenants[t] for t in tenant_ids if t in self.tenants]

    async def list_locations(self, tenant_id: str, location_ids=None):
        self._check("list_locations")
        if tenant_id in self.gates:
            await self.gates[tenant_id].wait()
        rows = [loc for loc in self.locations if loc.tenant_id == tenant_id]
        if location_ids is not None:
            rows = [loc for loc in rows if loc.id in location_ids]
        return rows

    async def list_staff_location_ids(self, tenant_id: str, user_id: str):
        self._check("list_staff_location_ids")
        if tenant_id in self.gates:
            await self.gates[tenant_id].wait()
        return [loc for (t, u, loc) in self.staff_locations if t == tenant_id and u == user_id]


class FakeRuleStore:
    def __init__(self):
        self.role_permissions: list[RolePermissionRule] = []
        self.overrides: list[UserPermissionOverride] = []
        self.fail: set[str] = set()
        self.calls: list[str] = []

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.fail:
            raise StoreUnavailableError(operation, "simulated outage")

    async def list_role_permissions(self, tenant_id: str):
        self._check("list_role_permissions")
        return [r for r in self.role_permissions if r.tenant_id == tenant_id]

    async def list_user_overrides(self, tenant_id: str):
        self._check("list_user_overrides")
        return [o for o in self.overrides if o.tenant_id == tenant_id]

    async def insert_role_permissions(self, rules):
        self._check("insert_role_permissions")
        self.role_permissions.extend(rules)

    async def upsert_role_permission(self, rule: RolePermissionRule):
        self._check("upsert_role_permission")
        self.role_permissions = [
            r for r in self.role_permissions
            if not (r.tenant_id == rule.tenant_id and r.role == rule.role and r.module == rule.module)
        ]
        self.role_permissions.append(rule)

    async def upsert_user_override(self, override: UserPermissionOverride):
        self._check("upsert_user_override")
        await self.delete_user_override(override.tenant_id, override.user_id, override.module)
        self.overrides.append(override)

    async def delete_user_override(self, tenant_id: str, user_id: str, module: str):
        self._check("delete_user_override")
        self.overrides = [
            o for o in self.overrides
            if not (o.tenant_id == tenant_id and o.user_id == user_id and o.module == module)
        ]


class FakeContextRpc:
    """
    ContextRpc stand-in.

    ``resolution`` / ``routes`` set to None make the matching call fail.
    """

    def __init__(self, resolution: Optional[ServerContextResolution] = None, routes: Optional[list] = None):
        self.resolution = resolution
        self.routes = routes
        self.sync_fails = False
        self.synced: list[tuple] = []
        self.route_requests: list[tuple] = []
        self.audit_events: list[tuple] = []

    async def resolve_user_contexts(self, tenant_id: str):
        if self.resolution is None:
            return RpcResult.failure("http_500")
        return RpcResult.success(self.resolution)

    async def set_active_context(self, tenant_id, context_type, location_id):
        self.synced.append((tenant_id, context_type, location_id))
        if self.sync_fails:
            return RpcResult.failure("transport_error")
        return RpcResult.success(None)

    async def list_accessible_routes(self, tenant_id, context_type, location_id):
        self.route_requests.append((tenant_id, context_type, location_id))
        if self.routes is None:
            return RpcResult.failure("http_500")
        return RpcResult.success(list(self.routes))

    async def log_audit_event(self, tenant_id, action, entity_type, entity_id, metadata):
        self.audit_events.append((tenant_id, action, entity_type, entity_id, metadata))
        return RpcResult.success(None)


class RecordingAuditSink:
    def __init__(self, fail: bool = False):
        self.events: list[AuditEvent] = []
        self.fail = fail

    async def write(self, event: AuditEvent) -> None:
        if self.fail:
            raise RuntimeError("audit sink down")
        self.events.append(event)

    def actions(self) -> list[str]:
        return [event.action for event in self.events]


class FakeAuthProvider:
    """AuthProvider whose session is set directly by the test."""

    def __init__(self, user: Optional[AuthUser] = None):
        self._session = AuthSession(access_token="token", user=user) if user else None
        self._listeners = []
        self.sign_out_calls = 0

    async def get_session(self):
        return self._session

    def on_auth_state_change(self, callback):
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    async def sign_in(self, user: AuthUser):
        self._session = AuthSession(access_token="token", user=user)
        for listener in list(self._listeners):
            await listener(AuthEvent.SIGNED_IN, self._session)

    async def sign_out(self):
        self.sign_out_calls += 1
        self._session = None
        for listener in list(self._listeners):
            await listener(AuthEvent.SIGNED_OUT, None)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def tenant_store() -> FakeTenantStore:
    return FakeTenantStore()


@pytest.fixture
def rule_store() -> FakeRuleStore:
    return FakeRuleStore()


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def audit(audit_sink) -> AuditEmitter:
    return AuditEmitter(audit_sink)


@pytest.fixture
def make_resolver(tenant_store, kv):
    def _make(rpc=None, cache=None) -> ContextResolver:
        return ContextResolver(
            LocationAssignmentResolver(tenant_store, cache=cache),
            ContextPreferenceStore(kv),
            rpc=rpc,
        )

    return _make


@pytest.fixture
def make_machine(tenant_store, rule_store, kv, audit, make_resolver):
    def _make(auth, rpc=None, cache=None) -> SessionStateMachine:
        return SessionStateMachine(
            auth=auth,
            tenant_store=tenant_store,
            context_resolver=make_resolver(rpc=rpc, cache=cache),
            permission_service=PermissionService(rule_store, cache=cache, audit=audit),
            local_store=kv,
            audit=audit,
            rpc=rpc,
            cache=cache,
        )

    return _make


@pytest.fixture
async def sqlite_sessionmaker():
    """Fresh in-memory database with every table created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()
