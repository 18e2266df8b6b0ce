"""
Storage collaborator contracts.

The engine only reads tenants, roles and locations, and reads/writes
permission rules. Implementations raise ``StoreUnavailableError`` on any
transport or database failure; callers decide how to degrade.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence

from ..roles import AppRole, RoleAssignment


@dataclass(frozen=True)
class Profile:
    user_id: str
    full_name: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class Tenant:
    id: str
    name: str
    currency: str = "USD"
    plan: str = "starter"
    subscription_status: str = "trialing"
    trial_ends_at: Optional[datetime] = None


@dataclass(frozen=True)
class Location:
    id: str
    tenant_id: str
    name: str
    is_default: bool = False


@dataclass(frozen=True)
class RolePermissionRule:
    tenant_id: str
    role: AppRole
    module: str
    allowed: bool


@dataclass(frozen=True)
class UserPermissionOverride:
    tenant_id: str
    user_id: str
    module: str
    allowed: bool


class TenantStore(Protocol):
    async def get_profile(self, user_id: str) -> Optional[Profile]:
        ...

    async def create_profile(self, user_id: str, full_name: str, phone: Optional[str] = None) -> Profile:
        ...

    async def list_user_roles(self, user_id: str) -> Sequence[RoleAssignment]:
        ...

    async def list_tenants(self, tenant_ids: Sequence[str]) -> Sequence[Tenant]:
        ...

    async def list_locations(
        self, tenant_id: str, location_ids: Optional[Sequence[str]] = None
    ) -> Sequence[Location]:
        ...

    async def list_staff_location_ids(self, tenant_id: str, user_id: str) -> Sequence[str]:
        ...


class RuleStore(Protocol):
    async def list_role_permissions(self, tenant_id: str) -> Sequence[RolePermissionRule]:
        ...

    async def list_user_overrides(self, tenant_id: str) -> Sequence[UserPermissionOverride]:
        ...

    async def insert_role_permissions(self, rules: Sequence[RolePermissionRule]) -> None:
        ...

    async def upsert_role_permission(self, rule: RolePermissionRule) -> None:
        ...

    async def upsert_user_override(self, override: UserPermissionOverride) -> None:
        ...

    async def delete_user_override(self, tenant_id: str, user_id: str, module: str) -> None:
        ...
