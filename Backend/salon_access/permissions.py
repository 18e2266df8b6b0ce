"""
Module-level permission evaluation.

Precedence (first match wins):
    1. owner            -> always allowed
    2. user override    -> (tenant, user, module) row
    3. role rule        -> (tenant, role, module) row
    4. built-in default -> DEFAULT_ROLE_PERMISSIONS
    5. anything else    -> denied

The evaluator is a pure function of the loaded rule set and the role.
Rule sets are loaded per tenant through PermissionService and cached
briefly; every mutation made through the service invalidates the cache.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .audit import (
    AUDIT_PERMISSION_OVERRIDE_CHANGED,
    AUDIT_PERMISSION_ROLE_CHANGED,
    AuditEmitter,
)
from .cache import RULES, CacheKey, TTLCache
from .core.errors import AuthorizationError, StoreUnavailableError
from .roles import AppRole
from .tenancy.stores import RolePermissionRule, RuleStore, UserPermissionOverride

logger = logging.getLogger(__name__)


MODULE_LABELS: dict[str, str] = {
    "dashboard": "Dashboard",
    "salons_overview": "Salons Overview",
    "appointments": "All Appointments",
    "appointments:own": "Own Appointments",
    "calendar": "Calendar",
    "customers": "Customers",
    "customers:flag": "Flag Customers",
    "customers:vip": "Make VIP",
    "customers:delete": "Delete Customers",
    "services": "Products & Services",
    "payments": "Payments",
    "reports": "Reports",
    "messaging": "Messaging",
    "journal": "Journal",
    "staff": "Staff Management",
    "audit_log": "Audit Log",
    "settings": "Settings",
    "catalog:edit": "Edit Catalog Items",
    "catalog:delete": "Delete Catalog Items",
    "catalog:request_delete": "Request Catalog Deletion",
    "catalog:archive": "Archive Catalog Items",
    "catalog:flag": "Flag Catalog Items",
}

MODULE_CATALOG: tuple[str, ...] = tuple(MODULE_LABELS)


def _grants(*modules: str) -> dict[str, bool]:
    allowed = set(modules)
    unknown = allowed - set(MODULE_CATALOG)
    if unknown:
        raise ValueError(f"Unknown modules in default table: {sorted(unknown)}")
    return {module: module in allowed for module in MODULE_CATALOG}


# Seed data for every new tenant, and the fallback when a tenant has no rows.
DEFAULT_ROLE_PERMISSIONS: dict[AppRole, dict[str, bool]] = {
    AppRole.OWNER: _grants(*MODULE_CATALOG),
    AppRole.MANAGER: _grants(
        "dashboard", "salons_overview", "appointments", "appointments:own", "calendar",
        "customers", "customers:flag", "customers:vip", "services", "payments", "reports",
        "messaging", "journal", "staff", "catalog:edit", "catalog:request_delete",
        "catalog:archive", "catalog:flag",
    ),
    AppRole.SUPERVISOR: _grants(
        "dashboard", "appointments", "appointments:own", "calendar", "customers",
        "services", "messaging", "catalog:request_delete", "catalog:flag",
    ),
    AppRole.RECEPTIONIST: _grants(
        "dashboard", "appointments", "appointments:own", "calendar", "customers", "messaging",
    ),
    AppRole.STAFF: _grants("appointments:own"),
}


@dataclass(frozen=True)
class PermissionRuleSet:
    role_permissions: tuple[RolePermissionRule, ...] = ()
    user_overrides: tuple[UserPermissionOverride, ...] = ()


EMPTY_RULES = PermissionRuleSet()


class PermissionEvaluator:
    """Answers has_permission(module) for one (user, tenant, role)."""

    def __init__(
        self,
        user_id: Optional[str],
        tenant_id: Optional[str],
        role: Optional[AppRole],
        rules: PermissionRuleSet = EMPTY_RULES,
    ):
        self.user_id = user_id
        self.tenant_id = tenant_id
        self.role = role
        self.rules = rules

    @classmethod
    def deny_all(cls) -> "PermissionEvaluator":
        return cls(None, None, None)

    @property
    def is_owner(self) -> bool:
        return self.role == AppRole.OWNER

    def has_permission(self, module: str) -> bool:
        if not self.user_id or not self.tenant_id or self.role is None:
            return False

        if self.role == AppRole.OWNER:
            return True

        for override in self.rules.user_overrides:
            if (
                override.tenant_id == self.tenant_id
                and override.user_id == self.user_id
                and override.module == module
            ):
                return override.allowed

        for rule in self.rules.role_permissions:
            if rule.tenant_id == self.tenant_id and rule.role == self.role and rule.module == module:
                return rule.allowed

        return DEFAULT_ROLE_PERMISSIONS.get(self.role, {}).get(module, False)

    def require(self, module: str) -> None:
        """
        Raise unless the module is allowed. For service code outside the
        HTTP guards.

        Raises:
            AuthorizationError: module denied for this user
        """
        if not self.has_permission(module):
            raise AuthorizationError(
                f"Access to module '{module}' denied for role {self.role.value if self.role else None}",
                module=module,
            )

    @property
    def permissions(self) -> dict[str, bool]:
        return {module: self.has_permission(module) for module in MODULE_CATALOG}


def default_permission_rows(tenant_id: str) -> list[RolePermissionRule]:
    return [
        RolePermissionRule(tenant_id=tenant_id, role=role, module=module, allowed=allowed)
        for role, modules in DEFAULT_ROLE_PERMISSIONS.items()
        for module, allowed in modules.items()
    ]


async def seed_default_permissions(store: RuleStore, tenant_id: str) -> None:
    """Write the default matrix for a newly onboarded tenant."""
    rows = default_permission_rows(tenant_id)
    await store.insert_role_permissions(rows)
    logger.info(f"Seeded {len(rows)} default role permissions for tenant {tenant_id}")


class PermissionService:
    def __init__(
        self,
        store: RuleStore,
        cache: Optional[TTLCache] = None,
        audit: Optional[AuditEmitter] = None,
    ):
        self.store = store
        self.cache = cache
        self.audit = audit

    async def _fetch_rules(self, tenant_id: str) -> PermissionRuleSet:
        role_rows: Sequence[RolePermissionRule] = await self.store.list_role_permissions(tenant_id)
        overrides: Sequence[UserPermissionOverride] = await self.store.list_user_overrides(tenant_id)
        return PermissionRuleSet(tuple(role_rows), tuple(overrides))

    async def load_rules(self, tenant_id: str) -> PermissionRuleSet:
        """
        Rules for one tenant. A store failure falls back to the previous
        cached rule set, or to no tenant rules (built-in defaults apply).
        """
        if self.cache is None:
            try:
                return await self._fetch_rules(tenant_id)
            except StoreUnavailableError as e:
                logger.error(f"Error fetching permissions for tenant {tenant_id}: {e}")
                return EMPTY_RULES
        return await self.cache.get_or_load(
            CacheKey(RULES, tenant_id),
            lambda: self._fetch_rules(tenant_id),
            EMPTY_RULES,
        )

    async def evaluator_for(
        self, user_id: Optional[str], tenant_id: Optional[str], role: Optional[AppRole]
    ) -> PermissionEvaluator:
        if not user_id or not tenant_id or role is None:
            return PermissionEvaluator.deny_all()
        if role == AppRole.OWNER:
            # Owners are never restricted; skip the fetch.
            return PermissionEvaluator(user_id, tenant_id, role)
        return PermissionEvaluator(user_id, tenant_id, role, await self.load_rules(tenant_id))

    def invalidate(self, tenant_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(tenant_id)

    async def set_user_override(
        self, actor_user_id: str, tenant_id: str, user_id: str, module: str, allowed: bool
    ) -> None:
        await self.store.upsert_user_override(
            UserPermissionOverride(tenant_id=tenant_id, user_id=user_id, module=module, allowed=allowed)
        )
        self.invalidate(tenant_id)
        self._record(
            tenant_id,
            AUDIT_PERMISSION_OVERRIDE_CHANGED,
            user_id,
            {"module": module, "allowed": allowed, "actor_user_id": actor_user_id},
        )

    async def clear_user_override(self, actor_user_id: str, tenant_id: str, user_id: str, module: str) -> None:
        await self.store.delete_user_override(tenant_id, user_id, module)
        self.invalidate(tenant_id)
        self._record(
            tenant_id,
            AUDIT_PERMISSION_OVERRIDE_CHANGED,
            user_id,
            {"module": module, "allowed": None, "actor_user_id": actor_user_id},
        )

    async def set_role_permission(
        self, actor_user_id: str, tenant_id: str, role: AppRole, module: str, allowed: bool
    ) -> None:
        await self.store.upsert_role_permission(
            RolePermissionRule(tenant_id=tenant_id, role=role, module=module, allowed=allowed)
        )
        self.invalidate(tenant_id)
        self._record(
            tenant_id,
            AUDIT_PERMISSION_ROLE_CHANGED,
            actor_user_id,
            {"role": role.value, "module": module, "allowed": allowed},
        )

    def _record(self, tenant_id: str, action: str, entity_id: str, metadata: dict) -> None:
        if self.audit is not None:
            self.audit.log(tenant_id, action, "permission", entity_id, metadata)
