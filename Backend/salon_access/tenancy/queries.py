"""
SQL-backed storage collaborators.

Every query here is tenant-scoped: location, staff and permission reads all
filter on tenant_id explicitly. Database failures are re-raised as
``StoreUnavailableError`` so callers can degrade instead of crashing.

Usage:
    sessionmaker = get_sessionmaker()
    tenants = SqlTenantStore(sessionmaker)
    rules = SqlRuleStore(sessionmaker)
"""

import logging
from typing import Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .. import models
from ..core.errors import ProfileProvisioningError, StoreUnavailableError
from ..roles import RoleAssignment, parse_role
from .stores import (
    Location,
    Profile,
    RolePermissionRule,
    Tenant,
    UserPermissionOverride,
)

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# Row mappers
# ────────────────────────────────────────────────────────────────

def _profile(row: models.Profile) -> Profile:
    return Profile(user_id=row.user_id, full_name=row.full_name, phone=row.phone)


def _tenant(row: models.Tenant) -> Tenant:
    return Tenant(
        id=row.id,
        name=row.name,
        currency=row.currency,
        plan=row.plan,
        subscription_status=row.subscription_status,
        trial_ends_at=row.trial_ends_at,
    )


def _location(row: models.Location) -> Location:
    return Location(id=row.id, tenant_id=row.tenant_id, name=row.name, is_default=row.is_default)


# ────────────────────────────────────────────────────────────────
# Tenants, roles, locations
# ────────────────────────────────────────────────────────────────

class SqlTenantStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(models.Profile).where(models.Profile.user_id == user_id)
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("get_profile", str(e)) from e
        return _profile(row) if row else None

    async def create_profile(self, user_id: str, full_name: str, phone: Optional[str] = None) -> Profile:
        """
        Insert the profile row. A concurrent insert for the same user loses on
        the unique constraint; the row that won is returned in that case.
        """
        try:
            async with self.session_factory() as session:
                row = models.Profile(user_id=user_id, full_name=full_name, phone=phone)
                session.add(row)
                await session.commit()
                logger.info(f"Created profile for user {user_id}")
                return Profile(user_id=user_id, full_name=full_name, phone=phone)
        except IntegrityError:
            existing = await self.get_profile(user_id)
            if existing is not None:
                return existing
            raise ProfileProvisioningError(user_id)
        except SQLAlchemyError as e:
            raise ProfileProvisioningError(user_id, f"Could not create profile for user {user_id}: {e}") from e

    async def list_user_roles(self, user_id: str) -> Sequence[RoleAssignment]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(models.UserRole)
                    .where(models.UserRole.user_id == user_id)
                    .order_by(models.UserRole.created_at, models.UserRole.id)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("list_user_roles", str(e)) from e

        assignments = []
        for row in rows:
            role = parse_role(row.role)
            if role is None:
                continue
            assignments.append(
                RoleAssignment(user_id=row.user_id, tenant_id=row.tenant_id, role=role, is_active=row.is_active)
            )
        return assignments

    async def list_tenants(self, tenant_ids: Sequence[str]) -> Sequence[Tenant]:
        if not tenant_ids:
            return []
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(models.Tenant).where(models.Tenant.id.in_(list(tenant_ids)))
                )
                rows = {row.id: row for row in result.scalars().all()}
        except SQLAlchemyError as e:
            raise StoreUnavailableError("list_tenants", str(e)) from e
        # Preserve the caller's (role assignment) order.
        return [_tenant(rows[tenant_id]) for tenant_id in tenant_ids if tenant_id in rows]

    async def list_locations(
        self, tenant_id: str, location_ids: Optional[Sequence[str]] = None
    ) -> Sequence[Location]:
        stmt = select(models.Location).where(models.Location.tenant_id == tenant_id)
        if location_ids is not None:
            if not location_ids:
                return []
            stmt = stmt.where(models.Location.id.in_(list(location_ids)))
        stmt = stmt.order_by(models.Location.name, models.Location.id)
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return [_location(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StoreUnavailableError("list_locations", str(e)) from e

    async def list_staff_location_ids(self, tenant_id: str, user_id: str) -> Sequence[str]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(models.StaffLocation.location_id)
                    .where(
                        models.StaffLocation.tenant_id == tenant_id,
                        models.StaffLocation.user_id == user_id,
                    )
                    .order_by(models.StaffLocation.created_at, models.StaffLocation.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreUnavailableError("list_staff_location_ids", str(e)) from e


# ────────────────────────────────────────────────────────────────
# Permission rules
# ────────────────────────────────────────────────────────────────

class SqlRuleStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_role_permissions(self, tenant_id: str) -> Sequence[RolePermissionRule]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(models.RolePermission).where(models.RolePermission.tenant_id == tenant_id)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("list_role_permissions", str(e)) from e

        rules = []
        for row in rows:
            role = parse_role(row.role)
            if role is not None:
                rules.append(RolePermissionRule(row.tenant_id, role, row.module, row.allowed))
        return rules

    async def list_user_overrides(self, tenant_id: str) -> Sequence[UserPermissionOverride]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(models.UserPermissionOverride).where(
                        models.UserPermissionOverride.tenant_id == tenant_id
                    )
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("list_user_overrides", str(e)) from e
        return [UserPermissionOverride(row.tenant_id, row.user_id, row.module, row.allowed) for row in rows]

    async def insert_role_permissions(self, rules: Sequence[RolePermissionRule]) -> None:
        if not rules:
            return
        try:
            async with self.session_factory() as session:
                session.add_all(
                    models.RolePermission(
                        tenant_id=rule.tenant_id,
                        role=rule.role.value,
                        module=rule.module,
                        allowed=rule.allowed,
                    )
                    for rule in rules
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("insert_role_permissions", str(e)) from e

    async def upsert_role_permission(self, rule: RolePermissionRule) -> None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(models.RolePermission).where(
                        models.RolePermission.tenant_id == rule.tenant_id,
                        models.RolePermission.role == rule.role.value,
                        models.RolePermission.module == rule.module,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    session.add(
                        models.RolePermission(
                            tenant_id=rule.tenant_id,
                            role=rule.role.value,
                            module=rule.module,
                            allowed=rule.allowed,
                        )
                    )
                else:
                    row.allowed = rule.allowed
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("upsert_role_permission", str(e)) from e

    async def upsert_user_override(self, override: UserPermissionOverride) -> None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(models.UserPermissionOverride).where(
                        models.UserPermissionOverride.tenant_id == override.tenant_id,
                        models.UserPermissionOverride.user_id == override.user_id,
                        models.UserPermissionOverride.module == override.module,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    session.add(
                        models.UserPermissionOverride(
                            tenant_id=override.tenant_id,
                            user_id=override.user_id,
                            module=override.module,
                            allowed=override.allowed,
                        )
                    )
                else:
                    row.allowed = override.allowed
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("upsert_user_override", str(e)) from e

    async def delete_user_override(self, tenant_id: str, user_id: str, module: str) -> None:
        try:
            async with self.session_factory() as session:
                await session.execute(
                    delete(models.UserPermissionOverride).where(
                        models.UserPermissionOverride.tenant_id == tenant_id,
                        models.UserPermissionOverride.user_id == user_id,
                        models.UserPermissionOverride.module == module,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError("delete_user_override", str(e)) from e
