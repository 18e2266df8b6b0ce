"""
Location assignment resolution.

Owners see every location of their tenant. Every other role sees exactly
the locations it was assigned through staff-location rows; an empty set is
a valid answer and puts the user in the assignment-pending state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..cache import LOCATIONS, CacheKey, TTLCache
from ..core.errors import StoreUnavailableError
from ..roles import AppRole
from .stores import Location, TenantStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocationAssignment:
    """
    Attributes:
        assigned_location_ids: ids the user may operate on, in store order
        locations: the matching Location records (labels, default flag)
    """

    assigned_location_ids: tuple[str, ...] = ()
    locations: tuple[Location, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.assigned_location_ids

    def default_location(self) -> Optional[Location]:
        for location in self.locations:
            if location.is_default:
                return location
        return self.locations[0] if self.locations else None


EMPTY_ASSIGNMENT = LocationAssignment()


def _dedupe(ids) -> tuple[str, ...]:
    seen: list[str] = []
    for location_id in ids:
        if location_id and location_id not in seen:
            seen.append(location_id)
    return tuple(seen)


class LocationAssignmentResolver:
    def __init__(self, store: TenantStore, cache: Optional[TTLCache] = None):
        self.store = store
        self.cache = cache

    async def resolve(self, user_id: str, tenant_id: str, role: Optional[AppRole]) -> LocationAssignment:
        """
        Map (user, tenant, role) to the allowed location set.

        Store failures never propagate: the result degrades to the empty set
        (or the last cached value) with a warning.
        """
        if self.cache is None:
            try:
                return await self._load(user_id, tenant_id, role)
            except StoreUnavailableError as e:
                logger.warning(
                    f"Location lookup failed for user {user_id} in tenant {tenant_id}; "
                    f"continuing with no scope: {e}"
                )
                return EMPTY_ASSIGNMENT

        role_key = role.value if role else "none"
        key = CacheKey(f"{LOCATIONS}:{role_key}", tenant_id, user_id)
        return await self.cache.get_or_load(
            key,
            lambda: self._load(user_id, tenant_id, role),
            EMPTY_ASSIGNMENT,
        )

    async def _load(self, user_id: str, tenant_id: str, role: Optional[AppRole]) -> LocationAssignment:
        if role == AppRole.OWNER:
            locations = tuple(await self.store.list_locations(tenant_id))
            return LocationAssignment(
                assigned_location_ids=tuple(location.id for location in locations),
                locations=locations,
            )

        assigned = _dedupe(await self.store.list_staff_location_ids(tenant_id, user_id))
        if not assigned:
            logger.debug(f"User {user_id} has no location assignments in tenant {tenant_id}")
            return EMPTY_ASSIGNMENT

        rows = await self.store.list_locations(tenant_id, assigned)
        # Assignments to locations that no longer exist (or belong to another
        # tenant) grant nothing and do not count towards hub eligibility.
        by_id = {row.id: row for row in rows if row.tenant_id == tenant_id}
        locations = tuple(by_id[location_id] for location_id in assigned if location_id in by_id)
        if len(locations) < len(assigned):
            logger.warning(
                f"Ignoring {len(assigned) - len(locations)} stale location assignment(s) "
                f"for user {user_id} in tenant {tenant_id}"
            )
        return LocationAssignment(
            assigned_location_ids=tuple(location.id for location in locations),
            locations=locations,
        )
