"""
Active context resolution.

A user works either through the cross-location owner hub or pinned to one
location. For a (user, tenant, role) this module computes which contexts
are available, re-validates whatever preference was persisted earlier and
settles on one active context.

Resolution order (first valid wins):
    1. stored owner_hub     (only while the user may still use the hub)
    2. stored location      (only while the location is still available)
    3. server default       (when the authoritative resolver answers)
    4. owner_hub if eligible, else the default/first available location,
       else no context at all

Stale or invalid stored state is corrected silently, never surfaced.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..roles import HUB_ELIGIBLE_ROLES, AppRole
from ..rpc import ContextRpc
from .local_state import KeyValueStore, context_key
from .locations import LocationAssignment, LocationAssignmentResolver

logger = logging.getLogger(__name__)

OWNER_HUB_LABEL = "Owner Hub"

# Managers and supervisors need more than one location to use the hub.
OWNER_HUB_MIN_LOCATIONS = 2


class ContextType(str, Enum):
    OWNER_HUB = "owner_hub"
    LOCATION = "location"


@dataclass(frozen=True)
class ActiveContext:
    type: ContextType
    location_id: Optional[str] = None

    def __post_init__(self):
        if self.type == ContextType.OWNER_HUB and self.location_id is not None:
            raise ValueError("owner_hub context cannot carry a location_id")

    @classmethod
    def owner_hub(cls) -> "ActiveContext":
        return cls(ContextType.OWNER_HUB)

    @classmethod
    def location(cls, location_id: Optional[str]) -> "ActiveContext":
        return cls(ContextType.LOCATION, location_id)

    def to_json(self) -> str:
        return json.dumps({"type": self.type.value, "locationId": self.location_id})

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["ActiveContext"]:
        """Parse a persisted preference; anything unrecognised is None."""
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        if parsed.get("type") == ContextType.OWNER_HUB.value:
            return cls.owner_hub()
        if parsed.get("type") == ContextType.LOCATION.value:
            return cls.location(parsed.get("locationId") or None)
        return None


@dataclass(frozen=True)
class ContextOption:
    type: ContextType
    location_id: Optional[str]
    label: str


@dataclass(frozen=True)
class ResolvedContext:
    active_context_type: Optional[ContextType] = None
    active_location_id: Optional[str] = None
    assigned_location_ids: tuple[str, ...] = ()
    available_contexts: tuple[ContextOption, ...] = ()
    can_use_owner_hub: bool = False
    current_role: Optional[AppRole] = None

    @property
    def active_context(self) -> Optional[ActiveContext]:
        if self.active_context_type is None:
            return None
        if self.active_context_type == ContextType.OWNER_HUB:
            return ActiveContext.owner_hub()
        return ActiveContext.location(self.active_location_id)

    @property
    def is_assignment_pending(self) -> bool:
        return is_assignment_pending(self.current_role, self.assigned_location_ids)

    def offers(self, context_type: ContextType, location_id: Optional[str] = None) -> bool:
        if context_type == ContextType.OWNER_HUB:
            return self.can_use_owner_hub
        return any(
            option.type == ContextType.LOCATION and option.location_id == location_id
            for option in self.available_contexts
        )


EMPTY_CONTEXT = ResolvedContext()


def can_use_owner_hub(role: Optional[AppRole], assigned_count: int) -> bool:
    if role == AppRole.OWNER:
        return True
    return role in HUB_ELIGIBLE_ROLES and assigned_count >= OWNER_HUB_MIN_LOCATIONS


def is_assignment_pending(role: Optional[AppRole], assigned_location_ids) -> bool:
    return role is not None and role != AppRole.OWNER and len(assigned_location_ids) == 0


def build_available_contexts(hub_allowed: bool, assignment: LocationAssignment) -> tuple[ContextOption, ...]:
    options: list[ContextOption] = []
    if hub_allowed:
        options.append(ContextOption(ContextType.OWNER_HUB, None, OWNER_HUB_LABEL))
    for location in assignment.locations:
        options.append(ContextOption(ContextType.LOCATION, location.id, location.name))
    return tuple(options)


class ContextPreferenceStore:
    """Per-tenant persisted context preference on top of a KeyValueStore."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load(self, tenant_id: str) -> Optional[ActiveContext]:
        return ActiveContext.from_json(self.store.get(context_key(tenant_id)))

    def save(self, tenant_id: str, context: Optional[ActiveContext]) -> None:
        if context is None:
            self.store.remove(context_key(tenant_id))
            return
        self.store.set(context_key(tenant_id), context.to_json())


class ContextResolver:
    def __init__(
        self,
        locations: LocationAssignmentResolver,
        preferences: ContextPreferenceStore,
        rpc: Optional[ContextRpc] = None,
    ):
        self.locations = locations
        self.preferences = preferences
        self.rpc = rpc

    async def resolve(
        self,
        user_id: str,
        tenant_id: str,
        role: Optional[AppRole],
        persist: bool = True,
    ) -> ResolvedContext:
        """
        Resolve the active context for (user, tenant, role).

        Idempotent: with unchanged inputs a second call returns an equal
        ResolvedContext, because the persisted output of the first call is
        itself a valid preference for the second.
        """
        assignment = await self.locations.resolve(user_id, tenant_id, role)
        hub_allowed = can_use_owner_hub(role, len(assignment.assigned_location_ids))
        available = build_available_contexts(hub_allowed, assignment)
        available_location_ids = {
            option.location_id for option in available if option.type == ContextType.LOCATION
        }

        active = self._validated(self.preferences.load(tenant_id), hub_allowed, available_location_ids)
        if active is None:
            active = await self._server_default(tenant_id, hub_allowed, available_location_ids)
        if active is None:
            active = self._fallback(hub_allowed, assignment)

        resolved = ResolvedContext(
            active_context_type=active.type if active else None,
            active_location_id=active.location_id if active else None,
            assigned_location_ids=assignment.assigned_location_ids,
            available_contexts=available,
            can_use_owner_hub=hub_allowed,
            current_role=role,
        )
        logger.debug(
            f"Resolved context for user {user_id} in tenant {tenant_id}: "
            f"{resolved.active_context_type} / {resolved.active_location_id}"
        )

        if persist:
            await self.persist(tenant_id, resolved.active_context)
        return resolved

    @staticmethod
    def _validated(
        stored: Optional[ActiveContext],
        hub_allowed: bool,
        available_location_ids: set,
    ) -> Optional[ActiveContext]:
        if stored is None:
            return None
        if stored.type == ContextType.OWNER_HUB:
            if hub_allowed:
                return stored
            logger.debug("Dropping stored owner_hub preference: no longer eligible")
            return None
        if stored.location_id and stored.location_id in available_location_ids:
            return stored
        logger.debug(f"Dropping stored location preference {stored.location_id}: no longer available")
        return None

    async def _server_default(
        self,
        tenant_id: str,
        hub_allowed: bool,
        available_location_ids: set,
    ) -> Optional[ActiveContext]:
        if self.rpc is None:
            return None
        result = await self.rpc.resolve_user_contexts(tenant_id)
        if not result.ok or result.value is None:
            logger.info(f"Server context resolver unavailable for tenant {tenant_id} ({result.reason}); using local fallback")
            return None

        server = result.value
        if server.default_context_type == ContextType.OWNER_HUB.value:
            candidate = ActiveContext.owner_hub()
        elif server.default_context_type == ContextType.LOCATION.value:
            candidate = ActiveContext.location(server.default_location_id)
        else:
            return None
        return self._validated(candidate, hub_allowed, available_location_ids)

    @staticmethod
    def _fallback(hub_allowed: bool, assignment: LocationAssignment) -> Optional[ActiveContext]:
        if hub_allowed:
            return ActiveContext.owner_hub()
        default_location = assignment.default_location()
        if default_location is not None:
            return ActiveContext.location(default_location.id)
        return None

    async def persist(self, tenant_id: str, context: Optional[ActiveContext]) -> None:
        """
        Save locally first, then mirror to the server.

        The mirror is best-effort: failures are logged and never block.
        """
        self.preferences.save(tenant_id, context)
        if self.rpc is None or context is None:
            return
        if context.type == ContextType.LOCATION and not context.location_id:
            return
        result = await self.rpc.set_active_context(tenant_id, context.type.value, context.location_id)
        if not result.ok:
            logger.warning(f"Failed to sync active context for tenant {tenant_id}: {result.reason}")
