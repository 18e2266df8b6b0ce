"""
Tests for location assignment and active context resolution.

Run with: pytest Backend/tests/test_context_resolution.py -v
"""

import json

import pytest

from conftest import FakeContextRpc, new_id
from salon_access.cache import TTLCache
from salon_access.roles import AppRole
from salon_access.rpc import ServerContextResolution
from salon_access.tenancy.context import (
    OWNER_HUB_LABEL,
    ActiveContext,
    ContextType,
    can_use_owner_hub,
    is_assignment_pending,
)
from salon_access.tenancy.local_state import context_key
from salon_access.tenancy.locations import LocationAssignmentResolver


@pytest.fixture
def salon(tenant_store):
    """A tenant with three locations; Downtown is the default."""
    tenant = tenant_store.add_tenant("Bella Salon")
    locations = [
        tenant_store.add_location(tenant, "Airport"),
        tenant_store.add_location(tenant, "Downtown", is_default=True),
        tenant_store.add_location(tenant, "Uptown"),
    ]
    return tenant, locations


def _store_preference(kv, tenant_id, context: ActiveContext):
    kv.set(context_key(tenant_id), context.to_json())


# ============================================================================
# LOCATION ASSIGNMENTS
# ============================================================================

class TestLocationAssignmentResolver:
    """Owners see all locations; everyone else sees their assignments."""

    async def test_owner_gets_every_location(self, tenant_store, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.OWNER)

        assignment = await LocationAssignmentResolver(tenant_store).resolve(user, tenant.id, AppRole.OWNER)

        assert set(assignment.assigned_location_ids) == {loc.id for loc in locations}
        assert tenant_store.calls.count("list_staff_location_ids") == 0

    async def test_staff_gets_only_assigned(self, tenant_store, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.STAFF, [locations[2]])

        assignment = await LocationAssignmentResolver(tenant_store).resolve(user, tenant.id, AppRole.STAFF)

        assert assignment.assigned_location_ids == (locations[2].id,)
        assert [loc.name for loc in assignment.locations] == ["Uptown"]

    async def test_duplicate_assignments_collapse(self, tenant_store, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.MANAGER, [locations[0], locations[0]])

        assignment = await LocationAssignmentResolver(tenant_store).resolve(user, tenant.id, AppRole.MANAGER)

        assert assignment.assigned_location_ids == (locations[0].id,)

    async def test_assignment_to_missing_location_is_dropped(self, tenant_store, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.MANAGER, [locations[1]])
        tenant_store.staff_locations.append((tenant.id, user, new_id()))

        assignment = await LocationAssignmentResolver(tenant_store).resolve(user, tenant.id, AppRole.MANAGER)

        assert assignment.assigned_location_ids == (locations[1].id,)
        assert [loc.name for loc in assignment.locations] == ["Downtown"]

    async def test_store_outage_degrades_to_empty(self, tenant_store, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.MANAGER, locations)
        tenant_store.fail.add("list_staff_location_ids")

        assignment = await LocationAssignmentResolver(tenant_store).resolve(user, tenant.id, AppRole.MANAGER)

        assert assignment.is_empty

    async def test_cached_assignment_survives_outage(self, tenant_store, salon):
        tenant, locations = salon
        user = new_id()
        now = [0.0]
        tenant_store.add_member(user, tenant, AppRole.MANAGER, locations[:2])
        resolver = LocationAssignmentResolver(tenant_store, cache=TTLCache(30, clock=lambda: now[0]))

        first = await resolver.resolve(user, tenant.id, AppRole.MANAGER)
        now[0] = 45.0
        tenant_store.fail.add("list_staff_location_ids")
        second = await resolver.resolve(user, tenant.id, AppRole.MANAGER)

        assert second == first


# ============================================================================
# ELIGIBILITY
# ============================================================================

class TestOwnerHubEligibility:
    """Hub access by role and location count."""

    @pytest.mark.parametrize("role", [AppRole.MANAGER, AppRole.SUPERVISOR])
    def test_hub_needs_two_locations(self, role):
        assert can_use_owner_hub(role, 1) is False
        assert can_use_owner_hub(role, 2) is True
        assert can_use_owner_hub(role, 5) is True

    @pytest.mark.parametrize("role", [AppRole.RECEPTIONIST, AppRole.STAFF])
    def test_front_desk_never_gets_hub(self, role):
        assert can_use_owner_hub(role, 0) is False
        assert can_use_owner_hub(role, 10) is False

    def test_owner_always_gets_hub(self):
        assert can_use_owner_hub(AppRole.OWNER, 0) is True

    def test_no_role_no_hub(self):
        assert can_use_owner_hub(None, 3) is False


class TestAssignmentPending:
    """Pending iff a non-owner role holds no locations."""

    @pytest.mark.parametrize("role", [AppRole.MANAGER, AppRole.SUPERVISOR, AppRole.RECEPTIONIST, AppRole.STAFF])
    def test_non_owner_without_locations_is_pending(self, role):
        assert is_assignment_pending(role, ()) is True
        assert is_assignment_pending(role, ("loc",)) is False

    def test_owner_with_no_locations_is_not_pending(self):
        assert is_assignment_pending(AppRole.OWNER, ()) is False

    def test_no_role_is_not_pending(self):
        assert is_assignment_pending(None, ()) is False


# ============================================================================
# RESOLUTION
# ============================================================================

class TestContextResolver:
    """Precedence: stored hub, stored location, server default, fallback."""

    async def test_owner_without_preference_lands_in_hub(self, tenant_store, make_resolver, salon):
        """Owner, three locations, nothing stored -> owner hub with every location offered."""
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.OWNER)

        resolved = await make_resolver().resolve(user, tenant.id, AppRole.OWNER)

        assert resolved.active_context_type == ContextType.OWNER_HUB
        assert resolved.active_location_id is None
        assert resolved.available_contexts[0].label == OWNER_HUB_LABEL
        offered = {o.location_id for o in resolved.available_contexts if o.type == ContextType.LOCATION}
        assert offered == {loc.id for loc in locations}

    async def test_manager_with_one_location_loses_stored_hub(self, tenant_store, kv, make_resolver, salon):
        """A stored owner_hub preference is corrected to the only location."""
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.MANAGER, [locations[0]])
        _store_preference(kv, tenant.id, ActiveContext.owner_hub())

        resolved = await make_resolver().resolve(user, tenant.id, AppRole.MANAGER)

        assert resolved.active_context_type == ContextType.LOCATION
        assert resolved.active_location_id == locations[0].id
        assert resolved.can_use_owner_hub is False
        assert json.loads(kv.get(context_key(tenant.id))) == {"type": "location", "locationId": locations[0].id}

    async def test_missing_location_does_not_unlock_hub(self, tenant_store, kv, make_resolver, salon):
        """One real location plus one deleted one is still a single-location manager."""
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.MANAGER, [locations[0]])
        tenant_store.staff_locations.append((tenant.id, user, new_id()))
        _store_preference(kv, tenant.id, ActiveContext.owner_hub())

        resolved = await make_resolver().resolve(user, tenant.id, AppRole.MANAGER)

        assert resolved.can_use_owner_hub is False
        assert resolved.active_context == ActiveContext.location(locations[0].id)
        assert resolved.assigned_location_ids == (locations[0].id,)
        assert [o.location_id for o in resolved.available_contexts] == [locations[0].id]

    async def test_stale_location_preference_is_not_returned(self, tenant_store, kv, make_resolver, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.RECEPTIONIST, [locations[0], locations[1]])
        removed = locations[2]
        _store_preference(kv, tenant.id, ActiveContext.location(removed.id))

        resolved = await make_resolver().resolve(user, tenant.id, AppRole.RECEPTIONIST)

        assert resolved.active_location_id != removed.id
        # Fallback picks the default location among the assigned ones.
        assert resolved.active_location_id == locations[1].id

    async def test_fallback_without_default_flag_takes_first(self, tenant_store, make_resolver, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.STAFF, [locations[2]])

        resolved = await make_resolver().resolve(user, tenant.id, AppRole.STAFF)

        assert resolved.active_context_type == ContextType.LOCATION
        assert resolved.active_location_id == locations[2].id

    async def test_valid_stored_location_is_kept(self, tenant_store, kv, make_resolver, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.OWNER)
        _store_preference(kv, tenant.id, ActiveContext.location(locations[2].id))

        resolved = await make_resolver().resolve(user, tenant.id, AppRole.OWNER)

        assert resolved.active_context == ActiveContext.location(locations[2].id)

    async def test_resolution_is_idempotent(self, tenant_store, make_resolver, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.SUPERVISOR, locations[:2])
        resolver = make_resolver()

        first = await resolver.resolve(user, tenant.id, AppRole.SUPERVISOR)
        second = await resolver.resolve(user, tenant.id, AppRole.SUPERVISOR)

        assert first == second

    async def test_pending_user_gets_no_context(self, tenant_store, kv, make_resolver, salon):
        tenant, _ = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.RECEPTIONIST)

        resolved = await make_resolver().resolve(user, tenant.id, AppRole.RECEPTIONIST)

        assert resolved.is_assignment_pending is True
        assert resolved.active_context_type is None
        assert resolved.available_contexts == ()
        assert kv.get(context_key(tenant.id)) is None

    async def test_server_default_used_when_nothing_stored(self, tenant_store, make_resolver, salon):
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.OWNER)
        rpc = FakeContextRpc(
            resolution=ServerContextResolution(default_context_type="location", default_location_id=locations[0].id)
        )

        resolved = await make_resolver(rpc=rpc).resolve(user, tenant.id, AppRole.OWNER)

        assert resolved.active_context == ActiveContext.location(locations[0].id)

    async def test_invalid_server_default_is_ignored(self, tenant_store, make_resolver, salon):
        """A server default naming an unassigned location falls through to the local fallback."""
        tenant, locations = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.STAFF, [locations[0]])
        rpc = FakeContextRpc(
            resolution=ServerContextResolution(default_context_type="location", default_location_id=locations[2].id)
        )

        resolved = await make_resolver(rpc=rpc).resolve(user, tenant.id, AppRole.STAFF)

        assert resolved.active_location_id == locations[0].id

    async def test_server_failure_falls_back_locally(self, tenant_store, make_resolver, salon):
        tenant, _ = salon
        user = new_id()
        tenant_store.add_member(user, tenant, AppRole.OWNER)

        resolved = await make_resolver(rpc=FakeContextRpc()).resolve(user, tenant.id, AppRole.OWNER)

        assert resolved.active_context_type == ContextType.OWNER_HUB

    async def test_persist_writes_locally_even_if_sync_fails(self, tenant_store, kv, make_resolver, salon):
        tenant, locations = salon
        rpc = FakeContextRpc()
        rpc.sync_fails = True

        await make_resolver(rpc=rpc).persist(tenant.id, ActiveContext.location(locations[1].id))

        assert ActiveContext.from_json(kv.get(context_key(tenant.id))) == ActiveContext.location(locations[1].id)
        assert rpc.synced == [(tenant.id, "location", locations[1].id)]


class TestActiveContextSerialization:
    """Persisted preference format is {"type", "locationId"}."""

    def test_to_json(self):
        assert json.loads(ActiveContext.owner_hub().to_json()) == {"type": "owner_hub", "locationId": None}

    def test_from_json_garbage(self):
        assert ActiveContext.from_json("not json") is None
        assert ActiveContext.from_json('{"type": "galaxy"}') is None
        assert ActiveContext.from_json("[]") is None
        assert ActiveContext.from_json(None) is None

    def test_hub_cannot_carry_location(self):
        with pytest.raises(ValueError):
            ActiveContext(ContextType.OWNER_HUB, "loc-1")
