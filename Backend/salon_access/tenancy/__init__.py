"""
Tenancy package: who may operate where.

Modules:
    stores: storage contracts and the plain records they return
    queries: SQL implementations of those contracts
    locations: per-(user, tenant) location assignment resolution
    context: owner-hub / location context resolution and persistence
    local_state: client-local key/value persistence
    membership: cache invalidation and audit hooks for team changes
"""

from .context import (
    OWNER_HUB_LABEL,
    OWNER_HUB_MIN_LOCATIONS,
    EMPTY_CONTEXT,
    ActiveContext,
    ContextOption,
    ContextPreferenceStore,
    ContextResolver,
    ContextType,
    ResolvedContext,
    build_available_contexts,
    can_use_owner_hub,
    is_assignment_pending,
)
from .local_state import (
    CURRENT_TENANT_KEY,
    JsonFileKeyValueStore,
    KeyValueStore,
    MemoryKeyValueStore,
    clear_session_keys,
    context_key,
)
from .locations import EMPTY_ASSIGNMENT, LocationAssignment, LocationAssignmentResolver
from .membership import MembershipChangeRecorder
from .queries import SqlRuleStore, SqlTenantStore
from .stores import (
    Location,
    Profile,
    RolePermissionRule,
    RuleStore,
    Tenant,
    TenantStore,
    UserPermissionOverride,
)

__all__ = [
    # Context
    "OWNER_HUB_LABEL",
    "OWNER_HUB_MIN_LOCATIONS",
    "EMPTY_CONTEXT",
    "ActiveContext",
    "ContextOption",
    "ContextPreferenceStore",
    "ContextResolver",
    "ContextType",
    "ResolvedContext",
    "build_available_contexts",
    "can_use_owner_hub",
    "is_assignment_pending",
    # Local state
    "CURRENT_TENANT_KEY",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "clear_session_keys",
    "context_key",
    # Locations
    "EMPTY_ASSIGNMENT",
    "LocationAssignment",
    "LocationAssignmentResolver",
    # Membership
    "MembershipChangeRecorder",
    # Stores
    "SqlRuleStore",
    "SqlTenantStore",
    "Location",
    "Profile",
    "RolePermissionRule",
    "RuleStore",
    "Tenant",
    "TenantStore",
    "UserPermissionOverride",
]
