"""
Role catalog and the per-user role assignment store.

Roles form a closed set ordered by privilege:
    owner > manager > supervisor > receptionist > staff

A user holds at most one assignment per tenant. Deactivated assignments
are kept by the store but never grant anything here.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class AppRole(str, Enum):
    """Tenant roles, declared from most to least privileged."""

    OWNER = "owner"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    RECEPTIONIST = "receptionist"
    STAFF = "staff"

    @property
    def privilege(self) -> int:
        return len(ROLE_ORDER) - ROLE_ORDER.index(self)

    def outranks(self, other: "AppRole") -> bool:
        return self.privilege > other.privilege


ROLE_ORDER: tuple[AppRole, ...] = (
    AppRole.OWNER,
    AppRole.MANAGER,
    AppRole.SUPERVISOR,
    AppRole.RECEPTIONIST,
    AppRole.STAFF,
)

# Roles that may use the cross-location hub once they hold several locations.
HUB_ELIGIBLE_ROLES = frozenset({AppRole.MANAGER, AppRole.SUPERVISOR})


def parse_role(value) -> Optional[AppRole]:
    """Normalize a stored role value; unknown values yield None."""
    if isinstance(value, AppRole):
        return value
    if not value:
        return None
    try:
        return AppRole(str(value).strip().lower())
    except ValueError:
        logger.warning(f"Ignoring unknown role value '{value}'")
        return None


@dataclass(frozen=True)
class RoleAssignment:
    user_id: str
    tenant_id: str
    role: AppRole
    is_active: bool = True


class RoleStore:
    """
    Immutable view over one user's role assignments.

    Only active assignments count: ``role_for`` and ``tenant_ids`` ignore
    deactivated rows.
    """

    def __init__(self, assignments: Iterable[RoleAssignment] = ()):
        self._assignments = tuple(assignments)

    @property
    def assignments(self) -> tuple[RoleAssignment, ...]:
        return self._assignments

    def active(self) -> tuple[RoleAssignment, ...]:
        return tuple(a for a in self._assignments if a.is_active)

    def role_for(self, tenant_id: Optional[str]) -> Optional[AppRole]:
        if not tenant_id:
            return None
        for assignment in self._assignments:
            if assignment.tenant_id == tenant_id and assignment.is_active:
                return assignment.role
        return None

    def tenant_ids(self) -> list[str]:
        """Distinct tenant ids with an active assignment, in store order."""
        seen: list[str] = []
        for assignment in self.active():
            if assignment.tenant_id not in seen:
                seen.append(assignment.tenant_id)
        return seen

    def __len__(self) -> int:
        return len(self._assignments)

    def __eq__(self, other) -> bool:
        return isinstance(other, RoleStore) and self._assignments == other._assignments

    def __repr__(self) -> str:
        return f"RoleStore({list(self._assignments)!r})"
