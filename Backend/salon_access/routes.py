"""
Route catalog and context access policy for the salon admin UI.

The owner hub only shows the cross-location overview and hub staff pages;
a location context shows everything except the overview.
"""

from dataclasses import dataclass
from typing import Optional

from .tenancy.context import ContextType

OVERVIEW_ROUTE = "/salon/overview"
HUB_STAFF_ROUTE = "/salon/overview/staff"
DASHBOARD_ROUTE = "/salon"
LOCATION_STAFF_ROUTE = "/salon/staff"
ASSIGNMENT_PENDING_ROUTE = "/salon/assignment-pending"
ACCESS_DENIED_ROUTE = "/salon/access-denied"
HELP_ROUTE = "/salon/help"
ONBOARDING_ROUTE = "/onboarding"
LOGIN_ROUTE = "/login"
RESET_PASSWORD_ROUTE = "/reset-password?first_login=true"
HOME_ROUTE = "/"


@dataclass(frozen=True)
class RouteDefinition:
    module: str
    path: str
    order: int


ROUTE_DEFINITIONS: tuple[RouteDefinition, ...] = (
    RouteDefinition("salons_overview", OVERVIEW_ROUTE, 10),
    RouteDefinition("staff", HUB_STAFF_ROUTE, 15),
    RouteDefinition("dashboard", DASHBOARD_ROUTE, 20),
    RouteDefinition("appointments", "/salon/appointments", 30),
    RouteDefinition("calendar", "/salon/calendar", 40),
    RouteDefinition("customers", "/salon/customers", 50),
    RouteDefinition("services", "/salon/services", 60),
    RouteDefinition("payments", "/salon/payments", 70),
    RouteDefinition("reports", "/salon/reports", 80),
    RouteDefinition("messaging", "/salon/messaging", 90),
    RouteDefinition("journal", "/salon/journal", 100),
    RouteDefinition("staff", LOCATION_STAFF_ROUTE, 110),
    RouteDefinition("settings", "/salon/settings", 120),
    RouteDefinition("audit_log", "/salon/audit-log", 130),
)

HUB_ALLOWED_MODULES = frozenset({"salons_overview", "staff"})

# Reachable while a user waits for a location assignment.
ASSIGNMENT_PENDING_PATHS = frozenset({ASSIGNMENT_PENDING_ROUTE, HELP_ROUTE})


def is_module_allowed_in_context(
    module: str,
    context_type: Optional[ContextType],
    route_path: Optional[str] = None,
) -> bool:
    if route_path == HUB_STAFF_ROUTE and context_type != ContextType.OWNER_HUB:
        return False

    if context_type == ContextType.OWNER_HUB:
        if module not in HUB_ALLOWED_MODULES:
            return False
        return route_path != LOCATION_STAFF_ROUTE

    # In location context, the overview route acts as hub only.
    return module != "salons_overview"


def fallback_first_route(context_type: Optional[ContextType]) -> str:
    if context_type == ContextType.OWNER_HUB:
        return OVERVIEW_ROUTE
    return DASHBOARD_ROUTE


def route_for_path(path: str) -> Optional[RouteDefinition]:
    for definition in ROUTE_DEFINITIONS:
        if definition.path == path:
            return definition
    return None
