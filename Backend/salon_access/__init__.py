"""
Salon tenant context and permission engine.

Decides, for a signed-in user, which tenant and which operating context
(owner hub or a single location) they are in, which locations their data
is scoped to, and which modules they may open.
"""

from .permissions import PermissionEvaluator, PermissionService
from .roles import AppRole, RoleAssignment, RoleStore
from .session import SessionPhase, SessionSnapshot, SessionStateMachine
from .tenancy.context import ActiveContext, ContextResolver, ContextType, ResolvedContext
from .trial import TrialStatus, evaluate_trial

__all__ = [
    "ActiveContext",
    "AppRole",
    "ContextResolver",
    "ContextType",
    "PermissionEvaluator",
    "PermissionService",
    "ResolvedContext",
    "RoleAssignment",
    "RoleStore",
    "SessionPhase",
    "SessionSnapshot",
    "SessionStateMachine",
    "TrialStatus",
    "evaluate_trial",
]
