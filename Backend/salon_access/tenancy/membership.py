"""
Hooks for team-management writes.

Whatever changes a member's role or location assignments must call the
matching method so cached reads for that (tenant, user) are dropped before
the next permission check.
"""

import logging
from typing import Optional, Sequence

from ..audit import AUDIT_MEMBER_LOCATIONS_CHANGED, AUDIT_MEMBER_ROLE_CHANGED, AuditEmitter
from ..cache import TTLCache
from ..roles import AppRole

logger = logging.getLogger(__name__)


class MembershipChangeRecorder:
    def __init__(self, cache: Optional[TTLCache] = None, audit: Optional[AuditEmitter] = None):
        self.cache = cache
        self.audit = audit

    def role_changed(
        self,
        actor_user_id: str,
        tenant_id: str,
        user_id: str,
        old_role: Optional[AppRole],
        new_role: Optional[AppRole],
    ) -> None:
        self._invalidate(tenant_id, user_id)
        logger.info(f"Role changed for user {user_id} in tenant {tenant_id}: {old_role} -> {new_role}")
        if self.audit is not None:
            self.audit.log(
                tenant_id,
                AUDIT_MEMBER_ROLE_CHANGED,
                "member",
                user_id,
                {
                    "old_role": old_role.value if old_role else None,
                    "new_role": new_role.value if new_role else None,
                    "promoted": new_role.outranks(old_role) if old_role and new_role else None,
                    "actor_user_id": actor_user_id,
                },
            )

    def locations_changed(
        self,
        actor_user_id: str,
        tenant_id: str,
        user_id: str,
        location_ids: Sequence[str],
    ) -> None:
        self._invalidate(tenant_id, user_id)
        if self.audit is not None:
            self.audit.log(
                tenant_id,
                AUDIT_MEMBER_LOCATIONS_CHANGED,
                "member",
                user_id,
                {"location_ids": list(location_ids), "actor_user_id": actor_user_id},
            )

    def _invalidate(self, tenant_id: str, user_id: str) -> None:
        if self.cache is None:
            return
        # Role reads are cached per user, not per tenant.
        self.cache.invalidate(tenant_id=tenant_id, user_id=user_id)
        self.cache.invalidate(user_id=user_id)
