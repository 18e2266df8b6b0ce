"""
Fire-and-forget audit recording.

``AuditEmitter.log`` validates the entity id, schedules the write on the
running event loop and returns immediately. Sink failures are logged and
swallowed: an audit write can never change the outcome of the action it
records.

IMPORTANT: Do NOT put PII (phone numbers, emails) in metadata.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .rpc import ContextRpc

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


# ============================================================================
# COMMON AUDIT ACTIONS
# ============================================================================

# Session
AUDIT_AUTH_LOGIN = "auth.login"
AUDIT_CONTEXT_SWITCH = "context.switch"

# Navigation / access
AUDIT_ACCESS_DENIED = "access.denied"
AUDIT_PAGE_VIEW = "nav.page_view"

# Membership operations
AUDIT_MEMBER_ROLE_CHANGED = "member.role_changed"
AUDIT_MEMBER_LOCATIONS_CHANGED = "member.locations_changed"

# Permission rules
AUDIT_PERMISSION_OVERRIDE_CHANGED = "permission.override_changed"
AUDIT_PERMISSION_ROLE_CHANGED = "permission.role_changed"


def is_valid_uuid(value: Optional[str]) -> bool:
    return bool(value) and bool(UUID_PATTERN.match(value))


@dataclass(frozen=True)
class AuditEvent:
    tenant_id: str
    action: str
    entity_type: str
    entity_id: str
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class AuditSink(Protocol):
    async def write(self, event: AuditEvent) -> None:
        ...


class RpcAuditSink:
    """Send events to the server's log_audit_event function."""

    def __init__(self, rpc: ContextRpc):
        self.rpc = rpc

    async def write(self, event: AuditEvent) -> None:
        result = await self.rpc.log_audit_event(
            event.tenant_id, event.action, event.entity_type, event.entity_id, event.metadata
        )
        if not result.ok:
            logger.error(f"Failed to write audit event ({event.action}): {result.reason}")


class SqlAuditSink:
    """Insert events as AuditLog rows, one short transaction per event."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def write(self, event: AuditEvent) -> None:
        from .models import AuditLog

        async with self.session_factory() as session:
            session.add(
                AuditLog(
                    tenant_id=event.tenant_id,
                    action=event.action,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    extra_data=event.metadata or None,
                )
            )
            await session.commit()


class AuditEmitter:
    def __init__(self, sink: AuditSink):
        self.sink = sink
        self._pending: set[asyncio.Task] = set()

    def log(
        self,
        tenant_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        """
        Schedule one audit write and return without waiting for it.

        Returns the scheduled task, or None when the call was skipped
        (malformed entity id, no running loop).
        """
        if not is_valid_uuid(entity_id):
            logger.warning(
                f'Skipped audit event with non-uuid entity_id for action "{action}" '
                f"(entity_type={entity_type}, entity_id={entity_id!r})"
            )
            return None

        event = AuditEvent(tenant_id, action, entity_type, entity_id, dict(metadata or {}))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Skipped audit event ({action}): no running event loop")
            return None

        task = loop.create_task(self._write(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, event: AuditEvent) -> None:
        try:
            await self.sink.write(event)
            logger.info(
                f"Audit: {event.action} (tenant={event.tenant_id}, "
                f"target={event.entity_type}:{event.entity_id})"
            )
        except Exception as e:
            logger.error(f"Failed to write audit event ({event.action}): {e}", exc_info=True)

    async def drain(self) -> None:
        """Wait for every scheduled write (tests and shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
