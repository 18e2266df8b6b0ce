"""
Short-lived per-tenant cache for role, location and permission reads.

Entries expire after a few tens of seconds. An expired entry is kept
around so a failed refresh can serve the previous value instead of
dropping to an empty result. Mutations of roles, locations or rules must
call ``invalidate`` before the next permission check is trusted.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

from .core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class CacheKey(NamedTuple):
    kind: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None


# Cache kinds
ROLES = "roles"
LOCATIONS = "locations"
RULES = "rules"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache:
    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        # Bumped by invalidate(); readers compare to spot a stale derived value.
        self._epoch = 0
        self._tenant_versions: Dict[str, int] = {}

    def now(self) -> float:
        return self._clock()

    def version(self, tenant_id: Optional[str]) -> tuple[int, int]:
        """
        Invalidation counter for one tenant.

        Changes whenever an ``invalidate`` call could have dropped an entry
        for ``tenant_id``, whether or not one was cached at the time.
        """
        return self._epoch, (self._tenant_versions.get(tenant_id, 0) if tenant_id else 0)

    def get(self, key: CacheKey) -> Optional[Any]:
        """Return a fresh value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.value

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl_seconds)

    async def get_or_load(
        self,
        key: CacheKey,
        loader: Callable[[], Awaitable[Any]],
        default: Any,
    ) -> Any:
        """
        Serve a fresh entry or call ``loader``.

        On ``StoreUnavailableError`` the previous (possibly expired) value is
        returned if there is one, otherwise ``default``.
        """
        entry = self._entries.get(key)
        if entry is not None and not entry.is_expired(self._clock()):
            return entry.value

        try:
            value = await loader()
        except StoreUnavailableError as e:
            if entry is not None:
                logger.warning(f"Serving stale {key.kind} for tenant={key.tenant_id} after store failure: {e}")
                return entry.value
            logger.warning(f"No cached {key.kind} for tenant={key.tenant_id}; degrading to empty result: {e}")
            return default

        self.set(key, value)
        return value

    def invalidate(self, tenant_id: Optional[str] = None, user_id: Optional[str] = None) -> int:
        """
        Drop every entry that could describe (tenant_id, user_id).

        Tenant-wide entries (no user) and user-wide entries (no tenant) match
        too. Returns the number of entries removed.
        """
        doomed = [
            key
            for key in self._entries
            if (tenant_id is None or key.tenant_id in (tenant_id, None))
            and (user_id is None or key.user_id in (user_id, None))
        ]
        for key in doomed:
            del self._entries[key]
        if tenant_id is None:
            self._epoch += 1
        else:
            self._tenant_versions[tenant_id] = self._tenant_versions.get(tenant_id, 0) + 1
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries (tenant={tenant_id}, user={user_id})")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
        self._epoch += 1

    def __len__(self) -> int:
        return len(self._entries)
