"""
Authoritative server resolver client.

The server exposes PostgREST RPC functions:
    resolve_user_contexts   default context + availability for a tenant
    set_active_context      mirror of the client's active context
    list_accessible_routes  ranked landing routes for a context
    log_audit_event         audit sink

Every call returns an ``RpcResult``; nothing here raises to the caller, so
the fallback paths in the context resolver and the session are plain
branches on ``result.ok``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, Protocol, TypeVar

import httpx

from .core.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RpcResult(Generic[T]):
    ok: bool
    value: Optional[T] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "RpcResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, reason: str) -> "RpcResult[T]":
        return cls(ok=False, reason=reason)


@dataclass(frozen=True)
class ServerContextResolution:
    role: Optional[str] = None
    can_use_owner_hub: bool = False
    available_location_ids: tuple[str, ...] = ()
    default_context_type: Optional[str] = None
    default_location_id: Optional[str] = None
    location_labels: dict[str, str] = field(default_factory=dict, compare=False)


class ContextRpc(Protocol):
    async def resolve_user_contexts(self, tenant_id: str) -> RpcResult[ServerContextResolution]:
        ...

    async def set_active_context(
        self, tenant_id: str, context_type: str, location_id: Optional[str]
    ) -> RpcResult[None]:
        ...

    async def list_accessible_routes(
        self, tenant_id: str, context_type: Optional[str], location_id: Optional[str]
    ) -> RpcResult[list[str]]:
        ...

    async def log_audit_event(
        self,
        tenant_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: dict[str, Any],
    ) -> RpcResult[None]:
        ...


def parse_context_resolution(payload: Any) -> Optional[ServerContextResolution]:
    """Parse a resolve_user_contexts payload; None when it is not an object."""
    if not isinstance(payload, dict):
        return None
    raw_locations = payload.get("available_locations")
    locations = raw_locations if isinstance(raw_locations, list) else []
    ids: list[str] = []
    labels: dict[str, str] = {}
    for location in locations:
        if not isinstance(location, dict) or not location.get("id"):
            continue
        location_id = str(location["id"])
        ids.append(location_id)
        labels[location_id] = str(location.get("name") or "")
    default_type = payload.get("default_context_type")
    default_location = payload.get("default_location_id")
    return ServerContextResolution(
        role=payload.get("role") or None,
        can_use_owner_hub=bool(payload.get("can_use_owner_hub")),
        available_location_ids=tuple(ids),
        default_context_type=default_type if default_type in ("owner_hub", "location") else None,
        default_location_id=str(default_location) if default_location else None,
        location_labels=labels,
    )


class SupabaseRpcClient:
    """
    ContextRpc over PostgREST (``POST {base_url}/rest/v1/rpc/{function}``).

    The service key goes in ``apikey``; the caller's access token, when
    known, is the bearer so row-level security applies to the caller.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
            "User-Agent": "Salon-Access/1.0",
        }

    async def _call(self, function: str, payload: dict[str, Any]) -> RpcResult[Any]:
        url = f"{self.base_url}/rest/v1/rpc/{function}"
        try:
            response = await self._client.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"RPC {function} returned HTTP {e.response.status_code}")
            return RpcResult.failure(f"http_{e.response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"RPC {function} transport error: {e}")
            return RpcResult.failure("transport_error")

        if not response.content:
            return RpcResult.success(None)
        try:
            return RpcResult.success(response.json())
        except ValueError:
            logger.warning(f"RPC {function} returned a non-JSON body")
            return RpcResult.failure("malformed_payload")

    async def resolve_user_contexts(self, tenant_id: str) -> RpcResult[ServerContextResolution]:
        result = await self._call("resolve_user_contexts", {"p_tenant_id": tenant_id})
        if not result.ok:
            return RpcResult.failure(result.reason or "unknown")
        resolution = parse_context_resolution(result.value)
        if resolution is None:
            return RpcResult.failure("malformed_payload")
        return RpcResult.success(resolution)

    async def set_active_context(
        self, tenant_id: str, context_type: str, location_id: Optional[str]
    ) -> RpcResult[None]:
        if context_type == "location" and not location_id:
            return RpcResult.failure("missing_location")
        result = await self._call(
            "set_active_context",
            {
                "p_tenant_id": tenant_id,
                "p_context_type": context_type,
                "p_location_id": location_id,
            },
        )
        return RpcResult.success(None) if result.ok else RpcResult.failure(result.reason or "unknown")

    async def list_accessible_routes(
        self, tenant_id: str, context_type: Optional[str], location_id: Optional[str]
    ) -> RpcResult[list[str]]:
        result = await self._call(
            "list_accessible_routes",
            {
                "p_tenant_id": tenant_id,
                "p_context_type": context_type,
                "p_location_id": location_id,
            },
        )
        if not result.ok:
            return RpcResult.failure(result.reason or "unknown")
        routes = result.value if isinstance(result.value, list) else []
        return RpcResult.success([route for route in routes if isinstance(route, str)])

    async def log_audit_event(
        self,
        tenant_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        metadata: dict[str, Any],
    ) -> RpcResult[None]:
        result = await self._call(
            "log_audit_event",
            {
                "_tenant_id": tenant_id,
                "_action": action,
                "_entity_type": entity_type,
                "_entity_id": entity_id,
                "_metadata": metadata,
            },
        )
        return RpcResult.success(None) if result.ok else RpcResult.failure(result.reason or "unknown")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_rpc_client(settings: Settings, access_token: Optional[str] = None) -> Optional[SupabaseRpcClient]:
    """Return a client when SUPABASE_URL is configured, else None."""
    if not settings.rpc_enabled:
        return None
    return SupabaseRpcClient(
        settings.supabase_url,
        settings.supabase_service_key,
        access_token=access_token,
        timeout=settings.rpc_timeout_seconds,
    )
