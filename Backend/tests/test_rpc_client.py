"""
Tests for the PostgREST RPC client.

HTTP is served by httpx.MockTransport; nothing leaves the process.

Run with: pytest Backend/tests/test_rpc_client.py -v
"""

import json

import httpx
import pytest

from conftest import new_id
from salon_access.core.config import Settings
from salon_access.rpc import SupabaseRpcClient, build_rpc_client, parse_context_resolution

BASE_URL = "https://project.supabase.test/"


def _client(handler) -> SupabaseRpcClient:
    transport = httpx.MockTransport(handler)
    return SupabaseRpcClient(
        BASE_URL,
        "service-key",
        access_token="user-token",
        client=httpx.AsyncClient(transport=transport),
    )


class TestParseContextResolution:
    def test_full_payload(self):
        loc = new_id()
        resolution = parse_context_resolution(
            {
                "role": "manager",
                "can_use_owner_hub": False,
                "available_locations": [{"id": loc, "name": "Downtown"}, {"name": "no id"}, "junk"],
                "default_context_type": "location",
                "default_location_id": loc,
            }
        )
        assert resolution.role == "manager"
        assert resolution.available_location_ids == (loc,)
        assert resolution.location_labels == {loc: "Downtown"}
        assert resolution.default_location_id == loc

    def test_unknown_default_type_is_dropped(self):
        resolution = parse_context_resolution({"default_context_type": "galaxy"})
        assert resolution.default_context_type is None
        assert resolution.available_location_ids == ()

    def test_non_object_payload(self):
        assert parse_context_resolution([1, 2]) is None
        assert parse_context_resolution(None) is None


class TestSupabaseRpcClient:
    """Every failure comes back as a result, never an exception."""

    async def test_resolve_user_contexts_request_shape(self):
        tenant = new_id()
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"role": "owner", "can_use_owner_hub": True, "default_context_type": "owner_hub"})

        result = await _client(handler).resolve_user_contexts(tenant)

        assert result.ok is True
        assert result.value.can_use_owner_hub is True
        assert result.value.default_context_type == "owner_hub"
        assert seen["url"] == "https://project.supabase.test/rest/v1/rpc/resolve_user_contexts"
        assert seen["headers"]["apikey"] == "service-key"
        assert seen["headers"]["authorization"] == "Bearer user-token"
        assert seen["body"] == {"p_tenant_id": tenant}

    async def test_http_error_maps_to_reason(self):
        result = await _client(lambda request: httpx.Response(500)).resolve_user_contexts(new_id())
        assert result.ok is False
        assert result.reason == "http_500"

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await _client(handler).resolve_user_contexts(new_id())
        assert result.reason == "transport_error"

    async def test_malformed_payloads(self):
        result = await _client(lambda request: httpx.Response(200, json=["not", "an", "object"])).resolve_user_contexts(new_id())
        assert result.reason == "malformed_payload"

        result = await _client(lambda request: httpx.Response(200, content=b"<html>")).resolve_user_contexts(new_id())
        assert result.reason == "malformed_payload"

    async def test_location_context_requires_location(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(204)

        result = await _client(handler).set_active_context(new_id(), "location", None)

        assert result.reason == "missing_location"
        assert calls == []

    async def test_set_active_context_with_empty_body(self):
        tenant, location = new_id(), new_id()
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        result = await _client(handler).set_active_context(tenant, "location", location)

        assert result.ok is True
        assert bodies == [{"p_tenant_id": tenant, "p_context_type": "location", "p_location_id": location}]

    async def test_routes_filter_non_strings(self):
        client = _client(lambda request: httpx.Response(200, json=["/salon/calendar", 7, None, "/salon/staff"]))
        result = await client.list_accessible_routes(new_id(), "location", new_id())
        assert result.value == ["/salon/calendar", "/salon/staff"]

    async def test_log_audit_event_payload(self):
        tenant, entity = new_id(), new_id()
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=new_id())

        result = await _client(handler).log_audit_event(tenant, "auth.login", "auth", entity, {"k": "v"})

        assert result.ok is True
        assert bodies[0]["_action"] == "auth.login"
        assert bodies[0]["_metadata"] == {"k": "v"}


class TestBuildRpcClient:
    def test_disabled_without_url(self):
        assert build_rpc_client(Settings(SUPABASE_URL="")) is None

    @pytest.mark.parametrize("url", ["https://project.supabase.co", "https://project.supabase.co/"])
    def test_enabled_with_url(self, url):
        client = build_rpc_client(Settings(SUPABASE_URL=url, SUPABASE_SERVICE_KEY="key"), access_token="tok")
        assert client.base_url == "https://project.supabase.co"
        assert client.access_token == "tok"
