import json

import httpx
import pytest

from ib_bridge.models.session import CompletedAuth
from ib_bridge.services.api_proxy import APIProxyInvoker
from ib_bridge.services.bridge_client import BridgeClient
from ib_bridge.services.token_refresh import TokenRefreshPolicy
from ib_bridge.services.vendor_client import VendorClient
from conftest import mock_client

BRIDGE_HOST = "bridge.example.com"


class Backend:
    def __init__(self, api_statuses, refresh_response=None):
        self.api_statuses = list(api_statuses)
        self.refresh_response = refresh_response or {"status": 200, "json": {"access_token": "access-2"}}
        self.api_requests = []
        self.refresh_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == BRIDGE_HOST:
            self.refresh_requests.append(request)
            return httpx.Response(self.refresh_response["status"], json=self.refresh_response["json"])
        self.api_requests.append(request)
        status = self.api_statuses.pop(0) if len(self.api_statuses) > 1 else self.api_statuses[0]
        return httpx.Response(status, json={"response": {"ok": status == 200}})


def _invoker(store, clock, backend):
    http = mock_client(backend)
    bridge = BridgeClient(
        f"https://{BRIDGE_HOST}",
        client_id="ib-api-tools-mcp-server",
        redirect_uri="http://localhost:3000/callback",
        http=http,
    )
    refresher = TokenRefreshPolicy(store, bridge, clock=clock)
    return APIProxyInvoker(store, VendorClient(http=http), refresher)


async def test_plain_success_sends_session_credentials(store, clock, completed_session):
    backend = Backend([200])
    result = await _invoker(store, clock, backend).call(completed_session, "get", "/api/3.0.0/client-1/user")

    assert result == {"success": True, "status": 200, "data": {"response": {"ok": True}}}
    (request,) = backend.api_requests
    assert request.method == "GET"
    assert str(request.url) == "https://company.intelligencebank.com/api/3.0.0/client-1/user"
    assert request.headers["sid"] == "sid-abcdef123456"
    assert request.headers["Authorization"] == "Bearer access-1"
    assert backend.refresh_requests == []


async def test_refresh_and_retry_scenario(store, clock, completed_session):
    backend = Backend([401, 200])
    result = await _invoker(store, clock, backend).call(completed_session, "GET", "/api/3.0.0/client-1/resource")

    assert result["success"] is True
    assert result["status"] == 200
    assert len(backend.api_requests) == 2
    assert len(backend.refresh_requests) == 1
    assert backend.api_requests[0].headers["Authorization"] == "Bearer access-1"
    assert backend.api_requests[1].headers["Authorization"] == "Bearer access-2"
    # vendor sid untouched by the refresh
    assert backend.api_requests[1].headers["sid"] == "sid-abcdef123456"


async def test_retry_budget_is_one(store, clock, completed_session):
    backend = Backend([401])
    result = await _invoker(store, clock, backend).call(completed_session, "GET", "/x")

    assert result["error"] == "authentication_failed"
    assert result["status"] == 401
    assert len(backend.api_requests) == 2
    assert len(backend.refresh_requests) == 1


async def test_terminal_refresh_failure_returns_session_expired(store, clock, completed_session):
    backend = Backend(
        [401],
        refresh_response={
            "status": 400,
            "json": {"error": "invalid_token", "error_description": "Session has expired"},
        },
    )
    result = await _invoker(store, clock, backend).call(completed_session, "GET", "/x")

    assert result["error"] == "session_expired"
    assert result["reauthenticate"] is True
    assert len(backend.api_requests) == 1
    assert store.get(completed_session.session_id).status == "error"


async def test_transient_refresh_failure_returns_authentication_failed(store, clock, completed_session):
    backend = Backend([401], refresh_response={"status": 503, "json": {"error": "unavailable"}})
    result = await _invoker(store, clock, backend).call(completed_session, "GET", "/x")

    assert result["error"] == "authentication_failed"
    assert len(backend.api_requests) == 1
    assert store.get(completed_session.session_id).status == "completed"


async def test_non_401_errors_are_returned_without_retry(store, clock, completed_session):
    backend = Backend([404])
    result = await _invoker(store, clock, backend).call(completed_session, "GET", "/missing")

    assert result["success"] is False
    assert result["status"] == 404
    assert len(backend.api_requests) == 1
    assert backend.refresh_requests == []


async def test_post_sends_json_body(store, clock, completed_session):
    backend = Backend([200])
    await _invoker(store, clock, backend).call(
        completed_session, "POST", "/api/3.0.0/client-1/thing", body={"a": 1}, headers={"X-Extra": "1"}
    )
    (request,) = backend.api_requests
    assert json.loads(request.content) == {"a": 1}
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Extra"] == "1"


@pytest.mark.parametrize(
    "path, expected",
    [
        ("https://other.example.com/api/x", "https://other.example.com/api/x"),
        ("acme.intelligencebank.com/api/x", "https://acme.intelligencebank.com/api/x"),
        ("api/3.0.0/client-1/user", "https://company.intelligencebank.com/api/3.0.0/client-1/user"),
    ],
)
def test_build_url(store, clock, completed_session, path, expected):
    invoker = _invoker(store, clock, Backend([200]))
    assert invoker.build_url(completed_session, path) == expected


async def test_requires_vendor_session(store, clock):
    session = store.create(CompletedAuth())
    result = await _invoker(store, clock, Backend([200])).call(session, "GET", "/x")
    assert result["error"] == "not_authenticated"


async def test_refresh_without_access_token_is_authentication_failed(store, clock, completed_session):
    backend = Backend([401], refresh_response={"status": 200, "json": {"token_type": "Bearer"}})
    result = await _invoker(store, clock, backend).call(completed_session, "GET", "/x")

    assert result["error"] == "authentication_failed"
    assert result["status"] == 401
    assert len(backend.api_requests) == 1
    assert store.get(completed_session.session_id).status == "completed"
