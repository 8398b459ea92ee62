import base64

import httpx
import pytest
from pydantic import ValidationError

from ib_bridge.models.session import FailedAuth
from ib_bridge.services.api_proxy import APIProxyInvoker
from ib_bridge.services.bridge_client import BridgeClient
from ib_bridge.services.compliance_review import ComplianceReviewRunner
from ib_bridge.services.credential_exchange import CredentialExchange
from ib_bridge.services.token_refresh import TokenRefreshPolicy
from ib_bridge.services.tool_handlers import ToolHandlers
from ib_bridge.services.vendor_client import VendorClient
from conftest import mock_client


def vendor_backend(request: httpx.Request) -> httpx.Response:
    if "filter.limit" in request.url.path:
        return httpx.Response(200, json={"response": {"rows": []}})
    return httpx.Response(500)


@pytest.fixture
def tools(store, ledger, clock):
    http = mock_client(vendor_backend)
    bridge = BridgeClient(
        "https://bridge.example.com",
        client_id="ib-api-tools-mcp-server",
        redirect_uri="http://localhost:3000/callback",
        http=http,
    )
    vendor = VendorClient(http=http)
    return ToolHandlers(
        store,
        ledger,
        CredentialExchange(store, bridge, vendor, clock=clock),
        APIProxyInvoker(store, vendor, TokenRefreshPolicy(store, bridge, clock=clock)),
        ComplianceReviewRunner(vendor, ledger),
        max_upload_size=16,
    )


async def test_unknown_tool_raises(tools):
    with pytest.raises(KeyError):
        await tools.call("nope", {})


async def test_validation_errors_propagate(tools):
    with pytest.raises(ValidationError):
        await tools.call("api_call", {"method": "GET"})


async def test_upload_file_from_content(tools, ledger):
    content = base64.b64encode(b"%PDF-1.4").decode()
    result = await tools.call("upload_file", {"file": {"content": content, "filename": "a.pdf"}})

    assert result["success"] is True
    assert result["filename"] == "a.pdf"
    assert result["size"] == 8
    entry = ledger.get(result["file_id"])
    assert entry.mime_type == "application/pdf"
    assert entry.read_bytes() == b"%PDF-1.4"


async def test_upload_file_from_path(tools, tmp_path):
    path = tmp_path / "notes.txt"
    path.write_bytes(b"hello")
    result = await tools.call("upload_file", {"file": {"path": str(path)}})
    assert result["filename"] == "notes.txt"


async def test_upload_file_size_limit(tools, ledger):
    content = base64.b64encode(b"x" * 17).decode()
    result = await tools.call("upload_file", {"file": {"content": content, "filename": "big.pdf"}})
    assert result["error"] == "upload_failed"
    assert ledger.stats()["active_files"] == 0


async def test_upload_file_missing_path(tools, tmp_path):
    result = await tools.call("upload_file", {"file": {"path": str(tmp_path / "missing.pdf")}})
    assert result["error"] == "upload_failed"


async def test_explicit_unknown_session(tools):
    result = await tools.call("get_compliance_filters", {"session_id": "missing"})
    assert result["error"] == "invalid_session"


async def test_filters_use_bearer_session(tools, completed_session):
    result = await tools.call("get_compliance_filters", {}, completed_session)
    assert result == {"success": True, "filters": []}


async def test_vendor_failure_becomes_error_result(tools, completed_session):
    result = await tools.call(
        "run_file_compliance_review",
        {"file": {"content": base64.b64encode(b"doc").decode(), "filename": "a.pdf"}},
        completed_session,
    )
    assert result["success"] is False
    assert result["error"] == "upload_failed"


async def test_status_reports_bearer(tools, completed_session):
    result = await tools.call("status", {}, completed_session)
    assert result["authenticated"] is True
    assert result["sessions"] == 1


@pytest.mark.parametrize(
    "name, arguments",
    [
        ("api_call", {"path": "/company.intelligencebank.com/api/3.0.0/x"}),
        ("get_compliance_filters", {}),
    ],
)
async def test_failed_session_reports_its_error(tools, store, completed_session, name, arguments):
    store.update(
        completed_session.session_id,
        state=FailedAuth(error="session_expired", error_description="Session has expired"),
    )

    result = await tools.call(name, {"session_id": completed_session.session_id, **arguments})

    assert result["success"] is False
    assert result["error"] == "session_expired"
    assert result["message"] == "Session has expired"
    assert result["reauthenticate"] is True
