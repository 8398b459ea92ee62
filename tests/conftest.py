import httpx
import pytest

from ib_bridge.models.session import CompletedAuth, OAuthTokens, VendorSession
from ib_bridge.services.session_store import SessionStore
from ib_bridge.services.upload_ledger import UploadLedger

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested sleeps and advances the paired clock instead of waiting."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return SessionStore(ttl=300, sweep_interval=60, clock=clock)


@pytest.fixture
def ledger(tmp_path, clock):
    return UploadLedger(str(tmp_path / "uploads"), ttl=300, sweep_interval=60, clock=clock)


@pytest.fixture
def vendor_session():
    return VendorSession(
        sid="sid-abcdef123456",
        client_id="client-1",
        api_base_url="https://company.intelligencebank.com/api/v3",
        login_timeout_hours=120,
        sid_expiry=int(NOW) + 120 * 3600,
        sid_created_at=int(NOW),
    )


@pytest.fixture
def completed_session(store, vendor_session):
    return store.create(
        CompletedAuth(
            tokens=OAuthTokens(access_token="access-1", refresh_token="refresh-1"),
            vendor=vendor_session,
            user_info={"email": "user@example.com"},
        ),
        client_id="ib-api-tools-mcp-server",
    )
