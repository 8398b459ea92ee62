import asyncio
import contextlib
import logging
import time
from typing import Callable, Dict, Iterator, Optional

from ib_bridge.models.session import AuthState, Session
from ib_bridge.utils.errors import BridgeError, ErrorCode
from ib_bridge.utils.pkce import random_token

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = 5 * 60.0
DEFAULT_SWEEP_INTERVAL = 60.0

# status -> statuses it may move to
ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"completed", "error"}),
    "browser_pending": frozenset({"completed", "error"}),
    "completed": frozenset({"completed", "error"}),
    "error": frozenset(),
}

_MUTABLE_FIELDS = frozenset({"state", "client_id", "redirect_uri"})


class SessionStore:
    """
    Process-local registry of auth sessions with TTL sweep.

    Not shared across processes and not persisted. The clock is injectable so
    tests can move time forward without sleeping.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_SESSION_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self.clock = clock
        # session_id -> Session
        self._sessions: Dict[str, Session] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    # ---------- Lifecycle ----------

    def create(self, state: AuthState, client_id: str = "", redirect_uri: str = "") -> Session:
        now = self.clock()
        session = Session(
            session_id=random_token(16),
            state=state,
            created_at=now,
            expires_at=now + self.ttl,
            client_id=client_id,
            redirect_uri=redirect_uri,
        )
        self._sessions[session.session_id] = session
        logger.info("Created auth session %s (status=%s)", session.session_id, session.status)
        return session

    def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        if session is None or session.expires_at < self.clock():
            return None
        return session

    def update(self, session_id: str, **fields) -> Session:
        """
        Shallow merge of `fields` into the session.

        A new `state` must follow ALLOWED_TRANSITIONS, and a completed session
        keeps its vendor credentials: only the OAuth half may change.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Session {session_id} not found")

        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")

        new_state = fields.get("state")
        if new_state is not None:
            self._check_transition(session, new_state)

        for name, value in fields.items():
            setattr(session, name, value)
        return session

    def extend(self, session_id: str, until: float) -> None:
        """Push expires_at forward; never moves it back."""
        session = self._sessions.get(session_id)
        if session is not None and until > session.expires_at:
            session.expires_at = until

    @staticmethod
    def _check_transition(session: Session, new_state: AuthState) -> None:
        current = session.status
        target = new_state.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise BridgeError(
                ErrorCode.INVALID_STATUS,
                f"Session {session.session_id} cannot move from {current} to {target}",
            )
        if current == "completed" and target == "completed":
            old_vendor = session.vendor
            new_vendor = getattr(new_state, "vendor", None)
            if old_vendor is not None and (new_vendor is None or not old_vendor.same_identity(new_vendor)):
                raise BridgeError(
                    ErrorCode.INVALID_STATUS,
                    f"Vendor session of {session.session_id} is immutable once assigned",
                )

    # ---------- Lookups ----------

    def sessions(self) -> Iterator[Session]:
        now = self.clock()
        for session in list(self._sessions.values()):
            if session.expires_at >= now:
                yield session

    def find_by_state(self, state: str) -> Session | None:
        if not state:
            return None
        for session in self.sessions():
            if getattr(session.state, "state", None) == state:
                return session
        return None

    def find_by_access_token(self, token: str) -> Session | None:
        """Completed session whose access token matches and whose sid is still valid."""
        if not token:
            return None
        now = self.clock()
        for session in self.sessions():
            tokens, vendor = session.tokens, session.vendor
            if tokens is None or vendor is None:
                continue
            if tokens.access_token == token and not vendor.is_expired(now):
                return session
        return None

    # ---------- Sweep ----------

    def sweep(self) -> int:
        now = self.clock()
        expired = [sid for sid, s in self._sessions.items() if s.expires_at < now]
        for session_id in expired:
            del self._sessions[session_id]
            logger.info("Cleaned up expired session: %s", session_id)
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def aclose(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)
