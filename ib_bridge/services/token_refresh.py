"""
OAuth token refresh.

Refreshing only renews the OAuth half of a session. The vendor sid is left
exactly as it was, even when the bridge echoes it back: a refreshed access
token does not extend or rotate the vendor session, whose own expiry stands.
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx

from ib_bridge.models.session import CompletedAuth, FailedAuth, Session
from ib_bridge.utils.errors import BridgeError, ErrorCode
from .bridge_client import BridgeClient
from .credential_exchange import tokens_from_response, vendor_from_token_response
from .session_store import SessionStore

logger = logging.getLogger(__name__)

# Fragments of the bridge's error_description that mean the vendor session is gone.
_TERMINAL_DESCRIPTIONS = ("session has expired", "session refresh limit exceeded")


class RefreshOutcome(str, Enum):
    REFRESHED = "refreshed"
    TRANSIENT_FAILURE = "transient_failure"
    SESSION_EXPIRED = "session_expired"

    @property
    def ok(self) -> bool:
        return self is RefreshOutcome.REFRESHED


def is_terminal_refresh_error(details: Optional[Dict[str, Any]]) -> bool:
    if not details or details.get("error") != "invalid_token":
        return False
    description = str(details.get("error_description") or "").lower()
    return any(fragment in description for fragment in _TERMINAL_DESCRIPTIONS)


class TokenRefreshPolicy:
    def __init__(
        self,
        store: SessionStore,
        bridge: BridgeClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.bridge = bridge
        self.clock = clock

    def _expire(self, session: Session, description: str) -> RefreshOutcome:
        logger.warning("Vendor session expired for %s: %s", session.session_id, description)
        self.store.update(
            session.session_id,
            state=FailedAuth(error=ErrorCode.SESSION_EXPIRED.value, error_description=description),
        )
        return RefreshOutcome.SESSION_EXPIRED

    async def refresh(self, session_id: str) -> RefreshOutcome:
        session = self.store.get(session_id)
        done = session.completed if session else None
        if done is None:
            return RefreshOutcome.TRANSIENT_FAILURE

        if done.vendor is not None and done.vendor.is_expired(self.clock()):
            return self._expire(session, "Session has expired")

        if done.tokens is None or not done.tokens.refresh_token:
            logger.info("No refresh token for session %s", session_id)
            return RefreshOutcome.TRANSIENT_FAILURE

        try:
            logger.info("Refreshing access token for session: %s", session_id)
            payload = await self.bridge.refresh(done.tokens.refresh_token, session.client_id)
        except BridgeError as e:
            if is_terminal_refresh_error(e.details):
                return self._expire(session, e.message)
            return RefreshOutcome.TRANSIENT_FAILURE
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Error refreshing token for %s: %s", session_id, e)
            return RefreshOutcome.TRANSIENT_FAILURE

        # The session may have been swept or failed while the request was in flight.
        current = self.store.get(session_id)
        if current is None or current.completed is None:
            return RefreshOutcome.TRANSIENT_FAILURE
        done = current.completed

        try:
            tokens = tokens_from_response(payload, fallback_refresh=done.tokens.refresh_token if done.tokens else "")
            echoed = vendor_from_token_response(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed refresh response for %s: %s", session_id, e)
            return RefreshOutcome.TRANSIENT_FAILURE

        vendor = done.vendor
        if vendor is None:
            vendor = echoed
        elif echoed is not None and not vendor.same_identity(echoed):
            logger.warning("Bridge returned different vendor credentials on refresh; keeping the original")

        self.store.update(
            session_id,
            state=CompletedAuth(
                tokens=tokens,
                vendor=vendor,
                user_info=done.user_info,
            ),
        )
        logger.info("Access token refreshed for session %s (vendor session unchanged)", session_id)
        return RefreshOutcome.REFRESHED
