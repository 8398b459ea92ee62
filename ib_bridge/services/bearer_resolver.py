import logging
import re
import time
from typing import Callable, Optional

import httpx

from ib_bridge.models.session import CompletedAuth, OAuthTokens, Session
from ib_bridge.utils.errors import BridgeError
from .bridge_client import BridgeClient
from .credential_exchange import profile_from_userinfo, vendor_from_userinfo
from .session_store import SessionStore

logger = logging.getLogger(__name__)

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

# OAuth client id recorded on sessions synthesized from a bearer token.
PUBLIC_CLIENT_ID = "mcp-public-client"


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    match = _BEARER_RE.match(header.strip())
    return match.group(1).strip() if match else None


class BearerResolver:
    """
    Maps an inbound bearer token to a completed session.

    Every request may arrive on a fresh connection, even though the client
    finished the OAuth flow elsewhere. When no local session matches, the
    bridge's userinfo endpoint is asked for the vendor credentials behind the
    token and a completed session is synthesized around them. Callers must
    await the result before dispatching: downstream handlers assume the
    session exists.
    """

    def __init__(
        self,
        store: SessionStore,
        bridge: BridgeClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.bridge = bridge
        self.clock = clock

    def find_existing(self, token: str) -> Session | None:
        return self.store.find_by_access_token(token)

    async def find_or_create(self, header: Optional[str]) -> Session | None:
        token = extract_bearer(header)
        if not token:
            return None

        existing = self.find_existing(token)
        if existing is not None:
            return existing

        logger.info("No local session for bearer token %s..., asking userinfo", token[:8])
        try:
            userinfo = await self.bridge.userinfo(token)
        except (BridgeError, httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to resolve bearer token via userinfo: %s", e)
            return None

        vendor = vendor_from_userinfo(userinfo, self.clock())
        if vendor is None:
            logger.warning("userinfo response carries no vendor session fields")
            return None

        # The refresh token is unknown on this path.
        session = self.store.create(
            CompletedAuth(
                tokens=OAuthTokens(access_token=token, refresh_token="", token_type="Bearer"),
                vendor=vendor,
                user_info=profile_from_userinfo(userinfo),
            ),
            client_id=PUBLIC_CLIENT_ID,
        )
        logger.info(
            "Created session %s from bearer token (sid=%s..., client=%s)",
            session.session_id,
            vendor.sid[:8],
            vendor.client_id,
        )
        return session
