import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from ib_bridge.models.session import (
    BrowserPendingAuth,
    CompletedAuth,
    FailedAuth,
    OAuthTokens,
    PendingAuth,
    Session,
    VendorSession,
)
from ib_bridge.utils.errors import BridgeError, ErrorCode, error_result
from ib_bridge.utils.pkce import generate_code_challenge, generate_code_verifier, generate_state
from .bridge_client import BridgeClient
from .job_poller import poll_until_terminal
from .session_store import SessionStore
from .vendor_client import VendorClient, normalize_platform_url

logger = logging.getLogger(__name__)

OAUTH_INSTRUCTIONS = (
    "Please visit the authorization URL in your browser to complete authentication. "
    "Once you've logged in, check the authentication status with auth_status."
)
BROWSER_INSTRUCTIONS = (
    "Please visit the browser URL and complete the login in your IntelligenceBank account. "
    "Once you've logged in, call browser_login_complete with the session id."
)


def epoch_seconds(value: Any) -> Optional[int]:
    """Normalize an epoch timestamp that may be in seconds or milliseconds."""
    if value in (None, ""):
        return None
    number = int(float(value))
    return number // 1000 if number > 10_000_000_000 else number


def tokens_from_response(payload: Dict[str, Any], fallback_refresh: str = "") -> OAuthTokens:
    return OAuthTokens(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or fallback_refresh,
        token_type=payload.get("token_type") or "Bearer",
        expires_in=int(payload.get("expires_in") or 3600),
    )


def vendor_from_token_response(payload: Dict[str, Any]) -> Optional[VendorSession]:
    """Vendor fields the bridge embeds in its token response (non-standard extension)."""
    if not (payload.get("sid") and payload.get("clientid") and payload.get("apiV3url")):
        return None
    hours = payload.get("logintimeoutperiod")
    return VendorSession(
        sid=payload["sid"],
        client_id=payload["clientid"],
        api_base_url=payload["apiV3url"],
        login_timeout_hours=float(hours) if hours else None,
        sid_expiry=epoch_seconds(payload.get("sidExpiry")),
        sid_created_at=epoch_seconds(payload.get("sidCreatedAt")),
    )


def vendor_from_userinfo(userinfo: Dict[str, Any], now: float) -> Optional[VendorSession]:
    """Vendor fields the bridge embeds in its userinfo response."""
    if not (userinfo.get("ib_session_id") and userinfo.get("ib_client_id") and userinfo.get("ib_api_url")):
        return None
    return VendorSession(
        sid=userinfo["ib_session_id"],
        client_id=userinfo["ib_client_id"],
        api_base_url=userinfo["ib_api_url"],
        sid_created_at=int(now),
    )


def profile_from_userinfo(userinfo: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "first_name": userinfo.get("given_name"),
        "last_name": userinfo.get("family_name"),
        "name": userinfo.get("name"),
        "email": userinfo.get("email"),
        "user_uuid": userinfo.get("ib_user_uuid") or userinfo.get("sub"),
    }


def to_iso(epoch: Optional[int]) -> Optional[str]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


class CredentialExchange:
    """
    Populates a session's credentials through one of two flows.

    OAuth/PKCE (login -> callback) goes through the bridge and yields both the
    OAuth token set and the vendor session. Browser login (start -> complete)
    talks to the vendor directly and yields only the vendor session.
    """

    def __init__(
        self,
        store: SessionStore,
        bridge: BridgeClient,
        vendor: VendorClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.bridge = bridge
        self.vendor = vendor
        self.clock = clock

    def _complete(self, session: Session, state: CompletedAuth) -> Session:
        self.store.update(session.session_id, state=state)
        if state.vendor is not None and state.vendor.sid_expiry is not None:
            self.store.extend(session.session_id, float(state.vendor.sid_expiry))
        return session

    def _fail(self, session: Session, code: str, description: Optional[str]) -> None:
        try:
            self.store.update(
                session.session_id,
                state=FailedAuth(error=getattr(code, "value", code), error_description=description),
            )
        except BridgeError as e:
            logger.warning("Could not mark session %s as failed: %s", session.session_id, e.message)

    # ---------- OAuth / PKCE ----------

    def login(self, platform_url: Optional[str] = None) -> Dict[str, Any]:
        code_verifier = generate_code_verifier()
        state = generate_state()
        session = self.store.create(
            PendingAuth(code_verifier=code_verifier, state=state),
            client_id=self.bridge.client_id,
            redirect_uri=self.bridge.redirect_uri,
        )
        authorization_url = self.bridge.authorization_url(
            state=state,
            code_challenge=generate_code_challenge(code_verifier),
            platform_url=platform_url,
        )
        return {
            "success": True,
            "authorization_url": authorization_url,
            "session_id": session.session_id,
            "instructions": OAUTH_INSTRUCTIONS,
        }

    async def callback(
        self,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> Dict[str, Any]:
        logger.info("OAuth callback received: code=%s state=%s error=%s", "present" if code else "missing", state, error)

        if error:
            session = self.store.find_by_state(state) if state else None
            if session is not None:
                self._fail(session, error, error_description)
            return error_result(error, error_description or "Authorization was not granted")

        if not code or not state:
            return error_result(ErrorCode.INVALID_REQUEST, "Missing required parameters: code and state")

        session = self.store.find_by_state(state)
        if session is None:
            return error_result(
                ErrorCode.INVALID_STATE,
                "Invalid or expired authentication session. Please try again.",
            )

        try:
            return await self._exchange(session, code)
        except Exception as e:
            logger.exception("Error during token exchange for session %s", session.session_id)
            self._fail(session, ErrorCode.SERVER_ERROR, str(e))
            return error_result(ErrorCode.SERVER_ERROR, str(e) or "An unexpected error occurred")

    async def _exchange(self, session: Session, code: str) -> Dict[str, Any]:
        pending = session.state
        try:
            payload = await self.bridge.exchange_code(
                code=code,
                code_verifier=pending.code_verifier,
                redirect_uri=session.redirect_uri,
                client_id=session.client_id,
            )
        except BridgeError as e:
            self._fail(session, ErrorCode.TOKEN_EXCHANGE_FAILED, e.message)
            return error_result(ErrorCode.TOKEN_EXCHANGE_FAILED, e.message, details=e.details)

        tokens = tokens_from_response(payload)

        userinfo: Optional[Dict[str, Any]] = None
        try:
            userinfo = await self.bridge.userinfo(tokens.access_token)
        except (BridgeError, httpx.HTTPError, ValueError) as e:
            logger.warning("Failed to fetch user info, continuing with authentication: %s", e)

        vendor = vendor_from_token_response(payload)
        if vendor is None and userinfo:
            vendor = vendor_from_userinfo(userinfo, self.clock())
        if vendor is None:
            logger.warning("Session %s completed without vendor credentials", session.session_id)

        self._complete(
            session,
            CompletedAuth(
                tokens=tokens,
                vendor=vendor,
                user_info=profile_from_userinfo(userinfo) if userinfo else None,
            ),
        )
        logger.info("Authentication completed for session: %s", session.session_id)
        return {
            "success": True,
            "session_id": session.session_id,
            "status": "completed",
            "vendor_ready": vendor is not None,
            "user_info": session.completed.user_info,
        }

    # ---------- Direct browser login ----------

    async def start(self, platform_url: str) -> Dict[str, Any]:
        base_url = normalize_platform_url(platform_url)
        logger.info("Starting browser login for platform: %s", base_url)
        try:
            data = await self.vendor.issue_login_token(base_url)
        except BridgeError as e:
            return e.to_result()
        except httpx.HTTPError as e:
            logger.warning("Browser login start failed for %s: %s", base_url, e)
            return error_result(ErrorCode.TOKEN_INITIATION_FAILED, f"Failed to initiate browser login: {e}")

        session = self.store.create(
            BrowserPendingAuth(platform_url=base_url, login_token=data["content"])
        )
        logger.info("Browser login session created: %s", session.session_id)
        return {
            "success": True,
            "session_id": session.session_id,
            "browser_url": f"{base_url}/auth/?login=0&token={data['content']}",
            "instructions": BROWSER_INSTRUCTIONS,
        }

    async def complete(self, session_id: str, max_wait: float = 0.0, interval: float = 2.0) -> Dict[str, Any]:
        """
        Check whether the user finished the browser login.

        With max_wait=0 this is a single check; a "not ready" answer is
        returned as info_retrieval_failed and the caller should try again.
        """
        session = self.store.get(session_id)
        if session is None:
            return error_result(
                ErrorCode.INVALID_SESSION,
                "Session not found or expired. Please start a new browser login flow.",
            )
        if session.status == "completed":
            return self._completed_result(session)
        if not isinstance(session.state, BrowserPendingAuth):
            return error_result(
                ErrorCode.INVALID_STATUS,
                f"Session status is {session.status}. Expected browser_pending. Please use browser_login_start first.",
            )

        pending = session.state
        try:
            poll = await poll_until_terminal(
                lambda: self.vendor.session_info(pending.platform_url, pending.login_token),
                max_wait=max_wait,
                interval=interval,
                is_terminal=lambda info: info is not None,
            )
            if poll.timed_out:
                return error_result(
                    ErrorCode.INFO_RETRIEVAL_FAILED,
                    "Login has not been completed yet. Finish logging in in the browser, "
                    "then call browser_login_complete again.",
                    session_id=session_id,
                    retryable=True,
                )
            return self._apply_session_info(session, poll.value)
        except httpx.HTTPError as e:
            logger.warning("Session info lookup failed for %s: %s", session_id, e)
            return error_result(
                ErrorCode.INFO_RETRIEVAL_FAILED,
                f"Could not reach the platform: {e}. Call browser_login_complete again.",
                session_id=session_id,
                retryable=True,
            )
        except (TypeError, ValueError) as e:
            description = f"Unreadable session info from platform: {e}"
            logger.warning("Browser login complete failed for %s: %s", session_id, description)
            self._fail(session, ErrorCode.INVALID_RESPONSE, description)
            return error_result(ErrorCode.INVALID_RESPONSE, description)
        except Exception as e:
            logger.exception("Error during browser login complete for %s", session_id)
            self._fail(session, ErrorCode.SERVER_ERROR, str(e))
            return error_result(ErrorCode.SERVER_ERROR, str(e) or "An unexpected error occurred")

    def _apply_session_info(self, session: Session, info: Dict[str, Any]) -> Dict[str, Any]:
        content = info.get("content") or {}
        session_data = content.get("session") if isinstance(content, dict) else None
        user_data = content.get("info") if isinstance(content, dict) else None
        if not session_data or not user_data:
            description = "Invalid response structure from platform - missing session or info data"
            self._fail(session, ErrorCode.INVALID_RESPONSE, description)
            return error_result(ErrorCode.INVALID_RESPONSE, description)

        sid = session_data.get("sid") or user_data.get("sid")
        client_id = user_data.get("clientid")
        api_base_url = user_data.get("apiV3url")
        if not sid or not client_id or not api_base_url:
            description = "Response is missing required credentials (sid, clientid, or apiV3url)"
            self._fail(session, ErrorCode.MISSING_CREDENTIALS, description)
            return error_result(ErrorCode.MISSING_CREDENTIALS, description)

        hours = user_data.get("logintimeoutperiod")
        hours = float(hours) if hours else None
        created_at = epoch_seconds(session_data.get("loginTime")) or int(self.clock())
        vendor = VendorSession(
            sid=sid,
            client_id=client_id,
            api_base_url=api_base_url,
            login_timeout_hours=hours,
            sid_expiry=int(created_at + hours * 3600) if hours else None,
            sid_created_at=created_at,
        )
        self._complete(
            session,
            CompletedAuth(
                vendor=vendor,
                user_info={
                    "first_name": user_data.get("firstname"),
                    "last_name": user_data.get("lastname"),
                    "email": user_data.get("adminemail"),
                    "client_name": user_data.get("clientname"),
                    "user_uuid": session_data.get("userUuid"),
                },
            ),
        )
        logger.info("Browser login completed for session %s (sid=%s...)", session.session_id, sid[:8])
        return self._completed_result(session)

    @staticmethod
    def _completed_result(session: Session) -> Dict[str, Any]:
        done = session.completed
        vendor = done.vendor
        return {
            "success": True,
            "session_id": session.session_id,
            "status": "completed",
            "authenticated": True,
            "user_info": done.user_info,
            "session_expiry": to_iso(vendor.sid_expiry) if vendor else None,
        }
