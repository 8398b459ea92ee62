import logging
from typing import Any, Dict, Optional

import httpx

from ib_bridge.models.session import Session
from ib_bridge.utils.errors import ErrorCode, error_result
from .session_store import SessionStore
from .token_refresh import RefreshOutcome, TokenRefreshPolicy
from .vendor_client import VendorClient, api_root

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _parse_body(resp: httpx.Response) -> Any:
    if "application/json" in resp.headers.get("content-type", ""):
        try:
            return resp.json()
        except ValueError:
            return resp.text
    return resp.text


class APIProxyInvoker:
    """
    Executes one vendor API call with a session's credentials.

    A 401 triggers exactly one token refresh and at most one retry; the retry
    budget is fixed so a dead session cannot loop.
    """

    def __init__(
        self,
        store: SessionStore,
        vendor: VendorClient,
        refresher: TokenRefreshPolicy,
        vendor_domain: str = "intelligencebank.com",
    ) -> None:
        self.store = store
        self.vendor = vendor
        self.refresher = refresher
        self.vendor_domain = vendor_domain

    def build_url(self, session: Session, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if self.vendor_domain and self.vendor_domain in path.split("/", 1)[0]:
            return f"https://{path}"
        return f"{api_root(session.vendor)}/{path.lstrip('/')}"

    @staticmethod
    def _headers(session: Session, method: str, body: Any, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {"sid": session.vendor.sid, "Accept": "application/json"}
        if session.tokens is not None:
            headers["Authorization"] = f"{session.tokens.token_type or 'Bearer'} {session.tokens.access_token}"
        if body is not None and method in BODY_METHODS:
            headers["Content-Type"] = "application/json"
        headers.update(extra or {})
        return headers

    async def _send(
        self,
        session: Session,
        method: str,
        path: str,
        body: Any,
        headers: Optional[Dict[str, str]],
    ) -> httpx.Response:
        url = self.build_url(session, path)
        logger.info("Making vendor API call: %s %s", method, url)
        return await self.vendor.request(
            method,
            url,
            headers=self._headers(session, method, body, headers),
            body=body if method in BODY_METHODS else None,
        )

    async def call(
        self,
        session: Session,
        method: str,
        path: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        method = method.upper()
        if session.vendor is None:
            return error_result(
                ErrorCode.NOT_AUTHENTICATED,
                "Vendor session not available. Please complete authentication first.",
            )

        try:
            resp = await self._send(session, method, path, body, headers)
            if resp.status_code == 401:
                logger.info("Received 401 for session %s, refreshing once", session.session_id)
                outcome = await self.refresher.refresh(session.session_id)
                if outcome is RefreshOutcome.SESSION_EXPIRED:
                    return error_result(
                        ErrorCode.SESSION_EXPIRED,
                        "Your IntelligenceBank session has expired. Please authenticate again.",
                        status=401,
                        reauthenticate=True,
                    )
                refreshed = self.store.get(session.session_id) if outcome.ok else None
                if refreshed is None or refreshed.vendor is None:
                    return error_result(
                        ErrorCode.AUTHENTICATION_FAILED,
                        "Request was rejected and the credentials could not be refreshed. Try again later.",
                        status=401,
                    )
                resp = await self._send(refreshed, method, path, body, headers)
                if resp.status_code == 401:
                    return error_result(
                        ErrorCode.AUTHENTICATION_FAILED,
                        "Request was rejected again after refreshing credentials.",
                        status=401,
                    )
        except httpx.HTTPError as e:
            logger.warning("Vendor API call failed for session %s: %s", session.session_id, e)
            return error_result(ErrorCode.SERVER_ERROR, f"Request failed: {e}")

        return {"success": resp.is_success, "status": resp.status_code, "data": _parse_body(resp)}
