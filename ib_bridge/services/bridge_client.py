import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from ib_bridge.utils.errors import BridgeError, ErrorCode
from ib_bridge.utils.retries import async_retry

logger = logging.getLogger(__name__)


def _error_fields(resp: httpx.Response) -> Dict[str, Any]:
    """Pull the OAuth `error`/`error_description` pair out of a failed response."""
    details: Dict[str, Any] = {"status": resp.status_code}
    try:
        body = resp.json()
    except ValueError:
        details["error_description"] = resp.text[:200]
        return details
    if isinstance(body, dict):
        for key in ("error", "error_description"):
            if body.get(key):
                details[key] = body[key]
    return details


class BridgeClient:
    """
    Client for the external OAuth bridge (authorize / token / userinfo).

    The bridge is a standard authorization server except that its token and
    userinfo responses also embed the vendor session fields.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        redirect_uri: str,
        scope: str = "profile",
        timeout: float = 30.0,
        retry_attempts: int = 2,
        retry_backoff_base: float = 0.5,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.retry_attempts = retry_attempts
        self.retry_backoff_base = retry_backoff_base
        self._owns_client = http is None
        self._client = http or httpx.AsyncClient(timeout=timeout)

    def authorization_url(self, state: str, code_challenge: str, platform_url: Optional[str] = None) -> str:
        # Built only; the user's browser performs the actual request.
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        if platform_url:
            params["platform_url"] = platform_url
        return f"{self.base_url}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str, client_id: str) -> Dict[str, Any]:
        resp = await self._client.post(
            f"{self.base_url}/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": client_id,
                "code_verifier": code_verifier,
            },
        )
        if resp.status_code >= 400:
            details = _error_fields(resp)
            logger.warning("Token exchange failed: %s", details)
            raise BridgeError(
                ErrorCode.TOKEN_EXCHANGE_FAILED,
                details.get("error_description") or "Failed to exchange authorization code for tokens",
                details,
            )
        return resp.json()

    async def refresh(self, refresh_token: str, client_id: str) -> Dict[str, Any]:
        resp = await self._client.post(
            f"{self.base_url}/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
            },
        )
        if resp.status_code >= 400:
            details = _error_fields(resp)
            logger.warning("Token refresh failed: %s", details)
            raise BridgeError(
                ErrorCode.AUTHENTICATION_FAILED,
                details.get("error_description") or f"Token refresh failed with HTTP {resp.status_code}",
                details,
            )
        return resp.json()

    async def userinfo(self, access_token: str) -> Dict[str, Any]:
        async def do_request() -> httpx.Response:
            return await self._client.get(
                f"{self.base_url}/userinfo",
                headers={"Authorization": f"Bearer {access_token}"},
            )

        resp = await async_retry(
            do_request,
            retries=self.retry_attempts,
            base_delay=self.retry_backoff_base,
            exceptions=(httpx.RequestError,),
        )
        if resp.status_code >= 400:
            raise BridgeError(
                ErrorCode.AUTHENTICATION_FAILED,
                f"userinfo returned HTTP {resp.status_code}",
                _error_fields(resp),
            )
        return resp.json()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
