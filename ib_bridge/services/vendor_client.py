import logging
from typing import Any, Dict, List, Optional

import httpx

from ib_bridge.models.session import VendorSession
from ib_bridge.utils.errors import BridgeError, ErrorCode
from ib_bridge.utils.retries import async_retry

logger = logging.getLogger(__name__)

API_VERSION = "3.0.0"


def normalize_platform_url(platform_url: str) -> str:
    url = platform_url.strip().rstrip("/")
    return url if url.startswith("http") else f"https://{url}"


def api_root(vendor: VendorSession) -> str:
    """Scheme-qualified API base without a trailing /api/v3 suffix."""
    root = normalize_platform_url(vendor.api_base_url)
    if root.endswith("/api/v3"):
        root = root[: -len("/api/v3")]
    return root


class VendorClient:
    """
    Direct calls to the vendor API.

    Login endpoints are addressed by platform URL; everything else uses the
    session's API base URL and client id and carries the `sid` header.
    """

    def __init__(
        self,
        product_key: str = "",
        timeout: float = 30.0,
        retry_attempts: int = 2,
        retry_backoff_base: float = 0.5,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.product_key = product_key
        self.retry_attempts = retry_attempts
        self.retry_backoff_base = retry_backoff_base
        self._owns_client = http is None
        self._client = http or httpx.AsyncClient(timeout=timeout)

    def _client_url(self, vendor: VendorSession, path: str) -> str:
        return f"{api_root(vendor)}/api/{API_VERSION}/{vendor.client_id}/{path}"

    @staticmethod
    def _sid_headers(vendor: VendorSession) -> Dict[str, str]:
        return {"sid": vendor.sid, "Accept": "application/json"}

    async def _get(self, url: str, **kwargs: Any) -> httpx.Response:
        async def do_request() -> httpx.Response:
            return await self._client.get(url, **kwargs)

        return await async_retry(
            do_request,
            retries=self.retry_attempts,
            base_delay=self.retry_backoff_base,
            exceptions=(httpx.RequestError,),
        )

    # ---------- Browser login ----------

    async def issue_login_token(self, platform_url: str) -> Dict[str, Any]:
        resp = await self._client.post(
            f"{platform_url}/v1/auth/app/token",
            headers={"Content-Type": "application/json"},
        )
        if resp.status_code >= 400:
            raise BridgeError(
                ErrorCode.TOKEN_INITIATION_FAILED,
                f"Failed to initiate browser login: HTTP {resp.status_code}",
                {"details": resp.text[:200]},
            )
        data = resp.json()
        if not data.get("SID") or not data.get("content"):
            raise BridgeError(
                ErrorCode.INVALID_RESPONSE,
                "Invalid response from platform - missing SID or content fields",
            )
        return data

    async def session_info(self, platform_url: str, login_token: str) -> Optional[Dict[str, Any]]:
        """Session info for a browser login, or None while the user has not finished logging in."""
        resp = await self._get(
            f"{platform_url}/v1/auth/app/info",
            params={"token": login_token},
            headers={"Accept": "application/json"},
        )
        if resp.status_code >= 400:
            logger.info("Browser login not ready yet (HTTP %s)", resp.status_code)
            return None
        return resp.json()

    # ---------- Compliance review ----------

    async def upload_file(self, vendor: VendorSession, filename: str, content: bytes, mime_type: str) -> str:
        resp = await self._client.post(
            self._client_url(vendor, "file"),
            params={"target": "complianceReview", "productkey": self.product_key},
            headers={"sid": vendor.sid},
            files={"file": (filename, content, mime_type)},
        )
        if resp.status_code >= 400:
            raise BridgeError(ErrorCode.UPLOAD_FAILED, f"File upload failed with HTTP {resp.status_code}")
        body = resp.json().get("response") or {}
        if body.get("error", 0) != 0:
            raise BridgeError(ErrorCode.UPLOAD_FAILED, f"File upload error code: {body.get('error')}")
        if not body.get("_id"):
            raise BridgeError(ErrorCode.UPLOAD_FAILED, "File upload response is missing the file hash")
        return body["_id"]

    async def create_review(
        self,
        vendor: VendorSession,
        file_hash: str,
        filename: str,
        categorization: List[Dict[str, Any]],
    ) -> str:
        resp = await self._client.post(
            self._client_url(vendor, "complianceReview"),
            params={"complianceReviewType": "file", "productkey": self.product_key},
            headers=self._sid_headers(vendor),
            json={"data": {"fileHash": file_hash, "documentId": filename, "categorisation": categorization}},
        )
        if resp.status_code >= 400:
            raise BridgeError(ErrorCode.REVIEW_CREATE_FAILED, f"Create review failed with HTTP {resp.status_code}")
        try:
            return resp.json()["response"]["data"]["_id"]
        except (KeyError, TypeError) as e:
            raise BridgeError(ErrorCode.REVIEW_CREATE_FAILED, "Create review response is missing the review id") from e

    async def review_status(self, vendor: VendorSession, review_id: str) -> Dict[str, Any]:
        resp = await self._get(
            self._client_url(vendor, f"complianceReview/{review_id}"),
            params={"includeComments": "true", "productkey": self.product_key},
            headers=self._sid_headers(vendor),
        )
        if resp.status_code >= 400:
            raise BridgeError(ErrorCode.SERVER_ERROR, f"Status check failed with HTTP {resp.status_code}")
        return resp.json()["response"]["data"]

    async def list_filters(self, vendor: VendorSession) -> List[Dict[str, Any]]:
        resp = await self._get(
            self._client_url(vendor, "filter.limit(100)"),
            params={
                "searchParams[enableAutoReviews]": "true",
                "action": "input",
                "productkey": self.product_key,
            },
            headers=self._sid_headers(vendor),
        )
        if resp.status_code >= 400:
            raise BridgeError(ErrorCode.SERVER_ERROR, f"Filter lookup failed with HTTP {resp.status_code}")
        return resp.json()["response"]["rows"]

    # ---------- Resources ----------

    async def list_resources(
        self,
        vendor: VendorSession,
        keywords: str = "",
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        path = (
            f"resource.limit({offset},{limit}).order(lastUpdateTime:-1)"
            ".includeAmaTags(brands,locations,topics,objects,landmarks,keywords,faces)"
        )
        resp = await self._get(
            self._client_url(vendor, path),
            params={
                "searchParams[isSearching]": "true",
                "searchParams[keywords]": keywords,
                "productkey": self.product_key,
                "verbose": "true",
            },
            headers=self._sid_headers(vendor),
        )
        if resp.status_code >= 400:
            raise BridgeError(ErrorCode.SERVER_ERROR, f"Failed to fetch resources list: HTTP {resp.status_code}")
        return resp.json()["response"]

    # ---------- Raw proxy ----------

    async def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Any = None,
    ) -> httpx.Response:
        return await self._client.request(method, url, headers=headers, json=body)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
