import base64
import binascii
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError

from ib_bridge.models.session import FailedAuth, Session
from ib_bridge.schemas.api import (
    ApiCallArgs,
    AuthLoginArgs,
    BrowserLoginCompleteArgs,
    BrowserLoginStartArgs,
    ComplianceReviewArgs,
    FileContentInput,
    SessionArgs,
    UploadFileArgs,
)
from ib_bridge.utils.errors import BridgeError, ErrorCode, error_result
from .api_proxy import APIProxyInvoker
from .compliance_review import ComplianceReviewRunner, guess_mime_type
from .credential_exchange import CredentialExchange, to_iso
from .session_store import SessionStore
from .upload_ledger import UploadLedger

logger = logging.getLogger(__name__)

NO_VENDOR_SESSION = (
    "No active IntelligenceBank session found. "
    "Please authenticate first using auth_login or browser_login_start."
)

Handler = Callable[[Dict[str, Any], Optional[Session]], Awaitable[Dict[str, Any]]]


class ToolHandlers:
    """
    Implementations behind every tool in the catalog.

    Each handler receives the raw `arguments` object and the session resolved
    from the request's bearer token (if any), and returns a plain result dict.
    Argument validation errors propagate as pydantic ValidationError; every
    other failure is returned as a structured error result.
    """

    def __init__(
        self,
        store: SessionStore,
        ledger: UploadLedger,
        credentials: CredentialExchange,
        proxy: APIProxyInvoker,
        reviews: ComplianceReviewRunner,
        max_upload_size: int = 50 * 1024 * 1024,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.credentials = credentials
        self.proxy = proxy
        self.reviews = reviews
        self.max_upload_size = max_upload_size
        self._handlers: Dict[str, Handler] = {
            "status": self.status,
            "auth_login": self.auth_login,
            "auth_status": self.auth_status,
            "browser_login_start": self.browser_login_start,
            "browser_login_complete": self.browser_login_complete,
            "api_call": self.api_call,
            "upload_file": self.upload_file,
            "run_file_compliance_review": self.run_file_compliance_review,
            "get_compliance_filters": self.get_compliance_filters,
        }

    async def call(self, name: str, arguments: Dict[str, Any], bearer: Optional[Session] = None) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(name)
        try:
            return await handler(arguments or {}, bearer)
        except ValidationError:
            raise
        except BridgeError as e:
            logger.warning("Tool %s failed: %s", name, e.message)
            return e.to_result()
        except httpx.HTTPError as e:
            logger.warning("Tool %s request failed: %s", name, e)
            return error_result(ErrorCode.SERVER_ERROR, f"Request failed: {e}")
        except Exception as e:
            logger.exception("Unhandled error in tool %s", name)
            return error_result(ErrorCode.SERVER_ERROR, str(e) or "An unexpected error occurred")

    def _session(self, session_id: Optional[str], bearer: Optional[Session]) -> Tuple[Optional[Session], Optional[Dict[str, Any]]]:
        """Session named by `session_id`, else the bearer session; with an error result when unusable."""
        if session_id:
            session = self.store.get(session_id)
            if session is None:
                return None, error_result(
                    ErrorCode.INVALID_SESSION,
                    "Session not found or expired. Please start a new authentication flow.",
                )
        else:
            session = bearer
        if session is not None and isinstance(session.state, FailedAuth):
            return None, error_result(
                session.state.error,
                session.state.error_description or "Authentication failed. Please authenticate again.",
                reauthenticate=True,
            )
        if session is None or session.vendor is None:
            return None, error_result(ErrorCode.NOT_AUTHENTICATED, NO_VENDOR_SESSION)
        return session, None

    # ---------- Status & auth ----------

    async def status(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        return {
            "success": True,
            "status": "running",
            "sessions": len(self.store),
            "uploads": self.ledger.stats(),
            "authenticated": bearer is not None and bearer.vendor is not None,
            "message": "Server is running. Use auth_login or browser_login_start to authenticate.",
        }

    async def auth_login(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        args = AuthLoginArgs.model_validate(arguments)
        return self.credentials.login(args.platform_url)

    async def auth_status(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        args = SessionArgs.model_validate(arguments)
        session = self.store.get(args.session_id) if args.session_id else bearer
        if session is None:
            return error_result(
                ErrorCode.INVALID_SESSION,
                "Session not found or expired. Please start a new authentication flow.",
                status="error",
                authenticated=False,
            )

        output: Dict[str, Any] = {"status": session.status, "authenticated": session.status == "completed"}
        done = session.completed
        if done is not None:
            if done.tokens is not None:
                output["tokens"] = done.tokens.model_dump()
            output["user_info"] = done.user_info
            if done.vendor is not None and done.vendor.sid_expiry is not None:
                output["vendor_session_expiry"] = to_iso(done.vendor.sid_expiry)
        elif session.status == "error":
            output["error"] = session.state.error
            output["error_description"] = session.state.error_description
        return output

    async def browser_login_start(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        args = BrowserLoginStartArgs.model_validate(arguments)
        return await self.credentials.start(args.platform_url)

    async def browser_login_complete(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        args = BrowserLoginCompleteArgs.model_validate(arguments)
        return await self.credentials.complete(args.session_id)

    # ---------- API ----------

    async def api_call(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        args = ApiCallArgs.model_validate(arguments)
        session, failure = self._session(args.session_id, bearer)
        if failure:
            return failure
        return await self.proxy.call(session, args.method, args.path, body=args.body, headers=args.headers)

    # ---------- Files & compliance ----------

    async def upload_file(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        args = UploadFileArgs.model_validate(arguments)
        if isinstance(args.file, FileContentInput):
            filename = args.file.filename
            try:
                content = base64.b64decode(args.file.content, validate=True)
            except binascii.Error as e:
                return error_result(ErrorCode.INVALID_REQUEST, f"File content is not valid base64: {e}")
        else:
            path = Path(args.file.path)
            filename = path.name
            try:
                content = path.read_bytes()
            except OSError as e:
                return error_result(ErrorCode.UPLOAD_FAILED, f"Cannot read file {path}: {e.strerror}")

        if len(content) > self.max_upload_size:
            return error_result(
                ErrorCode.UPLOAD_FAILED,
                f"File is larger than the {self.max_upload_size // (1024 * 1024)}MB limit",
            )

        entry = self.ledger.register(filename, content, guess_mime_type(filename))
        return {
            "success": True,
            "file_id": entry.file_id,
            "filename": entry.filename,
            "size": entry.size,
            "expires_at": entry.expires_at,
            "message": (
                f"File uploaded. Use file_id {entry.file_id} in run_file_compliance_review "
                f"before it expires at {to_iso(int(entry.expires_at))}."
            ),
        }

    async def run_file_compliance_review(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        args = ComplianceReviewArgs.model_validate(arguments)
        session, failure = self._session(args.session_id, bearer)
        if failure:
            return failure
        return await self.reviews.run(
            session.vendor,
            args.file,
            categorization=args.categorization,
            max_wait=args.max_wait_time,
            poll_interval=args.poll_interval,
        )

    async def get_compliance_filters(self, arguments: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        args = SessionArgs.model_validate(arguments)
        session, failure = self._session(args.session_id, bearer)
        if failure:
            return failure
        return await self.reviews.filters(session.vendor)
