from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, File, Header, HTTPException, UploadFile
from fastapi.responses import JSONResponse

from ib_bridge.config import Settings
from ib_bridge.schemas.api import HealthResponse, UploadResponse
from ib_bridge.services.credential_exchange import CredentialExchange
from ib_bridge.services.protocol_handler import AUTH_REQUIRED, ProtocolHandler
from ib_bridge.services.session_store import SessionStore
from ib_bridge.services.upload_ledger import UploadLedger
from ib_bridge.utils.errors import ErrorCode
from ib_bridge.utils.oauth_metadata import authorization_server_metadata, protected_resource_metadata

ALLOWED_UPLOAD_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "image/png",
        "image/jpeg",
    }
)

# Callback failures that are the caller's fault map to 400.
CALLBACK_STATUS = {
    ErrorCode.INVALID_REQUEST.value: 400,
    ErrorCode.INVALID_STATE.value: 400,
    ErrorCode.TOKEN_EXCHANGE_FAILED.value: 502,
    ErrorCode.SERVER_ERROR.value: 500,
}


def get_router(
    settings: Settings,
    store: SessionStore,
    ledger: UploadLedger,
    credentials: CredentialExchange,
    protocol_handler: ProtocolHandler,
) -> APIRouter:
    router = APIRouter()

    @router.post("/mcp")
    async def mcp_endpoint(
        body: Any = Body(...),
        authorization: Optional[str] = Header(None),
    ) -> JSONResponse:
        """
        MCP HTTP endpoint (JSON-RPC messages, one per request).
        """
        resp = await protocol_handler.handle_request(body, authorization)
        error = resp.get("error") or {}
        if error.get("code") == AUTH_REQUIRED:
            return JSONResponse(
                resp,
                status_code=401,
                headers={"WWW-Authenticate": protocol_handler.www_authenticate()},
            )
        return JSONResponse(resp)

    @router.get("/callback")
    async def oauth_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> JSONResponse:
        result = await credentials.callback(code, state, error, error_description)
        if result.get("success"):
            return JSONResponse(result)
        return JSONResponse(result, status_code=CALLBACK_STATUS.get(result.get("error"), 400))

    @router.post("/upload", response_model=UploadResponse)
    async def upload(file: UploadFile = File(...)) -> UploadResponse:
        if file.content_type not in ALLOWED_UPLOAD_TYPES:
            raise HTTPException(status_code=400, detail=f"File type not allowed: {file.content_type}")
        content = await file.read(settings.max_upload_size + 1)
        if len(content) > settings.max_upload_size:
            raise HTTPException(status_code=413, detail="File exceeds the maximum upload size")
        if not content:
            raise HTTPException(status_code=400, detail="No file provided")

        entry = ledger.register(file.filename or "upload", content, file.content_type)
        return UploadResponse(
            file_id=entry.file_id,
            filename=entry.filename,
            size=entry.size,
            expires_at=entry.expires_at,
        )

    @router.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", sessions=len(store), uploads=ledger.stats())

    @router.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource() -> Dict[str, Any]:
        return protected_resource_metadata(settings.server_url, settings.oauth_scope)

    @router.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server() -> Dict[str, Any]:
        return authorization_server_metadata(settings.server_url, settings.bridge_url, settings.oauth_scope)

    return router
