import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from ib_bridge.models.session import Session
from ib_bridge.utils.errors import BridgeError
from ib_bridge.utils.oauth_metadata import build_www_authenticate
from .bearer_resolver import BearerResolver
from .resources import ResourceBrowser, ResourceNotFound
from .tool_catalog import ToolCatalog
from .tool_handlers import ToolHandlers

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "2025-06-18"
SERVER_INFO = {"name": "ib-api-tools-mcp-server", "title": "IntelligenceBank API Tools", "version": "0.1.0"}

INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
AUTH_REQUIRED = -32001
RESOURCE_NOT_FOUND = -32002


class ProtocolHandler:
    """
    Parses MCP JSON-RPC messages and routes them to tools and resources.

    The transport is stateless: the caller passes the request's Authorization
    header with every message, and it is resolved to a session before any
    tool or resource handler runs.
    """

    def __init__(
        self,
        catalog: ToolCatalog,
        tools: ToolHandlers,
        resolver: BearerResolver,
        resources: ResourceBrowser,
        server_url: str,
        scope: str = "profile",
    ) -> None:
        self.catalog = catalog
        self.tools = tools
        self.resolver = resolver
        self.resources = resources
        self.server_url = server_url
        self.scope = scope

    async def handle_request(self, body: Any, authorization: Optional[str] = None) -> Dict[str, Any]:
        """
        Handle one JSON-RPC request.
        Required fields: jsonrpc, method, id
        """
        if not isinstance(body, dict):
            return self._jsonrpc_error({}, code=INVALID_REQUEST, message="Request body must be a JSON object")

        method = body.get("method")
        if not method:
            return self._jsonrpc_error(body, code=INVALID_REQUEST, message="Missing 'method' in request")

        logger.info("MCP request: method=%s id=%s", method, body.get("id"))

        if method == "initialize":
            return self._result(body, self._initialize(body))
        if method == "ping":
            return self._result(body, {})
        if method == "tools/list":
            return self._result(body, {"tools": self.catalog.list_tools()})
        if method not in ("tools/call", "resources/list", "resources/read"):
            return self._jsonrpc_error(body, code=METHOD_NOT_FOUND, message=f"Method '{method}' is not supported")

        # Must finish before dispatch: handlers assume the session exists.
        bearer = await self.resolver.find_or_create(authorization) if authorization else None

        try:
            if method == "tools/call":
                return await self._handle_tools_call(body, bearer)
            return await self._handle_resources(method, body, bearer)
        except Exception as e:
            logger.exception("Unhandled error in %s", method)
            return self._jsonrpc_error(
                body,
                code=INTERNAL_ERROR,
                message=f"Internal error during {method}",
                data={"detail": str(e)},
            )

    @staticmethod
    def _initialize(body: Dict[str, Any]) -> Dict[str, Any]:
        params = body.get("params") or {}
        return {
            "protocolVersion": params.get("protocolVersion") or DEFAULT_PROTOCOL_VERSION,
            "capabilities": {
                "tools": {"listChanged": False},
                "resources": {"listChanged": False, "subscribe": False},
            },
            "serverInfo": SERVER_INFO,
        }

    async def _handle_tools_call(self, body: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        params = body.get("params") or {}
        tool_name = params.get("name")

        logger.info("tools/call received: tool=%s, bearer_session=%s", tool_name, bearer.session_id if bearer else None)

        if not tool_name:
            return self._jsonrpc_error(body, code=INVALID_PARAMS, message="Missing tool 'name' in params")
        if tool_name not in self.catalog:
            return self._jsonrpc_error(body, code=INVALID_PARAMS, message=f"Unknown tool: {tool_name}")

        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            return self._jsonrpc_error(body, code=INVALID_PARAMS, message="Tool 'arguments' must be an object")

        try:
            result = await self.tools.call(tool_name, arguments, bearer)
        except ValidationError as e:
            logger.warning("Invalid arguments for %s: %s", tool_name, e)
            return self._jsonrpc_error(
                body,
                code=INVALID_PARAMS,
                message=f"Invalid arguments for tool {tool_name}",
                data={"errors": json.loads(e.json())},
            )

        return self._result(
            body,
            {
                "content": [{"type": "text", "text": json.dumps(result, indent=2, default=str)}],
                "structuredContent": result,
                "isError": result.get("success") is False,
            },
        )

    async def _handle_resources(self, method: str, body: Dict[str, Any], bearer: Optional[Session]) -> Dict[str, Any]:
        if bearer is None or bearer.vendor is None:
            logger.info("%s without an authenticated bearer session", method)
            return self._auth_required(body)

        params = body.get("params") or {}
        try:
            if method == "resources/list":
                result = await self.resources.list_page(bearer.vendor, params.get("cursor"))
            else:
                result = await self.resources.read_resource(bearer.vendor, params.get("uri") or "")
        except ResourceNotFound as e:
            return self._jsonrpc_error(body, code=RESOURCE_NOT_FOUND, message=str(e))
        except ValueError as e:
            return self._jsonrpc_error(body, code=INVALID_PARAMS, message=str(e))
        except (BridgeError, httpx.HTTPError) as e:
            logger.warning("%s failed for session %s: %s", method, bearer.session_id, e)
            return self._jsonrpc_error(
                body,
                code=INTERNAL_ERROR,
                message=f"Failed to {'list' if method == 'resources/list' else 'read'} resources: {e}",
            )
        return self._result(body, result)

    def www_authenticate(self) -> str:
        return build_www_authenticate(
            realm=self.server_url,
            scope=self.scope,
            error="invalid_token",
            error_description="Authentication required to access IntelligenceBank resources",
            resource_metadata=f"{self.server_url}/.well-known/oauth-protected-resource",
        )

    def _auth_required(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._jsonrpc_error(
            body,
            code=AUTH_REQUIRED,
            message="Authentication required",
            data={"WWW-Authenticate": self.www_authenticate()},
        )

    @staticmethod
    def _result(request_body: Dict[str, Any], result: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "jsonrpc": request_body.get("jsonrpc", "2.0"),
            "id": request_body.get("id"),
            "result": result,
        }

    @staticmethod
    def _jsonrpc_error(
        request_body: Dict[str, Any],
        *,
        code: int,
        message: str,
        data: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        return {
            "jsonrpc": request_body.get("jsonrpc", "2.0"),
            "id": request_body.get("id"),
            "error": {
                "code": code,
                "message": message,
                **({"data": data} if data is not None else {}),
            },
        }
