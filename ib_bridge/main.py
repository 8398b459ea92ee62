import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from ib_bridge.config import Settings, settings as default_settings
from ib_bridge.controllers.gateway_controller import get_router
from ib_bridge.services.api_proxy import APIProxyInvoker
from ib_bridge.services.bearer_resolver import BearerResolver
from ib_bridge.services.bridge_client import BridgeClient
from ib_bridge.services.compliance_review import ComplianceReviewRunner
from ib_bridge.services.credential_exchange import CredentialExchange
from ib_bridge.services.protocol_handler import ProtocolHandler
from ib_bridge.services.resources import ResourceBrowser
from ib_bridge.services.session_store import SessionStore
from ib_bridge.services.token_refresh import TokenRefreshPolicy
from ib_bridge.services.tool_catalog import ToolCatalog
from ib_bridge.services.tool_handlers import ToolHandlers
from ib_bridge.services.upload_ledger import UploadLedger
from ib_bridge.services.vendor_client import VendorClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Settings = default_settings,
    bridge_http: Optional[httpx.AsyncClient] = None,
    vendor_http: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    # Core components (created once per process)
    store = SessionStore(ttl=settings.session_ttl, sweep_interval=settings.sweep_interval)
    ledger = UploadLedger(settings.upload_dir, ttl=settings.upload_ttl, sweep_interval=settings.sweep_interval)
    bridge = BridgeClient(
        settings.bridge_url,
        client_id=settings.oauth_client_id,
        redirect_uri=settings.oauth_redirect_uri,
        scope=settings.oauth_scope,
        timeout=settings.backend_timeout,
        retry_attempts=settings.retry_attempts,
        retry_backoff_base=settings.retry_backoff_base,
        http=bridge_http,
    )
    vendor = VendorClient(
        product_key=settings.product_key,
        timeout=settings.backend_timeout,
        retry_attempts=settings.retry_attempts,
        retry_backoff_base=settings.retry_backoff_base,
        http=vendor_http,
    )
    credentials = CredentialExchange(store, bridge, vendor)
    refresher = TokenRefreshPolicy(store, bridge)
    proxy = APIProxyInvoker(store, vendor, refresher)
    reviews = ComplianceReviewRunner(
        vendor,
        ledger,
        max_wait=settings.review_max_wait,
        poll_interval=settings.review_poll_interval,
    )
    tools = ToolHandlers(store, ledger, credentials, proxy, reviews, max_upload_size=settings.max_upload_size)
    protocol_handler = ProtocolHandler(
        ToolCatalog(settings.tools_path),
        tools,
        BearerResolver(store, bridge),
        ResourceBrowser(vendor),
        server_url=settings.server_url,
        scope=settings.oauth_scope,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- startup ---
        logger.info("Starting session and upload sweeps (every %ss)...", settings.sweep_interval)
        store.start()
        ledger.start()
        logger.info("Startup complete. OAuth bridge: %s", settings.bridge_url)
        try:
            yield
        finally:
            # --- shutdown ---
            logger.info("Shutting down sweeps and HTTP clients...")
            await store.aclose()
            await ledger.aclose()
            await bridge.aclose()
            await vendor.aclose()

    app = FastAPI(
        title="IntelligenceBank MCP Bridge",
        description="MCP server exposing the IntelligenceBank API behind an OAuth envelope.",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Routes
    app.include_router(get_router(settings, store, ledger, credentials, protocol_handler))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
