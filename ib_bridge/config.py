import os
import tempfile
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env if present
load_dotenv()


class Settings(BaseModel):
    bridge_url: str
    oauth_client_id: str = "ib-api-tools-mcp-server"
    oauth_redirect_uri: str = "http://localhost:3000/callback"
    oauth_scope: str = "profile"
    server_url: str = "http://localhost:3000"
    product_key: str = ""

    session_ttl: float = 300.0
    upload_ttl: float = 300.0
    sweep_interval: float = 60.0
    upload_dir: str
    max_upload_size: int = 50 * 1024 * 1024

    backend_timeout: float = 30.0
    retry_attempts: int = 2
    retry_backoff_base: float = 0.5

    review_max_wait: float = 300.0
    review_poll_interval: float = 5.0

    tools_path: str

    class Config:
        arbitrary_types_allowed = True


def _default_tools_path() -> str:
    here = Path(__file__).resolve().parent
    return str(here / "tools.yaml")


def _default_upload_dir() -> str:
    return str(Path(tempfile.gettempdir()) / "ib-mcp-uploads")


settings = Settings(
    bridge_url=os.getenv("OAUTH_BRIDGE_URL", "http://localhost:8000").rstrip("/"),
    oauth_client_id=os.getenv("OAUTH_CLIENT_ID", "ib-api-tools-mcp-server"),
    oauth_redirect_uri=os.getenv("OAUTH_REDIRECT_URI", "http://localhost:3000/callback"),
    oauth_scope=os.getenv("OAUTH_SCOPE", "profile"),
    server_url=os.getenv("MCP_SERVER_URL", "http://localhost:3000").rstrip("/"),
    product_key=os.getenv("IB_PRODUCT_KEY", ""),
    session_ttl=float(os.getenv("SESSION_TTL", "300")),
    upload_ttl=float(os.getenv("UPLOAD_TTL", "300")),
    sweep_interval=float(os.getenv("SWEEP_INTERVAL", "60")),
    upload_dir=os.getenv("UPLOAD_DIR", _default_upload_dir()),
    max_upload_size=int(os.getenv("MAX_UPLOAD_SIZE", str(50 * 1024 * 1024))),
    backend_timeout=float(os.getenv("BACKEND_TIMEOUT", "30")),
    retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "2")),
    retry_backoff_base=float(os.getenv("RETRY_BACKOFF_BASE", "0.5")),
    review_max_wait=float(os.getenv("REVIEW_MAX_WAIT", "300")),
    review_poll_interval=float(os.getenv("REVIEW_POLL_INTERVAL", "5")),
    tools_path=os.getenv("TOOLS_PATH", _default_tools_path()),
)
