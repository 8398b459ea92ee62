"""
In-memory session record.

A Session carries exactly one auth state; each state exposes only the fields
valid for its status, so tokens can only be read off a CompletedAuth.
"""

from dataclasses import dataclass
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: str = ""
    token_type: str = "Bearer"
    expires_in: int = 3600


class VendorSession(BaseModel):
    """Vendor-native credentials. Frozen: the sid never changes once assigned."""

    model_config = ConfigDict(frozen=True)

    sid: str
    client_id: str
    api_base_url: str
    login_timeout_hours: Optional[float] = None
    sid_expiry: Optional[int] = None  # unix seconds
    sid_created_at: Optional[int] = None  # unix seconds

    def is_expired(self, now: float) -> bool:
        return self.sid_expiry is not None and self.sid_expiry <= now

    def same_identity(self, other: "VendorSession") -> bool:
        return (self.sid, self.client_id, self.api_base_url) == (
            other.sid,
            other.client_id,
            other.api_base_url,
        )


class PendingAuth(BaseModel):
    status: Literal["pending"] = "pending"
    code_verifier: str
    state: str


class BrowserPendingAuth(BaseModel):
    status: Literal["browser_pending"] = "browser_pending"
    platform_url: str
    login_token: str


class CompletedAuth(BaseModel):
    status: Literal["completed"] = "completed"
    tokens: Optional[OAuthTokens] = None
    vendor: Optional[VendorSession] = None
    user_info: Optional[Dict[str, Any]] = None


class FailedAuth(BaseModel):
    status: Literal["error"] = "error"
    error: str
    error_description: Optional[str] = None


AuthState = Annotated[
    Union[PendingAuth, BrowserPendingAuth, CompletedAuth, FailedAuth],
    Field(discriminator="status"),
]


@dataclass
class Session:
    session_id: str
    state: AuthState
    created_at: float
    expires_at: float
    client_id: str = ""
    redirect_uri: str = ""

    @property
    def status(self) -> str:
        return self.state.status

    @property
    def completed(self) -> Optional[CompletedAuth]:
        return self.state if isinstance(self.state, CompletedAuth) else None

    @property
    def vendor(self) -> Optional[VendorSession]:
        done = self.completed
        return done.vendor if done else None

    @property
    def tokens(self) -> Optional[OAuthTokens]:
        done = self.completed
        return done.tokens if done else None
