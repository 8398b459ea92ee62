"""
Error codes shared by every entry point of the bridge.

Components raise BridgeError internally; entry points catch it (and anything
unexpected) and return a structured result carrying one of these codes.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    INVALID_SESSION = "invalid_session"
    INVALID_STATE = "invalid_state"
    INVALID_REQUEST = "invalid_request"
    INVALID_STATUS = "invalid_status"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    TOKEN_INITIATION_FAILED = "token_initiation_failed"
    INFO_RETRIEVAL_FAILED = "info_retrieval_failed"
    INVALID_RESPONSE = "invalid_response"
    MISSING_CREDENTIALS = "missing_credentials"
    SESSION_EXPIRED = "session_expired"
    AUTHENTICATION_FAILED = "authentication_failed"
    NOT_AUTHENTICATED = "not_authenticated"
    UPLOAD_NOT_FOUND = "upload_not_found"
    UPLOAD_FAILED = "upload_failed"
    REVIEW_CREATE_FAILED = "review_create_failed"
    JOB_TIMEOUT = "job_timeout"
    JOB_FAILED = "job_failed"
    SERVER_ERROR = "server_error"


# Never retried automatically: the caller must restart the login flow.
TERMINAL_CODES = frozenset({ErrorCode.SESSION_EXPIRED.value})

# May be retried by the same or a later call without discarding the session.
TRANSIENT_CODES = frozenset(
    {
        ErrorCode.AUTHENTICATION_FAILED.value,
        ErrorCode.JOB_TIMEOUT.value,
        ErrorCode.INFO_RETRIEVAL_FAILED.value,
    }
)


def is_terminal(code: str) -> bool:
    return getattr(code, "value", code) in TERMINAL_CODES


def is_transient(code: str) -> bool:
    return getattr(code, "value", code) in TRANSIENT_CODES


class BridgeError(Exception):
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = ErrorCode(code).value
        self.message = message
        self.details = details

    def to_result(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


def error_result(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    """Structured failure returned by tool entry points.

    `code` is normally an ErrorCode, but OAuth provider errors
    (e.g. "access_denied") are passed through verbatim.
    """
    result: Dict[str, Any] = {"success": False, "error": getattr(code, "value", code), "message": message}
    result.update(extra)
    return result
