import base64
import hashlib
import secrets


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def random_token(num_bytes: int = 16) -> str:
    """URL-safe random string without padding (16 bytes -> 22 chars)."""
    return _b64url(secrets.token_bytes(num_bytes))


def generate_code_verifier() -> str:
    return random_token(32)


def generate_code_challenge(verifier: str) -> str:
    # S256: base64url(sha256(verifier)), no padding
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    return random_token(16)
