"""
OAuth discovery documents (RFC 9728 / RFC 8414) and the RFC 6750 challenge.
"""

from typing import Any, Dict, Optional


def build_www_authenticate(
    realm: str,
    scope: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    resource_metadata: Optional[str] = None,
) -> str:
    parts = [f'Bearer realm="{realm}"']
    if resource_metadata:
        parts.append(f'resource_metadata="{resource_metadata}"')
    if scope:
        parts.append(f'scope="{scope}"')
    if error:
        parts.append(f'error="{error}"')
    if error_description:
        parts.append(f'error_description="{error_description}"')
    return ", ".join(parts)


def protected_resource_metadata(server_url: str, scope: str = "profile") -> Dict[str, Any]:
    # The server itself is advertised as the authorization server; its
    # metadata document points at the bridge.
    return {
        "resource": server_url,
        "authorization_servers": [server_url],
        "scopes_supported": [scope],
        "bearer_methods_supported": ["header"],
        "resource_documentation": f"{server_url}/docs",
    }


def authorization_server_metadata(server_url: str, bridge_url: str, scope: str = "profile") -> Dict[str, Any]:
    return {
        "issuer": server_url,
        "authorization_endpoint": f"{bridge_url}/authorize",
        "token_endpoint": f"{bridge_url}/token",
        "registration_endpoint": f"{bridge_url}/register",
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "response_types_supported": ["code"],
        "scopes_supported": [scope],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": ["S256"],
        "response_modes_supported": ["query"],
        "service_documentation": f"{server_url}/docs",
    }
