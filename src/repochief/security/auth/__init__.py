"""Authentication primitives for the RepoChief API.

This module provides:
- OAuth Device Flow (RFC 8628) for CLI login
- Token response parsing
- Access-token caching and single-flight refresh
"""

from repochief.security.auth.device_flow import (
    AuthDeniedError,
    AuthExpiredError,
    AuthInitError,
    AuthProtocolError,
    DeviceAuthorizationSession,
    DeviceFlow,
    DeviceFlowError,
    DeviceFlowState,
    run_device_flow,
)
from repochief.security.auth.token_parser import (
    OAuthTokens,
    parse_token_response,
)
from repochief.security.auth.token_refresh import (
    ReauthenticationRequiredError,
    StaticTokenProvider,
    TokenProvider,
    TokenRefreshCoordinator,
    TokenRefreshError,
)

__all__ = [
    # Device flow
    "AuthDeniedError",
    "AuthExpiredError",
    "AuthInitError",
    "AuthProtocolError",
    "DeviceAuthorizationSession",
    "DeviceFlow",
    "DeviceFlowError",
    "DeviceFlowState",
    "run_device_flow",
    # Token parsing
    "OAuthTokens",
    "parse_token_response",
    # Token refresh
    "ReauthenticationRequiredError",
    "StaticTokenProvider",
    "TokenProvider",
    "TokenRefreshCoordinator",
    "TokenRefreshError",
]
