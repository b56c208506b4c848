# Data models package

from .oauth import (
    AuthorizationServerMetadata,
    DiscoveryResponse,
    JsonRpcError,
    JsonRpcErrorResponse,
    LogoutResponse,
    OAuthErrorResponse,
    ProtectedResourceMetadata,
    TokenResponse,
)
from .state import (
    AuthInfo,
    PreAuthSession,
    SessionMetadata,
    TokenRecord,
    UserInfo,
    VerifierEntry,
)

__all__ = [
    "AuthInfo",
    "AuthorizationServerMetadata",
    "DiscoveryResponse",
    "JsonRpcError",
    "JsonRpcErrorResponse",
    "LogoutResponse",
    "OAuthErrorResponse",
    "PreAuthSession",
    "ProtectedResourceMetadata",
    "SessionMetadata",
    "TokenRecord",
    "TokenResponse",
    "UserInfo",
    "VerifierEntry",
]
