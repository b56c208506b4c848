# Services package

from .allowlist import Allowlist
from .errors import (
    AccessDeniedError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidTokenError,
    OAuthError,
    OAuthProviderError,
    OAuthStateError,
    OAuthTokenError,
    ProviderConfigurationError,
    ProviderDisposalError,
    SessionNotFoundError,
    StoreUnavailableError,
    UnsupportedGrantTypeError,
)
from .instances import LiveInstance, McpInstanceManager
from .metrics import MetricsRecorder
from .registry import ProviderRegistry

__all__ = [
    "AccessDeniedError",
    "Allowlist",
    "InvalidGrantError",
    "InvalidRequestError",
    "InvalidTokenError",
    "LiveInstance",
    "McpInstanceManager",
    "MetricsRecorder",
    "OAuthError",
    "OAuthProviderError",
    "OAuthStateError",
    "OAuthTokenError",
    "ProviderConfigurationError",
    "ProviderDisposalError",
    "ProviderRegistry",
    "SessionNotFoundError",
    "StoreUnavailableError",
    "UnsupportedGrantTypeError",
]
