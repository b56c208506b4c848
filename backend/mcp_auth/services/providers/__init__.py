"""Identity provider implementations keyed by provider type."""

from typing import Dict, Type

from .base import (
    AuthorizationRedirect,
    BaseOAuthProvider,
    CallbackResult,
    ProviderConfig,
    compute_code_challenge,
    generate_code_verifier,
    generate_state,
)
from .generic import GenericOAuthProvider
from .github import GitHubOAuthProvider
from .google import GoogleOAuthProvider
from .microsoft import MicrosoftOAuthProvider

# Registration order doubles as the order providers are built from the environment
PROVIDER_CLASSES: Dict[str, Type[BaseOAuthProvider]] = {
    GoogleOAuthProvider.provider_type: GoogleOAuthProvider,
    GitHubOAuthProvider.provider_type: GitHubOAuthProvider,
    MicrosoftOAuthProvider.provider_type: MicrosoftOAuthProvider,
    GenericOAuthProvider.provider_type: GenericOAuthProvider,
}

__all__ = [
    "AuthorizationRedirect",
    "BaseOAuthProvider",
    "CallbackResult",
    "GenericOAuthProvider",
    "GitHubOAuthProvider",
    "GoogleOAuthProvider",
    "MicrosoftOAuthProvider",
    "PROVIDER_CLASSES",
    "ProviderConfig",
    "compute_code_challenge",
    "generate_code_verifier",
    "generate_state",
]
