"""OAuth discovery documents (RFC 8414 and RFC 9728) for MCP clients."""

from typing import Annotated, List

from fastapi import APIRouter, Depends

from ..config import Settings
from ..models.oauth import AuthorizationServerMetadata, ProtectedResourceMetadata
from ..services.registry import ProviderRegistry
from .deps import get_registry, get_settings

router = APIRouter(prefix="/.well-known", tags=["discovery"])

RegistryDep = Annotated[ProviderRegistry, Depends(get_registry)]
SettingsDep = Annotated[Settings, Depends(get_settings)]


def _issuer(app_settings: Settings) -> str:
    return app_settings.base_url.rstrip("/")


def _supported_scopes(registry: ProviderRegistry) -> List[str]:
    """Scopes of every registered provider, first occurrence wins."""
    scopes: List[str] = []
    for provider in registry.providers():
        for scope in provider.scopes:
            if scope not in scopes:
                scopes.append(scope)
    return scopes


@router.get("/oauth-authorization-server", response_model=AuthorizationServerMetadata)
async def authorization_server_metadata(
    registry: RegistryDep, app_settings: SettingsDep
) -> AuthorizationServerMetadata:
    """Point clients at the provider picker and the universal token endpoint."""
    issuer = _issuer(app_settings)
    return AuthorizationServerMetadata(
        issuer=issuer,
        authorization_endpoint=f"{issuer}/auth/authorize",
        token_endpoint=f"{issuer}/auth/token",
        revocation_endpoint=f"{issuer}/auth/revoke",
        scopes_supported=_supported_scopes(registry),
    )


@router.get("/oauth-protected-resource", response_model=ProtectedResourceMetadata)
async def protected_resource_metadata(
    registry: RegistryDep, app_settings: SettingsDep
) -> ProtectedResourceMetadata:
    issuer = _issuer(app_settings)
    return ProtectedResourceMetadata(
        resource=f"{issuer}/mcp",
        authorization_servers=[issuer],
        scopes_supported=_supported_scopes(registry),
    )
