"""Request-scoped accessors for the objects built in the application lifespan."""

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from ..config import Settings
from ..services.errors import OAuthError
from ..services.instances import McpInstanceManager
from ..services.registry import ProviderRegistry

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_manager(request: Request) -> McpInstanceManager:
    return request.app.state.manager


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an `Authorization: Bearer ...` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def oauth_error_response(
    status_code: int, error: str, description: Optional[str] = None
) -> JSONResponse:
    content = {"error": error}
    if description:
        content["error_description"] = description
    return JSONResponse(status_code=status_code, content=content, headers=NO_STORE_HEADERS)


def oauth_exception_response(exc: OAuthError) -> JSONResponse:
    return oauth_error_response(exc.status_code, exc.error_code, exc.description)
