"""OAuth endpoints: discovery, provider picker, per-provider flows and the universal token endpoint."""

import html
import logging
from typing import Annotated, Dict

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from ..models.oauth import DiscoveryResponse, OAuthErrorResponse
from ..services.registry import ProviderRegistry
from .deps import NO_STORE_HEADERS, bearer_token, get_registry, oauth_error_response
from .templates import LOGIN_PAGE, NO_PROVIDERS, PROVIDER_LINK

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["oauth"],
    responses={400: {"model": OAuthErrorResponse}, 404: {"model": OAuthErrorResponse}},
)

RegistryDep = Annotated[ProviderRegistry, Depends(get_registry)]


def _with_query(path: str, query: str) -> str:
    return f"{path}?{query}" if query else path


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND, headers=NO_STORE_HEADERS)


def _json(content: Dict, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers=NO_STORE_HEADERS)


def _unknown_provider(provider_type: str) -> JSONResponse:
    logger.warning("Request for unknown OAuth provider: %s", provider_type)
    return oauth_error_response(
        status.HTTP_404_NOT_FOUND, "invalid_request", "Unknown OAuth provider"
    )


@router.get("", response_model=DiscoveryResponse)
async def discovery(registry: RegistryDep) -> JSONResponse:
    """List registered providers and the endpoints each one serves."""
    endpoints = {
        "login": "/auth/login",
        "authorize": "/auth/authorize",
        "token": "/auth/token",
        "revoke": "/auth/revoke",
    }
    for provider in registry.providers():
        for name, path in provider.endpoints.items():
            endpoints[f"{provider.provider_type}_{name}"] = path
    body = DiscoveryResponse(providers=registry.supported_types(), endpoints=endpoints)
    return _json(body.model_dump())


@router.get("/login", response_class=HTMLResponse)
async def login_page(request: Request, registry: RegistryDep) -> HTMLResponse:
    """Provider picker. The incoming query is forwarded to the chosen provider."""
    query = request.url.query
    links = [
        PROVIDER_LINK.format(
            href=html.escape(_with_query(provider.endpoints["auth"], query), quote=True),
            name=html.escape(provider.provider_name),
        )
        for provider in registry.providers()
    ]
    page = LOGIN_PAGE.format(providers="\n        ".join(links) or NO_PROVIDERS)
    return HTMLResponse(page, headers=NO_STORE_HEADERS)


@router.get("/authorize")
async def authorize(request: Request, registry: RegistryDep) -> RedirectResponse:
    """Go straight to the only provider, otherwise let the user pick one."""
    providers = registry.providers()
    if len(providers) == 1:
        target = providers[0].endpoints["auth"]
    else:
        target = "/auth/login"
    return _redirect(_with_query(target, request.url.query))


@router.post("/token")
async def token(request: Request, registry: RegistryDep) -> JSONResponse:
    """Universal token endpoint for authorization_code and refresh_token grants."""
    form = await request.form()
    data = {key: value for key, value in form.items() if isinstance(value, str)}
    tokens = await registry.exchange_token(data)
    return _json(tokens.model_dump(mode="json", exclude_none=True))


@router.post("/revoke")
async def revoke(request: Request, registry: RegistryDep) -> Response:
    """RFC 7009 revocation. Unknown tokens still answer 200."""
    form = await request.form()
    token_value = form.get("token")
    if not isinstance(token_value, str) or not token_value:
        return oauth_error_response(
            status.HTTP_400_BAD_REQUEST, "invalid_request", "Missing required parameter: token"
        )
    hint = form.get("token_type_hint")
    await registry.revoke(token_value, hint if isinstance(hint, str) else None)
    return _json({})


@router.get("/{provider_type}")
async def start_authorization(
    provider_type: str, request: Request, registry: RegistryDep
) -> Response:
    """Redirect the browser to the identity provider."""
    provider = registry.get(provider_type)
    if provider is None:
        return _unknown_provider(provider_type)
    redirect = await provider.handle_authorization_request(dict(request.query_params))
    return _redirect(redirect.url)


@router.get("/{provider_type}/callback")
async def authorization_callback(
    provider_type: str, request: Request, registry: RegistryDep
) -> Response:
    """Finish the flow, or hand the code back to the client that started it."""
    provider = registry.get(provider_type)
    if provider is None:
        return _unknown_provider(provider_type)
    result = await provider.handle_authorization_callback(dict(request.query_params))
    if result.redirect_url:
        return _redirect(result.redirect_url)
    return _json(result.tokens.model_dump(mode="json", exclude_none=True))


@router.post("/{provider_type}/logout")
async def logout(provider_type: str, request: Request, registry: RegistryDep) -> Response:
    provider = registry.get(provider_type)
    if provider is None:
        return _unknown_provider(provider_type)
    result = await provider.handle_logout(bearer_token(request.headers.get("authorization")))
    return _json(result.model_dump())
