import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import discovery, mcp, oauth
from .api.deps import NO_STORE_HEADERS, oauth_error_response, oauth_exception_response
from .config import Settings, settings
from .services.errors import (
    OAuthError,
    ProviderDisposalError,
    SessionNotFoundError,
    StoreUnavailableError,
)
from .services.instances import McpInstanceManager
from .services.registry import ProviderRegistry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

APP_TITLE = "MCP Auth Gateway"
APP_VERSION = "0.1.0"


def create_app(
    registry: Optional[ProviderRegistry] = None,
    manager: Optional[McpInstanceManager] = None,
    app_settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the application. Injected objects are used as-is and not disposed here."""
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting %s", APP_TITLE)
        owned = getattr(app.state, "registry", None) is None
        if owned:
            app.state.registry = ProviderRegistry.from_settings(app_settings)
            app.state.manager = McpInstanceManager(
                app.state.registry.stores.metadata,
                app_settings=app_settings,
                metrics=app.state.registry.metrics,
            )
            app.state.registry.start_cleanup()
            app.state.manager.start_cleanup()
        logger.info("OAuth providers: %s", ", ".join(app.state.registry.supported_types()) or "none")
        try:
            yield
        finally:
            if owned:
                await app.state.manager.dispose()
                try:
                    await app.state.registry.dispose_all()
                except ProviderDisposalError as exc:
                    logger.error("Shutdown completed with errors: %s", exc)
            logger.info("Shutting down %s", APP_TITLE)

    app = FastAPI(
        title=APP_TITLE,
        description="OAuth 2.1 gateway fronting MCP sessions",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    if registry is not None:
        app.state.registry = registry
        app.state.manager = manager or McpInstanceManager(
            registry.stores.metadata, app_settings=app_settings, metrics=registry.metrics
        )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[mcp.MCP_SESSION_HEADER],
    )

    @app.middleware("http")
    async def no_store_for_oauth(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/auth"):
            response.headers.update(NO_STORE_HEADERS)
        return response

    # Include routers
    app.include_router(discovery.router)
    app.include_router(oauth.router)
    app.include_router(mcp.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": APP_TITLE,
            "version": APP_VERSION,
            "status": "running",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/health/sessions")
    async def session_health(request: Request):
        """Live instance cache and shared store counts."""
        registry: ProviderRegistry = request.app.state.registry
        manager: McpInstanceManager = request.app.state.manager
        return {
            "status": "healthy",
            "backend": registry.stores.backend,
            "instances": manager.get_stats(),
            "providers": registry.supported_types(),
            "pre_auth_sessions": await registry.stores.sessions.count(),
            "tokens": await registry.stores.tokens.count(),
            "session_metadata": await registry.stores.metadata.count(),
            "metrics": registry.metrics.snapshot(),
        }

    # Global exception handlers

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        """Handle OAuth flow errors with an RFC 6749 body."""
        if exc.status_code >= 500:
            logger.error("OAuth error on %s: %s", request.url.path, exc)
        else:
            logger.warning("OAuth error on %s: %s", request.url.path, exc)
        return oauth_exception_response(exc)

    @app.exception_handler(StoreUnavailableError)
    async def store_error_handler(request: Request, exc: StoreUnavailableError):
        """Handle backing store outages. Clients may retry."""
        logger.error("Store unavailable during %s: %s", exc.operation or "request", exc)
        return oauth_error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            exc.error_code,
            "Storage is temporarily unavailable. Please retry the request.",
        )

    @app.exception_handler(SessionNotFoundError)
    async def session_error_handler(request: Request, exc: SessionNotFoundError):
        logger.warning("Session lookup failed: %s", exc)
        return oauth_error_response(status.HTTP_404_NOT_FOUND, exc.error_code, "Session not found")

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors."""
        logger.warning("Validation error: %s", exc)
        error_messages = []
        for error in exc.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            error_messages.append(f"{field}: {error['msg']}")
        return oauth_error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_request", "; ".join(error_messages)
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Log the details and return a generic message."""
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "server_error",
                "error_description": "The server encountered an unexpected error.",
            },
            headers=NO_STORE_HEADERS,
        )

    return app


app = create_app()
