"""Provider registry: construction, multi-provider routing and shutdown."""

import asyncio
import logging
from typing import Dict, List, Mapping, Optional, Type

import httpx

from ..config import Settings, settings
from ..models.oauth import TokenResponse
from ..models.state import AuthInfo
from .allowlist import Allowlist
from .errors import (
    InvalidGrantError,
    InvalidRequestError,
    InvalidTokenError,
    OAuthError,
    ProviderConfigurationError,
    ProviderDisposalError,
    UnsupportedGrantTypeError,
)
from .metrics import MetricsRecorder
from .providers import PROVIDER_CLASSES, BaseOAuthProvider, ProviderConfig
from .stores import StoreBundle, build_stores

logger = logging.getLogger(__name__)

_provider_classes: Dict[str, Type[BaseOAuthProvider]] = dict(PROVIDER_CLASSES)


def register_provider_class(provider_type: str, provider_class: Type[BaseOAuthProvider]) -> None:
    """Make a provider implementation available to create_provider()."""
    _provider_classes[provider_type] = provider_class


def provider_class_for(provider_type: str) -> Type[BaseOAuthProvider]:
    try:
        return _provider_classes[provider_type]
    except KeyError:
        raise ProviderConfigurationError(
            f"Unsupported provider type: {provider_type}", provider=provider_type
        ) from None


class ProviderRegistry:
    """Owns the shared stores and the ordered set of providers.

    Registration order is the routing tie-break. Routing only ever consults
    the local stores, so a token is never sent to an identity provider that
    did not issue it.
    """

    def __init__(
        self,
        stores: StoreBundle,
        *,
        app_settings: Optional[Settings] = None,
        allowlist: Optional[Allowlist] = None,
        metrics: Optional[MetricsRecorder] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.stores = stores
        self._settings = app_settings or settings
        self._allowlist = allowlist if allowlist is not None else Allowlist.from_settings(self._settings)
        self.metrics = metrics or MetricsRecorder()
        self._transport = transport
        self._providers: Dict[str, BaseOAuthProvider] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._disposed = False

    @classmethod
    def from_settings(
        cls,
        app_settings: Optional[Settings] = None,
        *,
        stores: Optional[StoreBundle] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderRegistry":
        app_settings = app_settings or settings
        registry = cls(
            stores or build_stores(app_settings),
            app_settings=app_settings,
            transport=transport,
        )
        registry.create_all_from_environment()
        return registry

    # -- construction --------------------------------------------------

    def create_provider(self, config: ProviderConfig) -> BaseOAuthProvider:
        provider_class = provider_class_for(config.provider_type)
        return provider_class(
            config,
            self.stores,
            allowlist=self._allowlist,
            app_settings=self._settings,
            metrics=self.metrics,
            transport=self._transport,
        )

    def register(self, provider: BaseOAuthProvider) -> BaseOAuthProvider:
        if provider.provider_type in self._providers:
            raise ProviderConfigurationError(
                f"Provider already registered: {provider.provider_type}",
                provider=provider.provider_type,
            )
        self._providers[provider.provider_type] = provider
        logger.info("Registered OAuth provider: %s", provider.provider_type)
        return provider

    def add_provider(self, config: ProviderConfig) -> BaseOAuthProvider:
        return self.register(self.create_provider(config))

    def create_all_from_environment(self) -> List[str]:
        """Register every provider type that has credentials configured."""
        for provider_type, provider_class in _provider_classes.items():
            if provider_type in self._providers:
                continue
            try:
                config = provider_class.config_from_settings(self._settings)
            except ProviderConfigurationError as exc:
                logger.debug("Skipping %s provider: %s", provider_type, exc)
                continue
            self.add_provider(config)

        if not self._providers:
            logger.warning(
                "No OAuth providers configured. Set credentials for at least one provider."
            )
        return self.supported_types()

    # -- lookup --------------------------------------------------------

    def providers(self) -> List[BaseOAuthProvider]:
        return list(self._providers.values())

    def get(self, provider_type: str) -> Optional[BaseOAuthProvider]:
        return self._providers.get(provider_type)

    def supported_types(self) -> List[str]:
        return list(self._providers.keys())

    def __len__(self) -> int:
        return len(self._providers)

    async def find_provider_for_code(self, code: str) -> Optional[BaseOAuthProvider]:
        for provider in self._providers.values():
            if await provider.has_stored_code_for_provider(code):
                return provider
        return None

    async def find_provider_for_token(self, access_token: str) -> Optional[BaseOAuthProvider]:
        for provider in self._providers.values():
            if await provider.has_token(access_token):
                return provider
        return None

    # -- routing -------------------------------------------------------

    async def verify_access_token(self, access_token: str) -> AuthInfo:
        provider = await self.find_provider_for_token(access_token)
        if provider is None:
            raise InvalidTokenError("Invalid or expired token")
        return await provider.verify_access_token(access_token)

    async def exchange_token(self, form: Mapping[str, str]) -> TokenResponse:
        """Universal token endpoint."""
        grant_type = form.get("grant_type")
        if grant_type == "authorization_code":
            return await self._exchange_authorization_code(form)
        if grant_type == "refresh_token":
            return await self._refresh(form)
        raise UnsupportedGrantTypeError(
            "Supported grant types: authorization_code, refresh_token"
        )

    async def _exchange_authorization_code(self, form: Mapping[str, str]) -> TokenResponse:
        code = form.get("code")
        if not code:
            raise InvalidRequestError("Missing required parameter: code")

        provider = await self.find_provider_for_code(code)
        if provider is not None:
            tokens = await provider.handle_token_exchange(form)
            if tokens is not None:
                return tokens
            raise InvalidGrantError("Invalid or expired authorization code")

        logger.info("No provider holds authorization code %s", code[:10])
        raise InvalidGrantError("Invalid or expired authorization code")

    async def _refresh(self, form: Mapping[str, str]) -> TokenResponse:
        refresh_token = form.get("refresh_token")
        if not refresh_token:
            raise InvalidRequestError("Missing required parameter: refresh_token")

        found = await self.stores.tokens.find_by_refresh_token(refresh_token)
        if found is not None:
            owner = self.get(found[1].provider_type)
            candidates = [owner] if owner is not None else []
        else:
            candidates = self.providers()

        for provider in candidates:
            try:
                return await provider.handle_token_refresh(form)
            except OAuthError as exc:
                logger.debug("Refresh not accepted by %s: %s", provider.provider_type, exc)
        raise InvalidGrantError("Invalid or expired refresh token")

    async def revoke(self, token: str, token_type_hint: Optional[str] = None) -> None:
        """RFC 7009 revocation. Unknown tokens are not an error."""
        tokens = self.stores.tokens
        if token_type_hint != "refresh_token":
            if await tokens.get(token) is not None:
                await tokens.delete(token)
                logger.info("Revoked access token")
                return
        found = await tokens.find_by_refresh_token(token)
        if found is not None:
            await tokens.delete(found[0])
            logger.info("Revoked refresh token and its access token")
            return
        if token_type_hint == "refresh_token" and await tokens.get(token) is not None:
            await tokens.delete(token)
            logger.info("Revoked access token")

    # -- lifecycle -----------------------------------------------------

    async def cleanup(self) -> None:
        for provider in self._providers.values():
            await provider.cleanup()

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup()
            except Exception:
                logger.exception("Periodic OAuth cleanup failed")

    def start_cleanup(self, interval: Optional[float] = None) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        interval = interval or self._settings.cleanup_interval_seconds
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def dispose_all(self) -> None:
        """Dispose every provider, then close the stores.

        Failures are collected and raised together after every provider had
        its turn.
        """
        if self._disposed:
            return
        self._disposed = True
        await self.stop_cleanup()

        errors: List[BaseException] = []
        for provider in self._providers.values():
            try:
                await provider.dispose()
            except Exception as exc:
                logger.error("Failed to dispose %s provider: %s", provider.provider_type, exc)
                errors.append(exc)
        try:
            await self.stores.close()
        except Exception as exc:
            logger.error("Failed to close stores: %s", exc)
            errors.append(exc)

        if errors:
            raise ProviderDisposalError(errors)
