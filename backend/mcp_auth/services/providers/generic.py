"""Generic OAuth 2.1 provider configured entirely through settings."""

import logging
from typing import Optional

from ...config import Settings
from ...models.state import TokenRecord, UserInfo
from ..errors import InvalidGrantError, OAuthProviderError, ProviderConfigurationError
from .base import BaseOAuthProvider, ProviderConfig, split_scopes

logger = logging.getLogger(__name__)

REQUIRED_SETTINGS = (
    "oauth_client_id",
    "oauth_client_secret",
    "oauth_authorization_url",
    "oauth_token_url",
    "oauth_user_info_url",
)


class GenericOAuthProvider(BaseOAuthProvider):
    """Any OAuth 2.1 server with an authorize, token and user-info endpoint.

    Refresh is a no-op success: the current record is returned as long as the
    refresh token is known and unexpired.
    """

    provider_type = "generic"
    provider_name = "OAuth"
    default_scopes = ("openid", "profile", "email")

    def __init__(self, config: ProviderConfig, *args, **kwargs) -> None:
        super().__init__(config, *args, **kwargs)
        self.provider_name = config.options.get("provider_name") or "OAuth"

    @classmethod
    def config_from_settings(cls, config: Settings) -> ProviderConfig:
        missing = [name.upper() for name in REQUIRED_SETTINGS if not getattr(config, name)]
        if missing:
            raise ProviderConfigurationError(
                f"Missing generic OAuth settings: {', '.join(missing)}", provider=cls.provider_type
            )
        return ProviderConfig(
            provider_type=cls.provider_type,
            client_id=config.oauth_client_id,
            client_secret=config.oauth_client_secret,
            redirect_uri=config.oauth_redirect_uri
            or config.default_redirect_uri(cls.provider_type),
            scopes=split_scopes(config.oauth_scopes),
            options={
                "authorization_url": config.oauth_authorization_url,
                "token_url": config.oauth_token_url,
                "user_info_url": config.oauth_user_info_url,
                "revocation_url": config.oauth_revocation_url,
                "provider_name": config.oauth_provider_name,
            },
        )

    @property
    def authorization_url(self) -> str:
        return self._config.options["authorization_url"]

    @property
    def token_url(self) -> str:
        return self._config.options["token_url"]

    @property
    def user_info_url(self) -> str:
        return self._config.options["user_info_url"]

    @property
    def revocation_url(self) -> Optional[str]:
        return self._config.options.get("revocation_url") or None

    async def fetch_user_info(self, access_token: str) -> UserInfo:
        data = await self._request_json("GET", self.user_info_url, access_token=access_token)
        if not isinstance(data, dict):
            raise OAuthProviderError("Invalid user data", provider=self.provider_type)
        subject = data.get("sub") or data.get("id")
        if subject is None:
            raise OAuthProviderError("User info has no subject", provider=self.provider_type)
        email = data.get("email")
        return UserInfo(
            sub=str(subject),
            email=email,
            name=data.get("name") or data.get("preferred_username") or email,
            picture=data.get("picture"),
            provider=self.provider_type,
        )

    async def refresh_record(self, record: TokenRecord, refresh_token: str) -> TokenRecord:
        if record.is_expired():
            raise InvalidGrantError("Refresh token is no longer valid", provider=self.provider_type)
        logger.debug("%s refresh is a no-op; returning the current token", self.provider_name)
        return record

    async def revoke_at_provider(self, access_token: str, record: Optional[TokenRecord]) -> None:
        if not self.revocation_url:
            return None
        await self._request_json(
            "POST",
            self.revocation_url,
            data={
                "token": access_token,
                "token_type_hint": "access_token",
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
