"""Microsoft identity platform (Entra ID) provider."""

import logging
from typing import Optional

from ...config import Settings
from ...models.state import TokenRecord, UserInfo
from ..errors import OAuthProviderError, ProviderConfigurationError
from .base import BaseOAuthProvider, ProviderConfig, split_scopes

logger = logging.getLogger(__name__)

MICROSOFT_LOGIN_BASE = "https://login.microsoftonline.com"
MICROSOFT_GRAPH_ME_URL = "https://graph.microsoft.com/v1.0/me"


class MicrosoftOAuthProvider(BaseOAuthProvider):
    provider_type = "microsoft"
    provider_name = "Microsoft"
    default_scopes = ("openid", "profile", "email", "offline_access")

    @classmethod
    def config_from_settings(cls, config: Settings) -> ProviderConfig:
        if not config.microsoft_client_id or not config.microsoft_client_secret:
            raise ProviderConfigurationError(
                "MICROSOFT_CLIENT_ID and MICROSOFT_CLIENT_SECRET are required",
                provider=cls.provider_type,
            )
        return ProviderConfig(
            provider_type=cls.provider_type,
            client_id=config.microsoft_client_id,
            client_secret=config.microsoft_client_secret,
            redirect_uri=config.microsoft_redirect_uri
            or config.default_redirect_uri(cls.provider_type),
            scopes=split_scopes(config.microsoft_scopes),
            options={"tenant_id": config.microsoft_tenant_id or "common"},
        )

    @property
    def tenant_id(self) -> str:
        return self._config.options.get("tenant_id") or "common"

    @property
    def _tenant_base(self) -> str:
        return f"{MICROSOFT_LOGIN_BASE}/{self.tenant_id}/oauth2/v2.0"

    @property
    def authorization_url(self) -> str:
        return f"{self._tenant_base}/authorize"

    @property
    def token_url(self) -> str:
        return f"{self._tenant_base}/token"

    @property
    def logout_url(self) -> str:
        return f"{self._tenant_base}/logout"

    async def fetch_user_info(self, access_token: str) -> UserInfo:
        data = await self._request_json("GET", MICROSOFT_GRAPH_ME_URL, access_token=access_token)
        if not isinstance(data, dict):
            raise OAuthProviderError("Invalid user data from Microsoft Graph", provider=self.provider_type)
        email = data.get("mail") or data.get("userPrincipalName")
        if not data.get("id") or not email:
            raise OAuthProviderError(
                "Microsoft Graph returned no id or email", provider=self.provider_type
            )
        return UserInfo(
            sub=str(data["id"]),
            email=email,
            name=data.get("displayName") or email,
            provider=self.provider_type,
        )

    async def revoke_at_provider(self, access_token: str, record: Optional[TokenRecord]) -> None:
        # The v2.0 endpoint has no token revocation; end the session instead
        await self._request_json(
            "POST",
            self.logout_url,
            data={"token": access_token, "client_id": self._config.client_id},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
