"""Google OAuth / OpenID Connect provider."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import jwt

from ...config import Settings
from ...models.state import AuthInfo, TokenRecord, UserInfo
from ..errors import OAuthError, OAuthProviderError, OAuthTokenError, ProviderConfigurationError
from .base import BaseOAuthProvider, ProviderConfig, split_scopes

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")


class GoogleOAuthProvider(BaseOAuthProvider):
    provider_type = "google"
    provider_name = "Google"
    default_scopes = ("openid", "email", "profile")

    @classmethod
    def config_from_settings(cls, config: Settings) -> ProviderConfig:
        if not config.google_client_id or not config.google_client_secret:
            raise ProviderConfigurationError(
                "GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required", provider=cls.provider_type
            )
        return ProviderConfig(
            provider_type=cls.provider_type,
            client_id=config.google_client_id,
            client_secret=config.google_client_secret,
            redirect_uri=config.google_redirect_uri
            or config.default_redirect_uri(cls.provider_type),
            scopes=split_scopes(config.google_scopes),
        )

    @property
    def authorization_url(self) -> str:
        return GOOGLE_AUTH_URL

    @property
    def token_url(self) -> str:
        return GOOGLE_TOKEN_URL

    def authorization_params(self) -> Dict[str, str]:
        # offline access so Google issues a refresh token
        return {"access_type": "offline", "prompt": "consent"}

    def decode_id_token(self, id_token: str) -> Dict[str, Any]:
        """Validate the ID token claims.

        The token arrives directly from the token endpoint over TLS, so the
        signature is not re-checked here; audience, issuer and expiry are.
        """
        try:
            claims = jwt.decode(
                id_token,
                options={
                    "verify_signature": False,
                    "verify_aud": True,
                    "verify_exp": True,
                    "require": ["sub", "aud", "exp"],
                },
                audience=self._config.client_id,
            )
        except jwt.PyJWTError as exc:
            logger.error("Google ID token verification failed: %s", exc)
            raise OAuthTokenError(
                "ID token verification failed", provider=self.provider_type
            ) from exc
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise OAuthTokenError("ID token issuer mismatch", provider=self.provider_type)
        if not claims.get("email"):
            raise OAuthTokenError("ID token has no email claim", provider=self.provider_type)
        return claims

    async def resolve_user(self, payload: Mapping[str, Any]) -> UserInfo:
        id_token = payload.get("id_token")
        if not id_token:
            return await self.fetch_user_info(payload["access_token"])
        claims = self.decode_id_token(id_token)
        return UserInfo(
            sub=str(claims["sub"]),
            email=claims.get("email"),
            name=claims.get("name") or claims.get("email"),
            picture=claims.get("picture"),
            provider=self.provider_type,
        )

    async def fetch_user_info(self, access_token: str) -> UserInfo:
        data = await self._request_json("GET", GOOGLE_USERINFO_URL, access_token=access_token)
        if not isinstance(data, dict) or not data.get("id") or not data.get("email"):
            raise OAuthProviderError("Invalid user data from userinfo endpoint", provider=self.provider_type)
        return UserInfo(
            sub=str(data["id"]),
            email=data["email"],
            name=data.get("name") or data["email"],
            picture=data.get("picture"),
            provider=self.provider_type,
        )

    async def verify_remote_token(self, access_token: str) -> AuthInfo:
        """tokeninfo first; userinfo when tokeninfo is unavailable or rejects the token."""
        try:
            return await self._verify_with_tokeninfo(access_token)
        except OAuthError as exc:
            logger.debug("Google tokeninfo check failed (%s); falling back to userinfo", exc)
        return await super().verify_remote_token(access_token)

    async def _verify_with_tokeninfo(self, access_token: str) -> AuthInfo:
        data = await self._request_json(
            "GET", GOOGLE_TOKENINFO_URL, params={"access_token": access_token}
        )
        audience = data.get("aud") or data.get("azp")
        if audience != self._config.client_id:
            raise OAuthProviderError("Token was issued to another client", provider=self.provider_type)
        if not data.get("sub"):
            raise OAuthProviderError("tokeninfo response has no subject", provider=self.provider_type)

        expires_at: Optional[datetime] = None
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            logger.debug("Ignoring malformed tokeninfo expires_in: %r", data.get("expires_in"))
            expires_in = 0
        if expires_in > 0:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        user = UserInfo(
            sub=str(data["sub"]),
            email=data.get("email"),
            name=data.get("email"),
            provider=self.provider_type,
        )
        return self._auth_info(
            user, scopes=split_scopes(data.get("scope")) or self.scopes, expires_at=expires_at
        )

    async def revoke_at_provider(self, access_token: str, record: Optional[TokenRecord]) -> None:
        await self._request_json(
            "POST",
            GOOGLE_REVOKE_URL,
            data={"token": access_token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
