"""GitHub OAuth provider."""

import logging
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ...config import Settings
from ...models.oauth import TokenResponse
from ...models.state import TokenRecord, UserInfo
from ..errors import InvalidGrantError, OAuthProviderError, ProviderConfigurationError
from .base import BaseOAuthProvider, ProviderConfig, split_scopes

logger = logging.getLogger(__name__)

GITHUB_AUTH_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"
GITHUB_USER_EMAILS_URL = "https://api.github.com/user/emails"
GITHUB_API_HEADERS = {
    "Accept": "application/vnd.github+json",
    "User-Agent": "mcp-auth-gateway",
}


def _pick_email(emails: List[Dict[str, Any]]) -> Optional[str]:
    """Primary verified address first, then any verified one, then the first listed."""
    primary = next((e for e in emails if e.get("primary") and e.get("verified")), None)
    verified = next((e for e in emails if e.get("verified")), None)
    chosen = primary or verified or (emails[0] if emails else None)
    return chosen.get("email") if chosen else None


class GitHubOAuthProvider(BaseOAuthProvider):
    """GitHub OAuth apps.

    GitHub access tokens do not expire and carry no refresh token, so a refresh
    request only re-checks that the stored token is still valid.
    """

    provider_type = "github"
    provider_name = "GitHub"
    default_scopes = ("read:user", "user:email")

    @classmethod
    def config_from_settings(cls, config: Settings) -> ProviderConfig:
        if not config.github_client_id or not config.github_client_secret:
            raise ProviderConfigurationError(
                "GITHUB_CLIENT_ID and GITHUB_CLIENT_SECRET are required", provider=cls.provider_type
            )
        return ProviderConfig(
            provider_type=cls.provider_type,
            client_id=config.github_client_id,
            client_secret=config.github_client_secret,
            redirect_uri=config.github_redirect_uri
            or config.default_redirect_uri(cls.provider_type),
            scopes=split_scopes(config.github_scopes),
        )

    @property
    def authorization_url(self) -> str:
        return GITHUB_AUTH_URL

    @property
    def token_url(self) -> str:
        return GITHUB_TOKEN_URL

    async def fetch_user_info(self, access_token: str) -> UserInfo:
        data = await self._request_json(
            "GET", GITHUB_USER_URL, access_token=access_token, headers=GITHUB_API_HEADERS
        )
        if not isinstance(data, dict) or data.get("id") is None:
            raise OAuthProviderError("Invalid user data from GitHub", provider=self.provider_type)

        email = data.get("email")
        if not email:
            try:
                emails = await self._request_json(
                    "GET",
                    GITHUB_USER_EMAILS_URL,
                    access_token=access_token,
                    headers=GITHUB_API_HEADERS,
                )
            except OAuthProviderError as exc:
                logger.warning("Could not fetch GitHub user emails: %s", exc)
                emails = []
            if isinstance(emails, list):
                email = _pick_email(emails)

        if not email:
            logger.warning("No GitHub email for %s; using the noreply address", data.get("login"))
            email = f"{data['id']}+{data.get('login')}@users.noreply.github.com"

        return UserInfo(
            sub=str(data["id"]),
            email=email,
            name=data.get("name") or data.get("login"),
            picture=data.get("avatar_url"),
            provider=self.provider_type,
        )

    async def handle_token_refresh(self, form: Mapping[str, str]) -> TokenResponse:
        access_token = form.get("access_token")
        if access_token and not form.get("refresh_token"):
            record = await self._tokens.get(access_token)
            if (
                record is None
                or record.provider_type != self.provider_type
                or record.is_expired(buffer_seconds=self._settings.token_expiry_buffer_seconds)
            ):
                raise InvalidGrantError("Token is no longer valid", provider=self.provider_type)
            return self._token_response(record)
        return await super().handle_token_refresh(form)

    async def refresh_record(self, record: TokenRecord, refresh_token: str) -> TokenRecord:
        # No refresh semantics: the existing record is returned unchanged
        if record.is_expired(buffer_seconds=self._settings.token_expiry_buffer_seconds):
            raise InvalidGrantError("Token is no longer valid", provider=self.provider_type)
        return record

    async def revoke_at_provider(self, access_token: str, record: Optional[TokenRecord]) -> None:
        """Delete the OAuth grant for this app."""
        await self._request_json(
            "DELETE",
            f"https://api.github.com/applications/{self._config.client_id}/grant",
            headers=GITHUB_API_HEADERS,
            auth=httpx.BasicAuth(self._config.client_id, self._config.client_secret),
            json={"access_token": access_token},
        )
