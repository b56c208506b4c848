import logging
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


TOKEN_ENCRYPTION_KEY_PLACEHOLDER = "PLEASE_SET_TOKEN_ENCRYPTION_KEY"
logger = logging.getLogger(__name__)


def _split_csv(value: str, *, lower: bool = False) -> list[str]:
    items = [item.strip() for item in value.split(",") if item.strip()]
    if lower:
        return [item.lower() for item in items]
    return items


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Public base URL used for default provider redirect URIs
    base_url: str = "http://localhost:8000"

    # Google
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = ""
    google_scopes: str = ""

    # GitHub
    github_client_id: str = ""
    github_client_secret: str = ""
    github_redirect_uri: str = ""
    github_scopes: str = ""

    # Microsoft
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_redirect_uri: str = ""
    microsoft_scopes: str = ""
    microsoft_tenant_id: str = "common"

    # Generic OAuth 2.1 provider
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    oauth_redirect_uri: str = ""
    oauth_authorization_url: str = ""
    oauth_token_url: str = ""
    oauth_user_info_url: str = ""
    oauth_revocation_url: str = ""
    oauth_provider_name: str = "OAuth"
    oauth_scopes: str = ""

    oauth_request_timeout_seconds: float = 10.0

    # Comma separated e-mail allowlist. Empty means every authenticated user is allowed.
    allowed_users: str = ""

    # Storage: memory | sqlite | redis | auto
    store_backend: str = "auto"
    redis_url: Optional[str] = None
    redis_key_prefix: str = ""
    state_db_path: str = "data/state.db"

    # Lifetimes
    pre_auth_session_ttl_seconds: int = 600
    pkce_ttl_seconds: int = 600
    token_expiry_buffer_seconds: int = 60
    default_token_lifetime_seconds: int = 3600
    session_metadata_ttl_seconds: int = 1800
    instance_ttl_seconds: int = 600
    cleanup_interval_seconds: int = 300

    # MCP transport options handed to every (re)constructed instance
    mcp_enable_json_response: bool = True
    mcp_allowed_origins: str = ""
    mcp_allowed_hosts: str = ""
    mcp_dns_rebinding_protection: Optional[bool] = None

    # Token-at-rest encryption key (Fernet). Supply TOKEN_ENCRYPTION_KEY in production.
    token_encryption_key: str = Field(
        default=TOKEN_ENCRYPTION_KEY_PLACEHOLDER,
        validation_alias="TOKEN_ENCRYPTION_KEY",
    )
    token_encryption_key_id: str = Field(
        default="default", validation_alias="TOKEN_ENCRYPTION_KEY_ID"
    )
    # env > file > generate
    token_encryption_key_file: str = Field(
        default="data/token_encryption.key", validation_alias="TOKEN_ENCRYPTION_KEY_FILE"
    )

    # CORS Configuration
    cors_origins: str = "http://localhost:3000"

    # Application Configuration
    log_level: str = "INFO"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return _split_csv(self.cors_origins)

    @property
    def allowed_users_list(self) -> list[str]:
        """Allowlisted e-mails, lower-cased."""
        return _split_csv(self.allowed_users, lower=True)

    @property
    def mcp_allowed_origins_list(self) -> list[str]:
        return _split_csv(self.mcp_allowed_origins)

    @property
    def mcp_allowed_hosts_list(self) -> list[str]:
        return _split_csv(self.mcp_allowed_hosts)

    def default_redirect_uri(self, provider_type: str) -> str:
        """Callback URL used when a provider has no explicit redirect URI."""
        return f"{self.base_url.rstrip('/')}/auth/{provider_type}/callback"

    def model_post_init(self, __context: object) -> None:
        """Resolve the token encryption key from env, then key file, then generate one."""
        env_key = self.token_encryption_key
        if env_key and env_key.strip() and env_key != TOKEN_ENCRYPTION_KEY_PLACEHOLDER:
            try:
                Fernet(env_key.encode())
            except ValueError:
                logger.error(
                    "TOKEN_ENCRYPTION_KEY is invalid. Provide a 32 byte URL-safe base64 string."
                )
                raise
            logger.info("Loaded token encryption key from TOKEN_ENCRYPTION_KEY.")
            return

        key_path = Path(self.token_encryption_key_file)

        if key_path.exists():
            try:
                key_str = key_path.read_bytes().strip().decode("utf-8")
                Fernet(key_str.encode())
            except (OSError, ValueError):
                logger.error("Failed to load token encryption key from %s", key_path)
                raise
            self.token_encryption_key = key_str
            logger.info("Loaded token encryption key from %s", key_path)
            return

        new_key = Fernet.generate_key().decode("utf-8")
        try:
            key_path.parent.mkdir(parents=True, exist_ok=True)
            key_path.write_text(new_key, encoding="utf-8")
            key_path.chmod(0o600)
            logger.warning(
                "TOKEN_ENCRYPTION_KEY is not set; generated a new key at %s."
                " Supply the key through the environment in production.",
                key_path,
            )
        except PermissionError:
            # Memory-only key; tokens encrypted with it do not survive a restart
            logger.warning(
                "No write permission for %s; using an in-memory token encryption key.",
                key_path,
            )
        self.token_encryption_key = new_key


settings = Settings()
