"""Tests for application settings."""

import stat

import pytest
from cryptography.fernet import Fernet

from mcp_auth.config import Settings


@pytest.fixture
def no_env_key(monkeypatch):
    """Remove the key the test session exports so the file fallback is exercised."""
    monkeypatch.delenv("TOKEN_ENCRYPTION_KEY", raising=False)


def test_key_from_environment(monkeypatch, tmp_path):
    key = Fernet.generate_key().decode("utf-8")
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", key)
    key_file = tmp_path / "token.key"

    config = Settings(_env_file=None, TOKEN_ENCRYPTION_KEY_FILE=str(key_file))

    assert config.token_encryption_key == key
    assert not key_file.exists()


def test_invalid_environment_key_is_rejected(monkeypatch):
    monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", "not-a-fernet-key")

    with pytest.raises(ValueError):
        Settings(_env_file=None)


def test_key_file_is_generated_once(no_env_key, tmp_path):
    key_file = tmp_path / "keys" / "token.key"

    first = Settings(_env_file=None, TOKEN_ENCRYPTION_KEY_FILE=str(key_file))

    assert key_file.exists()
    assert stat.S_IMODE(key_file.stat().st_mode) == 0o600
    assert key_file.read_text(encoding="utf-8") == first.token_encryption_key
    Fernet(first.token_encryption_key.encode())

    second = Settings(_env_file=None, TOKEN_ENCRYPTION_KEY_FILE=str(key_file))
    assert second.token_encryption_key == first.token_encryption_key


def test_corrupt_key_file_is_rejected(no_env_key, tmp_path):
    key_file = tmp_path / "token.key"
    key_file.write_text("garbage", encoding="utf-8")

    with pytest.raises(ValueError):
        Settings(_env_file=None, TOKEN_ENCRYPTION_KEY_FILE=str(key_file))


def test_csv_properties():
    config = Settings(
        _env_file=None,
        cors_origins="http://a.example, http://b.example ,",
        allowed_users=" Alice@Example.com,bob@example.com ",
        mcp_allowed_origins="http://localhost:3000",
        mcp_allowed_hosts="",
    )

    assert config.cors_origins_list == ["http://a.example", "http://b.example"]
    assert config.allowed_users_list == ["alice@example.com", "bob@example.com"]
    assert config.mcp_allowed_origins_list == ["http://localhost:3000"]
    assert config.mcp_allowed_hosts_list == []


def test_default_redirect_uri_strips_trailing_slash():
    config = Settings(_env_file=None, base_url="https://gateway.example.com/")

    assert config.default_redirect_uri("google") == "https://gateway.example.com/auth/google/callback"


def test_defaults():
    config = Settings(_env_file=None)

    assert config.store_backend == "auto"
    assert config.session_metadata_ttl_seconds == 1800
    assert config.instance_ttl_seconds == 600
    assert config.pre_auth_session_ttl_seconds == 600
    assert config.token_expiry_buffer_seconds == 60
    assert config.microsoft_tenant_id == "common"
