"""トークン暗号化ユーティリティのテスト。"""

import base64
import json
import os

import pytest
from cryptography.fernet import Fernet

from mcp_auth.services.crypto import TokenCipher


def _aes_key() -> str:
    return base64.urlsafe_b64encode(os.urandom(32)).decode()


@pytest.mark.parametrize("algorithm", ["fernet", "aes-gcm"])
def test_seal_and_unseal(algorithm: str) -> None:
    key = Fernet.generate_key().decode() if algorithm == "fernet" else _aes_key()
    cipher = TokenCipher(key, key_id="k1", algorithm=algorithm)
    payload = {"access_token": "secret-token", "scopes": ["openid"]}

    sealed = cipher.seal(payload)

    assert "secret-token" not in sealed
    token_ref = json.loads(sealed)
    assert token_ref["type"] == "encrypted"
    assert token_ref["algo"] == algorithm
    assert token_ref["key_id"] == "k1"
    assert cipher.unseal(sealed) == payload


def test_unseal_with_other_key_fails() -> None:
    sealed = TokenCipher(Fernet.generate_key().decode()).seal({"a": 1})
    with pytest.raises(ValueError):
        TokenCipher(Fernet.generate_key().decode()).unseal(sealed)


def test_unseal_rejects_key_id_mismatch() -> None:
    key = Fernet.generate_key().decode()
    sealed = TokenCipher(key, key_id="old").seal({"a": 1})
    with pytest.raises(ValueError, match="key id"):
        TokenCipher(key, key_id="new").unseal(sealed)


def test_aes_gcm_tampered_blob_fails() -> None:
    cipher = TokenCipher(_aes_key(), algorithm="aes-gcm")
    token_ref = cipher.encrypt({"a": 1})
    blob = bytearray(base64.urlsafe_b64decode(token_ref["blob"]))
    blob[0] ^= 0xFF
    token_ref["blob"] = base64.urlsafe_b64encode(bytes(blob)).decode()

    with pytest.raises(ValueError, match="decrypt failed"):
        cipher.decrypt(token_ref)


@pytest.mark.parametrize(
    "key, algorithm",
    [
        (base64.urlsafe_b64encode(b"short").decode(), "aes-gcm"),
        ("irrelevant", "rot13"),
    ],
)
def test_invalid_cipher_configuration(key: str, algorithm: str) -> None:
    with pytest.raises(ValueError):
        TokenCipher(key, algorithm=algorithm)
