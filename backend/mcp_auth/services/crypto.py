"""保存トークンの暗号化ユーティリティ。

SQLite と Redis のトークンストアは TokenRecord を平文で書かない。
レコードは token_ref（`{"type": "encrypted", "algo", "key_id", "blob"[, "nonce"]}`）
の JSON 文字列として保存する。
"""

import base64
import binascii
import json
import secrets
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import Settings, settings

TOKEN_REF_TYPE = "encrypted"
AES_KEY_BYTES = 32
AES_NONCE_BYTES = 12


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(value.encode("ascii"))
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"{what} is not valid base64") from exc


class _FernetBackend:
    name = "fernet"

    def __init__(self, key: str, key_id: str) -> None:
        self._fernet = Fernet(key.encode("utf-8"))

    def seal(self, plaintext: bytes) -> Dict[str, str]:
        return {"blob": self._fernet.encrypt(plaintext).decode("ascii")}

    def open(self, token_ref: Dict[str, Any]) -> bytes:
        try:
            return self._fernet.decrypt(token_ref["blob"].encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("token_ref decrypt failed") from exc


class _AesGcmBackend:
    """AES-256-GCM。key_id を追加認証データとして暗号文に結び付ける。"""

    name = "aes-gcm"

    def __init__(self, key: str, key_id: str) -> None:
        key_bytes = _b64decode(key, "AES-GCM key")
        if len(key_bytes) != AES_KEY_BYTES:
            raise ValueError("AES-GCM key must be 32 bytes (256-bit)")
        self._aesgcm = AESGCM(key_bytes)
        self._aad = key_id.encode("utf-8")

    def seal(self, plaintext: bytes) -> Dict[str, str]:
        nonce = secrets.token_bytes(AES_NONCE_BYTES)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext, self._aad)
        return {"blob": _b64encode(ciphertext), "nonce": _b64encode(nonce)}

    def open(self, token_ref: Dict[str, Any]) -> bytes:
        if not token_ref.get("nonce"):
            raise ValueError("token_ref missing nonce")
        nonce = _b64decode(token_ref["nonce"], "token_ref nonce")
        ciphertext = _b64decode(token_ref["blob"], "token_ref blob")
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, self._aad)
        except InvalidTag as exc:
            raise ValueError("token_ref decrypt failed") from exc


_BACKENDS = {backend.name: backend for backend in (_FernetBackend, _AesGcmBackend)}


class TokenCipher:
    """トークンレコードを暗号化・復号する。

    鍵や key_id が一致しない token_ref は ValueError になる。ストア側は
    これを「レコードなし」として扱う（鍵のローテーション後は再ログインが必要）。
    """

    def __init__(self, key: str, key_id: str = "default", algorithm: str = "fernet") -> None:
        backend_class = _BACKENDS.get(algorithm or "fernet")
        if backend_class is None:
            raise ValueError(f"unsupported algorithm: {algorithm}")
        self._key_id = key_id
        self._backend = backend_class(key, key_id)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "TokenCipher":
        """TOKEN_ENCRYPTION_KEY / TOKEN_ENCRYPTION_KEY_ID から Fernet 暗号器を作る。"""
        config = config or settings
        return cls(config.token_encryption_key, key_id=config.token_encryption_key_id)

    @property
    def metadata(self) -> Dict[str, str]:
        return {"algo": self._backend.name, "key_id": self._key_id}

    def _check_header(self, token_ref: Dict[str, Any]) -> None:
        if token_ref.get("type") != TOKEN_REF_TYPE:
            raise ValueError("token_ref type is not encrypted")
        algo = token_ref.get("algo") or self._backend.name
        key_id = token_ref.get("key_id") or self._key_id
        if algo != self._backend.name:
            raise ValueError(f"token_ref was sealed with {algo}")
        if key_id != self._key_id:
            raise ValueError(f"token_ref key id mismatch: {key_id}")
        if not token_ref.get("blob"):
            raise ValueError("token_ref missing blob")

    def encrypt(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """ペイロードを暗号化し token_ref 用の辞書を返す。"""
        plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return {"type": TOKEN_REF_TYPE, **self.metadata, **self._backend.seal(plaintext)}

    def decrypt(self, token_ref: Dict[str, Any]) -> Dict[str, Any]:
        self._check_header(token_ref)
        return json.loads(self._backend.open(token_ref).decode("utf-8"))

    def seal(self, payload: Dict[str, Any]) -> str:
        """encrypt() の結果を JSON 文字列にする。"""
        return json.dumps(self.encrypt(payload))

    def unseal(self, sealed: str) -> Dict[str, Any]:
        try:
            token_ref = json.loads(sealed)
        except ValueError as exc:
            raise ValueError("token_ref is not valid JSON") from exc
        if not isinstance(token_ref, dict):
            raise ValueError("token_ref is not an object")
        return self.decrypt(token_ref)
