"""Redis-backed stores for deployments with many stateless instances.

Key layout, each under an optional global prefix:

    oauth:pkce:{provider_type}:{code}   VerifierEntry JSON
    oauth:session:{state}               PreAuthSession JSON
    oauth:token:{sha256(access_token)}  TokenRecord (encrypted when a cipher is set)
    oauth:refresh:{sha256(refresh)}     access token hash
    mcp:session:{session_id}            SessionMetadata JSON

Expiry is delegated to Redis via SET EX. A RedisError always surfaces as
StoreUnavailableError; it is never reported as a missing key.
"""

import hashlib
import logging
import time
from datetime import datetime
from typing import Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ...models.state import PreAuthSession, SessionMetadata, TokenRecord, VerifierEntry
from ..crypto import TokenCipher
from ..errors import StoreUnavailableError
from .base import PreAuthSessionStore, SessionMetadataStore, TokenStore, VerifierStore

logger = logging.getLogger(__name__)

PKCE_PREFIX = "oauth:pkce:"
SESSION_PREFIX = "oauth:session:"
TOKEN_PREFIX = "oauth:token:"
REFRESH_PREFIX = "oauth:refresh:"
METADATA_PREFIX = "mcp:session:"

SCAN_COUNT = 100


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _ttl_until(expires_at: datetime) -> int:
    """Seconds until expires_at, never less than one."""
    return max(int(expires_at.timestamp() - time.time()), 1)


class _RedisStore:
    """Shared plumbing: key building, error translation and SCAN counting."""

    namespace = ""

    def __init__(self, client: Redis, key_prefix: str = "") -> None:
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, suffix: str, namespace: Optional[str] = None) -> str:
        return f"{self._key_prefix}{namespace or self.namespace}{suffix}"

    def _unavailable(self, operation: str, exc: RedisError) -> StoreUnavailableError:
        logger.error("Redis operation %s failed: %s", operation, exc)
        return StoreUnavailableError(f"Redis unavailable during {operation}", operation)

    async def count(self) -> int:
        pattern = self._key("*")
        total = 0
        try:
            async for _ in self._client.scan_iter(match=pattern, count=SCAN_COUNT):
                total += 1
        except RedisError as exc:
            raise self._unavailable(f"{self.namespace}count", exc) from exc
        return total

    async def cleanup(self) -> int:
        # Redis expires keys on its own
        return 0


class RedisVerifierStore(_RedisStore, VerifierStore):
    namespace = PKCE_PREFIX

    async def set(self, key: str, entry: VerifierEntry, ttl_seconds: int) -> None:
        try:
            await self._client.set(self._key(key), entry.model_dump_json(), ex=ttl_seconds)
        except RedisError as exc:
            raise self._unavailable("verifier.set", exc) from exc

    async def get(self, key: str) -> Optional[VerifierEntry]:
        try:
            raw = await self._client.get(self._key(key))
        except RedisError as exc:
            raise self._unavailable("verifier.get", exc) from exc
        return VerifierEntry.model_validate_json(raw) if raw else None

    async def get_and_delete(self, key: str) -> Optional[VerifierEntry]:
        try:
            raw = await self._client.getdel(self._key(key))
        except RedisError as exc:
            raise self._unavailable("verifier.get_and_delete", exc) from exc
        return VerifierEntry.model_validate_json(raw) if raw else None

    async def has(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(self._key(key)))
        except RedisError as exc:
            raise self._unavailable("verifier.has", exc) from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(self._key(key))
        except RedisError as exc:
            raise self._unavailable("verifier.delete", exc) from exc


class RedisPreAuthSessionStore(_RedisStore, PreAuthSessionStore):
    namespace = SESSION_PREFIX

    async def set(self, state: str, session: PreAuthSession, ttl_seconds: int) -> None:
        ttl = min(ttl_seconds, _ttl_until(session.expires_at))
        try:
            await self._client.set(self._key(state), session.model_dump_json(), ex=ttl)
        except RedisError as exc:
            raise self._unavailable("session.set", exc) from exc

    async def get(self, state: str) -> Optional[PreAuthSession]:
        try:
            raw = await self._client.get(self._key(state))
        except RedisError as exc:
            raise self._unavailable("session.get", exc) from exc
        if not raw:
            return None
        session = PreAuthSession.model_validate_json(raw)
        if session.is_expired():
            return None
        return session

    async def delete(self, state: str) -> None:
        try:
            await self._client.delete(self._key(state))
        except RedisError as exc:
            raise self._unavailable("session.delete", exc) from exc


class RedisTokenStore(_RedisStore, TokenStore):
    namespace = TOKEN_PREFIX

    def __init__(
        self, client: Redis, key_prefix: str = "", cipher: Optional[TokenCipher] = None
    ) -> None:
        super().__init__(client, key_prefix)
        self._cipher = cipher

    def _encode(self, record: TokenRecord) -> str:
        if self._cipher is None:
            return record.model_dump_json()
        return self._cipher.seal(record.model_dump(mode="json"))

    def _decode(self, raw: str) -> Optional[TokenRecord]:
        if self._cipher is None:
            return TokenRecord.model_validate_json(raw)
        try:
            payload = self._cipher.unseal(raw)
        except ValueError:
            logger.warning("Stored token could not be decrypted; treating it as absent")
            return None
        return TokenRecord.model_validate(payload)

    async def set(self, access_token: str, record: TokenRecord) -> None:
        ttl = _ttl_until(record.expires_at)
        token_hash = _digest(access_token)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(self._key(token_hash), self._encode(record), ex=ttl)
                if record.refresh_token:
                    pipe.set(
                        self._key(_digest(record.refresh_token), REFRESH_PREFIX),
                        token_hash,
                        ex=ttl,
                    )
                await pipe.execute()
        except RedisError as exc:
            raise self._unavailable("token.set", exc) from exc

    async def get(self, access_token: str) -> Optional[TokenRecord]:
        try:
            raw = await self._client.get(self._key(_digest(access_token)))
        except RedisError as exc:
            raise self._unavailable("token.get", exc) from exc
        if not raw:
            return None
        record = self._decode(raw)
        if record is None or record.is_expired():
            return None
        return record

    async def find_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[Tuple[str, TokenRecord]]:
        try:
            token_hash = await self._client.get(
                self._key(_digest(refresh_token), REFRESH_PREFIX)
            )
            if not token_hash:
                return None
            raw = await self._client.get(self._key(token_hash))
        except RedisError as exc:
            raise self._unavailable("token.find_by_refresh_token", exc) from exc
        if not raw:
            return None
        record = self._decode(raw)
        if record is None or record.refresh_token != refresh_token:
            return None
        return record.access_token, record

    async def has(self, access_token: str) -> bool:
        return await self.get(access_token) is not None

    async def delete(self, access_token: str) -> None:
        key = self._key(_digest(access_token))
        try:
            raw = await self._client.getdel(key)
            if raw:
                record = self._decode(raw)
                if record is not None and record.refresh_token:
                    await self._client.delete(
                        self._key(_digest(record.refresh_token), REFRESH_PREFIX)
                    )
        except RedisError as exc:
            raise self._unavailable("token.delete", exc) from exc


class RedisSessionMetadataStore(_RedisStore, SessionMetadataStore):
    namespace = METADATA_PREFIX

    async def set(self, session_id: str, metadata: SessionMetadata) -> None:
        try:
            await self._client.set(
                self._key(session_id),
                metadata.model_dump_json(),
                ex=_ttl_until(metadata.expires_at),
            )
        except RedisError as exc:
            raise self._unavailable("metadata.set", exc) from exc

    async def get(self, session_id: str) -> Optional[SessionMetadata]:
        try:
            raw = await self._client.get(self._key(session_id))
        except RedisError as exc:
            raise self._unavailable("metadata.get", exc) from exc
        if not raw:
            return None
        metadata = SessionMetadata.model_validate_json(raw)
        if metadata.is_expired():
            return None
        return metadata

    async def delete(self, session_id: str) -> None:
        try:
            await self._client.delete(self._key(session_id))
        except RedisError as exc:
            raise self._unavailable("metadata.delete", exc) from exc
