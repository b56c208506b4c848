"""In-process store implementations.

Suitable for a single process and for tests. Every store keeps its data in
plain dicts guarded by an asyncio.Lock, and expires entries lazily on read as
well as through cleanup().
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from ...models.state import PreAuthSession, SessionMetadata, TokenRecord, VerifierEntry
from .base import PreAuthSessionStore, SessionMetadataStore, TokenStore, VerifierStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _prefix(value: str, length: int = 8) -> str:
    return value[:length]


class MemoryVerifierStore(VerifierStore):
    def __init__(self, clock: Clock = time.time) -> None:
        self._entries: Dict[str, Tuple[VerifierEntry, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[VerifierEntry]:
        item = self._entries.get(key)
        if item is None:
            return None
        entry, expires_at = item
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def set(self, key: str, entry: VerifierEntry, ttl_seconds: int) -> None:
        async with self._lock:
            self._entries[key] = (entry, self._clock() + ttl_seconds)
        logger.debug("Stored PKCE entry %s (ttl=%ss)", _prefix(key, 16), ttl_seconds)

    async def get(self, key: str) -> Optional[VerifierEntry]:
        async with self._lock:
            return self._live(key)

    async def get_and_delete(self, key: str) -> Optional[VerifierEntry]:
        async with self._lock:
            entry = self._live(key)
            self._entries.pop(key, None)
        if entry is None:
            logger.warning("PKCE entry %s not found during consume", _prefix(key, 16))
        return entry

    async def has(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def cleanup(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info("Removed %d expired PKCE entries", len(expired))
        return len(expired)


class MemoryPreAuthSessionStore(PreAuthSessionStore):
    def __init__(self, clock: Clock = time.time) -> None:
        self._sessions: Dict[str, Tuple[PreAuthSession, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def set(self, state: str, session: PreAuthSession, ttl_seconds: int) -> None:
        async with self._lock:
            self._sessions[state] = (session, self._clock() + ttl_seconds)

    async def get(self, state: str) -> Optional[PreAuthSession]:
        async with self._lock:
            item = self._sessions.get(state)
            if item is None:
                return None
            session, expires_at = item
            if expires_at <= self._clock() or session.expires_at.timestamp() <= self._clock():
                del self._sessions[state]
                logger.warning("Pre-auth session %s expired", _prefix(state))
                return None
            return session

    async def delete(self, state: str) -> None:
        async with self._lock:
            self._sessions.pop(state, None)

    async def cleanup(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [
                state
                for state, (session, expires_at) in self._sessions.items()
                if expires_at <= now or session.expires_at.timestamp() <= now
            ]
            for state in expired:
                del self._sessions[state]
        return len(expired)

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)


class MemoryTokenStore(TokenStore):
    def __init__(self, clock: Clock = time.time) -> None:
        self._tokens: Dict[str, TokenRecord] = {}
        self._refresh_index: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _expired(self, record: TokenRecord) -> bool:
        return record.expires_at.timestamp() <= self._clock()

    def _drop(self, access_token: str) -> None:
        record = self._tokens.pop(access_token, None)
        if record is not None and record.refresh_token:
            if self._refresh_index.get(record.refresh_token) == access_token:
                del self._refresh_index[record.refresh_token]

    async def set(self, access_token: str, record: TokenRecord) -> None:
        async with self._lock:
            self._tokens[access_token] = record
            if record.refresh_token:
                self._refresh_index[record.refresh_token] = access_token
        logger.debug(
            "Stored token %s for provider %s", _prefix(access_token), record.provider_type
        )

    async def get(self, access_token: str) -> Optional[TokenRecord]:
        async with self._lock:
            record = self._tokens.get(access_token)
            if record is None:
                return None
            if self._expired(record):
                self._drop(access_token)
                return None
            return record

    async def find_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[Tuple[str, TokenRecord]]:
        async with self._lock:
            access_token = self._refresh_index.get(refresh_token)
            if access_token is None:
                return None
            record = self._tokens.get(access_token)
            if record is None:
                # stale index
                del self._refresh_index[refresh_token]
                return None
            if self._expired(record):
                self._drop(access_token)
                return None
            return access_token, record

    async def has(self, access_token: str) -> bool:
        return await self.get(access_token) is not None

    async def delete(self, access_token: str) -> None:
        async with self._lock:
            self._drop(access_token)

    async def cleanup(self) -> int:
        async with self._lock:
            expired = [token for token, record in self._tokens.items() if self._expired(record)]
            for token in expired:
                self._drop(token)
        if expired:
            logger.info("Removed %d expired tokens", len(expired))
        return len(expired)

    async def count(self) -> int:
        async with self._lock:
            return len(self._tokens)


class MemorySessionMetadataStore(SessionMetadataStore):
    def __init__(self, clock: Clock = time.time) -> None:
        self._sessions: Dict[str, SessionMetadata] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _expired(self, metadata: SessionMetadata) -> bool:
        return metadata.expires_at.timestamp() <= self._clock()

    async def set(self, session_id: str, metadata: SessionMetadata) -> None:
        async with self._lock:
            self._sessions[session_id] = metadata

    async def get(self, session_id: str) -> Optional[SessionMetadata]:
        async with self._lock:
            metadata = self._sessions.get(session_id)
            if metadata is None:
                return None
            if self._expired(metadata):
                del self._sessions[session_id]
                return None
            return metadata

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._sessions.pop(session_id, None)

    async def cleanup(self) -> int:
        async with self._lock:
            expired = [sid for sid, meta in self._sessions.items() if self._expired(meta)]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)
