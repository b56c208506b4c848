"""StateStore (SQLite) を非同期ストア契約へ適合させるアダプタ。"""

import asyncio
import functools
import logging
import sqlite3
from typing import Optional, Tuple

from ...models.state import PreAuthSession, SessionMetadata, TokenRecord, VerifierEntry
from ..errors import StoreUnavailableError
from ..state_store import StateStore
from .base import PreAuthSessionStore, SessionMetadataStore, TokenStore, VerifierStore

logger = logging.getLogger(__name__)


async def _run(operation: str, func, *args):
    """ワーカースレッドで実行し、SQLite の障害を StoreUnavailableError に変換する。"""
    try:
        return await asyncio.to_thread(func, *args)
    except sqlite3.Error as exc:
        logger.error("SQLite ストア操作に失敗しました: %s (%s)", operation, exc)
        raise StoreUnavailableError(f"State store unavailable during {operation}", operation) from exc


async def _gc(operation: str, state_store: StateStore, table: str) -> int:
    """自分のテーブルだけを掃除し、その削除件数を返す。"""
    deleted = await _run(operation, functools.partial(state_store.gc_expired, tables=(table,)))
    return deleted.get(table, 0)


class SqliteVerifierStore(VerifierStore):
    def __init__(self, state_store: StateStore) -> None:
        self._state = state_store

    async def set(self, key: str, entry: VerifierEntry, ttl_seconds: int) -> None:
        await _run("verifier.set", self._state.save_pkce_entry, key, entry, ttl_seconds)

    async def get(self, key: str) -> Optional[VerifierEntry]:
        return await _run("verifier.get", self._state.get_pkce_entry, key)

    async def get_and_delete(self, key: str) -> Optional[VerifierEntry]:
        return await _run("verifier.get_and_delete", self._state.pop_pkce_entry, key)

    async def has(self, key: str) -> bool:
        return await self.get(key) is not None

    async def delete(self, key: str) -> None:
        await _run("verifier.delete", self._state.delete_pkce_entry, key)

    async def cleanup(self) -> int:
        return await _gc("verifier.cleanup", self._state, "pkce_entries")


class SqlitePreAuthSessionStore(PreAuthSessionStore):
    def __init__(self, state_store: StateStore) -> None:
        self._state = state_store

    async def set(self, state: str, session: PreAuthSession, ttl_seconds: int) -> None:
        await _run("session.set", self._state.save_pre_auth_session, session, ttl_seconds)

    async def get(self, state: str) -> Optional[PreAuthSession]:
        return await _run("session.get", self._state.get_pre_auth_session, state)

    async def delete(self, state: str) -> None:
        await _run("session.delete", self._state.delete_pre_auth_session, state)

    async def cleanup(self) -> int:
        return await _gc("session.cleanup", self._state, "pre_auth_sessions")

    async def count(self) -> int:
        return await _run("session.count", self._state.count_pre_auth_sessions)


class SqliteTokenStore(TokenStore):
    def __init__(self, state_store: StateStore) -> None:
        self._state = state_store

    async def set(self, access_token: str, record: TokenRecord) -> None:
        await _run("token.set", self._state.save_token, access_token, record)

    async def get(self, access_token: str) -> Optional[TokenRecord]:
        return await _run("token.get", self._state.get_token, access_token)

    async def find_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[Tuple[str, TokenRecord]]:
        return await _run("token.find_by_refresh", self._state.find_token_by_refresh, refresh_token)

    async def has(self, access_token: str) -> bool:
        return await self.get(access_token) is not None

    async def delete(self, access_token: str) -> None:
        await _run("token.delete", self._state.delete_token, access_token)

    async def cleanup(self) -> int:
        return await _gc("token.cleanup", self._state, "oauth_tokens")

    async def count(self) -> int:
        return await _run("token.count", self._state.count_tokens)


class SqliteSessionMetadataStore(SessionMetadataStore):
    def __init__(self, state_store: StateStore) -> None:
        self._state = state_store

    async def set(self, session_id: str, metadata: SessionMetadata) -> None:
        await _run("metadata.set", self._state.save_session_metadata, metadata)

    async def get(self, session_id: str) -> Optional[SessionMetadata]:
        return await _run("metadata.get", self._state.get_session_metadata, session_id)

    async def delete(self, session_id: str) -> None:
        await _run("metadata.delete", self._state.delete_session_metadata, session_id)

    async def cleanup(self) -> int:
        return await _gc("metadata.cleanup", self._state, "session_metadata")

    async def count(self) -> int:
        return await _run("metadata.count", self._state.count_session_metadata)
