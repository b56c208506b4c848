"""SQLite ベースの永続化ストア実装。"""

import hashlib
import json
import logging
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import settings
from ..models.state import PreAuthSession, SessionMetadata, TokenRecord, VerifierEntry
from .crypto import TokenCipher

logger = logging.getLogger(__name__)

GC_TABLES = ("pkce_entries", "pre_auth_sessions", "oauth_tokens", "session_metadata")


def _to_epoch(dt: datetime) -> float:
    """datetime を UTC エポック秒に変換する。"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _digest(value: str) -> str:
    """トークン値をそのまま保存しないためのキー化。"""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class StateStore:
    """PKCE・事前認可セッション・トークン・セッションメタデータの永続化ファサード。

    トークンはアクセストークン/リフレッシュトークンの SHA-256 をキーとし、
    本体は TokenCipher で暗号化して保存する。
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        cipher: Optional[TokenCipher] = None,
    ) -> None:
        self.db_path = db_path or settings.state_db_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._cipher = cipher or TokenCipher.from_settings()
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        """SQLite 接続を取得する。"""
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        """必要なテーブルを作成する。既に存在する場合は何もしない。"""
        if self._initialized:
            return
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS pkce_entries (
                    entry_key TEXT PRIMARY KEY,
                    code_verifier TEXT NOT NULL,
                    code_challenge TEXT NOT NULL,
                    state TEXT NOT NULL,
                    expires_at REAL NOT NULL
                );
                CREATE TABLE IF NOT EXISTS pre_auth_sessions (
                    state TEXT PRIMARY KEY,
                    provider_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    expires_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_pre_auth_sessions_expires_at
                    ON pre_auth_sessions(expires_at);
                CREATE TABLE IF NOT EXISTS oauth_tokens (
                    token_hash TEXT PRIMARY KEY,
                    refresh_hash TEXT,
                    provider_type TEXT NOT NULL,
                    token_ref TEXT NOT NULL,
                    expires_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_oauth_tokens_refresh_hash
                    ON oauth_tokens(refresh_hash);
                CREATE TABLE IF NOT EXISTS session_metadata (
                    session_id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                );
                """
            )
            conn.commit()
        self._initialized = True

    def list_tables(self) -> List[str]:
        """作成済みテーブル名を返す。"""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            ).fetchall()
        return [row["name"] for row in rows]

    # PKCE entries
    def save_pkce_entry(self, entry_key: str, entry: VerifierEntry, ttl_seconds: int) -> None:
        """PKCE 情報を保存する。"""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pkce_entries (
                    entry_key, code_verifier, code_challenge, state, expires_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry_key,
                    entry.code_verifier,
                    entry.code_challenge,
                    entry.state,
                    time.time() + ttl_seconds,
                ),
            )
            conn.commit()

    def get_pkce_entry(self, entry_key: str) -> Optional[VerifierEntry]:
        """有効な PKCE 情報を取得する。"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pkce_entries WHERE entry_key=? AND expires_at > ?",
                (entry_key, time.time()),
            ).fetchone()
        if row is None:
            return None
        return VerifierEntry(
            code_verifier=row["code_verifier"],
            code_challenge=row["code_challenge"],
            state=row["state"],
        )

    def pop_pkce_entry(self, entry_key: str) -> Optional[VerifierEntry]:
        """PKCE 情報を取得と同時に削除する（同一トランザクション内）。"""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM pkce_entries WHERE entry_key=?",
                (entry_key,),
            ).fetchone()
            conn.execute("DELETE FROM pkce_entries WHERE entry_key=?", (entry_key,))
            conn.commit()
        finally:
            conn.close()
        if row is None or row["expires_at"] <= time.time():
            return None
        return VerifierEntry(
            code_verifier=row["code_verifier"],
            code_challenge=row["code_challenge"],
            state=row["state"],
        )

    def delete_pkce_entry(self, entry_key: str) -> None:
        """PKCE 情報を削除する。存在しない場合は何もしない。"""
        with self._connect() as conn:
            conn.execute("DELETE FROM pkce_entries WHERE entry_key=?", (entry_key,))
            conn.commit()

    # Pre-auth sessions
    def save_pre_auth_session(self, session: PreAuthSession, ttl_seconds: int) -> None:
        """事前認可セッションを保存する。"""
        expires_at = min(time.time() + ttl_seconds, _to_epoch(session.expires_at))
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO pre_auth_sessions (
                    state, provider_type, payload, expires_at
                ) VALUES (?, ?, ?, ?)
                """,
                (session.state, session.provider_type, session.model_dump_json(), expires_at),
            )
            conn.commit()

    def get_pre_auth_session(self, state: str) -> Optional[PreAuthSession]:
        """有効な事前認可セッションを取得する。"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM pre_auth_sessions WHERE state=? AND expires_at > ?",
                (state, time.time()),
            ).fetchone()
        if row is None:
            return None
        return PreAuthSession.model_validate_json(row["payload"])

    def delete_pre_auth_session(self, state: str) -> None:
        """事前認可セッションを削除する。"""
        with self._connect() as conn:
            conn.execute("DELETE FROM pre_auth_sessions WHERE state=?", (state,))
            conn.commit()

    def count_pre_auth_sessions(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM pre_auth_sessions WHERE expires_at > ?",
                (time.time(),),
            ).fetchone()
        return int(row["n"])

    # Tokens
    def save_token(self, access_token: str, record: TokenRecord) -> None:
        """トークンレコードを暗号化して保存する。"""
        token_ref = self._cipher.seal(record.model_dump(mode="json"))
        refresh_hash = _digest(record.refresh_token) if record.refresh_token else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO oauth_tokens (
                    token_hash, refresh_hash, provider_type, token_ref, expires_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (
                    _digest(access_token),
                    refresh_hash,
                    record.provider_type,
                    token_ref,
                    _to_epoch(record.expires_at),
                ),
            )
            conn.commit()

    def _load_token(self, row: sqlite3.Row) -> Optional[TokenRecord]:
        try:
            payload = self._cipher.unseal(row["token_ref"])
        except ValueError:
            logger.warning("保存済みトークンの復号に失敗しました（鍵が変更された可能性があります）")
            return None
        return TokenRecord.model_validate(payload)

    def get_token(self, access_token: str) -> Optional[TokenRecord]:
        """有効なトークンレコードを取得する。"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token_ref FROM oauth_tokens WHERE token_hash=? AND expires_at > ?",
                (_digest(access_token), time.time()),
            ).fetchone()
        if row is None:
            return None
        return self._load_token(row)

    def find_token_by_refresh(self, refresh_token: str) -> Optional[Tuple[str, TokenRecord]]:
        """リフレッシュトークンからトークンレコードを検索する。"""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT token_ref FROM oauth_tokens
                WHERE refresh_hash=? AND expires_at > ?
                ORDER BY expires_at DESC LIMIT 1
                """,
                (_digest(refresh_token), time.time()),
            ).fetchone()
        if row is None:
            return None
        record = self._load_token(row)
        if record is None:
            return None
        return record.access_token, record

    def delete_token(self, access_token: str) -> None:
        """トークンレコードを削除する。"""
        with self._connect() as conn:
            conn.execute("DELETE FROM oauth_tokens WHERE token_hash=?", (_digest(access_token),))
            conn.commit()

    def count_tokens(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM oauth_tokens WHERE expires_at > ?",
                (time.time(),),
            ).fetchone()
        return int(row["n"])

    # Session metadata
    def save_session_metadata(self, metadata: SessionMetadata) -> None:
        """セッションメタデータを保存する。"""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO session_metadata (
                    session_id, payload, created_at, expires_at
                ) VALUES (?, ?, ?, ?)
                """,
                (
                    metadata.session_id,
                    metadata.model_dump_json(),
                    _to_epoch(metadata.created_at),
                    _to_epoch(metadata.expires_at),
                ),
            )
            conn.commit()

    def get_session_metadata(self, session_id: str) -> Optional[SessionMetadata]:
        """有効なセッションメタデータを取得する。"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM session_metadata WHERE session_id=? AND expires_at > ?",
                (session_id, time.time()),
            ).fetchone()
        if row is None:
            return None
        return SessionMetadata.model_validate_json(row["payload"])

    def delete_session_metadata(self, session_id: str) -> None:
        """セッションメタデータを削除する。"""
        with self._connect() as conn:
            conn.execute("DELETE FROM session_metadata WHERE session_id=?", (session_id,))
            conn.commit()

    def count_session_metadata(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM session_metadata WHERE expires_at > ?",
                (time.time(),),
            ).fetchone()
        return int(row["n"])

    def gc_expired(
        self, now: Optional[datetime] = None, tables: Sequence[str] = GC_TABLES
    ) -> Dict[str, int]:
        """
        期限切れデータを削除する。

        Args:
            tables: 対象テーブル。ストアごとに自分のテーブルだけを掃除する。

        Returns:
            テーブルごとの削除件数。
        """
        unknown = set(tables) - set(GC_TABLES)
        if unknown:
            raise ValueError(f"unknown tables: {sorted(unknown)}")
        cutoff = _to_epoch(now) if now else time.time()
        deleted: Dict[str, int] = {}
        with self._connect() as conn:
            cur = conn.cursor()
            for table in tables:
                cur.execute(f"DELETE FROM {table} WHERE expires_at <= ?", (cutoff,))
                deleted[table] = cur.rowcount
            conn.commit()
        if any(deleted.values()):
            logger.info("期限切れレコードを削除しました: %s", json.dumps(deleted))
        return deleted
