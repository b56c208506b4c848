"""ストアに保存するレコードモデル群。"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _now_utc() -> datetime:
    """UTC 現在時刻を返す。"""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class VerifierEntry(BaseModel):
    """認可コードに紐づく PKCE 情報。キーは `{provider_type}:{code}`。"""

    code_verifier: str
    code_challenge: str = ""
    state: str


class PreAuthSession(BaseModel):
    """認可開始からコールバックまでの一時セッション。キーは state。"""

    state: str
    code_verifier: str = ""
    code_challenge: str
    redirect_uri: str
    client_redirect_uri: Optional[str] = None
    client_state: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    provider_type: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """有効期限を過ぎているかを返す。"""
        return _as_utc(self.expires_at) <= (now or _now_utc())


class UserInfo(BaseModel):
    """IdP から取得したユーザー情報。"""

    sub: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None
    provider: str


class TokenRecord(BaseModel):
    """発行済みアクセストークンのレコード。キーはアクセストークン値。"""

    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_at: datetime
    user_info: UserInfo
    provider_type: str
    scopes: List[str] = Field(default_factory=list)

    def is_expired(self, now: Optional[datetime] = None, buffer_seconds: int = 0) -> bool:
        """バッファを考慮して期限切れかを判定する。"""
        current = now or _now_utc()
        return _as_utc(self.expires_at).timestamp() - buffer_seconds <= current.timestamp()

    def expires_in(self, now: Optional[datetime] = None) -> int:
        """残り有効秒数（0 未満にはならない）。"""
        current = now or _now_utc()
        return max(int(_as_utc(self.expires_at).timestamp() - current.timestamp()), 0)


class AuthInfo(BaseModel):
    """プロトコルセッションに引き継ぐ認証コンテキスト。"""

    provider: str
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    client_id: Optional[str] = None


class SessionMetadata(BaseModel):
    """セッション再構築に必要な永続メタデータ。キーは session_id。"""

    session_id: str
    created_at: datetime = Field(default_factory=_now_utc)
    expires_at: datetime
    auth_info: Optional[AuthInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """有効期限を過ぎているかを返す。"""
        return _as_utc(self.expires_at) <= (now or _now_utc())
