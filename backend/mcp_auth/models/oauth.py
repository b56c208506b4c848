"""OAuth エンドポイントのリクエスト/レスポンスモデル。"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .state import UserInfo


class TokenResponse(BaseModel):
    """トークン発行レスポンス（RFC 6749 5.1）。"""

    access_token: str = Field(..., description="アクセストークン")
    token_type: str = Field(default="Bearer", description="トークン種別")
    expires_in: int = Field(..., description="アクセストークン有効秒数")
    refresh_token: Optional[str] = Field(default=None, description="リフレッシュトークン")
    id_token: Optional[str] = Field(default=None, description="ID トークン（OIDC）")
    scope: Optional[str] = Field(default=None, description="スペース区切りのスコープ")
    user: Optional[UserInfo] = Field(default=None, description="認証済みユーザー")


class OAuthErrorResponse(BaseModel):
    """RFC 6749 形式のエラーボディ。"""

    error: str = Field(..., description="エラーコード")
    error_description: Optional[str] = Field(default=None, description="説明")


class DiscoveryResponse(BaseModel):
    """利用可能なプロバイダとエンドポイントの一覧。"""

    message: str = "OAuth authentication endpoint"
    providers: List[str] = Field(default_factory=list, description="登録順のプロバイダ種別")
    endpoints: Dict[str, str] = Field(default_factory=dict)


class AuthorizationServerMetadata(BaseModel):
    """RFC 8414 認可サーバーメタデータ。"""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    revocation_endpoint: str
    scopes_supported: List[str] = Field(
        default_factory=list, description="全プロバイダのスコープ（重複なし）"
    )
    response_types_supported: List[str] = Field(default_factory=lambda: ["code"])
    grant_types_supported: List[str] = Field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    code_challenge_methods_supported: List[str] = Field(default_factory=lambda: ["S256"])
    token_endpoint_auth_methods_supported: List[str] = Field(default_factory=lambda: ["none"])
    revocation_endpoint_auth_methods_supported: List[str] = Field(
        default_factory=lambda: ["none"]
    )


class ProtectedResourceMetadata(BaseModel):
    """RFC 9728 保護リソースメタデータ。"""

    resource: str
    authorization_servers: List[str]
    scopes_supported: List[str] = Field(default_factory=list)
    bearer_methods_supported: List[str] = Field(default_factory=lambda: ["header"])


class LogoutResponse(BaseModel):
    """ログアウト結果。"""

    success: bool = True


class JsonRpcError(BaseModel):
    """JSON-RPC エラーオブジェクト。"""

    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcErrorResponse(BaseModel):
    """JSON-RPC エラーレスポンス。"""

    jsonrpc: str = "2.0"
    error: JsonRpcError
    id: Optional[Any] = None
