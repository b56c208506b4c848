"""IdP ごとの OAuth 2.1 + PKCE フローの共通実装。"""

import base64
import hashlib
import logging
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from ...config import Settings, settings
from ...models.oauth import LogoutResponse, TokenResponse
from ...models.state import AuthInfo, PreAuthSession, TokenRecord, UserInfo, VerifierEntry
from ..allowlist import Allowlist
from ..errors import (
    AccessDeniedError,
    AuthorizationDeniedError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidTokenError,
    OAuthError,
    OAuthProviderError,
    OAuthStateError,
    OAuthTokenError,
    StoreUnavailableError,
    UnsupportedGrantTypeError,
)
from ..metrics import MetricsRecorder
from ..stores.base import PreAuthSessionStore, StoreBundle, TokenStore, VerifierStore

logger = logging.getLogger(__name__)

TOKEN_REQUEST_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json, application/x-www-form-urlencoded;q=0.9, */*;q=0.1",
}


def _prefix(value: Optional[str], length: int = 8) -> str:
    return (value or "")[:length]


def generate_code_verifier() -> str:
    """32 バイト乱数の base64url（パディングなし）。"""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def compute_code_challenge(code_verifier: str) -> str:
    """S256 の code_challenge を計算する。"""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """16 バイト乱数の hex 文字列。"""
    return secrets.token_hex(16)


def split_scopes(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [scope for scope in re.split(r"[,\s]+", value) if scope]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProviderConfig:
    """プロバイダ構築に必要な資格情報と URL。"""

    provider_type: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: List[str] = field(default_factory=list)
    options: Dict[str, str] = field(default_factory=dict)


@dataclass
class AuthorizationRedirect:
    """認可開始時のリダイレクト先。"""

    url: str
    state: str


@dataclass
class CallbackResult:
    """コールバック結果。redirect_url か tokens のどちらか一方が入る。"""

    redirect_url: Optional[str] = None
    tokens: Optional[TokenResponse] = None


class BaseOAuthProvider(ABC):
    """認可コード + PKCE フローの共通処理。

    検証子ストア・事前認可セッションストア・トークンストアは全プロバイダで
    共有する。検証子キーは `{provider_type}:{code}` で名前空間化し、
    トークンはレコードの provider_type で所有者を判別する。
    """

    provider_type: str = ""
    provider_name: str = ""
    default_scopes: Tuple[str, ...] = ()

    def __init__(
        self,
        config: ProviderConfig,
        stores: StoreBundle,
        *,
        allowlist: Optional[Allowlist] = None,
        app_settings: Optional[Settings] = None,
        metrics: Optional[MetricsRecorder] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._verifiers: VerifierStore = stores.verifiers
        self._sessions: PreAuthSessionStore = stores.sessions
        self._tokens: TokenStore = stores.tokens
        self._allowlist = allowlist or Allowlist()
        self._settings = app_settings or settings
        self.metrics = metrics or MetricsRecorder()
        self._transport = transport
        self._disposed = False

    @classmethod
    @abstractmethod
    def config_from_settings(cls, config: Settings) -> ProviderConfig:
        """環境設定から ProviderConfig を作る。資格情報がなければ ProviderConfigurationError。"""

    # -- 公開プロパティ -------------------------------------------------

    @property
    def token_store(self) -> TokenStore:
        """テスト用の読み取り専用アクセサ。"""
        return self._tokens

    @property
    def client_id(self) -> str:
        return self._config.client_id

    @property
    def redirect_uri(self) -> str:
        return self._config.redirect_uri

    @property
    def scopes(self) -> List[str]:
        return list(self._config.scopes or self.default_scopes)

    @property
    def endpoints(self) -> Dict[str, str]:
        base = f"/auth/{self.provider_type}"
        return {
            "auth": base,
            "callback": f"{base}/callback",
            "logout": f"{base}/logout",
        }

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    # -- サブクラスが実装する IdP 固有部分 ------------------------------

    @property
    @abstractmethod
    def authorization_url(self) -> str: ...

    @property
    @abstractmethod
    def token_url(self) -> str: ...

    def authorization_params(self) -> Dict[str, str]:
        """認可 URL に追加するパラメータ。"""
        return {}

    @abstractmethod
    async def fetch_user_info(self, access_token: str) -> UserInfo:
        """IdP のユーザー情報 API を呼び出す。"""

    async def resolve_user(self, payload: Mapping[str, Any]) -> UserInfo:
        """トークン応答からユーザーを特定する。既定はユーザー情報 API。"""
        return await self.fetch_user_info(payload["access_token"])

    async def verify_remote_token(self, access_token: str) -> AuthInfo:
        """ローカルに記録のないトークンを IdP 側で検証する。"""
        user = await self.fetch_user_info(access_token)
        return self._auth_info(
            user,
            scopes=self.scopes,
            expires_at=_now_utc()
            + timedelta(seconds=self._settings.default_token_lifetime_seconds),
        )

    async def refresh_record(self, record: TokenRecord, refresh_token: str) -> TokenRecord:
        """refresh_token グラントで新しいレコードを得る。"""
        payload = await self._post_token_endpoint(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            action="token refresh",
        )
        if not payload.get("refresh_token"):
            payload = {**payload, "refresh_token": refresh_token}
        return self._build_record(payload, record.user_info, record.scopes)

    async def revoke_at_provider(self, access_token: str, record: Optional[TokenRecord]) -> None:
        """IdP 側の失効処理。既定では何もしない。"""
        return None

    # -- HTTP ----------------------------------------------------------

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.oauth_request_timeout_seconds,
            transport=self._transport,
        )

    async def _post_token_endpoint(self, data: Dict[str, str], *, action: str) -> Dict[str, Any]:
        """トークンエンドポイントへ POST し、アクセストークンを含む応答を返す。"""
        request_data = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            **data,
        }
        try:
            async with self._http_client() as client:
                response = await client.post(
                    self.token_url, data=request_data, headers=TOKEN_REQUEST_HEADERS
                )
        except httpx.HTTPError as exc:
            logger.error("%s %s request failed: %s", self.provider_name, action, exc)
            raise OAuthTokenError(
                f"{self.provider_name} {action} failed", provider=self.provider_type
            ) from exc

        if response.status_code >= 400:
            logger.error(
                "%s %s failed: status=%s body=%s",
                self.provider_name,
                action,
                response.status_code,
                response.text,
            )
            raise OAuthTokenError(
                f"{self.provider_name} {action} failed: {response.status_code}",
                provider=self.provider_type,
                upstream_status=response.status_code,
                upstream_body=response.text,
            )

        payload = self._parse_token_payload(response)
        if payload.get("error"):
            logger.error(
                "%s %s rejected: %s", self.provider_name, action, payload.get("error")
            )
            raise OAuthTokenError(
                f"{self.provider_name} {action} rejected",
                provider=self.provider_type,
                upstream_status=response.status_code,
                upstream_body=response.text,
            )
        if not payload.get("access_token"):
            raise OAuthTokenError("No access token received", provider=self.provider_type)
        return payload

    def _parse_token_payload(self, response: httpx.Response) -> Dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        if "application/x-www-form-urlencoded" in content_type:
            return dict(parse_qsl(response.text))
        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthTokenError(
                "Token endpoint returned an unreadable response", provider=self.provider_type
            ) from exc
        if not isinstance(payload, dict):
            raise OAuthTokenError(
                "Token endpoint returned an unexpected response", provider=self.provider_type
            )
        return payload

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        """IdP API を呼び出して JSON を返す。失敗は OAuthProviderError。"""
        request_headers = {"Accept": "application/json", **(headers or {})}
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        try:
            async with self._http_client() as client:
                response = await client.request(method, url, headers=request_headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("%s API request failed: %s %s (%s)", self.provider_name, method, url, exc)
            raise OAuthProviderError(
                f"Failed to reach {self.provider_name}", provider=self.provider_type
            ) from exc
        if response.status_code >= 400:
            logger.error(
                "%s API error: %s %s status=%s body=%s",
                self.provider_name,
                method,
                url,
                response.status_code,
                response.text,
            )
            raise OAuthProviderError(
                f"{self.provider_name} API returned {response.status_code}",
                provider=self.provider_type,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise OAuthProviderError(
                f"{self.provider_name} API returned invalid JSON", provider=self.provider_type
            ) from exc

    # -- ストア補助 ------------------------------------------------------

    def _verifier_key(self, code: str) -> str:
        return f"{self.provider_type}:{code}"

    async def has_stored_code_for_provider(self, code: str) -> bool:
        """このプロバイダの名前空間に code の検証子があるか（ローカルのみ）。"""
        try:
            return await self._verifiers.has(self._verifier_key(code))
        except StoreUnavailableError:
            logger.warning(
                "%s: verifier lookup failed during routing; treating as no match",
                self.provider_type,
            )
            return False

    async def get_stored_code_verifier(self, code: str) -> Optional[str]:
        """このプロバイダの名前空間に保存された code_verifier を返す。"""
        entry = await self._verifiers.get(self._verifier_key(code))
        if entry is None:
            logger.debug(
                "%s: no stored code_verifier for code %s", self.provider_type, _prefix(code, 10)
            )
            return None
        return entry.code_verifier or None

    async def has_token(self, access_token: str) -> bool:
        """トークンがこのプロバイダのものとしてローカルに存在するか。"""
        try:
            record = await self._tokens.get(access_token)
        except StoreUnavailableError:
            logger.warning(
                "%s: token lookup failed during routing; treating as no match",
                self.provider_type,
            )
            return False
        return record is not None and record.provider_type == self.provider_type

    async def _load_session(self, state: str) -> PreAuthSession:
        session = await self._sessions.get(state)
        if session is None or session.is_expired() or session.provider_type != self.provider_type:
            logger.warning(
                "%s: state validation failed for %s", self.provider_type, _prefix(state)
            )
            raise OAuthStateError(
                "Invalid or expired state parameter. Please start the authentication flow again.",
                provider=self.provider_type,
            )
        return session

    # -- レコード構築 ----------------------------------------------------

    def _build_record(
        self, payload: Mapping[str, Any], user: UserInfo, fallback_scopes: Sequence[str]
    ) -> TokenRecord:
        try:
            expires_in = int(payload.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        if expires_in <= 0:
            expires_in = self._settings.default_token_lifetime_seconds
        scopes = split_scopes(payload.get("scope")) or list(fallback_scopes)
        return TokenRecord(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            id_token=payload.get("id_token") or None,
            expires_at=_now_utc() + timedelta(seconds=expires_in),
            user_info=user,
            provider_type=self.provider_type,
            scopes=scopes,
        )

    def _auth_info(
        self, user: UserInfo, *, scopes: Sequence[str], expires_at: Optional[datetime]
    ) -> AuthInfo:
        return AuthInfo(
            provider=self.provider_type,
            user_id=user.sub,
            email=user.email,
            name=user.name,
            scopes=list(scopes),
            expires_at=expires_at,
            client_id=self._config.client_id,
        )

    def _token_response(self, record: TokenRecord) -> TokenResponse:
        return TokenResponse(
            access_token=record.access_token,
            expires_in=record.expires_in(),
            refresh_token=record.refresh_token,
            id_token=record.id_token,
            scope=" ".join(record.scopes) or None,
            user=record.user_info,
        )

    async def _issue_tokens(
        self, payload: Mapping[str, Any], fallback_scopes: Sequence[str], *, flow: str
    ) -> TokenResponse:
        """ユーザー確認・許可リスト判定の後にトークンを保存する。"""
        user = await self.resolve_user(payload)
        denial = self._allowlist.check(user.email)
        if denial:
            logger.warning(
                "%s: user %s denied by allowlist", self.provider_type, user.email or "<none>"
            )
            self.metrics.increment(
                "oauth_flow_failure_total",
                {"provider": self.provider_type, "result": flow, "error": "access_denied"},
            )
            raise AccessDeniedError(denial, provider=self.provider_type)

        record = self._build_record(payload, user, fallback_scopes)
        await self._tokens.set(record.access_token, record)
        self.metrics.increment(
            "oauth_flow_success_total", {"provider": self.provider_type, "result": flow}
        )
        logger.info("%s: issued token for %s (%s)", self.provider_type, user.sub, flow)
        return self._token_response(record)

    def _record_failure(self, flow: str, exc: Exception) -> None:
        self.metrics.increment(
            "oauth_flow_failure_total",
            {"provider": self.provider_type, "result": flow, "error": exc.__class__.__name__},
        )

    # -- フロー ----------------------------------------------------------

    async def handle_authorization_request(
        self, params: Mapping[str, str]
    ) -> AuthorizationRedirect:
        """事前認可セッションを保存し、IdP の認可 URL を返す。

        クライアントが code_challenge を渡した場合はそれを中継し、検証子は
        クライアント側が保持する。渡さない場合はサーバーが PKCE を生成する。
        """
        client_redirect_uri = params.get("redirect_uri") or None
        client_challenge = params.get("code_challenge") or None
        challenge_method = params.get("code_challenge_method") or None
        client_state = params.get("state") or None

        if client_challenge and challenge_method and challenge_method != "S256":
            raise InvalidRequestError(
                "code_challenge_method must be S256", provider=self.provider_type
            )

        if client_challenge:
            code_verifier = ""
            code_challenge = client_challenge
        else:
            code_verifier = generate_code_verifier()
            code_challenge = compute_code_challenge(code_verifier)

        state = generate_state()
        ttl = self._settings.pre_auth_session_ttl_seconds
        session = PreAuthSession(
            state=state,
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            redirect_uri=self._config.redirect_uri,
            client_redirect_uri=client_redirect_uri,
            client_state=client_state,
            scopes=self.scopes,
            provider_type=self.provider_type,
            expires_at=_now_utc() + timedelta(seconds=ttl),
        )
        await self._sessions.set(state, session, ttl)

        query = {
            "client_id": self._config.client_id,
            "response_type": "code",
            "redirect_uri": self._config.redirect_uri,
            "scope": " ".join(session.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            **self.authorization_params(),
        }
        logger.info(
            "%s: authorization started state=%s pass_through=%s",
            self.provider_type,
            _prefix(state),
            bool(client_challenge),
        )
        return AuthorizationRedirect(url=f"{self.authorization_url}?{urlencode(query)}", state=state)

    async def handle_authorization_callback(self, params: Mapping[str, str]) -> CallbackResult:
        """IdP からのコールバックを処理する。"""
        error = params.get("error")
        if error:
            logger.warning("%s: identity provider returned error=%s", self.provider_type, error)
            denied = AuthorizationDeniedError(
                f"Authorization failed: {error}", provider=self.provider_type
            )
            self._record_failure("callback", denied)
            raise denied

        code = params.get("code")
        state = params.get("state")
        if not code or not state:
            raise InvalidRequestError(
                "Missing authorization code or state", provider=self.provider_type
            )

        session = await self._load_session(state)

        if session.client_redirect_uri:
            return CallbackResult(redirect_url=await self._redirect_to_client(session, code, state))

        # state は一度だけ消費する
        await self._sessions.delete(state)
        try:
            payload = await self._post_token_endpoint(
                self._code_grant(code, session.code_verifier), action="token exchange"
            )
            tokens = await self._issue_tokens(payload, session.scopes, flow="callback")
        except OAuthError as exc:
            self._record_failure("callback", exc)
            raise
        await self._verifiers.delete(self._verifier_key(code))
        return CallbackResult(tokens=tokens)

    async def _redirect_to_client(self, session: PreAuthSession, code: str, state: str) -> str:
        """中継フロー: コードをそのままクライアントへ返す。セッションは交換まで保持する。

        検証子をクライアントが保持する場合も空の code_verifier でエントリを書き、
        /auth/token がコードの発行元プロバイダをローカルで特定できるようにする。
        """
        await self._verifiers.set(
            self._verifier_key(code),
            VerifierEntry(
                code_verifier=session.code_verifier,
                code_challenge=session.code_challenge,
                state=state,
            ),
            self._settings.pkce_ttl_seconds,
        )
        parsed = urlparse(session.client_redirect_uri)
        query = parse_qsl(parsed.query, keep_blank_values=True)
        query = [(k, v) for k, v in query if k not in ("code", "state")]
        query.extend([("code", code), ("state", session.client_state or state)])
        logger.info(
            "%s: redirecting code %s back to client", self.provider_type, _prefix(code, 10)
        )
        return urlunparse(parsed._replace(query=urlencode(query)))

    def _code_grant(self, code: str, code_verifier: str) -> Dict[str, str]:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return data

    async def _resolve_code_verifier(
        self, code: str, client_verifier: Optional[str]
    ) -> Optional[str]:
        stored = await self.get_stored_code_verifier(code)
        if stored:
            if client_verifier:
                logger.warning(
                    "%s: ignoring client code_verifier for code %s; server-stored verifier wins",
                    self.provider_type,
                    _prefix(code, 10),
                )
            return stored
        return client_verifier or None

    async def handle_token_exchange(self, form: Mapping[str, str]) -> Optional[TokenResponse]:
        """認可コードをトークンへ交換する。自分のコードでなければ None。"""
        if form.get("grant_type") != "authorization_code":
            raise UnsupportedGrantTypeError(
                "Only authorization_code grant type is supported", provider=self.provider_type
            )
        code = form.get("code")
        if not code:
            raise InvalidRequestError(
                "Missing required parameter: code", provider=self.provider_type
            )

        code_verifier = await self._resolve_code_verifier(code, form.get("code_verifier"))
        if code_verifier is None:
            logger.info(
                "%s: no code_verifier for code %s; not handled here",
                self.provider_type,
                _prefix(code, 10),
            )
            return None

        try:
            payload = await self._post_token_endpoint(
                self._code_grant(code, code_verifier), action="token exchange"
            )
            tokens = await self._issue_tokens(payload, self.scopes, flow="token_exchange")
        except OAuthError as exc:
            self._record_failure("token_exchange", exc)
            raise

        entry = await self._verifiers.get_and_delete(self._verifier_key(code))
        if entry is not None:
            await self._sessions.delete(entry.state)
        return tokens

    async def handle_token_refresh(self, form: Mapping[str, str]) -> TokenResponse:
        """リフレッシュトークンで新しいトークンを発行し、旧キーを置き換える。"""
        refresh_token = form.get("refresh_token")
        if not refresh_token:
            raise InvalidRequestError(
                "Missing required parameter: refresh_token", provider=self.provider_type
            )
        found = await self._tokens.find_by_refresh_token(refresh_token)
        if found is None or found[1].provider_type != self.provider_type:
            raise InvalidGrantError("Invalid refresh token", provider=self.provider_type)

        old_access_token, record = found
        try:
            new_record = await self.refresh_record(record, refresh_token)
        except OAuthError as exc:
            self._record_failure("refresh", exc)
            raise
        if new_record.access_token != old_access_token:
            await self._tokens.delete(old_access_token)
        await self._tokens.set(new_record.access_token, new_record)
        self.metrics.increment(
            "oauth_flow_success_total", {"provider": self.provider_type, "result": "refresh"}
        )
        return self._token_response(new_record)

    async def handle_logout(self, access_token: Optional[str]) -> LogoutResponse:
        """IdP 側の失効を試みた後、ローカルのトークンを削除する。"""
        if access_token:
            record = await self._tokens.get(access_token)
            if record is not None and record.provider_type == self.provider_type:
                try:
                    await self.revoke_at_provider(access_token, record)
                except OAuthError as exc:
                    logger.warning(
                        "Failed to revoke %s token at the provider: %s", self.provider_name, exc
                    )
                await self._tokens.delete(access_token)
                logger.info("%s: user %s logged out", self.provider_type, record.user_info.sub)
        return LogoutResponse(success=True)

    async def verify_access_token(self, access_token: str) -> AuthInfo:
        """ローカル記録を優先し、なければ IdP に問い合わせて検証する。"""
        try:
            record = await self._tokens.get(access_token)
            if record is not None:
                if record.provider_type != self.provider_type:
                    raise InvalidTokenError("Token belongs to another issuer")
                if record.is_expired(buffer_seconds=self._settings.token_expiry_buffer_seconds):
                    await self._tokens.delete(access_token)
                    raise InvalidTokenError("Token expired")
                return self._auth_info(
                    record.user_info, scopes=record.scopes, expires_at=record.expires_at
                )
            return await self.verify_remote_token(access_token)
        except OAuthError as exc:
            logger.warning("%s token verification failed: %s", self.provider_name, exc)
            raise InvalidTokenError(
                "Invalid or expired token", provider=self.provider_type
            ) from exc

    async def cleanup(self) -> None:
        """期限切れの検証子・セッション・トークンを削除する。"""
        verifiers = await self._verifiers.cleanup()
        sessions = await self._sessions.cleanup()
        tokens = await self._tokens.cleanup()
        if verifiers or sessions or tokens:
            logger.debug(
                "%s cleanup removed %d verifiers, %d sessions and %d tokens",
                self.provider_type,
                verifiers,
                sessions,
                tokens,
            )

    async def get_token_count(self) -> int:
        return await self._tokens.count()

    async def dispose(self) -> None:
        """何度呼んでも安全。共有ストアは閉じない（レジストリが所有する）。"""
        if self._disposed:
            return
        self._disposed = True
        logger.debug("%s provider disposed", self.provider_type)
