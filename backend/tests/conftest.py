from __future__ import annotations

import os
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.fernet import Fernet
from hypothesis import settings

# Settings() はインポート時に生成されるため、鍵ファイルを書かないよう先に鍵を与える
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))

from mcp_auth.config import Settings  # noqa: E402
from mcp_auth.services.allowlist import Allowlist  # noqa: E402
from mcp_auth.services.providers import (  # noqa: E402
    BaseOAuthProvider,
    GenericOAuthProvider,
    ProviderConfig,
)
from mcp_auth.services.registry import ProviderRegistry  # noqa: E402
from mcp_auth.services.stores import StoreBundle, build_memory_stores  # noqa: E402

_DEFAULT_MAX_EXAMPLES = int(os.getenv("HYPOTHESIS_MAX_EXAMPLES", "25"))

# CI/コンテナ環境ではイベントループ初期化で 200ms を超えることがあるため、
# デッドラインを無効化してフレークを防ぐ。
if "HYPOTHESIS_PROFILE" not in os.environ:
    try:
        settings.register_profile(
            "ci",
            settings(
                deadline=None,
                max_examples=_DEFAULT_MAX_EXAMPLES,
            ),
        )
    except ValueError:
        # プロファイルが既に存在する場合は無視して既定プロファイルを読み込む
        pass
    settings.load_profile("ci")


GENERIC_BASE = "https://idp.example.com"

Handler = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def _without_query(url: httpx.URL) -> str:
    return str(url).split("?", 1)[0]


class FakeIdentityProvider:
    """httpx.MockTransport で IdP を模倣し、受けたリクエストを記録する。"""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._routes: Dict[Tuple[str, str], Handler] = {}

    def route(self, method: str, url: str, handler: Handler) -> None:
        self._routes[(method.upper(), url)] = handler

    def json(self, method: str, url: str, payload: Any, status_code: int = 200) -> None:
        self.route(method, url, lambda request: httpx.Response(status_code, json=payload))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = _without_query(request.url)
        handler = self._routes.get((request.method, url))
        if handler is None:
            return httpx.Response(404, json={"error": "not_found"})
        if callable(handler):
            return handler(request)
        return handler

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, url: str, method: Optional[str] = None) -> List[httpx.Request]:
        return [
            r
            for r in self.requests
            if _without_query(r.url) == url and (method is None or r.method == method)
        ]

    def hosts(self) -> List[str]:
        return [r.url.host for r in self.requests]


def form_of(request: httpx.Request) -> Dict[str, str]:
    """フォームエンコードのリクエストボディを辞書にする。"""
    parsed = parse_qs(request.content.decode("utf-8"))
    return {key: values[0] for key, values in parsed.items()}


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    """テストごとに独立した設定を返す。"""
    return Settings(
        _env_file=None,
        base_url="http://testserver",
        state_db_path=str(tmp_path / "state.db"),
        store_backend="memory",
    )


@pytest.fixture
def stores() -> StoreBundle:
    return build_memory_stores()


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


def provider_config(provider_class: Type[BaseOAuthProvider], **options: str) -> ProviderConfig:
    provider_type = provider_class.provider_type
    if provider_class is GenericOAuthProvider and not options:
        options = {
            "authorization_url": f"{GENERIC_BASE}/authorize",
            "token_url": f"{GENERIC_BASE}/token",
            "user_info_url": f"{GENERIC_BASE}/userinfo",
            "revocation_url": f"{GENERIC_BASE}/revoke",
            "provider_name": "Example IdP",
        }
    return ProviderConfig(
        provider_type=provider_type,
        client_id=f"{provider_type}-client",
        client_secret=f"{provider_type}-secret",
        redirect_uri=f"http://testserver/auth/{provider_type}/callback",
        options=dict(options),
    )


@pytest.fixture
def make_provider(stores, idp, app_settings):
    """共有ストアと偽 IdP に接続したプロバイダを生成するファクトリ。"""

    def _make(
        provider_class: Type[BaseOAuthProvider],
        *,
        allowlist: Optional[Allowlist] = None,
        **options: str,
    ) -> BaseOAuthProvider:
        return provider_class(
            provider_config(provider_class, **options),
            stores,
            allowlist=allowlist or Allowlist(),
            app_settings=app_settings,
            transport=idp.transport,
        )

    return _make


@pytest.fixture
def make_registry(stores, idp, app_settings):
    """指定したプロバイダを登録順に持つレジストリを生成するファクトリ。"""

    def _make(
        *provider_classes: Type[BaseOAuthProvider], allowlist: Optional[Allowlist] = None
    ) -> ProviderRegistry:
        registry = ProviderRegistry(
            stores,
            app_settings=app_settings,
            allowlist=allowlist or Allowlist(),
            transport=idp.transport,
        )
        for provider_class in provider_classes:
            registry.add_provider(provider_config(provider_class))
        return registry

    return _make
