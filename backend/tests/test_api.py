"""HTTP エンドポイント（OAuth / MCP / ヘルスチェック）のテスト。"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient

from mcp_auth.main import create_app
from mcp_auth.models.state import TokenRecord, UserInfo
from mcp_auth.services.allowlist import Allowlist
from mcp_auth.services.errors import StoreUnavailableError
from mcp_auth.services.instances import McpInstanceManager
from mcp_auth.services.providers import GitHubOAuthProvider, GoogleOAuthProvider
from mcp_auth.services.providers.google import GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL

CLIENT_REDIRECT = "http://localhost:6274/oauth/callback"
INITIALIZE = {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}


def _google_idp(idp) -> None:
    idp.json(
        "POST",
        GOOGLE_TOKEN_URL,
        {"access_token": "ya29.a", "refresh_token": "1//r", "expires_in": 3600},
    )
    idp.json("GET", GOOGLE_USERINFO_URL, {"id": "g-1", "email": "alice@example.com"})


async def _seed_token(stores, access_token: str = "gho_test") -> None:
    await stores.tokens.set(
        access_token,
        TokenRecord(
            access_token=access_token,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            user_info=UserInfo(sub="42", email="octo@example.com", provider="github"),
            provider_type="github",
            scopes=["read:user"],
        ),
    )


def _state_of(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


def _client(app) -> AsyncClient:
    return AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture
def registry(make_registry):
    return make_registry(GoogleOAuthProvider, GitHubOAuthProvider)


@pytest_asyncio.fixture
async def client(registry, app_settings):
    app = create_app(registry=registry, app_settings=app_settings)
    async with _client(app) as ac:
        yield ac


@pytest_asyncio.fixture
async def bearer(stores):
    await _seed_token(stores)
    return {"Authorization": "Bearer gho_test"}


# -- OAuth -----------------------------------------------------------------


@pytest.mark.asyncio
async def test_discovery_lists_providers_with_no_store(client) -> None:
    response = await client.get("/auth")

    assert response.status_code == 200
    assert "no-store" in response.headers["cache-control"]
    assert response.headers["pragma"] == "no-cache"
    body = response.json()
    assert body["providers"] == ["google", "github"]
    assert body["endpoints"]["github_callback"] == "/auth/github/callback"
    assert body["endpoints"]["token"] == "/auth/token"


@pytest.mark.asyncio
async def test_authorization_server_metadata(client) -> None:
    """RFC 8414 メタデータが共通エンドポイントと S256 を広告すること。"""
    response = await client.get("/.well-known/oauth-authorization-server")

    assert response.status_code == 200
    body = response.json()
    assert body["issuer"] == "http://testserver"
    assert body["authorization_endpoint"] == "http://testserver/auth/authorize"
    assert body["token_endpoint"] == "http://testserver/auth/token"
    assert body["revocation_endpoint"] == "http://testserver/auth/revoke"
    assert body["code_challenge_methods_supported"] == ["S256"]
    assert body["grant_types_supported"] == ["authorization_code", "refresh_token"]
    assert body["scopes_supported"] == ["openid", "email", "profile", "read:user", "user:email"]


@pytest.mark.asyncio
async def test_protected_resource_metadata(client) -> None:
    response = await client.get("/.well-known/oauth-protected-resource")

    assert response.status_code == 200
    body = response.json()
    assert body["resource"] == "http://testserver/mcp"
    assert body["authorization_servers"] == ["http://testserver"]
    assert body["bearer_methods_supported"] == ["header"]
    assert "read:user" in body["scopes_supported"]


@pytest.mark.asyncio
async def test_metadata_without_providers(make_registry, app_settings) -> None:
    app = create_app(registry=make_registry(), app_settings=app_settings)
    async with _client(app) as ac:
        response = await ac.get("/.well-known/oauth-authorization-server")

    assert response.status_code == 200
    assert response.json()["scopes_supported"] == []


@pytest.mark.asyncio
async def test_unknown_provider_is_404(client) -> None:
    response = await client.get("/auth/okta")

    assert response.status_code == 404
    assert response.json() == {"error": "invalid_request", "error_description": "Unknown OAuth provider"}


@pytest.mark.asyncio
async def test_authorize_redirects_to_picker_or_only_provider(client, make_registry, app_settings) -> None:
    response = await client.get("/auth/authorize", params={"state": "xyz"})
    assert response.status_code == 302
    assert response.headers["location"] == "/auth/login?state=xyz"

    single = create_app(registry=make_registry(GitHubOAuthProvider), app_settings=app_settings)
    async with _client(single) as ac:
        response = await ac.get("/auth/authorize", params={"state": "xyz"})
    assert response.headers["location"] == "/auth/github?state=xyz"


@pytest.mark.asyncio
async def test_login_page_forwards_query(client) -> None:
    response = await client.get("/auth/login", params={"redirect_uri": CLIENT_REDIRECT, "state": "abc"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert "Continue with Google" in response.text
    assert "Continue with GitHub" in response.text
    assert "/auth/github?redirect_uri=" in response.text
    assert "&amp;state=abc" in response.text


@pytest.mark.asyncio
async def test_browser_flow_returns_tokens(client, idp) -> None:
    _google_idp(idp)

    start = await client.get("/auth/google")
    assert start.status_code == 302
    assert start.headers["location"].startswith("https://accounts.google.com/")

    callback = await client.get(
        "/auth/google/callback", params={"code": "code-1", "state": _state_of(start.headers["location"])}
    )

    assert callback.status_code == 200
    assert "no-store" in callback.headers["cache-control"]
    body = callback.json()
    assert body["access_token"] == "ya29.a"
    assert body["token_type"] == "Bearer"
    assert body["user"]["email"] == "alice@example.com"


@pytest.mark.asyncio
async def test_client_flow_through_universal_token_endpoint(client, idp) -> None:
    _google_idp(idp)

    start = await client.get("/auth/google", params={"redirect_uri": CLIENT_REDIRECT, "state": "client-s"})
    callback = await client.get(
        "/auth/google/callback", params={"code": "code-9", "state": _state_of(start.headers["location"])}
    )
    assert callback.status_code == 302
    location = callback.headers["location"]
    assert location.startswith(CLIENT_REDIRECT)
    assert _state_of(location) == "client-s"

    token = await client.post(
        "/auth/token", data={"grant_type": "authorization_code", "code": "code-9"}
    )

    assert token.status_code == 200
    assert token.json()["access_token"] == "ya29.a"
    assert "refresh_token" in token.json()


@pytest.mark.asyncio
async def test_callback_errors(client) -> None:
    stale = await client.get("/auth/google/callback", params={"code": "c", "state": "unknown"})
    assert stale.status_code == 400
    assert stale.json()["error"] == "oauth_state_error"

    denied = await client.get("/auth/github/callback", params={"error": "access_denied"})
    assert denied.status_code == 400
    assert denied.json()["error"] == "access_denied"


@pytest.mark.asyncio
async def test_allowlist_denial_is_403(make_registry, app_settings, idp) -> None:
    _google_idp(idp)
    registry = make_registry(GoogleOAuthProvider, allowlist=Allowlist.from_emails(["bob@example.com"]))
    async with _client(create_app(registry=registry, app_settings=app_settings)) as ac:
        start = await ac.get("/auth/google")
        response = await ac.get(
            "/auth/google/callback", params={"code": "c", "state": _state_of(start.headers["location"])}
        )

    assert response.status_code == 403
    assert response.json()["error"] == "access_denied"
    assert await registry.stores.tokens.count() == 0


@pytest.mark.asyncio
async def test_token_endpoint_rejects_unsupported_grant(client) -> None:
    response = await client.post("/auth/token", data={"grant_type": "password"})

    assert response.status_code == 400
    assert response.json()["error"] == "unsupported_grant_type"
    assert "no-store" in response.headers["cache-control"]


@pytest.mark.asyncio
async def test_revoke(client, stores, bearer) -> None:
    missing = await client.post("/auth/revoke", data={})
    assert missing.status_code == 400
    assert missing.json()["error"] == "invalid_request"

    revoked = await client.post("/auth/revoke", data={"token": "gho_test"})
    assert revoked.status_code == 200
    assert revoked.json() == {}
    assert await stores.tokens.get("gho_test") is None

    unknown = await client.post("/auth/revoke", data={"token": "never-issued"})
    assert unknown.status_code == 200


@pytest.mark.asyncio
async def test_logout_with_bearer(client, stores, bearer, idp) -> None:
    idp.route("DELETE", "https://api.github.com/applications/github-client/grant", httpx.Response(204))

    response = await client.post("/auth/github/logout", headers=bearer)

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert await stores.tokens.get("gho_test") is None


# -- MCP -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_mcp_requires_bearer(client) -> None:
    missing = await client.post("/mcp", json=INITIALIZE)
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == -32000

    invalid = await client.post("/mcp", json=INITIALIZE, headers={"Authorization": "Bearer nope"})
    assert invalid.status_code == 401
    assert invalid.json()["error"]["message"] == "Unauthorized: invalid or expired token"


@pytest.mark.asyncio
async def test_mcp_session_lifecycle(client, bearer, stores) -> None:
    init = await client.post("/mcp", json=INITIALIZE, headers=bearer)

    assert init.status_code == 200
    session_id = init.headers["mcp-session-id"]
    assert init.json()["result"]["serverInfo"]["name"] == "mcp-auth-gateway"
    assert (await stores.metadata.get(session_id)).auth_info.user_id == "42"

    headers = {**bearer, "mcp-session-id": session_id}
    notified = await client.post(
        "/mcp", json={"jsonrpc": "2.0", "method": "notifications/initialized"}, headers=headers
    )
    assert notified.status_code == 202

    batch = await client.post(
        "/mcp",
        json=[
            {"jsonrpc": "2.0", "id": 2, "method": "ping"},
            {"jsonrpc": "2.0", "id": 3, "method": "tools/list"},
        ],
        headers=headers,
    )
    assert batch.status_code == 200
    assert [reply["id"] for reply in batch.json()] == [2, 3]
    assert batch.headers["mcp-session-id"] == session_id

    deleted = await client.delete("/mcp", headers=headers)
    assert deleted.status_code == 200
    assert await stores.metadata.get(session_id) is None

    gone = await client.post("/mcp", json={"jsonrpc": "2.0", "id": 4, "method": "ping"}, headers=headers)
    assert gone.status_code == 404
    assert gone.json()["error"]["code"] == -32001


@pytest.mark.asyncio
async def test_mcp_session_survives_manager_restart(registry, app_settings, bearer) -> None:
    """別インスタンス（別マネージャ）でも同じセッション ID で処理を継続できること。"""
    async with _client(create_app(registry=registry, app_settings=app_settings)) as first:
        init = await first.post("/mcp", json=INITIALIZE, headers=bearer)
    session_id = init.headers["mcp-session-id"]

    other_manager = McpInstanceManager(registry.stores.metadata, app_settings=app_settings)
    app = create_app(registry=registry, manager=other_manager, app_settings=app_settings)
    async with _client(app) as second:
        response = await second.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 5, "method": "tools/list"},
            headers={**bearer, "mcp-session-id": session_id},
        )

    assert response.status_code == 200
    assert response.json()["result"] == {"tools": []}
    assert other_manager.get_cached(session_id).auth_info.provider == "github"


@pytest.mark.asyncio
async def test_mcp_request_errors(client, bearer) -> None:
    no_session = await client.post(
        "/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "tools/list"}, headers=bearer
    )
    assert no_session.status_code == 400
    assert no_session.json()["error"]["message"] == "Bad Request: No valid session ID provided"

    malformed = await client.post(
        "/mcp", content=b"{not json", headers={**bearer, "content-type": "application/json"}
    )
    assert malformed.status_code == 400
    assert malformed.json()["error"]["code"] == -32700


@pytest.mark.asyncio
async def test_mcp_store_outage_is_503(client, bearer, stores) -> None:
    failing = AsyncMock(side_effect=StoreUnavailableError("down", operation="metadata.get"))

    with patch.object(stores.metadata, "get", failing):
        response = await client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 1, "method": "ping"},
            headers={**bearer, "mcp-session-id": "sess-unknown"},
        )

    assert response.status_code == 503
    assert response.json()["error"]["code"] == -32000
    assert response.headers["mcp-session-id"] == "sess-unknown"


@pytest.mark.asyncio
async def test_mcp_rejected_origin_discards_new_session(registry, app_settings, bearer, stores) -> None:
    app_settings.mcp_allowed_origins = "http://localhost:3000"
    async with _client(create_app(registry=registry, app_settings=app_settings)) as ac:
        response = await ac.post(
            "/mcp", json=INITIALIZE, headers={**bearer, "Origin": "http://evil.example"}
        )

    assert response.status_code == 403
    assert await stores.metadata.count() == 0


# -- ヘルスチェック --------------------------------------------------------


@pytest.mark.asyncio
async def test_health_endpoints(client, bearer) -> None:
    assert (await client.get("/health")).json() == {"status": "healthy"}
    await client.post("/mcp", json=INITIALIZE, headers=bearer)

    response = await client.get("/health/sessions")

    body = response.json()
    assert body["backend"] == "memory"
    assert body["providers"] == ["google", "github"]
    assert body["tokens"] == 1
    assert body["session_metadata"] == 1
    assert body["instances"]["cached_instances"] == 1
    assert body["metrics"]["counters"]["mcp_session_created_total"] == 1
