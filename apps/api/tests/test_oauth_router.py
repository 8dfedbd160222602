from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.requests import Request

from conftest import cookie_header, form_of, session_from
from config import settings
from main import app
from routers import rate_limit
from services.connection_policy import FREEMIUM_CAP_MESSAGE
from services.connectors import AccountIdentity, build_provider_registry
from services.connectors.amazon import AMAZON_TOKEN_URL
from services.connectors.meta import GRAPH_API_BASE, GRAPH_TOKEN_URL
from services.connectors.twitter import TWITTER_ME_URL, TWITTER_TOKEN_URL
from services.errors import RateLimited
from services.oauth_flow import build_redirect_uri, resolve_base_url
from services.oauth_state import generate_code_challenge
from services.session_store import RedisSessionStore
from services.session_token import create_session_token, new_session_id
from services.sessions import AccountTokens, PlatformConnection, Session, SubscriptionPlan, now_ms


OAUTH = "/api/auth/oauth"


@pytest_asyncio.fixture
async def oauth_client(provider_stub, provider_settings):
    previous = app.state.providers
    app.state.providers = build_provider_registry(transport=provider_stub.transport, config=provider_settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.state.providers = previous


def _query(url: str):
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


def _connection(user_id, username="jane", access_token="token", refresh_token=""):
    return PlatformConnection(
        account=AccountIdentity(user_id=user_id, username=username),
        account_tokens=AccountTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now_ms() + 3_600_000,
        ),
        connected_at=now_ms(),
    )


def _session(plan=SubscriptionPlan.FREEMIUM, state=None, code_verifier=None, **connections):
    return Session(
        user_id="user-1",
        plan=plan,
        state=state,
        code_verifier=code_verifier,
        connected_platforms=connections,
    )


def test_resolve_base_url_prefers_forwarded_headers():
    assert resolve_base_url({"x-forwarded-proto": "https", "x-forwarded-host": "app.example.com", "host": "internal"}) == "https://app.example.com"
    assert resolve_base_url({"host": "api.example.com"}) == "https://api.example.com"
    assert resolve_base_url({}, fallback="http://localhost:3000") == "http://localhost:3000"
    assert build_redirect_uri("https://app.example.com/", "twitter") == "https://app.example.com/api/auth/oauth/callback?platform=twitter"


@pytest.mark.asyncio
async def test_freemium_user_connects_facebook_end_to_end(oauth_client, provider_stub):
    response = await oauth_client.get(f"{OAUTH}/initiate", params={"platform": "facebook"}, headers=await cookie_header(_session()))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "OAuth flow initiated successfully"
    assert body["data"]["platform"] == "facebook"
    assert body["data"]["requiresPremium"] is False
    assert "timestamp" in body
    auth_params = _query(body["data"]["authUrl"])
    assert auth_params["redirect_uri"] == "https://test/api/auth/oauth/callback?platform=facebook"

    pending = await session_from(response)
    assert pending.state == auth_params["state"]
    assert pending.code_verifier is None

    provider_stub.add("POST", GRAPH_TOKEN_URL, httpx.Response(200, json={"access_token": "fb-token", "expires_in": 3600}))
    provider_stub.add(
        "GET",
        f"{GRAPH_API_BASE}/me",
        httpx.Response(200, json={"id": "fb-1", "name": "Jane Doe", "email": "jane@example.com"}),
    )

    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "facebook", "code": "auth-code", "state": pending.state},
        headers=await cookie_header(pending),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "facebook authentication successful"
    assert body["data"] == {
        "platform": "facebook",
        "connected": True,
        "userData": {"id": "fb-1", "username": "Jane Doe", "email": "jane@example.com"},
        "message": "Successfully connected to facebook",
    }
    token_request = provider_stub.calls_to(GRAPH_TOKEN_URL)[0]
    assert form_of(token_request)["redirect_uri"] == auth_params["redirect_uri"]

    final = await session_from(response)
    assert final.state is None
    connection = final.connection("facebook")
    assert connection.account.user_id == "fb-1"
    assert connection.account_tokens.access_token == "fb-token"
    assert connection.account_codes.state == pending.state
    assert connection.has_valid_token()


@pytest.mark.asyncio
async def test_freemium_cap_blocks_second_platform(oauth_client):
    session = _session(facebook=_connection("fb-1"))

    response = await oauth_client.get(f"{OAUTH}/initiate", params={"platform": "twitter"}, headers=await cookie_header(session))

    assert response.status_code == 403
    assert response.json()["success"] is False
    assert response.json()["error"] == FREEMIUM_CAP_MESSAGE
    assert "session" not in response.cookies


@pytest.mark.asyncio
async def test_freemium_user_cannot_initiate_amazon(oauth_client):
    response = await oauth_client.get(f"{OAUTH}/initiate", params={"platform": "amazon"}, headers=await cookie_header(_session()))

    assert response.status_code == 403
    assert response.json()["error"] == "amazon connectivity requires a premium subscription"


@pytest.mark.asyncio
async def test_premium_twitter_flow_uses_pkce(oauth_client, provider_stub):
    session = _session(plan=SubscriptionPlan.PREMIUM_MONTHLY, facebook=_connection("fb-1"))

    response = await oauth_client.get(f"{OAUTH}/initiate", params={"platform": "x"}, headers=await cookie_header(session))

    assert response.status_code == 200
    assert response.json()["data"]["platform"] == "twitter"
    auth_params = _query(response.json()["data"]["authUrl"])
    pending = await session_from(response)
    assert len(pending.code_verifier) >= 43
    assert auth_params["code_challenge"] == generate_code_challenge(pending.code_verifier)
    assert auth_params["code_challenge_method"] == "S256"

    provider_stub.add(
        "POST",
        TWITTER_TOKEN_URL,
        httpx.Response(200, json={"access_token": "tw-token", "refresh_token": "tw-refresh", "expires_in": 7200}),
    )
    provider_stub.add("GET", TWITTER_ME_URL, httpx.Response(200, json={"data": {"id": "tw-1", "username": "jane"}}))

    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "twitter", "code": "tw-code", "state": pending.state},
        headers=await cookie_header(pending),
    )

    assert response.status_code == 200
    assert form_of(provider_stub.calls_to(TWITTER_TOKEN_URL)[0])["code_verifier"] == pending.code_verifier
    final = await session_from(response)
    assert set(final.connected_platforms) == {"facebook", "twitter"}
    assert final.connection("twitter").account_tokens.refresh_token == "tw-refresh"
    assert final.code_verifier is None


@pytest.mark.asyncio
async def test_callback_state_mismatch_is_rejected_and_clears_pending(oauth_client, provider_stub):
    session = _session(state="expected-state")

    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "facebook", "code": "auth-code", "state": "forged-state"},
        headers=await cookie_header(session),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid OAuth state. Possible CSRF attack."
    assert (await session_from(response)).state is None
    assert provider_stub.requests == []


@pytest.mark.asyncio
async def test_callback_with_provider_error_leaves_session_untouched(oauth_client):
    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "facebook", "error": "access_denied"},
        headers=await cookie_header(_session(state="pending")),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "OAuth authentication failed: access_denied"
    assert "session" not in response.cookies


@pytest.mark.asyncio
async def test_callback_requires_code_and_state(oauth_client):
    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "facebook", "code": "auth-code"},
        headers=await cookie_header(_session(state="pending")),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Missing required OAuth parameters"


@pytest.mark.asyncio
async def test_failed_exchange_keeps_existing_connection(oauth_client, provider_stub):
    existing = _connection("tw-1")
    session = _session(plan=SubscriptionPlan.PREMIUM_YEARLY, state="pending", twitter=existing)
    provider_stub.add("POST", GRAPH_TOKEN_URL, httpx.Response(400, json={"error": {"message": "Code expired"}}))

    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "facebook", "code": "stale", "state": "pending"},
        headers=await cookie_header(session),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Facebook authentication failed"
    assert "Code expired" not in response.text
    final = await session_from(response)
    assert final.state is None
    assert final.connection("facebook") is None
    assert final.connection("twitter").account == existing.account


@pytest.mark.asyncio
async def test_twitter_callback_without_verifier_fails(oauth_client, provider_stub):
    session = _session(plan=SubscriptionPlan.PREMIUM_MONTHLY, state="pending")

    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "twitter", "code": "tw-code", "state": "pending"},
        headers=await cookie_header(session),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Missing code verifier for Twitter OAuth"
    assert (await session_from(response)).state is None
    assert provider_stub.requests == []


@pytest.mark.asyncio
async def test_amazon_callback_for_freemium_plan_fails(oauth_client, provider_stub):
    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "amazon", "code": "amzn-code", "state": "pending"},
        headers=await cookie_header(_session(state="pending")),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Amazon connectivity requires a premium subscription"
    assert provider_stub.calls_to(AMAZON_TOKEN_URL) == []


@pytest.mark.asyncio
async def test_requests_without_session_are_unauthorized(oauth_client):
    response = await oauth_client.get(f"{OAUTH}/initiate", params={"platform": "facebook"})
    assert response.status_code == 401
    assert response.json()["error"] == "Authentication required"

    response = await oauth_client.get(f"{OAUTH}/status", headers={"cookie": "session=not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_initiate_validates_platform(oauth_client):
    response = await oauth_client.get(f"{OAUTH}/initiate", headers=await cookie_header(_session()))
    assert response.status_code == 400
    assert response.json()["error"] == "Platform parameter is required"

    response = await oauth_client.get(f"{OAUTH}/initiate", params={"platform": "myspace"}, headers=await cookie_header(_session()))
    assert response.status_code == 400
    assert response.json()["error"] == "Unsupported platform: myspace"


@pytest.mark.asyncio
async def test_status_reports_connections_and_limits(oauth_client):
    session = _session(facebook=_connection("fb-1", username="Jane Doe"))

    response = await oauth_client.get(f"{OAUTH}/status", headers=await cookie_header(session))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["userPlan"] == "FREEMIUM"
    assert data["connectedCount"] == 1
    assert data["isMultiPlatformAllowed"] is False
    assert data["premiumLockedPlatforms"] == ["amazon"]
    assert set(data["platformRequirements"]) == {"facebook", "instagram", "twitter", "amazon"}
    assert data["limits"] == {"freemiumMaxConnections": 1, "premiumMaxConnections": "unlimited"}
    facebook = next(entry for entry in data["availablePlatforms"] if entry["platform"] == "facebook")
    assert facebook["isConnected"] is True
    assert facebook["username"] == "Jane Doe"
    assert "session" not in response.cookies


@pytest.mark.asyncio
async def test_disconnect_then_status_decrements_count(oauth_client):
    session = _session(plan=SubscriptionPlan.PREMIUM_MONTHLY, facebook=_connection("fb-1"), twitter=_connection("tw-1"))

    response = await oauth_client.post(f"{OAUTH}/disconnect", params={"platform": "facebook"}, headers=await cookie_header(session))

    assert response.status_code == 200
    assert response.json()["data"] == {
        "platform": "facebook",
        "disconnected": True,
        "message": "Successfully disconnected from facebook",
    }
    remaining = await session_from(response)
    assert set(remaining.connected_platforms) == {"twitter"}

    response = await oauth_client.get(f"{OAUTH}/status", headers=await cookie_header(remaining))
    assert response.json()["data"]["connectedCount"] == 1


@pytest.mark.asyncio
async def test_disconnect_rejects_unknown_or_missing_connection(oauth_client):
    response = await oauth_client.post(f"{OAUTH}/disconnect", params={"platform": "twitter"}, headers=await cookie_header(_session()))
    assert response.status_code == 400
    assert response.json()["error"] == "twitter is not connected"

    response = await oauth_client.post(f"{OAUTH}/disconnect", params={"platform": "myspace"}, headers=await cookie_header(_session()))
    assert response.json()["error"] == "Invalid platform"

    response = await oauth_client.post(f"{OAUTH}/disconnect", headers=await cookie_header(_session()))
    assert response.json()["error"] == "Platform parameter is required"


@pytest.mark.asyncio
async def test_refresh_twitter_tokens(oauth_client, provider_stub):
    session = _session(
        plan=SubscriptionPlan.PREMIUM_MONTHLY,
        twitter=_connection("tw-1", access_token="tw-old", refresh_token="tw-refresh"),
    )
    provider_stub.add("POST", TWITTER_TOKEN_URL, httpx.Response(200, json={"access_token": "tw-new", "expires_in": 7200}))

    response = await oauth_client.post(f"{OAUTH}/refresh", params={"platform": "twitter"}, headers=await cookie_header(session))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["platform"] == "twitter"
    assert data["refreshed"] is True
    assert data["expiresAt"] > now_ms()
    tokens = (await session_from(response)).connection("twitter").account_tokens
    assert (tokens.access_token, tokens.refresh_token) == ("tw-new", "tw-refresh")


@pytest.mark.asyncio
async def test_refresh_amazon_is_unsupported(oauth_client):
    session = _session(plan=SubscriptionPlan.PREMIUM_MONTHLY, amazon=_connection("amzn-1"))

    response = await oauth_client.post(f"{OAUTH}/refresh", params={"platform": "amazon"}, headers=await cookie_header(session))

    assert response.status_code == 400
    assert response.json()["error"] == "Token refresh is not supported for amazon"


@pytest.mark.asyncio
async def test_responses_carry_security_headers(oauth_client):
    response = await oauth_client.get("/health/live")

    assert response.json() == {"alive": True}
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["x-frame-options"] == "DENY"
    assert response.headers["referrer-policy"] == "strict-origin-when-cross-origin"
    assert response.headers["content-security-policy"] == "default-src 'self'"


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_local_counters(monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", "redis://127.0.0.1:1/0")
    app.state.disable_rate_limits = False
    dependency = rate_limit.rate_limit("test_prefix", limit=2, window_seconds=60)
    request = Request({"type": "http", "headers": [], "client": ("10.0.0.1", 1234), "app": app})

    await dependency(request)
    await dependency(request)
    with pytest.raises(RateLimited):
        await dependency(request)


@pytest.mark.asyncio
async def test_rate_limit_ignores_spoofed_forwarded_for(monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", "redis://127.0.0.1:1/0")
    app.state.disable_rate_limits = False
    dependency = rate_limit.rate_limit("spoofed", limit=2, window_seconds=60)

    def _request(forwarded_for):
        headers = [(b"x-forwarded-for", forwarded_for.encode())]
        return Request({"type": "http", "headers": headers, "client": ("10.0.0.1", 1234), "app": app})

    await dependency(_request("1.2.3.1"))
    await dependency(_request("1.2.3.2"))
    with pytest.raises(RateLimited):
        await dependency(_request("1.2.3.3"))


@pytest.mark.asyncio
async def test_session_cookie_stays_small_with_every_platform_connected(oauth_client, provider_stub):
    big = "t" * 1500
    session = _session(
        plan=SubscriptionPlan.PREMIUM_YEARLY,
        state="s" * 43,
        code_verifier="v" * 43,
        facebook=_connection("fb-1", access_token=big, refresh_token=big),
        instagram=_connection("ig-1", access_token=big, refresh_token=big),
        twitter=_connection("tw-1", access_token=big, refresh_token=big),
        amazon=_connection("amzn-1", access_token=big, refresh_token=big),
    )
    provider_stub.add("POST", TWITTER_TOKEN_URL, httpx.Response(200, json={"access_token": big, "expires_in": 7200}))

    response = await oauth_client.post(f"{OAUTH}/refresh", params={"platform": "twitter"}, headers=await cookie_header(session))

    assert response.status_code == 200
    set_cookie = response.headers["set-cookie"]
    assert len(set_cookie) < 4096
    assert big not in set_cookie
    stored = await session_from(response)
    assert set(stored.connected_platforms) == {"facebook", "instagram", "twitter", "amazon"}
    assert stored.connection("amazon").account_tokens.access_token == big


@pytest.mark.asyncio
async def test_cookie_for_unknown_session_is_unauthorized(oauth_client):
    cookie = f"session={create_session_token(new_session_id())['token']}"

    response = await oauth_client.get(f"{OAUTH}/status", headers={"cookie": cookie})

    assert response.status_code == 401
    assert response.json()["error"] == "Authentication required"


@pytest.mark.asyncio
async def test_unavailable_session_store_returns_503(oauth_client, monkeypatch):
    store = RedisSessionStore("redis://127.0.0.1:1/0", "test:session")
    monkeypatch.setattr(app.state, "session_store", store)
    cookie = f"session={create_session_token(new_session_id())['token']}"

    try:
        response = await oauth_client.get(f"{OAUTH}/status", headers={"cookie": cookie})
    finally:
        await store.close()

    assert response.status_code == 503
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Session storage is temporarily unavailable. Please try again."


@pytest.mark.asyncio
async def test_identity_mapping_failure_still_clears_pending(oauth_client, provider_stub, monkeypatch):
    def _unmappable(user_data):
        raise TypeError("Unsupported provider user data")

    monkeypatch.setattr("services.oauth_flow.to_account_identity", _unmappable)
    provider_stub.add("POST", GRAPH_TOKEN_URL, httpx.Response(200, json={"access_token": "fb-token", "expires_in": 3600}))
    provider_stub.add("GET", f"{GRAPH_API_BASE}/me", httpx.Response(200, json={"id": "fb-1", "name": "Jane Doe"}))

    response = await oauth_client.get(
        f"{OAUTH}/callback",
        params={"platform": "facebook", "code": "auth-code", "state": "pending"},
        headers=await cookie_header(_session(state="pending")),
    )

    assert response.status_code == 500
    assert response.json()["error"] == "OAuth callback processing failed"
    final = await session_from(response)
    assert final.state is None
    assert final.connection("facebook") is None


@pytest.mark.asyncio
async def test_disconnect_treats_connection_without_account_id_as_not_connected(oauth_client):
    session = _session(facebook=_connection(""))

    response = await oauth_client.post(f"{OAUTH}/disconnect", params={"platform": "facebook"}, headers=await cookie_header(session))

    assert response.status_code == 400
    assert response.json()["error"] == "facebook is not connected"
    assert "session" not in response.cookies
