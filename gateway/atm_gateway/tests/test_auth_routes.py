"""
Authentication Flow Tests
=========================

End-to-end tests of /auth/login, /auth/callback, /auth/logout, /api/user and
the root status endpoint, with the identity provider faked.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from atm_gateway.auth.oidc import IdentityProviderClient
from atm_gateway.auth.session import SessionTokenIssuer
from atm_gateway.main import create_app


def start_login(client):
    """Run /auth/login and return the state and nonce sent to the provider."""
    response = client.get("/auth/login", follow_redirects=False)
    assert response.status_code == 302
    params = parse_qs(urlparse(response.headers["location"]).query)
    return params["state"][0], params["nonce"][0]


def complete_login(client, provider):
    """Full login round trip; returns the bearer token handed to the frontend."""
    state, nonce = start_login(client)
    provider.nonce = nonce

    response = client.get(
        "/auth/callback", params={"code": "auth-code", "state": state}, follow_redirects=False
    )
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["location"]).query)["token"][0]


class TestLogin:

    def test_login_redirects_to_provider(self, client, provider, app):
        response = client.get("/auth/login", follow_redirects=False)

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(provider.metadata["authorization_endpoint"] + "?")
        params = parse_qs(urlparse(location).query)
        assert params["redirect_uri"] == ["http://localhost:5003/auth/callback"]
        assert app.state.settings.SESSION_COOKIE_NAME in response.cookies

    def test_login_stores_state_in_cache(self, client, app):
        state, nonce = start_login(client)

        cache = app.state.state_cache
        assert len(cache) == 1
        assert state in cache._cache
        assert cache._cache[state].nonce == nonce

    def test_each_login_uses_fresh_state_and_nonce(self, client):
        first = start_login(client)
        second = start_login(client)

        assert first[0] != second[0]
        assert first[1] != second[1]
        assert first[0] != first[1]

    def test_login_while_client_not_ready_returns_503(self, settings, provider, upstream):
        for url in settings.discovery_urls:
            provider.discovery[url] = "unreachable"
        oidc_client = IdentityProviderClient.from_settings(
            settings, http_client=httpx.AsyncClient(transport=provider.transport)
        )
        app = create_app(
            settings,
            oidc_client=oidc_client,
            upstream_client=httpx.AsyncClient(transport=upstream.transport),
        )

        with TestClient(app) as client:
            response = client.get("/auth/login", follow_redirects=False)
            health = client.get("/health")

        assert response.status_code == 503
        assert response.json() == {"error": "OIDC client not initialized"}
        assert health.json()["oidc_ready"] is False


class TestCallback:

    def test_full_login_flow(self, client, provider, app):
        state, nonce = start_login(client)
        provider.nonce = nonce

        response = client.get(
            "/auth/callback", params={"code": "auth-code", "state": state}, follow_redirects=False
        )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("http://localhost:3000/callback?token=")
        token = parse_qs(urlparse(location).query)["token"][0]

        user = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})
        assert user.status_code == 200
        assert user.json() == {
            "subject": "user-123",
            "email": "alice@example.com",
            "username": "alice",
        }
        assert len(app.state.state_cache) == 0

    def test_session_alone_authenticates_after_login(self, client, provider):
        complete_login(client, provider)

        response = client.get("/api/user")

        assert response.status_code == 200
        assert response.json()["email"] == "alice@example.com"

    def test_state_recovered_from_cache_without_session_cookie(self, client, provider, caplog):
        state, nonce = start_login(client)
        provider.nonce = nonce
        client.cookies.clear()

        with caplog.at_level(logging.INFO, logger="atm_gateway.auth.routes"):
            response = client.get(
                "/auth/callback", params={"code": "auth-code", "state": state}, follow_redirects=False
            )

        assert response.status_code == 302
        assert "token=" in response.headers["location"]
        assert not any(getattr(r, "degraded", False) for r in caplog.records if r.levelno == logging.WARNING)

    def test_nonce_mismatch_issues_no_credential(self, client, provider):
        state, _ = start_login(client)
        provider.nonce = "some-other-nonce"

        response = client.get(
            "/auth/callback", params={"code": "auth-code", "state": state}, follow_redirects=False
        )

        assert response.status_code == 500
        assert response.text == "Authentication failed: nonce mismatch"
        assert "location" not in response.headers
        assert client.get("/api/user").status_code == 401

    def test_state_mismatch_rejected(self, client, provider):
        _, nonce = start_login(client)
        provider.nonce = nonce

        response = client.get(
            "/auth/callback", params={"code": "auth-code", "state": "forged-state"}, follow_redirects=False
        )

        assert response.status_code == 500
        assert response.text == "Authentication failed: state mismatch"

    def test_unknown_state_completes_when_provider_accepts(self, client, provider, caplog):
        provider.nonce = "state-never-issued"

        with caplog.at_level(logging.WARNING, logger="atm_gateway.auth.routes"):
            response = client.get(
                "/auth/callback",
                params={"code": "auth-code", "state": "state-never-issued"},
                follow_redirects=False,
            )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("http://localhost:3000/callback?token=")
        token = parse_qs(urlparse(location).query)["token"][0]

        user = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})
        assert user.status_code == 200
        assert user.json()["email"] == "alice@example.com"

        degraded = [
            r for r in caplog.records
            if r.levelno == logging.WARNING and getattr(r, "degraded", False)
        ]
        assert len(degraded) == 1

    def test_unknown_state_takes_degraded_path(self, client, provider, caplog):
        provider.token_error = (400, {"error": "invalid_grant", "error_description": "Invalid authorization code"})

        with caplog.at_level(logging.WARNING, logger="atm_gateway.auth.routes"):
            response = client.get(
                "/auth/callback",
                params={"code": "stale-code", "state": "never-issued"},
                follow_redirects=False,
            )

        assert response.status_code == 500
        assert response.text.startswith("Authentication failed")
        assert "Invalid authorization code" in response.text
        assert any(getattr(r, "degraded", False) for r in caplog.records)

    def test_provider_error_parameter(self, client):
        response = client.get(
            "/auth/callback",
            params={"error": "access_denied", "error_description": "User cancelled"},
            follow_redirects=False,
        )

        assert response.status_code == 500
        assert response.text == "Authentication failed: User cancelled"

    def test_missing_code(self, client):
        response = client.get("/auth/callback", params={"state": "s"}, follow_redirects=False)

        assert response.status_code == 500
        assert response.text == "Authentication failed: missing authorization code"

    def test_userinfo_rejection(self, client, provider):
        state, nonce = start_login(client)
        provider.nonce = nonce
        provider.userinfo_status = 401

        response = client.get(
            "/auth/callback", params={"code": "auth-code", "state": state}, follow_redirects=False
        )

        assert response.status_code == 500
        assert response.text.startswith("Authentication failed")


class TestUserEndpoint:

    def test_anonymous_returns_401(self, client):
        response = client.get("/api/user")

        assert response.status_code == 401
        assert response.json() == {"error": "Not authenticated"}

    def test_bearer_token(self, client, auth_headers):
        response = client.get("/api/user", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["subject"] == "user-123"

    def test_expired_bearer_without_session_returns_401(self, client, settings, identity):
        yesterday = datetime.now(timezone.utc) - timedelta(days=2)
        stale_issuer = SessionTokenIssuer(
            secret=settings.SESSION_SECRET,
            expires_in=timedelta(hours=24),
            clock=lambda: yesterday,
        )
        token = stale_issuer.mint(identity)

        response = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json() == {"error": "Not authenticated"}

    def test_invalid_bearer_falls_back_to_session(self, client, provider):
        complete_login(client, provider)

        response = client.get("/api/user", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 200
        assert response.json()["username"] == "alice"


class TestLogout:

    def test_logout_redirects_to_provider(self, client, provider):
        complete_login(client, provider)

        response = client.get("/auth/logout", follow_redirects=False)

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(f"https://{provider.domain}/logout?")
        params = parse_qs(urlparse(location).query)
        assert params["client_id"] == [provider.client_id]
        assert params["logout_uri"] == ["http://localhost:3000"]

    def test_logout_destroys_session(self, client, provider, app):
        complete_login(client, provider)

        client.get("/auth/logout", follow_redirects=False)

        assert len(app.state.session_store) == 0
        assert client.get("/api/user").status_code == 401

    def test_bearer_token_survives_logout(self, client, provider):
        token = complete_login(client, provider)

        client.get("/auth/logout", follow_redirects=False)

        response = client.get("/api/user", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200


class TestRootStatus:

    def test_anonymous(self, client):
        assert client.get("/").json() == {"isAuthenticated": False, "userInfo": None}

    def test_after_login(self, client, provider):
        complete_login(client, provider)

        body = client.get("/").json()

        assert body["isAuthenticated"] is True
        assert body["userInfo"]["email"] == "alice@example.com"

    def test_bearer_only_has_no_session_user_info(self, client, auth_headers):
        body = client.get("/", headers=auth_headers).json()

        assert body == {"isAuthenticated": True, "userInfo": None}


class TestConcurrentRequests:
    """Requests overlapping a logout run on one event loop through ASGITransport."""

    @pytest.mark.asyncio
    async def test_logout_during_slow_request_stays_logged_out(self, app, provider, upstream):
        await app.state.oidc_client.initialize()
        started = asyncio.Event()
        released = asyncio.Event()

        async def slow_chat(request):
            started.set()
            await released.wait()
            return httpx.Response(
                200, json={"choices": [{"message": {"role": "assistant", "content": "ok"}}]}
            )

        upstream.handler = slow_chat

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as browser:
            login = await browser.get("/auth/login")
            params = parse_qs(urlparse(login.headers["location"]).query)
            provider.nonce = params["nonce"][0]
            callback = await browser.get(
                "/auth/callback", params={"code": "auth-code", "state": params["state"][0]}
            )
            assert callback.status_code == 302

            chat = asyncio.create_task(browser.post("/api/chat", json={"message": "Hi"}))
            await started.wait()

            logout = await browser.get("/auth/logout")
            assert logout.status_code == 302

            released.set()
            chat_response = await chat
            assert chat_response.status_code == 200

            user = await browser.get("/api/user")

        assert user.status_code == 401
        assert user.json() == {"error": "Not authenticated"}
        assert len(app.state.session_store) == 0

    @pytest.mark.asyncio
    async def test_read_only_request_keeps_callback_identity(self, app, provider, upstream):
        await app.state.oidc_client.initialize()
        started = asyncio.Event()
        released = asyncio.Event()

        async def slow_quote(request):
            started.set()
            await released.wait()
            return httpx.Response(200, json={"c": 1.0})

        upstream.handler = slow_quote

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as browser:
            login = await browser.get("/auth/login")
            params = parse_qs(urlparse(login.headers["location"]).query)
            provider.nonce = params["nonce"][0]

            quote = asyncio.create_task(browser.get("/api/stock/quote/AAPL"))
            await started.wait()

            callback = await browser.get(
                "/auth/callback", params={"code": "auth-code", "state": params["state"][0]}
            )
            assert callback.status_code == 302

            released.set()
            assert (await quote).status_code == 200

            user = await browser.get("/api/user")

        assert user.status_code == 200
        assert user.json()["username"] == "alice"
