"""
Shared fixtures for the gateway tests.

Outbound HTTP never leaves the process: the Cognito endpoints and the
upstream APIs are served by httpx.MockTransport handlers. ID tokens are
signed with an RSA key generated per test session and published through
the fake provider's JWKS endpoint.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import jwt
import pytest
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from atm_gateway.auth.oidc import IdentityProviderClient
from atm_gateway.config import Settings
from atm_gateway.main import create_app
from atm_gateway.models import Identity


COGNITO_DOMAIN = "habo-test.auth.us-east-2.amazoncognito.com"
USER_POOL_ID = "us-east-2_TestPool"
CLIENT_ID = "test-client-id"
ISSUER = f"https://cognito-idp.us-east-2.amazonaws.com/{USER_POOL_ID}"
HOSTED_DISCOVERY_URL = f"https://{COGNITO_DOMAIN}/.well-known/openid-configuration"
ISSUER_DISCOVERY_URL = f"{ISSUER}/.well-known/openid-configuration"
TEST_KID = "test-key-id-2024"


# Test RSA key pair generation for signing ID tokens
def generate_test_keys():
    """Generate RSA key pair for testing"""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend()
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )

    return private_pem.decode(), private_key.public_key()


TEST_PRIVATE_KEY, TEST_PUBLIC_KEY = generate_test_keys()


def create_jwks(kid: str = TEST_KID) -> Dict[str, Any]:
    """JWKS document publishing the test public key under ``kid``."""
    key = RSAAlgorithm.to_jwk(TEST_PUBLIC_KEY, as_dict=True)
    key["kid"] = kid
    key["use"] = "sig"
    key["alg"] = "RS256"
    return {"keys": [key]}


class FakeProvider:
    """
    Cognito stand-in: discovery, token, JWKS and user-info endpoints.

    Tests steer it through plain attributes:
        discovery: per-URL behaviour, 200, another status code, or "unreachable"
        nonce: nonce embedded in the next ID token
        token_error: (status, body) returned by the token endpoint instead of tokens
        id_token_claims: claim overrides for the next ID token
        id_token_kid: kid header of the next ID token
        userinfo_status / userinfo: user-info endpoint answer
    """

    client_id = CLIENT_ID
    issuer = ISSUER
    domain = COGNITO_DOMAIN

    def __init__(self):
        self.metadata = {
            "issuer": ISSUER,
            "authorization_endpoint": f"https://{COGNITO_DOMAIN}/oauth2/authorize",
            "token_endpoint": f"https://{COGNITO_DOMAIN}/oauth2/token",
            "userinfo_endpoint": f"https://{COGNITO_DOMAIN}/oauth2/userInfo",
            "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
        }
        self.discovery: Dict[str, Any] = {
            HOSTED_DISCOVERY_URL: 200,
            ISSUER_DISCOVERY_URL: 200,
        }
        self.nonce: Optional[str] = None
        self.token_error: Optional[tuple] = None
        self.id_token_claims: Dict[str, Any] = {}
        self.id_token_kid = TEST_KID
        self.userinfo_status = 200
        self.userinfo: Dict[str, Any] = {
            "sub": "user-123",
            "email": "alice@example.com",
            "username": "alice",
        }
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def urls_requested(self) -> List[str]:
        return [_base_url(request) for request in self.requests]

    def mint_id_token(self, nonce: Optional[str], exp_delta_minutes: int = 60, **overrides) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iss": ISSUER,
            "sub": self.userinfo.get("sub", "user-123"),
            "aud": CLIENT_ID,
            "exp": now + timedelta(minutes=exp_delta_minutes),
            "iat": now,
            "email": self.userinfo.get("email"),
            "token_use": "id",
        }
        if nonce is not None:
            payload["nonce"] = nonce
        payload.update(overrides)
        return jwt.encode(
            payload,
            TEST_PRIVATE_KEY,
            algorithm="RS256",
            headers={"kid": self.id_token_kid, "alg": "RS256"},
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = _base_url(request)

        if url in self.discovery:
            behaviour = self.discovery[url]
            if behaviour == "unreachable":
                raise httpx.ConnectError("connection refused", request=request)
            if behaviour != 200:
                return httpx.Response(behaviour, json={"message": "unavailable"})
            return httpx.Response(200, json=self.metadata)

        if url == self.metadata["token_endpoint"]:
            if self.token_error is not None:
                status_code, body = self.token_error
                return httpx.Response(status_code, json=body)
            return httpx.Response(
                200,
                json={
                    "access_token": "test-access-token",
                    "id_token": self.mint_id_token(self.nonce, **self.id_token_claims),
                    "refresh_token": "test-refresh-token",
                    "token_type": "Bearer",
                    "expires_in": 3600,
                },
            )

        if url == self.metadata["jwks_uri"]:
            return httpx.Response(200, json=create_jwks())

        if url == self.metadata["userinfo_endpoint"]:
            if self.userinfo_status != 200:
                return httpx.Response(self.userinfo_status, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo)

        return httpx.Response(404)


class FakeUpstream:
    """Finnhub / DeepSeek stand-in; tests assign ``handler``."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(404)
        self.transport = httpx.MockTransport(self._dispatch)

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


def _base_url(request: httpx.Request) -> str:
    return f"{request.url.scheme}://{request.url.host}{request.url.path}"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings for tests, independent of any .env file"""
    return Settings(
        _env_file=None,
        ENVIRONMENT="development",
        COGNITO_DOMAIN=COGNITO_DOMAIN,
        COGNITO_USER_POOL_ID=USER_POOL_ID,
        COGNITO_CLIENT_ID=CLIENT_ID,
        COGNITO_CLIENT_SECRET="test-client-secret",
        SESSION_SECRET="test-session-secret-0123456789abcdef",
        FINNHUB_API_KEY="finnhub-test-key",
        DEEPSEEK_API_KEY="deepseek-test-key",
        KEEPALIVE_URL=None,
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def oidc_client(settings, provider):
    """Identity provider client wired to the fake provider (not yet initialized)"""
    return IdentityProviderClient.from_settings(
        settings, http_client=httpx.AsyncClient(transport=provider.transport)
    )


@pytest.fixture
def app(settings, oidc_client, upstream):
    """Application with all outbound HTTP faked"""
    return create_app(
        settings,
        oidc_client=oidc_client,
        upstream_client=httpx.AsyncClient(transport=upstream.transport),
    )


@pytest.fixture
def client(app):
    """Test client with the lifespan (discovery, cache sweep) running"""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def identity():
    return Identity(subject="user-123", email="alice@example.com", username="alice")


@pytest.fixture
def auth_headers(app, identity):
    """Authorization header carrying a valid session JWT"""
    token = app.state.token_issuer.mint(identity)
    return {"Authorization": f"Bearer {token}"}
