"""
Authentication routes for OIDC login, callback, logout and identity queries.

This module implements the OAuth 2.0 / OIDC authorization code flow with
AWS Cognito:

    ANONYMOUS --/auth/login--> AUTH_PENDING --/auth/callback--> AUTHENTICATED
    AUTHENTICATED --/auth/logout--> ANONYMOUS
"""

import logging
import secrets
from typing import Optional, Tuple
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from ..config import Settings
from ..exceptions import AuthenticationFailed
from ..models import Identity
from .middleware import get_optional_identity
from .oidc import DEFAULT_SCOPES, IdentityProviderClient
from .session import SessionTokenIssuer
from .session_store import SessionStore, destroy_session, ensure_session, get_session
from .state_cache import StateCache

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)

user_router = APIRouter(
    prefix="/api",
    tags=["authentication"],
)


# =============================================================================
# Dependencies
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_oidc_client(request: Request) -> IdentityProviderClient:
    return request.app.state.oidc_client


def get_state_cache(request: Request) -> StateCache:
    return request.app.state.state_cache


def get_token_issuer(request: Request) -> SessionTokenIssuer:
    return request.app.state.token_issuer


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(
    request: Request,
    client: IdentityProviderClient = Depends(get_oidc_client),
    state_cache: StateCache = Depends(get_state_cache),
):
    """
    Initiate OIDC login by redirecting to the Cognito hosted UI.

    Generates state and nonce, stores them in both the session and the state
    cache, then redirects to the authorization endpoint.

    Returns:
        302 redirect, or 503 if the OIDC client is not initialized
    """
    client.ensure_ready()

    state = secrets.token_urlsafe(32)
    nonce = secrets.token_urlsafe(32)

    session = await ensure_session(request)
    session.state = state
    session.nonce = nonce
    await state_cache.put(state, nonce)

    logger.info("OAuth login started", extra={"cache_size": len(state_cache)})

    authorization_url = client.build_authorization_url(state, nonce, DEFAULT_SCOPES)
    return RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Callback Endpoint
# =============================================================================

async def resolve_authorization_request(
    request: Request, state_cache: StateCache, received_state: str
) -> Tuple[str, str, bool]:
    """
    Find the state and nonce this callback must be checked against.

    Tried in order: the session, the state cache keyed by the callback's
    state, and finally the callback's own state used as both values.

    Returns:
        (state, nonce, degraded) where degraded marks the last fallback
    """
    session = get_session(request)
    if session is not None and session.state and session.nonce:
        return session.state, session.nonce, False

    cached = await state_cache.get(received_state)
    if cached is not None:
        logger.info("OAuth state recovered from state cache")
        return cached.state, cached.nonce, False

    # With state reused as nonce, the nonce no longer binds the ID token to this browser.
    logger.warning(
        "OAuth state not found in session or cache; using callback state as nonce (degraded)",
        extra={"degraded": True},
    )
    return received_state, received_state, True


@auth_router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from Cognito"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
    settings: Settings = Depends(get_app_settings),
    client: IdentityProviderClient = Depends(get_oidc_client),
    state_cache: StateCache = Depends(get_state_cache),
    token_issuer: SessionTokenIssuer = Depends(get_token_issuer),
    session_store: SessionStore = Depends(get_session_store),
):
    """
    Handle the redirect back from Cognito.

    Exchanges the code, verifies state and nonce, fetches user info, stores
    the identity in the session and redirects to the frontend with a freshly
    minted bearer token.

    Returns:
        302 to <frontend>/callback?token=..., or 500 with
        "Authentication failed: <detail>"
    """
    client.ensure_ready()

    try:
        if error:
            raise AuthenticationFailed(error_description or error, provider_error=error)
        if not code:
            raise AuthenticationFailed("missing authorization code")
        if not state:
            raise AuthenticationFailed("missing state parameter")

        expected_state, expected_nonce, degraded = await resolve_authorization_request(
            request, state_cache, state
        )

        token_set = await client.exchange_code(
            settings.redirect_uri,
            code,
            expected_state=expected_state,
            expected_nonce=expected_nonce,
            received_state=state,
        )
        identity = await client.fetch_user_info(token_set.access_token)

    except AuthenticationFailed as e:
        logger.error(
            f"Callback error: {e.detail}",
            extra={"provider_error": e.provider_error},
        )
        return PlainTextResponse(
            f"Authentication failed: {e.detail}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    session = await ensure_session(request)
    session.user_info = identity
    session.state = None
    session.nonce = None

    jwt_token = token_issuer.mint(identity)
    await state_cache.delete(state)
    await session_store.save(session)

    logger.info(
        "User authenticated",
        extra={"user_id": identity.subject, "degraded": degraded},
    )

    redirect_url = f"{settings.frontend_url}/callback?{urlencode({'token': jwt_token})}"
    return RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Logout Endpoint
# =============================================================================

@auth_router.get("/logout", response_class=RedirectResponse)
async def logout(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    client: IdentityProviderClient = Depends(get_oidc_client),
):
    """
    Destroy the server-side session and redirect to the Cognito logout endpoint.

    Bearer tokens already issued stay valid until they expire; the client
    must discard them.
    """
    await destroy_session(request)

    logout_url = client.build_logout_url(settings.frontend_url)
    logger.info("User logged out")
    return RedirectResponse(url=logout_url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# Identity Query
# =============================================================================

@user_router.get("/user", response_model=Identity)
async def current_user(identity: Optional[Identity] = Depends(get_optional_identity)):
    """
    Return the caller's identity (bearer token first, then session).
    """
    if identity is None:
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "Not authenticated"},
        )
    return identity
