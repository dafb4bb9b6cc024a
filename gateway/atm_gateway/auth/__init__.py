"""
Authentication Package

This package handles authentication for the gateway using AWS Cognito and
OpenID Connect (OIDC).

Key responsibilities:
- OIDC login flow initiation and callback handling
- ID token validation using the provider JWKS
- Session JWT issuance and validation for the frontend
- Server-side sessions and the OAuth state cache
- Per-request identity resolution (bearer token, then session)

Modules:
- routes: Public authentication endpoints (/auth/login, /auth/callback, ...)
- oidc: Identity provider client (discovery, code exchange, user info)
- session: Session JWT creation and validation
- session_store: Server-side session records and the cookie middleware
- state_cache: TTL cache of pending authorization requests
- middleware: Identity resolution chain and FastAPI dependencies

The authentication flow:
1. Browser starts login via /auth/login
2. User authenticates with the Cognito hosted UI
3. Gateway receives the authorization code via /auth/callback
4. Gateway exchanges the code, verifies state and nonce, fetches user info
5. Gateway redirects to the frontend with a session JWT
6. Frontend sends the JWT as a Bearer token on subsequent API calls
"""

from .routes import auth_router, user_router

__all__ = [
    "auth_router",
    "user_router",
]
