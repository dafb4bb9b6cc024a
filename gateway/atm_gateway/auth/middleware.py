"""
Per-request identity resolution.

Each resolver looks at one credential source and returns an Identity or None.
They are tried in order and the first hit becomes ``request.state.identity``:

1. Bearer JWT from the Authorization header (clients that cannot rely on
   cross-site cookies)
2. Identity stored in the server-side session (same-site cookie flow)

A request that matches neither continues unauthenticated; routes that need a
caller depend on ``require_identity``.
"""

import logging
from typing import Awaitable, Callable, Optional, Tuple

from fastapi import HTTPException, Request, status

from ..exceptions import InvalidToken
from ..models import Identity
from .session import SessionTokenIssuer, extract_bearer_token
from .session_store import get_session

logger = logging.getLogger(__name__)

Resolver = Callable[[Request], Awaitable[Optional[Identity]]]


async def resolve_bearer(request: Request) -> Optional[Identity]:
    token = extract_bearer_token(request.headers.get("Authorization"))
    if not token:
        return None

    issuer: SessionTokenIssuer = request.app.state.token_issuer
    try:
        return issuer.verify(token)
    except InvalidToken:
        logger.info(
            "Bearer token rejected, falling back to session",
            extra={"path": request.url.path},
        )
        return None


async def resolve_session(request: Request) -> Optional[Identity]:
    record = get_session(request)
    if record is None:
        return None
    return record.user_info


RESOLVERS: Tuple[Resolver, ...] = (resolve_bearer, resolve_session)


async def resolve_identity(
    request: Request, resolvers: Tuple[Resolver, ...] = RESOLVERS
) -> Optional[Identity]:
    for resolver in resolvers:
        identity = await resolver(request)
        if identity is not None:
            return identity
    return None


# =============================================================================
# HTTP middleware (registered by main.py via app.middleware)
# =============================================================================

async def identity_middleware(request: Request, call_next):
    request.state.identity = await resolve_identity(request)
    return await call_next(request)


# =============================================================================
# FastAPI Dependencies
# =============================================================================

def get_optional_identity(request: Request) -> Optional[Identity]:
    """
    Identity resolved for this request, or None for anonymous callers.

    Usage:
        @app.get("/optional-auth")
        async def route(identity: Optional[Identity] = Depends(get_optional_identity)):
            ...
    """
    return getattr(request.state, "identity", None)


def require_identity(request: Request) -> Identity:
    """
    Identity resolved for this request.

    Raises:
        HTTPException: 401 if the caller is not authenticated
    """
    identity = get_optional_identity(request)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
