"""
FastAPI Application Factory
===========================

Entry point for the ATM gateway: the backend of the Habo banking single-page
app. It authenticates users against AWS Cognito (OIDC), issues session JWTs,
keeps server-side sessions, and proxies the market-data and chat APIs.

Architecture:
    Browser SPA → Gateway (this service) → Cognito / Finnhub / DeepSeek

Routers:
    - /auth/*       : OIDC login, callback, logout
    - /api/user     : Identity of the caller
    - /api/chat     : Banking assistant (requires authentication)
    - /api/stock/*  : Market data
    - /             : Authentication status
    - /health       : Health check endpoint

Running the Service:
    Development:
        uvicorn atm_gateway.main:create_app --factory --reload --port 5003

    Production:
        ENVIRONMENT=production uvicorn atm_gateway.main:create_app --factory --host 0.0.0.0 --port 5003

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn atm_gateway.main:create_app --factory --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .auth import auth_router, user_router
from .auth.middleware import get_optional_identity, identity_middleware
from .auth.oidc import IdentityProviderClient
from .auth.session import SessionTokenIssuer
from .auth.session_store import SessionStore, get_session, session_middleware
from .auth.state_cache import StateCache
from .config import Settings, get_settings
from .exceptions import ClientNotReady, DiscoveryError, UpstreamUnavailable
from .keepalive import KeepAlivePinger
from .models import Identity
from .proxy import proxy_router


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Run OIDC discovery (failure leaves the client not ready; login
          answers 503 until restart)
        - Start the OAuth state cache sweep
        - Start the keep-alive pinger if configured

    Shutdown tasks:
        - Stop background tasks
        - Close HTTP clients
    """
    settings: Settings = app.state.settings
    logger = logging.getLogger("atm_gateway.main")

    logger.info(
        "Starting ATM gateway",
        extra={
            "environment": settings.ENVIRONMENT,
            "redirect_uri": settings.redirect_uri,
            "frontend_url": settings.frontend_url,
        },
    )

    oidc_client: IdentityProviderClient = app.state.oidc_client
    try:
        await oidc_client.initialize()
    except DiscoveryError as e:
        logger.error(f"Failed to initialize OIDC client: {e}")

    await app.state.state_cache.start()

    keepalive: Optional[KeepAlivePinger] = app.state.keepalive
    if keepalive is not None:
        await keepalive.start()

    logger.info("ATM gateway started", extra={"oidc_ready": oidc_client.is_ready})

    yield

    logger.info("Shutting down ATM gateway")

    if keepalive is not None:
        await keepalive.stop()
    await app.state.state_cache.stop()
    await oidc_client.aclose()
    if app.state.owns_upstream_client:
        await app.state.upstream_client.aclose()

    logger.info("ATM gateway shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    oidc_client: Optional[IdentityProviderClient] = None,
    upstream_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory function.

    Creates the service objects (identity provider client, state cache,
    session store, token issuer) and wires them, the middleware and the
    routers into a FastAPI application. Services are started and stopped by
    the lifespan.

    Args:
        settings: Configuration; loaded from the environment when omitted
        oidc_client: Identity provider client; built from settings when omitted
        upstream_client: HTTP client for the proxied APIs

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="ATM Gateway",
        description="Authentication and API gateway for the Habo banking frontend",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.settings = settings
    app.state.oidc_client = oidc_client or IdentityProviderClient.from_settings(settings)
    app.state.state_cache = StateCache(
        ttl_seconds=settings.STATE_CACHE_TTL_SECONDS,
        sweep_interval_seconds=settings.STATE_CACHE_SWEEP_SECONDS,
    )
    app.state.session_store = SessionStore(max_age_seconds=settings.SESSION_MAX_AGE_SECONDS)
    app.state.token_issuer = SessionTokenIssuer.from_settings(settings)
    app.state.owns_upstream_client = upstream_client is None
    app.state.upstream_client = upstream_client or httpx.AsyncClient(
        timeout=settings.HTTP_TIMEOUT_SECONDS
    )
    app.state.keepalive = (
        KeepAlivePinger(
            settings.KEEPALIVE_URL,
            interval_seconds=settings.KEEPALIVE_INTERVAL_SECONDS,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )
        if settings.KEEPALIVE_URL
        else None
    )

    # Later registrations wrap earlier ones: CORS runs first, then the
    # session binding, then identity resolution.
    app.middleware("http")(identity_middleware)
    app.middleware("http")(session_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )

    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(proxy_router)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check(request: Request) -> Dict[str, Any]:
        return {
            "status": "ok",
            "service": "atm-gateway",
            "version": __version__,
            "oidc_ready": request.app.state.oidc_client.is_ready,
        }

    # Root endpoint
    @app.get("/", tags=["System"])
    async def root(
        request: Request,
        identity: Optional[Identity] = Depends(get_optional_identity),
    ) -> Dict[str, Any]:
        """
        Authentication status of the caller.

        Returns:
            {"isAuthenticated": bool, "userInfo": identity stored in the session or null}
        """
        session = get_session(request)
        user_info = session.user_info if session is not None else None
        return {
            "isAuthenticated": identity is not None,
            "userInfo": user_info.model_dump() if user_info is not None else None,
        }

    @app.exception_handler(ClientNotReady)
    async def client_not_ready_handler(request: Request, exc: ClientNotReady) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(UpstreamUnavailable)
    async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
        logging.getLogger("atm_gateway.main").error(
            f"Upstream failure: {exc}",
            extra={"path": request.url.path, "upstream": exc.upstream},
        )
        return JSONResponse(
            status_code=500,
            content={"error": f"Failed to reach {exc.upstream}", "details": exc.detail},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("atm_gateway.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL.upper() == "DEBUG" else None,
            },
        )

    return app


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "atm_gateway.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=5003,
        reload=not settings.is_production,
        log_level=settings.LOG_LEVEL.lower(),
    )
