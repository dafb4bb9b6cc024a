"""
Configuration module for the ATM Gateway.

This module uses Pydantic Settings to load and validate environment variables
for Cognito (OIDC) authentication, session JWTs, the server-side session
cookie, the upstream market-data and chat-completion APIs, and CORS.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    URLs that differ between deployments (backend, frontend) come in pairs:
    the plain variable is used when ENVIRONMENT=production, the *_LOCAL
    variant otherwise.
    """

    # =========================================================================
    # Deployment
    # =========================================================================

    ENVIRONMENT: Literal["development", "production"] = Field(
        default="development",
        description="Deployment environment; selects production or local URLs",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # =========================================================================
    # AWS Cognito Configuration (OIDC Authentication)
    # =========================================================================

    COGNITO_DOMAIN: str = Field(
        ...,
        description="Hosted UI domain (e.g., myapp.auth.us-east-2.amazoncognito.com)",
        min_length=1,
    )

    COGNITO_REGION: str = Field(
        default="us-east-2",
        description="AWS region of the user pool",
    )

    COGNITO_USER_POOL_ID: str = Field(
        ...,
        description="Cognito user pool identifier (e.g., us-east-2_AbCdEf)",
        min_length=1,
    )

    COGNITO_CLIENT_ID: str = Field(
        ...,
        description="Cognito app client ID",
        min_length=1,
    )

    COGNITO_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Cognito app client secret (optional for public clients)",
    )

    # =========================================================================
    # Backend / Frontend URLs
    # =========================================================================

    BACKEND_URL: Optional[str] = Field(
        None,
        description="Public base URL of this service in production",
    )

    BACKEND_URL_LOCAL: str = Field(
        default="http://localhost:5003",
        description="Base URL of this service during local development",
    )

    FRONTEND_URL: Optional[str] = Field(
        None,
        description="Frontend base URL in production",
    )

    FRONTEND_URL_LOCAL: str = Field(
        default="http://localhost:3000",
        description="Frontend base URL during local development",
    )

    # =========================================================================
    # Session JWT Configuration
    # =========================================================================

    SESSION_SECRET: str = Field(
        ...,
        description="Secret key for signing session JWTs (must be cryptographically secure)",
        min_length=32,
    )

    SESSION_JWT_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm (HS256, HS384, or HS512)",
    )

    SESSION_JWT_EXPIRY_MINUTES: int = Field(
        default=1440,
        description="Bearer credential lifetime in minutes",
        ge=1,
        le=1440,  # Max 24 hours
    )

    SESSION_JWT_ISSUER: str = Field(
        default="atm-gateway",
        description="Issuer claim stamped on session JWTs",
    )

    # =========================================================================
    # Server-side Session Cookie
    # =========================================================================

    SESSION_COOKIE_NAME: str = Field(default="atm-session")

    SESSION_MAX_AGE_SECONDS: int = Field(
        default=86400,
        description="Sliding expiry of server-side sessions",
        ge=60,
    )

    SESSION_COOKIE_SAMESITE: Literal["lax", "strict", "none"] = Field(default="lax")

    SESSION_COOKIE_SECURE: bool = Field(default=False)

    # =========================================================================
    # OAuth State Cache / JWKS
    # =========================================================================

    STATE_CACHE_TTL_SECONDS: int = Field(
        default=300,
        description="Lifetime of a pending authorization request",
        ge=1,
    )

    STATE_CACHE_SWEEP_SECONDS: int = Field(
        default=600,
        description="Interval between expired-entry sweeps",
        ge=1,
    )

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache the provider JWKS keys in seconds",
        ge=60,
        le=86400,
    )

    HTTP_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        description="Timeout for outbound calls to the identity provider and upstream APIs",
        gt=0,
    )

    # =========================================================================
    # CORS Configuration
    # =========================================================================

    ALLOWED_ORIGINS: Optional[str] = Field(
        "http://localhost:3000,http://localhost:3003,http://localhost:5003",
        description="Comma-separated list of allowed CORS origins",
    )

    # =========================================================================
    # Upstream APIs
    # =========================================================================

    FINNHUB_API_KEY: Optional[str] = Field(None, description="Finnhub API token")

    FINNHUB_BASE_URL: str = Field(default="https://finnhub.io/api/v1")

    DEEPSEEK_API_KEY: Optional[str] = Field(None, description="DeepSeek API key")

    DEEPSEEK_BASE_URL: str = Field(default="https://api.deepseek.com/v1")

    DEEPSEEK_MODEL: str = Field(default="deepseek-chat")

    # =========================================================================
    # Keep-alive
    # =========================================================================

    KEEPALIVE_URL: Optional[str] = Field(
        None,
        description="URL pinged periodically to keep a free-tier host awake (disabled when empty)",
    )

    KEEPALIVE_INTERVAL_SECONDS: int = Field(default=840, ge=1)

    # =========================================================================
    # Pydantic Settings Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def backend_url(self) -> str:
        """Base URL of this service for the current environment, without trailing slash."""
        url = self.BACKEND_URL if self.is_production and self.BACKEND_URL else self.BACKEND_URL_LOCAL
        return url.rstrip("/")

    @property
    def frontend_url(self) -> str:
        """Frontend base URL for the current environment, without trailing slash."""
        url = self.FRONTEND_URL if self.is_production and self.FRONTEND_URL else self.FRONTEND_URL_LOCAL
        return url.rstrip("/")

    @property
    def redirect_uri(self) -> str:
        """OAuth redirect URI registered with the identity provider."""
        return f"{self.backend_url}/auth/callback"

    @property
    def discovery_urls(self) -> List[str]:
        """
        Candidate OIDC discovery documents, in the order they are tried.

        The hosted UI domain is tried first; the canonical cognito-idp issuer
        URL is the fallback.
        """
        return [
            f"https://{self.COGNITO_DOMAIN}/.well-known/openid-configuration",
            (
                f"https://cognito-idp.{self.COGNITO_REGION}.amazonaws.com/"
                f"{self.COGNITO_USER_POOL_ID}/.well-known/openid-configuration"
            ),
        ]

    @property
    def logout_endpoint(self) -> str:
        return f"https://{self.COGNITO_DOMAIN}/logout"

    @property
    def allowed_origins_list(self) -> List[str]:
        """
        Parse and return ALLOWED_ORIGINS as a list.

        Returns:
            List of allowed origin URLs, or empty list if not configured.
        """
        if not self.ALLOWED_ORIGINS:
            return []

        return [
            origin.strip().rstrip("/")
            for origin in self.ALLOWED_ORIGINS.split(",")
            if origin.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("COGNITO_DOMAIN")
    @classmethod
    def validate_cognito_domain(cls, v: str) -> str:
        """Accept a bare host; strip a scheme or trailing slash if present."""
        v = v.strip()
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix):]
        v = v.rstrip("/")
        if not v or "/" in v:
            raise ValueError(
                f"Invalid Cognito domain: '{v}'. "
                "Expected a host name such as 'myapp.auth.us-east-2.amazoncognito.com'"
            )
        return v

    @field_validator("SESSION_JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        """
        Validate JWT algorithm is one of the supported HMAC algorithms.

        Raises:
            ValueError: If algorithm is not supported
        """
        allowed_algorithms = ["HS256", "HS384", "HS512"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the application lifecycle.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()
