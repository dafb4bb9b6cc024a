"""
Data Models Module

This module defines Pydantic models for request/response validation
and data serialization throughout the gateway.

Models are organized by functional area:
- Authentication models (identity, pending authorization requests, token sets)
- Session models (server-side session records)
- Proxy models (chat requests/responses, stock summaries)
"""

import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================================================
# Authentication Models
# ============================================================================

class Identity(BaseModel):
    """Authenticated caller identity, as captured from the provider's user-info response."""

    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., description="Provider subject identifier", min_length=1)
    email: Optional[str] = Field(None, description="User email address")
    username: str = Field(..., description="Username, falling back to email then subject", min_length=1)

    @classmethod
    def from_userinfo(cls, userinfo: Dict[str, Any]) -> "Identity":
        """
        Build an Identity from an OIDC user-info document.

        Raises:
            ValueError: If the document has no 'sub' claim
        """
        subject = userinfo.get("sub")
        if not subject:
            raise ValueError("User info response missing 'sub'")
        email = userinfo.get("email")
        username = userinfo.get("username") or email or subject
        return cls(subject=subject, email=email, username=username)


class AuthorizationRequest(BaseModel):
    """A login attempt waiting for its callback."""

    state: str
    nonce: str
    created_at: float = Field(default_factory=time.time)


class TokenSet(BaseModel):
    """Tokens returned by the provider's token endpoint."""

    access_token: str
    id_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    claims: Dict[str, Any] = Field(default_factory=dict, description="Verified ID token claims")


# ============================================================================
# Session Models
# ============================================================================

class SessionRecord(BaseModel):
    """
    Server-side session data. Only the session id travels in the cookie.
    """

    session_id: str
    nonce: Optional[str] = None
    state: Optional[str] = None
    user_info: Optional[Identity] = None
    created_at: float = Field(default_factory=time.time)
    last_seen: float = Field(default_factory=time.time)


# ============================================================================
# Proxy Models
# ============================================================================

class ChatRequest(BaseModel):
    """Chat request payload from the frontend assistant."""

    message: str = Field(
        ...,
        description="User's message text",
        min_length=1,
        max_length=4000,
    )

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Message cannot be empty or only whitespace")
        return v


class ChatResponse(BaseModel):
    message: str = Field(..., description="Assistant reply")


class StockSummary(BaseModel):
    """Combined quote and profile for one listed company."""

    symbol: str
    name: str
    price: float
    previousClose: float
    high: float
    low: float
    volume: float
    description: str


class ErrorResponse(BaseModel):
    error: str
    details: Optional[str] = None
