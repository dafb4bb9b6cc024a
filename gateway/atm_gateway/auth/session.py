"""
JWT Session Management Module
==============================

Mints and verifies the bearer credential handed to the frontend after a
successful login. The credential is a self-contained HMAC-signed JWT; nothing
about it is stored server-side and it cannot be revoked before it expires.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from ..config import Settings
from ..exceptions import InvalidToken
from ..models import Identity

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionTokenIssuer:
    """
    Issues and verifies session JWTs.

    Example:
        >>> issuer = SessionTokenIssuer(secret="x" * 32)
        >>> token = issuer.mint(Identity(subject="abc", email="a@b.com", username="a"))
        >>> issuer.verify(token).email
        'a@b.com'
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expires_in: timedelta = timedelta(hours=24),
        issuer: str = "atm-gateway",
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not secret:
            raise ValueError("Session signing secret is not configured")
        self._secret = secret
        self._algorithm = algorithm
        self._expires_in = expires_in
        self._issuer = issuer
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionTokenIssuer":
        return cls(
            secret=settings.SESSION_SECRET,
            algorithm=settings.SESSION_JWT_ALGORITHM,
            expires_in=timedelta(minutes=settings.SESSION_JWT_EXPIRY_MINUTES),
            issuer=settings.SESSION_JWT_ISSUER,
        )

    @property
    def expires_in(self) -> timedelta:
        return self._expires_in

    # =========================================================================
    # Token Creation
    # =========================================================================

    def mint(self, identity: Identity) -> str:
        """
        Create a signed bearer credential for an identity.

        Args:
            identity: Identity captured at callback time

        Returns:
            Encoded JWT string
        """
        now = self._clock()
        payload: Dict[str, Any] = {
            "sub": identity.subject,
            "email": identity.email,
            "username": identity.username,
            "iat": now,
            "exp": now + self._expires_in,
            "iss": self._issuer,
        }

        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)

        logger.debug(
            "Created session JWT",
            extra={
                "user_id": identity.subject,
                "expires_in_minutes": int(self._expires_in.total_seconds() // 60),
            },
        )
        return token

    # =========================================================================
    # Token Verification
    # =========================================================================

    def verify(self, token: str) -> Identity:
        """
        Verify a bearer credential and return the identity it carries.

        Raises:
            InvalidToken: For malformed, expired, wrongly-issued or tampered
                          tokens. The cases are deliberately indistinguishable.
        """
        if not token:
            raise InvalidToken()

        try:
            decoded = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_iat": True,
                    "require": ["exp", "iat", "sub", "iss"],
                },
            )
            # PyJWT checks exp against the wall clock; honour an injected clock too.
            if decoded["exp"] <= self._clock().timestamp():
                raise ExpiredSignatureError("Signature has expired")

            return Identity(
                subject=decoded["sub"],
                email=decoded.get("email"),
                username=decoded.get("username") or decoded.get("email") or decoded["sub"],
            )
        except ExpiredSignatureError:
            logger.info("Rejected expired session JWT")
            raise InvalidToken() from None
        except (InvalidTokenError, ValueError, TypeError) as e:
            logger.warning(f"Rejected invalid session JWT: {type(e).__name__}")
            raise InvalidToken() from None


# =============================================================================
# Helper Functions
# =============================================================================

def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """
    Extract the token from an ``Authorization: Bearer <token>`` header.

    Returns:
        The token, or None if the header is absent or not a Bearer header
    """
    if not authorization:
        return None

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None

    return parts[1]


__all__ = [
    "SessionTokenIssuer",
    "extract_bearer_token",
]
