"""
Error taxonomy for the gateway.

Every failure the authentication flow and the upstream proxies can produce
is one of these. All of them are request-scoped; none is fatal to the process.
"""

from typing import List, Optional, Tuple


class GatewayError(Exception):
    """Base exception for gateway errors"""
    pass


class ClientNotReady(GatewayError):
    """The identity provider client has not completed discovery."""

    def __init__(self, message: str = "OIDC client not initialized"):
        super().__init__(message)


class DiscoveryError(GatewayError):
    """
    Every candidate discovery document was unreachable or malformed.

    Attributes:
        failures: (url, reason) pairs, one per candidate tried
    """

    def __init__(self, failures: List[Tuple[str, str]]):
        self.failures = failures
        detail = "; ".join(f"{url}: {reason}" for url, reason in failures)
        super().__init__(f"OIDC discovery failed for all candidates ({detail})")


class AuthenticationFailed(GatewayError):
    """
    The authorization code exchange or user-info lookup failed.

    Covers state/nonce mismatch, provider rejection, invalid ID tokens and
    network failures. ``detail`` is safe to show to the browser.
    """

    def __init__(self, detail: str, provider_error: Optional[str] = None):
        self.detail = detail
        self.provider_error = provider_error
        super().__init__(detail)


class InvalidToken(GatewayError):
    """
    A bearer credential is malformed, expired or carries a bad signature.

    The three cases share one message; callers cannot tell them apart.
    """

    def __init__(self, message: str = "Invalid or expired token"):
        super().__init__(message)


class UpstreamUnavailable(GatewayError):
    """A proxied upstream API timed out, was unreachable or answered non-2xx."""

    def __init__(self, upstream: str, detail: str, status_code: Optional[int] = None):
        self.upstream = upstream
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{upstream}: {detail}")
