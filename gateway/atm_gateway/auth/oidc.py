"""
OpenID Connect client for the identity provider (AWS Cognito).

This module handles:
- Discovery of the provider endpoints, trying each candidate URL in order
- Building the authorization URL for the Authorization-Code flow
- Exchanging the authorization code for tokens
- Verifying the ID token signature (JWKS), audience, issuer and nonce
- Fetching user info with the access token
- Building the provider logout URL
"""

import logging
import secrets
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwk, jwt

from ..config import Settings
from ..exceptions import AuthenticationFailed, ClientNotReady, DiscoveryError
from ..models import Identity, TokenSet

logger = logging.getLogger(__name__)

REQUIRED_METADATA = (
    "issuer",
    "authorization_endpoint",
    "token_endpoint",
    "userinfo_endpoint",
    "jwks_uri",
)

DEFAULT_SCOPES = ("email", "openid", "phone")


class IdentityProviderClient:
    """
    Client bound to one OIDC provider, one client id and one redirect URI.

    ``initialize()`` must succeed before any other operation; until then they
    raise ClientNotReady.
    """

    def __init__(
        self,
        discovery_urls: Sequence[str],
        client_id: str,
        redirect_uri: str,
        logout_endpoint: str,
        client_secret: Optional[str] = None,
        timeout: float = 10.0,
        jwks_cache_seconds: int = 3600,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.discovery_urls = list(discovery_urls)
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.logout_endpoint = logout_endpoint
        self._jwks_cache_seconds = jwks_cache_seconds
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

        self._metadata: Optional[Dict[str, Any]] = None
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_fetched_at: float = 0.0

    @classmethod
    def from_settings(
        cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None
    ) -> "IdentityProviderClient":
        return cls(
            discovery_urls=settings.discovery_urls,
            client_id=settings.COGNITO_CLIENT_ID,
            client_secret=settings.COGNITO_CLIENT_SECRET,
            redirect_uri=settings.redirect_uri,
            logout_endpoint=settings.logout_endpoint,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            jwks_cache_seconds=settings.JWKS_CACHE_SECONDS,
            http_client=http_client,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def is_ready(self) -> bool:
        return self._metadata is not None

    def ensure_ready(self) -> None:
        """Raise ClientNotReady unless discovery has succeeded."""
        if self._metadata is None:
            raise ClientNotReady()

    @property
    def metadata(self) -> Dict[str, Any]:
        self.ensure_ready()
        return self._metadata

    async def initialize(self) -> Dict[str, Any]:
        """
        Resolve provider endpoints from the first working discovery document.

        Returns:
            The discovery document that was accepted

        Raises:
            DiscoveryError: If every candidate URL failed
        """
        failures: List[Tuple[str, str]] = []

        for url in self.discovery_urls:
            logger.info(f"Attempting OIDC discovery at {url}")
            try:
                metadata = await self._fetch_discovery(url)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"OIDC discovery failed at {url}: {e}")
                failures.append((url, str(e) or type(e).__name__))
                continue

            self._metadata = metadata
            logger.info(
                "OIDC client initialized",
                extra={"issuer": metadata["issuer"], "redirect_uri": self.redirect_uri},
            )
            return metadata

        raise DiscoveryError(failures)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _fetch_discovery(self, url: str) -> Dict[str, Any]:
        response = await self._http.get(url)
        response.raise_for_status()

        document = response.json()
        if not isinstance(document, dict):
            raise ValueError("Discovery document is not a JSON object")

        missing = [key for key in REQUIRED_METADATA if not document.get(key)]
        if missing:
            raise ValueError(f"Discovery document missing {', '.join(missing)}")

        return document

    # =========================================================================
    # Authorization URL
    # =========================================================================

    def build_authorization_url(
        self, state: str, nonce: str, scopes: Sequence[str] = DEFAULT_SCOPES
    ) -> str:
        """
        Build the provider authorization URL for a login attempt.

        Pure: persisting state/nonce is the caller's job.
        """
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(scopes),
            "state": state,
            "nonce": nonce,
        }
        return f"{self.metadata['authorization_endpoint']}?{urlencode(params)}"

    def build_logout_url(self, logout_redirect: str) -> str:
        params = {"client_id": self.client_id, "logout_uri": logout_redirect}
        return f"{self.logout_endpoint}?{urlencode(params)}"

    # =========================================================================
    # Code Exchange
    # =========================================================================

    async def exchange_code(
        self,
        callback_url: str,
        code: str,
        expected_state: str,
        expected_nonce: str,
        received_state: Optional[str],
    ) -> TokenSet:
        """
        Exchange an authorization code for tokens and verify the ID token.

        Args:
            callback_url: Redirect URI used at login (must match exactly)
            code: Authorization code from the callback
            expected_state: State associated with this login attempt
            expected_nonce: Nonce associated with this login attempt
            received_state: State echoed back on the callback

        Returns:
            TokenSet with verified ID token claims

        Raises:
            ClientNotReady: If discovery has not succeeded
            AuthenticationFailed: On state or nonce mismatch, provider
                rejection, invalid ID token or network failure
        """
        metadata = self.metadata

        if not received_state or not secrets.compare_digest(received_state, expected_state):
            raise AuthenticationFailed("state mismatch")

        payload = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "code": code,
            "redirect_uri": callback_url,
        }
        auth = (self.client_id, self.client_secret) if self.client_secret else None

        try:
            response = await self._http.post(
                metadata["token_endpoint"],
                data=payload,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                auth=auth,
            )
        except httpx.HTTPError as e:
            raise AuthenticationFailed(
                f"unable to reach token endpoint: {str(e) or type(e).__name__}"
            ) from e

        if not response.is_success:
            error_data = _json_or_empty(response)
            provider_error = error_data.get("error")
            error_msg = (
                error_data.get("error_description")
                or provider_error
                or f"token endpoint returned {response.status_code}"
            )
            raise AuthenticationFailed(error_msg, provider_error=provider_error)

        token_data = _json_or_empty(response)
        access_token = token_data.get("access_token")
        id_token = token_data.get("id_token")
        if not id_token:
            raise AuthenticationFailed("id_token not present in TokenSet")
        if not access_token:
            raise AuthenticationFailed("access_token not present in TokenSet")

        claims = await self.verify_id_token(id_token, access_token=access_token)

        token_nonce = claims.get("nonce")
        if not token_nonce or not secrets.compare_digest(str(token_nonce), expected_nonce):
            raise AuthenticationFailed("nonce mismatch")

        return TokenSet(
            access_token=access_token,
            id_token=id_token,
            token_type=token_data.get("token_type", "Bearer"),
            expires_in=token_data.get("expires_in"),
            refresh_token=token_data.get("refresh_token"),
            claims=claims,
        )

    # =========================================================================
    # ID Token Verification
    # =========================================================================

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the provider JWKS, cached for ``jwks_cache_seconds``.

        Raises:
            httpx.HTTPError: If the JWKS endpoint is unreachable
            ValueError: If the response is not a key set
        """
        current_time = time.time()
        if (
            not force_refresh
            and self._jwks
            and (current_time - self._jwks_fetched_at) < self._jwks_cache_seconds
        ):
            return self._jwks

        response = await self._http.get(self.metadata["jwks_uri"])
        response.raise_for_status()

        jwks_data = response.json()
        if "keys" not in jwks_data:
            raise ValueError("Invalid JWKS response: missing 'keys' field")

        self._jwks = jwks_data
        self._jwks_fetched_at = current_time
        return jwks_data

    async def verify_id_token(
        self, id_token: str, access_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Verify an ID token's signature, audience, issuer and lifetime.

        Raises:
            AuthenticationFailed: If the token cannot be verified
        """
        metadata = self.metadata

        try:
            jwks = await self.fetch_jwks()
            signing_key = _find_signing_key(id_token, jwks)
            if not signing_key:
                # Keys may have rotated since the last fetch.
                jwks = await self.fetch_jwks(force_refresh=True)
                signing_key = _find_signing_key(id_token, jwks)
        except (httpx.HTTPError, ValueError) as e:
            raise AuthenticationFailed(f"unable to load provider keys: {e}") from e
        except JWTError as e:
            raise AuthenticationFailed(f"malformed id_token: {e}") from e

        if not signing_key:
            raise AuthenticationFailed("no matching signing key for id_token")

        try:
            public_key = jwk.construct(signing_key, algorithm=signing_key.get("alg", "RS256"))
            return jwt.decode(
                id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=metadata["issuer"],
                access_token=access_token,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iat": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": True,
                    "verify_sub": True,
                    "verify_at_hash": access_token is not None,
                    "leeway": 10,
                },
            )
        except JWTError as e:
            raise AuthenticationFailed(f"id_token verification failed: {e}") from e

    # =========================================================================
    # User Info
    # =========================================================================

    async def fetch_user_info(self, access_token: str) -> Identity:
        """
        Retrieve the caller's identity from the user-info endpoint.

        Raises:
            ClientNotReady: If discovery has not succeeded
            AuthenticationFailed: If the access token is rejected or the
                endpoint is unreachable
        """
        metadata = self.metadata

        try:
            response = await self._http.get(
                metadata["userinfo_endpoint"],
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise AuthenticationFailed(
                f"unable to reach userinfo endpoint: {str(e) or type(e).__name__}"
            ) from e

        if not response.is_success:
            error_data = _json_or_empty(response)
            raise AuthenticationFailed(
                error_data.get("error_description")
                or error_data.get("error")
                or f"userinfo endpoint returned {response.status_code}",
                provider_error=error_data.get("error"),
            )

        try:
            return Identity.from_userinfo(response.json())
        except ValueError as e:
            raise AuthenticationFailed(f"invalid userinfo response: {e}") from e


# =============================================================================
# Helpers
# =============================================================================

def _find_signing_key(token: str, jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Return the JWKS entry matching the token's ``kid`` header.

    Raises:
        JWTError: If the token header is malformed or has no kid
    """
    unverified_header = jwt.get_unverified_header(token)
    kid = unverified_header.get("kid")
    if not kid:
        raise JWTError("Token header missing 'kid' (Key ID)")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    return None


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
