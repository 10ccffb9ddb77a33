"""Bearer token verification for incoming connections.

Two issuers are accepted:

- Locally issued JWTs signed with the shared ``JWT_SECRET`` (HS256 by default).
- Google ID tokens, checked against Google's published signing keys and the
  configured OAuth client id.

Verification runs as a two-step pipeline. A token shaped like a JWT is tried
locally first; only when that attempt fails (or the token is not JWT-shaped)
is it handed to the federated verifier. Each step yields a
``VerificationResult``; the failure reasons are collected onto the final
``AuthError`` for logging and never influence which step runs next.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx
from authlib.jose import JsonWebKey, JsonWebToken, KeySet
from authlib.jose.errors import JoseError

from chat_relay.exceptions import AuthError
from chat_relay.models import AuthMethod, Identity

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]
FEDERATED_ALGORITHMS = ["RS256"]
CERTS_FETCH_TIMEOUT = 5.0
# Minimum seconds between key set fetches triggered by an unknown ``kid``.
KEYS_REFRESH_INTERVAL = 300.0


def looks_like_jwt(token: str) -> bool:
    """True if *token* has the three dot-separated segments of a compact JWT."""
    return isinstance(token, str) and len(token.split(".")) == 3


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification step: an identity or a failure reason."""

    identity: Identity | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.identity is not None


class TokenVerifier:
    """Turns an opaque bearer credential into an :class:`Identity`."""

    def __init__(
        self,
        *,
        jwt_secret: str,
        jwt_algorithms: list[str] | None = None,
        google_client_id: str | None = None,
        google_certs_url: str = GOOGLE_CERTS_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        keys_refresh_interval: float = KEYS_REFRESH_INTERVAL,
    ) -> None:
        self._jwt_secret = jwt_secret
        self._local_jwt = JsonWebToken(jwt_algorithms or ["HS256"])
        self._federated_jwt = JsonWebToken(FEDERATED_ALGORITHMS)
        self._google_client_id = google_client_id
        self._google_certs_url = google_certs_url
        self._transport = transport
        self._google_keys: KeySet | None = None
        self._google_keys_fetched_at: float | None = None
        self._keys_refresh_interval = keys_refresh_interval

    async def verify(self, token: str | None) -> Identity:
        """Return the identity behind *token*.

        Raises:
            AuthError: If the token is missing or both issuers reject it.
        """
        if not token:
            raise AuthError("No token provided")

        reasons: dict[str, str] = {}

        if looks_like_jwt(token):
            local = self._verify_local(token)
            if local.ok:
                return local.identity
            reasons["local"] = local.reason or "rejected"
        else:
            reasons["local"] = "not a JWT"

        federated = await self._verify_federated(token)
        if federated.ok:
            return federated.identity
        reasons["federated"] = federated.reason or "rejected"

        raise AuthError("Invalid or expired token", reasons=reasons)

    # -----------------------------------------------------------------------
    # Local tokens
    # -----------------------------------------------------------------------

    def _verify_local(self, token: str) -> VerificationResult:
        try:
            claims = self._local_jwt.decode(token, self._jwt_secret)
            claims.validate()
        except (JoseError, ValueError) as exc:
            return VerificationResult(reason=f"{type(exc).__name__}: {exc}")

        user_id = claims.get("id") or claims.get("sub") or claims.get("_id")
        if not user_id:
            return VerificationResult(reason="token carries no user id")

        identity = Identity(
            id=str(user_id),
            email=claims.get("email"),
            display_name=claims.get("name"),
            auth_method=AuthMethod.LOCAL,
        )
        return VerificationResult(identity=identity)

    # -----------------------------------------------------------------------
    # Google ID tokens
    # -----------------------------------------------------------------------

    async def _verify_federated(self, token: str) -> VerificationResult:
        if not self._google_client_id:
            return VerificationResult(reason="federated verification not configured")
        if not looks_like_jwt(token):
            return VerificationResult(reason="not a JWT")

        claims_options = {
            "iss": {"essential": True, "values": GOOGLE_ISSUERS},
            "aud": {"essential": True, "value": self._google_client_id},
            "sub": {"essential": True},
        }

        try:
            keys = await self._load_google_keys()
            try:
                claims = self._decode_federated(token, keys, claims_options)
            except ValueError:
                # Unknown ``kid``: Google may have rotated its keys.
                keys = await self._load_google_keys(refresh=True)
                claims = self._decode_federated(token, keys, claims_options)
            claims.validate()
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch federated signing keys: %s", exc)
            return VerificationResult(reason=f"signing keys unavailable: {exc}")
        except (JoseError, ValueError) as exc:
            return VerificationResult(reason=f"{type(exc).__name__}: {exc}")

        identity = Identity(
            id=str(claims["sub"]),
            email=claims.get("email"),
            display_name=claims.get("name"),
            auth_method=AuthMethod.FEDERATED_TOKEN,
        )
        return VerificationResult(identity=identity)

    def _decode_federated(self, token: str, keys: KeySet, claims_options: dict):
        def load_key(header, payload):
            return keys.find_by_kid(header.get("kid"))

        return self._federated_jwt.decode(token, load_key, claims_options=claims_options)

    async def _load_google_keys(self, *, refresh: bool = False) -> KeySet:
        """Fetch (or reuse) the issuer's JSON Web Key Set.

        A *refresh* only refetches once the cached set is older than the
        refresh interval, so unknown ``kid`` values cannot force a fetch per
        connection attempt.
        """
        if self._google_keys is not None:
            if not refresh:
                return self._google_keys
            age = time.monotonic() - self._google_keys_fetched_at
            if age < self._keys_refresh_interval:
                logger.debug("Signing keys fetched %.0fs ago; not refreshing", age)
                return self._google_keys

        async with httpx.AsyncClient(
            timeout=CERTS_FETCH_TIMEOUT,
            transport=self._transport,
        ) as client:
            response = await client.get(self._google_certs_url)
            response.raise_for_status()

        self._google_keys = JsonWebKey.import_key_set(response.json())
        self._google_keys_fetched_at = time.monotonic()
        logger.debug("Loaded %d federated signing keys", len(self._google_keys.keys))
        return self._google_keys
