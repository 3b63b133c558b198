"""
Identity collaborator adapters.

The relay never issues or parses tokens itself; it asks a verifier to turn a
bearer token into a subject and a set of roles.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from chatrelay.config import (
    AUTH_TIMEOUT,
    INTROSPECTION_CLIENT_ID,
    INTROSPECTION_CLIENT_SECRET,
    INTROSPECTION_URL,
    STATIC_TOKENS,
)
from chatrelay.errors import AuthTimeout, Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claims:
    subject: str
    roles: frozenset[str] = field(default_factory=frozenset)

    def has_role(self, role: str) -> bool:
        return role in self.roles


class TokenVerifier:
    """Base class: ``verify_token`` returns Claims, or None for an invalid token."""

    async def verify_token(self, token: str) -> Optional[Claims]:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class StaticTokenVerifier(TokenVerifier):
    """Token map for development and tests.

    ``tokens`` maps a bearer token to ``{"subject": ..., "roles": [...]}``.
    """

    def __init__(self, tokens: dict[str, dict[str, Any]]) -> None:
        self._tokens = dict(tokens)

    async def verify_token(self, token: str) -> Optional[Claims]:
        entry = self._tokens.get(token)
        if not entry or not entry.get("subject"):
            return None
        return Claims(subject=entry["subject"], roles=frozenset(entry.get("roles") or ()))


class IntrospectionVerifier(TokenVerifier):
    """OAuth2 token introspection (RFC 7662), as exposed by Keycloak.

    Roles are read from ``realm_access.roles`` and the subject from
    ``preferred_username``, falling back to ``sub``.
    """

    def __init__(
        self,
        url: str,
        client_id: str,
        client_secret: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self._auth = (client_id, client_secret)
        self._client = client or httpx.AsyncClient()

    async def verify_token(self, token: str) -> Optional[Claims]:
        resp = await self._client.post(self.url, data={"token": token}, auth=self._auth)
        if resp.status_code in (400, 401, 403):
            logger.warning(f"Introspection rejected: HTTP {resp.status_code}")
            return None
        resp.raise_for_status()
        body = resp.json()
        if not body.get("active"):
            return None
        subject = body.get("preferred_username") or body.get("sub")
        if not subject:
            return None
        roles = (body.get("realm_access") or {}).get("roles") or []
        return Claims(subject=subject, roles=frozenset(roles))

    async def aclose(self) -> None:
        await self._client.aclose()


async def verify_with_timeout(
    verifier: TokenVerifier,
    token: Optional[str],
    timeout: float = AUTH_TIMEOUT,
) -> Claims:
    """Verify ``token`` within ``timeout`` seconds.

    Raises Unauthorized for a missing/invalid token and AuthTimeout when the
    identity provider does not answer in time.
    """
    if not token:
        raise Unauthorized("Missing bearer token")
    try:
        claims = await asyncio.wait_for(verifier.verify_token(token), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Identity provider did not answer within {timeout}s")
        raise AuthTimeout(f"Identity provider did not answer within {timeout}s")
    except httpx.HTTPError as e:
        logger.error(f"Identity provider call failed: {type(e).__name__}: {e}")
        raise Unauthorized("Token could not be verified")
    if claims is None:
        raise Unauthorized("Invalid token")
    return claims


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer ...`` header value."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def build_verifier() -> TokenVerifier:
    """Introspection when a URL is configured, the static token map otherwise."""
    if INTROSPECTION_URL:
        logger.info(f"Using token introspection at {INTROSPECTION_URL}")
        return IntrospectionVerifier(INTROSPECTION_URL, INTROSPECTION_CLIENT_ID, INTROSPECTION_CLIENT_SECRET)
    logger.info(f"Using static token map ({len(STATIC_TOKENS)} tokens)")
    return StaticTokenVerifier(STATIC_TOKENS)
