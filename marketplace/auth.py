"""
Identity collaborator: verify a bearer token with the identity provider, then load
the caller's user record so handlers see (uid, userType).
"""
import logging
from dataclasses import dataclass, field

import httpx

from marketplace.config import settings

logger = logging.getLogger(__name__)


@dataclass
class Actor:
    uid: str
    user_type: str
    email: str | None = None
    profile: dict = field(default_factory=dict)


class AuthenticationError(Exception):
    """Token missing, invalid or expired (401)."""


class HttpIdentityProvider:
    """Token introspection over HTTP: GET {base}/auth/verify -> {uid, claims}."""

    def __init__(self, api_base: str | None = None, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self._api_base = api_base
        self._timeout = timeout
        self._transport = transport

    async def verify_token(self, token: str) -> dict:
        if not self._api_base:
            raise AuthenticationError("Identity provider is not configured")
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.get(
                    f"{self._api_base}/auth/verify",
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            logger.warning("Identity provider unreachable: %s", e)
            raise AuthenticationError("Authentication failed") from e
        if resp.status_code != 200:
            raise AuthenticationError("Invalid token")
        data = resp.json()
        if not data.get("uid"):
            raise AuthenticationError("Invalid token")
        return {"uid": data["uid"], "claims": data.get("claims") or {}}


def get_identity_provider() -> HttpIdentityProvider:
    return HttpIdentityProvider(settings.identity_api_base)
