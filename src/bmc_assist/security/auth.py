"""Bearer token authentication against the Supabase auth service.

Feature-flagged via ``ENABLE_AUTH``. When disabled, ``get_current_user``
returns ``None`` and every request is served anonymously.

Tokens are verified on every request with no caching, so a revoked token is
rejected on the very next call.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from fastapi import Request

from ..errors import Unauthenticated
from ..http_client import get_http_client
from ..observability.logging import set_log_context
from ..observability.metrics import record_rejection

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity resolved from a valid bearer token.

    Obtained per request and never cached.
    """
    id: str
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def extract_bearer_token(authorization_header: Optional[str]) -> Optional[str]:
    """Return the token from ``Bearer <token>``, or None if malformed."""
    if not authorization_header or not authorization_header.startswith(BEARER_PREFIX):
        return None
    token = authorization_header[len(BEARER_PREFIX):].strip()
    return token or None


class IdentityVerifier:
    """Exchanges bearer tokens for users via ``GET /auth/v1/user``."""

    def __init__(
        self,
        base_url: Optional[str],
        service_key: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.service_key = service_key
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.service_key)

    async def verify(self, authorization_header: Optional[str]) -> Optional[AuthenticatedUser]:
        """Resolve the caller's identity.

        Returns ``None`` (never raises) when the header is missing or
        malformed, the service credentials are not configured, or the auth
        service rejects the token or cannot be reached.
        """
        token = extract_bearer_token(authorization_header)
        if token is None:
            return None

        if not self.configured:
            logger.error("Auth service URL or service credential not configured")
            return None

        client = self._client or get_http_client()
        try:
            response = await client.get(
                f"{self.base_url}/auth/v1/user",
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {token}",
                },
            )
        except httpx.HTTPError as e:
            logger.warning("Auth service request failed: %s", e)
            return None

        if response.status_code != 200:
            logger.info("Auth service rejected token (status %s)", response.status_code)
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Auth service returned a non-JSON body")
            return None

        if not isinstance(payload, dict):
            return None
        # Some deployments wrap the user as {"user": {...}}
        user = payload.get("user") if isinstance(payload.get("user"), dict) else payload
        user_id = user.get("id")
        if not user_id:
            return None

        return AuthenticatedUser(
            id=str(user_id),
            email=user.get("email"),
            metadata=user.get("user_metadata") or {},
        )


def get_identity_verifier(request: Request) -> IdentityVerifier:
    return request.app.state.identity_verifier


async def get_current_user(request: Request) -> Optional[AuthenticatedUser]:
    """FastAPI dependency: the verified caller, or None when auth is disabled.

    Raises ``Unauthenticated`` (401) when auth is enabled and the bearer
    token does not resolve to a user.
    """
    settings = request.app.state.settings
    if not settings.enable_auth:
        return None

    verifier = get_identity_verifier(request)
    user = await verifier.verify(request.headers.get("authorization"))
    if user is None:
        record_rejection("unauthenticated")
        raise Unauthenticated()

    set_log_context(user_id=user.id)
    return user
