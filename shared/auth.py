"""
Bearer-token validation against the identity service.

Catalog and list services never check signatures themselves; they hand the
token to ``user-service`` and trust its answer.
"""

from typing import Any, Dict, Optional

import httpx

from shared.errors import AuthenticationError, ServiceUnavailableError
from shared.logging import get_logger, set_user_context
from shared.registry import ServiceRegistry
from shared.results import ErrorKind, decode_envelope

IDENTITY_SERVICE = "user-service"


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Token required")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthenticationError("Token required")
    return token


class AuthClient:
    """Client for the identity service's token validation endpoint."""

    def __init__(self, registry: ServiceRegistry, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.registry = registry
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("auth_client")

    async def validate(self, authorization: Optional[str]) -> Dict[str, Any]:
        """Return the user behind ``authorization`` or raise."""
        token = extract_bearer_token(authorization)

        try:
            service = await self.registry.lookup(IDENTITY_SERVICE)
        except ServiceUnavailableError as e:
            self.logger.warning("Identity service not discoverable", error=e.message)
            raise ServiceUnavailableError(IDENTITY_SERVICE, "Authentication service unavailable")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{service.url}/auth/validate", json={"token": token})
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error("Identity service call failed", error=str(e))
            raise ServiceUnavailableError(IDENTITY_SERVICE, "Authentication service unavailable")

        result = decode_envelope(IDENTITY_SERVICE, response.status_code, body)
        if result.ok:
            user = (result.value or {}).get("user")
            if not user:
                raise AuthenticationError("Invalid token")
            set_user_context(user.get("id"))
            return user

        if result.kind == ErrorKind.REJECTED:
            raise AuthenticationError("Invalid token")
        raise ServiceUnavailableError(IDENTITY_SERVICE, "Authentication service unavailable")
