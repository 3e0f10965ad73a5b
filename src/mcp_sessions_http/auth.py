from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import httpx
from mcp.server.auth.provider import AccessToken
from starlette.requests import Request

from .errors import AuthenticationError, InsufficientScopeError

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenVerifier(Protocol):
    async def verify_token(self, token: str) -> AccessToken | None: ...


class IntrospectionTokenVerifier:
    """Resolves bearer tokens through an RFC 7662 introspection endpoint."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._client = client

    async def verify_token(self, token: str) -> AccessToken | None:
        try:
            if self._client is not None:
                response = await self._introspect(self._client, token)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._introspect(client, token)
        except httpx.HTTPError as e:
            logger.warning("Token introspection request failed: %s", e)
            return None

        if not response.is_success:
            logger.info("Invalid or expired token: %s", response.text)
            return None

        data = response.json()
        if data.get("active") is False:
            return None
        scope = data.get("scope") or ""
        audience = data.get("aud")
        return AccessToken(
            token=token,
            client_id=str(data.get("client_id") or ""),
            scopes=scope.split(),
            expires_at=data.get("exp"),
            resource=audience if isinstance(audience, str) else None,
        )

    async def _introspect(self, client: httpx.AsyncClient, token: str) -> httpx.Response:
        return await client.post(
            self._endpoint,
            data={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )


class BearerAuthGate:
    def __init__(
        self,
        verifier: TokenVerifier,
        *,
        required_scopes: Sequence[str] = (),
        resource_metadata_url: str | None = None,
        expected_resource: str | None = None,
    ) -> None:
        self._verifier = verifier
        self._required_scopes = list(required_scopes)
        self._resource_metadata_url = resource_metadata_url
        # Only set in strict mode: tokens must be issued for this server.
        self._expected_resource = expected_resource

    async def authenticate(self, request: Request) -> AccessToken:
        scheme, _, credential = request.headers.get("authorization", "").partition(" ")
        credential = credential.strip()
        if scheme.lower() != "bearer" or not credential:
            raise self._reject(AuthenticationError, "Missing Authorization header")

        access_token = await self._verifier.verify_token(credential)
        if access_token is None:
            raise self._reject(AuthenticationError, "Invalid or expired token")
        if access_token.expires_at is not None and access_token.expires_at < time.time():
            raise self._reject(AuthenticationError, "Token has expired")
        if self._expected_resource is not None and access_token.resource != self._expected_resource:
            raise self._reject(AuthenticationError, "Token was not issued for this resource")

        missing = [scope for scope in self._required_scopes if scope not in access_token.scopes]
        if missing:
            raise self._reject(InsufficientScopeError, "Insufficient scope")
        return access_token

    def _reject(self, error_cls: type[AuthenticationError], description: str) -> AuthenticationError:
        challenge = f'Bearer error="{error_cls.oauth_error}", error_description="{description}"'
        if self._resource_metadata_url:
            challenge += f', resource_metadata="{self._resource_metadata_url}"'
        return error_cls(description, headers={"WWW-Authenticate": challenge})
