"""
HTTP entry point for the MCP endpoint.

The router classifies each request from the session header and the payload
shape alone, resolves or creates the session, and hands the request to that
session's transport. Classification failures are answered before anything is
created or stored.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any

from mcp.server.lowlevel.server import Server
from mcp.types import JSONRPCMessage
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .auth import BearerAuthGate, IntrospectionTokenVerifier
from .config import ServerConfig
from .errors import (
    InvalidRequestError,
    NotAcceptableError,
    ParseError,
    PayloadTooLargeError,
    TransportError,
    UnsupportedMediaTypeError,
    ValidationFailedError,
    internal_error_response,
)
from .handlers import create_demo_server
from .model import (
    MAXIMUM_MESSAGE_SIZE,
    MCP_SESSION_ID_HEADER,
    accepted_media_types,
    is_initialize_request,
    is_json_content_type,
)
from .registry import SessionRegistry
from .shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


class RequestRouter:
    def __init__(
        self,
        registry: SessionRegistry,
        *,
        auth: BearerAuthGate | None = None,
        log_request_bodies: bool = False,
    ) -> None:
        self._registry = registry
        self._auth = auth
        self._log_request_bodies = log_request_bodies

    async def handle(self, request: Request) -> Response:
        try:
            if self._auth is not None:
                access_token = await self._auth.authenticate(request)
                request.state.access_token = access_token
                logger.info("Authenticated principal: %s", access_token.client_id)

            if request.method == "POST":
                return await self._handle_post(request)
            if request.method == "GET":
                return await self._handle_get(request)
            if request.method == "DELETE":
                return await self._handle_delete(request)
            return Response(status_code=HTTPStatus.METHOD_NOT_ALLOWED, headers={"Allow": "GET, POST, DELETE"})
        except TransportError as e:
            logger.info("Rejected %s request: %s", request.method, e.message)
            return e.to_response()
        except Exception:
            logger.exception("Error handling MCP request")
            return internal_error_response()

    async def _handle_post(self, request: Request) -> Response:
        has_json, has_sse = accepted_media_types(request.headers.get("accept", ""))
        if not (has_json and has_sse):
            raise NotAcceptableError(
                "Not Acceptable: Client must accept both application/json and text/event-stream"
            )
        if not is_json_content_type(request.headers.get("content-type", "")):
            raise UnsupportedMediaTypeError("Unsupported Media Type: Content-Type must be application/json")

        message = await self._read_message(request)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if session_id:
            logger.info("Received MCP request for session: %s", session_id)
            transport = self._registry.lookup(session_id)
            return await transport.handle_post(request, message)

        if self._log_request_bodies:
            logger.info("Request body: %s", message.model_dump_json(by_alias=True, exclude_none=True))
        if is_initialize_request(message):
            return await self._registry.create_and_register(
                lambda transport: transport.handle_post(request, message)
            )
        raise InvalidRequestError("Bad Request: No valid session ID provided")

    async def _handle_get(self, request: Request) -> Response:
        transport = self._registry.lookup(self._require_session_id(request))
        return await transport.handle_get(request)

    async def _handle_delete(self, request: Request) -> Response:
        transport = self._registry.lookup(self._require_session_id(request))
        return await transport.handle_delete(request)

    def _require_session_id(self, request: Request) -> str:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            raise InvalidRequestError("Bad Request: No valid session ID provided")
        return session_id

    async def _read_message(self, request: Request) -> JSONRPCMessage:
        body = await request.body()
        if len(body) > MAXIMUM_MESSAGE_SIZE:
            raise PayloadTooLargeError("Payload Too Large: Message exceeds maximum size")
        try:
            raw_message = json.loads(body)
        except json.JSONDecodeError as e:
            raise ParseError(f"Parse error: {e!s}") from e
        try:
            return JSONRPCMessage.model_validate(raw_message)
        except ValidationError as e:
            raise ValidationFailedError(f"Validation error: {e!s}") from e


def build_auth_gate(config: ServerConfig) -> BearerAuthGate | None:
    if not config.oauth:
        return None
    verifier = IntrospectionTokenVerifier(config.auth_introspection_endpoint())
    return BearerAuthGate(
        verifier,
        required_scopes=config.required_scopes,
        resource_metadata_url=config.resource_metadata_url,
        expected_resource=config.server_url if config.oauth_strict else None,
    )


def create_app(
    config: ServerConfig | None = None,
    app_factory: Callable[[], Server[Any, Any]] = create_demo_server,
    *,
    auth: BearerAuthGate | None = None,
) -> Starlette:
    config = config or ServerConfig()
    registry = SessionRegistry(app_factory, json_response=config.json_response)
    auth = auth if auth is not None else build_auth_gate(config)
    router = RequestRouter(registry, auth=auth, log_request_bodies=config.dangerous_logging)
    coordinator = ShutdownCoordinator(registry, close_timeout=config.close_timeout)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with registry.run():
            try:
                yield
            finally:
                await coordinator.shutdown()

    routes = [Route(config.path, endpoint=router.handle, methods=["GET", "POST", "DELETE"])]
    if config.oauth:

        async def protected_resource_metadata(request: Request) -> JSONResponse:
            return JSONResponse(
                {
                    "resource": config.server_url,
                    "authorization_servers": [config.authorization_server] if config.authorization_server else [],
                    "scopes_supported": list(config.required_scopes) or ["mcp:tools"],
                    "resource_name": "MCP Demo Server",
                }
            )

        routes.append(
            Route(f"/.well-known/oauth-protected-resource{config.path}", endpoint=protected_resource_metadata)
        )

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.registry = registry
    app.state.coordinator = coordinator
    return app
