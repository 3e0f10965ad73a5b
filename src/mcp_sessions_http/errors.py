"""
Errors raised while classifying and serving MCP requests.

Transport errors carry the HTTP status, the JSON-RPC error code and any
extra headers needed to render them, so the router can turn each one into a
response without knowing where it was raised.
"""

from __future__ import annotations

from http import HTTPStatus

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, PARSE_ERROR
from starlette.responses import JSONResponse


class TransportError(Exception):
    status_code: int = HTTPStatus.BAD_REQUEST
    code: int = INVALID_REQUEST

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.headers = dict(headers) if headers else {}

    def to_response(self, headers: dict[str, str] | None = None) -> JSONResponse:
        return error_response(
            self.message,
            self.status_code,
            self.code,
            headers={**self.headers, **(headers or {})},
        )


class InvalidRequestError(TransportError):
    pass


class ParseError(InvalidRequestError):
    code = PARSE_ERROR


class ValidationFailedError(InvalidRequestError):
    code = INVALID_PARAMS


class SessionNotFoundError(InvalidRequestError):
    def __init__(self, session_id: str | None = None) -> None:
        super().__init__("Bad Request: No valid session ID provided")
        self.session_id = session_id


class ResumeError(InvalidRequestError):
    pass


class NotAcceptableError(TransportError):
    status_code = HTTPStatus.NOT_ACCEPTABLE


class UnsupportedMediaTypeError(TransportError):
    status_code = HTTPStatus.UNSUPPORTED_MEDIA_TYPE


class PayloadTooLargeError(TransportError):
    status_code = HTTPStatus.REQUEST_ENTITY_TOO_LARGE


class ConflictError(TransportError):
    status_code = HTTPStatus.CONFLICT


class AuthenticationError(TransportError):
    """Bearer credential missing or rejected; rendered as an OAuth error body."""

    status_code = HTTPStatus.UNAUTHORIZED
    oauth_error = "invalid_token"

    def to_response(self, headers: dict[str, str] | None = None) -> JSONResponse:
        return JSONResponse(
            {"error": self.oauth_error, "error_description": self.message},
            status_code=self.status_code,
            headers={**self.headers, **(headers or {})},
        )


class InsufficientScopeError(AuthenticationError):
    status_code = HTTPStatus.FORBIDDEN
    oauth_error = "insufficient_scope"


class StreamNotFoundError(LookupError):
    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream not found: {stream_id}")
        self.stream_id = stream_id


class EventNotFoundError(LookupError):
    def __init__(self, cursor: int) -> None:
        super().__init__(f"Event not found: {cursor}")
        self.cursor = cursor


class EventStoreClosedError(RuntimeError):
    pass


def error_response(
    message: str,
    status_code: int = HTTPStatus.BAD_REQUEST,
    code: int = INVALID_REQUEST,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    # No request id is available at this level, so the correlation id is null.
    body = {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": None,
    }
    return JSONResponse(body, status_code=status_code, headers=headers)


def internal_error_response(message: str = "Internal server error") -> JSONResponse:
    return error_response(message, HTTPStatus.INTERNAL_SERVER_ERROR, INTERNAL_ERROR)
