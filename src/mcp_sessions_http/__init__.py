"""Resumable multi-session MCP server over Streamable HTTP."""

from .auth import BearerAuthGate, IntrospectionTokenVerifier, TokenVerifier
from .config import ServerConfig, parse_args
from .errors import (
    AuthenticationError,
    EventNotFoundError,
    EventStoreClosedError,
    InsufficientScopeError,
    InvalidRequestError,
    ResumeError,
    SessionNotFoundError,
    StreamNotFoundError,
    TransportError,
    error_response,
)
from .event_store import EventSink, EventStore, InMemoryEventStore, StoredEvent
from .handlers import create_demo_server, register_demo_handlers
from .model import (
    LAST_EVENT_ID_HEADER,
    MCP_SESSION_ID_HEADER,
    STANDALONE_STREAM_ID,
    SessionState,
    generate_session_id,
    is_initialize_request,
)
from .registry import SessionRegistry
from .router import RequestRouter, create_app
from .shutdown import ShutdownCoordinator, ShutdownReport
from .transport import SessionListener, SessionTransport

__all__ = [
    "SessionTransport",
    "SessionListener",
    "SessionState",
    "SessionRegistry",
    "RequestRouter",
    "ShutdownCoordinator",
    "ShutdownReport",
    "EventStore",
    "InMemoryEventStore",
    "StoredEvent",
    "EventSink",
    "BearerAuthGate",
    "TokenVerifier",
    "IntrospectionTokenVerifier",
    "ServerConfig",
    "parse_args",
    "create_app",
    "create_demo_server",
    "register_demo_handlers",
    "generate_session_id",
    "is_initialize_request",
    "error_response",
    "TransportError",
    "InvalidRequestError",
    "SessionNotFoundError",
    "ResumeError",
    "AuthenticationError",
    "InsufficientScopeError",
    "StreamNotFoundError",
    "EventNotFoundError",
    "EventStoreClosedError",
    "MCP_SESSION_ID_HEADER",
    "LAST_EVENT_ID_HEADER",
    "STANDALONE_STREAM_ID",
]
