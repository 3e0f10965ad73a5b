from __future__ import annotations

import re
import secrets
from enum import Enum

from mcp.types import InitializeRequest, JSONRPCMessage, JSONRPCRequest
from pydantic import ValidationError

MCP_SESSION_ID_HEADER = "mcp-session-id"
MCP_PROTOCOL_VERSION_HEADER = "mcp-protocol-version"
LAST_EVENT_ID_HEADER = "last-event-id"

CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_SSE = "text/event-stream"

DEFAULT_NEGOTIATED_VERSION = "2025-03-26"

MAXIMUM_MESSAGE_SIZE = 4 * 1024 * 1024

# Server-initiated messages without a related request land here.
STANDALONE_STREAM_ID = "_GET_stream"

# Visible ASCII only (0x21-0x7E).
SESSION_ID_PATTERN = re.compile(r"^[\x21-\x7E]+$")


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


def generate_session_id(prefix: str = "sess-") -> str:
    return f"{prefix}{secrets.token_hex(16)}"


def generate_stream_id(prefix: str = "stream-") -> str:
    return f"{prefix}{secrets.token_hex(8)}"


def is_valid_session_id(session_id: str) -> bool:
    return bool(SESSION_ID_PATTERN.fullmatch(session_id))


def is_initialize_request(message: JSONRPCMessage) -> bool:
    root = message.root
    if not isinstance(root, JSONRPCRequest) or root.method != "initialize":
        return False
    try:
        InitializeRequest.model_validate({"method": root.method, "params": root.params})
    except ValidationError:
        return False
    return True


def parse_last_event_id(value: str) -> int:
    """Cursor carried by a ``Last-Event-ID`` header; raises ValueError if malformed."""
    cursor = int(value.strip())
    if cursor < 0:
        raise ValueError(f"Negative event id: {value}")
    return cursor


def accepted_media_types(accept_header: str) -> tuple[bool, bool]:
    accept_types = [media_type.strip() for media_type in accept_header.split(",")]
    has_json = any(
        media_type.startswith(CONTENT_TYPE_JSON) or media_type.startswith("*/*")
        for media_type in accept_types
    )
    has_sse = any(
        media_type.startswith(CONTENT_TYPE_SSE) or media_type.startswith("*/*")
        for media_type in accept_types
    )
    return has_json, has_sse


def is_json_content_type(content_type: str) -> bool:
    parts = [part.strip() for part in content_type.split(";")[0].split(",")]
    return any(part == CONTENT_TYPE_JSON for part in parts)
