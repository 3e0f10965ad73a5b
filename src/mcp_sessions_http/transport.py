"""
Streamable HTTP transport for a single MCP session.

One transport exists per client session. It connects an MCP low-level server
to HTTP requests through in-memory streams, records every outgoing message in
the session's event store, and serves responses either as a single JSON body
or as an SSE stream read back from that store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from http import HTTPStatus
from typing import Any, Protocol

import anyio
from anyio.abc import TaskStatus
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.server.lowlevel.server import Server
from mcp.shared.message import ServerMessageMetadata, SessionMessage
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import JSONRPCError, JSONRPCMessage, JSONRPCRequest, JSONRPCResponse
from sse_starlette.sse import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .errors import (
    ConflictError,
    EventNotFoundError,
    EventStoreClosedError,
    InvalidRequestError,
    NotAcceptableError,
    ResumeError,
    StreamNotFoundError,
    TransportError,
)
from .event_store import EventStore, InMemoryEventStore, StoredEvent
from .model import (
    DEFAULT_NEGOTIATED_VERSION,
    LAST_EVENT_ID_HEADER,
    MCP_PROTOCOL_VERSION_HEADER,
    MCP_SESSION_ID_HEADER,
    STANDALONE_STREAM_ID,
    SessionState,
    accepted_media_types,
    generate_session_id,
    is_initialize_request,
    is_valid_session_id,
    parse_last_event_id,
)

logger = logging.getLogger(__name__)


class SessionListener(Protocol):
    def session_established(self, transport: SessionTransport) -> None: ...

    def session_closed(self, transport: SessionTransport) -> None: ...


class SessionTransport:
    def __init__(
        self,
        listener: SessionListener,
        *,
        event_store: EventStore | None = None,
        json_response: bool = False,
        session_id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        self.session_id: str | None = None
        self.state = SessionState.UNINITIALIZED
        self.json_response = json_response
        self._listener = listener
        self._event_store = event_store if event_store is not None else InMemoryEventStore()
        self._session_id_factory = session_id_factory
        self._read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception] | None = None
        self._cancel_scope: anyio.CancelScope | None = None
        self._finished: anyio.Event | None = None
        # request id -> stream id, for requests still waiting on their response
        self._request_streams: dict[str, str] = {}
        self._standalone_attached = False

    @property
    def event_store(self) -> EventStore:
        return self._event_store

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    async def run(
        self,
        app: Server[Any, Any],
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        self._read_stream_writer = read_stream_writer
        self._finished = anyio.Event()
        try:
            async with anyio.create_task_group() as tg:
                self._cancel_scope = tg.cancel_scope
                tg.start_soon(self._route_outgoing, write_stream_reader)
                task_status.started()
                async with read_stream, write_stream:
                    await app.run(read_stream, write_stream, app.create_initialization_options())
                tg.cancel_scope.cancel()
        finally:
            self._mark_closed()
            self._finished.set()

    async def close(self) -> None:
        self._mark_closed()
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
        if self._finished is not None:
            await self._finished.wait()

    async def handle_post(self, request: Request, message: JSONRPCMessage) -> Response:
        self._ensure_open()
        if is_initialize_request(message):
            if self.state is SessionState.ACTIVE:
                raise InvalidRequestError("Invalid Request: Server already initialized")
            await self._establish()
        elif self.state is SessionState.UNINITIALIZED:
            raise InvalidRequestError("Bad Request: Server not initialized")
        else:
            self._validate_protocol_version(request)

        metadata = ServerMessageMetadata(request_context=request)
        root = message.root
        if not isinstance(root, JSONRPCRequest):
            await self._forward(SessionMessage(message, metadata=metadata))
            return Response(status_code=HTTPStatus.ACCEPTED, headers=self._session_headers())

        request_id = str(root.id)
        if request_id in self._request_streams:
            raise ConflictError(f"Conflict: Request ID {request_id} is already in flight")
        stream_id = await self._event_store.create_stream()
        self._request_streams[request_id] = stream_id
        try:
            await self._forward(SessionMessage(message, metadata=metadata))
        except TransportError:
            self._request_streams.pop(request_id, None)
            raise

        if self.json_response:
            return await self._json_reply(stream_id)
        return self._event_source(stream_id, 0)

    async def handle_get(self, request: Request) -> Response:
        self._ensure_active()
        _, has_sse = accepted_media_types(request.headers.get("accept", ""))
        if not has_sse:
            raise NotAcceptableError("Not Acceptable: Client must accept text/event-stream")
        self._validate_protocol_version(request)

        last_event_id = request.headers.get(LAST_EVENT_ID_HEADER)
        if last_event_id:
            cursor, stream_id = self._resolve_cursor(last_event_id)
            logger.info("Client reconnecting to session %s with Last-Event-ID: %s", self.session_id, cursor)
        else:
            stream_id = STANDALONE_STREAM_ID
            cursor = self._event_store.last_cursor(stream_id)
            logger.info("Establishing new SSE stream for session %s", self.session_id)

        if stream_id == STANDALONE_STREAM_ID and self._standalone_attached:
            raise ConflictError("Conflict: Only one SSE stream is allowed per session")
        return self._event_source(stream_id, cursor)

    async def handle_delete(self, request: Request) -> Response:
        self._ensure_active()
        self._validate_protocol_version(request)
        logger.info("Received session termination request for session %s", self.session_id)
        await self.close()
        return Response(status_code=HTTPStatus.OK)

    async def _establish(self) -> None:
        session_id = self._session_id_factory()
        if not is_valid_session_id(session_id):
            raise ValueError("Session ID must only contain visible ASCII characters (0x21-0x7E)")
        await self._event_store.create_stream(STANDALONE_STREAM_ID)
        self.session_id = session_id
        self.state = SessionState.ACTIVE
        logger.info("Session initialized with ID: %s", session_id)
        self._listener.session_established(self)

    def _mark_closed(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        was_active = self.state is SessionState.ACTIVE
        self.state = SessionState.CLOSED
        self._event_store.close()
        self._request_streams.clear()
        if self._read_stream_writer is not None:
            self._read_stream_writer.close()
        if was_active:
            logger.info("Transport closed for session %s", self.session_id)
            self._listener.session_closed(self)

    async def _forward(self, session_message: SessionMessage) -> None:
        writer = self._read_stream_writer
        if writer is None:
            raise RuntimeError("Transport is not running. Ensure run() is started first.")
        try:
            await writer.send(session_message)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            raise InvalidRequestError("Bad Request: Session has been terminated") from exc

    async def _route_outgoing(self, write_stream_reader: MemoryObjectReceiveStream[SessionMessage]) -> None:
        async with write_stream_reader:
            async for session_message in write_stream_reader:
                message = session_message.message
                stream_id, closes_stream = self._target_stream(session_message)
                try:
                    await self._event_store.append(stream_id, message, closes_stream=closes_stream)
                except EventStoreClosedError:
                    logger.debug("Dropping message for closed session %s", self.session_id)
                    return
                except ValueError:
                    logger.warning("Dropping message for finished stream %s", stream_id)

    def _target_stream(self, session_message: SessionMessage) -> tuple[str, bool]:
        root = session_message.message.root
        if isinstance(root, JSONRPCResponse | JSONRPCError):
            stream_id = self._request_streams.pop(str(root.id), None)
            if stream_id is not None:
                return stream_id, True
            return STANDALONE_STREAM_ID, False

        metadata = session_message.metadata
        if isinstance(metadata, ServerMessageMetadata) and metadata.related_request_id is not None:
            stream_id = self._request_streams.get(str(metadata.related_request_id))
            if stream_id is not None:
                return stream_id, False
        return STANDALONE_STREAM_ID, False

    async def _json_reply(self, stream_id: str) -> Response:
        reply: JSONRPCMessage | None = None

        async def collect(event: StoredEvent) -> None:
            nonlocal reply
            if isinstance(event.message.root, JSONRPCResponse | JSONRPCError):
                reply = event.message
            else:
                logger.debug("Skipping %s in JSON response mode", type(event.message.root).__name__)

        try:
            await self._event_store.replay_from(stream_id, 0, collect)
        except StreamNotFoundError as exc:
            raise InvalidRequestError("Bad Request: Session has been terminated") from exc
        if reply is None:
            if self.is_closed:
                raise InvalidRequestError("Bad Request: Session has been terminated")
            raise RuntimeError("Reply stream ended before a response was produced")
        return JSONResponse(
            reply.model_dump(by_alias=True, mode="json", exclude_none=True),
            headers=self._session_headers(),
        )

    def _event_source(self, stream_id: str, cursor: int) -> EventSourceResponse:
        send_stream, receive_stream = anyio.create_memory_object_stream[dict[str, str]](0)
        standalone = stream_id == STANDALONE_STREAM_ID

        async def send_event(event: StoredEvent) -> None:
            await send_stream.send(
                {
                    "event": "message",
                    "data": event.message.model_dump_json(by_alias=True, exclude_none=True),
                    "id": event.event_id,
                }
            )

        async def sse_writer() -> None:
            if standalone:
                self._standalone_attached = True
            try:
                async with send_stream:
                    await self._event_store.replay_from(stream_id, cursor, send_event)
            except Exception:
                # Headers are already sent; ending the stream is all that is left.
                logger.exception("Error in SSE writer for session %s", self.session_id)
            finally:
                if standalone:
                    self._standalone_attached = False

        return EventSourceResponse(
            content=receive_stream,
            data_sender_callable=sse_writer,
            headers=self._session_headers(),
        )

    def _resolve_cursor(self, last_event_id: str) -> tuple[int, str]:
        try:
            cursor = parse_last_event_id(last_event_id)
        except ValueError as exc:
            raise ResumeError(f"Bad Request: Invalid Last-Event-ID: {last_event_id}") from exc
        if cursor == 0:
            return cursor, STANDALONE_STREAM_ID
        try:
            return cursor, self._event_store.stream_for_cursor(cursor)
        except EventNotFoundError as exc:
            raise ResumeError(f"Bad Request: Unknown Last-Event-ID: {last_event_id}") from exc

    def _validate_protocol_version(self, request: Request) -> None:
        protocol_version = request.headers.get(MCP_PROTOCOL_VERSION_HEADER, DEFAULT_NEGOTIATED_VERSION)
        if protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
            supported_versions = ", ".join(SUPPORTED_PROTOCOL_VERSIONS)
            raise InvalidRequestError(
                f"Bad Request: Unsupported protocol version: {protocol_version}. "
                f"Supported versions: {supported_versions}"
            )

    def _session_headers(self) -> dict[str, str]:
        return {MCP_SESSION_ID_HEADER: self.session_id} if self.session_id else {}

    def _ensure_open(self) -> None:
        if self.state is SessionState.CLOSED:
            raise InvalidRequestError("Bad Request: Session has been terminated")

    def _ensure_active(self) -> None:
        self._ensure_open()
        if self.state is not SessionState.ACTIVE:
            raise InvalidRequestError("Bad Request: Server not initialized")
