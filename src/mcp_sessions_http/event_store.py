"""
Per-session event log used to resume dropped SSE streams.

Every outgoing message is appended under the stream it was addressed to and
gets a cursor from a single counter, so cursors strictly increase within each
stream and a bare cursor is enough to find its stream again. Followers read
the log by position, which lets appends proceed while a replay is running
without losing or repeating events.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import anyio
from mcp.types import JSONRPCMessage

from .errors import EventNotFoundError, EventStoreClosedError, StreamNotFoundError
from .model import generate_stream_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredEvent:
    cursor: int
    stream_id: str
    message: JSONRPCMessage

    @property
    def event_id(self) -> str:
        return str(self.cursor)


EventSink = Callable[[StoredEvent], Awaitable[None]]


@runtime_checkable
class EventStore(Protocol):
    async def create_stream(self, stream_id: str | None = None) -> str: ...

    async def append(
        self, stream_id: str, message: JSONRPCMessage, *, closes_stream: bool = False
    ) -> int: ...

    async def replay_from(self, stream_id: str, cursor: int, sink: EventSink) -> None: ...

    def stream_for_cursor(self, cursor: int) -> str: ...

    def last_cursor(self, stream_id: str) -> int: ...

    def close(self) -> None: ...


class _StreamLog:
    def __init__(self, stream_id: str) -> None:
        self.stream_id = stream_id
        self.events: list[StoredEvent] = []
        self.cursors: list[int] = []
        self.sealed = False
        self._changed = anyio.Event()

    def add(self, event: StoredEvent) -> None:
        self.events.append(event)
        self.cursors.append(event.cursor)

    def notify(self) -> None:
        changed, self._changed = self._changed, anyio.Event()
        changed.set()

    async def wait(self) -> None:
        await self._changed.wait()


class InMemoryEventStore:
    def __init__(self) -> None:
        self._streams: dict[str, _StreamLog] = {}
        self._stream_by_cursor: dict[int, str] = {}
        self._last_cursor = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def create_stream(self, stream_id: str | None = None) -> str:
        self._check_open()
        stream_id = stream_id or generate_stream_id()
        if stream_id not in self._streams:
            self._streams[stream_id] = _StreamLog(stream_id)
        return stream_id

    async def append(
        self, stream_id: str, message: JSONRPCMessage, *, closes_stream: bool = False
    ) -> int:
        self._check_open()
        log = self._streams.get(stream_id)
        if log is None:
            log = self._streams[stream_id] = _StreamLog(stream_id)
        if log.sealed:
            raise ValueError(f"Stream {stream_id} no longer accepts events")

        self._last_cursor += 1
        cursor = self._last_cursor
        log.add(StoredEvent(cursor=cursor, stream_id=stream_id, message=message))
        self._stream_by_cursor[cursor] = stream_id
        if closes_stream:
            log.sealed = True
        log.notify()
        logger.debug("Stored event %d on stream %s", cursor, stream_id)
        return cursor

    async def replay_from(self, stream_id: str, cursor: int, sink: EventSink) -> None:
        if cursor < 0:
            raise ValueError(f"Cursor must be non-negative, got {cursor}")
        log = self._streams.get(stream_id)
        if log is None:
            raise StreamNotFoundError(stream_id)

        position = bisect.bisect_right(log.cursors, cursor)
        try:
            while not self._closed:
                while position < len(log.events) and not self._closed:
                    event = log.events[position]
                    position += 1
                    await sink(event)
                if self._closed or (log.sealed and position >= len(log.events)):
                    return
                await log.wait()
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("Sink for stream %s closed, stopping delivery", stream_id)

    def stream_for_cursor(self, cursor: int) -> str:
        stream_id = self._stream_by_cursor.get(cursor)
        if stream_id is None:
            raise EventNotFoundError(cursor)
        return stream_id

    def last_cursor(self, stream_id: str) -> int:
        log = self._streams.get(stream_id)
        if log is None:
            raise StreamNotFoundError(stream_id)
        return log.cursors[-1] if log.cursors else 0

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for log in self._streams.values():
            log.notify()
        self._streams.clear()
        self._stream_by_cursor.clear()

    def _check_open(self) -> None:
        if self._closed:
            raise EventStoreClosedError("Event store has been closed")
