from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.lowlevel.server import Server

from .errors import SessionNotFoundError
from .event_store import EventStore, InMemoryEventStore
from .model import SessionState, generate_session_id
from .transport import SessionTransport

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class SessionRegistry:
    """Live session transports by session id.

    Transports become visible only once they report ``session_established``,
    so a lookup can never observe a session whose id is not final yet.
    """

    def __init__(
        self,
        app_factory: Callable[[], Server[Any, Any]],
        *,
        json_response: bool = False,
        event_store_factory: Callable[[], EventStore] = InMemoryEventStore,
        session_id_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        self._app_factory = app_factory
        self._json_response = json_response
        self._event_store_factory = event_store_factory
        self._session_id_factory = session_id_factory
        self._sessions: dict[str, SessionTransport] = {}
        self._task_group: TaskGroup | None = None

    @asynccontextmanager
    async def run(self) -> AsyncIterator[SessionRegistry]:
        if self._task_group is not None:
            raise RuntimeError("Session registry is already running")
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Session registry started")
            try:
                yield self
            finally:
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.info("Session registry stopped")

    async def create_and_register(
        self, initialize: Callable[[SessionTransport], Awaitable[_T]]
    ) -> _T:
        if self._task_group is None:
            raise RuntimeError("Session registry is not running. Use 'async with registry.run()'.")

        transport = SessionTransport(
            self,
            event_store=self._event_store_factory(),
            json_response=self._json_response,
            session_id_factory=self._session_id_factory,
        )
        await self._task_group.start(self._run_transport, transport)
        try:
            result = await initialize(transport)
        except BaseException:
            if not self._is_registered(transport):
                with anyio.CancelScope(shield=True):
                    await transport.close()
            raise
        if transport.state is SessionState.UNINITIALIZED:
            await transport.close()
            raise RuntimeError("Initialization finished without establishing a session")
        return result

    async def _run_transport(
        self,
        transport: SessionTransport,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        try:
            await transport.run(self._app_factory(), task_status=task_status)
        except Exception:
            logger.exception("Session %s crashed", transport.session_id)

    def lookup(self, session_id: str) -> SessionTransport:
        transport = self._sessions.get(session_id)
        if transport is None:
            raise SessionNotFoundError(session_id)
        return transport

    def remove(self, session_id: str | None) -> None:
        if session_id is None:
            return
        if self._sessions.pop(session_id, None) is not None:
            logger.info("Removed session %s from registry", session_id)

    def snapshot(self) -> list[SessionTransport]:
        return list(self._sessions.values())

    def session_established(self, transport: SessionTransport) -> None:
        session_id = transport.session_id
        if session_id is None:
            raise ValueError("Cannot register a transport without a session id")
        if session_id in self._sessions:
            raise ValueError(f"Session {session_id} is already registered")
        self._sessions[session_id] = transport

    def session_closed(self, transport: SessionTransport) -> None:
        if self._is_registered(transport):
            self.remove(transport.session_id)

    def _is_registered(self, transport: SessionTransport) -> bool:
        return transport.session_id is not None and self._sessions.get(transport.session_id) is transport

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
