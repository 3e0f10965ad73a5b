import anyio
import pytest
from mcp.types import JSONRPCMessage
from starlette.requests import Request

from mcp_sessions_http.errors import SessionNotFoundError
from mcp_sessions_http.handlers import create_demo_server
from mcp_sessions_http.model import SessionState
from mcp_sessions_http.registry import SessionRegistry

INITIALIZE = JSONRPCMessage.model_validate(
    {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": "2025-03-26",
            "capabilities": {},
            "clientInfo": {"name": "test-client", "version": "1.0"},
        },
    }
)


def post_request() -> Request:
    headers = [(b"accept", b"application/json, text/event-stream"), (b"content-type", b"application/json")]
    return Request({"type": "http", "method": "POST", "path": "/mcp", "headers": headers, "query_string": b""})


def initialize(transport):
    return transport.handle_post(post_request(), INITIALIZE)


@pytest.fixture
def registry():
    return SessionRegistry(create_demo_server, json_response=True)


def test_unknown_session_lookup_fails(registry):
    with pytest.raises(SessionNotFoundError) as exc_info:
        registry.lookup("sess-unknown")
    assert exc_info.value.status_code == 400


def test_remove_is_idempotent(registry):
    registry.remove("sess-unknown")
    registry.remove(None)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_create_requires_running_registry(registry):
    with pytest.raises(RuntimeError):
        await registry.create_and_register(initialize)


@pytest.mark.asyncio
async def test_run_cannot_be_nested(registry):
    async with registry.run():
        with pytest.raises(RuntimeError):
            async with registry.run():
                pass


@pytest.mark.asyncio
async def test_session_is_registered_only_after_it_is_established(registry):
    seen_before = []

    async def checked_initialize(transport):
        seen_before.append(len(registry))
        response = await initialize(transport)
        assert transport.session_id in registry
        return response

    async with registry.run():
        response = await registry.create_and_register(checked_initialize)
        session_id = response.headers["mcp-session-id"]

        assert seen_before == [0]
        assert registry.lookup(session_id).state is SessionState.ACTIVE
        await registry.lookup(session_id).close()

    assert len(registry) == 0


@pytest.mark.asyncio
async def test_concurrent_initializations_get_distinct_sessions(registry):
    session_ids = []

    async def open_session():
        response = await registry.create_and_register(initialize)
        session_ids.append(response.headers["mcp-session-id"])

    async with registry.run():
        async with anyio.create_task_group() as tg:
            for _ in range(5):
                tg.start_soon(open_session)

        assert len(set(session_ids)) == 5
        assert len(registry) == 5
        for transport in registry.snapshot():
            await transport.close()

    assert len(registry) == 0


@pytest.mark.asyncio
async def test_failed_initialization_leaves_nothing_behind(registry):
    created = []

    async def failing_initialize(transport):
        created.append(transport)
        raise ValueError("boom")

    async with registry.run():
        with pytest.raises(ValueError):
            await registry.create_and_register(failing_initialize)

        assert len(registry) == 0
        assert created[0].is_closed


@pytest.mark.asyncio
async def test_initialization_that_never_establishes_is_an_error(registry):
    created = []

    async def noop_initialize(transport):
        created.append(transport)

    async with registry.run():
        with pytest.raises(RuntimeError):
            await registry.create_and_register(noop_initialize)

        assert len(registry) == 0
        assert created[0].is_closed


@pytest.mark.asyncio
async def test_closed_session_is_removed(registry):
    async with registry.run():
        response = await registry.create_and_register(initialize)
        session_id = response.headers["mcp-session-id"]
        transport = registry.lookup(session_id)

        await transport.close()

        assert session_id not in registry
        with pytest.raises(SessionNotFoundError):
            registry.lookup(session_id)


@pytest.mark.asyncio
async def test_duplicate_establishment_is_refused(registry):
    async with registry.run():
        response = await registry.create_and_register(initialize)
        transport = registry.lookup(response.headers["mcp-session-id"])

        with pytest.raises(ValueError):
            registry.session_established(transport)
        await transport.close()


@pytest.mark.asyncio
async def test_colliding_session_id_is_closed_and_original_kept():
    registry = SessionRegistry(create_demo_server, json_response=True, session_id_factory=lambda: "sess-fixed")
    created = []

    async def recording_initialize(transport):
        created.append(transport)
        return await initialize(transport)

    async with registry.run():
        await registry.create_and_register(recording_initialize)
        with pytest.raises(ValueError):
            await registry.create_and_register(recording_initialize)

        original, duplicate = created
        assert duplicate.is_closed
        assert not original.is_closed
        assert registry.lookup("sess-fixed") is original
        assert len(registry) == 1
        await original.close()
