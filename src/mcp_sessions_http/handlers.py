"""Example tools, prompts and resources served by the CLI."""

from __future__ import annotations

from typing import Any

import anyio
import mcp.types as types
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.lowlevel.server import Server
from pydantic import AnyUrl

SERVER_NAME = "simple-streamable-http-server"
SERVER_VERSION = "1.0.0"

GREETING_URI = "https://example.com/greetings/default"

RESOURCES: dict[str, tuple[str, str, str]] = {
    GREETING_URI: ("greeting-resource", "A simple greeting resource", "Hello, world!"),
    "file:///example/file1.txt": (
        "example-file-1",
        "First example file for ResourceLink demonstration",
        "This is the content of file 1",
    ),
    "file:///example/file2.txt": (
        "example-file-2",
        "Second example file for ResourceLink demonstration",
        "This is the content of file 2",
    ),
}


def create_demo_server() -> Server[Any, Any]:
    server: Server[Any, Any] = Server(SERVER_NAME, version=SERVER_VERSION)
    register_demo_handlers(server)
    return server


def register_demo_handlers(low_level_server: Server[Any, Any]) -> None:
    @low_level_server.list_tools()
    async def handle_list_tools() -> list[types.Tool]:
        return [
            types.Tool(
                name="greet",
                description="A simple greeting tool",
                inputSchema={
                    "type": "object",
                    "properties": {"name": {"type": "string", "description": "Name to greet"}},
                    "required": ["name"],
                },
            ),
            types.Tool(
                name="notify",
                description="Sends a series of log notifications tied to this call",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "count": {"type": "integer", "minimum": 1, "default": 3},
                        "interval": {"type": "number", "minimum": 0, "default": 0.1},
                    },
                },
            ),
        ]

    @low_level_server.call_tool()
    async def handle_call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        if name == "greet":
            return [types.TextContent(type="text", text=f"Hello, {arguments['name']}!")]
        if name == "notify":
            count = int(arguments.get("count", 3))
            interval = float(arguments.get("interval", 0.1))
            ctx = low_level_server.request_context
            for index in range(1, count + 1):
                await ctx.session.send_log_message(
                    level="info",
                    data=f"Notification {index}/{count}",
                    logger="notify",
                    related_request_id=ctx.request_id,
                )
                await anyio.sleep(interval)
            return [types.TextContent(type="text", text=f"Sent {count} notifications")]
        raise ValueError(f"Unknown tool: {name}")

    @low_level_server.list_prompts()
    async def handle_list_prompts() -> list[types.Prompt]:
        return [
            types.Prompt(
                name="greeting-template",
                description="A simple greeting prompt template",
                arguments=[
                    types.PromptArgument(
                        name="name",
                        description="Name to include in greeting",
                        required=True,
                    )
                ],
            )
        ]

    @low_level_server.get_prompt()
    async def handle_get_prompt(name: str, arguments: dict[str, str] | None) -> types.GetPromptResult:
        if name != "greeting-template":
            raise ValueError(f"Unknown prompt: {name}")
        who = (arguments or {}).get("name", "there")
        return types.GetPromptResult(
            messages=[
                types.PromptMessage(
                    role="user",
                    content=types.TextContent(type="text", text=f"Please greet {who} in a friendly manner."),
                )
            ]
        )

    @low_level_server.list_resources()
    async def handle_list_resources() -> list[types.Resource]:
        return [
            types.Resource(uri=AnyUrl(uri), name=name, description=description, mimeType="text/plain")
            for uri, (name, description, _) in RESOURCES.items()
        ]

    @low_level_server.read_resource()
    async def handle_read_resource(uri: AnyUrl) -> list[ReadResourceContents]:
        entry = RESOURCES.get(str(uri))
        if entry is None:
            raise ValueError(f"Unknown resource: {uri}")
        return [ReadResourceContents(content=entry[2], mime_type="text/plain")]
