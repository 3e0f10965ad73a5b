from __future__ import annotations

import argparse
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace

DEFAULT_PORT = 3000
DEFAULT_AUTH_PORT = 3001


@dataclass(frozen=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    # True when the port was demanded explicitly and must not fall back.
    port_is_fixed: bool = False
    path: str = "/mcp"
    json_response: bool = False
    oauth: bool = False
    oauth_strict: bool = False
    introspection_endpoint: str | None = None
    authorization_server: str | None = None
    required_scopes: tuple[str, ...] = field(default_factory=tuple)
    close_timeout: float = 5.0
    log_level: str = "INFO"
    dangerous_logging: bool = False

    @property
    def server_url(self) -> str:
        return f"http://localhost:{self.port}{self.path}"

    @property
    def resource_metadata_url(self) -> str:
        return f"http://localhost:{self.port}/.well-known/oauth-protected-resource{self.path}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ServerConfig:
        env = os.environ if environ is None else environ
        kwargs: dict[str, object] = {}
        if env.get("MCP_HOST"):
            kwargs["host"] = env["MCP_HOST"]
        if env.get("MCP_PORT"):
            kwargs["port"] = _parse_port(env["MCP_PORT"], "MCP_PORT")
            kwargs["port_is_fixed"] = True
        auth_port = _parse_port(env["MCP_AUTH_PORT"], "MCP_AUTH_PORT") if env.get("MCP_AUTH_PORT") else DEFAULT_AUTH_PORT
        kwargs["authorization_server"] = env.get("MCP_AUTHORIZATION_SERVER") or f"http://localhost:{auth_port}"
        if env.get("MCP_INTROSPECTION_URL"):
            kwargs["introspection_endpoint"] = env["MCP_INTROSPECTION_URL"]
        if env.get("MCP_LOG_LEVEL"):
            kwargs["log_level"] = env["MCP_LOG_LEVEL"].upper()
        return cls(**kwargs)  # type: ignore[arg-type]

    def auth_introspection_endpoint(self) -> str:
        if self.introspection_endpoint:
            return self.introspection_endpoint
        if self.authorization_server:
            return f"{self.authorization_server.rstrip('/')}/introspect"
        raise ValueError("No token verification endpoint configured")


def _parse_port(value: str, name: str) -> int:
    try:
        port = int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e
    if not 0 <= port <= 65535:
        raise ValueError(f"{name} out of range: {port}")
    return port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-sessions-http",
        description="Resumable multi-session MCP server over Streamable HTTP.",
    )
    parser.add_argument("--host", help="Interface to bind (default: $MCP_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Port to bind; an explicit port never falls back")
    parser.add_argument("--path", help="Endpoint path (default: /mcp)")
    parser.add_argument("--json-response", action="store_true", help="Answer requests with JSON instead of SSE")
    parser.add_argument("--oauth", action="store_true", help="Require bearer tokens")
    parser.add_argument("--oauth-strict", action="store_true", help="Require bearer tokens bound to this resource")
    parser.add_argument("--introspection-endpoint", help="Token introspection URL")
    parser.add_argument(
        "--required-scope",
        action="append",
        default=[],
        dest="required_scopes",
        help="Scope every token must carry (repeatable)",
    )
    parser.add_argument("--close-timeout", type=float, help="Seconds allowed per session at shutdown")
    parser.add_argument("--log-level", help="Logging level (default: INFO)")
    parser.add_argument(
        "--dangerous-logging-enabled",
        action="store_true",
        dest="dangerous_logging",
        help="Log request bodies (may include sensitive data)",
    )
    return parser


def parse_args(
    argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None
) -> ServerConfig:
    args = build_parser().parse_args(argv)
    config = ServerConfig.from_env(environ)

    overrides: dict[str, object] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = _parse_port(str(args.port), "--port")
        overrides["port_is_fixed"] = True
    if args.path:
        overrides["path"] = args.path if args.path.startswith("/") else f"/{args.path}"
    if args.json_response:
        overrides["json_response"] = True
    if args.oauth or args.oauth_strict:
        overrides["oauth"] = True
    if args.oauth_strict:
        overrides["oauth_strict"] = True
    if args.introspection_endpoint:
        overrides["introspection_endpoint"] = args.introspection_endpoint
    if args.required_scopes:
        overrides["required_scopes"] = tuple(args.required_scopes)
    if args.close_timeout is not None:
        overrides["close_timeout"] = args.close_timeout
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if args.dangerous_logging:
        overrides["dangerous_logging"] = True
    return replace(config, **overrides)  # type: ignore[arg-type]
