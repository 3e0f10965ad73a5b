from __future__ import annotations

import errno
import logging
import socket
from collections.abc import Sequence

import uvicorn

from .config import ServerConfig, parse_args
from .router import create_app

logger = logging.getLogger(__name__)


def _bind(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def bind_socket(host: str, port: int, *, fixed: bool = False) -> socket.socket:
    """Bind ``host:port``, moving to an ephemeral port when the port is taken and not fixed."""
    try:
        return _bind(host, port)
    except OSError as e:
        if e.errno != errno.EADDRINUSE or fixed or port == 0:
            raise
        logger.warning("Port %d is already in use, falling back to an available port", port)
        return _bind(host, 0)


def serve(config: ServerConfig) -> None:
    app = create_app(config)
    sock = bind_socket(config.host, config.port, fixed=config.port_is_fixed)
    actual_port = sock.getsockname()[1]
    logger.info("MCP Streamable HTTP Server listening on port %d", actual_port)
    if config.oauth:
        logger.info(
            "  Protected Resource Metadata: http://localhost:%d/.well-known/oauth-protected-resource%s",
            actual_port,
            config.path,
        )

    server = uvicorn.Server(uvicorn.Config(app, log_level=config.log_level.lower()))
    # uvicorn maps SIGINT/SIGTERM to a lifespan shutdown, which closes every session.
    server.run(sockets=[sock])


def main(argv: Sequence[str] | None = None) -> int:
    try:
        config = parse_args(argv)
    except ValueError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid configuration: %s", e)
        return 2

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        serve(config)
    except OSError:
        logger.exception("Failed to start server")
        return 1
    return 0
