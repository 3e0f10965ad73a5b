from __future__ import annotations

import logging
from dataclasses import dataclass, field

import anyio

from .registry import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ShutdownReport:
    closed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.closed) + len(self.failed)


class ShutdownCoordinator:
    def __init__(self, registry: SessionRegistry, *, close_timeout: float = 5.0) -> None:
        self._registry = registry
        self._close_timeout = close_timeout

    async def shutdown(self) -> ShutdownReport:
        """Close every live session; a failing session never stops the others."""
        report = ShutdownReport()
        sessions = self._registry.snapshot()
        logger.info("Shutting down server, closing %d session(s)...", len(sessions))

        for transport in sessions:
            session_id = transport.session_id or "<uninitialized>"
            logger.info("Closing transport for session %s", session_id)
            try:
                with anyio.fail_after(self._close_timeout):
                    await transport.close()
            except Exception:
                logger.exception("Error closing transport for session %s", session_id)
                report.failed.append(session_id)
            else:
                report.closed.append(session_id)
            finally:
                self._registry.remove(transport.session_id)

        logger.info(
            "Server shutdown complete (%d closed, %d failed)",
            len(report.closed),
            len(report.failed),
        )
        return report
