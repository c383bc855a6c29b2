"""
Resource Cleanup Orchestrator
=============================

Ordered, idempotent, best-effort release of the resources one manager owns.

Ordering contract:
1. Session shutdown (always attempted first)
2. Server shutdown (skipped for a partial cleanup), server reference dropped
3. Execution container reference dropped
4. Render registry and configuration dropped (full cleanup only)

Each step is guarded on its own; a failure is logged and the next step runs.
"""

from dataclasses import dataclass, replace
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ResourceBundle:
    server: Optional[Any] = None
    session: Optional[Any] = None
    notebook: Optional[Any] = None
    render_registry: Optional[Any] = None
    config: Optional[Any] = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.server,
                self.session,
                self.notebook,
                self.render_registry,
                self.config,
            )
        )


class ConnectionCleanup:
    """Holds the ResourceBundle; the only component allowed to release it."""

    def __init__(self):
        self._resources = ResourceBundle()

    def set_resources(self, **resources: Any) -> None:
        """Merge resources into the bundle (unknown names raise TypeError)."""
        self._resources = replace(self._resources, **resources)

    def get_resources(self) -> ResourceBundle:
        """Return a copy of the current bundle."""
        return replace(self._resources)

    async def cleanup(self, partial: bool = False) -> None:
        """
        Release held resources.

        Args:
            partial: Keep the render registry and configuration warm and leave
                the server's other sessions alone (soft reconnect)
        """
        if self._resources.is_empty():
            logger.debug("Cleanup requested with no resources held")
            return

        logger.info(f"Starting connection cleanup (partial={partial})")

        session = self._resources.session
        if session is not None:
            try:
                await session.shutdown()
                logger.info("Session shutdown completed")
            except Exception as e:
                logger.warning(f"Error during session shutdown: {e}")
            self._resources.session = None

        server = self._resources.server
        if server is not None:
            if not partial:
                try:
                    await server.shutdown_all_sessions()
                    logger.info("Server shutdown completed")
                except Exception as e:
                    logger.warning(f"Error during server shutdown: {e}")
            # Released either way; a partial cleanup only skips the shutdown call
            self._resources.server = None

        self._resources.notebook = None

        if not partial:
            self._resources.render_registry = None
            self._resources.config = None

        logger.info("Connection cleanup completed")
