"""
Connection State Machine
========================

Authoritative record of the connection lifecycle. State is only changed
through the named transition methods below; callers read it through the
`state` and `stats` properties.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


@dataclass
class LastError:
    timestamp: float
    message: str


@dataclass
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.IDLE
    is_ready: bool = False
    kernel_status: str = "idle"
    error: Optional[BaseException] = None
    last_error: Optional[LastError] = None


@dataclass
class ConnectionStats:
    connected_at: Optional[float] = None
    last_activity: float = field(default_factory=time.time)
    reconnect_count: int = 0


class ConnectionStatusManager:
    """Owns ConnectionState and ConnectionStats for one manager instance."""

    def __init__(self):
        self._state = ConnectionState()
        self._stats = ConnectionStats()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> ConnectionStats:
        return self._stats

    # -- transitions ------------------------------------------------------

    def set_connecting(self):
        self._state.status = ConnectionStatus.CONNECTING
        self._state.is_ready = False
        self._state.error = None
        self._state.kernel_status = "starting"

    def set_connected(self):
        self._state.status = ConnectionStatus.CONNECTED
        self._state.is_ready = True
        self._state.kernel_status = "ready"
        self._stats.connected_at = time.time()
        self.update_activity()

    def mark_ready(self, kernel_status: str = "ready"):
        """
        Readiness reported by a status event.

        May arrive before or after the awaited connect path completes; only
        honoured while a connection is in progress or established, so a late
        event cannot revive a torn-down connection.
        """
        if self._state.status not in (
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
        ):
            logger.debug(
                f"Ignoring readiness signal in state {self._state.status.value}"
            )
            return
        self._state.is_ready = True
        self._state.kernel_status = kernel_status

    def set_kernel_status(self, kernel_status: str):
        self._state.kernel_status = kernel_status

    def set_error(self, error: BaseException):
        self._state.status = ConnectionStatus.ERROR
        self._state.is_ready = False
        self._state.kernel_status = "error"
        self.record_error(error)

    def record_error(self, error: BaseException):
        """Record an error without changing the connection status."""
        self._state.error = error
        self._state.last_error = LastError(timestamp=time.time(), message=str(error))

    def clear_error(self):
        self._state.error = None

    def set_disconnected(self, reason: Optional[str] = None):
        self._state.status = ConnectionStatus.DISCONNECTED
        self._state.is_ready = False
        self._state.kernel_status = reason or "disconnected"
        self._stats.connected_at = None

    def update_activity(self):
        self._stats.last_activity = time.time()

    def increment_reconnect(self):
        self._stats.reconnect_count += 1

    def reset(self):
        self._state.status = ConnectionStatus.IDLE
        self._state.is_ready = False
        self._state.kernel_status = "idle"
        self._state.error = None
        self._stats.connected_at = None

    # -- queries ----------------------------------------------------------

    def is_busy(self) -> bool:
        """True while a connection is being made or is established."""
        return self._state.status in (
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
        )

    def can_execute(self) -> bool:
        return self._state.status == ConnectionStatus.CONNECTED and self._state.is_ready

    def needs_reconnection(self) -> bool:
        return self._state.status in (
            ConnectionStatus.ERROR,
            ConnectionStatus.DISCONNECTED,
        )
