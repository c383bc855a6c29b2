"""Contracts between the session manager and a kernel transport.

The manager never imports a concrete transport. Anything that satisfies
these protocols (the bundled Jupyter server transport, a test fake, a
Binder-backed implementation) can be injected.

Optional kernel operations are separate capability protocols, checked with
isinstance() against the runtime-checkable definitions.
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from .config import Configuration, CoreOptions, MathjaxOptions, ServerSettings
    from .events import EventChannel
    from .execution import CodeBlock
    from .rendering import OutputRegistry

KernelMessage = Dict[str, Any]
Output = Dict[str, Any]


class SessionTarget(BaseModel):
    """Identifies an existing server-side session to bind to."""

    model_config = ConfigDict(extra="allow")

    id: str


# -----------------------------------------------------------------------------
# Kernel capability segments
# -----------------------------------------------------------------------------


@runtime_checkable
class SupportsInputReply(Protocol):
    """Kernel can answer a pending input_request on the stdin channel."""

    async def send_input_reply(self, value: str) -> None: ...


@runtime_checkable
class SupportsMessageSubscription(Protocol):
    """Kernel exposes every incoming message to subscribers."""

    def subscribe(self, callback: Callable[[KernelMessage], None]) -> Callable[[], None]: ...


# -----------------------------------------------------------------------------
# Session, server, container
# -----------------------------------------------------------------------------


class SessionConnection(Protocol):
    id: str
    kernel: Optional[Any]
    server_settings: Optional["ServerSettings"]

    async def shutdown(self) -> None: ...


class ServerConnection(Protocol):
    @property
    def ready(self) -> Awaitable[Any]: ...

    def connect(self) -> None: ...

    async def connect_to_existing_session(
        self, target: SessionTarget, registry: "OutputRegistry"
    ) -> Optional[SessionConnection]: ...

    async def shutdown_all_sessions(self) -> None: ...


class CellHandle(Protocol):
    id: str
    source: str
    outputs: List[Output]

    async def execute(self, code: Optional[str] = None) -> List[Output]: ...


class NotebookContainer(Protocol):
    def attach_session(self, session: SessionConnection) -> None: ...

    def get_cell_by_id(self, cell_id: str) -> Optional[CellHandle]: ...


class KernelTransport(Protocol):
    """Factory for everything the manager needs from a transport."""

    def create_event_channel(self) -> "EventChannel": ...

    def build_configuration(
        self, options: Optional["CoreOptions"], events: "EventChannel"
    ) -> "Configuration": ...

    def build_output_registry(self, mathjax: "MathjaxOptions") -> "OutputRegistry": ...

    def create_server(self, config: "Configuration") -> ServerConnection: ...

    def setup_notebook_from_blocks(
        self,
        blocks: Sequence["CodeBlock"],
        config: "Configuration",
        registry: "OutputRegistry",
    ) -> NotebookContainer: ...
