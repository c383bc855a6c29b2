"""Client-side lifecycle manager for remote Jupyter kernel sessions."""

from .cleanup import ConnectionCleanup, ResourceBundle
from .config import (
    BinderOptions,
    ClientSettings,
    Configuration,
    CoreOptions,
    KernelOptions,
    MathjaxOptions,
    SavedSessionOptions,
    ServerSettings,
    make_configuration,
)
from .events import EventChannel, EventTopic
from .exceptions import (
    CellNotFoundError,
    KernelConnectionError,
    KernelSessionError,
    ServerUnavailableError,
    SessionUnavailableError,
)
from .execution import CodeBlock, ExecutionRecord, ExecutionResult, ExecutionStatus
from .input_broker import UNKNOWN_CELL_ID, PendingInputRequest
from .jupyter_server import JupyterServerTransport
from .manager import KernelSessionManager, SessionStateView
from .observability import configure_logging
from .protocols import SessionTarget
from .rendering import RenderedFragment, render_output
from .status import ConnectionStatus
from .unload import UnloadListener, send_shutdown_request_on_unload

__version__ = "0.1.0"

__all__ = [
    "BinderOptions",
    "CellNotFoundError",
    "ClientSettings",
    "CodeBlock",
    "Configuration",
    "ConnectionCleanup",
    "ConnectionStatus",
    "CoreOptions",
    "EventChannel",
    "EventTopic",
    "ExecutionRecord",
    "ExecutionResult",
    "ExecutionStatus",
    "JupyterServerTransport",
    "KernelConnectionError",
    "KernelOptions",
    "KernelSessionError",
    "KernelSessionManager",
    "MathjaxOptions",
    "PendingInputRequest",
    "RenderedFragment",
    "ResourceBundle",
    "SavedSessionOptions",
    "ServerSettings",
    "ServerUnavailableError",
    "SessionStateView",
    "SessionTarget",
    "SessionUnavailableError",
    "UNKNOWN_CELL_ID",
    "UnloadListener",
    "configure_logging",
    "make_configuration",
    "render_output",
    "send_shutdown_request_on_unload",
]
