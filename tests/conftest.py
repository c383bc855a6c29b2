"""
Pytest configuration and fixtures for kernel session tests.

FakeTransport stands in for a Jupyter server: it uses the real event channel,
configuration assembler and output registry, and fakes the server, session,
kernel and execution container.
"""

import asyncio
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import nbformat
import pytest
import pytest_asyncio

from jupyter_kernel_session.config import ClientSettings, ServerSettings, make_configuration
from jupyter_kernel_session.events import make_events
from jupyter_kernel_session.exceptions import ServerUnavailableError
from jupyter_kernel_session.manager import KernelSessionManager
from jupyter_kernel_session.rendering import build_output_registry


async def print_behaviour(cell):
    """Default cell behaviour: one stdout stream output."""
    cell.outputs = [nbformat.v4.new_output("stream", name="stdout", text="1\n")]
    return cell.outputs


class FakeKernel:
    def __init__(self):
        self.send_input_reply = AsyncMock()
        self.subscribers = []

    def subscribe(self, callback):
        self.subscribers.append(callback)

        def unsubscribe():
            if callback in self.subscribers:
                self.subscribers.remove(callback)

        return unsubscribe

    def push(self, msg: Dict):
        for callback in list(self.subscribers):
            callback(msg)

    def push_input_request(self, msg_id: str, prompt: str = "Value: ", password: bool = False):
        self.push(
            {
                "header": {"msg_type": "input_request", "msg_id": msg_id},
                "parent_header": {},
                "content": {"prompt": prompt, "password": password},
                "channel": "stdin",
            }
        )


class FakeSession:
    def __init__(self, session_id: str = "sess-1", kernel=None, server_settings=None):
        self.id = session_id
        self.kernel = kernel
        self.server_settings = server_settings
        self.shutdown = AsyncMock()


class FakeCell:
    def __init__(self, block, notebook):
        self.id = block.id
        self.source = block.source
        self.outputs: List = []
        self._notebook = notebook

    async def execute(self, code: Optional[str] = None):
        if code is not None:
            self.source = code
        return await self._notebook.transport.behaviour(self)


class FakeNotebook:
    def __init__(self, blocks, transport):
        self.transport = transport
        self.block_ids = [block.id for block in blocks]
        self.cells = {block.id: FakeCell(block, self) for block in blocks}
        self.session = None

    def attach_session(self, session):
        self.session = session

    def get_cell_by_id(self, cell_id):
        return self.cells.get(cell_id)


class FakeServer:
    def __init__(self, config, transport: "FakeTransport"):
        self.config = config
        self.events = config.events
        self.transport = transport
        self.ready = None
        self.connect_calls = 0
        self.connect_to_existing_session = AsyncMock(side_effect=self._connect_session)
        self.shutdown_all_sessions = AsyncMock()

    def connect(self):
        self.connect_calls += 1
        self.ready = asyncio.get_running_loop().create_future()
        mode = self.transport.ready_mode
        if mode == "resolve":
            self.ready.set_result(True)
        elif mode == "event":
            # Readiness arrives on the event channel before the awaited signal
            self.events.emit("status", {"status": "ready"})
            self.ready.set_result(True)
        elif mode == "error-event":
            # The error event wins even though the readiness signal still resolves
            self.events.emit("error", {"message": "server refused connection"})
            self.ready.set_result(True)
        elif mode == "fail":
            self.ready.set_exception(ServerUnavailableError("Network error: server unreachable"))

    async def _connect_session(self, target, registry):
        if self.transport.session_error is not None:
            raise self.transport.session_error
        return self.transport.session


class FakeTransport:
    def __init__(self, settings: ClientSettings):
        self.settings = settings
        self.ready_mode = "resolve"
        self.session_error: Optional[BaseException] = None
        self.behaviour = print_behaviour
        self.kernel = FakeKernel()
        self.session = FakeSession(
            kernel=self.kernel,
            server_settings=ServerSettings(base_url=settings.BASE_URL, token=settings.TOKEN),
        )
        self.event_channels = []
        self.servers: List[FakeServer] = []
        self.notebooks: List[FakeNotebook] = []
        self.registries = []

    @property
    def events(self):
        return self.event_channels[-1] if self.event_channels else None

    def create_event_channel(self):
        channel = make_events()
        self.event_channels.append(channel)
        return channel

    def build_configuration(self, options, events):
        return make_configuration(options, events=events, settings=self.settings)

    def build_output_registry(self, mathjax):
        registry = build_output_registry(mathjax)
        self.registries.append(registry)
        return registry

    def create_server(self, config):
        server = FakeServer(config, self)
        self.servers.append(server)
        return server

    def setup_notebook_from_blocks(self, blocks, config, registry):
        notebook = FakeNotebook(blocks, self)
        self.notebooks.append(notebook)
        return notebook


@pytest.fixture
def settings():
    return ClientSettings(
        _env_file=None,
        BASE_URL="http://jupyter.test:8888",
        TOKEN="secret",
        READY_TIMEOUT=1.0,
        UNLOAD_GRACE=0.0,
    )


@pytest.fixture
def transport(settings):
    return FakeTransport(settings)


@pytest.fixture
def manager(transport, settings):
    return KernelSessionManager(transport=transport, settings=settings)


@pytest_asyncio.fixture
async def connected_manager(manager):
    await manager.initialize_kernel({"id": "sess-1"})
    assert manager.can_execute()
    yield manager
    await manager.disconnect()
