"""
Tests for the Jupyter server transport.

REST calls go to a MagicMock standing in for requests.Session; the kernel
websocket is replaced by an in-memory FakeWebSocket.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests

from jupyter_kernel_session.config import make_configuration
from jupyter_kernel_session.events import EventTopic, make_events
from jupyter_kernel_session.exceptions import (
    KernelConnectionError,
    KernelSessionError,
    ServerUnavailableError,
    SessionUnavailableError,
)
from jupyter_kernel_session.jupyter_server import (
    JupyterServer,
    JupyterServerTransport,
    KernelChannel,
)
from jupyter_kernel_session.notebook import ExecutableNotebook
from jupyter_kernel_session.protocols import SessionTarget
from jupyter_kernel_session.rendering import OutputRegistry

SESSION_MODEL = {
    "id": "sess-1",
    "path": "analysis.ipynb",
    "name": "analysis.ipynb",
    "type": "notebook",
    "kernel": {"id": "kernel-1", "name": "python3"},
}


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, data):
        self.sent.append(json.loads(data))

    def feed(self, msg):
        self._incoming.put_nowait(json.dumps(msg))

    def drop(self):
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True
        self.drop()


def response(status_code=200, payload=None):
    resp = MagicMock(status_code=status_code)
    resp.json.return_value = payload or {}
    return resp


def make_http(*responses):
    http = MagicMock(spec=requests.Session)
    http.request.side_effect = list(responses)
    return http


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def events():
    return make_events()


@pytest.fixture
def config(settings, events):
    return make_configuration(None, events=events, settings=settings)


@pytest.fixture
def websocket():
    return FakeWebSocket()


@pytest.fixture
def ws_connect(websocket):
    with patch(
        "jupyter_kernel_session.jupyter_server.websockets.connect",
        new=AsyncMock(return_value=websocket),
    ) as connect:
        yield connect


@pytest.mark.asyncio
class TestServerReadiness:
    async def test_status_probe_resolves_ready(self, config, events):
        seen = []
        events.on(EventTopic.STATUS, lambda name, data: seen.append(name))
        http = make_http(response(200, {"started": "now"}))
        server = JupyterServer(config, http=http)

        server.connect()
        assert await server.ready is server

        assert seen == ["server-ready"]
        method, url = http.request.call_args.args
        assert (method, url) == ("GET", "http://jupyter.test:8888/api/status")
        assert http.request.call_args.kwargs["headers"] == {"Authorization": "token secret"}

    async def test_network_failure_rejects_ready(self, config, events):
        errors = []
        events.on(EventTopic.ERROR, lambda name, data: errors.append(data["message"]))
        server = JupyterServer(config, http=make_http(requests.exceptions.ConnectionError("refused")))

        server.connect()
        with pytest.raises(ServerUnavailableError, match="Network error"):
            await server.ready
        assert errors and "refused" in errors[0]

    async def test_http_error_status(self, config):
        server = JupyterServer(config, http=make_http(response(503)))
        server.connect()

        with pytest.raises(ServerUnavailableError) as exc_info:
            await server.ready
        assert exc_info.value.status_code == 503

    async def test_skip_status_check(self, settings, events):
        config = make_configuration(
            {"server_settings": {"skip_status_check": True}}, events=events, settings=settings
        )
        http = make_http()
        server = JupyterServer(config, http=http)

        server.connect()
        await server.ready

        http.request.assert_not_called()

    async def test_connect_is_idempotent(self, config):
        http = make_http(response(200))
        server = JupyterServer(config, http=http)
        server.connect()
        server.connect()
        await server.ready
        assert http.request.call_count == 1

    async def test_append_token_as_query(self, settings, events):
        config = make_configuration(
            {"server_settings": {"append_token": True}}, events=events, settings=settings
        )
        http = make_http(response(200))
        server = JupyterServer(config, http=http)
        server.connect()
        await server.ready
        assert http.request.call_args.kwargs["params"] == {"token": "secret"}


@pytest.mark.asyncio
class TestSessions:
    async def test_connect_to_existing_session(self, config, ws_connect):
        http = make_http(response(200), response(200, SESSION_MODEL))
        server = JupyterServer(config, http=http)
        server.connect()

        session = await server.connect_to_existing_session(SessionTarget(id="sess-1"))

        assert session.id == "sess-1"
        assert session.path == "analysis.ipynb"
        assert session.kernel.id == "kernel-1"
        assert session.server_settings.base_url == "http://jupyter.test:8888"
        assert server.sessions == {"sess-1": session}
        url = ws_connect.await_args.args[0]
        assert url.startswith("ws://jupyter.test:8888/api/kernels/kernel-1/channels?session_id=")
        assert ws_connect.await_args.kwargs["additional_headers"] == {"Authorization": "token secret"}
        await session.kernel.close()

    async def test_unknown_session(self, config):
        server = JupyterServer(config, http=make_http(response(200), response(404)))
        server.connect()

        with pytest.raises(SessionUnavailableError):
            await server.connect_to_existing_session(SessionTarget(id="missing"))

    async def test_session_without_kernel(self, config):
        model = dict(SESSION_MODEL, kernel=None)
        server = JupyterServer(config, http=make_http(response(200), response(200, model)))
        server.connect()

        with pytest.raises(SessionUnavailableError, match="no kernel"):
            await server.connect_to_existing_session(SessionTarget(id="sess-1"))

    async def test_start_session_with_existing_kernel(self, config, ws_connect):
        http = make_http(response(200), response(201, SESSION_MODEL))
        server = JupyterServer(config, http=http)
        server.connect()

        session = await server.start_session_with_existing_kernel("kernel-1")

        method, url = http.request.call_args.args
        assert (method, url) == ("POST", "http://jupyter.test:8888/api/sessions")
        assert http.request.call_args.kwargs["json"]["kernel"] == {"id": "kernel-1"}
        assert session.kernel.id == "kernel-1"
        await session.kernel.close()

    async def test_session_shutdown_deletes_and_closes(self, config, ws_connect, websocket):
        http = make_http(response(200), response(200, SESSION_MODEL), response(204))
        server = JupyterServer(config, http=http)
        server.connect()
        session = await server.connect_to_existing_session(SessionTarget(id="sess-1"))

        await session.shutdown()

        method, url = http.request.call_args.args
        assert (method, url) == ("DELETE", "http://jupyter.test:8888/api/sessions/sess-1")
        assert websocket.closed
        assert server.sessions == {}

    async def test_shutdown_all_sessions_survives_failures(self, config, ws_connect):
        http = make_http(
            response(200),
            response(200, SESSION_MODEL),
            requests.exceptions.ConnectionError("gone"),
        )
        server = JupyterServer(config, http=http)
        server.connect()
        await server.connect_to_existing_session(SessionTarget(id="sess-1"))

        await server.shutdown_all_sessions()

        # The websocket is closed and the session forgotten even though DELETE failed
        assert server.sessions == {}


@pytest.mark.asyncio
class TestKernelChannel:
    async def open_channel(self, events=None):
        channel = KernelChannel(
            "kernel-1", "ws://jupyter.test/api/kernels/kernel-1/channels", "client-1", events=events
        )
        await channel.open()
        return channel

    async def test_execute_request_payload(self, ws_connect, websocket):
        channel = await self.open_channel()

        msg_id = await channel.execute("1 + 1", msg_id="fixed-id")

        sent = websocket.sent[0]
        assert msg_id == "fixed-id"
        assert sent["channel"] == "shell"
        assert sent["header"]["msg_type"] == "execute_request"
        assert sent["header"]["msg_id"] == "fixed-id"
        assert sent["header"]["session"] == "client-1"
        assert sent["content"]["code"] == "1 + 1"
        assert sent["content"]["allow_stdin"] is True
        await channel.close()

    async def test_subscribers_receive_messages(self, ws_connect, websocket):
        channel = await self.open_channel()
        received = []
        unsubscribe = channel.subscribe(received.append)

        websocket.feed({"header": {"msg_type": "stream"}, "channel": "iopub", "content": {}})
        await settle()
        unsubscribe()
        websocket.feed({"header": {"msg_type": "stream"}, "channel": "iopub", "content": {}})
        await settle()

        assert len(received) == 1
        await channel.close()

    async def test_input_reply_parent_is_last_request(self, ws_connect, websocket):
        channel = await self.open_channel()
        request_header = {"msg_id": "req-1", "msg_type": "input_request", "session": "kernel-session"}
        websocket.feed(
            {"header": request_header, "channel": "stdin", "content": {"prompt": "? ", "password": False}}
        )
        await settle()

        await channel.send_input_reply("yes")

        reply = websocket.sent[-1]
        assert reply["channel"] == "stdin"
        assert reply["header"]["msg_type"] == "input_reply"
        assert reply["parent_header"]["msg_id"] == "req-1"
        assert reply["content"] == {"value": "yes"}

        with pytest.raises(KernelSessionError):
            await channel.send_input_reply("again")
        await channel.close()

    async def test_iopub_status_relayed(self, ws_connect, websocket, events):
        statuses = []
        events.on(EventTopic.STATUS, lambda name, data: statuses.append(data["status"]))
        channel = await self.open_channel(events)

        websocket.feed(
            {"header": {"msg_type": "status"}, "channel": "iopub", "content": {"execution_state": "busy"}}
        )
        await settle()

        assert statuses == ["busy"]
        await channel.close()

    async def test_unexpected_close_reported(self, ws_connect, websocket, events):
        errors = []
        events.on(EventTopic.ERROR, lambda name, data: errors.append((name, data["message"])))
        channel = await self.open_channel(events)

        websocket.drop()
        await settle()

        assert channel.closed.done()
        assert not channel.is_open
        assert errors[0][0] == "kernel-disconnected"
        assert "websocket" in errors[0][1]
        with pytest.raises(KernelConnectionError):
            await channel.execute("x")

    async def test_clean_close_not_reported(self, ws_connect, websocket, events):
        errors = []
        events.on(EventTopic.ERROR, lambda name, data: errors.append(name))
        channel = await self.open_channel(events)

        await channel.close()

        assert errors == []
        assert channel.closed.done()

    async def test_undecodable_frames_skipped(self, ws_connect, websocket):
        channel = await self.open_channel()
        received = []
        channel.subscribe(received.append)

        websocket._incoming.put_nowait("not json")
        websocket._incoming.put_nowait(b"\x00binary")
        websocket.feed({"header": {"msg_type": "stream"}, "channel": "iopub", "content": {}})
        await settle()

        assert len(received) == 1
        await channel.close()

    async def test_open_failure(self):
        with patch(
            "jupyter_kernel_session.jupyter_server.websockets.connect",
            new=AsyncMock(side_effect=OSError("connection refused")),
        ):
            channel = KernelChannel("kernel-1", "ws://nowhere", "client-1")
            with pytest.raises(KernelConnectionError, match="websocket"):
                await channel.open()


class TestTransportFactory:
    def test_builds_components(self, settings):
        transport = JupyterServerTransport(settings=settings)
        events = transport.create_event_channel()
        config = transport.build_configuration({"kernel_options": {"kernel_name": "ir"}}, events)

        assert config.events is events
        assert config.kernel_options.kernel_name == "ir"
        assert isinstance(transport.build_output_registry(config.mathjax), OutputRegistry)
        assert isinstance(transport.create_server(config), JupyterServer)
        notebook = transport.setup_notebook_from_blocks([], config, None)
        assert isinstance(notebook, ExecutableNotebook)
