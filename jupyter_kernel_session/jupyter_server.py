"""
Jupyter Server Transport
========================

Default KernelTransport, talking to a Jupyter server over its REST API and
the kernel channels websocket:

- GET  /api/status                       readiness probe
- GET  /api/sessions/{id}                bind to an existing session
- POST /api/sessions                     new session on an existing kernel
- DELETE /api/sessions/{id}              session shutdown
- WS   /api/kernels/{id}/channels        shell / iopub / stdin messages

REST calls go through requests on the default executor so the event loop is
never blocked. Kernel messages are built with jupyter_client's Session and
sent as JSON text frames.
"""

import asyncio
import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import requests
import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from jupyter_client.jsonutil import json_default
from jupyter_client.session import Session as MessageFactory

from .config import ClientSettings, Configuration, ServerSettings, make_configuration
from .events import EventChannel, EventTopic, make_events
from .exceptions import (
    KernelConnectionError,
    KernelSessionError,
    ServerUnavailableError,
    SessionUnavailableError,
)
from .notebook import ExecutableNotebook
from .rendering import OutputRegistry, build_output_registry

logger = structlog.get_logger(__name__)


class KernelChannel:
    """One websocket connection to a kernel's channels endpoint."""

    def __init__(
        self,
        kernel_id: str,
        url: str,
        session_id: str,
        headers: Optional[Dict[str, str]] = None,
        events: Optional[EventChannel] = None,
    ):
        self.id = kernel_id
        self.url = url
        self._headers = headers or {}
        self._events = events
        self._factory = MessageFactory(session=session_id, username="kernel-session")
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []
        # Header of the last stdin input_request; parent of the next input_reply
        self._stdin_parent: Optional[Dict[str, Any]] = None
        self._closing = False
        self.closed: Optional[asyncio.Future] = None

    @property
    def session_id(self) -> str:
        return self._factory.session

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self.closed is not None and not self.closed.done()

    async def open(self) -> None:
        try:
            self._ws = await websockets.connect(
                self.url, additional_headers=self._headers, max_size=None
            )
        except (OSError, WebSocketException) as e:
            raise KernelConnectionError(
                f"Could not open kernel websocket for {self.id}: {e}"
            ) from e
        self.closed = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"[KERNEL] Websocket open for kernel {self.id}")

    async def _read_loop(self) -> None:
        error: Optional[BaseException] = None
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    logger.debug(f"[KERNEL] Skipping binary frame ({len(raw)} bytes)")
                    continue
                try:
                    msg = json.loads(raw)
                except ValueError as e:
                    logger.warning(f"[KERNEL] Undecodable kernel message: {e}")
                    continue
                self._dispatch(msg)
        except ConnectionClosed as e:
            error = e
        finally:
            if self.closed is not None and not self.closed.done():
                self.closed.set_result(None)
            if not self._closing:
                self._report_unexpected_close(error)

    def _report_unexpected_close(self, error: Optional[BaseException]) -> None:
        reason = f": {error}" if error else ""
        failure = KernelConnectionError(f"Kernel websocket closed unexpectedly{reason}")
        logger.warning(f"[KERNEL] {failure}")
        if self._events is not None:
            self._events.emit(
                EventTopic.ERROR,
                {"status": "error", "message": str(failure), "error": failure},
                event="kernel-disconnected",
            )

    def _dispatch(self, msg: Dict[str, Any]) -> None:
        msg_type = msg.get("header", {}).get("msg_type") or msg.get("msg_type")
        channel = msg.get("channel")

        if channel == "stdin" and msg_type == "input_request":
            self._stdin_parent = msg.get("header")

        if channel == "iopub" and msg_type == "status" and self._events is not None:
            state = msg.get("content", {}).get("execution_state")
            if state:
                self._events.emit(
                    EventTopic.STATUS,
                    {"status": state, "kernel_id": self.id},
                    event="kernel-status",
                )

        for callback in list(self._subscribers):
            try:
                callback(msg)
            except Exception as e:
                logger.warning(f"[KERNEL] Message subscriber failed on {msg_type}: {e}")

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def send(
        self,
        channel: str,
        msg_type: str,
        content: Dict[str, Any],
        parent: Optional[Dict[str, Any]] = None,
        msg_id: Optional[str] = None,
    ) -> str:
        """Send one message on a channel and return its msg_id."""
        if not self.is_open:
            raise KernelConnectionError(f"Kernel websocket for {self.id} is closed")

        header = self._factory.msg_header(msg_type)
        if msg_id:
            header["msg_id"] = msg_id
        msg = self._factory.msg(msg_type, content=content, parent=parent, header=header)
        payload = {
            "header": msg["header"],
            "parent_header": msg["parent_header"],
            "metadata": msg["metadata"],
            "content": msg["content"],
            "channel": channel,
            "buffers": [],
        }
        try:
            await self._ws.send(json.dumps(payload, default=json_default))
        except ConnectionClosed as e:
            raise KernelConnectionError(f"Kernel websocket closed while sending: {e}") from e
        return msg["header"]["msg_id"]

    async def execute(self, code: str, msg_id: Optional[str] = None, allow_stdin: bool = True) -> str:
        content = {
            "code": code,
            "silent": False,
            "store_history": True,
            "user_expressions": {},
            "allow_stdin": allow_stdin,
            "stop_on_error": True,
        }
        return await self.send("shell", "execute_request", content, msg_id=msg_id)

    async def send_input_reply(self, value: str) -> None:
        if self._stdin_parent is None:
            raise KernelSessionError(f"Kernel {self.id} has no pending input request")
        parent, self._stdin_parent = self._stdin_parent, None
        await self.send("stdin", "input_reply", {"value": value}, parent=parent)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self.closed is not None and not self.closed.done():
            self.closed.set_result(None)


class JupyterSession:
    """A server-side session bound to an open kernel channel."""

    def __init__(self, server: "JupyterServer", model: Dict[str, Any], kernel: KernelChannel, registry=None):
        self.id = model["id"]
        self.path = model.get("path")
        self.name = model.get("name")
        self.model = model
        self.kernel = kernel
        self.registry = registry
        self.server_settings = server.server_settings
        self._server = server

    async def shutdown(self) -> None:
        """Delete the session on the server and close the kernel websocket."""
        try:
            await self._server.request("DELETE", f"api/sessions/{self.id}", expect=(204, 404))
            logger.info(f"[SESSION] Deleted session {self.id}")
        finally:
            await self.kernel.close()
            self._server.forget(self)


class JupyterServer:
    def __init__(self, config: Configuration, http: Optional[requests.Session] = None):
        self.config = config
        self.server_settings: ServerSettings = config.server_settings
        self.events: Optional[EventChannel] = config.events
        self.sessions: Dict[str, JupyterSession] = {}
        self._http = http or requests.Session()
        self._ready: Optional[asyncio.Future] = None
        self._probe_task: Optional[asyncio.Task] = None

    @property
    def ready(self) -> asyncio.Future:
        """Resolves once the server answered the status probe."""
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
        return self._ready

    def connect(self) -> None:
        """Start the readiness probe; the outcome lands on `ready` and the event channel."""
        if self._probe_task is None:
            self._probe_task = asyncio.get_running_loop().create_task(self._probe(self.ready))

    async def _probe(self, ready: asyncio.Future) -> None:
        base_url = self.server_settings.base_url
        try:
            if self.server_settings.skip_status_check:
                logger.info(f"[SERVER] Skipping status check for {base_url}")
            else:
                await self.request("GET", "api/status")
        except Exception as e:
            logger.error(f"[SERVER] {base_url} is not available: {e}")
            self._emit(EventTopic.ERROR, {"status": "error", "message": str(e), "error": e}, "server-error")
            if not ready.done():
                ready.set_exception(e)
            return

        logger.info(f"[SERVER] Server ready at {base_url}")
        self._emit(EventTopic.STATUS, {"status": "server-ready", "message": f"Server ready at {base_url}"}, "server-ready")
        if not ready.done():
            ready.set_result(self)

    def _emit(self, topic: EventTopic, data: Dict[str, Any], event: str) -> None:
        if self.events is not None:
            self.events.emit(topic, data, event=event)

    async def request(
        self, method: str, path: str, expect: Tuple[int, ...] = (200,), **kwargs
    ) -> requests.Response:
        """
        Issue a REST call against the server without blocking the loop.

        Raises:
            ServerUnavailableError: Network failure or an unexpected status code
        """
        url = f"{self.server_settings.base_url}/{path}"
        headers = self.server_settings.auth_headers()
        params = None
        if self.server_settings.append_token and self.server_settings.token:
            params = {"token": self.server_settings.token}

        def call():
            return self._http.request(
                method,
                url,
                headers=headers,
                params=params,
                timeout=self.config.request_timeout,
                **kwargs,
            )

        try:
            response = await asyncio.get_running_loop().run_in_executor(None, call)
        except requests.exceptions.RequestException as e:
            raise ServerUnavailableError(f"Network error during {method} {url}: {e}") from e

        if response.status_code not in expect:
            raise ServerUnavailableError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def connect_to_existing_session(self, target, registry: OutputRegistry = None) -> Optional[JupyterSession]:
        await self.ready
        try:
            response = await self.request("GET", f"api/sessions/{target.id}")
        except ServerUnavailableError as e:
            if e.status_code == 404:
                raise SessionUnavailableError(f"Session {target.id} not found on server") from e
            raise
        return await self._bind(response.json(), registry)

    async def start_session_with_existing_kernel(self, kernel_id: str, registry: OutputRegistry = None) -> JupyterSession:
        """Create a new server-side session that attaches to an already running kernel."""
        await self.ready
        path = f"kernel-session-{kernel_id}.ipynb"
        payload = {"name": path, "path": path, "type": "notebook", "kernel": {"id": kernel_id}}
        response = await self.request("POST", "api/sessions", expect=(200, 201), json=payload)
        return await self._bind(response.json(), registry)

    async def _bind(self, model: Dict[str, Any], registry) -> JupyterSession:
        kernel_model = model.get("kernel") or {}
        kernel_id = kernel_model.get("id")
        if not kernel_id:
            raise SessionUnavailableError(f"Session {model.get('id')} has no kernel")

        session_id = uuid.uuid4().hex
        kernel = KernelChannel(
            kernel_id,
            self.channels_url(kernel_id, session_id),
            session_id,
            headers=self.server_settings.auth_headers(),
            events=self.events,
        )
        await kernel.open()
        session = JupyterSession(self, model, kernel, registry)
        self.sessions[session.id] = session
        logger.info(f"[SESSION] Bound to session {session.id} (kernel {kernel_id})")
        return session

    def channels_url(self, kernel_id: str, session_id: str) -> str:
        query = {"session_id": session_id}
        if self.server_settings.append_token and self.server_settings.token:
            query["token"] = self.server_settings.token
        return f"{self.server_settings.websocket_url()}/api/kernels/{kernel_id}/channels?{urlencode(query)}"

    def forget(self, session: JupyterSession) -> None:
        self.sessions.pop(session.id, None)

    async def shutdown_all_sessions(self) -> None:
        for session in list(self.sessions.values()):
            try:
                await session.shutdown()
            except Exception as e:
                logger.warning(f"[SERVER] Failed to shut down session {session.id}: {e}")


class JupyterServerTransport:
    """KernelTransport backed by a Jupyter server."""

    def __init__(self, settings: Optional[ClientSettings] = None, http: Optional[requests.Session] = None):
        self._settings = settings
        self._http = http

    def create_event_channel(self) -> EventChannel:
        return make_events()

    def build_configuration(self, options, events: EventChannel) -> Configuration:
        return make_configuration(options, events=events, settings=self._settings)

    def build_output_registry(self, mathjax) -> OutputRegistry:
        return build_output_registry(mathjax)

    def create_server(self, config: Configuration) -> JupyterServer:
        return JupyterServer(config, http=self._http)

    def setup_notebook_from_blocks(self, blocks: Sequence, config: Configuration, registry: OutputRegistry) -> ExecutableNotebook:
        return ExecutableNotebook.from_blocks(blocks, config=config, registry=registry)
