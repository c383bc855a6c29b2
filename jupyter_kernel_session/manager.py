"""
Kernel Session Manager
======================

Caller-facing facade for one remote kernel connection. Wires together:

- ConnectionStatusManager   connection lifecycle and readiness
- CellExecutionTracker      per-cell execution records and the shared container
- InputRequestBroker        kernel input() requests and their replies
- ConnectionCleanup         ordered release of server/session/container
- UnloadListener            best-effort session termination at process exit

Every manager owns its own state; nothing is shared between instances.
"""

import asyncio
import dataclasses
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from .cleanup import ConnectionCleanup
from .config import ClientSettings, CoreOptions, get_settings
from .events import EventChannel, EventHandler, EventTopic
from .exceptions import KernelSessionError, SessionUnavailableError, is_connection_error
from .execution import CellExecutionTracker, ExecutionRecord, ExecutionResult
from .input_broker import InputRequestBroker, PendingInputRequest
from .jupyter_server import JupyterServerTransport
from .observability import get_tracer
from .protocols import KernelTransport, SessionTarget, SupportsMessageSubscription
from .rendering import render_output
from .status import ConnectionStats, ConnectionStatus, ConnectionStatusManager, LastError
from .unload import UnloadListener, send_shutdown_request_on_unload

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

# Status event payloads that mean "the connection is usable"
READY_STATUSES = ("ready", "server-ready")


class SessionStateView:
    """Read-only view of a manager's observable state."""

    def __init__(self, status: ConnectionStatusManager, tracker: CellExecutionTracker,
                 broker: InputRequestBroker, resources: ConnectionCleanup):
        self._status = status
        self._tracker = tracker
        self._broker = broker
        self._resources = resources

    @property
    def connection_status(self) -> ConnectionStatus:
        return self._status.state.status

    @property
    def is_ready(self) -> bool:
        return self._status.state.is_ready

    @property
    def kernel_status(self) -> str:
        return self._status.state.kernel_status

    @property
    def error(self) -> Optional[BaseException]:
        return self._status.state.error

    @property
    def last_error(self) -> Optional[LastError]:
        return self._status.state.last_error

    @property
    def session(self):
        return self._resources.get_resources().session

    @property
    def cell_executions(self) -> Mapping[str, ExecutionRecord]:
        return self._tracker.records

    @property
    def input_requests(self) -> Mapping[str, PendingInputRequest]:
        return self._broker.pending

    @property
    def stats(self) -> ConnectionStats:
        return dataclasses.replace(self._status.stats)


def _as_target(session_target) -> SessionTarget:
    if isinstance(session_target, SessionTarget):
        return session_target
    if isinstance(session_target, str):
        return SessionTarget(id=session_target)
    if isinstance(session_target, Mapping):
        return SessionTarget.model_validate(dict(session_target))
    return SessionTarget(id=session_target.id)


class KernelSessionManager:
    def __init__(self, transport: Optional[KernelTransport] = None,
                 settings: Optional[ClientSettings] = None):
        self.settings = settings or get_settings()
        self.transport = transport or JupyterServerTransport(settings=self.settings)

        self._status = ConnectionStatusManager()
        self._resources = ConnectionCleanup()
        self._tracker = CellExecutionTracker(self.transport, self._resources)
        self._broker = InputRequestBroker(self._tracker)
        self._view = SessionStateView(self._status, self._tracker, self._broker, self._resources)

        # Exact references handed to events.on(), so teardown can remove them
        self._events: Optional[EventChannel] = None
        self._handlers: Dict[EventTopic, EventHandler] = {}
        self._kernel_unsubscribe: Optional[Callable[[], None]] = None
        self._unload_listener: Optional[UnloadListener] = None
        # Bumped on every initialize/disconnect; a superseded attempt never writes state
        self._attempt = 0

    @property
    def state(self) -> SessionStateView:
        return self._view

    def can_execute(self) -> bool:
        return self._status.can_execute()

    def needs_reconnection(self) -> bool:
        return self._status.needs_reconnection()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def initialize_kernel(self, session_target, options: Optional[CoreOptions] = None) -> None:
        """
        Connect to an existing server-side session.

        A call made while a connection is in progress or established is
        ignored. Failures are not raised: the state moves to ERROR and the
        failure is available as `state.error`.

        Args:
            session_target: SessionTarget, a mapping with an "id", a session id
                string, or any object with an `id` attribute
            options: CoreOptions (or a dict of the same shape) merged over defaults
        """
        if self._status.is_busy():
            logger.info(
                f"[KERNEL] initialize_kernel ignored: already {self._status.state.status.value}"
            )
            return

        reconnecting = self._status.needs_reconnection()
        self._attempt += 1
        attempt = self._attempt
        # Set eagerly: later awaits must see a busy manager
        self._status.set_connecting()

        with tracer.start_as_current_span("kernel.initialize") as span:
            span.set_attribute("reconnect", reconnecting)
            try:
                if reconnecting:
                    self._status.increment_reconnect()
                    logger.info(
                        f"[KERNEL] Reconnecting (attempt #{self._status.stats.reconnect_count})"
                    )
                    self._detach_handlers()
                    self._detach_kernel()
                    self._broker.clear()
                    await self._resources.cleanup(partial=True)

                target = _as_target(session_target)
                span.set_attribute("session_id", target.id)
                await self._connect(target, options, attempt)
            except asyncio.CancelledError:
                if attempt == self._attempt:
                    logger.warning("[KERNEL] Kernel initialization cancelled")
                    self._status.set_error(KernelSessionError("Kernel initialization was cancelled"))
                raise
            except Exception as e:
                span.record_exception(e)
                if attempt != self._attempt:
                    logger.info(f"[KERNEL] Superseded connection attempt failed: {e}")
                    return
                logger.error(f"[KERNEL] Kernel initialization failed: {e}")
                self._status.set_error(e)

    async def _connect(self, target: SessionTarget, options, attempt: int) -> None:
        events = self.transport.create_event_channel()
        config = self.transport.build_configuration(options, events)

        registry = self._resources.get_resources().render_registry
        if registry is None:
            registry = self.transport.build_output_registry(config.mathjax)
        else:
            logger.debug("[KERNEL] Reusing warm output registry")
        self._resources.set_resources(config=config, render_registry=registry)
        self._attach_handlers(events)

        server = self.transport.create_server(config)
        self._resources.set_resources(server=server)
        server.connect()
        await asyncio.wait_for(server.ready, timeout=config.ready_timeout)
        self._ensure_current(attempt)

        session = await server.connect_to_existing_session(target, registry)
        if session is None:
            raise SessionUnavailableError(f"Server returned no session for {target.id}")
        if attempt != self._attempt:
            # Torn down while the session was being bound; nobody owns it now
            try:
                await session.shutdown()
            except Exception as e:
                logger.warning(f"[KERNEL] Could not shut down orphaned session: {e}")
            raise KernelSessionError("Connection attempt superseded")
        self._resources.set_resources(session=session)
        self._ensure_current(attempt)

        kernel = getattr(session, "kernel", None)
        if isinstance(kernel, SupportsMessageSubscription):
            self._kernel_unsubscribe = kernel.subscribe(self._on_kernel_message)

        self._status.set_connected()
        logger.info(f"[KERNEL] Connected to session {session.id}")

    def _ensure_current(self, attempt: int) -> None:
        if attempt != self._attempt:
            raise KernelSessionError("Connection attempt superseded")
        if self._status.state.status == ConnectionStatus.ERROR:
            raise self._status.state.error or KernelSessionError(
                "Connection failed before the server was ready"
            )

    async def disconnect(self) -> None:
        """Full teardown. Safe to call repeatedly."""
        self._attempt += 1
        logger.info("[KERNEL] Disconnecting")
        self._detach_handlers()
        self._detach_kernel()
        await self._resources.cleanup(partial=False)
        self._broker.clear()
        self._tracker.clear()
        self._status.clear_error()
        self._status.set_disconnected()

    # ------------------------------------------------------------------
    # Execution and input
    # ------------------------------------------------------------------

    async def execute_code(self, code: str, cell_id: str) -> Optional[ExecutionResult]:
        """
        Execute code as cell `cell_id`.

        Returns:
            ExecutionResult, or None when the kernel is not ready (nothing is recorded)

        Raises:
            Whatever the execution raised; transport-class failures also
            mark the connection DISCONNECTED first.
        """
        if not self.can_execute():
            logger.warning(
                f"[KERNEL] Not ready ({self._status.state.status.value}); "
                f"cell {cell_id} not executed"
            )
            return None

        session = self._resources.get_resources().session
        with tracer.start_as_current_span("kernel.execute") as span:
            span.set_attribute("cell_id", cell_id)
            span.set_attribute("code_length", len(code))
            try:
                outputs = await self._tracker.execute(code, cell_id, session)
            except Exception as e:
                span.record_exception(e)
                logger.error(f"[KERNEL] Execution failed for cell {cell_id}: {e}")
                if is_connection_error(e):
                    logger.warning("[KERNEL] Transport failure; marking connection as disconnected")
                    self._status.set_disconnected("connection lost")
                raise

        self._status.update_activity()
        return ExecutionResult(output=outputs)

    async def send_input_reply(self, cell_id: str, value: str) -> None:
        session = self._resources.get_resources().session
        kernel = getattr(session, "kernel", None)
        if await self._broker.send_input_reply(cell_id, value, kernel):
            self._status.update_activity()

    def render_output(self, output: Optional[Dict[str, Any]]):
        return render_output(output, self._resources.get_resources().render_registry)

    # ------------------------------------------------------------------
    # Process teardown
    # ------------------------------------------------------------------

    def setup_unload_cleanup(self, grace: Optional[float] = None) -> Callable[[], None]:
        """
        Terminate the active session when the process exits.

        Args:
            grace: Seconds the exit path waits for the shutdown request;
                defaults to the UNLOAD_GRACE setting

        Returns:
            Disposer that removes the hooks
        """
        grace = self.settings.UNLOAD_GRACE if grace is None else grace
        timeout = self.settings.UNLOAD_TIMEOUT

        def on_unload():
            session = self._resources.get_resources().session
            thread = send_shutdown_request_on_unload(session, timeout=timeout)
            if thread is not None and grace > 0:
                thread.join(grace)

        if self._unload_listener is not None:
            self._unload_listener.dispose()
        self._unload_listener = UnloadListener(on_unload)
        return self._unload_listener.install()

    # ------------------------------------------------------------------
    # Event wiring
    # ------------------------------------------------------------------

    def _attach_handlers(self, events: EventChannel) -> None:
        self._events = events
        self._handlers = {
            EventTopic.STATUS: self._on_status,
            EventTopic.ERROR: self._on_error,
            EventTopic.INPUT_REQUEST: self._on_input_request,
        }
        for topic, handler in self._handlers.items():
            events.on(topic, handler)

    def _detach_handlers(self) -> None:
        if self._events is not None:
            for topic, handler in self._handlers.items():
                self._events.off(topic, handler)
        self._events = None
        self._handlers = {}

    def _detach_kernel(self) -> None:
        if self._kernel_unsubscribe is not None:
            self._kernel_unsubscribe()
            self._kernel_unsubscribe = None

    def _on_status(self, event: str, data: Dict[str, Any]) -> None:
        status = data.get("status")
        if status in READY_STATUSES:
            self._status.mark_ready()
        elif status:
            self._status.set_kernel_status(status)

    def _on_error(self, event: str, data: Dict[str, Any]) -> None:
        error = data.get("error")
        if not isinstance(error, BaseException):
            error = KernelSessionError(data.get("message") or event)
        logger.warning(f"[KERNEL] {event}: {error}")

        status = self._status.state.status
        if status == ConnectionStatus.CONNECTING:
            self._status.set_error(error)
        elif status == ConnectionStatus.CONNECTED and is_connection_error(error):
            self._status.record_error(error)
            self._status.set_disconnected("connection lost")
        else:
            self._status.record_error(error)

    def _on_input_request(self, event: str, data: Dict[str, Any]) -> None:
        self._broker.handle_input_request(data)

    def _on_kernel_message(self, msg: Dict[str, Any]) -> None:
        header = msg.get("header", {})
        if (header.get("msg_type") or msg.get("msg_type")) != "input_request":
            return
        content = msg.get("content", {})
        self._broker.handle_input_request(
            {
                "prompt": content.get("prompt", ""),
                "password": content.get("password", False),
                "msg_id": header.get("msg_id"),
            }
        )
