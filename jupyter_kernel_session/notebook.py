"""
Execution container for the Jupyter server transport.

An ExecutableNotebook holds nbformat cells built from CodeBlocks and runs
them on the kernel of an attached session. A cell's execution subscribes to
the kernel's message stream, keeps the messages whose parent is its own
execute_request, converts IOPub output messages with nbformat, and finishes
when the kernel reports idle for that request.
"""

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Sequence

import nbformat
import structlog

from .events import EventTopic
from .exceptions import KernelConnectionError

logger = structlog.get_logger(__name__)

OUTPUT_MSG_TYPES = ("stream", "display_data", "execute_result", "error")


class ExecutableCell:
    def __init__(self, cell_id: str, node, notebook: "ExecutableNotebook"):
        self.id = cell_id
        self._node = node
        self._notebook = notebook
        self._clear_on_next_output = False

    @property
    def source(self) -> str:
        return self._node.source

    @source.setter
    def source(self, value: str):
        self._node.source = value

    @property
    def outputs(self) -> List[Dict[str, Any]]:
        return self._node.outputs

    @property
    def execution_count(self) -> Optional[int]:
        return self._node.execution_count

    async def execute(self, code: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Run the cell on the attached session's kernel.

        Raises:
            KernelConnectionError: No kernel is attached, or its websocket
                closed before the execution finished
            TimeoutError: The notebook's execute timeout elapsed
        """
        if code is not None:
            self.source = code

        session = self._notebook.session
        kernel = getattr(session, "kernel", None)
        if kernel is None:
            raise KernelConnectionError(
                f"No kernel websocket attached; cannot execute cell {self.id}"
            )

        loop = asyncio.get_running_loop()
        done = loop.create_future()
        msg_id = uuid.uuid4().hex
        self._node.outputs = []
        self._clear_on_next_output = False

        def on_message(msg):
            if msg.get("parent_header", {}).get("msg_id") != msg_id:
                return
            self._handle_message(msg, done)

        unsubscribe = kernel.subscribe(on_message)
        try:
            await kernel.execute(self.source, msg_id=msg_id)

            waiters = {done}
            if kernel.closed is not None:
                waiters.add(kernel.closed)
            finished, _ = await asyncio.wait(
                waiters,
                timeout=self._notebook.execute_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if done in finished:
                return done.result()
            if not finished:
                raise TimeoutError(
                    f"Cell {self.id} did not finish within {self._notebook.execute_timeout}s"
                )
            raise KernelConnectionError(
                f"Kernel websocket closed while executing cell {self.id}"
            )
        finally:
            unsubscribe()

    def _handle_message(self, msg: Dict[str, Any], done: asyncio.Future):
        msg_type = msg.get("header", {}).get("msg_type")
        content = msg.get("content", {})

        if msg_type == "input_request":
            self._notebook.emit_input_request(self.id, msg)
        elif msg_type == "clear_output":
            if content.get("wait"):
                self._clear_on_next_output = True
            else:
                self._node.outputs = []
        elif msg_type in OUTPUT_MSG_TYPES:
            if self._clear_on_next_output:
                self._node.outputs = []
                self._clear_on_next_output = False
            self._node.outputs.append(nbformat.v4.output_from_msg(msg))
            if msg_type == "execute_result":
                self._node.execution_count = content.get("execution_count")
        elif msg_type == "execute_reply":
            self._node.execution_count = content.get("execution_count")
        elif msg_type == "status" and content.get("execution_state") == "idle":
            if not done.done():
                done.set_result(self._node.outputs)


class ExecutableNotebook:
    """Ordered collection of cells bound to at most one session."""

    def __init__(self, config=None, registry=None):
        self.config = config
        self.registry = registry
        self.session = None
        self.nb = nbformat.v4.new_notebook()
        self._cells: Dict[str, ExecutableCell] = {}

    @classmethod
    def from_blocks(cls, blocks: Sequence, config=None, registry=None) -> "ExecutableNotebook":
        notebook = cls(config=config, registry=registry)
        for block in blocks:
            notebook.add_block(block)
        return notebook

    @property
    def execute_timeout(self) -> Optional[float]:
        return getattr(self.config, "execute_timeout", None)

    @property
    def events(self):
        return getattr(self.config, "events", None)

    @property
    def cells(self) -> List[ExecutableCell]:
        return list(self._cells.values())

    def add_block(self, block) -> Optional[ExecutableCell]:
        metadata = dict(block.metadata)
        if block.kind == "markdown":
            self.nb.cells.append(nbformat.v4.new_markdown_cell(source=block.source, metadata=metadata))
            return None
        if block.kind == "raw":
            self.nb.cells.append(nbformat.v4.new_raw_cell(source=block.source, metadata=metadata))
            return None

        node = nbformat.v4.new_code_cell(source=block.source, metadata=metadata)
        self.nb.cells.append(node)
        cell = ExecutableCell(block.id, node, self)
        self._cells[block.id] = cell
        return cell

    def attach_session(self, session) -> None:
        self.session = session

    def get_cell_by_id(self, cell_id: str) -> Optional[ExecutableCell]:
        return self._cells.get(cell_id)

    def emit_input_request(self, cell_id: str, msg: Dict[str, Any]) -> None:
        content = msg.get("content", {})
        payload = {
            "cell_id": cell_id,
            "prompt": content.get("prompt", ""),
            "password": content.get("password", False),
            "msg_id": msg.get("header", {}).get("msg_id"),
        }
        if self.events is None:
            logger.warning(f"Input request for cell {cell_id} dropped: no event channel")
            return
        self.events.emit(EventTopic.INPUT_REQUEST, payload, event="input_request")
