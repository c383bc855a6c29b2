"""
Cell Execution Tracker
======================

Per-cell execution bookkeeping, independent of the connection state:

- One ExecutionRecord per caller-chosen cell id, replaced on every new attempt
- The single execution container ("notebook") shared by all cells, rebuilt
  from every known block when an unseen cell id arrives
- The "currently executing cell" marker used to route unlabelled input
  requests
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import nbformat
import structlog

from .cleanup import ConnectionCleanup
from .exceptions import CellNotFoundError, KernelSessionError

logger = structlog.get_logger(__name__)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    WAITING_FOR_INPUT = "waiting_for_input"


_ACTIVE = (ExecutionStatus.RUNNING, ExecutionStatus.WAITING_FOR_INPUT)


@dataclass(frozen=True)
class CodeBlock:
    """Source of one cell as handed to the execution container."""

    id: str
    source: str
    kind: str = "code"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    output: List[Dict[str, Any]]


@dataclass
class ExecutionRecord:
    """
    Status and outputs of one execution attempt.

    COMPLETED and ERROR are terminal for the attempt. WAITING_FOR_INPUT is a
    reversible sub-state of RUNNING.
    """

    status: ExecutionStatus = ExecutionStatus.RUNNING
    output: List[Dict[str, Any]] = field(default_factory=list)
    attempt: int = 1

    @property
    def is_active(self) -> bool:
        return self.status in _ACTIVE

    def mark_waiting(self) -> bool:
        if self.status != ExecutionStatus.RUNNING:
            return False
        self.status = ExecutionStatus.WAITING_FOR_INPUT
        return True

    def resume(self) -> bool:
        if self.status != ExecutionStatus.WAITING_FOR_INPUT:
            return False
        self.status = ExecutionStatus.RUNNING
        return True

    def complete(self, outputs: List[Dict[str, Any]]) -> bool:
        if not self.is_active:
            return False
        self.status = ExecutionStatus.COMPLETED
        self.output = list(outputs)
        return True

    def fail(self, outputs: Optional[List[Dict[str, Any]]] = None) -> bool:
        if not self.is_active:
            return False
        self.status = ExecutionStatus.ERROR
        if outputs is not None:
            self.output = list(outputs)
        return True


def error_output(error: BaseException) -> Dict[str, Any]:
    """Synthetic nbformat error output for a failure raised by the transport."""
    return nbformat.v4.new_output(
        "error",
        ename=type(error).__name__,
        evalue=str(error),
        traceback=[],
    )


class CellExecutionTracker:
    def __init__(self, transport, resources: ConnectionCleanup):
        self._transport = transport
        self._resources = resources
        self._records: Dict[str, ExecutionRecord] = {}
        # Insertion-ordered: container rebuilds keep the caller's cell order
        self._blocks: Dict[str, CodeBlock] = {}
        self.current_cell: Optional[str] = None

    @property
    def records(self) -> Mapping[str, ExecutionRecord]:
        return MappingProxyType(self._records)

    def get(self, cell_id: str) -> Optional[ExecutionRecord]:
        return self._records.get(cell_id)

    def known_cells(self) -> List[str]:
        return list(self._blocks)

    async def execute(self, code: str, cell_id: str, session) -> List[Dict[str, Any]]:
        """
        Run one cell on the active session and record the outcome.

        Returns:
            The cell's outputs

        Raises:
            Whatever the container or kernel raised; the record is left in
            ERROR with a synthetic error output first.
        """
        self.current_cell = cell_id
        previous = self._records.get(cell_id)
        record = ExecutionRecord(attempt=previous.attempt + 1 if previous else 1)
        self._records[cell_id] = record

        try:
            cell = self._ensure_cell(code, cell_id, session)
            result = await cell.execute(code)
            outputs = list(cell.outputs if cell.outputs is not None else result or [])
            if not record.complete(outputs):
                logger.debug(
                    f"Cell {cell_id} attempt {record.attempt} already settled as "
                    f"{record.status.value}; keeping it"
                )
            return outputs
        except asyncio.CancelledError:
            cancelled = KernelSessionError(f"Execution of cell {cell_id} was cancelled")
            record.fail([error_output(cancelled)])
            raise
        except Exception as e:
            record.fail([error_output(e)])
            raise
        finally:
            # Only clear our own marker: another cell may have started meanwhile
            if self.current_cell == cell_id:
                self.current_cell = None

    def _ensure_cell(self, code: str, cell_id: str, session):
        """Find or create the container cell for cell_id. Never awaits."""
        self._blocks[cell_id] = CodeBlock(id=cell_id, source=code)

        notebook = self._resources.get_resources().notebook
        if notebook is None:
            notebook = self._build_notebook(session)

        cell = notebook.get_cell_by_id(cell_id)
        if cell is not None:
            cell.source = code
            return cell

        logger.info(f"Cell {cell_id} not in container; rebuilding with {len(self._blocks)} cells")
        notebook = self._build_notebook(session)
        cell = notebook.get_cell_by_id(cell_id)
        if cell is None:
            raise CellNotFoundError(f"Could not create or find cell {cell_id}")
        return cell

    def _build_notebook(self, session):
        resources = self._resources.get_resources()
        notebook = self._transport.setup_notebook_from_blocks(
            list(self._blocks.values()), resources.config, resources.render_registry
        )
        notebook.attach_session(session)
        self._resources.set_resources(notebook=notebook)
        return notebook

    # -- input request hooks -----------------------------------------------

    def set_waiting(self, cell_id: str) -> bool:
        record = self._records.get(cell_id)
        return record.mark_waiting() if record else False

    def set_running(self, cell_id: str) -> bool:
        record = self._records.get(cell_id)
        return record.resume() if record else False

    def mark_error(self, cell_id: str) -> bool:
        record = self._records.get(cell_id)
        return record.fail() if record else False

    def clear(self):
        self._records.clear()
        self._blocks.clear()
        self.current_cell = None
