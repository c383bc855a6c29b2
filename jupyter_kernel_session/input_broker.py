"""
Input Request Broker
====================

Turns a kernel "input_request" into a pending, resolvable request keyed by
cell id, and forwards the user's reply back to the kernel.

Routing: the request's own cell id when the transport supplies one, else the
tracker's currently executing cell, else UNKNOWN_CELL_ID. The same kernel
message can reach the broker twice (once as a routed event, once from the
raw kernel message stream); the kernel msg_id deduplicates them, and a
routed duplicate re-keys a request that was first routed by fallback.
"""

import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

import structlog

from .execution import CellExecutionTracker
from .protocols import SupportsInputReply

logger = structlog.get_logger(__name__)

UNKNOWN_CELL_ID = "unknown-cell"


@dataclass
class PendingInputRequest:
    cell_id: str
    prompt: str
    password: bool
    future: asyncio.Future = field(repr=False)
    msg_id: Optional[str] = None
    # True when the cell id came from the request itself rather than a fallback
    routed: bool = False


class InputRequestBroker:
    def __init__(self, tracker: CellExecutionTracker):
        self._tracker = tracker
        self._pending: Dict[str, PendingInputRequest] = {}

    @property
    def pending(self) -> Mapping[str, PendingInputRequest]:
        return MappingProxyType(self._pending)

    def get(self, cell_id: str) -> Optional[PendingInputRequest]:
        return self._pending.get(cell_id)

    def handle_input_request(self, data: Dict[str, Any]) -> asyncio.Future:
        """
        Register an input request from the kernel.

        Args:
            data: {"cell_id"?, "prompt", "password", "msg_id"?}

        Returns:
            Future resolved with the reply value once send_input_reply() runs
        """
        explicit_id = data.get("cell_id")
        msg_id = data.get("msg_id")

        if msg_id:
            existing = self._find_by_msg_id(msg_id)
            if existing is not None:
                if explicit_id and not existing.routed and existing.cell_id != explicit_id:
                    self._rekey(existing, explicit_id)
                else:
                    logger.debug(f"Duplicate input request {msg_id} for {existing.cell_id}")
                return existing.future

        cell_id = explicit_id or self._tracker.current_cell or UNKNOWN_CELL_ID
        if cell_id == UNKNOWN_CELL_ID:
            logger.warning("Input request could not be routed to a cell; using sentinel id")

        previous = self._pending.pop(cell_id, None)
        if previous is not None:
            logger.warning(f"Replacing unanswered input request for cell {cell_id}")
            previous.future.cancel()

        self._tracker.set_waiting(cell_id)

        request = PendingInputRequest(
            cell_id=cell_id,
            prompt=data.get("prompt") or "",
            password=bool(data.get("password", False)),
            future=asyncio.get_running_loop().create_future(),
            msg_id=msg_id,
            routed=bool(explicit_id),
        )
        self._pending[cell_id] = request
        logger.info(f"Kernel requested input for cell {cell_id}: {request.prompt!r}")
        return request.future

    async def send_input_reply(self, cell_id: str, value: str, kernel: Any = None) -> bool:
        """
        Answer the pending request for a cell.

        Unknown cell ids are ignored. A forwarding failure is recorded on the
        cell's execution record and not raised.

        Returns:
            True if a pending request was answered
        """
        request = self._pending.pop(cell_id, None)
        if request is None:
            logger.warning(f"No input request pending for cell {cell_id}")
            return False

        # Settled before forwarding: the kernel may ask again while the reply is in flight
        self._tracker.set_running(cell_id)
        try:
            if isinstance(kernel, SupportsInputReply):
                await kernel.send_input_reply(value)
            else:
                logger.debug(f"Kernel cannot take input replies; resolving {cell_id} locally")
        except Exception as e:
            logger.error(f"Error sending input reply for cell {cell_id}: {e}")
            self._tracker.mark_error(cell_id)
            request.future.cancel()
            return False

        if not request.future.done():
            request.future.set_result(value)
        return True

    def clear(self) -> None:
        """Drop every pending request, cancelling anything still awaiting a reply."""
        for request in self._pending.values():
            request.future.cancel()
        self._pending.clear()

    def _find_by_msg_id(self, msg_id: str) -> Optional[PendingInputRequest]:
        for request in self._pending.values():
            if request.msg_id == msg_id:
                return request
        return None

    def _rekey(self, request: PendingInputRequest, cell_id: str) -> None:
        logger.info(f"Re-routing input request {request.msg_id}: {request.cell_id} -> {cell_id}")
        self._pending.pop(request.cell_id, None)
        self._tracker.set_running(request.cell_id)

        displaced = self._pending.pop(cell_id, None)
        if displaced is not None:
            displaced.future.cancel()

        request.cell_id = cell_id
        request.routed = True
        self._pending[cell_id] = request
        self._tracker.set_waiting(cell_id)
