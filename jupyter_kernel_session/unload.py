"""
Unload-Time Best-Effort Terminator
==================================

When the hosting process is about to exit there is no one left to react to
failures, and nothing may hold the exit path hostage. This module:

- builds a DELETE /api/sessions/{id} request from the active session's
  server settings,
- hands it to a daemon thread that walks an ordered list of delivery
  strategies (a second, relaxed strategy only after a network-class
  failure), and returns immediately,
- provides UnloadListener, the atexit/signal hook that triggers it.

Nothing in here raises to the caller.
"""

import atexit
import signal
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_UNLOAD_TIMEOUT = 2.0

# Failures that justify one more attempt in degraded mode
NETWORK_ERRORS = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)


@dataclass(frozen=True)
class ShutdownRequest:
    url: str
    session_id: str
    token: str = ""
    headers: Dict[str, str] = field(default_factory=dict)


class KeepaliveDelete:
    """Plain authenticated DELETE with a short timeout."""

    name = "keepalive"

    def send(self, request: ShutdownRequest, http: requests.Session, timeout: float):
        response = http.delete(request.url, headers=request.headers, timeout=timeout)
        return response.status_code


class RelaxedDelete:
    """
    Degraded DELETE: TLS verification off, token as a query parameter.

    Gets through proxies that strip the Authorization header and servers
    presenting certificates the client cannot verify.
    """

    name = "relaxed"

    def send(self, request: ShutdownRequest, http: requests.Session, timeout: float):
        params = {"token": request.token} if request.token else None
        response = http.delete(request.url, params=params, verify=False, timeout=timeout)
        return response.status_code


DEFAULT_STRATEGIES = (KeepaliveDelete(), RelaxedDelete())


def build_shutdown_request(session) -> Optional[ShutdownRequest]:
    """Derive the session DELETE from the session's bound server settings."""
    settings = getattr(session, "server_settings", None)
    base_url = getattr(settings, "base_url", None)
    session_id = getattr(session, "id", None)
    if not base_url or not session_id:
        return None

    token = getattr(settings, "token", "") or ""
    headers = {"Authorization": f"token {token}"} if token else {}
    return ShutdownRequest(
        url=f"{base_url.rstrip('/')}/api/sessions/{session_id}",
        session_id=session_id,
        token=token,
        headers=headers,
    )


def deliver(
    request: ShutdownRequest,
    strategies: Sequence = DEFAULT_STRATEGIES,
    timeout: float = DEFAULT_UNLOAD_TIMEOUT,
    http: Optional[requests.Session] = None,
) -> bool:
    """
    Try each strategy in order until one gets a response from the server.

    Only a network-class failure moves on to the next strategy. Returns True
    when some strategy got a response, whatever its status code.
    """
    http = http or requests.Session()
    for strategy in strategies:
        try:
            status_code = strategy.send(request, http, timeout)
            logger.info(
                f"[unload] Shutdown request for session {request.session_id} "
                f"sent via {strategy.name} (HTTP {status_code})"
            )
            return True
        except NETWORK_ERRORS as e:
            logger.warning(f"[unload] {strategy.name} delivery failed: {e}")
            continue
        except Exception as e:
            logger.warning(f"[unload] {strategy.name} delivery aborted: {e}")
            return False
    logger.warning(f"[unload] Giving up on shutdown request for session {request.session_id}")
    return False


def send_shutdown_request_on_unload(
    session,
    strategies: Sequence = DEFAULT_STRATEGIES,
    timeout: float = DEFAULT_UNLOAD_TIMEOUT,
    http: Optional[requests.Session] = None,
) -> Optional[threading.Thread]:
    """
    Fire-and-forget termination of the remote session.

    Returns:
        The delivery thread (callers may join it with a bound), or None when
        nothing was dispatched or delivery already ran inline.
    """
    try:
        if session is None:
            logger.info("[unload] No active session, skipping unload cleanup")
            return None

        request = build_shutdown_request(session)
        if request is None:
            logger.warning("[unload] Session has no server settings; cannot build shutdown request")
            return None

        logger.info(f"[unload] Sending shutdown request for session {request.session_id}")
        thread = threading.Thread(
            target=deliver,
            args=(request, strategies, timeout, http),
            name="kernel-session-unload",
            daemon=True,
        )
        try:
            thread.start()
        except RuntimeError:
            # Interpreter shutdown refuses new threads; deliver inline instead
            deliver(request, strategies, timeout, http)
            return None
        return thread
    except Exception as e:
        logger.error(f"[unload] Failed to dispatch shutdown request: {e}")
        return None


class UnloadListener:
    """
    Process-teardown hook: atexit plus termination signals.

    The callback fires at most once. After it runs from a signal, the
    previously installed handler is invoked (or the default action restored
    and the signal re-raised).
    """

    def __init__(
        self,
        callback: Callable[[], None],
        signals: Iterable[signal.Signals] = (signal.SIGTERM,),
    ):
        self._callback = callback
        self._signals = tuple(signals)
        self._previous: List[Tuple[signal.Signals, object]] = []
        self._fired = False
        self._installed = False

    def install(self) -> Callable[[], None]:
        """Register the hooks and return the disposer that removes them."""
        if self._installed:
            return self.dispose
        atexit.register(self._fire)
        # signal.signal() is only legal from the main thread
        if threading.current_thread() is threading.main_thread():
            for sig in self._signals:
                self._previous.append((sig, signal.getsignal(sig)))
                signal.signal(sig, self._on_signal)
        self._installed = True
        return self.dispose

    def dispose(self) -> None:
        if not self._installed:
            return
        atexit.unregister(self._fire)
        for sig, previous in self._previous:
            try:
                signal.signal(sig, previous)
            except (ValueError, TypeError) as e:
                logger.warning(f"[unload] Could not restore handler for {sig!r}: {e}")
        self._previous.clear()
        self._installed = False

    def _fire(self) -> None:
        if self._fired:
            return
        self._fired = True
        try:
            self._callback()
        except Exception as e:
            logger.error(f"[unload] Unload callback failed: {e}")

    def _on_signal(self, signum, frame) -> None:
        self._fire()
        previous = dict(self._previous).get(signum, signal.SIG_DFL)
        self.dispose()
        if callable(previous):
            previous(signum, frame)
        elif previous is None or previous == signal.SIG_DFL:
            # None: the handler was installed outside Python
            signal.signal(signum, signal.SIG_DFL)
            signal.raise_signal(signum)
