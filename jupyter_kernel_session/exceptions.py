"""Exception hierarchy for the kernel session client."""

from typing import Optional

import requests
from websockets.exceptions import WebSocketException

# Substrings that mark a failure as transport-related rather than a code error
CONNECTION_ERROR_KEYWORDS = ("fetch", "network", "cors", "websocket")


class KernelSessionError(Exception):
    """Base class for all errors raised by this package."""


class ServerUnavailableError(KernelSessionError):
    """The Jupyter server could not be reached or reported itself unhealthy."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionUnavailableError(KernelSessionError):
    """The requested server-side session does not exist or could not be bound."""


class KernelConnectionError(KernelSessionError, ConnectionError):
    """The kernel websocket is closed or could not be opened."""


class CellNotFoundError(KernelSessionError, LookupError):
    """A cell could not be located in the execution container after a rebuild."""


def is_connection_error(error: BaseException) -> bool:
    """
    Heuristic check for transport-class failures.

    Matches the exception message against CONNECTION_ERROR_KEYWORDS, and also
    accepts the connection exception types of the libraries used by the
    default transport.
    """
    if isinstance(
        error,
        (
            ConnectionError,
            requests.exceptions.ConnectionError,
            WebSocketException,
        ),
    ):
        return True
    message = str(error).lower()
    return any(keyword in message for keyword in CONNECTION_ERROR_KEYWORDS)
