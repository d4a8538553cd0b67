"""Error taxonomy for relayed commands.

Every error carries a stable ``code`` and a ``recoverable`` flag so callers
can decide whether reissuing the command makes sense.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hostrelay.schemas import ErrorResponse


class RelayError(Exception):
    """Base class for all hostrelay errors."""

    code = "UNKNOWN_ERROR"
    recoverable = False

    def __init__(
        self,
        message: str,
        *,
        command_id: str | None = None,
        command: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.command_id = command_id
        self.command = command


class NotConnectedError(RelayError, ConnectionError):
    """Raised when no open connection to the broker exists."""

    code = "NOT_CONNECTED"
    recoverable = True


class NotJoinedError(NotConnectedError):
    """Raised when the connection is open but no channel has been joined."""

    code = "NOT_JOINED"


class ConnectionLostError(NotConnectedError):
    """Raised for in-flight requests when the socket closes under them."""

    code = "CONNECTION_CLOSED"


class CommandTimeoutError(RelayError, TimeoutError):
    """Raised when no terminal response or progress arrives in time."""

    code = "TIMEOUT"
    recoverable = True


class RemoteError(RelayError):
    """Raised when the host reports a failure for a command."""

    code = "REMOTE_ERROR"


class ProtocolError(RelayError):
    """Raised for malformed frames or unknown envelope types."""

    code = "PROTOCOL_ERROR"


class ChannelJoinError(RelayError):
    """Raised when joining a channel fails. Not retried automatically."""

    code = "JOIN_FAILED"


def to_error_response(exc: BaseException) -> ErrorResponse:
    """Convert an exception into a structured error value.

    Args:
        exc: Any exception raised while executing a command

    Returns:
        ErrorResponse carrying code, correlation id and recoverability
    """
    from hostrelay.schemas import ErrorResponse

    if isinstance(exc, RelayError):
        return ErrorResponse(
            detail=exc.message,
            error_code=exc.code,
            command_id=exc.command_id,
            command=exc.command,
            recoverable=exc.recoverable,
        )
    return ErrorResponse(
        detail=str(exc) or type(exc).__name__,
        error_code="INTERNAL_ERROR",
    )
