"""Correlated command dispatch over a resilient transport.

``DispatcherClient.execute`` turns one (command, params) call into a single
round trip through the broker. Requests are tracked in a pending table keyed
by correlation id; each entry is settled exactly once, by a terminal host
response, by its inactivity timer, or by loss of the connection.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from hostrelay.errors import (
    ChannelJoinError,
    CommandTimeoutError,
    ConnectionLostError,
    NotConnectedError,
    NotJoinedError,
    ProtocolError,
    RelayError,
    RemoteError,
)
from hostrelay.progress import describe_progress
from hostrelay.schemas import (
    Envelope,
    ErrorEnvelope,
    MessageEnvelope,
    ProgressEnvelope,
    ProgressStatus,
    ProgressUpdate,
    SystemEnvelope,
)
from hostrelay.transport import ResilientTransport

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0  # seconds
JOIN_TIMEOUT = 10.0  # seconds


@dataclass
class PendingRequest:
    """In-flight command awaiting its terminal response."""

    id: str
    command: str
    future: asyncio.Future
    timeout: float
    timer: asyncio.TimerHandle | None = None
    started_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    max_duration: float | None = None


class DispatcherClient:
    """Agent-side client issuing commands to a host through the broker.

    One instance owns one transport, its pending table and its channel.
    Construct it once per connection and pass it to whoever issues commands.
    """

    def __init__(
        self,
        transport: ResilientTransport,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        join_timeout: float = JOIN_TIMEOUT,
    ):
        self.transport = transport
        self.default_timeout = default_timeout
        self.join_timeout = join_timeout
        self._pending: dict[str, PendingRequest] = {}
        self._channel: str | None = None
        self._joined = False
        self._join_waiter: tuple[str, asyncio.Future] | None = None
        self._rejoin_task: asyncio.Task | None = None
        self._progress_listeners: list[Callable[[ProgressUpdate], Any]] = []

        transport.on_open(self._handle_open)
        transport.on_message(self._handle_message)
        transport.on_close(self._handle_close)

    # --- Introspection ---

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    @property
    def current_channel(self) -> str | None:
        """Channel currently joined, or None."""
        return self._channel if self._joined else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_progress_listener(self, listener: Callable[[ProgressUpdate], Any]) -> None:
        """Register a callable notified of progress for pending commands."""
        self._progress_listeners.append(listener)

    # --- Operations ---

    async def join(self, channel: str) -> None:
        """Join a broker channel and wait for its confirmation.

        Raises:
            ChannelJoinError: If the name is empty, the broker refuses it,
                or no confirmation arrives in time
            NotConnectedError: If the transport is not open
        """
        name = (channel or "").strip()
        if not name:
            raise ChannelJoinError("Please provide a channel name to join")
        if not self.transport.is_open:
            raise NotConnectedError("Not connected to broker")

        if self._join_waiter is not None and not self._join_waiter[1].done():
            self._join_waiter[1].set_exception(ChannelJoinError(f"Join superseded by channel {name}"))

        future = asyncio.get_running_loop().create_future()
        self._join_waiter = (name, future)
        try:
            await self.transport.send({"type": "join", "channel": name})
            await asyncio.wait_for(future, timeout=self.join_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timed out joining channel {name}")
            raise ChannelJoinError(f"Timed out joining channel {name}") from None
        except ChannelJoinError as e:
            logger.error(f"Failed to join channel {name}: {e}")
            raise
        finally:
            if self._join_waiter is not None and self._join_waiter[1] is future:
                self._join_waiter = None

        self._channel = name
        self._joined = True
        logger.info(f"Joined channel: {name}")

    async def execute(
        self,
        command: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        max_duration: float | None = None,
    ) -> Any:
        """Send a command to the host and wait for its terminal response.

        Args:
            command: Opaque command name understood by the host
            params: Opaque command parameters
            timeout: Inactivity timeout in seconds; progress resets it
            max_duration: Optional hard ceiling on total elapsed seconds,
                not extended by progress

        Returns:
            The ``result`` reported by the host

        Raises:
            NotConnectedError: Transport not open (a reconnect is started)
            NotJoinedError: No channel joined
            CommandTimeoutError: No response or progress within the timeout
            RemoteError: Host reported a failure
            ConnectionLostError: Socket closed while waiting
        """
        request_id = str(uuid.uuid4())
        if not self.transport.is_open:
            logger.info(f"Socket not open, initiating connection before retrying {command}")
            self.transport.connect()
            raise self._rejected(NotConnectedError(
                "Not connected to broker, reconnect started", command_id=request_id, command=command,
            ))
        if not self._joined or self._channel is None:
            raise self._rejected(NotJoinedError(
                "Must join a channel before sending commands", command_id=request_id, command=command,
            ))

        timeout = self.default_timeout if timeout is None else timeout
        envelope = {
            "id": request_id,
            "type": "message",
            "channel": self._channel,
            "message": {
                "id": request_id,
                "command": command,
                "params": {**(params or {}), "commandId": request_id},
            },
        }

        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            id=request_id,
            command=command,
            future=loop.create_future(),
            timeout=timeout,
            max_duration=max_duration,
        )
        self._pending[request_id] = pending
        self._schedule_timeout(pending)

        logger.info(f"Sending command {command} (ID: {request_id}, channel: {self._channel})")
        try:
            await self.transport.send(envelope)
        except NotConnectedError as e:
            self._settle(request_id, error=NotConnectedError(f"Failed to send command: {e}"))
        except Exception as e:
            self._settle(request_id, error=ProtocolError(f"Failed to send command: {e}"))

        return await pending.future

    # --- Transport handlers ---

    def _handle_open(self) -> None:
        if self._channel is None:
            return
        # Broker membership does not survive a reconnect
        self._rejoin_task = asyncio.get_running_loop().create_task(self._rejoin(self._channel))

    async def _rejoin(self, channel: str) -> None:
        try:
            await self.join(channel)
        except RelayError as e:
            logger.error(f"Could not rejoin channel {channel} after reconnect: {e}")
            self._channel = None

    def _handle_close(self, code: int, reason: str) -> None:
        self._joined = False
        if self._join_waiter is not None and not self._join_waiter[1].done():
            self._join_waiter[1].set_exception(ChannelJoinError("Connection closed before join was confirmed"))

        for request_id in list(self._pending):
            self._settle(request_id, error=ConnectionLostError(
                f"Connection closed with code {code}: {reason or 'No reason provided'}",
            ))

    def _handle_message(self, envelope: Envelope) -> None:
        if isinstance(envelope, ProgressEnvelope):
            self._handle_progress(envelope)
        elif isinstance(envelope, MessageEnvelope):
            self._handle_response(envelope)
        elif isinstance(envelope, SystemEnvelope):
            self._handle_system(envelope)
        elif isinstance(envelope, ErrorEnvelope):
            self._handle_error(envelope)
        else:
            logger.debug(f"Ignoring {envelope.type} envelope")

    def _handle_progress(self, envelope: ProgressEnvelope) -> None:
        request_id = envelope.correlation_id
        pending = self._pending.get(request_id)
        if pending is None:
            logger.debug(f"Dropping progress for unknown request {request_id}")
            return

        update = envelope.message.data
        pending.last_activity = time.monotonic()
        self._schedule_timeout(pending)
        if not isinstance(update, ProgressUpdate):
            logger.info(f"Progress for {pending.command} ({request_id}) with unrecognized payload")
            return

        logger.info(f"Progress for {pending.command} ({request_id}): {describe_progress(update)}")
        if update.status == ProgressStatus.COMPLETED:
            logger.info(f"Operation {pending.command} completed, waiting for final result")

        for listener in list(self._progress_listeners):
            try:
                listener(update)
            except Exception as e:
                logger.error(f"Progress listener failed: {e}", exc_info=True)

    def _handle_response(self, envelope: MessageEnvelope) -> None:
        message = envelope.message
        if message.is_request:
            logger.debug(f"Ignoring peer request {message.command}")
            return

        request_id = envelope.correlation_id
        if request_id is None or request_id not in self._pending or not message.is_terminal:
            logger.info(f"Received broadcast or unmatched message (ID: {request_id})")
            return

        pending = self._pending[request_id]
        if message.error:
            error = message.error if isinstance(message.error, str) else str(message.error)
            self._settle(request_id, error=RemoteError(error))
        else:
            logger.info(f"Resolving request {request_id} ({pending.command})")
            self._settle(request_id, result=message.result)

    def _handle_system(self, envelope: SystemEnvelope) -> None:
        body = envelope.message if isinstance(envelope.message, dict) else {}
        waiter = self._join_waiter
        if body.get("result") and waiter is not None and envelope.channel == waiter[0]:
            if not waiter[1].done():
                waiter[1].set_result(None)
            return
        if "event" in body:
            logger.info(f"Channel {envelope.channel}: {body['event']} ({body.get('members')} members)")

    def _handle_error(self, envelope: ErrorEnvelope) -> None:
        detail = envelope.message if isinstance(envelope.message, str) else str(envelope.message)
        waiter = self._join_waiter
        if waiter is not None and not waiter[1].done():
            waiter[1].set_exception(ChannelJoinError(detail))
            return
        logger.error(f"Broker error ({envelope.code or 'unknown'}): {detail}")
        if envelope.code == "NOT_JOINED":
            self._joined = False
            # The broker dropped whatever was sent while outside a channel
            for request_id in list(self._pending):
                self._settle(request_id, error=NotJoinedError(f"Broker rejected command: {detail}"))

    # --- Pending table ---

    def _schedule_timeout(self, pending: PendingRequest) -> None:
        if pending.timer is not None:
            pending.timer.cancel()

        delay = pending.timeout
        if pending.max_duration is not None:
            remaining = pending.max_duration - (time.monotonic() - pending.started_at)
            delay = max(0.0, min(delay, remaining))

        pending.timer = asyncio.get_running_loop().call_later(delay, self._expire, pending.id)

    def _expire(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        elapsed = time.monotonic() - pending.started_at
        self._settle(request_id, error=CommandTimeoutError(
            f"Request to host timed out after {elapsed:.1f}s",
        ))

    def _rejected(self, error: RelayError) -> RelayError:
        """Log a command refused before it was sent and return the error to raise."""
        logger.error(f"Command {error.command} (ID: {error.command_id}) failed with {error.code}: {error.message}")
        return error

    def _settle(self, request_id: str, *, result: Any = None, error: RelayError | None = None) -> None:
        """Remove a pending entry and resolve or reject its future."""
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        if pending.timer is not None:
            pending.timer.cancel()
        if pending.future.done():
            return

        if error is None:
            pending.future.set_result(result)
            return

        error.command_id = request_id
        error.command = pending.command
        logger.error(f"Command {pending.command} (ID: {request_id}) failed with {error.code}: {error.message}")
        pending.future.set_exception(error)
