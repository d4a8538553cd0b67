"""Reconnecting websocket transport with heartbeat liveness checks."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

import httpx
import websockets

from hostrelay.errors import NotConnectedError, ProtocolError
from hostrelay.schemas import Envelope, decode_envelope

logger = logging.getLogger(__name__)

# Timeout for the pre-reconnect status probe
PROBE_TIMEOUT = 5.0  # seconds

# Largest frame accepted from the broker
MAX_FRAME_BYTES = 16 * 1024 * 1024


class ConnectionState(str, Enum):
    """Transport lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECT_WAIT = "reconnect_wait"


@dataclass
class TransportOptions:
    """Reconnect and heartbeat policy for a transport. Durations in seconds."""

    initial_delay: float = 1.0
    max_delay: float = 30.0
    max_reconnect_attempts: int = 5
    heartbeat_interval: float = 15.0
    heartbeat_timeout: float = 10.0
    connect_timeout: float = 10.0
    status_url: str | None = None
    probe_penalty: float = 5.0


def status_url_for(url: str) -> str:
    """Map a broker websocket URL to its HTTP status endpoint."""
    parts = urlsplit(url)
    scheme = "https" if parts.scheme == "wss" else "http"
    return urlunsplit((scheme, parts.netloc, "/status", "", ""))


def compute_reconnect_delay(attempts: int, initial_delay: float, max_delay: float) -> float:
    """Backoff delay before reconnect attempt number ``attempts + 1``."""
    return min(max_delay, initial_delay * 1.5 ** attempts)


async def _open_websocket(url: str) -> Any:
    # Liveness is driven by our own heartbeat loop, not the library's pings
    return await websockets.connect(url, ping_interval=None, max_size=MAX_FRAME_BYTES)


class ResilientTransport:
    """One websocket connection kept alive across network failures.

    Inbound frames are decoded into typed envelopes before reaching message
    handlers. Handlers are plain callables invoked on the event loop; they
    must not block. Nothing sent while disconnected is buffered.
    """

    def __init__(
        self,
        url: str,
        options: TransportOptions | None = None,
        *,
        connector: Callable[[str], Awaitable[Any]] | None = None,
    ):
        """Initialize the transport.

        Args:
            url: Websocket URL of the broker (e.g. ws://localhost:3055)
            options: Reconnect/heartbeat policy
            connector: Coroutine function opening a raw socket for a URL
        """
        self.url = url
        self.options = options or TransportOptions()
        self._connector = connector or _open_websocket
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self._ws: Any = None
        self._supervisor: asyncio.Task | None = None
        self._closing = False
        self._opened = asyncio.Event()
        self._open_handlers: list[Callable[[], Any]] = []
        self._message_handlers: list[Callable[[Envelope], Any]] = []
        self._close_handlers: list[Callable[[int, str], Any]] = []

    # --- Handler registration ---

    def on_open(self, handler: Callable[[], Any]) -> None:
        self._open_handlers.append(handler)

    def on_message(self, handler: Callable[[Envelope], Any]) -> None:
        self._message_handlers.append(handler)

    def on_close(self, handler: Callable[[int, str], Any]) -> None:
        self._close_handlers.append(handler)

    # --- Lifecycle ---

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN and self._ws is not None

    def reconnect_delay(self, attempts: int | None = None) -> float:
        """Delay the transport would wait after ``attempts`` failures."""
        if attempts is None:
            attempts = self.attempts
        return compute_reconnect_delay(attempts, self.options.initial_delay, self.options.max_delay)

    def connect(self) -> None:
        """Start connecting unless already open, connecting, or waiting to retry."""
        if self.state == ConnectionState.OPEN:
            logger.info("Already connected to broker")
            return
        if self._supervisor is not None and not self._supervisor.done():
            logger.info(f"Connection to broker already in progress ({self.state.value})")
            return

        self._closing = False
        self.attempts = 0
        self._supervisor = asyncio.get_running_loop().create_task(self._supervise())

    async def wait_open(self, timeout: float | None = None) -> bool:
        """Wait until the transport is open. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._opened.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def send(self, payload: dict[str, Any]) -> None:
        """Send one JSON envelope.

        Raises:
            NotConnectedError: If the socket is not open or closes mid-send
        """
        ws = self._ws
        if ws is None or self.state != ConnectionState.OPEN:
            raise NotConnectedError("Not connected to broker")
        try:
            await ws.send(json.dumps(payload))
        except websockets.ConnectionClosed as e:
            raise NotConnectedError(f"Connection closed while sending: {e}") from e

    async def close(self) -> None:
        """Close the connection on purpose; no reconnect follows."""
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

        task = self._supervisor
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._supervisor = None
        self.state = ConnectionState.DISCONNECTED
        logger.info("Transport closed")

    # --- Internals ---

    async def _supervise(self) -> None:
        try:
            while not self._closing:
                self.state = ConnectionState.CONNECTING
                logger.info(f"Connecting to broker at {self.url}...")
                try:
                    ws = await asyncio.wait_for(
                        self._connector(self.url),
                        timeout=self.options.connect_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.error(f"Connection to {self.url} timed out")
                    self._handle_close(1006, "connect timeout")
                except (OSError, websockets.WebSocketException) as e:
                    logger.error(f"Connection to {self.url} failed: {e}")
                    self._handle_close(1006, str(e))
                else:
                    await self._run_session(ws)

                if self._closing or not await self._wait_before_reconnect():
                    break
        finally:
            self.state = ConnectionState.DISCONNECTED

    async def _run_session(self, ws: Any) -> None:
        self._ws = ws
        self.state = ConnectionState.OPEN
        self.attempts = 0
        self._opened.set()
        logger.info("Connected to broker")

        heartbeat = None
        if self.options.heartbeat_interval > 0:
            heartbeat = asyncio.create_task(self._heartbeat_loop(ws))
        self._emit(self._open_handlers)

        try:
            async for raw in ws:
                self._dispatch(raw)
        except websockets.ConnectionClosed as e:
            logger.warning(f"Connection to broker lost: {e}")
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            self._ws = None
            self._opened.clear()
            code = getattr(ws, "close_code", None) or 1006
            reason = getattr(ws, "close_reason", None) or ""
            self._handle_close(code, reason)

    async def _heartbeat_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.options.heartbeat_interval)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.options.heartbeat_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"No heartbeat acknowledgment within {self.options.heartbeat_timeout}s, "
                    "terminating connection"
                )
                ws.transport.abort()
                return
            except websockets.ConnectionClosed:
                return

    async def _wait_before_reconnect(self) -> bool:
        if self.attempts >= self.options.max_reconnect_attempts:
            logger.error(f"Max reconnect attempts ({self.options.max_reconnect_attempts}) reached, giving up")
            return False

        delay = self.reconnect_delay()
        self.attempts += 1
        self.state = ConnectionState.RECONNECT_WAIT

        if self.options.status_url and not await self._probe_broker():
            delay += self.options.probe_penalty
            logger.warning(f"Broker status probe failed, delaying reconnect by {self.options.probe_penalty}s")

        logger.info(
            f"Reconnecting in {delay:.2f}s "
            f"(attempt {self.attempts}/{self.options.max_reconnect_attempts})"
        )
        await asyncio.sleep(delay)
        return not self._closing

    async def _probe_broker(self) -> bool:
        """Check the broker's HTTP status endpoint before reconnecting."""
        try:
            async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
                response = await client.get(self.options.status_url)
                return response.status_code == 200 and bool(response.json().get("running"))
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Status probe error: {e}")
            return False

    def _handle_close(self, code: int, reason: str) -> None:
        logger.info(f"Disconnected from broker with code {code} and reason: {reason or 'No reason provided'}")
        self._emit(self._close_handlers, code, reason)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            envelope = decode_envelope(json.loads(raw))
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing message: {e}")
            return
        except ProtocolError as e:
            logger.warning(f"Dropped inbound frame: {e}")
            return
        self._emit(self._message_handlers, envelope)

    def _emit(self, handlers: list[Callable[..., Any]], *args: Any) -> None:
        for handler in list(handlers):
            try:
                handler(*args)
            except Exception as e:
                logger.error(f"Transport handler {handler!r} failed: {e}", exc_info=True)
