"""Websocket relay broker grouping connections into isolated channels."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from hostrelay import __version__
from hostrelay.errors import ProtocolError
from hostrelay.schemas import EnvelopeType, ErrorResponse, StatusResponse, envelope_type

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3055


@dataclass
class Channel:
    """Named roster of connections sharing one relay namespace."""

    name: str
    members: list[Any] = field(default_factory=list)


class ChannelRelay:
    """Channel table and fan-out logic for the broker.

    Connections are any object exposing ``async send_json(data)``. All
    roster mutations happen before the first ``await`` of each operation,
    so they are atomic with respect to the event loop.
    """

    def __init__(self) -> None:
        self._channels: dict[str, Channel] = {}
        self._membership: dict[Any, str] = {}
        self._connections: set[Any] = set()
        self.errors = 0

    def register(self, connection: Any) -> None:
        """Track a newly accepted connection."""
        self._connections.add(connection)

    def channel_of(self, connection: Any) -> str | None:
        """Return the channel a connection has joined, if any."""
        return self._membership.get(connection)

    def members(self, channel_name: str) -> list[Any]:
        channel = self._channels.get(channel_name)
        return list(channel.members) if channel else []

    async def join(self, connection: Any, channel_name: Any) -> bool:
        """Add a connection to a channel, creating the channel if needed.

        Args:
            connection: The joining connection
            channel_name: Requested channel name from the join envelope

        Returns:
            True if the connection is now a member of the channel
        """
        name = channel_name.strip() if isinstance(channel_name, str) else ""
        if not name:
            self.errors += 1
            logger.warning("Rejected join request without a channel name")
            await self._send(connection, {
                "type": "error",
                "code": "INVALID_CHANNEL",
                "message": "Please provide a channel name to join",
            })
            return False

        previous = self._membership.get(connection)
        left = None
        if previous is not None and previous != name:
            left = self._remove(connection)

        channel = self._channels.get(name)
        if channel is None:
            channel = Channel(name=name)
            self._channels[name] = channel
            logger.info(f"Created channel: {name}")

        already_member = connection in channel.members
        existing = [] if already_member else list(channel.members)
        if not already_member:
            channel.members.append(connection)
        self._membership[connection] = name
        member_count = len(channel.members)
        logger.info(f"Connection joined channel {name} ({member_count} members)")

        if left is not None:
            await self._notify(left[1], left[0], "member_left")
        await self._send(connection, {
            "type": "system",
            "channel": name,
            "message": {"result": True, "channel": name},
        })
        await self._notify(existing, name, "member_joined")
        return True

    async def relay(self, connection: Any, envelope: dict[str, Any]) -> int:
        """Forward an envelope to every other member of the sender's channel.

        Returns:
            Number of members the envelope was delivered to
        """
        name = self._membership.get(connection)
        if name is None:
            self.errors += 1
            logger.warning(f"Rejected {envelope.get('type')} from connection outside any channel")
            await self._send(connection, {
                "type": "error",
                "code": "NOT_JOINED",
                "message": "You must join a channel before sending messages",
            })
            return 0

        recipients = [m for m in self._channels[name].members if m is not connection]
        delivered = 0
        for member in recipients:
            if await self._send(member, envelope):
                delivered += 1

        logger.debug(f"Relayed {envelope.get('type')} in {name} to {delivered}/{len(recipients)} members")
        return delivered

    async def disconnect(self, connection: Any) -> None:
        """Drop a connection and notify whoever remains in its channel."""
        self._connections.discard(connection)
        left = self._remove(connection)
        if left is not None:
            await self._notify(left[1], left[0], "member_left")

    async def handle_frame(self, connection: Any, frame: str | bytes) -> None:
        """Decode one inbound frame and route it.

        Binary frames must hold UTF-8 JSON. Malformed frames are counted and
        dropped; the connection stays open.
        """
        try:
            text = frame.decode("utf-8") if isinstance(frame, bytes) else frame
            raw = json.loads(text)
            kind = envelope_type(raw)
        except (UnicodeDecodeError, json.JSONDecodeError, ProtocolError) as e:
            self.errors += 1
            logger.warning(f"Dropped malformed frame: {e}")
            return

        if kind == EnvelopeType.JOIN:
            await self.join(connection, raw.get("channel"))
        else:
            await self.relay(connection, raw)

    def status(self) -> StatusResponse:
        return StatusResponse(
            running=True,
            channels={name: len(ch.members) for name, ch in self._channels.items()},
            connections=len(self._connections),
            errors=self.errors,
        )

    def _remove(self, connection: Any) -> tuple[str, list[Any]] | None:
        """Remove membership; delete the channel once it is empty."""
        name = self._membership.pop(connection, None)
        if name is None:
            return None

        channel = self._channels[name]
        channel.members.remove(connection)
        remaining = list(channel.members)
        if not remaining:
            del self._channels[name]
            logger.info(f"Deleted empty channel: {name}")
        else:
            logger.info(f"Connection left channel {name} ({len(remaining)} members)")
        return name, remaining

    async def _notify(self, members: list[Any], channel_name: str, event: str) -> None:
        count = len(self._channels[channel_name].members) if channel_name in self._channels else 0
        for member in members:
            await self._send(member, {
                "type": "system",
                "channel": channel_name,
                "message": {"event": event, "members": count},
            })

    async def _send(self, connection: Any, payload: dict[str, Any]) -> bool:
        try:
            await connection.send_json(payload)
            return True
        except Exception as e:
            self.errors += 1
            logger.warning(f"Failed to deliver {payload.get('type')} frame: {e}")
            return False


async def _receive_frame(websocket: WebSocket) -> str | bytes:
    """Receive the next text or binary frame."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    if message.get("text") is not None:
        return message["text"]
    return message.get("bytes") or b""


def create_app(relay: ChannelRelay | None = None) -> FastAPI:
    """Build a broker app around its own channel relay.

    Args:
        relay: Optional pre-built relay (tests inspect it directly)

    Returns:
        FastAPI app serving the websocket relay at ``/`` and ``GET /status``
    """
    relay = relay or ChannelRelay()

    app = FastAPI(
        title="hostrelay broker",
        description="Channel relay between tool-calling agents and GUI hosts",
        version=__version__,
    )
    app.state.relay = relay

    @app.websocket("/")
    async def relay_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        relay.register(websocket)
        logger.info("Client connected")
        try:
            while True:
                frame = await _receive_frame(websocket)
                await relay.handle_frame(websocket, frame)
        except WebSocketDisconnect as e:
            logger.info(f"Client disconnected with code {e.code}")
        finally:
            await relay.disconnect(websocket)

    @app.get("/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        """Report channels, connection count and error count."""
        return relay.status()

    @app.exception_handler(Exception)
    async def generic_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                detail=str(exc),
                error_code="INTERNAL_ERROR",
            ).model_dump(),
        )

    return app


app = create_app()
