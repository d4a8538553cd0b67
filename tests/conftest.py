"""Pytest configuration and fixtures for hostrelay tests."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from hostrelay.broker import ChannelRelay, create_app
from hostrelay.errors import NotConnectedError
from hostrelay.schemas import decode_envelope
from hostrelay.transport import ConnectionState, TransportOptions


class FakeTransport:
    """In-memory stand-in for ResilientTransport.

    Join requests are confirmed on the next loop iteration unless
    ``auto_confirm_join`` is False. When ``responder`` is set, it is called
    with every sent command envelope and its return value (if any) is
    delivered back as an inbound frame.
    """

    def __init__(self, url="ws://broker.test", *, open=True, auto_confirm_join=True):
        self.url = url
        self.options = TransportOptions(status_url="http://broker.test/status")
        self.sent = []
        self.connect_calls = 0
        self.auto_confirm_join = auto_confirm_join
        self.responder = None
        self._open = open
        self._open_handlers = []
        self._message_handlers = []
        self._close_handlers = []

    @property
    def state(self):
        return ConnectionState.OPEN if self._open else ConnectionState.DISCONNECTED

    @property
    def is_open(self):
        return self._open

    def on_open(self, handler):
        self._open_handlers.append(handler)

    def on_message(self, handler):
        self._message_handlers.append(handler)

    def on_close(self, handler):
        self._close_handlers.append(handler)

    def connect(self):
        self.connect_calls += 1

    async def wait_open(self, timeout=None):
        return self._open

    async def send(self, payload):
        if not self._open:
            raise NotConnectedError("Not connected to broker")
        self.sent.append(payload)

        loop = asyncio.get_running_loop()
        if payload.get("type") == "join" and self.auto_confirm_join:
            channel = payload["channel"]
            loop.call_soon(self.deliver, {
                "type": "system",
                "channel": channel,
                "message": {"result": True, "channel": channel},
            })
        elif payload.get("type") == "message" and self.responder is not None:
            reply = self.responder(payload)
            if reply is not None:
                loop.call_soon(self.deliver, reply)

    def deliver(self, raw):
        envelope = decode_envelope(raw)
        for handler in list(self._message_handlers):
            handler(envelope)

    def open(self):
        self._open = True
        for handler in list(self._open_handlers):
            handler()

    def drop(self, code=1006, reason=""):
        self._open = False
        for handler in list(self._close_handlers):
            handler(code, reason)

    def commands(self):
        return [p for p in self.sent if p.get("type") == "message"]


class FakeSocket:
    """Minimal websocket connection driven through an inbox queue."""

    def __init__(self, *, pong=True):
        self.inbox = asyncio.Queue()
        self.sent = []
        self.pings = 0
        self.pong = pong
        self.close_code = None
        self.close_reason = None
        self.transport = MagicMock()
        self.transport.abort.side_effect = lambda: self.hang_up(1006, "aborted")

    def feed(self, raw):
        self.inbox.put_nowait(raw if isinstance(raw, str) else json.dumps(raw))

    def hang_up(self, code=1006, reason=""):
        self.close_code = code
        self.close_reason = reason
        self.inbox.put_nowait(None)

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.pong:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code=1000, reason=""):
        self.hang_up(code, reason)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnection:
    """Broker-side connection recording frames sent to it."""

    def __init__(self, name, *, broken=False):
        self.name = name
        self.broken = broken
        self.frames = []

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError(f"{self.name} is gone")
        self.frames.append(data)

    def __repr__(self):
        return f"FakeConnection({self.name})"


@pytest.fixture
def relay():
    return ChannelRelay()


@pytest.fixture
def broker_client(relay):
    """TestClient serving a broker app around the ``relay`` fixture."""
    with TestClient(create_app(relay)) as client:
        yield client


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def make_transport():
    """Factory for FakeTransport instances with custom options."""
    return FakeTransport


@pytest.fixture
def make_socket():
    """Factory for FakeSocket instances; create them inside the running loop."""
    return FakeSocket


@pytest.fixture
def make_connection():
    """Factory for broker-side FakeConnection instances."""
    return FakeConnection
