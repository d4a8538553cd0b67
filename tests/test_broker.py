"""Tests for the channel broker."""

import asyncio

import pytest


def _join(ws, channel):
    ws.send_json({"type": "join", "channel": channel})
    return ws.receive_json()


class TestBrokerWebsocket:
    """End-to-end relay behavior through the websocket endpoint."""

    def test_join_confirmation(self, broker_client):
        """Joining returns a system confirmation naming the channel."""
        with broker_client.websocket_connect("/") as ws:
            reply = _join(ws, "room42")

        assert reply == {"type": "system", "channel": "room42", "message": {"result": True, "channel": "room42"}}

    def test_message_relayed_verbatim_without_echo(self, broker_client):
        """A message reaches the other member unchanged and is not echoed to the sender."""
        with broker_client.websocket_connect("/") as a, broker_client.websocket_connect("/") as b:
            _join(a, "room42")
            _join(b, "room42")
            joined = a.receive_json()
            assert joined["message"] == {"event": "member_joined", "members": 2}

            request = {
                "id": "r1",
                "type": "message",
                "channel": "room42",
                "message": {"id": "r1", "command": "get_doc", "params": {"depth": 2, "commandId": "r1"}},
            }
            a.send_json(request)
            assert b.receive_json() == request

            reply = {"id": "r1", "type": "message", "channel": "room42", "message": {"id": "r1", "result": {"name": "Doc"}}}
            b.send_json(reply)
            # If the request had been echoed, it would arrive before the reply
            assert a.receive_json() == reply

    def test_progress_update_relayed(self, broker_client):
        with broker_client.websocket_connect("/") as a, broker_client.websocket_connect("/") as b:
            _join(a, "room42")
            _join(b, "room42")
            a.receive_json()

            update = {
                "id": "r1",
                "type": "progress_update",
                "message": {"id": "r1", "type": "progress_update", "data": {"commandId": "r1", "status": "in_progress", "progress": 40}},
            }
            b.send_json(update)
            assert a.receive_json() == update

    def test_channels_are_isolated(self, broker_client):
        """Traffic in one channel never reaches members of another."""
        with broker_client.websocket_connect("/") as c, \
                broker_client.websocket_connect("/") as a, \
                broker_client.websocket_connect("/") as b, \
                broker_client.websocket_connect("/") as d:
            _join(c, "other")
            _join(a, "room42")
            _join(b, "room42")
            a.receive_json()

            a.send_json({"type": "message", "message": {"id": "x", "command": "ping"}})
            assert b.receive_json()["message"]["command"] == "ping"

            _join(d, "other")
            # C's next frame is D's arrival, not A's message
            assert c.receive_json()["message"]["event"] == "member_joined"

    def test_empty_channel_name_rejected(self, broker_client):
        with broker_client.websocket_connect("/") as ws:
            reply = _join(ws, "   ")

        assert reply["type"] == "error"
        assert reply["code"] == "INVALID_CHANNEL"

    def test_message_before_join_rejected(self, broker_client):
        with broker_client.websocket_connect("/") as ws:
            ws.send_json({"type": "message", "message": {"id": "1", "command": "ping"}})
            reply = ws.receive_json()

        assert reply["type"] == "error"
        assert reply["code"] == "NOT_JOINED"
        assert "join a channel" in reply["message"]

    def test_malformed_frames_dropped(self, broker_client, relay):
        """Bad frames are counted and the connection stays usable."""
        with broker_client.websocket_connect("/") as ws:
            ws.send_text("not json")
            ws.send_json({"type": "bogus"})
            ws.send_json(["a", "list"])
            ws.send_bytes(b"\xff\xfe{}")
            reply = _join(ws, "room42")

        assert reply["message"]["result"] is True
        assert relay.errors == 4

    def test_member_left_notice(self, broker_client):
        with broker_client.websocket_connect("/") as a:
            _join(a, "room42")
            with broker_client.websocket_connect("/") as b:
                _join(b, "room42")
                a.receive_json()

            left = a.receive_json()
            assert left == {"type": "system", "channel": "room42", "message": {"event": "member_left", "members": 1}}


class TestStatusEndpoint:
    """Test GET /status."""

    def test_status_empty(self, broker_client):
        response = broker_client.get("/status")

        assert response.status_code == 200
        assert response.json() == {"running": True, "channels": {}, "connections": 0, "errors": 0}

    def test_status_counts_members(self, broker_client):
        with broker_client.websocket_connect("/") as a, broker_client.websocket_connect("/") as b:
            _join(a, "room42")
            _join(b, "room42")
            a.receive_json()

            data = broker_client.get("/status").json()

        assert data["channels"] == {"room42": 2}
        assert data["connections"] == 2


class TestChannelRelay:
    """Unit tests for the channel table, independent of any server."""

    def test_channel_created_and_deleted(self, relay, make_connection):
        async def _go():
            a = make_connection("a")
            relay.register(a)
            await relay.join(a, "room42")
            assert relay.members("room42") == [a]

            await relay.disconnect(a)
            assert relay.members("room42") == []
            assert relay.status().channels == {}
            assert relay.status().connections == 0

        asyncio.run(_go())

    def test_rejoin_moves_connection(self, relay, make_connection):
        """Joining a new channel leaves the previous one."""
        async def _go():
            a, b = make_connection("a"), make_connection("b")
            await relay.join(a, "one")
            await relay.join(b, "one")
            await relay.join(a, "two")

            assert relay.channel_of(a) == "two"
            assert relay.members("one") == [b]
            assert b.frames[-1]["message"] == {"event": "member_left", "members": 1}

        asyncio.run(_go())

    def test_join_same_channel_twice(self, relay, make_connection):
        async def _go():
            a = make_connection("a")
            await relay.join(a, "room42")
            await relay.join(a, "room42")

            assert relay.members("room42") == [a]
            assert [f["type"] for f in a.frames] == ["system", "system"]

        asyncio.run(_go())

    def test_relay_reaches_every_other_member(self, relay, make_connection):
        async def _go():
            sender = make_connection("s")
            others = [make_connection(str(i)) for i in range(3)]
            for conn in [sender, *others]:
                await relay.join(conn, "room42")

            delivered = await relay.relay(sender, {"type": "message", "message": {"id": "1"}})
            assert delivered == 3
            assert all(frame["type"] == "system" for frame in sender.frames)
            for conn in others:
                assert conn.frames[-1] == {"type": "message", "message": {"id": "1"}}

        asyncio.run(_go())

    def test_failed_delivery_counts_error(self, relay, make_connection):
        """A broken member does not stop delivery to the rest."""
        async def _go():
            sender, good = make_connection("s"), make_connection("g")
            broken = make_connection("b")
            for conn in [sender, broken, good]:
                await relay.join(conn, "room42")
            broken.broken = True

            delivered = await relay.relay(sender, {"type": "message", "message": {"id": "1"}})
            assert delivered == 1
            assert good.frames[-1]["message"] == {"id": "1"}
            assert relay.errors == 1

        asyncio.run(_go())

    @pytest.mark.parametrize("name", [None, "", "  ", 42])
    def test_invalid_channel_names(self, relay, make_connection, name):
        async def _go():
            a = make_connection("a")
            assert await relay.join(a, name) is False
            assert a.frames[-1]["code"] == "INVALID_CHANNEL"
            assert relay.channel_of(a) is None

        asyncio.run(_go())

    def test_invalid_utf8_binary_frame_dropped(self, relay, make_connection):
        """Binary frames that are not UTF-8 are counted and never relayed."""
        async def _go():
            sender, peer = make_connection("s"), make_connection("p")
            await relay.join(sender, "room42")
            await relay.join(peer, "room42")
            received = len(peer.frames)

            await relay.handle_frame(sender, b'{"type": "message", "message": {"text": "\xff\xfe"}}')
            assert len(peer.frames) == received
            assert relay.errors == 1

            await relay.handle_frame(sender, '{"type": "message", "message": {"id": "1"}}'.encode())
            assert peer.frames[-1] == {"type": "message", "message": {"id": "1"}}

        asyncio.run(_go())
