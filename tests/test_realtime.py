"""
Tests for the in-process realtime transport
"""

import asyncio
import json

from nutrivision.realtime import ConnectionManager, envelope, user_room


class FakeWebSocket:
    def __init__(self):
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        self.sent.append(json.loads(text))


async def settle():
    # Let writer tasks drain their queues
    for _ in range(5):
        await asyncio.sleep(0)


class TestConnectionManager:
    """Rooms, fan-out and per-connection ordering"""

    def test_envelope_shape(self):
        assert json.loads(envelope("pong", {"ok": True})) == {"event": "pong", "data": {"ok": True}}

    def test_connection_joins_personal_room(self):
        async def scenario():
            manager = ConnectionManager()
            ws = FakeWebSocket()
            connection_id = await manager.connect(ws, "alice")

            assert ws.accepted
            assert manager.user_of(connection_id) == "alice"
            assert connection_id in manager.rooms[user_room("alice")]

            await manager.disconnect(connection_id)
            assert manager.rooms == {}
            assert manager.get_stats() == {"connections": 0, "rooms": 0}

        asyncio.run(scenario())

    def test_emit_to_user_reaches_every_connection_in_order(self):
        async def scenario():
            manager = ConnectionManager()
            phone, laptop, other = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
            await manager.connect(phone, "alice")
            await manager.connect(laptop, "alice")
            await manager.connect(other, "bob")

            for n in range(3):
                manager.emit_to_user("alice", "new_message", {"n": n})
            await settle()

            assert [m["data"]["n"] for m in phone.sent] == [0, 1, 2]
            assert [m["data"]["n"] for m in laptop.sent] == [0, 1, 2]
            assert other.sent == []

        asyncio.run(scenario())

    def test_room_emit_honours_exclude(self):
        async def scenario():
            manager = ConnectionManager()
            a, b = FakeWebSocket(), FakeWebSocket()
            first = await manager.connect(a, "alice")
            second = await manager.connect(b, "bob")
            manager.join_room(first, "webrtc:apt-1")
            manager.join_room(second, "webrtc:apt-1")

            manager.emit_to_room("webrtc:apt-1", "webrtc_signal", {"type": "offer"}, exclude=first)
            manager.leave_room(second, "webrtc:apt-1")
            manager.emit_to_room("webrtc:apt-1", "user_left", {"userId": "bob"})
            await settle()

            assert [m["event"] for m in a.sent] == ["user_left"]
            assert [m["event"] for m in b.sent] == ["webrtc_signal"]

        asyncio.run(scenario())

    def test_emit_from_worker_thread_is_delivered(self):
        async def scenario():
            manager = ConnectionManager()
            ws = FakeWebSocket()
            await manager.connect(ws, "alice")

            await asyncio.to_thread(manager.emit_to_user, "alice", "appointment_approved", {"appointmentId": "x"})
            await settle()

            assert ws.sent == [{"event": "appointment_approved", "data": {"appointmentId": "x"}}]

        asyncio.run(scenario())

    def test_emit_to_unknown_connection_is_ignored(self):
        manager = ConnectionManager()
        manager.emit_to_connection("nobody", "pong", {})
        manager.emit_to_user("nobody", "pong", {})
