"""
Tests for the WebRTC signaling relay
"""

import asyncio
import json
from datetime import datetime, timedelta

import pytest

from nutrivision.signaling import SignalingServer, run_room_sweeper, signaling_room


def send(server, connection_id, user_id, event, data=None):
    server.handle_message(connection_id, user_id, json.dumps({"event": event, "data": data or {}}))


@pytest.fixture
def server(transport):
    return SignalingServer(transport)


class TestRooms:
    """Joining, leaving and disconnects"""

    def test_join_confirms_to_joiner_and_announces_to_others(self, server, transport):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c2", "bob", "join_webrtc_room", {"roomId": "apt-1", "userId": "bob"})

        assert transport.received("c1", "webrtc_connected")[0]["roomId"] == "apt-1"
        assert transport.received("c2", "webrtc_connected")[0]["userId"] == "bob"
        assert [d["userId"] for d in transport.received("c1", "user_joined")] == ["bob"]
        assert transport.received("c2", "user_joined") == []
        assert set(server.rooms["apt-1"].participants) == {"c1", "c2"}

    def test_missing_room_id_is_an_error(self, server, transport):
        send(server, "c1", "alice", "join_webrtc_room", {})

        assert transport.received("c1", "error")[0]["event"] == "join_webrtc_room"
        assert server.rooms == {}

    def test_claimed_user_id_must_match_connection(self, server, transport):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-1", "userId": "mallory"})

        assert transport.received("c1", "error")
        assert "c1" not in server.memberships

    def test_joining_another_room_leaves_the_first(self, server, transport):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c2", "bob", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-2"})

        assert server.memberships["c1"] == "apt-2"
        assert set(server.rooms["apt-1"].participants) == {"c2"}
        assert [d["userId"] for d in transport.received("c2", "user_left")] == ["alice"]
        assert "c1" not in transport.rooms[signaling_room("apt-1")]

    def test_disconnect_announces_departure_and_marks_room_empty(self, server, transport):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c2", "bob", "join_webrtc_room", {"roomId": "apt-1"})

        server.handle_disconnect("c2")
        assert [d["userId"] for d in transport.received("c1", "user_left")] == ["bob"]
        assert server.rooms["apt-1"].emptied_at is None

        send(server, "c1", "alice", "leave_webrtc_room")
        assert server.rooms["apt-1"].emptied_at is not None

    def test_disconnect_without_room_is_harmless(self, server):
        server.handle_disconnect("never-joined")


class TestRelay:
    """Offer/answer/ICE forwarding"""

    def test_signal_is_relayed_to_others_with_sender(self, server, transport):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c2", "bob", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c3", "carol", "join_webrtc_room", {"roomId": "apt-2"})

        offer = {"type": "offer", "sdp": {"type": "offer", "sdp": "v=0..."}, "target": "bob"}
        send(server, "c1", "alice", "webrtc_signal", offer)

        relayed = transport.received("c2", "webrtc_signal")
        assert len(relayed) == 1
        assert relayed[0]["from"] == "alice"
        assert relayed[0]["sdp"] == offer["sdp"]
        assert "timestamp" in relayed[0]
        assert transport.received("c1", "webrtc_signal") == []
        assert transport.received("c3", "webrtc_signal") == []

    def test_signals_are_not_buffered_for_late_joiners(self, server, transport):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c1", "alice", "webrtc_signal", {"type": "ice-candidate", "candidate": {"candidate": "x"}})
        send(server, "c2", "bob", "join_webrtc_room", {"roomId": "apt-1"})

        assert transport.received("c2", "webrtc_signal") == []

    def test_signal_outside_a_room_is_an_error(self, server, transport):
        send(server, "c1", "alice", "webrtc_signal", {"type": "offer", "sdp": {}})

        assert transport.received("c1", "error")[0]["event"] == "webrtc_signal"

    def test_unknown_signal_type_is_an_error(self, server, transport):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c2", "bob", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c1", "alice", "webrtc_signal", {"type": "renegotiate"})

        assert transport.received("c1", "error")
        assert transport.received("c2", "webrtc_signal") == []

    def test_malformed_frames_do_not_break_the_connection(self, server, transport):
        server.handle_message("c1", "alice", "not json")
        server.handle_message("c1", "alice", json.dumps(["list"]))
        send(server, "c1", "alice", "dance")
        send(server, "c1", "alice", "ping")

        errors = transport.received("c1", "error")
        assert len(errors) == 3
        assert errors[2]["event"] == "dance"
        assert transport.received("c1", "pong")


class TestIncomingCall:
    """start_call notifications"""

    def test_start_call_rings_the_recipient(self, server, transport):
        send(server, "c1", "alice", "start_call", {
            "appointmentId": "apt-1", "recipientId": "bob", "callType": "video", "callerName": "Alice",
        })

        ring = transport.events_for_user("bob", "incoming_call")
        assert ring == [{"appointmentId": "apt-1", "callType": "video", "callerName": "Alice", "callerId": "alice"}]

    def test_start_call_requires_fields(self, server, transport):
        send(server, "c1", "alice", "start_call", {"appointmentId": "apt-1", "recipientId": "bob", "callType": "fax"})

        assert transport.received("c1", "error")
        assert transport.user_events == []

    def test_call_guard_blocks_unrelated_calls(self, transport):
        calls = []

        def guard(caller_id, appointment_id, recipient_id):
            calls.append((caller_id, appointment_id, recipient_id))
            return recipient_id == "bob"

        server = SignalingServer(transport, call_guard=guard)
        send(server, "c1", "alice", "start_call", {"appointmentId": "apt-1", "recipientId": "eve", "callType": "voice"})
        send(server, "c1", "alice", "start_call", {"appointmentId": "apt-1", "recipientId": "bob", "callType": "voice"})

        assert calls == [("alice", "apt-1", "eve"), ("alice", "apt-1", "bob")]
        assert transport.events_for_user("eve") == []
        assert len(transport.events_for_user("bob", "incoming_call")) == 1

    def test_async_guard_rings_after_the_check_completes(self, transport):
        async def guard(caller_id, appointment_id, recipient_id):
            await asyncio.sleep(0)
            return recipient_id == "bob"

        async def scenario():
            server = SignalingServer(transport, call_guard=guard)
            send(server, "c1", "alice", "start_call", {"appointmentId": "apt-1", "recipientId": "bob", "callType": "video"})
            send(server, "c1", "alice", "start_call", {"appointmentId": "apt-1", "recipientId": "eve", "callType": "video"})
            assert transport.user_events == []
            await asyncio.sleep(0.01)

        asyncio.run(scenario())

        assert len(transport.events_for_user("bob", "incoming_call")) == 1
        assert transport.events_for_user("eve") == []
        assert transport.received("c1", "error")[0]["event"] == "start_call"

    def test_failing_async_guard_reports_error(self, transport):
        async def guard(caller_id, appointment_id, recipient_id):
            raise RuntimeError("store unavailable")

        async def scenario():
            server = SignalingServer(transport, call_guard=guard)
            send(server, "c1", "alice", "start_call", {"appointmentId": "apt-1", "recipientId": "bob", "callType": "voice"})
            await asyncio.sleep(0.01)

        asyncio.run(scenario())

        assert transport.user_events == []
        assert transport.received("c1", "error")[0]["event"] == "start_call"


class TestRoomSweep:
    """Empty-room cleanup"""

    def test_only_long_empty_rooms_are_purged(self, server):
        now = datetime.utcnow()
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "busy"})
        server.rooms["busy"].created_at = now - timedelta(days=30)
        send(server, "c2", "bob", "join_webrtc_room", {"roomId": "stale"})
        send(server, "c2", "bob", "leave_webrtc_room")
        server.rooms["stale"].emptied_at = now - timedelta(hours=25)
        send(server, "c3", "carol", "join_webrtc_room", {"roomId": "recent"})
        send(server, "c3", "carol", "leave_webrtc_room")

        purged = server.cleanup_old_rooms(timedelta(hours=24), now=now)

        assert purged == 1
        assert set(server.rooms) == {"busy", "recent"}

    def test_stats(self, server):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c2", "bob", "join_webrtc_room", {"roomId": "apt-1"})
        send(server, "c3", "carol", "join_webrtc_room", {"roomId": "apt-2"})

        stats = server.get_all_rooms_stats()

        assert stats["totalRooms"] == 2
        assert stats["totalClients"] == 3
        assert server.get_room_stats("apt-1")["clientCount"] == 2
        assert server.get_room_stats("missing") is None

    def test_background_sweeper_runs_until_cancelled(self, server):
        send(server, "c1", "alice", "join_webrtc_room", {"roomId": "old"})
        send(server, "c1", "alice", "leave_webrtc_room")
        server.rooms["old"].emptied_at = datetime.utcnow() - timedelta(seconds=5)

        async def scenario():
            task = asyncio.create_task(run_room_sweeper(server, 0.01, timedelta(seconds=1)))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert server.rooms == {}
