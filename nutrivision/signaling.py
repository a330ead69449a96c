"""
WebRTC call signaling for the Nutri-Vision backend.

A room-based relay: participants join a room, offer/answer/ICE payloads are
forwarded verbatim to the other members, and nothing is buffered. A signal
sent before a participant joins is never delivered to them.

Room state lives in this process and is only touched from the event loop;
no handler awaits in the middle of a mutation, so no lock is needed.
"""

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from .realtime import RealtimeTransport
from .observability import setup_logging


# Setup logging
logger = setup_logging()

SIGNAL_TYPES = ("offer", "answer", "ice-candidate")
CALL_TYPES = ("voice", "video")

# (caller_id, appointment_id, recipient_id) -> allowed, or an awaitable of it
CallGuard = Callable[[str, str, str], Union[bool, Awaitable[bool]]]


def signaling_room(room_id: str) -> str:
    return f"webrtc:{room_id}"


@dataclass
class RoomParticipant:
    user_id: str
    joined_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Room:
    room_id: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    participants: Dict[str, RoomParticipant] = field(default_factory=dict)
    emptied_at: Optional[datetime] = None


class SignalingServer:
    """
    Relays call-setup messages between the connections in a room.

    Payload-level problems (bad JSON, unknown events, missing fields) are
    answered with an ``error`` event to the sender only; the connection stays
    open. Only transport-level disconnects remove a participant implicitly.
    """

    def __init__(self, transport: RealtimeTransport, call_guard: Optional[CallGuard] = None):
        self.transport = transport
        self.call_guard = call_guard
        self.rooms: Dict[str, Room] = {}
        self.memberships: Dict[str, str] = {}  # connection_id -> room_id
        self._pending_checks: Set[asyncio.Future] = set()
        self._handlers = {
            "join_webrtc_room": self._on_join,
            "leave_webrtc_room": self._on_leave,
            "webrtc_signal": self._on_signal,
            "start_call": self._on_start_call,
            "ping": self._on_ping,
        }

    def handle_message(self, connection_id: str, user_id: str, raw: str) -> None:
        """Parse one client frame and dispatch it."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            self._error(connection_id, "Invalid message format")
            return

        if not isinstance(message, dict):
            self._error(connection_id, "Invalid message format")
            return

        event = message.get("event")
        data = message.get("data") or {}
        if not isinstance(data, dict):
            self._error(connection_id, "Message data must be an object", event)
            return

        handler = self._handlers.get(event)
        if handler is None:
            logger.info("Unknown signaling event", connection_id=connection_id, event_name=event)
            self._error(connection_id, f"Unknown message type: {event}", event)
            return

        handler(connection_id, user_id, data)

    def join(self, connection_id: str, user_id: str, room_id: str) -> Room:
        """Register the connection in a room, creating the room on first join."""
        # One room per connection
        if connection_id in self.memberships:
            self.leave(connection_id)

        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self.rooms[room_id] = room

        room.participants[connection_id] = RoomParticipant(user_id=user_id)
        room.emptied_at = None
        self.memberships[connection_id] = room_id
        self.transport.join_room(connection_id, signaling_room(room_id))

        self.transport.emit_to_room(
            signaling_room(room_id),
            "user_joined",
            {"userId": user_id, "timestamp": datetime.utcnow().isoformat()},
            exclude=connection_id,
        )
        self.transport.emit_to_connection(connection_id, "webrtc_connected", {
            "message": "Connected to WebRTC signaling",
            "roomId": room_id,
            "userId": user_id,
        })

        logger.info("Signaling room joined", room_id=room_id, user_id=user_id, participants=len(room.participants))
        return room

    def leave(self, connection_id: str) -> None:
        """Remove the connection from its room, if any. Empty rooms wait for the sweep."""
        room_id = self.memberships.pop(connection_id, None)
        if room_id is None:
            return

        self.transport.leave_room(connection_id, signaling_room(room_id))
        room = self.rooms.get(room_id)
        if room is None:
            return

        participant = room.participants.pop(connection_id, None)
        if participant is not None:
            self.transport.emit_to_room(signaling_room(room_id), "user_left", {
                "userId": participant.user_id,
                "timestamp": datetime.utcnow().isoformat(),
            })

        if not room.participants:
            room.emptied_at = datetime.utcnow()
            logger.info("Signaling room empty", room_id=room_id)
        else:
            logger.info("Signaling room left", room_id=room_id, participants=len(room.participants))

    def handle_disconnect(self, connection_id: str) -> None:
        self.leave(connection_id)

    def cleanup_old_rooms(self, max_empty_age: timedelta, now: Optional[datetime] = None) -> int:
        """Purge rooms that have been empty longer than ``max_empty_age``."""
        now = now or datetime.utcnow()
        cutoff = now - max_empty_age
        stale = [
            room_id for room_id, room in self.rooms.items()
            if not room.participants and room.emptied_at is not None and room.emptied_at < cutoff
        ]
        for room_id in stale:
            del self.rooms[room_id]
        if stale:
            logger.info("Purged empty signaling rooms", count=len(stale))
        return len(stale)

    def get_room_stats(self, room_id: str) -> Optional[Dict[str, Any]]:
        room = self.rooms.get(room_id)
        if room is None:
            return None
        return {
            "roomId": room_id,
            "clientCount": len(room.participants),
            "createdAt": room.created_at.isoformat(),
            "clients": [
                {"userId": p.user_id, "joinedAt": p.joined_at.isoformat()}
                for p in room.participants.values()
            ],
        }

    def get_all_rooms_stats(self) -> Dict[str, Any]:
        rooms = [self.get_room_stats(room_id) for room_id in self.rooms]
        return {
            "totalRooms": len(rooms),
            "totalClients": sum(room["clientCount"] for room in rooms),
            "rooms": rooms,
        }

    # Event handlers

    def _on_join(self, connection_id: str, user_id: str, data: Dict[str, Any]) -> None:
        room_id = data.get("roomId")
        if not isinstance(room_id, str) or not room_id.strip():
            self._error(connection_id, "roomId is required", "join_webrtc_room")
            return
        claimed = data.get("userId")
        if claimed is not None and claimed != user_id:
            self._error(connection_id, "userId does not match the authenticated user", "join_webrtc_room")
            return
        self.join(connection_id, user_id, room_id.strip())

    def _on_leave(self, connection_id: str, user_id: str, data: Dict[str, Any]) -> None:
        self.leave(connection_id)

    def _on_signal(self, connection_id: str, user_id: str, data: Dict[str, Any]) -> None:
        room_id = self.memberships.get(connection_id)
        if room_id is None:
            self._error(connection_id, "Join a room before signaling", "webrtc_signal")
            return
        if data.get("type") not in SIGNAL_TYPES:
            self._error(connection_id, "Signal type must be one of offer, answer, ice-candidate", "webrtc_signal")
            return

        relayed = dict(data)
        relayed["from"] = user_id
        relayed["timestamp"] = datetime.utcnow().isoformat()
        self.transport.emit_to_room(signaling_room(room_id), "webrtc_signal", relayed, exclude=connection_id)

    def _on_start_call(self, connection_id: str, user_id: str, data: Dict[str, Any]) -> None:
        appointment_id = data.get("appointmentId")
        recipient_id = data.get("recipientId")
        call_type = data.get("callType")
        if not appointment_id or not recipient_id or call_type not in CALL_TYPES:
            self._error(connection_id, "appointmentId, recipientId and a valid callType are required", "start_call")
            return

        ring = {
            "appointmentId": appointment_id,
            "callType": call_type,
            "callerName": data.get("callerName"),
            "callerId": user_id,
        }
        if self.call_guard is None:
            self._ring(connection_id, recipient_id, ring, True)
            return

        allowed = self.call_guard(user_id, appointment_id, recipient_id)
        if inspect.isawaitable(allowed):
            # Store-backed guards run off the receive loop
            task = asyncio.ensure_future(self._ring_when_checked(connection_id, recipient_id, ring, allowed))
            self._pending_checks.add(task)
            task.add_done_callback(self._pending_checks.discard)
        else:
            self._ring(connection_id, recipient_id, ring, allowed)

    async def _ring_when_checked(
        self, connection_id: str, recipient_id: str, ring: Dict[str, Any], check: Awaitable[bool]
    ) -> None:
        try:
            allowed = await check
        except Exception as e:
            logger.error("Call guard failed", appointment_id=ring["appointmentId"], error=str(e), exc_info=True)
            self._error(connection_id, "Could not verify the call, please retry", "start_call")
            return
        self._ring(connection_id, recipient_id, ring, allowed)

    def _ring(self, connection_id: str, recipient_id: str, ring: Dict[str, Any], allowed: bool) -> None:
        if not allowed:
            self._error(connection_id, "Call not allowed for this appointment", "start_call")
            return
        self.transport.emit_to_user(recipient_id, "incoming_call", ring)
        logger.info("Incoming call notification sent", appointment_id=ring["appointmentId"], caller_id=ring["callerId"])

    def _on_ping(self, connection_id: str, user_id: str, data: Dict[str, Any]) -> None:
        self.transport.emit_to_connection(connection_id, "pong", {"timestamp": datetime.utcnow().isoformat()})

    def _error(self, connection_id: str, message: str, event: Optional[str] = None) -> None:
        self.transport.emit_to_connection(connection_id, "error", {"message": message, "event": event})


async def run_room_sweeper(server: SignalingServer, interval_seconds: float, max_empty_age: timedelta) -> None:
    """Periodically purge long-empty rooms until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            server.cleanup_old_rooms(max_empty_age)
        except Exception as e:
            logger.error("Room sweep failed", error=str(e), exc_info=True)
