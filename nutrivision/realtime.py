"""
Realtime transport for the Nutri-Vision backend.

Chat delivery and call signaling reach connected clients through the
``RealtimeTransport`` interface: named rooms of connections plus a personal
room per user. ``ConnectionManager`` implements it in process over FastAPI
WebSockets; a pub/sub-backed implementation can replace it without touching
call sites.

Emits are fire-and-forget. Every connection owns an outbound queue drained by
its own writer task, so callers never wait on delivery and events reach a
given socket in the order they were emitted.
"""

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Set

from fastapi import WebSocket

from .observability import setup_logging


# Setup logging
logger = setup_logging()


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def envelope(event: str, data: Dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": data}, default=str)


class RealtimeTransport(Protocol):
    def join_room(self, connection_id: str, room: str) -> None: ...

    def leave_room(self, connection_id: str, room: str) -> None: ...

    def emit_to_room(self, room: str, event: str, data: Dict[str, Any], exclude: Optional[str] = None) -> None: ...

    def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> None: ...

    def emit_to_connection(self, connection_id: str, event: str, data: Dict[str, Any]) -> None: ...


class _Connection:
    def __init__(self, websocket: WebSocket, user_id: str):
        self.websocket = websocket
        self.user_id = user_id
        self.rooms: Set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.writer: Optional[asyncio.Task] = None
        self.connected_at = datetime.utcnow()


class ConnectionManager:
    """In-process WebSocket registry implementing ``RealtimeTransport``."""

    def __init__(self):
        self.connections: Dict[str, _Connection] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, websocket: WebSocket, user_id: str) -> str:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()

        connection_id = uuid.uuid4().hex
        connection = _Connection(websocket, user_id)
        connection.writer = asyncio.create_task(self._drain(connection_id, connection))
        self.connections[connection_id] = connection
        self.join_room(connection_id, user_room(user_id))

        logger.info("WebSocket connected", connection_id=connection_id, user_id=user_id)
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return
        for room in list(connection.rooms):
            self._discard(connection_id, room)
        if connection.writer is not None:
            connection.writer.cancel()
            try:
                await connection.writer
            except asyncio.CancelledError:
                pass
        logger.info("WebSocket disconnected", connection_id=connection_id, user_id=connection.user_id)

    def user_of(self, connection_id: str) -> Optional[str]:
        connection = self.connections.get(connection_id)
        return connection.user_id if connection else None

    def join_room(self, connection_id: str, room: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        self.rooms.setdefault(room, set()).add(connection_id)
        connection.rooms.add(room)

    def leave_room(self, connection_id: str, room: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room)
        self._discard(connection_id, room)

    def emit_to_room(self, room: str, event: str, data: Dict[str, Any], exclude: Optional[str] = None) -> None:
        message = envelope(event, data)
        for connection_id in list(self.rooms.get(room, ())):
            if connection_id != exclude:
                self._enqueue(connection_id, message)

    def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        self.emit_to_room(user_room(user_id), event, data)

    def emit_to_connection(self, connection_id: str, event: str, data: Dict[str, Any]) -> None:
        self._enqueue(connection_id, envelope(event, data))

    def get_stats(self) -> dict:
        return {
            "connections": len(self.connections),
            "rooms": len(self.rooms),
        }

    def _discard(self, connection_id: str, room: str) -> None:
        members = self.rooms.get(room)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[room]

    def _enqueue(self, connection_id: str, message: str) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            connection.queue.put_nowait(message)
        elif self._loop is not None:
            # Emitted from a worker thread
            self._loop.call_soon_threadsafe(connection.queue.put_nowait, message)

    async def _drain(self, connection_id: str, connection: _Connection) -> None:
        while True:
            message = await connection.queue.get()
            try:
                await connection.websocket.send_text(message)
            except Exception as e:
                # Transport-level failure; the receive loop performs cleanup.
                logger.warning("WebSocket send failed", connection_id=connection_id, error=str(e))
                return
