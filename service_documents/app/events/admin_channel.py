"""
Admin WebSocket channel for change notifications.

Clients connect to ``/ws/admin`` and join a room; ``publish`` fans an event
out to that room in the background. Delivery is at-most-once: there is no
acknowledgement and no retry, and a failed send drops the connection.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Set

from shared.errors import ServiceException
from shared.logging import get_logger


ADMIN_ROOM = "admin"
JOIN_PREFIX = "join:"


@dataclass
class ChannelConnection:
    """WebSocket connection data."""
    connection_id: str
    websocket: Any
    rooms: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=datetime.now)


class AdminEventChannel:
    """Tracks admin WebSocket connections and broadcasts events to rooms."""

    def __init__(self, max_connections: int = 500):
        self.max_connections = max_connections
        self.logger = get_logger("documents.events")
        self.connections: Dict[str, ChannelConnection] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, websocket: Any, room: Optional[str] = None) -> str:
        """Register an accepted WebSocket; optionally join ``room`` straight away."""
        if len(self.connections) >= self.max_connections:
            raise ServiceException(
                "CONNECTION_LIMIT_EXCEEDED",
                f"Maximum connections ({self.max_connections}) exceeded"
            )

        connection_id = str(uuid.uuid4())
        self.connections[connection_id] = ChannelConnection(connection_id=connection_id, websocket=websocket)
        if room:
            await self.join(connection_id, room)

        self.logger.info(
            "WebSocket connection added",
            connection_id=connection_id,
            total_connections=len(self.connections)
        )
        return connection_id

    async def join(self, connection_id: str, room: str) -> bool:
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        connection.rooms.add(room)
        self.rooms.setdefault(room, set()).add(connection_id)
        self.logger.info("Connection joined room", connection_id=connection_id, room=room)
        return True

    async def disconnect(self, connection_id: str, *, close: bool = True) -> None:
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return

        for room in connection.rooms:
            members = self.rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self.rooms[room]

        if close:
            try:
                await connection.websocket.close()
            except Exception as e:
                self.logger.debug("WebSocket close failed", connection_id=connection_id, error=str(e))

        self.logger.info(
            "WebSocket connection removed",
            connection_id=connection_id,
            total_connections=len(self.connections)
        )

    async def handle_message(self, connection_id: str, raw: str) -> Optional[Dict[str, Any]]:
        """Handle a client frame; returns the reply to send, if any."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            return {"type": "error", "message": "Invalid JSON"}

        message_type = message.get("type") if isinstance(message, dict) else None
        if isinstance(message_type, str) and message_type.startswith(JOIN_PREFIX):
            room = message_type[len(JOIN_PREFIX):]
            if room != ADMIN_ROOM:
                return {"type": "error", "message": f"Unknown room: {room}"}
            await self.join(connection_id, room)
            return {"type": "joined", "room": room}
        if message_type == "ping":
            return {"type": "pong"}
        return {"type": "error", "message": f"Unknown message type: {message_type}"}

    def publish(self, event: str, payload: Dict[str, Any], room: str = ADMIN_ROOM) -> None:
        """Schedule delivery of ``event`` to ``room`` and return immediately."""
        task = asyncio.get_running_loop().create_task(self.broadcast(event, payload, room))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def broadcast(self, event: str, payload: Dict[str, Any], room: str = ADMIN_ROOM) -> int:
        """Send ``event`` to every member of ``room``; return how many sends succeeded."""
        members = list(self.rooms.get(room, ()))
        if not members:
            return 0

        frame = json.dumps({"event": event, "data": payload}, default=str)
        sent_count = 0
        failed = []
        for connection_id in members:
            connection = self.connections.get(connection_id)
            if connection is None:
                continue
            try:
                await connection.websocket.send_text(frame)
                sent_count += 1
            except Exception as e:
                self.logger.warning("Failed to deliver event", connection_id=connection_id, event=event, error=str(e))
                failed.append(connection_id)

        for connection_id in failed:
            await self.disconnect(connection_id)

        self.logger.info("Event published", event=event, room=room, sent_count=sent_count, failed_count=len(failed))
        return sent_count

    async def drain(self) -> None:
        """Wait for in-flight deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await self.drain()
        for connection_id in list(self.connections):
            await self.disconnect(connection_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_connections": len(self.connections),
            "max_connections": self.max_connections,
            "rooms": {room: len(members) for room, members in self.rooms.items()},
        }
