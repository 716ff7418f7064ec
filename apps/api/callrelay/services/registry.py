"""Live signaling connections and their room membership."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional
from uuid import uuid4

if TYPE_CHECKING:
    from .rooms import RoomRegistry

SendCallable = Callable[[dict], Awaitable[None]]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Connection:
    """Transport handle for one signaling participant."""

    connection_id: str
    send: SendCallable
    room_id: Optional[str] = None
    alive: bool = True

    async def deliver(self, message: dict) -> bool:
        """Best-effort send; returns False when the transport is gone."""

        if not self.alive:
            return False
        try:
            await self.send(message)
        except Exception as exc:  # noqa: BLE001 - signaling is fire-and-forget
            logger.debug("Delivery to %s failed: %s", self.connection_id, exc)
            return False
        return True


class ConnectionRegistry:
    """Track open connections; evict them from their room when they close."""

    def __init__(self, rooms: RoomRegistry) -> None:
        self._rooms = rooms
        self._connections: Dict[str, Connection] = {}

    def register(self, send: SendCallable, connection_id: str | None = None) -> str:
        """Register a freshly opened transport and return its connection id."""

        resolved_id = connection_id or uuid4().hex
        self._connections[resolved_id] = Connection(connection_id=resolved_id, send=send)
        logger.info("Connection %s opened (%d live)", resolved_id, len(self._connections))
        return resolved_id

    async def unregister(self, connection_id: str) -> None:
        """Drop a closed transport. Unknown ids are ignored."""

        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return

        connection.alive = False
        if connection.room_id:
            await self._rooms.leave(connection, connection.room_id)
            connection.room_id = None
        logger.info("Connection %s closed (%d live)", connection_id, len(self._connections))

    def set_room(self, connection_id: str, room_id: str | None) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.room_id = room_id

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def __len__(self) -> int:
        return len(self._connections)
