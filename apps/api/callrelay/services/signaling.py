"""In-memory WebRTC signaling relay."""
from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from ..schemas.signaling import (
    RELAYED_TYPES,
    EnvelopeType,
    ErrorCode,
    ErrorMessage,
    parse_envelope,
)
from .registry import Connection, ConnectionRegistry
from .rooms import RoomFullError, RoomRegistry

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Route envelopes from one connection to the other member of its room."""

    def __init__(self, registry: ConnectionRegistry, rooms: RoomRegistry) -> None:
        self._registry = registry
        self._rooms = rooms

    async def handle(self, connection_id: str, message: Any) -> None:
        """Dispatch one decoded JSON message received from ``connection_id``."""

        connection = self._registry.get(connection_id)
        if connection is None:
            return

        try:
            envelope = parse_envelope(message)
        except ValidationError as exc:
            logger.warning("Dropping malformed envelope from %s: %s", connection_id, exc.errors())
            return

        logger.debug("[%s] received from %s for room %s", envelope.type, connection_id, envelope.room_id)

        if envelope.type == EnvelopeType.JOIN_ROOM:
            await self.join(connection, envelope.room_id)
        elif envelope.type in RELAYED_TYPES:
            await self.relay(connection_id, envelope.room_id, message)
        else:
            logger.warning("Ignoring relay-originated envelope %s from %s", envelope.type, connection_id)

    async def join(self, connection: Connection, room_id: str) -> bool:
        """Place ``connection`` into ``room_id``, leaving any previous room first."""

        if connection.room_id and connection.room_id != room_id:
            await self._rooms.leave(connection, connection.room_id)
            self._registry.set_room(connection.connection_id, None)

        try:
            await self._rooms.join(connection, room_id)
        except RoomFullError as exc:
            logger.warning("Rejected %s: %s", connection.connection_id, exc)
            await connection.deliver(
                ErrorMessage(room_id=room_id, code=ErrorCode.ROOM_FULL, message=str(exc)).to_wire()
            )
            return False

        self._registry.set_room(connection.connection_id, room_id)
        return True

    async def relay(self, sender_id: str, room_id: str, envelope: dict) -> int:
        """Forward ``envelope`` unchanged to every other member of the sender's room."""

        delivered = await self._rooms.broadcast(room_id, sender_id, envelope)
        if delivered is None:
            logger.debug("Dropped %s from %s: not a member of room %s", envelope.get("type"), sender_id, room_id)
            return 0
        return delivered


class SignalingHub:
    """Bundle of the per-application signaling state."""

    def __init__(self) -> None:
        self.rooms = RoomRegistry()
        self.registry = ConnectionRegistry(self.rooms)
        self.relay = SignalingRelay(self.registry, self.rooms)
