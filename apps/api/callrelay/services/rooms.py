"""Two-party room pairing.

A room holds at most two connections. When the second one joins, the first
joiner is told to start the call; a third join is refused. Rooms appear on the
first join and disappear when their last member leaves. A room left by one
member stays open so the remaining member can be re-paired under the same id.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..schemas.rooms import RoomStatus
from ..schemas.signaling import PeerLeft, StartCall
from .registry import Connection

ROOM_CAPACITY = 2

logger = logging.getLogger(__name__)


class RoomFullError(RuntimeError):
    """Raised when a join would put a third member into a room."""

    def __init__(self, room_id: str) -> None:
        super().__init__(f"Room {room_id} already has {ROOM_CAPACITY} participants")
        self.room_id = room_id


def generate_room_id() -> str:
    """Return a random 8-digit numeric room id."""

    return str(10_000_000 + secrets.randbelow(90_000_000))


@dataclass
class Room:
    room_id: str
    members: List[Connection] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    closed: bool = False

    @property
    def full(self) -> bool:
        return len(self.members) >= ROOM_CAPACITY

    def has(self, connection_id: str) -> bool:
        return any(member.connection_id == connection_id for member in self.members)


class RoomRegistry:
    """Own the room table.

    The registry lock guards creation and removal of room entries; each room's
    own lock guards its member list and serializes fan-out to its members, so
    a relay never races a join or leave in the same room.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    async def _lookup(self, room_id: str) -> Optional[Room]:
        async with self._lock:
            room = self._rooms.get(room_id)
            return None if room is None or room.closed else room

    async def _lookup_or_create(self, room_id: str) -> Room:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or room.closed:
                room = Room(room_id=room_id)
                self._rooms[room_id] = room
                logger.info("Room %s created", room_id)
            return room

    async def join(self, connection: Connection, room_id: str) -> Room:
        """Add ``connection`` to the room, signaling the initiator once paired."""

        while True:
            room = await self._lookup_or_create(room_id)
            async with room.lock:
                if room.closed:
                    # Emptied between lookup and lock; the next lookup replaces it.
                    continue
                if room.has(connection.connection_id):
                    return room
                if room.full:
                    raise RoomFullError(room_id)

                room.members.append(connection)
                logger.info(
                    "Connection %s joined room %s (%d/%d)",
                    connection.connection_id,
                    room_id,
                    len(room.members),
                    ROOM_CAPACITY,
                )
                if len(room.members) == ROOM_CAPACITY:
                    initiator = room.members[0]
                    await initiator.deliver(StartCall(room_id=room_id).to_wire())
                    logger.info("start-call sent to %s in room %s", initiator.connection_id, room_id)
                return room

    async def leave(self, connection: Connection, room_id: str) -> None:
        """Remove ``connection``; notify whoever remains or drop the empty room."""

        room = await self._lookup(room_id)
        if room is None:
            return

        async with room.lock:
            if not room.has(connection.connection_id):
                return
            room.members = [m for m in room.members if m.connection_id != connection.connection_id]
            if room.members:
                logger.info(
                    "Connection %s left room %s (%d remaining)",
                    connection.connection_id,
                    room_id,
                    len(room.members),
                )
                await self._fan_out(room.members, PeerLeft(room_id=room_id).to_wire())
                return
            room.closed = True

        async with self._lock:
            if self._rooms.get(room_id) is room:
                del self._rooms[room_id]
        logger.info("Room %s deleted (empty)", room_id)

    async def broadcast(self, room_id: str, sender_id: str, message: dict) -> Optional[int]:
        """Send ``message`` to every member except the sender.

        Returns the number of successful deliveries, or None when the room
        does not exist or the sender is not one of its members.
        """

        room = await self._lookup(room_id)
        if room is None:
            return None

        async with room.lock:
            if not room.has(sender_id):
                return None
            targets = [m for m in room.members if m.connection_id != sender_id]
            return await self._fan_out(targets, message)

    async def status(self, room_id: str) -> Optional[RoomStatus]:
        room = await self._lookup(room_id)
        if room is None:
            return None
        async with room.lock:
            return RoomStatus(room_id=room_id, members=len(room.members), full=room.full)

    async def member_ids(self, room_id: str) -> list[str]:
        room = await self._lookup(room_id)
        if room is None:
            return []
        async with room.lock:
            return [member.connection_id for member in room.members]

    def __contains__(self, room_id: object) -> bool:
        room = self._rooms.get(room_id) if isinstance(room_id, str) else None
        return room is not None and not room.closed

    def __len__(self) -> int:
        return sum(1 for room in self._rooms.values() if not room.closed)

    @staticmethod
    async def _fan_out(targets: List[Connection], message: dict) -> int:
        if not targets:
            return 0
        results = await asyncio.gather(*(target.deliver(message) for target in targets))
        return sum(1 for delivered in results if delivered)
