"""Room id issuance and lookup."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path, status

from ..schemas.rooms import RoomCreateRequest, RoomStatus
from ..schemas.signaling import ROOM_ID_PATTERN
from ..services.rooms import generate_room_id
from ..services.signaling import SignalingHub
from .deps import get_hub

router = APIRouter()


@router.post("", response_model=RoomStatus)
async def create_room(
    payload: RoomCreateRequest | None = None,
    hub: SignalingHub = Depends(get_hub),
) -> RoomStatus:
    """Return a room id to share with the other participant.

    Rooms are only materialized when the first client joins over the socket,
    so this reports the current occupancy of a supplied id or an empty room.
    """

    room_id = (payload.room_id if payload else None) or generate_room_id()
    existing = await hub.rooms.status(room_id)
    if existing is not None:
        return existing
    return RoomStatus(room_id=room_id, members=0, full=False)


@router.get("/{room_id}", response_model=RoomStatus)
async def get_room(
    room_id: str = Path(..., pattern=ROOM_ID_PATTERN),
    hub: SignalingHub = Depends(get_hub),
) -> RoomStatus:
    """Report how many participants are waiting in a room."""

    room = await hub.rooms.status(room_id)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return room
