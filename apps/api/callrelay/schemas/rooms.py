"""Data contracts for room endpoints."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .signaling import ROOM_ID_PATTERN


class RoomCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str | None = Field(
        default=None,
        alias="roomId",
        pattern=ROOM_ID_PATTERN,
        description="Existing 8-digit room id to rejoin; generated when omitted",
    )


class RoomStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId")
    members: int = Field(..., ge=0, le=2)
    full: bool
