"""Chat and file payloads carried over the signaling relay."""
from __future__ import annotations

import base64
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, Field

from ..schemas.signaling import ChatMessage, FileMessage

SendEnvelope = Callable[[dict], Awaitable[bool]]
ReceiveHandler = Callable[[str, Union[ChatMessage, FileMessage]], None]

logger = logging.getLogger(__name__)


class FileData(BaseModel):
    name: str
    type: str = Field(default="application/octet-stream")
    size: int = Field(..., ge=0)
    content: str = Field(..., description="base64 data: URL")

    @classmethod
    def from_bytes(cls, name: str, content: bytes, mime_type: str = "application/octet-stream") -> "FileData":
        encoded = base64.b64encode(content).decode("ascii")
        return cls(name=name, type=mime_type, size=len(content), content=f"data:{mime_type};base64,{encoded}")

    def decode(self) -> bytes:
        """Return the raw file bytes from the data URL."""

        _, _, encoded = self.content.partition(",")
        return base64.b64decode(encoded)


class ChatChannel:
    """Send text and files to the other room member; hand received ones to a listener."""

    def __init__(self, send: SendEnvelope, on_receive: Optional[ReceiveHandler] = None) -> None:
        self._send = send
        self.on_receive = on_receive

    async def send(self, room_id: str, message: Any) -> bool:
        return await self._send(ChatMessage(room_id=room_id, message=message).to_wire())

    async def send_file(self, room_id: str, file_data: FileData) -> bool:
        return await self._send(FileMessage(room_id=room_id, file_data=file_data.model_dump()).to_wire())

    def deliver(self, envelope: Union[ChatMessage, FileMessage]) -> None:
        if self.on_receive is None:
            logger.warning("No chat listener set; dropping %s", envelope.type)
            return
        try:
            self.on_receive(envelope.room_id, envelope)
        except Exception:  # noqa: BLE001 - listener bugs stay on the UI side
            logger.exception("Chat listener failed")
