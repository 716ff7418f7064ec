"""Wire contracts for signaling envelopes exchanged over the relay."""
from __future__ import annotations

import enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

ROOM_ID_PATTERN = r"^\d{8}$"


class EnvelopeType(str, enum.Enum):
    JOIN_ROOM = "join-room"
    START_CALL = "start-call"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    PEER_LEFT = "peer-left"
    CHAT_MESSAGE = "chat-message"
    FILE_MESSAGE = "file-message"
    ERROR = "error"


# Envelope types a client may send that the relay forwards to the other member.
RELAYED_TYPES = frozenset(
    {
        EnvelopeType.OFFER.value,
        EnvelopeType.ANSWER.value,
        EnvelopeType.ICE_CANDIDATE.value,
        EnvelopeType.CHAT_MESSAGE.value,
        EnvelopeType.FILE_MESSAGE.value,
    }
)


class ErrorCode(str, enum.Enum):
    ROOM_FULL = "room-full"


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    room_id: str = Field(..., alias="roomId", pattern=ROOM_ID_PATTERN)

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON object sent over the socket."""

        return self.model_dump(by_alias=True, mode="json")


class JoinRoom(_Envelope):
    type: Literal["join-room"] = "join-room"


class StartCall(_Envelope):
    type: Literal["start-call"] = "start-call"


class Offer(_Envelope):
    type: Literal["offer"] = "offer"
    offer: Any = Field(..., description="Session description, opaque to the relay")


class Answer(_Envelope):
    type: Literal["answer"] = "answer"
    answer: Any = Field(..., description="Session description, opaque to the relay")


class IceCandidate(_Envelope):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: Any = Field(default=None, description="ICE candidate, opaque to the relay")


class PeerLeft(_Envelope):
    type: Literal["peer-left"] = "peer-left"


class ChatMessage(_Envelope):
    type: Literal["chat-message"] = "chat-message"
    message: Any = Field(...)


class FileMessage(_Envelope):
    type: Literal["file-message"] = "file-message"
    file_data: Any = Field(..., alias="fileData")


class ErrorMessage(_Envelope):
    type: Literal["error"] = "error"
    code: ErrorCode
    message: str = ""


SignalEnvelope = Annotated[
    Union[
        JoinRoom,
        StartCall,
        Offer,
        Answer,
        IceCandidate,
        PeerLeft,
        ChatMessage,
        FileMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

_envelope_adapter: TypeAdapter[SignalEnvelope] = TypeAdapter(SignalEnvelope)


def parse_envelope(message: Any) -> SignalEnvelope:
    """Validate a decoded JSON object into a typed envelope.

    Raises ``pydantic.ValidationError`` for unknown types or missing fields.
    """

    return _envelope_adapter.validate_python(message)
