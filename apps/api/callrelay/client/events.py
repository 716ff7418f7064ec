"""Lifecycle events emitted by the negotiation core to its UI listener."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable, Dict


class EventKind(str, enum.Enum):
    INITIALIZED = "initialized"
    LOCAL_MEDIA_READY = "local-media-ready"
    REMOTE_STREAM_CONNECTED = "remote-stream-connected"
    PEER_LEFT = "peer-left"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    AUDIO_TOGGLED = "audio-toggled"
    VIDEO_TOGGLED = "video-toggled"
    STATE_CHANGED = "state-changed"
    CLOSED = "closed"


class ErrorCategory(str, enum.Enum):
    CAPABILITY = "capability"
    ACQUISITION = "acquisition"
    NEGOTIATION = "negotiation"
    TRANSPORT = "transport"
    RELAY = "relay"


@dataclass(frozen=True, slots=True)
class NegotiationEvent:
    kind: EventKind
    data: Dict[str, Any] = field(default_factory=dict)


EventListener = Callable[[NegotiationEvent], None]


def error_event(category: ErrorCategory, error: BaseException | str, *, fatal: bool = False) -> NegotiationEvent:
    """Build an ``error`` event carrying a category and a printable reason."""

    return NegotiationEvent(
        EventKind.ERROR,
        {"category": category, "message": str(error), "fatal": fatal},
    )
