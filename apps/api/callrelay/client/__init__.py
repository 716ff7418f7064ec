"""Client-side negotiation core."""

from .chat import ChatChannel, FileData
from .events import ErrorCategory, EventKind, NegotiationEvent
from .health import HealthIssue, HealthMonitor, HealthSnapshot
from .media import (
    CapabilityError,
    MediaAcquisitionError,
    MediaProvider,
    MediaStream,
    MediaTrack,
    PeerLink,
    PeerLinkProvider,
)
from .negotiation import NegotiationState, PeerNegotiator
from .transport import SignalingTransport, TransportError

__all__ = [
    "CapabilityError",
    "ChatChannel",
    "ErrorCategory",
    "EventKind",
    "FileData",
    "HealthIssue",
    "HealthMonitor",
    "HealthSnapshot",
    "MediaAcquisitionError",
    "MediaProvider",
    "MediaStream",
    "MediaTrack",
    "NegotiationEvent",
    "NegotiationState",
    "PeerLink",
    "PeerLinkProvider",
    "PeerNegotiator",
    "SignalingTransport",
    "TransportError",
]
