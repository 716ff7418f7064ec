"""Local media model and the collaborator contracts the negotiator drives.

Capture devices and the peer connection itself live outside this package (a
browser bridge, aiortc, a test double). They are reached only through the
``MediaProvider`` and ``PeerLinkProvider`` protocols below.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Literal, Optional, Protocol

from ..schemas.rtc import MediaConstraints

TrackKind = Literal["audio", "video"]


class CapabilityError(RuntimeError):
    """Raised when the media or peer-connection API is unavailable."""


class MediaAcquisitionError(RuntimeError):
    """Raised when capture is refused (permission denied, device busy)."""


@dataclass
class MediaTrack:
    kind: TrackKind
    device_id: Optional[str] = None
    enabled: bool = True
    ready_state: str = "live"

    def stop(self) -> None:
        self.enabled = False
        self.ready_state = "ended"


@dataclass
class MediaStream:
    tracks: List[MediaTrack] = field(default_factory=list)

    def audio_tracks(self) -> List[MediaTrack]:
        return [track for track in self.tracks if track.kind == "audio"]

    def video_tracks(self) -> List[MediaTrack]:
        return [track for track in self.tracks if track.kind == "video"]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


CandidateHandler = Callable[[Any], Awaitable[None]]
RemoteStreamHandler = Callable[[Any], Awaitable[None]]


class MediaProvider(Protocol):
    async def acquire(self, constraints: MediaConstraints) -> MediaStream:
        """Capture local media; raise MediaAcquisitionError or CapabilityError."""
        ...

    async def list_video_devices(self) -> List[str]:
        ...


class PeerLink(Protocol):
    @property
    def connection_state(self) -> str:
        """ICE connection state: new, checking, connected, completed, failed, ..."""
        ...

    async def create_offer(self) -> Any:
        """Create an offer and install it as the local description."""
        ...

    async def create_answer(self) -> Any:
        """Create an answer and install it as the local description."""
        ...

    async def set_remote_description(self, description: Any) -> None:
        ...

    async def add_ice_candidate(self, candidate: Any) -> None:
        ...

    async def replace_tracks(self, media: MediaStream) -> None:
        ...

    async def close(self) -> None:
        ...


class PeerLinkProvider(Protocol):
    async def create(
        self,
        media: MediaStream,
        *,
        ice_servers: List[str],
        on_candidate: CandidateHandler,
        on_remote_stream: RemoteStreamHandler,
    ) -> PeerLink:
        ...
