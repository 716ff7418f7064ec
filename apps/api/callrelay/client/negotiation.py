"""Client-side offer/answer/ICE negotiation for one call participant.

``PeerNegotiator`` owns local media, the peer link and the relay transport of
a single participant. Envelopes from the relay and calls from the UI are
serialized through one lock; the UI learns what happened through a single
listener receiving ``NegotiationEvent`` values. No public method raises:
failures come back as a falsy return value or an ``error`` event.

Which side offers is decided by the relay (the first member of the room gets
``start-call``), so the negotiator never races the remote side for the offer.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ValidationError

from ..core.config import settings
from ..schemas.rtc import MediaConstraints
from ..schemas.signaling import (
    Answer,
    ChatMessage,
    EnvelopeType,
    ErrorCode,
    ErrorMessage,
    FileMessage,
    IceCandidate,
    JoinRoom,
    Offer,
    PeerLeft,
    StartCall,
    parse_envelope,
)
from ..services.rtc import media_constraints
from .chat import ChatChannel
from .events import ErrorCategory, EventKind, EventListener, NegotiationEvent, error_event
from .health import HealthSnapshot
from .media import (
    CapabilityError,
    MediaAcquisitionError,
    MediaProvider,
    MediaStream,
    PeerLink,
    PeerLinkProvider,
)
from .transport import SignalingTransport, TransportError

logger = logging.getLogger(__name__)

TransportFactory = Callable[..., SignalingTransport]


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_MEDIA = "awaiting-media"
    AWAITING_PEER = "awaiting-peer"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"


# States in which local media exists and may be toggled.
MEDIA_STATES = frozenset(
    {
        NegotiationState.AWAITING_PEER,
        NegotiationState.OFFERING,
        NegotiationState.ANSWERING,
        NegotiationState.CONNECTED,
    }
)
LINK_STATES = frozenset(
    {
        NegotiationState.OFFERING,
        NegotiationState.ANSWERING,
        NegotiationState.CONNECTED,
    }
)
INACTIVE_STATES = frozenset(
    {
        NegotiationState.IDLE,
        NegotiationState.AWAITING_MEDIA,
        NegotiationState.CLOSING,
        NegotiationState.CLOSED,
    }
)
# Stale after a reconnect: they describe a peer link that no longer exists.
NEGOTIATION_TYPES = (
    EnvelopeType.OFFER.value,
    EnvelopeType.ANSWER.value,
    EnvelopeType.ICE_CANDIDATE.value,
)


class PeerNegotiator:
    """Drive one participant through idle → awaiting-peer → connected → closed."""

    def __init__(
        self,
        media_provider: MediaProvider,
        link_provider: PeerLinkProvider,
        listener: EventListener | None = None,
        *,
        signaling_url: str | None = None,
        ice_servers: List[str] | None = None,
        constraints: MediaConstraints | None = None,
        reconnect_attempts: int | None = None,
        reconnect_delay: float | None = None,
        transport_factory: TransportFactory = SignalingTransport,
    ) -> None:
        self._media_provider = media_provider
        self._link_provider = link_provider
        self._listener = listener
        self._signaling_url = signaling_url or settings.signaling_url
        self._ice_servers = list(settings.ice_servers if ice_servers is None else ice_servers)
        self._constraints = constraints or media_constraints()
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._transport_factory = transport_factory

        self._state = NegotiationState.IDLE
        self._lock = asyncio.Lock()
        self._room_id: Optional[str] = None
        self._media: Optional[MediaStream] = None
        self._link: Optional[PeerLink] = None
        self._link_generation = 0
        self._remote_stream: Any = None
        self._transport: Optional[SignalingTransport] = None
        self._is_initiator = False
        self._rejoins_left = 0
        self._rejoin_task: Optional[asyncio.Task[None]] = None

        self.chat = ChatChannel(self._send_wire)

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def local_media(self) -> Optional[MediaStream]:
        return self._media

    @property
    def remote_stream(self) -> Any:
        return self._remote_stream

    @property
    def peer_link(self) -> Optional[PeerLink]:
        return self._link

    @property
    def is_initiator(self) -> bool:
        return self._is_initiator

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self, room_id: str) -> bool:
        """Acquire local media, connect to the relay and join ``room_id``.

        Returns False when media could not be acquired (state goes back to
        idle so the user can retry) or on a fatal failure (state is closed).
        """

        async with self._lock:
            if self._state is not NegotiationState.IDLE:
                logger.warning("initialize() ignored in state %s", self._state.value)
                return False
            try:
                JoinRoom(room_id=room_id)
            except ValidationError:
                logger.warning("Invalid room id %r", room_id)
                self._emit_event(error_event(ErrorCategory.RELAY, f"invalid room id {room_id!r}"))
                return False

            self._room_id = room_id
            self._set_state(NegotiationState.AWAITING_MEDIA)
            try:
                self._media = await self._media_provider.acquire(self._constraints)
            except CapabilityError as exc:
                await self._fail(ErrorCategory.CAPABILITY, exc)
                return False
            except MediaAcquisitionError as exc:
                logger.warning("Could not acquire local media: %s", exc)
                self._room_id = None
                self._set_state(NegotiationState.IDLE)
                self._emit_event(error_event(ErrorCategory.ACQUISITION, exc))
                return False

            self._emit(EventKind.LOCAL_MEDIA_READY, stream=self._media)
            self._set_state(NegotiationState.AWAITING_PEER)

            self._transport = self._transport_factory(
                self._signaling_url,
                self._on_envelope,
                on_open=self._on_transport_open,
                on_reconnecting=self._on_transport_reconnecting,
                on_failure=self._on_transport_failure,
                reconnect_attempts=self._reconnect_attempts,
                reconnect_delay=self._reconnect_delay,
            )
            try:
                await self._transport.open()
            except TransportError as exc:
                await self._fail(ErrorCategory.TRANSPORT, exc)
                return False

            self._emit(EventKind.INITIALIZED, room_id=room_id)
            return True

    async def end_call(self) -> None:
        """Release media, the peer link and the transport; the instance is done."""

        async with self._lock:
            if self._state is NegotiationState.CLOSED:
                return
            self._set_state(NegotiationState.CLOSING)
            await self._release()
            self._room_id = None
            self._set_state(NegotiationState.CLOSED)
            self._emit(EventKind.CLOSED)

    # -- local media ---------------------------------------------------------

    async def toggle_video(self) -> Optional[bool]:
        """Flip the first video track; return its new state, or None when unavailable."""

        return self._toggle("video", EventKind.VIDEO_TOGGLED)

    async def toggle_audio(self) -> Optional[bool]:
        """Flip the first audio track; return its new state, or None when unavailable."""

        return self._toggle("audio", EventKind.AUDIO_TOGGLED)

    async def switch_camera(self) -> bool:
        """Move capture to the next video input device."""

        async with self._lock:
            if self._state not in MEDIA_STATES or self._media is None:
                return False

            current = self._media.video_tracks()
            if not current:
                return False
            try:
                devices = await self._media_provider.list_video_devices()
            except (CapabilityError, MediaAcquisitionError) as exc:
                self._emit_event(error_event(ErrorCategory.ACQUISITION, exc))
                return False

            if len(devices) < 2:
                logger.warning("No alternative camera found")
                return False
            if current[0].device_id not in devices:
                return False
            next_device = devices[(devices.index(current[0].device_id) + 1) % len(devices)]

            constraints = self._constraints.model_copy(deep=True)
            constraints.video.device_id = next_device
            try:
                replacement = await self._media_provider.acquire(constraints)
            except (CapabilityError, MediaAcquisitionError) as exc:
                self._emit_event(error_event(ErrorCategory.ACQUISITION, exc))
                return False

            _carry_enabled_flags(self._media, replacement)
            previous, self._media = self._media, replacement
            if self._link is not None:
                try:
                    await self._link.replace_tracks(replacement)
                except Exception as exc:  # noqa: BLE001 - keep the call on the old tracks' link
                    logger.warning("Could not replace outgoing tracks: %s", exc)
                    self._emit_event(error_event(ErrorCategory.NEGOTIATION, exc))
            previous.stop()
            logger.info("Switched camera to %s", next_device)
            return True

    def health_snapshot(self) -> HealthSnapshot:
        media_live = self._media is not None and any(
            track.ready_state == "live" for track in self._media.tracks
        )
        return HealthSnapshot(
            local_media_present=media_live,
            remote_media_present=self._remote_stream is not None,
            transport_connection_state=self._link.connection_state if self._link is not None else None,
            signaling_connected=self._transport is not None and self._transport.ready,
        )

    # -- relay envelopes -----------------------------------------------------

    async def _on_envelope(self, message: dict) -> None:
        try:
            envelope = parse_envelope(message)
        except ValidationError as exc:
            logger.warning("Dropping malformed envelope: %s", exc.errors())
            return

        if isinstance(envelope, (ChatMessage, FileMessage)):
            if self._accepts(envelope):
                self.chat.deliver(envelope)
            return

        async with self._lock:
            if not self._accepts(envelope):
                return

            if isinstance(envelope, StartCall):
                await self._handle_start_call()
            elif isinstance(envelope, Offer):
                await self._handle_offer(envelope)
            elif isinstance(envelope, Answer):
                await self._handle_answer(envelope)
            elif isinstance(envelope, IceCandidate):
                await self._handle_ice_candidate(envelope)
            elif isinstance(envelope, PeerLeft):
                await self._handle_peer_left()
            elif isinstance(envelope, ErrorMessage):
                await self._handle_relay_error(envelope)
            else:
                logger.warning("Unexpected %s from relay", envelope.type)

    async def _handle_start_call(self) -> None:
        if self._state in (NegotiationState.OFFERING, NegotiationState.ANSWERING):
            logger.warning("Ignoring start-call: negotiation already %s", self._state.value)
            return
        if self._state not in (NegotiationState.AWAITING_PEER, NegotiationState.CONNECTED):
            logger.warning("Ignoring start-call in state %s", self._state.value)
            return

        await self._teardown_link()
        self._is_initiator = True
        self._set_state(NegotiationState.OFFERING)
        try:
            self._link = await self._create_link()
            offer = await self._link.create_offer()
        except CapabilityError as exc:
            await self._fail(ErrorCategory.CAPABILITY, exc)
            return
        except Exception as exc:  # noqa: BLE001 - any peer-link failure resets negotiation
            await self._reset_negotiation(exc)
            return

        await self._send(Offer(room_id=self._room_id, offer=offer))
        logger.info("Offer sent for room %s", self._room_id)

    async def _handle_offer(self, envelope: Offer) -> None:
        if self._state is NegotiationState.OFFERING:
            await self._reset_negotiation("offer received while offering")
            return
        if self._state not in (NegotiationState.AWAITING_PEER, NegotiationState.CONNECTED):
            logger.warning("Ignoring offer in state %s", self._state.value)
            return

        await self._teardown_link()
        self._is_initiator = False
        self._set_state(NegotiationState.ANSWERING)
        try:
            self._link = await self._create_link()
            await self._link.set_remote_description(envelope.offer)
            answer = await self._link.create_answer()
        except CapabilityError as exc:
            await self._fail(ErrorCategory.CAPABILITY, exc)
            return
        except Exception as exc:  # noqa: BLE001 - any peer-link failure resets negotiation
            await self._reset_negotiation(exc)
            return

        await self._send(Answer(room_id=self._room_id, answer=answer))
        logger.info("Answer sent for room %s", self._room_id)
        self._set_state(NegotiationState.CONNECTED)

    async def _handle_answer(self, envelope: Answer) -> None:
        if self._state is not NegotiationState.OFFERING or self._link is None:
            await self._reset_negotiation(f"answer received in state {self._state.value}")
            return
        try:
            await self._link.set_remote_description(envelope.answer)
        except Exception as exc:  # noqa: BLE001 - any peer-link failure resets negotiation
            await self._reset_negotiation(exc)
            return
        self._set_state(NegotiationState.CONNECTED)

    async def _handle_ice_candidate(self, envelope: IceCandidate) -> None:
        if self._link is None or self._state not in LINK_STATES:
            logger.debug("Dropping ICE candidate without a peer link")
            return
        try:
            await self._link.add_ice_candidate(envelope.candidate)
        except Exception as exc:  # noqa: BLE001 - one bad candidate is not fatal
            logger.warning("Could not apply ICE candidate: %s", exc)
            self._emit_event(error_event(ErrorCategory.NEGOTIATION, exc))

    async def _handle_peer_left(self) -> None:
        await self._teardown_link()
        self._set_state(NegotiationState.AWAITING_PEER)
        self._emit(EventKind.PEER_LEFT, room_id=self._room_id)

    async def _handle_relay_error(self, envelope: ErrorMessage) -> None:
        if envelope.code is ErrorCode.ROOM_FULL and self._rejoins_left > 0:
            self._rejoins_left -= 1
            logger.warning("Room %s still full after reconnect; re-joining", self._room_id)
            self._rejoin_task = asyncio.create_task(self._rejoin_later())
        elif envelope.code is ErrorCode.ROOM_FULL:
            await self._fail(ErrorCategory.RELAY, envelope.message or "room is full")
        else:
            logger.warning("Relay error %s: %s", envelope.code, envelope.message)

    # -- transport callbacks -------------------------------------------------

    async def _on_transport_open(self, reconnected: bool) -> None:
        if not reconnected:
            # Runs inside initialize(), which already holds the lock.
            await self._send(JoinRoom(room_id=self._room_id))
            self._set_state(NegotiationState.AWAITING_PEER)
            return

        async with self._lock:
            if self._state in INACTIVE_STATES:
                return
            await self._teardown_link()
            if self._transport is not None:
                dropped = self._transport.drop_queued(NEGOTIATION_TYPES)
                if dropped:
                    logger.info("Dropped %d stale negotiation messages", dropped)
            # The relay may still hold our previous socket in the room.
            self._rejoins_left = self._rejoin_budget()
            await self._send(JoinRoom(room_id=self._room_id))
            self._set_state(NegotiationState.AWAITING_PEER)

    async def _on_transport_reconnecting(self, attempt: int) -> None:
        if self._state in (NegotiationState.CLOSING, NegotiationState.CLOSED):
            return
        self._set_state(NegotiationState.RECONNECTING)
        self._emit(EventKind.RECONNECTING, attempt=attempt)

    async def _on_transport_failure(self, error: TransportError) -> None:
        async with self._lock:
            await self._fail(ErrorCategory.TRANSPORT, error)

    async def _rejoin_later(self) -> None:
        await asyncio.sleep(self._rejoin_delay())
        async with self._lock:
            if self._state in INACTIVE_STATES or self._room_id is None:
                return
            await self._send(JoinRoom(room_id=self._room_id))

    # -- internals -----------------------------------------------------------

    def _accepts(self, envelope: Any) -> bool:
        if self._state in INACTIVE_STATES:
            logger.debug("Dropping %s in state %s", envelope.type, self._state.value)
            return False
        if envelope.room_id != self._room_id:
            logger.warning("Dropping %s for foreign room %s", envelope.type, envelope.room_id)
            return False
        return True

    def _rejoin_budget(self) -> int:
        return settings.reconnect_attempts if self._reconnect_attempts is None else self._reconnect_attempts

    def _rejoin_delay(self) -> float:
        return settings.reconnect_delay_seconds if self._reconnect_delay is None else self._reconnect_delay

    async def _create_link(self) -> PeerLink:
        if self._media is None:
            raise MediaAcquisitionError("Local media is not available")
        self._link_generation += 1
        generation = self._link_generation

        async def on_candidate(candidate: Any) -> None:
            if generation != self._link_generation or self._room_id is None:
                return
            await self._send(IceCandidate(room_id=self._room_id, candidate=candidate))

        async def on_remote_stream(stream: Any) -> None:
            if generation != self._link_generation:
                return
            self._remote_stream = stream
            self._emit(EventKind.REMOTE_STREAM_CONNECTED, stream=stream)

        return await self._link_provider.create(
            self._media,
            ice_servers=self._ice_servers,
            on_candidate=on_candidate,
            on_remote_stream=on_remote_stream,
        )

    async def _teardown_link(self) -> None:
        """Close the peer link and forget remote state; local media is kept."""

        self._link_generation += 1
        link, self._link = self._link, None
        self._remote_stream = None
        self._is_initiator = False
        if link is None:
            return
        try:
            await link.close()
        except Exception as exc:  # noqa: BLE001 - the link is discarded either way
            logger.warning("Error while closing peer link: %s", exc)

    async def _reset_negotiation(self, reason: BaseException | str) -> None:
        logger.warning("Negotiation reset: %s", reason)
        await self._teardown_link()
        self._set_state(NegotiationState.AWAITING_PEER)
        self._emit_event(error_event(ErrorCategory.NEGOTIATION, reason))

    async def _release(self) -> None:
        self._rejoins_left = 0
        task, self._rejoin_task = self._rejoin_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        await self._teardown_link()
        media, self._media = self._media, None
        if media is not None:
            media.stop()
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

    async def _fail(self, category: ErrorCategory, error: BaseException | str) -> None:
        """Release everything, close, then report. Caller holds the lock."""

        if self._state is NegotiationState.CLOSED:
            return
        logger.error("Fatal %s error: %s", category.value, error)
        self._set_state(NegotiationState.CLOSING)
        await self._release()
        self._set_state(NegotiationState.CLOSED)
        self._emit_event(error_event(category, error, fatal=True))

    async def _send(self, envelope: BaseModel) -> bool:
        return await self._send_wire(envelope.model_dump(by_alias=True, mode="json"))

    async def _send_wire(self, message: dict) -> bool:
        if self._transport is None:
            return False
        return await self._transport.send(message)

    def _toggle(self, kind: str, event: EventKind) -> Optional[bool]:
        if self._state not in MEDIA_STATES or self._media is None:
            return None
        tracks = self._media.audio_tracks() if kind == "audio" else self._media.video_tracks()
        if not tracks:
            return None
        track = tracks[0]
        track.enabled = not track.enabled
        self._emit(event, enabled=track.enabled)
        return track.enabled

    def _set_state(self, state: NegotiationState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.info("Negotiation %s -> %s", previous.value, state.value)
        self._emit(EventKind.STATE_CHANGED, previous=previous, state=state)

    def _emit(self, kind: EventKind, **data: Any) -> None:
        self._emit_event(NegotiationEvent(kind, data))

    def _emit_event(self, event: NegotiationEvent) -> None:
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception:  # noqa: BLE001 - listener bugs stay on the UI side
            logger.exception("Event listener failed for %s", event.kind.value)


def _carry_enabled_flags(source: MediaStream, target: MediaStream) -> None:
    """Keep mute/camera-off choices across a device switch."""

    for old_tracks, new_tracks in (
        (source.audio_tracks(), target.audio_tracks()),
        (source.video_tracks(), target.video_tracks()),
    ):
        if old_tracks and new_tracks:
            for track in new_tracks:
                track.enabled = old_tracks[0].enabled
