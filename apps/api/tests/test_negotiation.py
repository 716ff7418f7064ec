"""Tests for the client negotiation state machine."""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from callrelay.client import (
    CapabilityError,
    ErrorCategory,
    EventKind,
    MediaAcquisitionError,
    MediaStream,
    MediaTrack,
    NegotiationState,
    PeerNegotiator,
    TransportError,
)
from callrelay.client.health import LOCAL_MEDIA_ABSENT

ROOM = "12345678"


class FakeMediaProvider:
    def __init__(self, devices: list[str] | None = None) -> None:
        self.devices = devices or ["cam-front"]
        self.fail_with: Exception | None = None
        self.requests: list[Any] = []
        self.streams: list[MediaStream] = []

    async def acquire(self, constraints):
        self.requests.append(constraints)
        if self.fail_with is not None:
            raise self.fail_with
        device = constraints.video.device_id or self.devices[0]
        stream = MediaStream([MediaTrack("audio", "mic"), MediaTrack("video", device)])
        self.streams.append(stream)
        return stream

    async def list_video_devices(self) -> list[str]:
        return list(self.devices)


class FakeLink:
    def __init__(self, media, on_candidate, on_remote_stream) -> None:
        self.media = media
        self.on_candidate = on_candidate
        self.on_remote_stream = on_remote_stream
        self.remote_descriptions: list[Any] = []
        self.candidates: list[Any] = []
        self.closed = False
        self.connection_state = "new"
        self.fail_on_remote = False

    async def create_offer(self):
        return {"type": "offer", "sdp": "offer-sdp"}

    async def create_answer(self):
        return {"type": "answer", "sdp": "answer-sdp"}

    async def set_remote_description(self, description) -> None:
        if self.fail_on_remote:
            raise ValueError("bad sdp")
        self.remote_descriptions.append(description)

    async def add_ice_candidate(self, candidate) -> None:
        self.candidates.append(candidate)

    async def replace_tracks(self, media) -> None:
        self.media = media

    async def close(self) -> None:
        self.closed = True


class FakeLinkProvider:
    def __init__(self) -> None:
        self.links: list[FakeLink] = []
        self.fail_with: Exception | None = None

    async def create(self, media, *, ice_servers, on_candidate, on_remote_stream):
        if self.fail_with is not None:
            raise self.fail_with
        link = FakeLink(media, on_candidate, on_remote_stream)
        self.links.append(link)
        return link


class FakeTransport:
    instances: list["FakeTransport"] = []

    def __init__(self, url, on_message, *, on_open, on_reconnecting, on_failure, **kwargs) -> None:
        self.url = url
        self.on_message = on_message
        self.on_open = on_open
        self.on_reconnecting = on_reconnecting
        self.on_failure = on_failure
        self.sent: list[dict] = []
        self.ready = False
        self.closed = False
        self.fail_open = False
        self.dropped: list[tuple[str, ...]] = []
        FakeTransport.instances.append(self)

    async def open(self) -> None:
        if self.fail_open:
            raise TransportError("unreachable")
        self.ready = True
        await self.on_open(False)

    async def send(self, message: dict) -> bool:
        self.sent.append(message)
        return self.ready

    def drop_queued(self, message_types) -> int:
        self.dropped.append(tuple(message_types))
        return 0

    async def close(self) -> None:
        self.ready = False
        self.closed = True

    async def inject(self, message: dict) -> None:
        await self.on_message(message)

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]


class Harness:
    def __init__(self, devices: list[str] | None = None, fail_open: bool = False) -> None:
        self.media = FakeMediaProvider(devices)
        self.links = FakeLinkProvider()
        self.events: list[Any] = []
        self._fail_open = fail_open
        self.transport: FakeTransport | None = None
        self.negotiator = PeerNegotiator(
            self.media,
            self.links,
            self.events.append,
            signaling_url="ws://relay.test/ws",
            ice_servers=["stun:stun.test:3478"],
            reconnect_attempts=2,
            reconnect_delay=0,
            transport_factory=self._make_transport,
        )

    def _make_transport(self, *args, **kwargs) -> FakeTransport:
        self.transport = FakeTransport(*args, **kwargs)
        self.transport.fail_open = self._fail_open
        return self.transport

    def kinds(self) -> list[EventKind]:
        return [event.kind for event in self.events]

    def errors(self) -> list[dict]:
        return [event.data for event in self.events if event.kind is EventKind.ERROR]

    async def connect_as_initiator(self) -> FakeLink:
        assert await self.negotiator.initialize(ROOM)
        await self.transport.inject({"type": "start-call", "roomId": ROOM})
        await self.transport.inject({"type": "answer", "roomId": ROOM, "answer": {"type": "answer", "sdp": "a"}})
        return self.links.links[-1]


@pytest.mark.asyncio
async def test_initialize_acquires_media_and_joins_room():
    harness = Harness()

    assert await harness.negotiator.initialize(ROOM) is True

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    assert harness.transport.url == "ws://relay.test/ws"
    assert harness.transport.sent == [{"type": "join-room", "roomId": ROOM}]
    assert EventKind.LOCAL_MEDIA_READY in harness.kinds()
    assert harness.kinds()[-1] is EventKind.INITIALIZED


@pytest.mark.asyncio
async def test_initialize_twice_is_rejected():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    assert await harness.negotiator.initialize(ROOM) is False
    assert len(harness.media.requests) == 1


@pytest.mark.asyncio
async def test_invalid_room_id_is_reported_without_acquiring_media():
    harness = Harness()

    assert await harness.negotiator.initialize("room-1") is False

    assert harness.negotiator.state is NegotiationState.IDLE
    assert harness.media.requests == []
    assert harness.errors()[0]["category"] is ErrorCategory.RELAY


@pytest.mark.asyncio
async def test_initiator_offers_then_connects_on_answer():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    await harness.transport.inject({"type": "start-call", "roomId": ROOM})

    assert harness.negotiator.state is NegotiationState.OFFERING
    assert harness.negotiator.is_initiator is True
    assert harness.transport.sent[-1] == {
        "type": "offer",
        "roomId": ROOM,
        "offer": {"type": "offer", "sdp": "offer-sdp"},
    }

    answer = {"type": "answer", "sdp": "answer-sdp"}
    await harness.transport.inject({"type": "answer", "roomId": ROOM, "answer": answer})

    assert harness.negotiator.state is NegotiationState.CONNECTED
    assert harness.links.links[0].remote_descriptions == [answer]


@pytest.mark.asyncio
async def test_responder_answers_offer_and_connects():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    offer = {"type": "offer", "sdp": "remote-offer"}
    await harness.transport.inject({"type": "offer", "roomId": ROOM, "offer": offer})

    assert harness.negotiator.state is NegotiationState.CONNECTED
    assert harness.negotiator.is_initiator is False
    assert harness.links.links[0].remote_descriptions == [offer]
    assert harness.transport.sent[-1] == {
        "type": "answer",
        "roomId": ROOM,
        "answer": {"type": "answer", "sdp": "answer-sdp"},
    }
    states = [e.data["state"] for e in harness.events if e.kind is EventKind.STATE_CHANGED]
    assert states[-2:] == [NegotiationState.ANSWERING, NegotiationState.CONNECTED]


@pytest.mark.asyncio
async def test_repeated_start_call_never_creates_a_second_offer():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    await harness.transport.inject({"type": "start-call", "roomId": ROOM})
    await harness.transport.inject({"type": "start-call", "roomId": ROOM})

    assert harness.transport.sent_types().count("offer") == 1
    assert len(harness.links.links) == 1
    assert harness.negotiator.state is NegotiationState.OFFERING


@pytest.mark.asyncio
async def test_offer_while_offering_resets_negotiation():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)
    await harness.transport.inject({"type": "start-call", "roomId": ROOM})

    await harness.transport.inject({"type": "offer", "roomId": ROOM, "offer": {"sdp": "x"}})

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    assert harness.links.links[0].closed is True
    assert harness.negotiator.peer_link is None
    assert harness.errors()[-1]["category"] is ErrorCategory.NEGOTIATION
    assert harness.errors()[-1]["fatal"] is False


@pytest.mark.asyncio
async def test_unexpected_answer_resets_to_awaiting_peer():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    await harness.transport.inject({"type": "answer", "roomId": ROOM, "answer": {"sdp": "x"}})

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    assert harness.errors()[-1]["category"] is ErrorCategory.NEGOTIATION


@pytest.mark.asyncio
async def test_peer_link_failure_during_answer_resets_negotiation():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)
    await harness.transport.inject({"type": "start-call", "roomId": ROOM})
    harness.links.links[0].fail_on_remote = True

    await harness.transport.inject({"type": "answer", "roomId": ROOM, "answer": {"sdp": "x"}})

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    assert harness.links.links[0].closed is True


@pytest.mark.asyncio
async def test_ice_candidates_applied_only_with_a_link():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    await harness.transport.inject({"type": "ice-candidate", "roomId": ROOM, "candidate": {"candidate": "early"}})
    assert harness.negotiator.state is NegotiationState.AWAITING_PEER

    await harness.transport.inject({"type": "start-call", "roomId": ROOM})
    await harness.transport.inject({"type": "answer", "roomId": ROOM, "answer": {"type": "answer", "sdp": "a"}})
    link = harness.links.links[-1]
    await harness.transport.inject({"type": "ice-candidate", "roomId": ROOM, "candidate": {"candidate": "c1"}})

    assert link.candidates == [{"candidate": "c1"}]
    assert harness.negotiator.state is NegotiationState.CONNECTED


@pytest.mark.asyncio
async def test_local_candidates_and_remote_stream_flow_through():
    harness = Harness()
    link = await harness.connect_as_initiator()

    await link.on_candidate({"candidate": "local-1"})
    await link.on_remote_stream("remote-stream")

    assert harness.transport.sent[-1] == {
        "type": "ice-candidate",
        "roomId": ROOM,
        "candidate": {"candidate": "local-1"},
    }
    assert harness.negotiator.remote_stream == "remote-stream"
    assert EventKind.REMOTE_STREAM_CONNECTED in harness.kinds()


@pytest.mark.asyncio
async def test_peer_left_returns_to_awaiting_peer_and_keeps_local_media():
    harness = Harness()
    link = await harness.connect_as_initiator()
    await link.on_remote_stream("remote-stream")
    media = harness.negotiator.local_media

    await harness.transport.inject({"type": "peer-left", "roomId": ROOM})

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    assert link.closed is True
    assert harness.negotiator.remote_stream is None
    assert harness.negotiator.local_media is media
    assert all(track.ready_state == "live" for track in media.tracks)
    assert harness.kinds()[-1] is EventKind.PEER_LEFT

    # Callbacks from the discarded link are ignored.
    sent_before = len(harness.transport.sent)
    await link.on_candidate({"candidate": "stale"})
    assert len(harness.transport.sent) == sent_before

    await harness.transport.inject({"type": "start-call", "roomId": ROOM})
    assert harness.negotiator.state is NegotiationState.OFFERING
    assert len(harness.links.links) == 2
    assert harness.links.links[1].media is media


@pytest.mark.asyncio
async def test_media_acquisition_failure_returns_to_idle_and_can_retry():
    harness = Harness()
    harness.media.fail_with = MediaAcquisitionError("permission denied")

    assert await harness.negotiator.initialize(ROOM) is False
    assert harness.negotiator.state is NegotiationState.IDLE
    assert harness.errors() == [
        {"category": ErrorCategory.ACQUISITION, "message": "permission denied", "fatal": False}
    ]
    assert harness.transport is None

    harness.media.fail_with = None
    assert await harness.negotiator.initialize(ROOM) is True
    assert harness.negotiator.state is NegotiationState.AWAITING_PEER


@pytest.mark.asyncio
async def test_capability_error_is_fatal():
    harness = Harness()
    harness.media.fail_with = CapabilityError("no media devices API")

    assert await harness.negotiator.initialize(ROOM) is False

    assert harness.negotiator.state is NegotiationState.CLOSED
    assert harness.errors()[-1]["category"] is ErrorCategory.CAPABILITY
    assert harness.errors()[-1]["fatal"] is True


@pytest.mark.asyncio
async def test_transport_failure_releases_media_before_reporting():
    harness = Harness(fail_open=True)
    observed: list[tuple[NegotiationState, Any]] = []

    def listener(event) -> None:
        if event.kind is EventKind.ERROR:
            observed.append((harness.negotiator.state, harness.negotiator.local_media))

    harness.negotiator._listener = listener

    assert await harness.negotiator.initialize(ROOM) is False

    assert observed == [(NegotiationState.CLOSED, None)]
    assert harness.transport.closed is True
    assert all(track.ready_state == "ended" for track in harness.media.streams[0].tracks)


@pytest.mark.asyncio
async def test_reconnect_rejoins_room_with_fresh_negotiation():
    harness = Harness()
    link = await harness.connect_as_initiator()

    await harness.transport.on_reconnecting(1)
    assert harness.negotiator.state is NegotiationState.RECONNECTING
    assert harness.events[-1].kind is EventKind.RECONNECTING
    assert harness.events[-1].data == {"attempt": 1}

    await harness.transport.on_open(True)

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    assert link.closed is True
    assert harness.transport.sent[-1] == {"type": "join-room", "roomId": ROOM}
    assert harness.transport.dropped == [("offer", "answer", "ice-candidate")]


@pytest.mark.asyncio
async def test_reconnect_exhaustion_is_fatal():
    harness = Harness()
    await harness.connect_as_initiator()

    await harness.transport.on_failure(TransportError("gave up"))

    assert harness.negotiator.state is NegotiationState.CLOSED
    assert harness.negotiator.local_media is None
    assert harness.errors()[-1] == {"category": ErrorCategory.TRANSPORT, "message": "gave up", "fatal": True}


@pytest.mark.asyncio
async def test_room_full_error_closes_the_client():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    await harness.transport.inject(
        {"type": "error", "roomId": ROOM, "code": "room-full", "message": "Room 12345678 already has 2 participants"}
    )

    assert harness.negotiator.state is NegotiationState.CLOSED
    assert harness.errors()[-1]["category"] is ErrorCategory.RELAY


@pytest.mark.asyncio
async def test_envelopes_for_other_rooms_and_malformed_ones_are_dropped():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    await harness.transport.inject({"type": "start-call", "roomId": "87654321"})
    await harness.transport.inject({"type": "offer", "roomId": ROOM})
    await harness.transport.inject({"type": "nonsense"})

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    assert harness.links.links == []


@pytest.mark.asyncio
async def test_toggles_are_unavailable_before_media():
    harness = Harness()

    assert await harness.negotiator.toggle_audio() is None
    assert await harness.negotiator.toggle_video() is None
    assert await harness.negotiator.switch_camera() is False


@pytest.mark.asyncio
async def test_toggling_twice_restores_original_state():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)

    assert await harness.negotiator.toggle_video() is False
    assert await harness.negotiator.toggle_video() is True
    assert await harness.negotiator.toggle_audio() is False
    assert await harness.negotiator.toggle_audio() is True

    toggled = [(e.kind, e.data["enabled"]) for e in harness.events if e.kind in (EventKind.AUDIO_TOGGLED, EventKind.VIDEO_TOGGLED)]
    assert toggled == [
        (EventKind.VIDEO_TOGGLED, False),
        (EventKind.VIDEO_TOGGLED, True),
        (EventKind.AUDIO_TOGGLED, False),
        (EventKind.AUDIO_TOGGLED, True),
    ]


@pytest.mark.asyncio
async def test_switch_camera_cycles_devices_and_updates_link():
    harness = Harness(devices=["cam-front", "cam-back"])
    link = await harness.connect_as_initiator()
    original = harness.negotiator.local_media
    await harness.negotiator.toggle_audio()

    assert await harness.negotiator.switch_camera() is True

    current = harness.negotiator.local_media
    assert current is not original
    assert current.video_tracks()[0].device_id == "cam-back"
    assert current.audio_tracks()[0].enabled is False
    assert link.media is current
    assert all(track.ready_state == "ended" for track in original.tracks)

    assert await harness.negotiator.switch_camera() is True
    assert harness.negotiator.local_media.video_tracks()[0].device_id == "cam-front"


@pytest.mark.asyncio
async def test_switch_camera_requires_a_second_device():
    harness = Harness(devices=["only-cam"])
    await harness.negotiator.initialize(ROOM)

    assert await harness.negotiator.switch_camera() is False
    assert len(harness.media.requests) == 1


@pytest.mark.asyncio
async def test_end_call_releases_everything_and_ignores_late_envelopes():
    harness = Harness()
    link = await harness.connect_as_initiator()
    media = harness.negotiator.local_media

    await harness.negotiator.end_call()

    assert harness.negotiator.state is NegotiationState.CLOSED
    assert link.closed is True
    assert harness.transport.closed is True
    assert all(track.ready_state == "ended" for track in media.tracks)
    assert harness.kinds()[-1] is EventKind.CLOSED

    await harness.transport.inject({"type": "start-call", "roomId": ROOM})
    assert harness.negotiator.state is NegotiationState.CLOSED
    assert await harness.negotiator.toggle_audio() is None

    await harness.negotiator.end_call()
    assert harness.kinds().count(EventKind.CLOSED) == 1


@pytest.mark.asyncio
async def test_health_snapshot_reflects_negotiation():
    harness = Harness()

    snapshot = harness.negotiator.health_snapshot()
    assert snapshot.healthy is False
    assert LOCAL_MEDIA_ABSENT in [issue.reason for issue in snapshot.issues]

    link = await harness.connect_as_initiator()
    link.connection_state = "connected"
    await link.on_remote_stream("remote-stream")

    snapshot = harness.negotiator.health_snapshot()
    assert snapshot.healthy is True
    assert snapshot.remote_media_present is True
    assert snapshot.transport_connection_state == "connected"


@pytest.mark.asyncio
async def test_chat_messages_are_sent_and_delivered():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)
    received: list[tuple[str, Any]] = []
    harness.negotiator.chat.on_receive = lambda room_id, envelope: received.append((room_id, envelope.message))

    assert await harness.negotiator.chat.send(ROOM, "hello") is True
    await harness.transport.inject({"type": "chat-message", "roomId": ROOM, "message": "hi back"})

    assert harness.transport.sent[-1] == {"type": "chat-message", "roomId": ROOM, "message": "hello"}
    assert received == [(ROOM, "hi back")]


@pytest.mark.asyncio
async def test_listener_errors_do_not_escape():
    media = FakeMediaProvider()

    def broken_listener(event) -> None:
        raise RuntimeError("ui bug")

    transports: list[FakeTransport] = []

    def factory(*args, **kwargs):
        transports.append(FakeTransport(*args, **kwargs))
        return transports[-1]

    negotiator = PeerNegotiator(media, FakeLinkProvider(), broken_listener, transport_factory=factory)

    assert await negotiator.initialize(ROOM) is True
    assert negotiator.state is NegotiationState.AWAITING_PEER


async def _wait_for_joins(transport: FakeTransport, count: int) -> None:
    for _ in range(100):
        if transport.sent_types().count("join-room") >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"never sent {count} join-room envelopes")


@pytest.mark.asyncio
async def test_room_full_after_reconnect_retries_the_join():
    harness = Harness()
    await harness.connect_as_initiator()
    await harness.transport.on_reconnecting(1)
    await harness.transport.on_open(True)
    room_full = {"type": "error", "roomId": ROOM, "code": "room-full", "message": "stale socket still in room"}

    await harness.transport.inject(room_full)

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    await _wait_for_joins(harness.transport, 3)

    await harness.transport.inject({"type": "start-call", "roomId": ROOM})
    assert harness.negotiator.state is NegotiationState.OFFERING


@pytest.mark.asyncio
async def test_room_full_after_reconnect_gives_up_once_attempts_are_spent():
    harness = Harness()
    await harness.connect_as_initiator()
    await harness.transport.on_open(True)
    room_full = {"type": "error", "roomId": ROOM, "code": "room-full", "message": "Room is taken"}

    await harness.transport.inject(room_full)
    await _wait_for_joins(harness.transport, 3)
    await harness.transport.inject(room_full)
    await _wait_for_joins(harness.transport, 4)
    await harness.transport.inject(room_full)

    assert harness.negotiator.state is NegotiationState.CLOSED
    assert harness.errors()[-1] == {"category": ErrorCategory.RELAY, "message": "Room is taken", "fatal": True}


@pytest.mark.asyncio
async def test_chat_is_only_delivered_for_the_joined_room_while_active():
    harness = Harness()
    received: list[Any] = []
    harness.negotiator.chat.on_receive = lambda room_id, envelope: received.append(envelope.message)

    assert await harness.negotiator.initialize(ROOM) is True
    await harness.transport.inject({"type": "chat-message", "roomId": "87654321", "message": "wrong room"})
    await harness.transport.inject({"type": "chat-message", "roomId": ROOM, "message": "right room"})

    await harness.negotiator.end_call()
    await harness.transport.inject({"type": "chat-message", "roomId": ROOM, "message": "too late"})
    await harness.transport.inject(
        {"type": "file-message", "roomId": ROOM, "fileData": {"name": "a.txt", "size": 0, "content": "data:,"}}
    )

    assert received == ["right room"]


@pytest.mark.asyncio
async def test_start_call_without_local_media_resets_instead_of_crashing():
    harness = Harness()
    await harness.negotiator.initialize(ROOM)
    harness.negotiator._media = None

    await harness.transport.inject({"type": "start-call", "roomId": ROOM})

    assert harness.negotiator.state is NegotiationState.AWAITING_PEER
    assert harness.links.links == []
    assert harness.errors()[-1]["category"] is ErrorCategory.NEGOTIATION
    assert "offer" not in harness.transport.sent_types()
