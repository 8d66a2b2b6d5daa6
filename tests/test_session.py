"""Tests for the host/viewer negotiation state machine."""
from __future__ import annotations

import asyncio
import json

import pytest

from screenshare.core.errors import InvalidCodeError, RoomFullError
from screenshare.schemas.control import KeyEvent
from screenshare.schemas.signaling import IceCandidatePayload, SessionDescriptionPayload
from screenshare.services import sdp
from screenshare.services.control import ControlSettings
from screenshare.services.peer import StreamStats, summarize_inbound_video
from screenshare.services.rooms import Role
from screenshare.services.session import SessionNegotiator, SessionState

REMOTE_SDP = "v=0\r\na=rtpmap:96 VP8/90000\r\na=fmtp:96 apt=100\r\n"
LOCAL_SDP = "v=0\r\na=rtpmap:102 H264/90000\r\na=fmtp:102 apt=100\r\n"
CANDIDATE = {"candidate": "candidate:1 1 udp 2122260223 10.0.0.1 50000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


class FakeChannel:
    def __init__(self) -> None:
        self.ready_state = "open"
        self.sent: list[str] = []
        self.closed = False
        self.handlers: dict[str, object] = {}

    def send(self, data: str) -> None:
        self.sent.append(data)

    def close(self) -> None:
        self.closed = True
        self.ready_state = "closed"

    def on_open(self, handler) -> None:
        self.handlers["open"] = handler

    def on_message(self, handler) -> None:
        self.handlers["message"] = handler

    def on_close(self, handler) -> None:
        self.handlers["close"] = handler


class FakePeer:
    def __init__(self, hooks) -> None:
        self.hooks = hooks
        self.connection_state = "new"
        self.local_description: SessionDescriptionPayload | None = None
        self.calls: list[str] = []
        self.candidates: list[IceCandidatePayload] = []
        self.tracks: list[object] = []
        self.channels: list[FakeChannel] = []
        self.closed = False
        self.stats_polls = 0

    async def create_offer(self) -> SessionDescriptionPayload:
        self.calls.append("create_offer")
        return SessionDescriptionPayload(type="offer", sdp=LOCAL_SDP)

    async def create_answer(self) -> SessionDescriptionPayload:
        self.calls.append("create_answer")
        return SessionDescriptionPayload(type="answer", sdp=LOCAL_SDP)

    async def set_local_description(self, description: SessionDescriptionPayload) -> None:
        self.calls.append("set_local")
        self.local_description = description

    async def set_remote_description(self, description: SessionDescriptionPayload) -> None:
        self.calls.append(f"set_remote:{description.type}")

    async def add_candidate(self, candidate: IceCandidatePayload) -> None:
        self.calls.append("add_candidate")
        self.candidates.append(candidate)

    def add_track(self, track) -> None:
        self.tracks.append(track)

    def create_control_channel(self) -> FakeChannel:
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    async def get_stats(self) -> list[dict]:
        self.stats_polls += 1
        return [
            {"type": "inbound-rtp", "kind": "audio", "packetsReceived": 5, "packetsLost": 0},
            {
                "type": "inbound-rtp",
                "kind": "video",
                "packetsReceived": 10 * self.stats_polls,
                "packetsLost": 1,
                "bytesReceived": 1000 * self.stats_polls,
                "framesPerSecond": 30.0,
            },
        ]

    async def close(self) -> None:
        self.closed = True
        self.connection_state = "closed"


class RejectingPeer(FakePeer):
    async def set_remote_description(self, description: SessionDescriptionPayload) -> None:
        raise ValueError("bad description")


class FakeMedia:
    def __init__(self) -> None:
        self.stopped = False

    def tracks(self) -> list[str]:
        return ["video-track"]

    def stop(self) -> None:
        self.stopped = True


class FakeSignaling:
    def __init__(self, **acks: dict) -> None:
        self.acks = acks
        self.requests: list[tuple[str, dict]] = []
        self.emitted: list[tuple[str, dict]] = []

    async def request(self, message_type: str, **payload) -> dict:
        self.requests.append((message_type, payload))
        return self.acks[message_type.replace("-", "_")]

    async def emit(self, message_type: str, **payload) -> bool:
        self.emitted.append((message_type, payload))
        return True

    def types(self) -> list[str]:
        return [message_type for message_type, _ in self.emitted]


class Harness:
    def __init__(self, signaling: FakeSignaling, peer_cls: type[FakePeer] = FakePeer, **kwargs) -> None:
        self.peer_cls = peer_cls
        self.peers: list[FakePeer] = []
        self.statuses: list[tuple[str, str]] = []
        self.signaling = signaling
        self.negotiator = SessionNegotiator(
            signaling,
            self._make_peer,
            on_status=lambda message, level: self.statuses.append((message, level)),
            control_settings=ControlSettings(batch_interval=60.0),
            **kwargs,
        )

    def _make_peer(self, hooks) -> FakePeer:
        peer = self.peer_cls(hooks)
        self.peers.append(peer)
        return peer

    @property
    def peer(self) -> FakePeer:
        return self.peers[-1]


async def _hosting(media: FakeMedia | None = None) -> Harness:
    media = media or FakeMedia()
    harness = Harness(
        FakeSignaling(generate_code={"type": "ack", "success": True, "code": "123-456-789"}),
        media_factory=lambda: media,
    )
    assert await harness.negotiator.start_hosting() == "123-456-789"
    return harness


async def _viewing(host_id: str = "host-1") -> Harness:
    harness = Harness(FakeSignaling(join_room={"type": "ack", "success": True, "hostId": host_id}))
    assert await harness.negotiator.join("123456789") == host_id
    return harness


def _offer(sender: str = "host-1", sdp_text: str = REMOTE_SDP) -> dict:
    return {"type": "offer", "from": sender, "offer": {"type": "offer", "sdp": sdp_text}}


@pytest.mark.asyncio
async def test_host_sends_munged_offer_when_viewer_joins():
    media = FakeMedia()
    harness = await _hosting(media)
    negotiator = harness.negotiator

    await negotiator.handle_signal({"type": "viewer-joined", "viewerId": "viewer-1"})

    peer = harness.peer
    assert peer.channels and peer.tracks == ["video-track"]
    assert peer.calls == ["create_offer", "set_local"]
    assert negotiator.state is SessionState.NEGOTIATING
    assert negotiator.remote_peer_id == "viewer-1"

    message_type, payload = harness.signaling.emitted[-1]
    assert message_type == "offer"
    assert payload["to"] == "viewer-1"
    assert payload["offer"] == {"type": "offer", "sdp": sdp.optimize_sdp_for_latency(LOCAL_SDP)}
    assert sdp.BITRATE_HINTS in payload["offer"]["sdp"]


@pytest.mark.asyncio
async def test_host_applies_answer_then_drains_held_candidates():
    harness = await _hosting()
    negotiator = harness.negotiator
    await negotiator.handle_signal({"type": "viewer-joined", "viewerId": "viewer-1"})
    peer = harness.peer

    await negotiator.handle_signal({"type": "ice-candidate", "from": "viewer-1", "candidate": CANDIDATE})
    assert peer.candidates == []

    await negotiator.handle_signal(
        {"type": "answer", "from": "viewer-1", "answer": {"type": "answer", "sdp": REMOTE_SDP}}
    )
    assert peer.calls[-2:] == ["set_remote:answer", "add_candidate"]

    await negotiator.handle_signal({"type": "ice-candidate", "from": "viewer-1", "candidate": CANDIDATE})
    assert len(peer.candidates) == 2
    assert peer.candidates[0].sdp_mline_index == 0


@pytest.mark.asyncio
async def test_connected_only_on_connectivity_report():
    harness = await _hosting()
    negotiator = harness.negotiator
    await negotiator.handle_signal({"type": "viewer-joined", "viewerId": "viewer-1"})
    await negotiator.handle_signal(
        {"type": "answer", "from": "viewer-1", "answer": {"type": "answer", "sdp": REMOTE_SDP}}
    )
    assert negotiator.state is SessionState.NEGOTIATING

    await harness.peer.hooks.on_connection_state("connected")

    assert negotiator.state is SessionState.CONNECTED
    assert harness.statuses[-1] == ("Connected to 123-456-789", "success")


@pytest.mark.asyncio
async def test_answer_from_unknown_peer_is_ignored():
    harness = await _hosting()
    await harness.negotiator.handle_signal({"type": "viewer-joined", "viewerId": "viewer-1"})

    await harness.negotiator.handle_signal(
        {"type": "answer", "from": "intruder", "answer": {"type": "answer", "sdp": REMOTE_SDP}}
    )

    assert "set_remote:answer" not in harness.peer.calls
    assert harness.negotiator.state is SessionState.NEGOTIATING


@pytest.mark.asyncio
async def test_viewer_answers_offer_and_applies_early_candidates():
    harness = await _viewing()
    negotiator = harness.negotiator
    assert harness.signaling.requests == [("join-room", {"code": "123-456-789"})]

    await negotiator.handle_signal({"type": "ice-candidate", "from": "host-1", "candidate": CANDIDATE})
    await negotiator.handle_signal({"type": "ice-candidate", "from": "stranger", "candidate": CANDIDATE})
    await negotiator.handle_signal({"type": "ice-candidate", "from": "host-1", "candidate": {"candidate": ""}})
    assert harness.peers == []

    await negotiator.handle_signal(_offer())

    peer = harness.peer
    assert peer.calls == ["set_remote:offer", "add_candidate", "create_answer", "set_local"]
    assert len(peer.candidates) == 1
    message_type, payload = harness.signaling.emitted[-1]
    assert message_type == "answer"
    assert payload["to"] == "host-1"
    assert payload["answer"]["type"] == "answer"
    assert "a=fmtp:102 profile-level-id=42e01f" in payload["answer"]["sdp"]


@pytest.mark.asyncio
async def test_local_candidates_are_sent_to_the_remote_peer():
    harness = await _viewing()
    await harness.negotiator.handle_signal(_offer())

    await harness.peer.hooks.on_candidate(IceCandidatePayload.model_validate(CANDIDATE))

    assert harness.signaling.emitted[-1] == ("ice-candidate", {"to": "host-1", "candidate": CANDIDATE})


@pytest.mark.asyncio
async def test_terminal_state_tears_everything_down():
    media = FakeMedia()
    harness = await _hosting(media)
    negotiator = harness.negotiator
    await negotiator.handle_signal({"type": "viewer-joined", "viewerId": "viewer-1"})
    peer = harness.peer
    await peer.hooks.on_connection_state("connected")

    await peer.hooks.on_connection_state("failed")

    assert peer.closed is True
    assert peer.channels[0].closed is True
    assert media.stopped is True
    assert negotiator.session is None
    assert negotiator.role is None
    assert negotiator.state is SessionState.IDLE
    assert harness.signaling.types()[-1] == "leave-room"
    assert ("Connection lost", "error") in harness.statuses

    # Late reports from the closed connection change nothing.
    await peer.hooks.on_connection_state("connected")
    assert negotiator.session is None


@pytest.mark.asyncio
async def test_host_disconnected_resets_viewer():
    harness = await _viewing()
    await harness.negotiator.handle_signal(_offer())
    peer = harness.peer

    await harness.negotiator.handle_signal({"type": "host-disconnected"})

    assert peer.closed is True
    assert harness.negotiator.role is None
    assert harness.negotiator.code is None
    assert ("Host disconnected", "error") in harness.statuses


@pytest.mark.asyncio
async def test_viewer_disconnected_keeps_host_sharing():
    media = FakeMedia()
    harness = await _hosting(media)
    negotiator = harness.negotiator
    await negotiator.handle_signal({"type": "viewer-joined", "viewerId": "viewer-1"})
    first = harness.peer

    await negotiator.handle_signal({"type": "viewer-disconnected"})

    assert first.closed is True
    assert negotiator.session is None
    assert negotiator.role is Role.HOST
    assert negotiator.code == "123-456-789"
    assert media.stopped is False
    assert "leave-room" not in harness.signaling.types()

    await negotiator.handle_signal({"type": "viewer-joined", "viewerId": "viewer-2"})
    assert harness.peer is not first
    assert harness.signaling.emitted[-1][1]["to"] == "viewer-2"


@pytest.mark.asyncio
async def test_malformed_offer_fails_negotiation():
    harness = await _viewing()

    await harness.negotiator.handle_signal({"type": "offer", "from": "host-1", "offer": {"type": "offer"}})

    assert harness.negotiator.role is None
    assert harness.negotiator.session is None
    assert ("Failed to establish connection", "error") in harness.statuses
    assert harness.signaling.types() == ["leave-room"]


@pytest.mark.asyncio
async def test_connectivity_error_fails_negotiation():
    harness = Harness(
        FakeSignaling(join_room={"type": "ack", "success": True, "hostId": "host-1"}),
        peer_cls=RejectingPeer,
    )
    await harness.negotiator.join("123-456-789")

    await harness.negotiator.handle_signal(_offer())

    assert harness.peer.closed is True
    assert harness.negotiator.session is None
    assert harness.negotiator.role is None
    assert ("Failed to establish connection", "error") in harness.statuses


@pytest.mark.asyncio
async def test_join_room_full_raises_and_resets():
    harness = Harness(
        FakeSignaling(
            join_room={"type": "ack", "success": False, "message": "Room is full", "reason": "room_full"}
        )
    )

    with pytest.raises(RoomFullError):
        await harness.negotiator.join("123-456-789")

    assert harness.negotiator.role is None
    assert harness.statuses[-1] == ("Room is full", "error")


@pytest.mark.asyncio
async def test_join_rejects_malformed_code_without_asking_relay():
    harness = Harness(FakeSignaling())

    with pytest.raises(InvalidCodeError):
        await harness.negotiator.join("12-34")

    assert harness.signaling.requests == []
    assert harness.negotiator.role is None


@pytest.mark.asyncio
async def test_remote_control_requires_connected_session():
    captured: list[bool] = []
    harness = Harness(
        FakeSignaling(join_room={"type": "ack", "success": True, "hostId": "host-1"}),
        on_cursor_capture=captured.append,
    )
    negotiator = harness.negotiator
    await negotiator.join("123-456-789")
    await negotiator.handle_signal(_offer())
    channel = FakeChannel()
    await harness.peer.hooks.on_control_channel(channel)

    assert negotiator.enable_control() is False

    await harness.peer.hooks.on_connection_state("connected")
    assert negotiator.enable_control() is True
    assert negotiator.capture(KeyEvent(type="keydown", key="a")) is True
    assert json.loads(channel.sent[0])["key"] == "a"

    channel.handlers["close"]()
    assert negotiator.session.transport.enabled is False
    assert captured == [True, False]


@pytest.mark.asyncio
async def test_host_enacts_incoming_control_events():
    class Recorder:
        def __init__(self) -> None:
            self.events = []

        def enact(self, event) -> None:
            self.events.append(event)

    recorder = Recorder()
    harness = Harness(
        FakeSignaling(generate_code={"type": "ack", "success": True, "code": "123-456-789"}),
        enactor=recorder,
    )
    await harness.negotiator.start_hosting()
    await harness.negotiator.handle_signal({"type": "viewer-joined", "viewerId": "viewer-1"})

    on_message = harness.peer.channels[0].handlers["message"]
    on_message('{"type":"batch","events":[{"type":"mousemove","x":0.5,"y":0.5}],"timestamp":1}')

    assert [event.type for event in recorder.events] == ["mousemove"]


@pytest.mark.asyncio
async def test_stats_are_sampled_once_connected_and_stop_on_disconnect():
    samples: list[StreamStats] = []
    harness = Harness(
        FakeSignaling(join_room={"type": "ack", "success": True, "hostId": "host-1"}),
        on_stats=samples.append,
        stats_interval=0.01,
    )
    negotiator = harness.negotiator
    await negotiator.join("123-456-789")
    await negotiator.handle_signal(_offer())
    peer = harness.peer

    await asyncio.sleep(0.03)
    assert peer.stats_polls == 0

    await peer.hooks.on_connection_state("connected")
    await peer.hooks.on_connection_state("connected")
    task = negotiator.session.stats_task
    for _ in range(50):
        if len(samples) >= 3:
            break
        await asyncio.sleep(0.01)

    assert samples[0].bitrate_kbps is None
    assert samples[0].fps == 30.0
    assert samples[0].packets_lost == 1
    assert samples[-1].bitrate_kbps == 800

    await negotiator.disconnect()
    await asyncio.gather(task, return_exceptions=True)
    polls = peer.stats_polls
    await asyncio.sleep(0.03)

    assert task.cancelled()
    assert peer.stats_polls == polls


@pytest.mark.asyncio
async def test_stats_errors_do_not_stop_sampling():
    class FlakyStatsPeer(FakePeer):
        async def get_stats(self) -> list[dict]:
            if not self.stats_polls:
                self.stats_polls += 1
                raise RuntimeError("stats unavailable")
            return await super().get_stats()

    samples: list[StreamStats] = []
    harness = Harness(
        FakeSignaling(join_room={"type": "ack", "success": True, "hostId": "host-1"}),
        peer_cls=FlakyStatsPeer,
        on_stats=samples.append,
        stats_interval=0.01,
    )
    await harness.negotiator.join("123-456-789")
    await harness.negotiator.handle_signal(_offer())
    await harness.peer.hooks.on_connection_state("connected")
    for _ in range(50):
        if samples:
            break
        await asyncio.sleep(0.01)

    assert samples and samples[0].packets_received == 20
    await harness.negotiator.disconnect()


def test_inbound_video_summary_falls_back_to_sender_byte_count():
    reports = [
        {"type": "inbound-rtp", "kind": "video", "packetsReceived": 90, "packetsLost": 3, "jitter": 0.01},
        {"type": "remote-outbound-rtp", "kind": "video", "packetsSent": 93, "bytesSent": 64000},
        {"type": "remote-outbound-rtp", "kind": "audio", "packetsSent": 50, "bytesSent": 9000},
        {"type": "transport", "bytesReceived": 1},
    ]

    assert summarize_inbound_video(reports) == StreamStats(packets_received=90, packets_lost=3, bytes_received=64000)
    assert summarize_inbound_video([{"type": "inbound-rtp", "kind": "audio", "packetsReceived": 1}]) is None
