"""Peer connectivity collaborator: the interface the negotiator needs and an aiortc adapter."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Protocol

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp

from ..core.errors import TransportUnavailableError
from ..schemas.signaling import IceCandidatePayload, SessionDescriptionPayload

logger = logging.getLogger(__name__)

CONTROL_CHANNEL_LABEL = "remoteControl"
TERMINAL_STATES = frozenset({"failed", "disconnected", "closed"})

MessageHandler = Callable[[Any], None]


class ControlChannel(Protocol):
    """Best-effort message channel carried by the peer connection."""

    @property
    def ready_state(self) -> str: ...

    def send(self, data: str) -> None: ...

    def close(self) -> None: ...

    def on_open(self, handler: Callable[[], None]) -> None: ...

    def on_message(self, handler: MessageHandler) -> None: ...

    def on_close(self, handler: Callable[[], None]) -> None: ...


@dataclass(slots=True)
class PeerHooks:
    """Notifications a peer connection reports back to its owner."""

    on_connection_state: Callable[[str], Awaitable[None]]
    on_candidate: Callable[[IceCandidatePayload], Awaitable[None]]
    on_control_channel: Callable[[ControlChannel], Awaitable[None]]
    on_track: Callable[[Any], Awaitable[None]]


class PeerConnection(Protocol):
    @property
    def connection_state(self) -> str: ...

    @property
    def local_description(self) -> Optional[SessionDescriptionPayload]: ...

    async def create_offer(self) -> SessionDescriptionPayload: ...

    async def create_answer(self) -> SessionDescriptionPayload: ...

    async def set_local_description(self, description: SessionDescriptionPayload) -> None: ...

    async def set_remote_description(self, description: SessionDescriptionPayload) -> None: ...

    async def add_candidate(self, candidate: IceCandidatePayload) -> None: ...

    def add_track(self, track: Any) -> None: ...

    def create_control_channel(self) -> ControlChannel: ...

    async def get_stats(self) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...


PeerFactory = Callable[[PeerHooks], PeerConnection]


class MediaSource(Protocol):
    """Local capture handed to the host's peer connection."""

    def tracks(self) -> list[Any]: ...

    def stop(self) -> None: ...


@dataclass(slots=True, frozen=True)
class StreamStats:
    """One sample of the inbound video stream."""

    packets_received: int
    packets_lost: int
    bytes_received: Optional[int] = None
    fps: Optional[float] = None
    bitrate_kbps: Optional[int] = None


def summarize_inbound_video(reports: Iterable[Mapping[str, Any]]) -> Optional[StreamStats]:
    """Pick the inbound video stream out of a stats report.

    Browsers count ``bytesReceived`` on the inbound report itself; aiortc only
    counts packets there, so the sender's own byte count from the matching
    RTCP sender report is used instead.
    """

    inbound = None
    sender_bytes = None
    for report in reports:
        if report.get("kind") != "video":
            continue
        if report.get("type") == "inbound-rtp":
            inbound = report
        elif report.get("type") == "remote-outbound-rtp":
            sender_bytes = report.get("bytesSent")
    if inbound is None:
        return None
    return StreamStats(
        packets_received=inbound.get("packetsReceived") or 0,
        packets_lost=inbound.get("packetsLost") or 0,
        bytes_received=inbound.get("bytesReceived", sender_bytes),
        fps=inbound.get("framesPerSecond"),
    )


class AiortcControlChannel:
    """:class:`ControlChannel` over an aiortc ``RTCDataChannel``."""

    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    def send(self, data: str) -> None:
        if self._channel.readyState != "open":
            raise TransportUnavailableError()
        self._channel.send(data)

    def close(self) -> None:
        self._channel.close()

    def on_open(self, handler: Callable[[], None]) -> None:
        self._channel.on("open", handler)

    def on_message(self, handler: MessageHandler) -> None:
        self._channel.on("message", handler)

    def on_close(self, handler: Callable[[], None]) -> None:
        self._channel.on("close", handler)


class AiortcPeerConnection:
    """:class:`PeerConnection` backed by ``aiortc.RTCPeerConnection``.

    aiortc gathers candidates during ``setLocalDescription`` and embeds them in
    the local description, so ``on_candidate`` is never fired here.
    """

    def __init__(self, hooks: PeerHooks, ice_servers: list[str]) -> None:
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(config)

        @self._pc.on("connectionstatechange")
        async def on_connection_state() -> None:
            logger.info("Connection state: %s", self._pc.connectionState)
            await hooks.on_connection_state(self._pc.connectionState)

        @self._pc.on("datachannel")
        async def on_datachannel(channel: RTCDataChannel) -> None:
            logger.info("Data channel received: %s", channel.label)
            await hooks.on_control_channel(AiortcControlChannel(channel))

        @self._pc.on("track")
        async def on_track(track: Any) -> None:
            logger.info("Received remote %s track", track.kind)
            await hooks.on_track(track)

    @classmethod
    def factory(cls, ice_servers: list[str]) -> PeerFactory:
        return lambda hooks: cls(hooks, ice_servers)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> Optional[SessionDescriptionPayload]:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescriptionPayload(type=description.type, sdp=description.sdp)

    async def create_offer(self) -> SessionDescriptionPayload:
        offer = await self._pc.createOffer()
        return SessionDescriptionPayload(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescriptionPayload:
        answer = await self._pc.createAnswer()
        return SessionDescriptionPayload(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescriptionPayload) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def set_remote_description(self, description: SessionDescriptionPayload) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_candidate(self, candidate: IceCandidatePayload) -> None:
        await self._pc.addIceCandidate(candidate_from_payload(candidate))

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    def create_control_channel(self) -> ControlChannel:
        channel = self._pc.createDataChannel(CONTROL_CHANNEL_LABEL, ordered=False, maxRetransmits=0)
        return AiortcControlChannel(channel)

    async def get_stats(self) -> list[dict[str, Any]]:
        report = await self._pc.getStats()
        return [dict(vars(stats)) for stats in report.values()]

    async def close(self) -> None:
        await self._pc.close()


def candidate_from_payload(payload: IceCandidatePayload):
    """Build an aiortc candidate from the browser-style ``{candidate, sdpMid, sdpMLineIndex}`` shape."""

    text = payload.candidate
    if text.startswith("candidate:"):
        text = text.split(":", 1)[1]
    candidate = candidate_from_sdp(text)
    candidate.sdpMid = payload.sdp_mid
    candidate.sdpMLineIndex = payload.sdp_mline_index
    return candidate


class PlayerMediaSource:
    """:class:`MediaSource` reading a file or capture device through ``MediaPlayer``."""

    def __init__(self, source: str, *, format: str | None = None, options: dict[str, str] | None = None) -> None:
        self._player = MediaPlayer(source, format=format, options=options or {})

    def tracks(self) -> list[Any]:
        return [track for track in (self._player.video, self._player.audio) if track is not None]

    def stop(self) -> None:
        for track in self.tracks():
            track.stop()
