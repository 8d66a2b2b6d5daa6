"""Per-participant negotiation state machine.

A participant owns at most one :class:`Session`. The host starts negotiating
when the relay reports a viewer; the viewer starts when the host's offer
arrives. ``Connected`` is entered only from the connectivity layer's own state
notification. Every failure ends in a full teardown; nothing is retried in
place.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import ValidationError

from ..core.errors import (
    ConnectivityLostError,
    InvalidCodeError,
    NegotiationFailedError,
    RoomFullError,
    ScreenShareError,
)
from ..schemas import signaling as schemas
from ..schemas.control import ControlEvent
from .codes import is_valid_code, normalize_code
from .control import ControlChannelTransport, ControlDispatcher, ControlSettings, InputEnactor
from .peer import (
    TERMINAL_STATES,
    ControlChannel,
    MediaSource,
    PeerConnection,
    PeerFactory,
    PeerHooks,
    StreamStats,
    summarize_inbound_video,
)
from .rooms import HOST_DISCONNECTED, VIEWER_DISCONNECTED, Role
from .sdp import optimize_sdp_for_latency

logger = logging.getLogger(__name__)

StatusHandler = Callable[[str, str], None]
TrackSink = Callable[[Any], Awaitable[None]]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class SignalingChannel(Protocol):
    async def request(self, message_type: str, **payload: Any) -> dict: ...

    async def emit(self, message_type: str, **payload: Any) -> bool: ...


@dataclass(eq=False)
class Session:
    role: Role
    peer_id: str
    state: SessionState = SessionState.IDLE
    connection: Optional[PeerConnection] = None
    transport: Optional[ControlChannelTransport] = None
    dispatcher: Optional[ControlDispatcher] = None
    channel: Optional[ControlChannel] = None
    remote_described: bool = False
    pending_candidates: list[schemas.IceCandidatePayload] = field(default_factory=list)
    remote_tracks: list[Any] = field(default_factory=list)
    stats_task: Optional[asyncio.Task[None]] = None

    @property
    def active(self) -> bool:
        return self.state in (SessionState.NEGOTIATING, SessionState.CONNECTED)


class SessionNegotiator:
    """Drive offer/answer/candidate exchange for one host or viewer."""

    def __init__(
        self,
        signaling: SignalingChannel,
        peer_factory: PeerFactory,
        *,
        media_factory: Callable[[], MediaSource] | None = None,
        enactor: InputEnactor | None = None,
        control_settings: ControlSettings | None = None,
        on_status: StatusHandler | None = None,
        on_track: TrackSink | None = None,
        on_cursor_capture: Callable[[bool], None] | None = None,
        on_stats: Callable[[StreamStats], None] | None = None,
        stats_interval: float = 1.0,
    ) -> None:
        self.signaling = signaling
        self._peer_factory = peer_factory
        self._media_factory = media_factory
        self._enactor = enactor
        self._control_settings = control_settings or ControlSettings()
        self._on_status = on_status
        self._on_track = on_track
        self._on_cursor_capture = on_cursor_capture
        self._on_stats = on_stats
        self._stats_interval = stats_interval

        self.role: Role | None = None
        self.code: str | None = None
        self.remote_peer_id: str | None = None
        self.session: Session | None = None
        self.media: MediaSource | None = None
        self._early_candidates: list[tuple[str | None, schemas.IceCandidatePayload]] = []

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.IDLE

    # ------------------------------------------------------------------
    # user-initiated actions

    async def start_hosting(self) -> str:
        """Ask the relay for a sharing code and wait for a viewer."""

        if self.role is not None:
            self._status("Already sharing or connected.", "info")
            return self.code or ""

        ack = await self.signaling.request(schemas.GENERATE_CODE)
        if not ack.get("success") or not ack.get("code"):
            self._status("Failed to generate code", "error")
            raise ScreenShareError("Failed to generate code")

        self.role = Role.HOST
        self.code = ack["code"]
        if self._media_factory is not None:
            self.media = self._media_factory()
        logger.info("Sharing as %s, waiting for viewer", self.code)
        self._status(f"Your screen is being shared. Code: {self.code}", "success")
        return self.code

    async def join(self, raw_code: str) -> str:
        """Join a host's room as viewer and return the host's connection id."""

        if self.role is not None:
            self._status("Already connected. Disconnect first to connect to a different screen.", "info")
            return self.remote_peer_id or ""
        code = normalize_code(raw_code) if is_valid_code(raw_code or "") else None
        if code is None:
            self._status("Invalid sharing code format. Please use XXX-XXX-XXX format.", "error")
            raise InvalidCodeError("Invalid sharing code format")

        self.role = Role.VIEWER
        self.code = code
        self._status("Connecting to remote screen...", "info")
        ack = await self.signaling.request(schemas.JOIN_ROOM, code=code)
        if not ack.get("success"):
            error_cls = RoomFullError if ack.get("reason") == RoomFullError.reason else InvalidCodeError
            error = error_cls(ack.get("message"))
            self._status(error.message, "error")
            await self.disconnect()
            raise error

        self.remote_peer_id = ack.get("hostId")
        logger.info("Joined room %s, waiting for stream from %s", code, self.remote_peer_id)
        return self.remote_peer_id or ""

    async def disconnect(self) -> None:
        """Tear everything down and return to idle."""

        await self._close_session()
        if self.media is not None:
            self.media.stop()
            self.media = None
        if self.role is not None:
            await self.signaling.emit(schemas.LEAVE_ROOM)
        self.role = None
        self.code = None
        self.remote_peer_id = None
        self._early_candidates.clear()

    def enable_control(self) -> bool:
        session = self.session
        if (
            session is None
            or session.role is not Role.VIEWER
            or session.state is not SessionState.CONNECTED
            or session.transport is None
        ):
            self._status("Remote control is not available yet", "info")
            return False
        session.transport.enable()
        self._status("Remote control enabled", "success")
        return True

    def disable_control(self) -> None:
        session = self.session
        if session is not None and session.transport is not None and session.transport.enabled:
            session.transport.disable()
            self._status("Remote control disabled", "info")

    def capture(self, event: ControlEvent) -> bool:
        session = self.session
        if session is None or session.transport is None:
            return False
        return session.transport.capture(event)

    # ------------------------------------------------------------------
    # relay notifications

    async def handle_signal(self, message: dict) -> None:
        """Process one relay message; messages must be fed in arrival order."""

        handlers = {
            schemas.VIEWER_JOINED: self._on_viewer_joined,
            schemas.OFFER: self._on_offer,
            schemas.ANSWER: self._on_answer,
            schemas.ICE_CANDIDATE: self._on_candidate,
            HOST_DISCONNECTED: self._on_host_disconnected,
            VIEWER_DISCONNECTED: self._on_viewer_disconnected,
        }
        message_type = message.get("type")
        handler = handlers.get(message_type)
        if handler is None:
            logger.debug("Ignoring relay message %r", message_type)
            return

        session = self.session
        try:
            await handler(message)
        except (ValidationError, NegotiationFailedError) as exc:
            logger.error("Negotiation failed on %s: %s", message_type, exc)
            await self._fail(self.session or session)
        except Exception:  # noqa: BLE001 - connectivity layer errors end in teardown
            logger.exception("Error handling %s", message_type)
            await self._fail(self.session or session)

    async def _on_viewer_joined(self, message: dict) -> None:
        viewer_id = message.get("viewerId")
        if self.role is not Role.HOST or not isinstance(viewer_id, str):
            logger.warning("Unexpected viewer-joined while %s", self.role)
            return
        logger.info("Viewer joined: %s", viewer_id)
        self._status("Viewer connected! Creating peer connection...", "info")

        session = await self._open_session(Role.HOST, viewer_id)
        connection = session.connection
        session.dispatcher = ControlDispatcher(self._enactor)
        session.channel = connection.create_control_channel()
        session.channel.on_message(session.dispatcher.handle_message)
        if self.media is not None:
            for track in self.media.tracks():
                connection.add_track(track)

        offer = await connection.create_offer()
        offer = offer.model_copy(update={"sdp": optimize_sdp_for_latency(offer.sdp)})
        await connection.set_local_description(offer)
        if session is not self.session:
            return
        local = connection.local_description or offer
        await self.signaling.emit(schemas.OFFER, to=viewer_id, offer=local.model_dump())
        logger.info("Offer sent to viewer %s", viewer_id)

    async def _on_offer(self, message: dict) -> None:
        sender = message.get("from")
        if self.role is not Role.VIEWER or not isinstance(sender, str):
            logger.warning("Unexpected offer while %s", self.role)
            return
        offer = schemas.SessionDescriptionPayload.model_validate(message.get("offer"))
        if offer.type != "offer":
            raise NegotiationFailedError(f"Expected an offer, got {offer.type}")
        logger.info("Received offer from %s", sender)

        session = await self._open_session(Role.VIEWER, sender)
        session.transport = ControlChannelTransport(
            self._control_settings, on_cursor_capture=self._on_cursor_capture
        )
        connection = session.connection
        await connection.set_remote_description(offer)
        session.remote_described = True
        await self._drain_candidates(session)

        answer = await connection.create_answer()
        answer = answer.model_copy(update={"sdp": optimize_sdp_for_latency(answer.sdp)})
        await connection.set_local_description(answer)
        if session is not self.session:
            return
        local = connection.local_description or answer
        await self.signaling.emit(schemas.ANSWER, to=sender, answer=local.model_dump())
        logger.info("Answer sent to host %s", sender)

    async def _on_answer(self, message: dict) -> None:
        session = self.session
        if session is None or not session.active or message.get("from") != session.peer_id:
            logger.warning("Ignoring answer from %s", message.get("from"))
            return
        answer = schemas.SessionDescriptionPayload.model_validate(message.get("answer"))
        if answer.type != "answer":
            raise NegotiationFailedError(f"Expected an answer, got {answer.type}")
        await session.connection.set_remote_description(answer)
        session.remote_described = True
        logger.info("Answer received and processed")
        await self._drain_candidates(session)

    async def _on_candidate(self, message: dict) -> None:
        raw = message.get("candidate")
        if not raw:
            return
        candidate = schemas.IceCandidatePayload.model_validate(raw)
        if not candidate.candidate:
            return
        sender = message.get("from")
        session = self.session
        if session is None or not session.active:
            self._early_candidates.append((sender, candidate))
            return
        if sender != session.peer_id:
            logger.warning("Ignoring candidate from %s", sender)
            return
        if not session.remote_described:
            session.pending_candidates.append(candidate)
            return
        await session.connection.add_candidate(candidate)

    async def _on_host_disconnected(self, message: dict) -> None:
        self._status("Host disconnected", "error")
        await self.disconnect()

    async def _on_viewer_disconnected(self, message: dict) -> None:
        self._status("Viewer disconnected", "info")
        await self._close_session()
        self.remote_peer_id = None

    # ------------------------------------------------------------------
    # connectivity notifications

    def _hooks(self, session: Session) -> PeerHooks:
        async def on_connection_state(state: str) -> None:
            await self._on_connection_state(session, state)

        async def on_candidate(candidate: schemas.IceCandidatePayload) -> None:
            if session is self.session and session.active:
                await self.signaling.emit(
                    schemas.ICE_CANDIDATE,
                    to=session.peer_id,
                    candidate=candidate.model_dump(by_alias=True),
                )

        async def on_control_channel(channel: ControlChannel) -> None:
            if session is not self.session or session.transport is None:
                return
            session.channel = channel
            session.transport.attach(channel)
            channel.on_open(lambda: self._status("Remote control ready! Enable it to take over.", "success"))
            channel.on_close(session.transport.disable)

        async def on_track(track: Any) -> None:
            if session is not self.session:
                return
            session.remote_tracks.append(track)
            if self._on_track is not None:
                await self._on_track(track)

        return PeerHooks(on_connection_state, on_candidate, on_control_channel, on_track)

    async def _on_connection_state(self, session: Session, state: str) -> None:
        if session is not self.session or not session.active:
            return
        if state == "connected":
            session.state = SessionState.CONNECTED
            logger.info("Peer connection established with %s", session.peer_id)
            self._status(f"Connected to {self.code}" if self.code else "Successfully connected!", "success")
            if session.stats_task is None:
                session.stats_task = asyncio.create_task(self._monitor_stats(session))
        elif state in TERMINAL_STATES:
            logger.warning("Peer connection with %s is %s", session.peer_id, state)
            self._status(ConnectivityLostError.default_message, "error")
            await self.disconnect()

    # ------------------------------------------------------------------
    # internals

    async def _open_session(self, role: Role, peer_id: str) -> Session:
        await self._close_session()
        session = Session(role=role, peer_id=peer_id)
        self.session = session
        self.remote_peer_id = peer_id
        session.connection = self._peer_factory(self._hooks(session))
        session.state = SessionState.NEGOTIATING

        early, self._early_candidates = self._early_candidates, []
        session.pending_candidates.extend(candidate for sender, candidate in early if sender == peer_id)
        return session

    async def _drain_candidates(self, session: Session) -> None:
        while session.pending_candidates and session is self.session:
            candidate = session.pending_candidates.pop(0)
            await session.connection.add_candidate(candidate)

    async def _close_session(self) -> None:
        session, self.session = self.session, None
        if session is None:
            return
        session.state = SessionState.CLOSED
        session.pending_candidates.clear()
        if session.stats_task is not None:
            session.stats_task.cancel()
            session.stats_task = None
        if session.transport is not None:
            session.transport.close()
        if session.channel is not None:
            session.channel.close()
        if session.connection is not None:
            try:
                await session.connection.close()
            except Exception:  # noqa: BLE001 - releasing a broken connection is best effort
                logger.exception("Error closing peer connection")
        logger.info("Session with %s closed", session.peer_id)

    async def _monitor_stats(self, session: Session) -> None:
        """Sample inbound video every ``stats_interval`` seconds while the session is up."""

        previous: StreamStats | None = None
        while session is self.session and session.active:
            await asyncio.sleep(self._stats_interval)
            try:
                reports = await session.connection.get_stats()
            except Exception:  # noqa: BLE001 - try again on the next tick
                logger.exception("Error getting stats")
                continue
            stats = summarize_inbound_video(reports)
            if stats is None:
                continue
            if previous is not None and None not in (previous.bytes_received, stats.bytes_received):
                received = stats.bytes_received - previous.bytes_received
                stats = replace(stats, bitrate_kbps=round(received * 8 / 1000 / self._stats_interval))
            previous = stats
            logger.debug(
                "Stream stats: fps=%s bitrate=%s kbps lost=%d",
                stats.fps,
                stats.bitrate_kbps,
                stats.packets_lost,
            )
            if self._on_stats is not None:
                self._on_stats(stats)

    async def _fail(self, session: Session | None) -> None:
        if session is not None and session is not self.session:
            return
        self._status(NegotiationFailedError.default_message, "error")
        await self.disconnect()

    def _status(self, message: str, level: str) -> None:
        log = logger.error if level == "error" else logger.info
        log("[status] %s", message)
        if self._on_status:
            self._on_status(message, level)
