"""Remote-control event transport over the unordered peer data channel.

The viewer side batches pointer moves and wheel events on a fixed tick and
sends clicks and keys immediately. The host side unpacks what arrives and
hands each event to an enactor. Nothing is retransmitted: a stale input event
is worse than a lost one.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Protocol

from pydantic import BaseModel, ValidationError

from ..core.config import Settings
from ..core.errors import TransportUnavailableError
from ..schemas.control import ControlBatch, ControlEvent, control_event_adapter, is_coalescable
from .peer import ControlChannel

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ControlSettings:
    batch_interval: float = 0.016
    max_batch_size: int = 50
    move_throttle: float = 0.008

    @classmethod
    def from_settings(cls, settings: Settings) -> "ControlSettings":
        return cls(
            batch_interval=settings.control_batch_interval_ms / 1000,
            max_batch_size=settings.control_max_batch_size,
            move_throttle=settings.control_move_throttle_ms / 1000,
        )


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class ControlChannelTransport:
    """Viewer-side sender with move throttling and timed batching."""

    def __init__(
        self,
        settings: ControlSettings | None = None,
        *,
        channel: ControlChannel | None = None,
        on_cursor_capture: Callable[[bool], None] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        timestamp: Callable[[], int] = _epoch_ms,
    ) -> None:
        self.settings = settings or ControlSettings()
        self._channel = channel
        self._on_cursor_capture = on_cursor_capture
        self._monotonic = monotonic
        self._timestamp = timestamp
        self._queue: Deque[ControlEvent] = deque()
        self._flush_task: asyncio.Task[None] | None = None
        self._enabled = False
        self._last_move: float | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def channel_open(self) -> bool:
        return self._channel is not None and self._channel.ready_state == "open"

    def attach(self, channel: ControlChannel) -> None:
        self._channel = channel

    def enable(self) -> None:
        if self._enabled:
            return
        self._enabled = True
        self._last_move = None
        self._flush_task = asyncio.create_task(self._flush_loop())
        if self._on_cursor_capture:
            self._on_cursor_capture(True)
        logger.info("Remote control enabled")

    def disable(self) -> None:
        if not self._enabled:
            return
        self._enabled = False
        if self._flush_task is not None:
            self._flush_task.cancel()
            self._flush_task = None
        dropped = len(self._queue)
        self._queue.clear()
        if self._on_cursor_capture:
            self._on_cursor_capture(False)
        logger.info("Remote control disabled (%d queued events dropped)", dropped)

    def close(self) -> None:
        self.disable()
        self._channel = None

    def capture(self, event: ControlEvent) -> bool:
        """Route a captured input event; returns ``False`` if it was discarded."""

        if not self._enabled:
            return False
        if event.type == "mousemove":
            now = self._monotonic()
            if self._last_move is not None and now - self._last_move < self.settings.move_throttle:
                return False
            self._last_move = now
        if is_coalescable(event):
            self._queue.append(event)
            return True
        return self.send_immediate(event)

    def send_immediate(self, event: ControlEvent) -> bool:
        stamped = event.model_copy(update={"timestamp": self._timestamp()})
        return self._transmit(_wire(stamped))

    def flush(self) -> int:
        """Send up to ``max_batch_size`` queued events as one batch; returns how many went out."""

        if not self._queue or not self.channel_open:
            return 0
        stamp = self._timestamp()
        events = []
        while self._queue and len(events) < self.settings.max_batch_size:
            events.append(self._queue.popleft().model_copy(update={"timestamp": stamp}))
        self._transmit(_wire(ControlBatch(events=events, timestamp=stamp)))
        return len(events)

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.batch_interval)
            try:
                self.flush()
            except Exception:  # noqa: BLE001 - one bad send must not stop the tick
                logger.exception("Control batch flush failed")

    def _transmit(self, payload: dict[str, Any]) -> bool:
        if not self.channel_open:
            logger.debug("Control channel not open; dropping %s", payload.get("type"))
            return False
        try:
            self._channel.send(json.dumps(payload, separators=(",", ":")))
        except TransportUnavailableError:
            logger.debug("Control channel closed mid-send; dropping %s", payload.get("type"))
            return False
        return True


class InputEnactor(Protocol):
    def enact(self, event: ControlEvent) -> None: ...


class LoggingEnactor:
    """Stand-in for OS input injection: records what would be performed."""

    def enact(self, event: ControlEvent) -> None:
        logger.debug("Remote control event: %s", event.type)


class ControlDispatcher:
    """Host-side receiver: unpacks batches and enacts events in array order."""

    def __init__(self, enactor: InputEnactor | None = None) -> None:
        self.enactor = enactor or LoggingEnactor()

    def handle_message(self, raw: str | bytes) -> int:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Error parsing control event: %s", exc)
            return 0

        if isinstance(data, dict) and isinstance(data.get("events"), list):
            return sum(self._dispatch(item) for item in data["events"])
        return self._dispatch(data)

    def _dispatch(self, item: Any) -> int:
        try:
            event = control_event_adapter.validate_python(item)
        except ValidationError as exc:
            logger.warning("Dropping malformed control event: %s", exc.errors()[:1])
            return 0
        self.enactor.enact(event)
        return 1


def _wire(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True)

