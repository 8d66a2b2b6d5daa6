"""In-memory signaling relay pairing a host and a viewer by sharing code."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict

from ..core.errors import InvalidCodeError, RoomFullError
from ..schemas import signaling as schemas
from .codes import normalize_code
from .rooms import Departure, RoomRegistry

SendCallable = Callable[[dict], Awaitable[None]]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def deliver(self, message: dict) -> None:
        """Send one message; writes to the same connection never interleave."""

        async with self._write_lock:
            await self.send(message)


class SignalingRelay:
    """Route rendezvous and negotiation messages between paired connections."""

    def __init__(self, registry: RoomRegistry | None = None) -> None:
        self.registry = registry or RoomRegistry()
        self._connections: Dict[str, SignalingConnection] = {}
        self._deliveries: set[asyncio.Task[None]] = set()

    async def connect(self, connection: SignalingConnection) -> None:
        self._connections[connection.connection_id] = connection
        logger.info("Client connected: %s", connection.connection_id)

    def get(self, connection_id: str) -> SignalingConnection | None:
        return self._connections.get(connection_id)

    async def handle(self, connection_id: str, message: dict[str, Any]) -> dict | None:
        """Process one inbound message and return the ack to send back, if any."""

        message_type = message.get("type")
        request_id = message.get("requestId")

        if message_type == schemas.GENERATE_CODE:
            await self._leave(connection_id)
            code = await self.registry.create_room(connection_id)
            logger.info("Room created: %s by %s", code, connection_id)
            return _dump(schemas.GenerateCodeAck(request_id=request_id, success=True, code=code))

        if message_type == schemas.JOIN_ROOM:
            return await self._join(connection_id, message.get("code"), request_id)

        if message_type == schemas.LEAVE_ROOM:
            await self._leave(connection_id)
            if request_id is None:
                return None
            return _dump(schemas.Ack(request_id=request_id, success=True))

        if message_type in schemas.RELAYED_TYPES:
            self._forward(connection_id, message_type, message)
            return None

        logger.warning("Unsupported message type %r from %s", message_type, connection_id)
        if request_id is None:
            return None
        return _dump(schemas.ErrorAck(request_id=request_id, message="Unsupported message type"))

    async def disconnect(self, connection_id: str) -> None:
        """Forget a closed connection and release its room membership. Never raises."""

        self._connections.pop(connection_id, None)
        logger.info("Client disconnected: %s", connection_id)
        try:
            await self._leave(connection_id)
        except Exception:  # noqa: BLE001 - disconnect cleanup must not propagate
            logger.exception("Failed to release room membership for %s", connection_id)

    def deliver(self, target_id: str, message: dict) -> bool:
        """Schedule ``message`` for ``target_id`` without waiting for it to be written."""

        connection = self._connections.get(target_id)
        if connection is None:
            logger.warning("Dropping %s for unknown connection %s", message.get("type"), target_id)
            return False
        task = asyncio.create_task(self._send(connection, message))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return True

    async def drain(self) -> None:
        """Wait until every scheduled delivery has been attempted."""

        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def run_sweeper(self, interval: float, max_age: float) -> None:
        """Periodically drop rooms older than ``max_age`` seconds."""

        while True:
            await asyncio.sleep(interval)
            try:
                expired = await self.registry.sweep(max_age)
            except Exception:  # noqa: BLE001 - keep sweeping on the next tick
                logger.exception("Room sweep failed")
                continue
            for room in expired:
                logger.info("Cleaned up expired room: %s", room.code)

    async def _join(self, connection_id: str, raw_code: object, request_id: object) -> dict:
        code = normalize_code(raw_code) if isinstance(raw_code, str) else None
        try:
            if code is None:
                raise InvalidCodeError()
            pairing = await self.registry.pair_viewer(code, connection_id)
        except (InvalidCodeError, RoomFullError) as exc:
            logger.info("Join of %r by %s refused: %s", raw_code, connection_id, exc.message)
            return _dump(
                schemas.JoinRoomAck(
                    request_id=request_id,
                    success=False,
                    message=exc.message,
                    reason=exc.reason,
                )
            )

        self._announce(pairing.departure)
        logger.info("Viewer %s joined room %s", connection_id, code)
        self.deliver(pairing.host_id, {"type": schemas.VIEWER_JOINED, "viewerId": connection_id})
        return _dump(schemas.JoinRoomAck(request_id=request_id, success=True, host_id=pairing.host_id))

    async def _leave(self, connection_id: str) -> None:
        self._announce(await self.registry.unpair(connection_id))

    def _announce(self, departure: Departure | None) -> None:
        if departure is None:
            return
        logger.info(
            "%s %s left room %s", departure.role.value.title(), departure.connection_id, departure.code
        )
        if departure.notify_id and departure.notification:
            self.deliver(departure.notify_id, {"type": departure.notification})

    def _forward(self, sender_id: str, message_type: str, message: dict[str, Any]) -> None:
        target_id = message.get("to")
        if not isinstance(target_id, str):
            logger.warning("%s from %s has no target", message_type, sender_id)
            return
        logger.debug("%s from %s to %s", message_type, sender_id, target_id)
        key = schemas.RELAYED_TYPES[message_type]
        self.deliver(target_id, {"type": message_type, key: message.get(key), "from": sender_id})

    async def _send(self, connection: SignalingConnection, message: dict) -> None:
        try:
            await connection.deliver(message)
        except Exception as exc:  # noqa: BLE001 - a dead recipient never affects the sender
            logger.warning("Delivery of %s to %s failed: %s", message.get("type"), connection.connection_id, exc)


def _dump(model: schemas.Ack) -> dict:
    return model.model_dump(by_alias=True, exclude_none=True)
