"""In-memory room registry pairing one host with one viewer per sharing code."""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..core.errors import InvalidCodeError, RoomFullError
from .codes import generate_code

logger = logging.getLogger(__name__)

HOST_DISCONNECTED = "host-disconnected"
VIEWER_DISCONNECTED = "viewer-disconnected"


class Role(str, enum.Enum):
    HOST = "host"
    VIEWER = "viewer"


@dataclass(slots=True)
class Room:
    code: str
    host_id: str
    created_at: float
    viewer_id: Optional[str] = None


@dataclass(slots=True, frozen=True)
class PeerRecord:
    code: str
    role: Role


@dataclass(slots=True, frozen=True)
class Departure:
    """Outcome of removing a connection from its room."""

    connection_id: str
    code: str
    role: Role
    notify_id: Optional[str] = None
    notification: Optional[str] = None


class RoomStore:
    """Sharing code -> room mapping. Not synchronized; owned by :class:`RoomRegistry`."""

    def __init__(self, code_factory: Callable[[], str] = generate_code) -> None:
        self._code_factory = code_factory
        self._rooms: Dict[str, Room] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, code: object) -> bool:
        return code in self._rooms

    def get(self, code: str) -> Optional[Room]:
        return self._rooms.get(code)

    def create_room(self, host_id: str, now: float) -> Room:
        code = self._code_factory()
        while code in self._rooms:
            logger.debug("Sharing code collision on %s, retrying", code)
            code = self._code_factory()
        room = Room(code=code, host_id=host_id, created_at=now)
        self._rooms[code] = room
        return room

    def join_room(self, code: str, viewer_id: str) -> str:
        room = self._rooms.get(code)
        if room is None:
            raise InvalidCodeError()
        if room.viewer_id is not None:
            raise RoomFullError()
        room.viewer_id = viewer_id
        return room.host_id

    def clear_viewer(self, code: str, viewer_id: str) -> bool:
        """Empty the viewer slot only if ``viewer_id`` still holds it."""

        room = self._rooms.get(code)
        if room is None or room.viewer_id != viewer_id:
            return False
        room.viewer_id = None
        return True

    def remove_room(self, code: str) -> Optional[Room]:
        return self._rooms.pop(code, None)

    def sweep_expired(self, now: float, max_age: float) -> list[Room]:
        expired = [room for room in self._rooms.values() if now - room.created_at > max_age]
        for room in expired:
            self._rooms.pop(room.code, None)
        return expired


class PeerIndex:
    """Connection id -> (code, role) lookup used on disconnect."""

    def __init__(self) -> None:
        self._peers: Dict[str, PeerRecord] = {}

    def __len__(self) -> int:
        return len(self._peers)

    def bind(self, connection_id: str, code: str, role: Role) -> None:
        self._peers[connection_id] = PeerRecord(code=code, role=role)

    def lookup(self, connection_id: str) -> Optional[PeerRecord]:
        return self._peers.get(connection_id)

    def unbind(self, connection_id: str) -> None:
        self._peers.pop(connection_id, None)


@dataclass(slots=True, frozen=True)
class Pairing:
    """Outcome of seating a viewer: the host to connect to and any membership it gave up."""

    host_id: str
    departure: Optional[Departure] = None


class RoomRegistry:
    """Keep :class:`RoomStore` and :class:`PeerIndex` consistent under one lock."""

    def __init__(
        self,
        rooms: RoomStore | None = None,
        peers: PeerIndex | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rooms = rooms or RoomStore()
        self.peers = peers or PeerIndex()
        self._clock = clock
        self._lock = asyncio.Lock()

    async def lookup(self, connection_id: str) -> Optional[PeerRecord]:
        async with self._lock:
            return self.peers.lookup(connection_id)

    async def create_room(self, host_id: str) -> str:
        """Create a room hosted by ``host_id`` and return its code."""

        async with self._lock:
            room = self.rooms.create_room(host_id, self._clock())
            self.peers.bind(host_id, room.code, Role.HOST)
            return room.code

    async def pair_viewer(self, code: str, viewer_id: str) -> Pairing:
        """Seat ``viewer_id`` in the room, releasing any membership it held before.

        Raises :class:`InvalidCodeError` or :class:`RoomFullError` without
        touching either structure, so a refused join keeps the old membership.
        """

        async with self._lock:
            room = self.rooms.get(code)
            if room is not None and room.viewer_id == viewer_id:
                return Pairing(room.host_id)
            if room is not None and room.host_id == viewer_id:
                raise InvalidCodeError("Cannot join your own room")
            host_id = self.rooms.join_room(code, viewer_id)
            departure = self._unpair(viewer_id)
            self.peers.bind(viewer_id, code, Role.VIEWER)
            return Pairing(host_id, departure)

    async def unpair(self, connection_id: str) -> Optional[Departure]:
        """Remove ``connection_id`` from its room and say who must be told."""

        async with self._lock:
            return self._unpair(connection_id)

    async def sweep(self, max_age: float, now: float | None = None) -> list[Room]:
        """Drop rooms older than ``max_age`` seconds together with their peer records."""

        async with self._lock:
            current = self._clock() if now is None else now
            expired = self.rooms.sweep_expired(current, max_age)
            for room in expired:
                if self.peers.lookup(room.host_id) == PeerRecord(room.code, Role.HOST):
                    self.peers.unbind(room.host_id)
                if room.viewer_id and self.peers.lookup(room.viewer_id) == PeerRecord(room.code, Role.VIEWER):
                    self.peers.unbind(room.viewer_id)
            return expired

    def _unpair(self, connection_id: str) -> Optional[Departure]:
        record = self.peers.lookup(connection_id)
        if record is None:
            return None
        self.peers.unbind(connection_id)

        room = self.rooms.get(record.code)
        if room is None:
            logger.warning("Peer %s referenced missing room %s", connection_id, record.code)
            return Departure(connection_id, record.code, record.role)

        if record.role is Role.HOST and room.host_id == connection_id:
            self.rooms.remove_room(room.code)
            if room.viewer_id is None:
                return Departure(connection_id, room.code, Role.HOST)
            self.peers.unbind(room.viewer_id)
            return Departure(connection_id, room.code, Role.HOST, room.viewer_id, HOST_DISCONNECTED)

        if record.role is Role.VIEWER and self.rooms.clear_viewer(room.code, connection_id):
            return Departure(connection_id, room.code, Role.VIEWER, room.host_id, VIEWER_DISCONNECTED)

        logger.warning(
            "Peer %s (%s) no longer matches room %s", connection_id, record.role.value, room.code
        )
        return Departure(connection_id, room.code, record.role)
