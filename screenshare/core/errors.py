"""Error taxonomy shared by the relay and the participants."""
from __future__ import annotations


class ScreenShareError(RuntimeError):
    """Base class carrying a user-facing message."""

    default_message = "Something went wrong"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class InvalidCodeError(ScreenShareError):
    """Raised when a sharing code is malformed or unknown."""

    default_message = "Invalid sharing code"
    reason = "invalid_code"


class RoomFullError(ScreenShareError):
    """Raised when the room already has a viewer."""

    default_message = "Room is full"
    reason = "room_full"


class NegotiationFailedError(ScreenShareError):
    """Raised for malformed descriptors/candidates or connectivity rejection."""

    default_message = "Failed to establish connection"


class ConnectivityLostError(ScreenShareError):
    """The underlying peer connection reached a terminal state."""

    default_message = "Connection lost"


class TransportUnavailableError(ScreenShareError):
    """The control channel was not open when a send was attempted."""

    default_message = "Control channel is not open"
