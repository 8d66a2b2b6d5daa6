"""Control-channel event contracts (viewer -> host input)."""
from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _EventBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: int | None = Field(default=None, description="Send time in ms since epoch")


class PointerMoveEvent(_EventBase):
    type: Literal["mousemove"] = "mousemove"
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)


class PointerButtonEvent(_EventBase):
    type: Literal["mousedown", "mouseup"]
    button: int = Field(default=0, ge=0)
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)


class WheelEvent(_EventBase):
    type: Literal["wheel"] = "wheel"
    delta_x: float = Field(default=0.0, alias="deltaX")
    delta_y: float = Field(default=0.0, alias="deltaY")
    delta_mode: int = Field(default=0, alias="deltaMode", ge=0, le=2)


class KeyEvent(_EventBase):
    type: Literal["keydown", "keyup"]
    key: str
    code: str = ""
    ctrl_key: bool = Field(default=False, alias="ctrlKey")
    shift_key: bool = Field(default=False, alias="shiftKey")
    alt_key: bool = Field(default=False, alias="altKey")
    meta_key: bool = Field(default=False, alias="metaKey")


ControlEvent = Annotated[
    Union[PointerMoveEvent, PointerButtonEvent, WheelEvent, KeyEvent],
    Field(discriminator="type"),
]

COALESCABLE_TYPES = frozenset({"mousemove", "wheel"})


class ControlBatch(BaseModel):
    type: Literal["batch"] = "batch"
    events: list[ControlEvent]
    timestamp: int | None = None


control_event_adapter: TypeAdapter[ControlEvent] = TypeAdapter(ControlEvent)


def is_coalescable(event: ControlEvent) -> bool:
    return event.type in COALESCABLE_TYPES


def normalize_pointer(x: float, y: float, width: float, height: float) -> tuple[float, float]:
    """Map a pixel position on the displayed surface to clamped [0, 1] coordinates."""

    if width <= 0 or height <= 0:
        return 0.0, 0.0
    return min(max(x / width, 0.0), 1.0), min(max(y / height, 0.0), 1.0)
