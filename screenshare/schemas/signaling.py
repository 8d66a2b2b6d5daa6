"""Data contracts for the signaling websocket."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

GENERATE_CODE = "generate-code"
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
VIEWER_JOINED = "viewer-joined"
CONNECTED = "connected"
ACK = "ack"

RELAYED_TYPES = {OFFER: "offer", ANSWER: "answer", ICE_CANDIDATE: "candidate"}


class SessionDescriptionPayload(BaseModel):
    type: Literal["offer", "answer"]
    sdp: str = Field(..., min_length=1)


class IceCandidatePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    candidate: str = Field(default="", description="Candidate attribute, with or without the 'candidate:' prefix")
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")


class Ack(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["ack"] = ACK
    request_id: int | str | None = Field(default=None, alias="requestId")
    success: bool


class GenerateCodeAck(Ack):
    code: str


class JoinRoomAck(Ack):
    host_id: str | None = Field(default=None, alias="hostId")
    message: str | None = None
    reason: str | None = None


class ErrorAck(Ack):
    success: bool = False
    message: str
