"""Data contracts for the signaling relay protocol."""
from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, Field


class MessageType(str, enum.Enum):
    JOIN_ROOM = "join-room"
    JOINED = "joined"
    ERROR = "error"
    PEER_JOINED = "peer-joined"
    PEER_LEFT = "peer-left"
    PEER_UPDATED = "peer-updated"
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    SPEAK_DATA = "speak-data"
    RECEIVE_SPEAK_DATA = "receive-speak-data"
    LANGUAGE_CHANGE = "language-change"


# Messages the relay forwards point-to-point to the addressed participant.
ROUTED_TYPES = frozenset({MessageType.OFFER, MessageType.ANSWER, MessageType.CANDIDATE})


class Envelope(BaseModel):
    """Outer frame of every message exchanged with the relay."""

    type: str
    payload: Any = Field(default_factory=dict)
    target: str | None = Field(default=None, description="Recipient participant id for routed messages")
    sender: str | None = Field(default=None, description="Stamped by the relay before forwarding")


class JoinRoomPayload(BaseModel):
    room_id: str = Field(..., min_length=1, description="Room name to join")
    display_name: str = Field(default="", description="Human readable name shown to peers")
    language: str = Field(default="en-US", description="BCP-47 tag of the spoken language")
    participant_id: str | None = Field(default=None, description="Requested id; assigned by the relay when omitted")


class PeerInfo(BaseModel):
    peer_id: str
    display_name: str = ""
    language: str = "en-US"


class JoinedPayload(BaseModel):
    participant_id: str
    room_id: str
    participants: list[PeerInfo] = Field(default_factory=list)


class PeerLeftPayload(BaseModel):
    peer_id: str


class LanguageChangePayload(BaseModel):
    language: str = Field(..., min_length=1)


class SpeakDataPayload(BaseModel):
    room_id: str
    text: str
    source_lang: str
    identity: str = ""


class ReceiveSpeakDataPayload(BaseModel):
    text: str
    source_lang: str
    identity: str = ""


class ErrorCode(str, enum.Enum):
    INVALID_MESSAGE = "invalid-message"
    NOT_JOINED = "not-joined"
    ALREADY_JOINED = "already-joined"
    ID_TAKEN = "id-taken"
    UNKNOWN_TARGET = "unknown-target"


class ErrorPayload(BaseModel):
    code: ErrorCode
    detail: str = ""


class RoomSnapshot(BaseModel):
    room_id: str
    participants: list[PeerInfo] = Field(default_factory=list)
