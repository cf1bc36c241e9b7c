"""Value types shared by the membership tracker, supervisor and session."""
from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, List, Optional

ParticipantId = str
Candidate = dict


@dataclass(frozen=True, slots=True)
class Identity:
    """Who the local user is, as announced to the room."""

    display_name: str
    spoken_language: str = "en-US"


@dataclass(slots=True)
class Participant:
    id: ParticipantId
    display_name: str = ""
    spoken_language: Optional[str] = None


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_EXCHANGED = "answer_exchanged"
    ESTABLISHED = "established"
    CLOSED = "closed"


@dataclass(slots=True)
class RemoteStream:
    """Remote media tracks received over one peer link."""

    peer_id: ParticipantId
    tracks: List[Any] = field(default_factory=list)


@dataclass(slots=True)
class PeerLink:
    """Negotiation record for one remote participant.

    ``connection`` is the underlying peer connection; it is rebuilt when the
    remote restarts negotiation, so the record outlives individual connections.
    """

    peer_id: ParticipantId
    initiator: bool
    connection: Any = None
    state: NegotiationState = NegotiationState.IDLE
    local_tracks_attached: bool = False
    remote_description_set: bool = False
    pending_remote_candidates: Deque[Candidate] = field(default_factory=deque)
    attempts: int = 1
    remote_stream: Optional[RemoteStream] = None

    @property
    def closed(self) -> bool:
        return self.state is NegotiationState.CLOSED


@dataclass(frozen=True, slots=True)
class SessionHandle:
    """Returned by a successful join."""

    room_id: str
    participant_id: ParticipantId
    identity: Identity


def participant_sort_key(participant_id: ParticipantId) -> tuple:
    """Order ids numerically when they are decimal, lexically otherwise."""

    if participant_id.isdigit():
        return (0, int(participant_id), participant_id)
    return (1, 0, participant_id)


def is_initiator(local_id: ParticipantId, remote_id: ParticipantId) -> bool:
    """The side with the greater participant id sends the offer."""

    return participant_sort_key(local_id) > participant_sort_key(remote_id)
