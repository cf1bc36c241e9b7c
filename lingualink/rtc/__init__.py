"""Room session signaling and peer link lifecycle."""

from .captions import Caption, CaptionPipeline, SynthesizedSpeaker
from .connection import AiortcConnectionFactory, AiortcPeerConnection, ConnectionEvents, PeerConnection
from .dispatcher import EventDispatcher
from .errors import (
    AlreadyInRoom,
    DuplicatePeer,
    JoinError,
    MediaNotReady,
    NegotiationTimeout,
    PeerError,
    PeerUnreachable,
    SessionError,
    StaleMessage,
    TransportUnavailable,
)
from .membership import RoomMembershipTracker
from .models import (
    Identity,
    NegotiationState,
    Participant,
    PeerLink,
    RemoteStream,
    SessionHandle,
    is_initiator,
)
from .negotiation import NegotiationHandler
from .session import Session
from .supervisor import PeerLinkSupervisor
from .transport import InProcessTransport, SignalingTransport, WebSocketTransport

__all__ = [
    "AiortcConnectionFactory",
    "AiortcPeerConnection",
    "AlreadyInRoom",
    "Caption",
    "CaptionPipeline",
    "ConnectionEvents",
    "DuplicatePeer",
    "EventDispatcher",
    "Identity",
    "InProcessTransport",
    "JoinError",
    "MediaNotReady",
    "NegotiationHandler",
    "NegotiationState",
    "NegotiationTimeout",
    "Participant",
    "PeerConnection",
    "PeerError",
    "PeerLink",
    "PeerLinkSupervisor",
    "PeerUnreachable",
    "RemoteStream",
    "RoomMembershipTracker",
    "Session",
    "SessionError",
    "SessionHandle",
    "SignalingTransport",
    "StaleMessage",
    "SynthesizedSpeaker",
    "TransportUnavailable",
    "WebSocketTransport",
    "is_initiator",
]
