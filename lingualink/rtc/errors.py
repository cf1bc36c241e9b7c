"""Errors raised by the session signaling core."""
from __future__ import annotations


class SessionError(RuntimeError):
    """Base class for every session/negotiation failure."""


class JoinError(SessionError):
    """Raised when a room cannot be joined."""


class AlreadyInRoom(JoinError):
    """Raised when ``join`` is called on a session that is already in a room."""


class TransportUnavailable(JoinError):
    """Raised when the relay cannot be reached or never acknowledges the join."""


class PeerError(SessionError):
    """Failure scoped to a single remote participant."""

    def __init__(self, peer_id: str, message: str = "") -> None:
        super().__init__(message or peer_id)
        self.peer_id = peer_id


class NegotiationTimeout(PeerError):
    """A link did not reach the established state within the configured window."""


class PeerUnreachable(PeerError):
    """Negotiation with a peer failed and every retry has been used up."""


class MediaNotReady(PeerError):
    """A link was requested before any local media was granted."""


class StaleMessage(PeerError):
    """A negotiation message referenced a peer whose link is already closed."""


class DuplicatePeer(PeerError):
    """A second link was about to be created for the same participant."""
