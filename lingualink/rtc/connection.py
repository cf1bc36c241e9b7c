"""Peer connection seam and its aiortc binding.

The supervisor never talks to aiortc directly; it drives objects satisfying
:class:`PeerConnection`, created by a :data:`ConnectionFactory`. Tests plug in
scripted connections through the same seam.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from ..core.config import settings
from .models import Candidate, ParticipantId

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ConnectionEvents:
    """Callbacks a connection fires; all of them must return quickly."""

    on_track: Callable[[Any], None]
    on_candidate: Callable[[Candidate], None]
    on_state: Callable[[str], None]


class PeerConnection(Protocol):
    async def add_tracks(self, tracks: Sequence[Any]) -> None: ...

    async def create_offer(self) -> dict: ...

    async def create_answer(self) -> dict: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_candidate(self, candidate: Candidate) -> None: ...

    def set_track_enabled(self, kind: str, enabled: bool) -> None: ...

    async def close(self) -> None: ...


ConnectionFactory = Callable[[ParticipantId, ConnectionEvents], PeerConnection]


class AiortcPeerConnection:
    """:class:`PeerConnection` backed by ``aiortc.RTCPeerConnection``.

    aiortc gathers its candidates before ``setLocalDescription`` returns and
    embeds them in the SDP, so ``on_candidate`` is never fired from here; remote
    candidates trickled by browsers are still applied.
    """

    def __init__(self, peer_id: ParticipantId, events: ConnectionEvents, ice_servers: Iterable[str]) -> None:
        self.peer_id = peer_id
        self._events = events
        servers = [RTCIceServer(urls=[url]) for url in ice_servers]
        self._pc = RTCPeerConnection(RTCConfiguration(iceServers=servers))
        self._tracks: Dict[str, List[MediaStreamTrack]] = {}

        @self._pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            logger.info("Received %s track from %s", track.kind, self.peer_id)
            self._events.on_track(track)

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            state = self._pc.connectionState
            logger.debug("Connection to %s is %s", self.peer_id, state)
            self._events.on_state(state)

    async def add_tracks(self, tracks: Sequence[MediaStreamTrack]) -> None:
        for track in tracks:
            self._pc.addTrack(track)
            self._tracks.setdefault(track.kind, []).append(track)

    async def create_offer(self) -> dict:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> dict:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description: dict) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_candidate(self, candidate: Candidate) -> None:
        raw: Optional[str] = candidate.get("candidate")
        if not raw:
            # End-of-candidates marker.
            return
        if raw.startswith("candidate:"):
            raw = raw[len("candidate:"):]
        ice = candidate_from_sdp(raw)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice)

    def set_track_enabled(self, kind: str, enabled: bool) -> None:
        originals = self._tracks.get(kind, [])
        senders = [sender for sender in self._pc.getSenders() if sender.kind == kind]
        for sender, track in zip(senders, originals):
            sender.replaceTrack(track if enabled else None)

    async def close(self) -> None:
        await self._pc.close()

    def _local_description(self) -> dict:
        local = self._pc.localDescription
        return {"sdp": local.sdp, "type": local.type}


class AiortcConnectionFactory:
    """Build aiortc connections configured with the STUN servers from settings."""

    def __init__(self, ice_servers: Optional[Iterable[str]] = None) -> None:
        self.ice_servers = list(ice_servers if ice_servers is not None else settings.stun_servers)

    def __call__(self, peer_id: ParticipantId, events: ConnectionEvents) -> AiortcPeerConnection:
        return AiortcPeerConnection(peer_id, events, self.ice_servers)
