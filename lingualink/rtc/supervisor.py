"""Ownership and lifecycle of the per-peer links of one session."""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional, Sequence

from ..core.config import settings
from .connection import ConnectionEvents, ConnectionFactory
from .dispatcher import EventDispatcher
from .errors import (
    DuplicatePeer,
    MediaNotReady,
    NegotiationTimeout,
    PeerError,
    PeerUnreachable,
    StaleMessage,
)
from .membership import RoomMembershipTracker
from .models import (
    Candidate,
    NegotiationState,
    Participant,
    ParticipantId,
    PeerLink,
    RemoteStream,
    is_initiator,
)
from .negotiation import NegotiationHandler, SendMessage

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


@dataclass
class _DeferredLink:
    """A link waiting for local media, plus whatever the peer sent meanwhile."""

    peer_id: ParticipantId
    offer: Optional[dict] = None
    candidates: Deque[Candidate] = field(default_factory=deque)


class _ConnectionListener:
    """Route callbacks of one connection onto the dispatcher, tagged with that connection."""

    def __init__(self, supervisor: "PeerLinkSupervisor", peer_id: ParticipantId) -> None:
        self._supervisor = supervisor
        self._peer_id = peer_id
        self.connection: Any = None

    def events(self) -> ConnectionEvents:
        return ConnectionEvents(on_track=self._track, on_candidate=self._candidate, on_state=self._state)

    def _track(self, track: Any) -> None:
        self._supervisor._post(self._supervisor._on_remote_track, self._peer_id, self.connection, track)

    def _candidate(self, candidate: Candidate) -> None:
        self._supervisor._post(self._supervisor._on_local_candidate, self._peer_id, self.connection, candidate)

    def _state(self, state: str) -> None:
        self._supervisor._post(self._supervisor._on_connection_state, self._peer_id, self.connection, state)


class PeerLinkSupervisor:
    """Create, negotiate and tear down one link per room member.

    Subscribes to the membership tracker so the link set follows the member
    set. All entry points are expected to run on the session dispatcher.
    """

    def __init__(
        self,
        local_id: ParticipantId,
        membership: RoomMembershipTracker,
        send: SendMessage,
        connection_factory: ConnectionFactory,
        dispatcher: EventDispatcher,
        *,
        local_tracks: Optional[Sequence[Any]] = None,
        media_pending: bool = False,
        render_remote_stream: Optional[Callback] = None,
        remove_remote_stream: Optional[Callback] = None,
        on_peer_error: Optional[Callback] = None,
        on_peer_unreachable: Optional[Callback] = None,
        negotiation_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.local_id = local_id
        self._membership = membership
        self._send = send
        self._factory = connection_factory
        self._dispatcher = dispatcher
        self._local_tracks = list(local_tracks) if local_tracks is not None else None
        self._media_pending = media_pending
        self._render = render_remote_stream
        self._remove = remove_remote_stream
        self._on_peer_error = on_peer_error
        self._on_peer_unreachable = on_peer_unreachable
        self._timeout = negotiation_timeout if negotiation_timeout is not None else settings.negotiation_timeout_seconds
        self._max_retries = max_retries if max_retries is not None else settings.negotiation_max_retries

        self._links: Dict[ParticipantId, PeerLink] = {}
        self._deferred: "OrderedDict[ParticipantId, _DeferredLink]" = OrderedDict()
        self._watchdogs: Dict[ParticipantId, asyncio.Task[None]] = {}
        self._track_enabled: Dict[str, bool] = {}
        self._disposed = False

        self.negotiation = NegotiationHandler(local_id, send, self._rebuild_connection)

        membership.on_member_added(self._on_member_added)
        membership.on_member_removed(self._on_member_removed)

    @property
    def links(self) -> Dict[ParticipantId, PeerLink]:
        return dict(self._links)

    @property
    def media_ready(self) -> bool:
        return self._local_tracks is not None

    def get(self, peer_id: ParticipantId) -> Optional[PeerLink]:
        return self._links.get(peer_id)

    def deferred_peers(self) -> list[ParticipantId]:
        return list(self._deferred)

    def expect_media(self) -> None:
        """Declare that local tracks will be attached later; link creation is deferred until then."""

        if self._local_tracks is None:
            self._media_pending = True

    async def attach_local_tracks(self, tracks: Sequence[Any]) -> None:
        """Grant local media and create every link that was waiting for it, in arrival order."""

        self._local_tracks = list(tracks)
        self._media_pending = False
        while self._deferred and not self._disposed:
            _, deferred = self._deferred.popitem(last=False)
            await self._replay_deferred(deferred)

    def cancel_media(self) -> None:
        """Withdraw a pending media grant; waiting links are dropped."""

        self._media_pending = False
        for peer_id in list(self._deferred):
            self._deferred.pop(peer_id, None)
            self._report_error(MediaNotReady(peer_id, "local media was never granted"))

    async def create_link(self, peer_id: ParticipantId, *, initiator: Optional[bool] = None) -> Optional[PeerLink]:
        """Create the link for ``peer_id``.

        Returns None when creation was deferred until local media is attached.
        Raises MediaNotReady when no media is attached and none is expected.
        """

        if self._disposed:
            raise StaleMessage(peer_id, "supervisor disposed")
        existing = self._links.get(peer_id)
        if existing is not None:
            error = DuplicatePeer(peer_id, f"link for {peer_id} already exists")
            logger.warning("Consistency warning: %s; discarding the new link", error)
            self._report_error(error)
            return existing
        if self._membership.has_departed(peer_id):
            raise StaleMessage(peer_id, f"participant {peer_id} already left")
        if self._local_tracks is None:
            if self._media_pending:
                if peer_id not in self._deferred:
                    logger.info("Deferring link to %s until local media is ready", peer_id)
                    self._deferred[peer_id] = _DeferredLink(peer_id)
                return None
            raise MediaNotReady(peer_id, f"no local media to attach for link to {peer_id}")

        if initiator is None:
            initiator = is_initiator(self.local_id, peer_id)
        return await self._open_link(peer_id, initiator=initiator, attempts=1)

    async def close_link(self, peer_id: ParticipantId) -> bool:
        """Close and forget the link for ``peer_id``. Returns False when there was none."""

        self._deferred.pop(peer_id, None)
        link = self._links.pop(peer_id, None)
        if link is None:
            return False
        await self._shutdown(link)
        await self._notify(self._remove, peer_id)
        return True

    async def dispose(self) -> None:
        """Close every link; nothing is sent to any peer afterwards."""

        self._disposed = True
        self._deferred.clear()
        for peer_id in list(self._links):
            await self.close_link(peer_id)

    def set_track_enabled(self, kind: str, enabled: bool) -> None:
        """Mute or unmute the local tracks of ``kind`` on every active link."""

        self._track_enabled[kind] = enabled
        for link in self._links.values():
            link.connection.set_track_enabled(kind, enabled)

    async def handle_offer(self, sender: ParticipantId, description: dict) -> None:
        link = self._links.get(sender)
        if link is None:
            deferred = self._deferred.get(sender)
            if deferred is not None:
                deferred.offer = description
                return
            if self._membership.has_departed(sender):
                self._discard_stale(StaleMessage(sender, f"offer from departed participant {sender}"))
                return
            try:
                link = await self.create_link(sender)
            except PeerError as exc:
                logger.error("Cannot answer offer from %s: %s", sender, exc)
                self._report_error(exc)
                return
            if link is None:
                self._deferred[sender].offer = description
                await self._membership.add(Participant(id=sender))
                return
            # Register the sender only after its link exists so the tracker cannot start a second one.
            await self._membership.add(Participant(id=sender))
        await self._negotiate(link, self.negotiation.handle_offer, description)

    async def handle_answer(self, sender: ParticipantId, description: dict) -> None:
        link = self._links.get(sender)
        if link is None:
            self._discard_stale(StaleMessage(sender, f"answer from {sender} without a link"))
            return
        await self._negotiate(link, self.negotiation.handle_answer, description)

    async def handle_candidate(self, sender: ParticipantId, candidate: Candidate) -> None:
        link = self._links.get(sender)
        if link is None:
            deferred = self._deferred.get(sender)
            if deferred is not None:
                deferred.candidates.append(candidate)
                return
            self._discard_stale(StaleMessage(sender, f"candidate from {sender} without a link"))
            return
        await self._negotiate(link, self.negotiation.handle_candidate, candidate)

    async def _on_member_added(self, participant: Participant) -> None:
        if participant.id in self._links or participant.id in self._deferred:
            return
        try:
            link = await self.create_link(participant.id)
        except PeerError as exc:
            logger.error("Cannot create link to %s: %s", participant.id, exc)
            self._report_error(exc)
            return
        if link is not None and link.initiator:
            await self._negotiate(link, self.negotiation.start)

    async def _on_member_removed(self, participant: Participant) -> None:
        await self.close_link(participant.id)

    async def _replay_deferred(self, deferred: _DeferredLink) -> None:
        if deferred.peer_id not in self._membership and deferred.offer is None:
            return
        try:
            link = await self.create_link(deferred.peer_id)
        except PeerError as exc:
            logger.error("Cannot create deferred link to %s: %s", deferred.peer_id, exc)
            self._report_error(exc)
            return
        if link is None:
            return
        link.pending_remote_candidates.extend(deferred.candidates)
        if deferred.offer is not None:
            await self._negotiate(link, self.negotiation.handle_offer, deferred.offer)
        elif link.initiator:
            await self._negotiate(link, self.negotiation.start)

    async def _open_link(self, peer_id: ParticipantId, *, initiator: bool, attempts: int) -> PeerLink:
        link = PeerLink(peer_id=peer_id, initiator=initiator, attempts=attempts)
        # Registered before the first await so a concurrent creation sees it.
        self._links[peer_id] = link
        await self._connect(link)
        self._arm_watchdog(link)
        logger.info(
            "Created link to %s (%s, attempt %d)",
            peer_id,
            "initiator" if initiator else "responder",
            attempts,
        )
        return link

    async def _connect(self, link: PeerLink) -> None:
        listener = _ConnectionListener(self, link.peer_id)
        connection = self._factory(link.peer_id, listener.events())
        listener.connection = connection
        link.connection = connection
        link.remote_stream = RemoteStream(peer_id=link.peer_id)
        link.remote_description_set = False
        link.pending_remote_candidates.clear()
        await connection.add_tracks(self._local_tracks or [])
        link.local_tracks_attached = True
        for kind, enabled in self._track_enabled.items():
            connection.set_track_enabled(kind, enabled)

    async def _rebuild_connection(self, link: PeerLink) -> None:
        """Replace the connection of ``link`` with a fresh one, discarding any local offer."""

        if link.state is NegotiationState.ESTABLISHED:
            await self._notify(self._remove, link.peer_id)
        old = link.connection
        await self._close_connection(link.peer_id, old)
        link.state = NegotiationState.IDLE
        await self._connect(link)
        self._arm_watchdog(link)

    async def _shutdown(self, link: PeerLink) -> None:
        link.state = NegotiationState.CLOSED
        self._cancel_watchdog(link.peer_id)
        await self._close_connection(link.peer_id, link.connection)
        logger.info("Closed link to %s", link.peer_id)

    async def _close_connection(self, peer_id: ParticipantId, connection: Any) -> None:
        if connection is None:
            return
        try:
            await connection.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error closing connection to %s: %s", peer_id, exc)

    async def _negotiate(self, link: PeerLink, step: Callable[..., Any], *args: Any) -> None:
        try:
            await step(link, *args)
        except StaleMessage as exc:
            self._discard_stale(exc)
        except Exception as exc:
            logger.exception("Negotiation step %s failed for %s", step.__name__, link.peer_id)
            self._report_error(PeerError(link.peer_id, str(exc)))

    async def _on_local_candidate(self, peer_id: ParticipantId, connection: Any, candidate: Candidate) -> None:
        link = self._current(peer_id, connection)
        if link is None:
            return
        await self._send("candidate", candidate, peer_id)

    async def _on_remote_track(self, peer_id: ParticipantId, connection: Any, track: Any) -> None:
        link = self._current(peer_id, connection)
        if link is None or link.remote_stream is None:
            return
        link.remote_stream.tracks.append(track)

    async def _on_connection_state(self, peer_id: ParticipantId, connection: Any, state: str) -> None:
        link = self._current(peer_id, connection)
        if link is None:
            return
        if state == "failed":
            await self._fail(link, PeerError(peer_id, "transport reported permanent failure"))
            return
        if self.negotiation.handle_connection_state(link, state):
            self._cancel_watchdog(peer_id)
            await self._notify(self._render, peer_id, link.remote_stream)

    async def _on_timeout(self, peer_id: ParticipantId, connection: Any) -> None:
        link = self._current(peer_id, connection)
        if link is None or link.state is NegotiationState.ESTABLISHED:
            return
        await self._fail(
            link,
            NegotiationTimeout(peer_id, f"no established link to {peer_id} after {self._timeout:g}s"),
        )

    async def _fail(self, link: PeerLink, error: PeerError) -> None:
        peer_id = link.peer_id
        logger.warning("Link to %s failed in state %s: %s", peer_id, link.state.value, error)
        self._report_error(error)
        was_established = link.state is NegotiationState.ESTABLISHED
        self._links.pop(peer_id, None)
        await self._shutdown(link)
        if was_established:
            await self._notify(self._remove, peer_id)

        if link.attempts <= self._max_retries and peer_id in self._membership:
            logger.info("Retrying link to %s with a fresh offer", peer_id)
            retry = await self._open_link(peer_id, initiator=link.initiator, attempts=link.attempts + 1)
            await self._negotiate(retry, self.negotiation.start)
            return

        unreachable = PeerUnreachable(peer_id, f"giving up on {peer_id} after {link.attempts} attempt(s)")
        logger.error("%s", unreachable)
        await self._notify(self._on_peer_unreachable, peer_id, unreachable)

    def _arm_watchdog(self, link: PeerLink) -> None:
        self._cancel_watchdog(link.peer_id)
        self._watchdogs[link.peer_id] = asyncio.create_task(self._watch(link.peer_id, link.connection))

    async def _watch(self, peer_id: ParticipantId, connection: Any) -> None:
        await asyncio.sleep(self._timeout)
        self._watchdogs.pop(peer_id, None)
        self._post(self._on_timeout, peer_id, connection)

    def _cancel_watchdog(self, peer_id: ParticipantId) -> None:
        task = self._watchdogs.pop(peer_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _current(self, peer_id: ParticipantId, connection: Any) -> Optional[PeerLink]:
        link = self._links.get(peer_id)
        if link is None or link.closed or link.connection is not connection:
            return None
        return link

    def _post(self, handler: Callable[..., Any], *args: Any) -> None:
        if self._disposed:
            return
        self._dispatcher.post(handler, *args)

    def _discard_stale(self, error: StaleMessage) -> None:
        logger.warning("Discarding stale message: %s", error)

    def _report_error(self, error: PeerError) -> None:
        if self._on_peer_error is None:
            return
        try:
            result = self._on_peer_error(error.peer_id, error)
            if inspect.isawaitable(result):
                self._dispatcher.post(_await, result)
        except Exception:
            logger.exception("Peer error callback failed for %s", error.peer_id)

    async def _notify(self, callback: Optional[Callback], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Callback %s failed", getattr(callback, "__name__", callback))


async def _await(awaitable: Any) -> None:
    await awaitable
