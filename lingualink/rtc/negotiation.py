"""Offer/answer/candidate exchange rules for a single peer link.

State transitions per link::

    idle --start--> offer_sent --answer--> answer_exchanged --connected--> established
    idle --offer--> offer_received --answer sent--> answer_exchanged
    any --peer-left / failure / leave--> closed

Remote candidates are queued until a remote description has been applied and
are then flushed in arrival order. Glare (an offer arriving while our own offer
is outstanding) is resolved by participant id: the greater id keeps its offer,
the other side drops its own and answers.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from ..schemas.signaling import MessageType
from .errors import StaleMessage
from .models import Candidate, NegotiationState, ParticipantId, PeerLink, is_initiator

logger = logging.getLogger(__name__)

SendMessage = Callable[[str, dict, ParticipantId], Awaitable[None]]
RebuildConnection = Callable[[PeerLink], Awaitable[None]]

_RESTARTABLE = frozenset(
    {NegotiationState.OFFER_RECEIVED, NegotiationState.ANSWER_EXCHANGED, NegotiationState.ESTABLISHED}
)


class NegotiationHandler:
    """Drive links through the negotiation state machine."""

    def __init__(self, local_id: ParticipantId, send: SendMessage, rebuild: RebuildConnection) -> None:
        self.local_id = local_id
        self._send = send
        self._rebuild = rebuild

    async def start(self, link: PeerLink) -> None:
        """Create and send an offer for an idle link."""

        self._ensure_open(link, MessageType.OFFER)
        if link.state is not NegotiationState.IDLE:
            logger.debug("Not offering to %s from state %s", link.peer_id, link.state.value)
            return

        connection = link.connection
        offer = await connection.create_offer()
        if self._superseded(link, connection):
            return
        link.state = NegotiationState.OFFER_SENT
        logger.info("Sending offer to %s", link.peer_id)
        await self._send(MessageType.OFFER.value, offer, link.peer_id)

    async def handle_offer(self, link: PeerLink, description: dict) -> None:
        self._ensure_open(link, MessageType.OFFER)

        if link.state is NegotiationState.OFFER_SENT:
            if is_initiator(self.local_id, link.peer_id):
                logger.info("Offer collision with %s: keeping local offer", link.peer_id)
                # Queued candidates belong to the connection the peer is discarding.
                link.pending_remote_candidates.clear()
                return
            logger.info("Offer collision with %s: discarding local offer", link.peer_id)
            await self._rebuild(link)
        elif link.state in _RESTARTABLE:
            logger.info("Peer %s restarted negotiation from state %s", link.peer_id, link.state.value)
            await self._rebuild(link)

        connection = link.connection
        link.state = NegotiationState.OFFER_RECEIVED
        await connection.set_remote_description(description)
        if self._superseded(link, connection):
            return
        link.remote_description_set = True
        await self._flush_candidates(link)
        if self._superseded(link, connection):
            return

        answer = await connection.create_answer()
        if self._superseded(link, connection):
            return
        link.state = NegotiationState.ANSWER_EXCHANGED
        logger.info("Sending answer to %s", link.peer_id)
        await self._send(MessageType.ANSWER.value, answer, link.peer_id)

    async def handle_answer(self, link: PeerLink, description: dict) -> None:
        self._ensure_open(link, MessageType.ANSWER)
        if link.state is not NegotiationState.OFFER_SENT:
            logger.warning(
                "Discarding answer from %s received in state %s", link.peer_id, link.state.value
            )
            return

        connection = link.connection
        await connection.set_remote_description(description)
        if self._superseded(link, connection):
            return
        link.remote_description_set = True
        link.state = NegotiationState.ANSWER_EXCHANGED
        await self._flush_candidates(link)

    async def handle_candidate(self, link: PeerLink, candidate: Candidate) -> None:
        self._ensure_open(link, MessageType.CANDIDATE)
        if not link.remote_description_set:
            link.pending_remote_candidates.append(candidate)
            return
        await self._apply_candidate(link, candidate)

    def handle_connection_state(self, link: PeerLink, state: str) -> bool:
        """Record a transport state change. Returns True when the link became established."""

        if link.closed:
            return False
        if state == "connected" and link.state is NegotiationState.ANSWER_EXCHANGED:
            link.state = NegotiationState.ESTABLISHED
            logger.info("Link to %s established", link.peer_id)
            return True
        return False

    async def _flush_candidates(self, link: PeerLink) -> None:
        connection = link.connection
        while link.pending_remote_candidates:
            candidate = link.pending_remote_candidates.popleft()
            await self._apply_candidate(link, candidate)
            if self._superseded(link, connection):
                return

    async def _apply_candidate(self, link: PeerLink, candidate: Candidate) -> None:
        try:
            await link.connection.add_candidate(candidate)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not apply candidate from %s: %s", link.peer_id, exc)

    @staticmethod
    def _superseded(link: PeerLink, connection: Any) -> bool:
        return link.closed or link.connection is not connection

    @staticmethod
    def _ensure_open(link: PeerLink, message_type: MessageType) -> None:
        if link.closed:
            raise StaleMessage(link.peer_id, f"{message_type.value} for closed link {link.peer_id}")
