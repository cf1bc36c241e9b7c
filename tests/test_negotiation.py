"""Tests for the per-link negotiation state machine."""
from __future__ import annotations

import pytest

from lingualink.rtc.connection import ConnectionEvents
from lingualink.rtc.errors import StaleMessage
from lingualink.rtc.models import NegotiationState, PeerLink
from lingualink.rtc.negotiation import NegotiationHandler

from .fakes import FakeConnectionFactory

OFFER = {"type": "offer", "sdp": "remote offer"}
ANSWER = {"type": "answer", "sdp": "remote answer"}


def _candidate(index: int) -> dict:
    return {"candidate": f"candidate:{index}", "sdpMid": "0", "sdpMLineIndex": 0}


class Harness:
    def __init__(self, local_id: str, peer_id: str, *, initiator: bool) -> None:
        self.factory = FakeConnectionFactory(local_id, auto_connect=False, gather=False)
        self.sent: list[tuple[str, dict, str]] = []
        self.rebuilds = 0
        self.handler = NegotiationHandler(local_id, self._send, self._rebuild)
        self.link = PeerLink(peer_id=peer_id, initiator=initiator)
        self.link.connection = self._connect(peer_id)

    def _connect(self, peer_id: str):
        events = ConnectionEvents(on_track=lambda t: None, on_candidate=lambda c: None, on_state=lambda s: None)
        return self.factory(peer_id, events)

    async def _send(self, type: str, payload: dict, target: str) -> None:
        self.sent.append((type, payload, target))

    async def _rebuild(self, link: PeerLink) -> None:
        self.rebuilds += 1
        await link.connection.close()
        link.connection = self._connect(link.peer_id)
        link.remote_description_set = False
        link.pending_remote_candidates.clear()
        link.state = NegotiationState.IDLE


@pytest.mark.asyncio
async def test_initiator_offer_answer_path():
    harness = Harness("2", "1", initiator=True)

    await harness.handler.start(harness.link)
    assert harness.link.state is NegotiationState.OFFER_SENT
    assert [(t, target) for t, _, target in harness.sent] == [("offer", "1")]

    await harness.handler.handle_answer(harness.link, ANSWER)
    assert harness.link.state is NegotiationState.ANSWER_EXCHANGED
    assert harness.link.remote_description_set

    assert harness.handler.handle_connection_state(harness.link, "connected") is True
    assert harness.link.state is NegotiationState.ESTABLISHED
    assert harness.handler.handle_connection_state(harness.link, "connected") is False


@pytest.mark.asyncio
async def test_responder_answers_offer():
    harness = Harness("1", "2", initiator=False)

    await harness.handler.handle_offer(harness.link, OFFER)

    assert harness.link.state is NegotiationState.ANSWER_EXCHANGED
    assert harness.link.connection.remote == OFFER
    assert [(t, target) for t, _, target in harness.sent] == [("answer", "2")]
    assert harness.sent[0][1]["type"] == "answer"


@pytest.mark.asyncio
async def test_early_candidates_flush_in_arrival_order_exactly_once():
    harness = Harness("1", "2", initiator=False)

    await harness.handler.handle_candidate(harness.link, _candidate(1))
    await harness.handler.handle_candidate(harness.link, _candidate(2))
    assert harness.link.connection.applied == []
    assert list(harness.link.pending_remote_candidates) == [_candidate(1), _candidate(2)]

    await harness.handler.handle_offer(harness.link, OFFER)
    await harness.handler.handle_candidate(harness.link, _candidate(3))

    assert harness.link.connection.applied == [_candidate(1), _candidate(2), _candidate(3)]
    assert not harness.link.pending_remote_candidates


@pytest.mark.asyncio
async def test_candidates_wait_for_the_answer_on_the_offering_side():
    harness = Harness("2", "1", initiator=True)

    await harness.handler.start(harness.link)
    await harness.handler.handle_candidate(harness.link, _candidate(1))
    assert harness.link.connection.applied == []

    await harness.handler.handle_answer(harness.link, ANSWER)

    assert harness.link.connection.applied == [_candidate(1)]


@pytest.mark.asyncio
async def test_glare_winner_keeps_its_offer():
    harness = Harness("2", "1", initiator=True)
    await harness.handler.start(harness.link)
    connection = harness.link.connection

    await harness.handler.handle_offer(harness.link, OFFER)

    assert harness.link.state is NegotiationState.OFFER_SENT
    assert harness.link.connection is connection
    assert connection.remote is None
    assert [t for t, _, _ in harness.sent] == ["offer"]


@pytest.mark.asyncio
async def test_glare_winner_drops_candidates_of_the_discarded_offer():
    harness = Harness("2", "1", initiator=True)
    await harness.handler.start(harness.link)

    await harness.handler.handle_candidate(harness.link, _candidate(1))
    await harness.handler.handle_offer(harness.link, OFFER)
    assert not harness.link.pending_remote_candidates

    await harness.handler.handle_answer(harness.link, ANSWER)
    await harness.handler.handle_candidate(harness.link, _candidate(2))

    assert harness.link.connection.applied == [_candidate(2)]


@pytest.mark.asyncio
async def test_glare_loser_discards_its_offer_and_answers():
    harness = Harness("1", "2", initiator=False)
    await harness.handler.start(harness.link)
    stale_connection = harness.link.connection

    await harness.handler.handle_offer(harness.link, OFFER)

    assert harness.rebuilds == 1
    assert stale_connection.closed
    assert harness.link.connection is not stale_connection
    assert harness.link.state is NegotiationState.ANSWER_EXCHANGED
    assert [t for t, _, _ in harness.sent] == ["offer", "answer"]


@pytest.mark.asyncio
async def test_offer_on_established_link_restarts_negotiation():
    harness = Harness("1", "2", initiator=False)
    await harness.handler.handle_offer(harness.link, OFFER)
    harness.handler.handle_connection_state(harness.link, "connected")

    await harness.handler.handle_offer(harness.link, {"type": "offer", "sdp": "restart"})

    assert harness.rebuilds == 1
    assert harness.link.state is NegotiationState.ANSWER_EXCHANGED
    assert harness.link.connection.remote["sdp"] == "restart"


@pytest.mark.asyncio
async def test_unexpected_answer_is_discarded():
    harness = Harness("1", "2", initiator=False)

    await harness.handler.handle_answer(harness.link, ANSWER)

    assert harness.link.state is NegotiationState.IDLE
    assert harness.link.connection.remote is None


@pytest.mark.asyncio
async def test_messages_for_closed_link_are_stale():
    harness = Harness("1", "2", initiator=False)
    harness.link.state = NegotiationState.CLOSED

    with pytest.raises(StaleMessage):
        await harness.handler.handle_offer(harness.link, OFFER)
    with pytest.raises(StaleMessage):
        await harness.handler.handle_candidate(harness.link, _candidate(1))

    assert harness.sent == []
    assert harness.handler.handle_connection_state(harness.link, "connected") is False


@pytest.mark.asyncio
async def test_link_closed_while_offer_is_created_sends_nothing():
    harness = Harness("2", "1", initiator=True)
    connection = harness.link.connection
    create_offer = connection.create_offer

    async def closing_offer() -> dict:
        offer = await create_offer()
        harness.link.state = NegotiationState.CLOSED
        return offer

    connection.create_offer = closing_offer

    await harness.handler.start(harness.link)

    assert harness.sent == []
    assert harness.link.state is NegotiationState.CLOSED
