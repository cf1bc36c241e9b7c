"""Tests for signaling manager and websocket endpoint."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from lingualink.main import app
from lingualink.services.signaling import SignalingConnection, SignalingManager


class DummyConnection:
    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.connection = SignalingConnection(send=self.send)

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def of_type(self, message_type: str) -> list[dict]:
        return [message for message in self.messages if message["type"] == message_type]


def _join(room: str = "R1", name: str = "", language: str = "en-US", participant_id: str | None = None) -> dict:
    payload = {"room_id": room, "display_name": name, "language": language}
    if participant_id is not None:
        payload["participant_id"] = participant_id
    return {"type": "join-room", "payload": payload}


async def _joined_pair(manager: SignalingManager) -> tuple[DummyConnection, DummyConnection]:
    ana, bo = DummyConnection(), DummyConnection()
    await manager.handle(ana.connection, _join(name="Ana", language="es-ES"))
    await manager.handle(bo.connection, _join(name="Bo"))
    return ana, bo


@pytest.mark.asyncio
async def test_join_assigns_ids_and_announces_presence():
    manager = SignalingManager()
    ana, bo = await _joined_pair(manager)

    assert ana.messages[0] == {
        "type": "joined",
        "payload": {"participant_id": "1", "room_id": "R1", "participants": []},
    }
    assert bo.of_type("joined")[0]["payload"]["participants"] == [
        {"peer_id": "1", "display_name": "Ana", "language": "es-ES"}
    ]
    assert ana.of_type("peer-joined") == [
        {"type": "peer-joined", "payload": {"peer_id": "2", "display_name": "Bo", "language": "en-US"}}
    ]
    assert bo.of_type("peer-joined") == []


@pytest.mark.asyncio
async def test_requested_id_is_honoured_unless_taken():
    manager = SignalingManager()
    first, second = DummyConnection(), DummyConnection()

    await manager.handle(first.connection, _join(participant_id="alpha"))
    await manager.handle(second.connection, _join(participant_id="alpha"))

    assert first.connection.participant_id == "alpha"
    assert second.of_type("error")[0]["payload"]["code"] == "id-taken"
    assert second.connection.participant_id is None
    assert second.connection.room is None
    assert [peer.peer_id for peer in await manager.snapshot("R1")] == ["alpha"]


@pytest.mark.asyncio
async def test_routed_messages_are_stamped_with_the_real_sender():
    manager = SignalingManager()
    ana, bo = await _joined_pair(manager)

    await manager.handle(
        bo.connection,
        {"type": "offer", "payload": {"type": "offer", "sdp": "v=0"}, "target": "1", "sender": "99"},
    )

    assert ana.of_type("offer") == [
        {"type": "offer", "payload": {"type": "offer", "sdp": "v=0"}, "sender": "2"}
    ]
    assert bo.of_type("offer") == []


@pytest.mark.asyncio
async def test_routing_errors_go_back_to_the_sender():
    manager = SignalingManager()
    ana, bo = await _joined_pair(manager)

    await manager.handle(bo.connection, {"type": "candidate", "payload": {}, "target": "42"})
    await manager.handle(bo.connection, {"type": "answer", "payload": {}})

    codes = [message["payload"]["code"] for message in bo.of_type("error")]
    assert codes == ["unknown-target", "invalid-message"]
    assert ana.of_type("error") == []


@pytest.mark.asyncio
async def test_invalid_and_premature_messages_are_rejected():
    manager = SignalingManager()
    stranger = DummyConnection()

    await manager.handle(stranger.connection, None)
    await manager.handle(stranger.connection, {"type": "bogus"})
    await manager.handle(stranger.connection, {"type": "offer", "payload": {}, "target": "1"})
    await manager.handle(stranger.connection, {"type": "join-room", "payload": {"room_id": ""}})

    codes = [message["payload"]["code"] for message in stranger.of_type("error")]
    assert codes == ["invalid-message", "invalid-message", "not-joined", "invalid-message"]

    await manager.handle(stranger.connection, _join())
    await manager.handle(stranger.connection, _join(room="R2"))
    assert stranger.of_type("error")[-1]["payload"]["code"] == "already-joined"


@pytest.mark.asyncio
async def test_speech_is_relayed_to_everybody_else():
    manager = SignalingManager()
    ana, bo = await _joined_pair(manager)
    cy = DummyConnection()
    await manager.handle(cy.connection, _join(name="Cy"))

    await manager.handle(
        ana.connection,
        {"type": "speak-data", "payload": {"room_id": "R1", "text": "hola", "source_lang": "es-ES"}},
    )

    expected = {
        "type": "receive-speak-data",
        "payload": {"text": "hola", "source_lang": "es-ES", "identity": "Ana"},
        "sender": "1",
    }
    assert bo.of_type("receive-speak-data") == [expected]
    assert cy.of_type("receive-speak-data") == [expected]
    assert ana.of_type("receive-speak-data") == []


@pytest.mark.asyncio
async def test_language_change_is_broadcast_as_peer_update():
    manager = SignalingManager()
    ana, bo = await _joined_pair(manager)

    await manager.handle(bo.connection, {"type": "language-change", "payload": {"language": "fr-FR"}})

    assert ana.of_type("peer-updated") == [
        {"type": "peer-updated", "payload": {"peer_id": "2", "display_name": "Bo", "language": "fr-FR"}}
    ]
    assert [peer.language for peer in await manager.snapshot("R1")] == ["es-ES", "fr-FR"]


@pytest.mark.asyncio
async def test_disconnect_announces_departure_and_ids_are_not_reused():
    manager = SignalingManager()
    ana, bo = await _joined_pair(manager)

    await manager.disconnect(bo.connection)
    await manager.disconnect(bo.connection)

    assert ana.of_type("peer-left") == [{"type": "peer-left", "payload": {"peer_id": "2"}}]

    late = DummyConnection()
    await manager.handle(late.connection, _join())
    assert late.connection.participant_id == "3"

    await manager.disconnect(ana.connection)
    await manager.disconnect(late.connection)
    assert await manager.snapshot("R1") == []


@pytest.mark.asyncio
async def test_departed_ids_cannot_rejoin_the_room():
    manager = SignalingManager()
    bo = DummyConnection()
    await manager.handle(bo.connection, _join(name="Bo"))
    ana = DummyConnection()
    await manager.handle(ana.connection, _join(name="Ana", participant_id="2"))
    await manager.disconnect(ana.connection)

    again = DummyConnection()
    await manager.handle(again.connection, _join(name="Ana", participant_id="2"))

    assert again.of_type("error")[0]["payload"]["code"] == "id-taken"
    assert again.connection.participant_id is None
    assert bo.of_type("peer-joined") == [
        {"type": "peer-joined", "payload": {"peer_id": "2", "display_name": "Ana", "language": "en-US"}}
    ]

    assigned = DummyConnection()
    await manager.handle(assigned.connection, _join(name="Cy"))
    assert assigned.connection.participant_id == "3"

    await manager.disconnect(bo.connection)
    await manager.disconnect(assigned.connection)
    assert await manager.snapshot("R1") == []

    await manager.handle(again.connection, _join(participant_id="1"))
    assert [message["payload"]["code"] for message in again.of_type("error")] == ["id-taken", "id-taken"]
    assert await manager.snapshot("R1") == []

    elsewhere = DummyConnection()
    await manager.handle(elsewhere.connection, _join(room="R2", participant_id="2"))
    assert elsewhere.connection.participant_id == "2"


def test_signaling_websocket_relay():
    client = TestClient(app)

    with client.websocket_connect("/api/rtc/signaling") as ws_a:
        ws_a.send_json(_join(room="ws-room", name="Ana"))
        joined_a = ws_a.receive_json()
        assert joined_a["type"] == "joined"
        assert joined_a["payload"]["participants"] == []
        id_a = joined_a["payload"]["participant_id"]

        with client.websocket_connect("/api/rtc/signaling") as ws_b:
            ws_b.send_json(_join(room="ws-room", name="Bo"))
            joined_b = ws_b.receive_json()
            id_b = joined_b["payload"]["participant_id"]
            assert [peer["peer_id"] for peer in joined_b["payload"]["participants"]] == [id_a]

            notice = ws_a.receive_json()
            assert notice == {
                "type": "peer-joined",
                "payload": {"peer_id": id_b, "display_name": "Bo", "language": "en-US"},
            }

            presence = client.get("/api/rtc/rooms/ws-room")
            assert presence.status_code == 200
            assert [peer["peer_id"] for peer in presence.json()["participants"]] == [id_a, id_b]

            ws_b.send_json({"type": "offer", "payload": {"sdp": "hello"}, "target": id_a})
            forwarded = ws_a.receive_json()
            assert forwarded == {"type": "offer", "payload": {"sdp": "hello"}, "sender": id_b}

            ws_b.send_text("not json")
            assert ws_b.receive_json()["payload"]["code"] == "invalid-message"

        left_notice = ws_a.receive_json()
        assert left_notice == {"type": "peer-left", "payload": {"peer_id": id_b}}
