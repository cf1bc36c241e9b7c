"""In-memory signaling relay: room presence plus point-to-point message routing."""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Set

from pydantic import ValidationError

from ..schemas.signaling import (
    ROUTED_TYPES,
    Envelope,
    ErrorCode,
    ErrorPayload,
    JoinedPayload,
    JoinRoomPayload,
    LanguageChangePayload,
    MessageType,
    PeerInfo,
    PeerLeftPayload,
    ReceiveSpeakDataPayload,
    SpeakDataPayload,
)

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


class ParticipantIdTaken(ValueError):
    """Raised when a requested participant id is present in the room or has already left it."""


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    send: SendCallable
    participant_id: str | None = None
    room: str | None = None
    display_name: str = ""
    language: str = "en-US"

    def info(self) -> PeerInfo:
        return PeerInfo(
            peer_id=self.participant_id or "",
            display_name=self.display_name,
            language=self.language,
        )


def _frame(message_type: MessageType, payload: Any, *, sender: str | None = None) -> dict:
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    envelope = Envelope(type=message_type.value, payload=payload, sender=sender)
    return envelope.model_dump(mode="json", exclude_none=True)


class SignalingManager:
    """Manage signaling rooms and route messages between participants."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Dict[str, SignalingConnection]] = {}
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        # Ids that left a room are never handed out there again.
        self._departed: Dict[str, Set[str]] = {}

    async def join(self, room: str, connection: SignalingConnection) -> list[PeerInfo]:
        """Register a connection with the room and return the existing participants."""

        async with self._lock:
            participants = self._rooms.get(room, {})
            departed = self._departed.get(room, set())
            if connection.participant_id is None:
                candidate = str(next(self._sequence))
                while candidate in participants or candidate in departed:
                    candidate = str(next(self._sequence))
                connection.participant_id = candidate
            elif connection.participant_id in participants or connection.participant_id in departed:
                raise ParticipantIdTaken(connection.participant_id)
            existing = [peer.info() for peer in participants.values()]
            participants[connection.participant_id] = connection
            self._rooms[room] = participants
            connection.room = room
            return existing

    async def leave(self, room: str, participant_id: str) -> bool:
        """Remove a participant from the room, cleaning up empty rooms."""

        async with self._lock:
            participants = self._rooms.get(room)
            if not participants:
                return False
            removed = participants.pop(participant_id, None)
            if removed is not None:
                self._departed.setdefault(room, set()).add(participant_id)
            if not participants:
                self._rooms.pop(room, None)
            return removed is not None

    async def snapshot(self, room: str) -> list[PeerInfo]:
        async with self._lock:
            return [peer.info() for peer in self._rooms.get(room, {}).values()]

    async def broadcast(self, room: str, sender_id: str | None, message: dict) -> None:
        """Send a message to all participants in the room except the sender."""

        async with self._lock:
            participants = list(self._rooms.get(room, {}).values())

        if not participants:
            return

        tasks = [connection.send(message) for connection in participants if connection.participant_id != sender_id]
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning("Broadcast delivery failed in room %s: %s", room, result)

    async def send_to(self, room: str, target_id: str, message: dict) -> bool:
        """Deliver a message to a single participant. Returns False when the target is absent."""

        async with self._lock:
            connection = self._rooms.get(room, {}).get(target_id)

        if connection is None:
            return False
        await connection.send(message)
        return True

    async def handle(self, connection: SignalingConnection, raw: object) -> None:
        """Apply one inbound client message on behalf of ``connection``."""

        try:
            envelope = Envelope.model_validate(raw)
        except ValidationError as exc:
            await self._reject(connection, ErrorCode.INVALID_MESSAGE, str(exc.errors()[0].get("msg", "")))
            return

        try:
            message_type = MessageType(envelope.type)
        except ValueError:
            await self._reject(connection, ErrorCode.INVALID_MESSAGE, f"unsupported type {envelope.type!r}")
            return

        if message_type is MessageType.JOIN_ROOM:
            await self._handle_join(connection, envelope)
            return

        if connection.room is None or connection.participant_id is None:
            await self._reject(connection, ErrorCode.NOT_JOINED, "join a room first")
            return

        try:
            if message_type in ROUTED_TYPES:
                await self._route(connection, message_type, envelope)
            elif message_type is MessageType.SPEAK_DATA:
                await self._relay_speech(connection, envelope)
            elif message_type is MessageType.LANGUAGE_CHANGE:
                await self._change_language(connection, envelope)
            else:
                await self._reject(connection, ErrorCode.INVALID_MESSAGE, f"{message_type.value} is relay-only")
        except ValidationError as exc:
            await self._reject(connection, ErrorCode.INVALID_MESSAGE, str(exc.errors()[0].get("msg", "")))

    async def disconnect(self, connection: SignalingConnection) -> None:
        """Drop a connection and announce the departure to the rest of the room."""

        room, participant_id = connection.room, connection.participant_id
        if room is None or participant_id is None:
            return
        connection.room = None
        if await self.leave(room, participant_id):
            logger.info("Participant %s left room %s", participant_id, room)
            await self.broadcast(
                room,
                participant_id,
                _frame(MessageType.PEER_LEFT, PeerLeftPayload(peer_id=participant_id)),
            )

    async def _handle_join(self, connection: SignalingConnection, envelope: Envelope) -> None:
        if connection.room is not None:
            await self._reject(connection, ErrorCode.ALREADY_JOINED, f"already in room {connection.room}")
            return
        try:
            payload = JoinRoomPayload.model_validate(envelope.payload)
        except ValidationError as exc:
            await self._reject(connection, ErrorCode.INVALID_MESSAGE, str(exc.errors()[0].get("msg", "")))
            return

        connection.participant_id = payload.participant_id
        connection.display_name = payload.display_name
        connection.language = payload.language
        try:
            existing = await self.join(payload.room_id, connection)
        except ParticipantIdTaken:
            connection.participant_id = None
            await self._reject(connection, ErrorCode.ID_TAKEN, f"participant id {payload.participant_id} is taken")
            return

        logger.info(
            "Participant %s joined room %s (%d already present)",
            connection.participant_id,
            payload.room_id,
            len(existing),
        )
        await connection.send(
            _frame(
                MessageType.JOINED,
                JoinedPayload(
                    participant_id=connection.participant_id,
                    room_id=payload.room_id,
                    participants=existing,
                ),
            )
        )
        if existing:
            await self.broadcast(
                payload.room_id,
                connection.participant_id,
                _frame(MessageType.PEER_JOINED, connection.info()),
            )

    async def _route(self, connection: SignalingConnection, message_type: MessageType, envelope: Envelope) -> None:
        if not envelope.target:
            await self._reject(connection, ErrorCode.INVALID_MESSAGE, f"{message_type.value} requires a target")
            return
        # The sender is always stamped here; a client supplied value is never trusted.
        message = _frame(message_type, envelope.payload, sender=connection.participant_id)
        delivered = await self.send_to(connection.room, envelope.target, message)
        if not delivered:
            logger.debug(
                "Dropping %s from %s: target %s not in room %s",
                message_type.value,
                connection.participant_id,
                envelope.target,
                connection.room,
            )
            await self._reject(connection, ErrorCode.UNKNOWN_TARGET, envelope.target)

    async def _relay_speech(self, connection: SignalingConnection, envelope: Envelope) -> None:
        payload = SpeakDataPayload.model_validate(envelope.payload)
        outbound = ReceiveSpeakDataPayload(
            text=payload.text,
            source_lang=payload.source_lang,
            identity=payload.identity or connection.display_name,
        )
        await self.broadcast(
            connection.room,
            connection.participant_id,
            _frame(MessageType.RECEIVE_SPEAK_DATA, outbound, sender=connection.participant_id),
        )

    async def _change_language(self, connection: SignalingConnection, envelope: Envelope) -> None:
        payload = LanguageChangePayload.model_validate(envelope.payload)
        connection.language = payload.language
        await self.broadcast(
            connection.room,
            connection.participant_id,
            _frame(MessageType.PEER_UPDATED, connection.info()),
        )

    async def _reject(self, connection: SignalingConnection, code: ErrorCode, detail: str) -> None:
        logger.debug("Rejecting message from %s: %s %s", connection.participant_id, code.value, detail)
        await connection.send(_frame(MessageType.ERROR, ErrorPayload(code=code, detail=detail)))


manager = SignalingManager()
