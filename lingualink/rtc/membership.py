"""Local view of who else is in the room."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .models import Participant, ParticipantId

logger = logging.getLogger(__name__)

MemberListener = Callable[[Participant], Awaitable[None]]


class RoomMembershipTracker:
    """Maintain the member set from relay presence events.

    Duplicate joins never re-announce a member and departures of unknown ids are
    ignored. Ids are not reused within a session, so a departed id is never
    admitted again.
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self._members: Dict[ParticipantId, Participant] = {}
        self._departed: Set[ParticipantId] = set()
        self._added: List[MemberListener] = []
        self._removed: List[MemberListener] = []
        self._updated: List[MemberListener] = []

    def on_member_added(self, listener: MemberListener) -> None:
        self._added.append(listener)

    def on_member_removed(self, listener: MemberListener) -> None:
        self._removed.append(listener)

    def on_member_updated(self, listener: MemberListener) -> None:
        self._updated.append(listener)

    def current_members(self) -> Set[ParticipantId]:
        return set(self._members)

    def participants(self) -> List[Participant]:
        return list(self._members.values())

    def get(self, participant_id: ParticipantId) -> Optional[Participant]:
        return self._members.get(participant_id)

    def has_departed(self, participant_id: ParticipantId) -> bool:
        return participant_id in self._departed

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._members

    def __len__(self) -> int:
        return len(self._members)

    async def load_snapshot(self, participants: Iterable[Participant]) -> None:
        """Apply the member list received with the join acknowledgement."""

        for participant in participants:
            await self.add(participant)

    async def add(self, participant: Participant) -> bool:
        """Handle ``peer-joined``. Returns True when the member is new."""

        if participant.id in self._departed:
            logger.warning("Ignoring join for departed participant %s", participant.id)
            return False

        known = self._members.get(participant.id)
        if known is not None:
            if self._merge(known, participant):
                await self._emit(self._updated, known)
            return False

        self._members[participant.id] = participant
        logger.info("Member %s joined room %s", participant.id, self.room_id)
        await self._emit(self._added, participant)
        return True

    async def update(self, participant: Participant) -> bool:
        """Handle ``peer-updated``; unknown ids are treated as joins."""

        known = self._members.get(participant.id)
        if known is None:
            return await self.add(participant)
        if self._merge(known, participant):
            await self._emit(self._updated, known)
            return True
        return False

    async def remove(self, participant_id: ParticipantId) -> bool:
        """Handle ``peer-left``. Returns False for ids that are not members."""

        participant = self._members.pop(participant_id, None)
        if participant is None:
            logger.debug("Ignoring departure of unknown participant %s", participant_id)
            return False

        self._departed.add(participant_id)
        logger.info("Member %s left room %s", participant_id, self.room_id)
        await self._emit(self._removed, participant)
        return True

    def clear(self) -> None:
        """Drop every member without notifying listeners."""

        self._departed.update(self._members)
        self._members.clear()

    @staticmethod
    def _merge(known: Participant, incoming: Participant) -> bool:
        changed = False
        if incoming.display_name and incoming.display_name != known.display_name:
            known.display_name = incoming.display_name
            changed = True
        if incoming.spoken_language and incoming.spoken_language != known.spoken_language:
            known.spoken_language = incoming.spoken_language
            changed = True
        return changed

    async def _emit(self, listeners: List[MemberListener], participant: Participant) -> None:
        for listener in list(listeners):
            try:
                await listener(participant)
            except Exception:
                logger.exception("Membership listener failed for participant %s", participant.id)
