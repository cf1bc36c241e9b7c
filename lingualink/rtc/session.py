"""Session façade: the one entry point the media and UI layers talk to."""
from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError
from websockets.exceptions import WebSocketException

from ..core.config import settings
from ..schemas.signaling import (
    ErrorPayload,
    JoinedPayload,
    JoinRoomPayload,
    LanguageChangePayload,
    MessageType,
    PeerInfo,
    PeerLeftPayload,
)
from .captions import CaptionPipeline
from .connection import AiortcConnectionFactory, ConnectionFactory
from .dispatcher import EventDispatcher
from .errors import AlreadyInRoom, JoinError, SessionError, TransportUnavailable
from .membership import RoomMembershipTracker
from .models import Identity, Participant, ParticipantId, PeerLink, SessionHandle
from .supervisor import PeerLinkSupervisor
from .transport import SignalingTransport, WebSocketTransport

logger = logging.getLogger(__name__)

LocalTracks = Union[Sequence[Any], Awaitable[Sequence[Any]], None]
TransportFactory = Callable[[], SignalingTransport]


def _participant(info: PeerInfo) -> Participant:
    return Participant(id=info.peer_id, display_name=info.display_name, spoken_language=info.language)


def _log_leave_failure(task: asyncio.Future[None]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Leaving after relay loss failed", exc_info=task.exception())


class Session:
    """Join a room and keep one negotiated peer link per other member.

    ``local_tracks`` passed to :meth:`join` may be the tracks themselves or an
    awaitable producing them; in the latter case links are created as soon as
    the tracks arrive.
    """

    def __init__(
        self,
        transport_factory: Optional[TransportFactory] = None,
        connection_factory: Optional[ConnectionFactory] = None,
        *,
        render_remote_stream: Optional[Callable[..., Any]] = None,
        remove_remote_stream: Optional[Callable[..., Any]] = None,
        on_peer_error: Optional[Callable[..., Any]] = None,
        on_peer_unreachable: Optional[Callable[..., Any]] = None,
        captions: Optional[CaptionPipeline] = None,
        join_timeout: Optional[float] = None,
        negotiation_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self._transport_factory = transport_factory or WebSocketTransport
        self._connection_factory = connection_factory or AiortcConnectionFactory()
        self._render = render_remote_stream
        self._remove = remove_remote_stream
        self._on_peer_error = on_peer_error
        self._on_peer_unreachable = on_peer_unreachable
        self.captions = captions
        self._join_timeout = join_timeout if join_timeout is not None else settings.join_timeout_seconds
        self._negotiation_timeout = negotiation_timeout
        self._max_retries = max_retries

        self._handle: Optional[SessionHandle] = None
        self._joining = False
        self._transport: Optional[SignalingTransport] = None
        self._dispatcher: Optional[EventDispatcher] = None
        self._membership: Optional[RoomMembershipTracker] = None
        self._supervisor: Optional[PeerLinkSupervisor] = None
        self._joined: Optional[asyncio.Future[SessionHandle]] = None
        self._pending_identity: Optional[Identity] = None
        self._local_tracks: Optional[List[Any]] = None
        self._media_task: Optional[asyncio.Task[None]] = None
        self._leave_task: Optional[asyncio.Future[None]] = None
        self._track_enabled: Dict[str, bool] = {}

    @property
    def handle(self) -> Optional[SessionHandle]:
        return self._handle

    @property
    def joined(self) -> bool:
        return self._handle is not None

    @property
    def participant_id(self) -> Optional[ParticipantId]:
        return self._handle.participant_id if self._handle else None

    @property
    def members(self) -> List[Participant]:
        return self._membership.participants() if self._membership else []

    @property
    def links(self) -> Dict[ParticipantId, PeerLink]:
        return self._supervisor.links if self._supervisor else {}

    @property
    def supervisor(self) -> Optional[PeerLinkSupervisor]:
        return self._supervisor

    async def join(
        self,
        room_id: str,
        identity: Identity,
        local_tracks: LocalTracks = None,
        *,
        participant_id: Optional[ParticipantId] = None,
    ) -> SessionHandle:
        """Join ``room_id``; raises AlreadyInRoom or TransportUnavailable.

        ``participant_id`` requests a self-generated id; the relay assigns one when omitted.
        """

        if self._handle is not None or self._joining:
            room = self._handle.room_id if self._handle else room_id
            raise AlreadyInRoom(f"session is already in room {room}")

        self._joining = True
        try:
            return await self._join(room_id, identity, local_tracks, participant_id)
        except BaseException:
            await self._teardown()
            raise
        finally:
            self._joining = False

    async def leave(self) -> None:
        """Leave the room. Safe to call at any time, any number of times."""

        if self._handle is not None:
            logger.info("Leaving room %s as %s", self._handle.room_id, self._handle.participant_id)
        await self._teardown()

    async def update_local_language(self, language: str) -> None:
        """Announce a new spoken language; links are not renegotiated."""

        if self._handle is None or self._transport is None:
            raise SessionError("not in a room")
        payload = LanguageChangePayload(language=language)
        identity = dataclasses.replace(self._handle.identity, spoken_language=language)
        self._handle = dataclasses.replace(self._handle, identity=identity)
        if self.captions is not None:
            self.captions.update_identity(identity)
        await self._transport.send(MessageType.LANGUAGE_CHANGE.value, payload.model_dump(mode="json"))

    def set_audio_enabled(self, enabled: bool) -> None:
        """Mute or unmute the microphone on every link; captions stop while muted."""

        self._set_track_enabled("audio", enabled)
        if self.captions is not None:
            self.captions.muted = not enabled

    def set_video_enabled(self, enabled: bool) -> None:
        self._set_track_enabled("video", enabled)

    async def publish_transcript(self, text: str) -> bool:
        if self.captions is None or self._handle is None:
            return False
        return await self.captions.publish_transcript(text)

    async def drain(self) -> None:
        """Wait until every queued signaling event has been handled."""

        if self._dispatcher is not None:
            await self._dispatcher.drain()

    async def _join(
        self,
        room_id: str,
        identity: Identity,
        local_tracks: LocalTracks,
        participant_id: Optional[ParticipantId],
    ) -> SessionHandle:
        loop = asyncio.get_running_loop()
        self._dispatcher = EventDispatcher()
        self._dispatcher.start()
        self._joined = loop.create_future()
        self._pending_identity = identity
        self._local_tracks = None

        transport = self._transport_factory()
        self._transport = transport
        self._register(transport)
        await transport.connect()

        if inspect.isawaitable(local_tracks):
            self._media_task = asyncio.ensure_future(self._await_media(local_tracks))
        elif local_tracks is not None:
            self._local_tracks = list(local_tracks)

        request = JoinRoomPayload(
            room_id=room_id,
            display_name=identity.display_name,
            language=identity.spoken_language,
            participant_id=participant_id,
        )
        try:
            await transport.send(MessageType.JOIN_ROOM.value, request.model_dump(mode="json", exclude_none=True))
        except (OSError, ConnectionError, WebSocketException) as exc:
            raise TransportUnavailable(f"could not send join request: {exc}") from exc

        try:
            handle = await asyncio.wait_for(asyncio.shield(self._joined), timeout=self._join_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportUnavailable(f"relay did not acknowledge join within {self._join_timeout:g}s") from exc
        logger.info("Joined room %s as %s", handle.room_id, handle.participant_id)
        return handle

    def _register(self, transport: SignalingTransport) -> None:
        routes = {
            MessageType.JOINED: self._on_joined,
            MessageType.ERROR: self._on_error,
            MessageType.PEER_JOINED: self._on_peer_joined,
            MessageType.PEER_UPDATED: self._on_peer_updated,
            MessageType.PEER_LEFT: self._on_peer_left,
            MessageType.OFFER: self._on_offer,
            MessageType.ANSWER: self._on_answer,
            MessageType.CANDIDATE: self._on_candidate,
            MessageType.RECEIVE_SPEAK_DATA: self._on_speech,
        }
        for message_type, handler in routes.items():
            transport.on(message_type.value, self._enqueue(handler))
        transport.on_close(self._on_transport_closed)

    def _enqueue(self, handler: Callable[[Any, Optional[str]], Awaitable[None]]):
        dispatcher = self._dispatcher

        async def post(payload: Any, sender: Optional[str]) -> None:
            dispatcher.post(self._guarded, handler, payload, sender)

        return post

    async def _guarded(self, handler: Callable[[Any, Optional[str]], Awaitable[None]], payload: Any, sender: Optional[str]) -> None:
        try:
            await handler(payload, sender)
        except ValidationError as exc:
            logger.warning("Ignoring malformed %s payload from %s: %s", handler.__name__, sender, exc)

    async def _on_joined(self, payload: Any, sender: Optional[str]) -> None:
        if self._joined is None or self._joined.done():
            logger.warning("Unexpected join acknowledgement")
            return
        joined = JoinedPayload.model_validate(payload)
        identity = self._pending_identity or Identity(display_name="")

        membership = RoomMembershipTracker(joined.room_id)
        supervisor = PeerLinkSupervisor(
            joined.participant_id,
            membership,
            self._send_routed,
            self._connection_factory,
            self._dispatcher,
            local_tracks=self._local_tracks,
            media_pending=self._media_task is not None and not self._media_task.done(),
            render_remote_stream=self._render,
            remove_remote_stream=self._remove,
            on_peer_error=self._on_peer_error,
            on_peer_unreachable=self._on_peer_unreachable,
            negotiation_timeout=self._negotiation_timeout,
            max_retries=self._max_retries,
        )
        for kind, enabled in self._track_enabled.items():
            supervisor.set_track_enabled(kind, enabled)
        self._membership = membership
        self._supervisor = supervisor
        self._handle = SessionHandle(room_id=joined.room_id, participant_id=joined.participant_id, identity=identity)
        if self.captions is not None:
            self.captions.bind(self._send_broadcast, joined.room_id, identity)

        await membership.load_snapshot(_participant(info) for info in joined.participants)
        self._joined.set_result(self._handle)

    async def _on_error(self, payload: Any, sender: Optional[str]) -> None:
        error = ErrorPayload.model_validate(payload)
        if self._joined is not None and not self._joined.done():
            self._joined.set_exception(JoinError(f"relay refused join: {error.code.value} {error.detail}".strip()))
            return
        logger.warning("Relay reported %s: %s", error.code.value, error.detail)

    async def _on_peer_joined(self, payload: Any, sender: Optional[str]) -> None:
        if self._membership is None:
            return
        await self._membership.add(_participant(PeerInfo.model_validate(payload)))

    async def _on_peer_updated(self, payload: Any, sender: Optional[str]) -> None:
        if self._membership is None:
            return
        await self._membership.update(_participant(PeerInfo.model_validate(payload)))

    async def _on_peer_left(self, payload: Any, sender: Optional[str]) -> None:
        if self._membership is None:
            return
        await self._membership.remove(PeerLeftPayload.model_validate(payload).peer_id)

    async def _on_offer(self, payload: Any, sender: Optional[str]) -> None:
        if self._supervisor is None or not sender:
            return
        await self._supervisor.handle_offer(sender, payload)

    async def _on_answer(self, payload: Any, sender: Optional[str]) -> None:
        if self._supervisor is None or not sender:
            return
        await self._supervisor.handle_answer(sender, payload)

    async def _on_candidate(self, payload: Any, sender: Optional[str]) -> None:
        if self._supervisor is None or not sender:
            return
        await self._supervisor.handle_candidate(sender, payload)

    async def _on_speech(self, payload: Any, sender: Optional[str]) -> None:
        if self.captions is None:
            return
        await self.captions.handle_speech(payload, sender)

    async def _on_transport_closed(self) -> None:
        if self._handle is None:
            return
        logger.error("Lost connection to the relay; closing room %s", self._handle.room_id)
        self._leave_task = asyncio.ensure_future(self.leave())
        self._leave_task.add_done_callback(_log_leave_failure)

    async def _send_routed(self, type: str, payload: dict, target: ParticipantId) -> None:
        if self._transport is None:
            return
        await self._transport.send(type, payload, target)

    async def _send_broadcast(self, type: str, payload: Any) -> None:
        if self._transport is None:
            return
        await self._transport.send(type, payload)

    async def _await_media(self, pending: Awaitable[Sequence[Any]]) -> None:
        try:
            tracks = list(await pending)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Local media could not be acquired")
            if self._supervisor is not None and self._dispatcher is not None:
                self._dispatcher.post(self._cancel_media)
            return
        self._local_tracks = tracks
        if self._supervisor is not None and self._dispatcher is not None:
            self._dispatcher.post(self._supervisor.attach_local_tracks, tracks)

    async def _cancel_media(self) -> None:
        if self._supervisor is not None:
            self._supervisor.cancel_media()

    def _set_track_enabled(self, kind: str, enabled: bool) -> None:
        self._track_enabled[kind] = enabled
        if self._supervisor is not None:
            self._supervisor.set_track_enabled(kind, enabled)

    async def _teardown(self) -> None:
        dispatcher, self._dispatcher = self._dispatcher, None
        supervisor, self._supervisor = self._supervisor, None
        transport, self._transport = self._transport, None
        media_task, self._media_task = self._media_task, None
        joined, self._joined = self._joined, None

        if dispatcher is not None:
            await dispatcher.close()
        if media_task is not None and not media_task.done():
            media_task.cancel()
            with suppress(asyncio.CancelledError):
                await media_task
        if supervisor is not None:
            await supervisor.dispose()
        if self.captions is not None:
            await self.captions.unbind()
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Error closing signaling transport: %s", exc)
        if joined is not None and not joined.done():
            joined.cancel()
        if self._membership is not None:
            self._membership.clear()
        self._membership = None
        self._handle = None
        self._pending_identity = None
