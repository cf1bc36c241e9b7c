"""Client side of the signaling channel."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.config import settings
from ..schemas.signaling import Envelope
from ..services.signaling import SignalingConnection, SignalingManager
from .errors import TransportUnavailable

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any, Optional[str]], Awaitable[None]]
CloseHandler = Callable[[], Awaitable[None]]


class SignalingTransport(Protocol):
    async def connect(self) -> None: ...

    async def send(self, type: str, payload: Any, target: Optional[str] = None) -> None: ...

    def on(self, type: str, handler: MessageHandler) -> None: ...

    def on_close(self, handler: CloseHandler) -> None: ...

    async def close(self) -> None: ...


class _HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._close_handlers: List[CloseHandler] = []

    def on(self, type: str, handler: MessageHandler) -> None:
        self._handlers.setdefault(type, []).append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    async def _deliver(self, envelope: Envelope) -> None:
        handlers = self._handlers.get(envelope.type)
        if not handlers:
            logger.debug("No handler for %s message", envelope.type)
            return
        for handler in list(handlers):
            await handler(envelope.payload, envelope.sender)

    async def _closed(self) -> None:
        for handler in list(self._close_handlers):
            try:
                await handler()
            except Exception:
                logger.exception("Transport close handler failed")


def _frame(type: str, payload: Any, target: Optional[str]) -> dict:
    return Envelope(type=type, payload=payload, target=target).model_dump(mode="json", exclude_none=True)


class WebSocketTransport(_HandlerRegistry):
    """Signaling over a websocket connection to the relay."""

    def __init__(self, url: Optional[str] = None, *, open_timeout: Optional[float] = None) -> None:
        super().__init__()
        self.url = url or settings.relay_url
        self._open_timeout = open_timeout if open_timeout is not None else settings.join_timeout_seconds
        self._ws: Any = None
        self._receive_task: asyncio.Task[None] | None = None
        self._closing = False

    async def connect(self) -> None:
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self._open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportUnavailable(f"relay at {self.url} is unreachable: {exc}") from exc
        logger.info("Connected to relay %s", self.url)
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def send(self, type: str, payload: Any, target: Optional[str] = None) -> None:
        if self._ws is None:
            raise TransportUnavailable("signaling transport is not connected")
        await self._ws.send(json.dumps(_frame(type, payload, target)))

    async def close(self) -> None:
        self._closing = True
        if self._receive_task:
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
            self._receive_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    envelope = Envelope.model_validate_json(message)
                except ValidationError:
                    logger.warning("Ignoring malformed relay message: %.200s", message)
                    continue
                await self._deliver(envelope)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            logger.warning("Relay connection closed: %s", exc)
        if not self._closing:
            await self._closed()


class InProcessTransport(_HandlerRegistry):
    """Signaling against a :class:`SignalingManager` living in the same process."""

    def __init__(self, manager: SignalingManager) -> None:
        super().__init__()
        self._manager = manager
        self._connection: Optional[SignalingConnection] = None

    async def connect(self) -> None:
        self._connection = SignalingConnection(send=self._receive)

    async def send(self, type: str, payload: Any, target: Optional[str] = None) -> None:
        if self._connection is None:
            raise TransportUnavailable("signaling transport is not connected")
        await self._manager.handle(self._connection, _frame(type, payload, target))

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await self._manager.disconnect(connection)

    async def _receive(self, message: dict) -> None:
        if self._connection is None:
            return
        await self._deliver(Envelope.model_validate(message))
