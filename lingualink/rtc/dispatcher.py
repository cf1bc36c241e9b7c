"""Single-consumer event queue on which every session handler runs."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[None]]


class EventDispatcher:
    """Run posted coroutine handlers one at a time, in posting order.

    A handler that raises is logged and the queue keeps going, so a failure on
    one peer never stalls the rest of the session.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[tuple[Handler, tuple[Any, ...]]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._closed = False
        self._worker = asyncio.create_task(self._run())

    def post(self, handler: Handler, *args: Any) -> None:
        if self._closed:
            logger.debug("Dispatcher closed; dropping %s", getattr(handler, "__name__", handler))
            return
        self._queue.put_nowait((handler, args))

    async def drain(self) -> None:
        """Wait until every posted handler, including ones posted meanwhile, has run."""

        if not self.running:
            return
        await self._queue.join()

    async def close(self) -> None:
        """Stop the worker and discard queued handlers.

        Called from a handler, the worker is left to finish that handler and
        then stops on its own.
        """

        self._closed = True
        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _run(self) -> None:
        while not self._closed:
            handler, args = await self._queue.get()
            try:
                await handler(*args)
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            except Exception:
                logger.exception("Handler %s failed", getattr(handler, "__name__", handler))
            self._queue.task_done()
