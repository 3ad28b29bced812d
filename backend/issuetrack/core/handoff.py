from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..models import Issue

logger = logging.getLogger(__name__)

IssueHandler = Callable[[Issue], Awaitable[object]]


def _current_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class IssueHandoff:
    """
    Passes newly created issues to the notification policy.

    While started, issues go through an in-process queue drained by one
    worker task, so logging returns before any e-mail is sent. Before
    start() (scripts, tests) the handler is awaited inline. Issues handed
    off from another thread or event loop are queued onto the worker's loop.
    The queue is unbounded.
    """

    def __init__(self, handler: IssueHandler) -> None:
        self._handler = handler
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def __call__(self, issue: Issue) -> None:
        if self._queue is not None and self.running:
            if _current_loop() is self._loop:
                self._queue.put_nowait(issue)
            else:
                # asyncio.Queue is bound to the worker's loop and is not thread-safe
                self._loop.call_soon_threadsafe(self._queue.put_nowait, issue)
            return
        await self._handle(issue)

    async def _handle(self, issue: Issue) -> None:
        try:
            await self._handler(issue)
        except Exception:
            logger.exception("Issue hand-off failed for issue %s", issue.id)

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            issue = await self._queue.get()
            try:
                await self._handle(issue)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="issuetrack-handoff")

    async def drain(self) -> None:
        """Wait until every queued issue has been handled."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def shutdown(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        self._loop = None
