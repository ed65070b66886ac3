"""Debounced push scheduling."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from taskwatch.types import PUSH_DEBOUNCE_MS

logger = logging.getLogger(__name__)


class PushScheduler:
    """Coalesces bursts of local writes into one push.

    ``schedule_flush()`` is idempotent: calling it again before the timer
    fires restarts the quiet period instead of queuing a second push. When
    no event loop is running the flush runs immediately and synchronously.

    Args:
        flush: Coroutine function performing the push.
        delay_ms: Quiet period before the push runs.
    """

    def __init__(self, flush: Callable[[], Awaitable[object]], delay_ms: int = PUSH_DEBOUNCE_MS):
        self._flush = flush
        self.delay_ms = delay_ms
        self._handle: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """Whether a flush is scheduled or running."""
        return self._handle is not None or (self._task is not None and not self._task.done())

    def schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            self.cancel()
            asyncio.run(self._run_flush())
            return

        if self._handle is not None:
            self._handle.cancel()
        self._handle = loop.call_later(self.delay_ms / 1000, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.get_running_loop().create_task(self._run_flush())

    async def _run_flush(self) -> None:
        try:
            await self._flush()
        except Exception as e:
            # Pending state stays set; the next flush or sync pass retries
            logger.warning(f"Scheduled push failed: {e}", exc_info=True)

    async def drain(self) -> None:
        """Run any scheduled flush now and wait for in-flight work."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            await self._run_flush()
        if self._task is not None and not self._task.done():
            await self._task

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
