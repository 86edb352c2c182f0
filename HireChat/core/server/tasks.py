"""
Fire-and-forget work.

Side effects nobody waits on (notification creation, view refreshes,
presence fan-out after a disconnect) run as tracked tasks. The set keeps
strong references until each task finishes, reports failures through the
error channel, and can be drained on shutdown.
"""

import asyncio
import logging
from typing import Any, Coroutine, Set

from HireChat.core.logging import report_failure

logger = logging.getLogger(__name__)


class BackgroundTaskSet:
    """Tracks best-effort tasks and logs their failures."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str, **context: Any) -> asyncio.Task:
        """
        Schedule a coroutine in the background.

        Args:
            coro: Work to run
            name: Short name used when reporting a failure
            **context: Identifiers attached to the failure report
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                report_failure(name, exc, **context)

        task.add_done_callback(_done)
        return task

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for pending tasks, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning("Cancelled %d background task(s) on shutdown", len(still_pending))
            await asyncio.gather(*still_pending, return_exceptions=True)
