# services/async_processor.py
"""Background task runner on the application's event loop"""
import asyncio
import logging
from typing import Coroutine, Optional, Set

from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)


class BackgroundTaskRunner:
    """
    Fire-and-forget task submission on the running loop.

    Holds a reference to every task until it finishes (the loop only keeps
    weak ones) and logs failures. Call shutdown() on app exit.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def submit_task(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Schedule coro and return its task."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info(f"[TASK] {task.get_name()} cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[TASK] {task.get_name()} failed: {exc}", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every submitted task (including ones they submit) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Give running tasks `timeout` seconds to finish, then cancel the rest."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        logger.info(f"[TASK] Shutting down with {len(pending)} running tasks")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
