# file: services/task_supervisor.py

import asyncio
import logging
from typing import Coroutine, Set

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """
    Owns the background tasks started after a response has been sent.
    Keeping a reference stops tasks from being garbage collected mid-run,
    failures are logged, and shutdown waits for in-flight work before
    cancelling what is left.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error!r}", exc_info=error)

    async def drain(self) -> None:
        """Waits until every task spawned so far (and any they spawn) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float = 30.0) -> None:
        if not self._tasks:
            return
        logger.info(f"Waiting for {len(self._tasks)} background dispatches to finish...")
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            pending = list(self._tasks)
            logger.error(f"Cancelling {len(pending)} unfinished dispatches after {timeout}s")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
