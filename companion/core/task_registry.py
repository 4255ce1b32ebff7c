"""Keyed background tasks: delayed pushes and periodic loops.

Each task is registered under a key (a pending event id, a loop name), so a
single task can be cancelled by key while shutdown still cancels them all.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Hashable

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Background tasks indexed by key.

    Scheduling under a key that already has a live task cancels the old one.
    Finished tasks forget themselves; failures are logged with traceback.
    """

    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._tasks: dict[Hashable, asyncio.Task[None]] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def schedule(self, key: Hashable, coro: Coroutine[object, object, None]) -> asyncio.Task[None]:
        self.cancel(key)
        task = asyncio.create_task(coro, name=f"{self._owner}:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return task

    def cancel(self, key: Hashable) -> bool:
        """Cancel the task under `key`. Returns False when there was none."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def _forget(self, key: Hashable, task: asyncio.Task[None]) -> None:
        # A replaced task must not drop its successor
        if self._tasks.get(key) is task:
            del self._tasks[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("%s task %s failed: %s", self._owner, key, exc, exc_info=exc)

    async def shutdown(self, timeout: float) -> None:
        """Cancel every task and wait up to `timeout` seconds for them to finish."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        if not tasks:
            return

        for task in tasks:
            task.cancel()
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning(
                "%s: %d/%d tasks still pending %.1fs after cancel",
                self._owner,
                len(pending),
                len(tasks),
                timeout,
            )
