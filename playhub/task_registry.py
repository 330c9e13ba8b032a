"""
Task Registry for graceful shutdown management.

Tracks background tasks (session watchers, sync timers) and cancels them
during application shutdown.
"""

import asyncio
from typing import Coroutine, Dict, Optional

from .logger import setup_logger

logger = setup_logger()


class TaskRegistry:
    """
    Owns every long-running background task. Tasks may be registered under a
    key so a specific one (e.g. the watcher of one session) can be cancelled.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._counter = 0
        self._shutdown_in_progress = False

    def spawn(self, coro: Coroutine, name: str = "", key: Optional[str] = None) -> asyncio.Task:
        """Create a task from ``coro`` and register it."""
        task = asyncio.create_task(coro, name=name or None)
        return self.register_task(task, name=name, key=key)

    def register_task(self, task: asyncio.Task, name: str = "", key: Optional[str] = None) -> asyncio.Task:
        """Register a background task for tracking.

        Args:
            task: The asyncio.Task to track
            name: Optional name for logging
            key: Optional lookup key; defaults to a generated one

        Returns:
            The same task (for chaining)
        """
        if self._shutdown_in_progress:
            logger.warning(f"Task '{name}' created during shutdown - cancelling immediately")
            task.cancel()
            return task

        # Clean up done tasks to prevent unbounded growth
        self._tasks = {k: t for k, t in self._tasks.items() if not t.done()}

        if key is None:
            self._counter += 1
            key = f"task-{self._counter}"
        previous = self._tasks.get(key)
        if previous is not None and previous is not task:
            previous.cancel()

        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        logger.debug(f"Registered background task: {name or task.get_name()}")
        return task

    def _forget(self, key: str, task: asyncio.Task):
        if self._tasks.get(key) is task:
            del self._tasks[key]

    def get(self, key: str) -> Optional[asyncio.Task]:
        return self._tasks.get(key)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def reset_shutdown_state(self) -> None:
        """Reset shutdown state (useful for testing or restart scenarios)."""
        self._shutdown_in_progress = False
        self._tasks.clear()

    def get_active_task_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def get_task_names(self) -> list[str]:
        return [t.get_name() for t in self._tasks.values()]

    async def cancel_all_tasks(self, timeout: float = 3.0) -> int:
        """Cancel all registered background tasks.

        Args:
            timeout: Maximum time to wait for task cancellation

        Returns:
            Number of tasks cancelled
        """
        self._shutdown_in_progress = True
        tasks = list(self._tasks.values())
        self._tasks.clear()

        if not tasks:
            logger.debug("No background tasks to cancel")
            return 0

        logger.info(f"Cancelling {len(tasks)} background tasks...")

        for task in tasks:
            if not task.done():
                task.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Some tasks did not complete within {timeout}s timeout")

        cancelled = sum(1 for t in tasks if t.cancelled())
        logger.info(f"Cancelled {cancelled}/{len(tasks)} background tasks")
        return cancelled
