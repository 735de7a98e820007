"""Detached background work that must outlive the request that started it."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from server.logging_config import get_logger


class BackgroundTaskSupervisor:
    """
    Owns fire-and-forget tasks.

    Keeps a strong reference to each task until it finishes, reports
    failures through the logger and the `failures` list, and can drain
    outstanding work on shutdown.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, on_error: Optional[Callable[[str, BaseException], None]] = None):
        self.logger = logger or get_logger(__name__)
        self.on_error = on_error
        self.failures: List[Tuple[str, BaseException]] = []
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, coro: Awaitable, name: str = "background") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self.logger.debug(f"Background task {task.get_name()} cancelled")
            return
        error = task.exception()
        if error is None:
            return
        self.logger.error(f"Background task {task.get_name()} failed: {error}", exc_info=error)
        self.failures.append((task.get_name(), error))
        if self.on_error is not None:
            self.on_error(task.get_name(), error)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks; cancel whatever is left after `timeout`."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        self.logger.info(f"Draining {len(tasks)} background tasks")
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
