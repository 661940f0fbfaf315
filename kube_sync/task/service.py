"""Task tracking service for kube-sync.

Long running background tasks (the perpetual loop of each Application) are
tracked by name so they can be cancelled individually when an Application is
deleted, or all together on shutdown.
"""

from abc import ABC, abstractmethod
import asyncio
from functools import partial
import logging
from typing import Any, Coroutine

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking asynchronous background tasks."""

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task.

        Raises ValueError if a background task with the name is running.
        """

    @abstractmethod
    async def cancel_background_task(self, name: str) -> None:
        """Cancel the named background task and wait for it to finish."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Cancel every task and wait for them to finish."""


class TaskServiceImpl(TaskService):
    """Service for tracking asynchronous background tasks."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._background_tasks: dict[str, asyncio.Task[Any]] = {}

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task."""
        if (existing := self._background_tasks.get(name)) and not existing.done():
            coro.close()
            raise ValueError(f"Background task '{name}' is already running")
        task = asyncio.create_task(coro, name=name)
        self._background_tasks[name] = task
        task.add_done_callback(partial(self._background_task_done, name))
        return task

    def _background_task_done(self, name: str, task: asyncio.Task[Any]) -> None:
        if not task.cancelled() and (err := task.exception()) is not None:
            _LOGGER.error("Task %s failed: %s", task.get_name(), err)
        if self._background_tasks.get(name) is task:
            del self._background_tasks[name]

    async def cancel_background_task(self, name: str) -> None:
        """Cancel the named background task and wait for it to finish."""
        if (task := self._background_tasks.get(name)) is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every task and wait for them to finish."""
        tasks = list(self._background_tasks.values())
        _LOGGER.debug("Cancelling %d tasks", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
