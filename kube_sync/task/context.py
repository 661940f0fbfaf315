"""The TaskService used by code that is not handed one explicitly."""

import contextvars

from .service import TaskService, TaskServiceImpl

__all__: list[str] = []

_current: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "task_service", default=None
)


def get_task_service() -> TaskService:
    """Return the TaskService of the current context.

    A new service is created on first use and stays current for the rest of
    the context.
    """
    if (service := _current.get()) is None:
        service = TaskServiceImpl()
        _current.set(service)
    return service
