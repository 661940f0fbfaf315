"""Tracing of reconciliation phases.

Phases nest: a cycle of one Application fetches its source, then applies its
changes, and the log lines of each phase carry the path of the enclosing
phases. Each asyncio task copies the context on creation, so the concurrent
loops of different Applications keep separate paths.
"""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator

_LOGGER = logging.getLogger(__name__)

__all__ = ["trace_context", "current_trace"]

# Phases taking longer are logged at INFO rather than DEBUG
SLOW_PHASE_SECONDS = 10.0

_phases: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "phases", default=()
)


def current_trace() -> str:
    """Return the path of the running phase, empty outside of any phase."""
    return " > ".join(_phases.get())


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Run the body as a named phase nested under the running one."""
    token = _phases.set(_phases.get() + (name,))
    label = current_trace()
    start = perf_counter()
    _LOGGER.debug("Phase started: %s", label)
    try:
        yield
    finally:
        elapsed = perf_counter() - start
        _phases.reset(token)
        level = logging.INFO if elapsed >= SLOW_PHASE_SECONDS else logging.DEBUG
        _LOGGER.log(level, "Phase finished: %s (%0.2fs)", label, elapsed)
