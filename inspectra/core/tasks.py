"""Detached best-effort side effects.

Notifications and audit appends run after the primary write has committed.
They are started as asyncio tasks that the response path never awaits, each
bounded by its own timeout, with failures going to the log.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


class BackgroundDispatcher:
    """Launch fire-and-forget coroutines with a timeout and an error sink.

    Example:
        >>> dispatcher = BackgroundDispatcher(timeout_seconds=30)
        >>> dispatcher.spawn("append_event", lambda: events.append(...))
    """

    def __init__(self, timeout_seconds: float = 30.0):
        self.timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, name: str, factory: Callable[[], Awaitable[object]]) -> asyncio.Task:
        """Start ``factory()`` in the background and return the task."""
        task = asyncio.create_task(self._run(name, factory), name=name)
        # Strong reference until done, otherwise the loop may collect it
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, factory: Callable[[], Awaitable[object]]) -> None:
        try:
            await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("side_effect_timeout", task=name, timeout=self.timeout_seconds)
        except Exception as exc:
            logger.error("side_effect_failed", task=name, error=str(exc), exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding task (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
