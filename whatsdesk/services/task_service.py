"""Tracked fire-and-forget tasks.

Side effects such as media downloads and automatic replies run outside the
message durability path. Every task is isolated (failures are logged and
counted, never re-raised), concurrency is bounded, and shutdown can await
whatever is still in flight.
"""

import asyncio
from typing import Any, Coroutine, Optional

from whatsdesk.logging_config import get_logger

logger = get_logger("task_service")


class TaskTracker:
    def __init__(self, max_concurrency: int = 64):
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._failures: dict[str, int] = {}

    async def _run(self, coro: Coroutine, name: str) -> Any:
        try:
            async with self._semaphore:
                return await coro
        except asyncio.CancelledError:
            logger.debug(f"Background task cancelled: {name}")
            raise
        except Exception as e:
            self._failures[name] = self._failures.get(name, 0) + 1
            logger.error(
                f"Background task '{name}' failed: {e}",
                exc_info=True,
                extra={"context": {"task_name": name, "total_failures": self._failures[name]}},
            )
            return None

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task_name = name or getattr(coro, "__qualname__", "task")
        task = asyncio.create_task(self._run(coro, task_name), name=task_name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def failure_counts(self) -> dict[str, int]:
        return dict(self._failures)

    async def drain(self, timeout: float | None = 10.0) -> None:
        """Wait for in-flight tasks; cancel whatever is left after `timeout`."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} background tasks on shutdown")
            await asyncio.gather(*pending, return_exceptions=True)
