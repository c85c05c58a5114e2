"""Task fan-out utilities.

- gather_isolated: bounded concurrent batch where one failure never cancels siblings
- log_task_exception: done-callback for fire-and-forget background tasks
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from boxpool._logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class TaskOutcome(Generic[T, R]):
    """Result of one item in an isolated batch."""

    item: T
    result: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_isolated(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    limit: int,
    name: str = "batch",
) -> list[TaskOutcome[T, R]]:
    """Run ``worker`` on every item with at most ``limit`` in flight.

    Every item gets its own task; all are awaited before returning. An item
    that raises is logged and recorded in its TaskOutcome; its siblings keep
    running. Cancellation of the caller still cancels the whole batch.

    Args:
        items: Work items, one task each.
        worker: Coroutine function applied to each item.
        limit: Maximum concurrent workers.
        name: Batch label for log lines.

    Returns:
        One TaskOutcome per item, in input order.
    """
    semaphore = asyncio.Semaphore(limit)

    async def _run(item: T) -> TaskOutcome[T, R]:
        async with semaphore:
            try:
                return TaskOutcome(item=item, result=await worker(item))
            except Exception as e:  # noqa: BLE001 - isolation boundary, error is recorded
                logger.warning(
                    "%s item failed: %s",
                    name,
                    e,
                    extra={"batch": name, "item": repr(item), "error_type": type(e).__name__},
                )
                return TaskOutcome(item=item, error=e)

    return list(await asyncio.gather(*(_run(item) for item in items)))


def log_task_exception(task: asyncio.Task[Any]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() so that a crashed
    background loop is never silent.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )
