"""Fire-and-forget execution of blocking side effects.

Access-count bumps, audit appends for views and notifications must never
hold up the caller. :func:`fire_and_forget` runs the call in a worker
thread as a task nobody awaits; failures are logged and dropped.
"""

import asyncio
import functools
import logging
from typing import Callable

logger = logging.getLogger("pagesign.background")

_pending: set[asyncio.Task] = set()


def _report(label: str, task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        logger.warning("Background %s was cancelled", label)
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Background %s failed: %s", label, exc)


def fire_and_forget(func: Callable, *args, label: str = "") -> asyncio.Task:
    """Schedule ``func(*args)`` in a worker thread without awaiting it.

    Must be called from inside a running event loop.

    Returns:
        The task, for callers (tests, shutdown) that want to wait on it.
    """
    label = label or getattr(func, "__name__", "task")
    task = asyncio.get_running_loop().create_task(asyncio.to_thread(func, *args))
    _pending.add(task)
    task.add_done_callback(functools.partial(_report, label))
    return task


async def drain() -> None:
    """Wait for every background task scheduled on this loop to finish."""
    loop = asyncio.get_running_loop()
    while True:
        tasks = [t for t in _pending if t.get_loop() is loop]
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)
        _pending.difference_update(tasks)
