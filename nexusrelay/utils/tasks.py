"""Guarded asyncio background tasks."""
from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Any
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Raised inside a background task to end it without exiting."""

    pass


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Done callback that raises SystemExit if the task failed."""
    if task.cancelled():
        return
    error = task.exception()
    if error is None or isinstance(error, SafeTaskExitError):
        return
    logger.error(
        f'Exception in background task (name="{task.get_name()}"): '
        f'{error!r}',
    )
    raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    name: str | None = None,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine in the background and exit if it fails.

    A rendezvous server whose eviction task has died keeps answering
    requests with peers that are long gone, so a failing background task
    logs its traceback and then raises `SystemExit` via
    [`exit_on_error()`][nexusrelay.utils.tasks.exit_on_error]. Tasks can
    raise [`SafeTaskExitError`][nexusrelay.utils.tasks.SafeTaskExitError]
    to finish without exiting.

    Args:
        coro: Coroutine function to run as a task.
        args: Positional arguments for the coroutine.
        name: Optional name of the task.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """

    async def _guarded() -> None:
        try:
            await coro(*args, **kwargs)
        except Exception:
            logger.error(traceback.format_exc())
            raise

    task = asyncio.create_task(_guarded(), name=name)
    task.add_done_callback(exit_on_error)
    return task


def spawn_periodic_task(
    callback: Callable[[], Any],
    interval: float,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Invoke a synchronous callback every `interval` seconds.

    The first invocation happens after one interval. The task runs until
    cancelled and is guarded by
    [`spawn_guarded_background_task()`][nexusrelay.utils.tasks.spawn_guarded_background_task].

    Args:
        callback: Zero argument callable to invoke.
        interval: Seconds between invocations.
        name: Optional name of the task.

    Returns:
        Asyncio task handle.
    """

    async def _loop() -> None:
        while True:
            await asyncio.sleep(interval)
            callback()

    return spawn_guarded_background_task(_loop, name=name)


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel a task and wait for it to finish."""
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
