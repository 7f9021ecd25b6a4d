"""Deadline helpers.

A deadline here is a race between an operation and a timer. The losing
operation is not cancelled: it keeps running in the background and its
eventual failure is only logged.
"""

import asyncio
from typing import Any, Awaitable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _log_abandoned(label: str, task: "asyncio.Future[Any]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned operation failed", operation=label, error=str(exc))
    else:
        logger.debug("Abandoned operation completed", operation=label)


async def race_with_deadline(
    operation: Awaitable[T], timeout: float, label: str = "operation"
) -> T:
    """Await ``operation`` for at most ``timeout`` seconds.

    Args:
        operation: Coroutine or future to wait for
        timeout: Deadline in seconds
        label: Name used when logging the abandoned operation

    Returns:
        The operation's result, if it finished in time

    Raises:
        asyncio.TimeoutError: The deadline elapsed first. The operation
            is left running.
    """
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        task.add_done_callback(lambda t: _log_abandoned(label, t))
        raise
