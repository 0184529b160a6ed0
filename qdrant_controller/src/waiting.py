from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from qdrant_controller.src.errors import PollTimeout

T = TypeVar("T")


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    *,
    interval: float,
    max_attempts: int,
    timeout: float | None = None,
    description: str = "condition",
) -> T:
    """Await *check* until it returns something other than ``None``.

    Sleeps *interval* seconds between attempts. The attempt count bounds the
    wait; *timeout*, when given, is a wall-clock deadline on top of it so a
    slow ``check`` cannot stretch the wait indefinitely. Exceptions raised by
    *check* propagate unchanged. Cancelling the awaiting task cancels the
    wait.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    attempt = 0
    while attempt < max_attempts:
        attempt += 1
        result = await check()
        if result is not None:
            return result
        if attempt >= max_attempts:
            break
        if deadline is not None and loop.time() + interval > deadline:
            break
        await asyncio.sleep(interval)
    raise PollTimeout(description, attempts=attempt, interval=interval)
