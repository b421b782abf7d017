from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar


T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollResult(Generic[T]):
    value: Optional[T]
    attempts: int
    terminal: bool


async def poll_until(
    fetch: Callable[[int], Awaitable[T]],
    *,
    is_terminal: Callable[[T], bool],
    interval_s: float,
    max_attempts: int,
    sleep: Sleep = asyncio.sleep,
    initial_delay: bool = False,
) -> PollResult[T]:
    """Call ``fetch(attempt)`` until ``is_terminal`` holds or ``max_attempts`` run out.

    Exactly ``max_attempts`` fetches are made when nothing is terminal. The
    delay is awaited between attempts (and before the first one when
    ``initial_delay`` is set); cancelling the caller aborts the pending sleep.
    """
    max_attempts = max(1, int(max_attempts))
    value: Optional[T] = None
    for attempt in range(1, max_attempts + 1):
        if attempt > 1 or initial_delay:
            await sleep(float(interval_s))
        value = await fetch(attempt)
        if is_terminal(value):
            return PollResult(value=value, attempts=attempt, terminal=True)
    return PollResult(value=value, attempts=max_attempts, terminal=False)
