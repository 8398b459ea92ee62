"""
Bounded-time polling of a remote job.

One primitive covers both "wait for external readiness" shapes: max_wait=0
performs a single check (browser login completion), max_wait>0 loops until a
terminal state or the deadline (compliance review jobs).

A timeout is not an error: the result says `timed_out=True` and carries the
last observed value so the caller can resume checking later.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

TERMINAL_JOB_STATES = frozenset({"completed", "error", "failed"})


def job_status(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("status")
    return getattr(value, "status", None)


@dataclass
class PollResult(Generic[T]):
    value: Optional[T]
    checks: int
    timed_out: bool
    elapsed: float

    @property
    def state(self) -> Optional[str]:
        return job_status(self.value)


async def poll_until_terminal(
    check: Callable[[], Awaitable[T]],
    *,
    max_wait: float,
    interval: float,
    is_terminal: Optional[Callable[[T], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult[T]:
    """
    Await `check()` until `is_terminal(value)` or `max_wait` seconds elapse.

    Sleeps `interval` seconds between checks (never past the deadline). Only
    this call chain is suspended; exceptions raised by `check` propagate.
    """
    if is_terminal is None:
        is_terminal = lambda v: job_status(v) in TERMINAL_JOB_STATES  # noqa: E731

    started = clock()
    checks = 0
    while True:
        value = await check()
        checks += 1
        elapsed = clock() - started
        if is_terminal(value):
            return PollResult(value=value, checks=checks, timed_out=False, elapsed=elapsed)
        if elapsed >= max_wait:
            return PollResult(value=value, checks=checks, timed_out=True, elapsed=elapsed)
        await sleep(min(interval, max_wait - elapsed))
