"""Bounded polling for eventually consistent cloud transitions.

A ConvergenceTarget describes one wait: how to fetch the current state, what
counts as done, what counts as a terminal failure, and how long to keep
trying. wait_for() runs it and ends in exactly one of four ways: the ready
state is returned, or ConvergenceFailed, ConvergenceTimeout or Cancelled is
raised, each carrying the last observed state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

from .config import (
    FAST_POLL_INTERVAL_SECONDS,
    FAST_POLL_MAX_ATTEMPTS,
    SLOW_POLL_INTERVAL_SECONDS,
    SLOW_POLL_MAX_ATTEMPTS,
    STANDARD_POLL_INTERVAL_SECONDS,
    STANDARD_POLL_MAX_ATTEMPTS,
)
from .errors import Cancelled, ConvergenceFailed, ConvergenceTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    """Interval and attempt budget for one kind of transition."""

    interval_seconds: float
    max_attempts: int


FAST_POLL = PollPolicy(FAST_POLL_INTERVAL_SECONDS, FAST_POLL_MAX_ATTEMPTS)
STANDARD_POLL = PollPolicy(STANDARD_POLL_INTERVAL_SECONDS, STANDARD_POLL_MAX_ATTEMPTS)
SLOW_POLL = PollPolicy(SLOW_POLL_INTERVAL_SECONDS, SLOW_POLL_MAX_ATTEMPTS)


class CancellationToken:
    """Caller-owned cancellation signal, checked at every poll boundary."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def _never(_: Any) -> bool:
    return False


@dataclass(frozen=True)
class ConvergenceTarget(Generic[T]):
    """One bounded wait for a remote transition.

    Attributes:
        description: What is awaited, e.g. "volume vol-1 available".
        poll: Coroutine function fetching the current state.
        is_ready: Success predicate on a polled state.
        is_failed: Failure predicate; a match ends the wait immediately.
        interval_seconds: Sleep between polls.
        max_attempts: Maximum number of polls.
        timeout_seconds: Optional wall-clock deadline for the whole wait.
    """

    description: str
    poll: Callable[[], Awaitable[T]]
    is_ready: Callable[[T], bool]
    is_failed: Callable[[T], bool] = _never
    interval_seconds: float = STANDARD_POLL_INTERVAL_SECONDS
    max_attempts: int = STANDARD_POLL_MAX_ATTEMPTS
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")

    @classmethod
    def from_policy(
        cls,
        description: str,
        poll: Callable[[], Awaitable[T]],
        is_ready: Callable[[T], bool],
        policy: PollPolicy = STANDARD_POLL,
        is_failed: Callable[[T], bool] = _never,
    ) -> ConvergenceTarget[T]:
        return cls(
            description=description,
            poll=poll,
            is_ready=is_ready,
            is_failed=is_failed,
            interval_seconds=policy.interval_seconds,
            max_attempts=policy.max_attempts,
        )

    def scaled(self, factor: float, max_wait_seconds: float | None = None) -> ConvergenceTarget[T]:
        """Return a copy with the interval multiplied and the deadline capped."""
        timeout = self.timeout_seconds
        if max_wait_seconds is not None:
            timeout = max_wait_seconds if timeout is None else min(timeout, max_wait_seconds)
        return replace(
            self, interval_seconds=self.interval_seconds * factor, timeout_seconds=timeout
        )


async def _poll_or_cancel(target: ConvergenceTarget[T], cancel: CancellationToken, last: Any) -> T:
    """Run one poll, abandoning it if cancellation arrives first.

    A blocking SDK call already running in an executor thread finishes on its
    own; only the wait for its result is dropped.
    """
    poll_task = asyncio.ensure_future(target.poll())
    cancel_task = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {poll_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        cancel_task.cancel()

    if poll_task in done:
        return poll_task.result()

    poll_task.cancel()
    raise Cancelled(f"Cancelled while waiting for {target.description}", last_observed=last)


async def _sleep(cancel: CancellationToken, seconds: float) -> bool:
    """Sleep unless cancelled. Returns True if cancellation ended the sleep."""
    if seconds <= 0:
        await asyncio.sleep(0)
        return cancel.is_cancelled
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        return False
    return True


async def wait_for(target: ConvergenceTarget[T], cancel: CancellationToken | None = None) -> T:
    """Poll until the target is ready, has failed, or the budget is spent.

    Args:
        target: The transition to wait for.
        cancel: Optional cancellation signal.

    Returns:
        The first polled state satisfying ``target.is_ready``.

    Raises:
        ConvergenceFailed: A polled state satisfied ``target.is_failed``.
        ConvergenceTimeout: max_attempts polls (or the deadline) passed without success.
        Cancelled: The cancellation signal was set.
    """
    cancel = cancel or CancellationToken()
    loop = asyncio.get_running_loop()
    deadline = None if target.timeout_seconds is None else loop.time() + target.timeout_seconds

    last: Any = None
    attempts = 0
    while attempts < target.max_attempts:
        if cancel.is_cancelled:
            raise Cancelled(f"Cancelled while waiting for {target.description}", last_observed=last)

        last = await _poll_or_cancel(target, cancel, last)
        attempts += 1

        if target.is_ready(last):
            logger.debug(
                "Converged",
                extra={"target": target.description, "attempts": attempts},
            )
            return last

        if target.is_failed(last):
            logger.error(
                "Remote reported a terminal failure state",
                extra={"target": target.description, "attempts": attempts, "observed": repr(last)},
            )
            raise ConvergenceFailed(
                f"{target.description} failed after {attempts} attempt(s)",
                description=target.description,
                last_observed=last,
                attempts=attempts,
            )

        logger.debug(
            "Waiting for convergence",
            extra={
                "target": target.description,
                "attempt": attempts,
                "max_attempts": target.max_attempts,
            },
        )

        if attempts >= target.max_attempts:
            break

        delay = target.interval_seconds
        if deadline is not None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            delay = min(delay, remaining)

        if await _sleep(cancel, delay):
            raise Cancelled(f"Cancelled while waiting for {target.description}", last_observed=last)

    logger.warning(
        "Convergence timed out",
        extra={"target": target.description, "attempts": attempts, "observed": repr(last)},
    )
    raise ConvergenceTimeout(
        f"Timed out waiting for {target.description} after {attempts} attempt(s)",
        description=target.description,
        last_observed=last,
        attempts=attempts,
    )
