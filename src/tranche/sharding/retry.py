"""Bounded retry of async operations.

:func:`retry` wraps any zero-argument coroutine factory: each attempt is a
fresh call to the factory, run under a per-attempt timeout. Between attempts
the controller waits with a local ``sleep`` so other tranches keep running.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tranche.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_MAX_ATTEMPTS = 2
_DEFAULT_TIMEOUT_SECONDS = 30 * 60.0
_DEFAULT_WAIT_SECONDS = 30.0


class RetryError(Exception):
    """Raised when every attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryOutcome(Generic[T]):
    """Successful result of a retried operation."""

    value: T
    """Return value of the attempt that succeeded."""

    attempts: int
    """Number of attempts made, including the successful one."""

    errors: list[BaseException] = field(default_factory=list)
    """Failures of the earlier attempts, oldest first."""


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how long to try a tranche."""

    max_attempts: int = _DEFAULT_MAX_ATTEMPTS
    """Total attempts, including the first."""

    timeout: float | None = _DEFAULT_TIMEOUT_SECONDS
    """Per-attempt timeout in seconds (``None`` for no limit)."""

    wait: float = _DEFAULT_WAIT_SECONDS
    """Seconds to wait between attempts."""

    deadline: float | None = None
    """Overall limit in seconds across all attempts and waits."""

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        """Build a policy from the ``retry`` config section (minutes/seconds)."""
        return cls(
            max_attempts=config.max_attempts,
            timeout=config.timeout_minutes * 60.0 if config.timeout_minutes else None,
            wait=float(config.retry_wait_seconds),
            deadline=config.job_timeout_minutes * 60.0 if config.job_timeout_minutes else None,
        )

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        give_up_on: tuple[type[BaseException], ...] = (),
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> RetryOutcome[T]:
        """Run ``operation`` under this policy."""
        return await retry(
            operation,
            attempts=self.max_attempts,
            wait=self.wait,
            timeout=self.timeout,
            deadline=self.deadline,
            give_up_on=give_up_on,
            sleep=sleep,
        )


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    wait: float,
    timeout: float | None = None,
    deadline: float | None = None,
    give_up_on: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """Call ``operation`` until it succeeds or ``attempts`` are used up.

    Args:
        operation: Zero-argument factory returning a fresh awaitable per call.
        attempts: Maximum number of attempts (>= 1).
        wait: Seconds to sleep between attempts.
        timeout: Per-attempt timeout in seconds; a timeout counts as a failure.
        deadline: Overall budget in seconds. No new attempt starts once it is
            spent, and the running attempt's timeout is clipped to what is left.
        give_up_on: Exception types that propagate immediately without retry.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        A :class:`RetryOutcome` with the value and the number of attempts.

    Raises:
        RetryError: When every attempt failed; chained from the last failure.
        ValueError: If ``attempts`` < 1 or ``wait`` < 0.
    """
    if attempts < 1:
        msg = f"attempts must be >= 1, got {attempts}"
        raise ValueError(msg)
    if wait < 0:
        msg = f"wait must be >= 0, got {wait}"
        raise ValueError(msg)

    loop = asyncio.get_running_loop()
    started = loop.time()
    errors: list[BaseException] = []
    made = 0

    for attempt in range(1, attempts + 1):
        attempt_timeout = timeout
        if deadline is not None:
            remaining = deadline - (loop.time() - started)
            if remaining <= 0:
                errors.append(TimeoutError(f"deadline of {deadline}s exceeded"))
                break
            attempt_timeout = remaining if timeout is None else min(timeout, remaining)

        made = attempt
        try:
            if attempt_timeout is None:
                value = await operation()
            else:
                value = await asyncio.wait_for(operation(), timeout=attempt_timeout)
        except give_up_on:
            raise
        except Exception as exc:
            errors.append(exc)
            reason = str(exc) or type(exc).__name__
            if attempt < attempts:
                logger.warning(
                    "Attempt %d/%d failed: %s; retrying in %.0fs", attempt, attempts, reason, wait
                )
                await sleep(wait)
            else:
                logger.warning("Attempt %d/%d failed: %s", attempt, attempts, reason)
            continue

        if attempt > 1:
            logger.info("Succeeded on attempt %d/%d", attempt, attempts)
        return RetryOutcome(value=value, attempts=attempt, errors=errors)

    last_error = errors[-1]
    raise RetryError(made, last_error) from last_error
