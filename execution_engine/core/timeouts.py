"""
Timeout and Retry Helpers

Stateless helpers that bound an asynchronous operation in time and retry it
with linear backoff.

An "operation" is a zero-argument callable returning an awaitable, so every
attempt gets a fresh coroutine:

    result = await run_bounded(
        lambda: provider.generate_structured(prompt, EffectPayload),
        policy=RetryPolicy(max_attempts=3, base_delay=1.0, timeout=30.0),
        label="effect generation",
    )

Cancellation caveat:
    run_with_timeout() races the operation against a timer and cancels the
    losing task. Cancellation is cooperative: coroutines stop at their next
    await, but work handed to a thread (run_in_executor) keeps running until
    it returns on its own. Its result is discarded. The timeout bounds how
    long the CALLER waits, it does not guarantee the work has stopped.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .exceptions import RetriesExhaustedError, TimeoutExceededError, describe_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget for one logical operation.

    Attributes:
        max_attempts: Total attempts (first try included)
        base_delay: Seconds; wait base_delay * n after failed attempt n
        timeout: Seconds allowed for a single attempt
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    timeout: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        return self.base_delay * attempt

    def worst_case_latency(self) -> float:
        """
        Upper bound on the caller's wait for run_bounded() with this policy.

        Every attempt times out, and every attempt but the last is followed
        by its backoff: max_attempts * timeout + base_delay * (1 + ... + n-1).

        Example:
            >>> RetryPolicy(max_attempts=3, base_delay=1.0, timeout=30.0).worst_case_latency()
            93.0
        """
        backoffs = sum(self.backoff(n) for n in range(1, self.max_attempts))
        return self.max_attempts * self.timeout + backoffs


async def run_with_timeout(
    operation: Operation,
    timeout: float,
    label: str = "operation",
    sleep: Sleeper = asyncio.sleep,
) -> Any:
    """
    Run `operation` and fail if it does not finish within `timeout` seconds.

    Args:
        operation: Zero-argument callable returning an awaitable
        timeout: Deadline in seconds
        label: Operation name used in the error and logs
        sleep: Timer primitive (injectable for tests)

    Returns:
        The operation's result

    Raises:
        TimeoutExceededError: If the timer fires first
        Exception: Whatever the operation raised, if it finished first
    """
    work = asyncio.ensure_future(operation())
    timer = asyncio.ensure_future(sleep(timeout))

    try:
        done, _ = await asyncio.wait({work, timer}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        timer.cancel()
        raise

    if work in done:
        timer.cancel()
        return work.result()

    work.cancel()
    # Retrieve the eventual outcome so a late failure is not reported as
    # "exception was never retrieved".
    work.add_done_callback(_discard_late_result)
    logger.warning(f"{label}: timed out after {timeout}s, abandoning attempt")
    raise TimeoutExceededError(label, timeout)


async def run_with_retry(
    operation: Operation,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    label: str = "operation",
    sleep: Sleeper = asyncio.sleep,
) -> Any:
    """
    Call `operation` up to `max_attempts` times with linear backoff.

    After failed attempt n (n < max_attempts) waits base_delay * n seconds.
    Each failure is logged before the next attempt starts. Errors whose
    `retry_allowed` attribute is False are re-raised immediately.

    Args:
        operation: Zero-argument callable returning an awaitable
        max_attempts: Total number of attempts
        base_delay: Backoff unit in seconds
        label: Operation name for logs and the final error
        sleep: Delay primitive (injectable for tests)

    Returns:
        Result of the first successful attempt

    Raises:
        RetriesExhaustedError: If every attempt failed
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if getattr(e, "retry_allowed", True) is False:
                logger.error(f"{label}: attempt {attempt}/{max_attempts} failed with non-retryable error: {e}")
                raise

            last_error = e
            logger.warning(
                f"{label}: attempt {attempt}/{max_attempts} failed: {describe_error(e)}",
                extra={"attempt": attempt, "max_attempts": max_attempts},
            )

            if attempt < max_attempts:
                await sleep(base_delay * attempt)

    raise RetriesExhaustedError(max_attempts, last_error, label=label)


async def run_bounded(
    operation: Operation,
    policy: RetryPolicy,
    label: str = "operation",
    sleep: Sleeper = asyncio.sleep,
    timer: Sleeper = asyncio.sleep,
) -> Any:
    """
    Bound each attempt with run_with_timeout() and retry with run_with_retry().

    `timer` drives the per-attempt deadline and `sleep` the backoff between
    attempts, so tests can record backoff delays while deadlines stay real.

    Worst-case caller latency is policy.worst_case_latency().
    """
    return await run_with_retry(
        lambda: run_with_timeout(operation, policy.timeout, label=label, sleep=timer),
        max_attempts=policy.max_attempts,
        base_delay=policy.base_delay,
        label=label,
        sleep=sleep,
    )


def _discard_late_result(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Discarded late failure from abandoned attempt: {error}")
