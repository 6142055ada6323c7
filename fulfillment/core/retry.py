"""
Retry policy for outbound carrier calls.

Exponential backoff without jitter: delay = base_delay * exponential_base ** attempt,
capped at max_delay. `sleep` is injectable so retry behavior can be tested
without wall-clock waits.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_retries: int = 3              # Retries after the first attempt
    base_delay: float = 1.0           # Base delay in seconds
    exponential_base: float = 2.0     # Exponential backoff multiplier
    max_delay: float = 60.0           # Maximum delay cap
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, repr=False)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


async def execute_with_policy(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Callable[[T], bool],
    label: str = "operation",
) -> T:
    """
    Run `operation` until `should_retry` rejects its result or retries run out.

    The last result is returned either way; the caller decides whether an
    exhausted retryable result is an error.
    """
    attempt = 0
    while True:
        result = await operation()
        if not should_retry(result) or attempt >= policy.max_retries:
            return result

        delay = policy.backoff(attempt)
        logger.warning(
            "%s: retryable result, backing off %.1fs (retry %d/%d)",
            label, delay, attempt + 1, policy.max_retries,
        )
        await policy.sleep(delay)
        attempt += 1
