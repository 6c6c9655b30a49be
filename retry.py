import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from errors import RetriesExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff: attempt n waits base_delay * 2^(n-1) seconds
    before attempt n+1. No jitter.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "request",
) -> T:
    """
    Run `operation` (a zero-argument coroutine factory) until it succeeds or
    `policy.max_attempts` is reached.

    Errors outside `policy.retry_on` propagate immediately. When every attempt
    fails, RetriesExhaustedError is raised from the last error.
    """
    last_error: BaseException = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await operation()
        except policy.retry_on as e:
            last_error = e
            if attempt == policy.max_attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.0fms: %s",
                description,
                attempt,
                policy.max_attempts,
                delay * 1000,
                e,
            )
            await sleep(delay)

    raise RetriesExhaustedError(policy.max_attempts, last_error) from last_error
