"""
Exponential backoff for remote calls: 1s, 2s, 4s ... capped at 30s, six
attempts in total. Only ``NetworkTransient`` is retried.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from . import config
from .errors import NetworkTransient
from .logging_utils import get_logger

logger = get_logger("tandem.retry")


@dataclass(frozen=True)
class RetryPolicy:
    initial: float = config.RETRY_INITIAL_SECONDS
    cap: float = config.RETRY_MAX_SECONDS
    max_attempts: int = config.RETRY_MAX_ATTEMPTS

    def delay(self, attempt: int) -> float:
        """Wait after the ``attempt``-th failure (1-based)."""
        return min(self.cap, self.initial * (2 ** (attempt - 1)))


async def with_retry(
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "remote_call",
    on_attempt: Optional[Callable[[int], Any]] = None,
) -> Any:
    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await fn()
        except NetworkTransient as exc:
            if attempt >= policy.max_attempts:
                logger.warning(f"{label}_gave_up", extra={"attempt": attempt, "error": exc.message})
                raise
            delay = policy.delay(attempt)
            logger.info(f"{label}_retry", extra={"attempt": attempt, "delay_s": delay, "error": exc.message})
            await sleep(delay)
