"""Bounded retry policy with exponential backoff.

The policy is a plain value object so it can be unit tested without real
delays: inject a fake ``sleep`` coroutine and inspect the recorded waits.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def _always_retryable(exc: BaseException) -> bool:  # noqa: ARG001
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Retry up to ``max_attempts`` times, waiting ``base_delay * factor**n`` between tries.

    Attributes:
        max_attempts: Total attempts including the first one.
        base_delay: Wait in seconds after the first failed attempt.
        factor: Multiplier applied to the wait after every further failure.
        is_retryable: Predicate deciding whether an exception may be retried.
            A ``False`` answer re-raises immediately.
        sleep: Coroutine used to wait between attempts.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    factor: float = 2.0
    is_retryable: Callable[[BaseException], bool] = _always_retryable
    sleep: Sleep = field(default=asyncio.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Return the wait after failed *attempt* (1-based)."""
        return self.base_delay * (self.factor ** (attempt - 1))

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        """Run *operation* under the policy and return its result.

        Raises:
            The last exception once attempts are exhausted, or the first
            non-retryable exception.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                if not self.is_retryable(exc):
                    logger.warning(
                        "%s failed with non-retryable error (attempt %d/%d): %s",
                        label,
                        attempt,
                        self.max_attempts,
                        exc,
                    )
                    raise
                if attempt >= self.max_attempts:
                    logger.warning(
                        "%s failed after %d attempt(s): %s", label, attempt, exc
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    label,
                    attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                await self.sleep(delay)
