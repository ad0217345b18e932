"""Durable named timers that survive process restart.

A durable timer is a ``(name, when)`` pair persisted in the state store.
:meth:`StoreTimerFacility.tick` fires every timer whose instant has passed,
removing it before its handler runs so a crash mid-handler never causes a
second firing.  Creating a timer under an existing name replaces it, matching
the host alarm facility semantics; callers that must not double-schedule check
:meth:`TimerFacility.get` first.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from opentelemetry import trace

from meetbell.core.state import StateStore

logger = logging.getLogger(__name__)

TIMER_KEY_PREFIX = "timer::"

TimerHandler = Callable[[str], Awaitable[None]]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_epoch_ms(value: datetime) -> int:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return int(normalized.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class TimerFacility(abc.ABC):
    """Abstract durable-timer facility."""

    @abc.abstractmethod
    async def create(self, name: str, when_epoch_ms: int) -> None:
        """Create (or replace) the timer *name* firing at *when_epoch_ms*."""

    @abc.abstractmethod
    async def get(self, name: str) -> int | None:
        """Return the firing instant of *name* in epoch ms, or ``None``."""

    @abc.abstractmethod
    async def clear(self, name: str) -> bool:
        """Cancel *name*.  Returns ``True`` if a timer was removed."""

    @abc.abstractmethod
    async def names(self, prefix: str = "") -> list[str]:
        """Return the names of all live timers starting with *prefix*."""


class StoreTimerFacility(TimerFacility):
    """Timer facility persisted under ``timer::<name>`` keys."""

    def __init__(self, store: StateStore, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._clock = clock

    @staticmethod
    def _key(name: str) -> str:
        return f"{TIMER_KEY_PREFIX}{name}"

    async def create(self, name: str, when_epoch_ms: int) -> None:
        await self._store.set(self._key(name), {"name": name, "when": int(when_epoch_ms)})
        logger.debug("Created durable timer %s at %s", name, from_epoch_ms(when_epoch_ms))

    async def get(self, name: str) -> int | None:
        record = await self._store.get(self._key(name))
        if not isinstance(record, dict) or "when" not in record:
            return None
        return int(record["when"])

    async def clear(self, name: str) -> bool:
        existed = await self.get(name) is not None
        await self._store.remove(self._key(name))
        if existed:
            logger.debug("Cleared durable timer %s", name)
        return existed

    async def names(self, prefix: str = "") -> list[str]:
        keys = await self._store.keys(f"{TIMER_KEY_PREFIX}{prefix}")
        return [key[len(TIMER_KEY_PREFIX) :] for key in keys]

    async def due(self) -> list[str]:
        """Return the names of timers whose instant has passed, soonest first."""
        now_ms = to_epoch_ms(self._clock())
        pending: list[tuple[int, str]] = []
        for name in await self.names():
            when = await self.get(name)
            if when is not None and when <= now_ms:
                pending.append((when, name))
        return [name for _, name in sorted(pending)]

    async def tick(self, handler: TimerHandler) -> int:
        """Fire every due timer through *handler*.

        Each timer is cleared before its handler runs.  Handler failures are
        logged and do not stop the remaining timers.

        Returns:
            The number of timers whose handler completed without raising.
        """
        tracer = trace.get_tracer("meetbell")
        with tracer.start_as_current_span("meetbell.timer_tick") as span:
            due = await self.due()
            span.set_attribute("timers_due", len(due))

            fired = 0
            for name in due:
                await self.clear(name)
                try:
                    await handler(name)
                    fired += 1
                except Exception:
                    logger.exception("Durable timer handler failed: %s", name)

            span.set_attribute("timers_fired", fired)
            return fired
