"""Morning overview of the day's meetings.

A recurring durable timer fires once a day (10:00 local time by default).  The
summary lists today's canonical meetings in start order, plays the reminder
sound, opens a summary window and posts an OS notification.  The timer
facility is one-shot, so every fire schedules the next one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, time, timedelta, tzinfo

from meetbell.core.state import StateStore
from meetbell.core.timers import Clock, TimerFacility, from_epoch_ms, to_epoch_ms, utc_now
from meetbell.dispatcher import DispatchReport, NotificationDispatcher
from meetbell.models import CanonicalEvent
from meetbell.scheduler import load_events, load_settings, save_settings

logger = logging.getLogger(__name__)

DAILY_SUMMARY_TIMER = "daily_summary"
DEFAULT_SUMMARY_TIME = time(10, 0)
MAX_LISTED = 5
TITLE_LIMIT = 30

EMPTY_DAY_TITLE = "📅 Your Day Ahead"
EMPTY_DAY_MESSAGE = "No meetings scheduled for today. Enjoy your focus time!"


def _local(value: datetime, tz: tzinfo | None) -> datetime:
    # No zone means the host's local zone.
    return value.astimezone(tz) if tz is not None else value.astimezone()


def next_summary_at(now: datetime, at: time = DEFAULT_SUMMARY_TIME, tz: tzinfo | None = None) -> datetime:
    """The first *at* local time strictly after *now*, as a UTC instant."""
    local = _local(now, tz)
    candidate = datetime.combine(local.date(), at, tzinfo=local.tzinfo)
    if local >= candidate:
        candidate = datetime.combine(local.date() + timedelta(days=1), at, tzinfo=local.tzinfo)
    return candidate.astimezone(UTC)


def todays_events(
    events: Iterable[CanonicalEvent],
    now: datetime,
    tz: tzinfo | None = None,
) -> list[CanonicalEvent]:
    """Every meeting starting on *now*'s local calendar day, already started or not."""
    today = _local(now, tz).date()
    return sorted(
        (e for e in events if _local(e.start_time, tz).date() == today),
        key=lambda e: e.start_time,
    )


def total_meeting_minutes(events: Iterable[CanonicalEvent]) -> int:
    total = sum(((e.end - e.start_time) for e in events), timedelta())
    return round(total / timedelta(minutes=1))


def format_clock_time(value: datetime, tz: tzinfo | None = None) -> str:
    """``9:30 AM`` style, in the summary's zone."""
    local = _local(value, tz)
    hour = local.hour % 12 or 12
    return f"{hour}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def summary_title(count: int) -> str:
    if count == 0:
        return EMPTY_DAY_TITLE
    return f"📅 Today: {count} Meeting{'s' if count > 1 else ''}"


def format_summary_message(events: Sequence[CanonicalEvent], tz: tzinfo | None = None) -> str:
    """Notification body: up to five meetings, an overflow line and the day's total."""
    if not events:
        return EMPTY_DAY_MESSAGE

    lines = []
    for event in events[:MAX_LISTED]:
        title = event.display_title
        if len(title) > TITLE_LIMIT:
            title = f"{title[:TITLE_LIMIT - 3]}..."
        marker = " [conflict]" if event.has_conflict else ""
        lines.append(f"{format_clock_time(event.start_time, tz)} - {title}{marker}")

    if len(events) > MAX_LISTED:
        lines.append(f"\n...and {len(events) - MAX_LISTED} more")

    hours, mins = divmod(total_meeting_minutes(events), 60)
    if hours:
        total = f"\n\n{hours}h {mins}m in meetings today"
    elif mins:
        total = f"\n\n{mins} minutes in meetings today"
    else:
        total = ""
    return "\n".join(lines) + total


class DailySummary:
    """Keeps the daily summary timer scheduled and renders the summary when it fires."""

    def __init__(
        self,
        store: StateStore,
        timers: TimerFacility,
        dispatcher: NotificationDispatcher,
        *,
        clock: Clock = utc_now,
        tz: tzinfo | None = None,
        at: time = DEFAULT_SUMMARY_TIME,
    ) -> None:
        self._store = store
        self._timers = timers
        self._dispatcher = dispatcher
        self._clock = clock
        self._tz = tz
        self._at = at

    async def schedule(self) -> datetime | None:
        """Ensure the next summary is pending, or cleared when the summary is disabled.

        An existing timer is left alone, even an overdue one, so a restart
        between the due time and the next tick still delivers it.

        Returns:
            When the next summary fires, or ``None`` when disabled.
        """
        config = await load_settings(self._store)
        if not config.daily_summary:
            await self._timers.clear(DAILY_SUMMARY_TIMER)
            return None

        existing = await self._timers.get(DAILY_SUMMARY_TIMER)
        if existing is not None:
            return from_epoch_ms(existing)

        when = next_summary_at(self._clock(), self._at, self._tz)
        await self._timers.create(DAILY_SUMMARY_TIMER, to_epoch_ms(when))
        logger.info("Daily summary scheduled for %s", when.isoformat())
        return when

    async def send(self) -> DispatchReport | None:
        config = await load_settings(self._store)
        if not config.daily_summary:
            logger.info("Daily summary is disabled in settings")
            return None

        events = todays_events(await load_events(self._store), self._clock(), self._tz)
        report = await self._dispatcher.send_daily_summary(
            events,
            title=summary_title(len(events)),
            message=format_summary_message(events, self._tz),
            config=config,
        )
        logger.info("Daily summary sent for %d meeting(s)", len(events))
        return report

    async def handle_fire(self) -> DispatchReport | None:
        try:
            return await self.send()
        finally:
            await self.schedule()

    async def set_enabled(self, enabled: bool) -> datetime | None:
        config = await load_settings(self._store)
        await save_settings(self._store, config.model_copy(update={"daily_summary": enabled}))
        return await self.schedule()
