"""Time spent in meetings.

Tracking starts when the user joins a meeting from a reminder and stops when
the host reports the meeting closed, or five minutes after the scheduled end
via the ``auto_stop_meeting_tracking`` timer.  Completed meetings are kept for
thirty days under the ``durations`` key and summarized by
:meth:`DurationTracker.statistics`.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from meetbell.core.state import StateStore
from meetbell.core.timers import Clock, TimerFacility, to_epoch_ms, utc_now
from meetbell.models import CanonicalEvent, Event, parse_canonical

logger = logging.getLogger(__name__)

DURATIONS_KEY = "durations"
ACTIVE_MEETING_KEY = "meeting::active"
AUTO_STOP_TIMER = "auto_stop_meeting_tracking"
AUTO_STOP_GRACE = timedelta(minutes=5)
RETENTION = timedelta(days=30)
WEEK = timedelta(days=7)

_PLATFORMS = (
    (("meet.google.com",), "Google Meet"),
    (("zoom.us", "zoom.com"), "Zoom"),
    (("teams.microsoft.com",), "Microsoft Teams"),
    (("webex.com",), "Webex"),
    (("gotomeeting.com",), "GoToMeeting"),
    (("slack.com",), "Slack"),
    (("discord",), "Discord"),
    (("skype.com",), "Skype"),
    (("bluejeans.com",), "BlueJeans"),
    (("jit.si",), "Jitsi"),
)


def detect_platform(link: str | None) -> str:
    if not link:
        return "Unknown"
    for needles, platform in _PLATFORMS:
        if any(needle in link for needle in needles):
            return platform
    return "Other"


def format_duration(minutes: float) -> str:
    """``45m``, ``2h`` or ``1h 30m``; negative or non-finite input is ``0m``."""
    if not math.isfinite(minutes) or minutes < 0:
        return "0m"
    minutes = round(minutes)
    if minutes < 60:
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h" if mins == 0 else f"{hours}h {mins}m"


class MeetingDuration(BaseModel):
    """One attended meeting, dated by the UTC day it started."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    event_id: str
    title: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    platform: str = "Unknown"
    day: date


@dataclass
class DurationStatistics:
    today_minutes: int = 0
    week_minutes: int = 0
    meeting_count: int = 0
    average_minutes: int = 0
    longest_title: str = "N/A"
    longest_minutes: int = 0
    weekly_breakdown: dict[str, int] = field(default_factory=dict)
    platform_breakdown: dict[str, int] = field(default_factory=dict)

    @property
    def daily_average(self) -> int:
        return round(self.week_minutes / 7)

    def to_dict(self) -> dict[str, Any]:
        return {
            "today": {"minutes": self.today_minutes, "formatted": format_duration(self.today_minutes)},
            "week": {
                "minutes": self.week_minutes,
                "formatted": format_duration(self.week_minutes),
                "daily_average": self.daily_average,
                "meeting_count": self.meeting_count,
            },
            "average_meeting_length": {
                "minutes": self.average_minutes,
                "formatted": format_duration(self.average_minutes),
            },
            "longest_meeting": {
                "title": self.longest_title,
                "minutes": self.longest_minutes,
                "formatted": format_duration(self.longest_minutes),
            },
            "weekly_breakdown": self.weekly_breakdown,
            "platform_breakdown": self.platform_breakdown,
        }


class DurationTracker:
    def __init__(self, store: StateStore, timers: TimerFacility, *, clock: Clock = utc_now) -> None:
        self._store = store
        self._timers = timers
        self._clock = clock

    async def records(self) -> list[MeetingDuration]:
        raw = await self._store.get(DURATIONS_KEY)
        records: list[MeetingDuration] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                records.append(MeetingDuration.model_validate(item))
            except ValidationError as exc:
                logger.warning("Dropping unreadable duration record: %s", exc.errors()[0]["msg"])
        return records

    async def active(self) -> tuple[CanonicalEvent, datetime] | None:
        """The meeting being tracked and when tracking began, if any."""
        record = await self._store.get(ACTIVE_MEETING_KEY)
        if not isinstance(record, dict):
            return None
        events = parse_canonical([record.get("event")])
        try:
            started = datetime.fromisoformat(record["start_time"])
        except (KeyError, TypeError, ValueError):
            started = None
        if not events or started is None:
            logger.warning("Discarding unreadable active meeting record")
            await self._store.remove(ACTIVE_MEETING_KEY)
            return None
        return events[0], started

    async def start(self, event: Event) -> None:
        """Begin tracking *event*; a meeting already being tracked is recorded first."""
        if await self._store.get(ACTIVE_MEETING_KEY) is not None:
            await self.stop()

        now = self._clock()
        await self._store.set(
            ACTIVE_MEETING_KEY,
            {"event": CanonicalEvent.from_event(event).to_store(), "start_time": now.isoformat()},
        )
        if event.end > now:
            await self._timers.create(AUTO_STOP_TIMER, to_epoch_ms(event.end + AUTO_STOP_GRACE))
        logger.info("Started tracking %s", event.display_title)

    async def stop(self) -> MeetingDuration | None:
        """Record the tracked meeting up to now and stop tracking."""
        active = await self.active()
        await self._timers.clear(AUTO_STOP_TIMER)
        if active is None:
            return None
        await self._store.remove(ACTIVE_MEETING_KEY)
        event, started = active
        return await self.record(event, started, self._clock())

    async def record(self, event: Event, start: datetime, end: datetime) -> MeetingDuration | None:
        minutes = (end - start) / timedelta(minutes=1)
        if minutes <= 0:
            return None

        entry = MeetingDuration(
            event_id=event.id,
            title=event.display_title,
            start_time=start,
            end_time=end,
            duration_minutes=round(minutes),
            platform=detect_platform(event.meeting_link),
            day=start.astimezone(UTC).date(),
        )
        cutoff = self._clock() - RETENTION
        kept = [r for r in [*await self.records(), entry] if r.start_time >= cutoff]
        await self._store.set(DURATIONS_KEY, [r.model_dump(mode="json") for r in kept])
        logger.info("Recorded %s for %s", format_duration(minutes), entry.title)
        return entry

    async def statistics(self) -> DurationStatistics:
        now = self._clock()
        today = now.astimezone(UTC).date()
        records = await self.records()
        week = [r for r in records if r.start_time >= now - WEEK]

        weekly = {(today - timedelta(days=i)).isoformat(): 0 for i in range(6, -1, -1)}
        for r in records:
            day = r.day.isoformat()
            if day in weekly:
                weekly[day] += r.duration_minutes

        platforms: dict[str, int] = defaultdict(int)
        for r in week:
            platforms[r.platform] += r.duration_minutes

        stats = DurationStatistics(
            today_minutes=sum(r.duration_minutes for r in records if r.day == today),
            week_minutes=sum(r.duration_minutes for r in week),
            meeting_count=len(week),
            weekly_breakdown=weekly,
            platform_breakdown=dict(platforms),
        )
        if week:
            stats.average_minutes = round(stats.week_minutes / len(week))
            longest = max(week, key=lambda r: r.duration_minutes)
            stats.longest_title = longest.title
            stats.longest_minutes = longest.duration_minutes
        return stats
