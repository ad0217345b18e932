"""Tests for meetbell.durations: meeting time tracking and weekly statistics."""

from __future__ import annotations

import math
from datetime import timedelta

import pytest

from meetbell.core.timers import to_epoch_ms
from meetbell.durations import (
    ACTIVE_MEETING_KEY,
    AUTO_STOP_TIMER,
    DURATIONS_KEY,
    DurationTracker,
    detect_platform,
    format_duration,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def tracker(store, timers, clock):
    return DurationTracker(store, timers, clock=clock)


# ============================================================================
# Helpers
# ============================================================================


class TestDetectPlatform:
    @pytest.mark.parametrize(
        "link, platform",
        [
            ("https://meet.google.com/abc-defg-hij", "Google Meet"),
            ("https://acme.zoom.us/j/123", "Zoom"),
            ("https://teams.microsoft.com/l/meetup-join/x", "Microsoft Teams"),
            ("https://acme.webex.com/meet/pat", "Webex"),
            ("https://meet.jit.si/standup", "Jitsi"),
            ("https://example.com/room", "Other"),
            (None, "Unknown"),
        ],
    )
    def test_known_platforms(self, link, platform):
        assert detect_platform(link) == platform


class TestFormatDuration:
    @pytest.mark.parametrize(
        "minutes, expected",
        [(0, "0m"), (45, "45m"), (59.6, "1h"), (120, "2h"), (90, "1h 30m"), (-5, "0m"), (math.nan, "0m")],
    )
    def test_formats(self, minutes, expected):
        assert format_duration(minutes) == expected


# ============================================================================
# Tracking
# ============================================================================


class TestTracking:
    async def test_start_sets_auto_stop_after_scheduled_end(self, tracker, store, timers, make_event):
        event = make_event("Standup", starts_in=timedelta(0), meeting_link="https://meet.google.com/a-b-c")

        await tracker.start(event)

        assert (await store.get(ACTIVE_MEETING_KEY))["start_time"] == "2025-03-10T09:00:00+00:00"
        assert await timers.get(AUTO_STOP_TIMER) == to_epoch_ms(event.end + timedelta(minutes=5))

    async def test_stop_records_elapsed_time(self, tracker, store, timers, clock, make_event):
        await tracker.start(make_event("Standup", meeting_link="https://meet.google.com/a-b-c"))
        clock.advance(minutes=25)

        record = await tracker.stop()

        assert record.duration_minutes == 25
        assert record.platform == "Google Meet"
        assert record.day.isoformat() == "2025-03-10"
        assert await store.get(ACTIVE_MEETING_KEY) is None
        assert await timers.get(AUTO_STOP_TIMER) is None
        assert [r.title for r in await tracker.records()] == ["Standup"]

    async def test_stop_without_active_meeting(self, tracker):
        assert await tracker.stop() is None

    async def test_starting_another_meeting_records_the_first(self, tracker, clock, make_event):
        await tracker.start(make_event("First"))
        clock.advance(minutes=10)
        await tracker.start(make_event("Second"))

        (record,) = await tracker.records()
        assert (record.title, record.duration_minutes) == ("First", 10)
        active, _ = await tracker.active()
        assert active.title == "Second"

    async def test_zero_length_meetings_not_recorded(self, tracker, make_event):
        await tracker.start(make_event("Blip"))
        assert await tracker.stop() is None
        assert await tracker.records() == []

    async def test_unreadable_active_record_discarded(self, tracker, store):
        await store.set(ACTIVE_MEETING_KEY, {"event": {"title": "no id"}, "start_time": "later"})
        assert await tracker.active() is None
        assert await store.get(ACTIVE_MEETING_KEY) is None

    async def test_records_older_than_thirty_days_dropped(self, tracker, clock, make_event):
        event = make_event("Old")
        await tracker.record(event, clock() - timedelta(days=40), clock() - timedelta(days=40, minutes=-30))
        await tracker.record(event, clock() - timedelta(hours=2), clock() - timedelta(hours=1))

        assert [r.duration_minutes for r in await tracker.records()] == [60]


# ============================================================================
# Statistics
# ============================================================================


class TestStatistics:
    async def test_empty_history(self, tracker):
        stats = await tracker.statistics()
        assert stats.today_minutes == 0
        assert stats.longest_title == "N/A"
        assert list(stats.weekly_breakdown.values()) == [0] * 7

    async def test_week_summary(self, tracker, clock, make_event):
        zoom = make_event("Sales sync", meeting_link="https://zoom.us/j/9")
        meet = make_event("Standup", meeting_link="https://meet.google.com/a-b-c")
        now = clock()
        await tracker.record(meet, now - timedelta(hours=1), now - timedelta(minutes=45))
        await tracker.record(zoom, now - timedelta(days=2), now - timedelta(days=2) + timedelta(minutes=90))
        await tracker.record(meet, now - timedelta(days=10), now - timedelta(days=10) + timedelta(minutes=30))

        stats = await tracker.statistics()

        assert stats.today_minutes == 15
        assert stats.week_minutes == 105
        assert stats.meeting_count == 2
        assert stats.average_minutes == 52
        assert (stats.longest_title, stats.longest_minutes) == ("Sales sync", 90)
        assert stats.weekly_breakdown["2025-03-08"] == 90
        assert stats.weekly_breakdown["2025-03-10"] == 15
        assert "2025-02-28" not in stats.weekly_breakdown
        assert stats.platform_breakdown == {"Google Meet": 15, "Zoom": 90}
        assert stats.to_dict()["week"]["daily_average"] == 15

    async def test_stored_records_survive_reload(self, tracker, store, timers, clock, make_event):
        await tracker.record(make_event("Standup"), clock() - timedelta(minutes=20), clock())
        assert isinstance(await store.get(DURATIONS_KEY), list)

        reloaded = DurationTracker(store, timers, clock=clock)
        assert (await reloaded.statistics()).today_minutes == 20
