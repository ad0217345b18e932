"""Tests for meetbell.orchestrator: ingestion, firing, startup and periodic work."""

from __future__ import annotations

from datetime import UTC, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog

from meetbell.core.timers import to_epoch_ms
from meetbell.dispatcher import BADGE_DEFAULT, BADGE_URGENT, BADGE_WARNING, NotificationDispatcher
from meetbell.durations import ACTIVE_MEETING_KEY, AUTO_STOP_TIMER
from meetbell.identity import TRIGGER_PREFIX, trigger_name
from meetbell.models import CanonicalEvent, EventSource
from meetbell.orchestrator import (
    DECLINED_KEY_PREFIX,
    LAST_SYNC_KEY,
    ONLINE_KEY,
    Orchestrator,
    declined_key,
)
from meetbell.providers import FetchResult
from meetbell.scheduler import ReminderScheduler, load_events, save_events
from meetbell.summary import DAILY_SUMMARY_TIMER, DailySummary

pytestmark = pytest.mark.unit


def _fake_producer(name: str, *, connected: bool = True, result: FetchResult | None = None):
    producer = MagicMock()
    producer.provider = name
    producer.source = EventSource(f"{name}-api")
    producer.decline = AsyncMock(return_value=True)
    producer.tokens = MagicMock()
    producer.tokens.status = AsyncMock(return_value=connected)
    producer.tokens.proactive_refresh = AsyncMock(return_value=True if connected else None)
    producer.fetch = AsyncMock(return_value=result or FetchResult(success=True))
    return producer


@pytest.fixture
def build(store, timers, clock, output, sleep):
    def _build(producers=(), probe=None) -> Orchestrator:
        dispatcher = NotificationDispatcher(output, sleep=sleep, clock=clock)
        return Orchestrator(
            store,
            timers,
            ReminderScheduler(store, timers, clock=clock),
            dispatcher,
            producers,
            probe=probe,
            summary=DailySummary(store, timers, dispatcher, clock=clock, tz=UTC),
            clock=clock,
        )

    return _build


def _raw(make_event, title="Design Review", **kwargs) -> dict:
    return make_event(title, **kwargs).model_dump(mode="json")


# ============================================================================
# Ingestion
# ============================================================================


class TestIngest:
    async def test_batch_is_stored_scheduled_and_counted(self, build, store, timers, output, make_event):
        orchestrator = build()
        canonical = await orchestrator.ingest([_raw(make_event)], source="google-dom")

        assert [e.title for e in canonical] == ["Design Review"]
        assert [e.title for e in await load_events(store)] == ["Design Review"]
        assert await timers.names() == [trigger_name(canonical[0])]
        assert output.named("set_badge")[-1] == ("1", BADGE_DEFAULT)

    async def test_same_meeting_from_two_producers_schedules_once(self, build, timers, make_event):
        orchestrator = build()
        await orchestrator.ingest([_raw(make_event, id="dom-1")], source="google-dom")
        canonical = await orchestrator.ingest(
            [_raw(make_event, "design review", id="api-1", meeting_link="https://meet.google.com/a-b-c")],
            source="google-api",
        )

        assert [e.id for e in canonical] == ["api-1"]
        assert len(await timers.names()) == 1

    async def test_scraped_reports_skipped_when_api_connected(self, build, store, make_event):
        orchestrator = build(producers=[_fake_producer("google")])
        await orchestrator.ingest([_raw(make_event)], source=EventSource.google_dom)
        assert await load_events(store) == []

    async def test_events_outside_horizon_ignored(self, build, store, make_event):
        orchestrator = build()
        await orchestrator.ingest(
            [
                _raw(make_event, "Past", starts_in=timedelta(minutes=-5)),
                _raw(make_event, "Tomorrow", starts_in=timedelta(hours=30)),
            ],
            source="outlook-dom",
        )
        assert await load_events(store) == []

    async def test_conflicts_annotated_and_badge_warns(self, build, output, make_event):
        orchestrator = build()
        canonical = await orchestrator.ingest(
            [
                _raw(make_event, "A", starts_in=timedelta(minutes=10)),
                _raw(make_event, "B", starts_in=timedelta(minutes=20)),
            ],
            source="google-dom",
        )
        assert all(e.has_conflict for e in canonical)
        assert output.named("set_badge")[-1] == ("2", BADGE_WARNING)

    async def test_malformed_events_dropped(self, build, store):
        orchestrator = build()
        await orchestrator.ingest([{"id": "x", "title": "No start"}], source="google-dom")
        assert await load_events(store) == []

    async def test_declined_upstream_cancels_and_removes(self, build, store, timers, make_event):
        orchestrator = build()
        await orchestrator.ingest([_raw(make_event)], source="google-api")
        assert len(await timers.names()) == 1

        declined = [{"email": "me@example.com", "self": True, "responseStatus": "declined"}]
        canonical = await orchestrator.ingest(
            [_raw(make_event, attendees=declined)], source="google-api"
        )

        assert canonical == []
        assert await timers.names() == []
        assert await load_events(store) == []

    async def test_ended_stored_events_dropped(self, build, store, clock, make_event):
        orchestrator = build()
        await orchestrator.ingest([_raw(make_event)], source="google-dom")

        clock.advance(minutes=45)
        assert await orchestrator.ingest([], source="google-dom") == []
        assert await load_events(store) == []


# ============================================================================
# Firing and user actions
# ============================================================================


class TestFiring:
    async def test_fired_timer_dispatches_and_join_opens_link(self, build, timers, clock, output, make_event):
        orchestrator = build()
        link = "https://meet.google.com/abc-defg-hij"
        (event,) = await orchestrator.ingest([_raw(make_event, meeting_link=link)], source="google-dom")

        clock.advance(minutes=8)
        assert await timers.tick(orchestrator.on_timer_fired) == 1

        ((notification_id, _),) = output.named("create_notification")
        assert notification_id == f"meetbell_{event.id}"

        assert await orchestrator.on_notification_action(notification_id) is True
        assert output.named("open_url") == [link]
        # The link record is consumed by the first click.
        assert await orchestrator.on_notification_action(notification_id) is False

    async def test_badge_stays_urgent_after_reminder(self, build, timers, clock, output, make_event):
        orchestrator = build()
        await orchestrator.ingest([_raw(make_event)], source="google-dom")

        clock.advance(minutes=8)
        await timers.tick(orchestrator.on_timer_fired)

        assert output.named("set_badge")[-1] == ("2m", BADGE_URGENT)

    async def test_fire_binds_trigger_to_log_context(self, build):
        orchestrator = build()
        seen: dict = {}

        async def handle_fire(name, dispatch):
            seen.update(structlog.contextvars.get_contextvars())

        orchestrator._scheduler.handle_fire = handle_fire
        await orchestrator.on_timer_fired("meeting_x_1")

        assert seen["trigger"] == "meeting_x_1"
        assert "trigger" not in structlog.contextvars.get_contextvars()

    async def test_join_tracks_until_auto_stop(self, build, store, timers, clock, make_event):
        orchestrator = build()
        link = "https://zoom.us/j/123"
        (event,) = await orchestrator.ingest([_raw(make_event, meeting_link=link)], source="google-dom")
        clock.advance(minutes=8)
        await timers.tick(orchestrator.on_timer_fired)

        assert await orchestrator.on_notification_action(f"meetbell_{event.id}") is True
        assert await store.get(ACTIVE_MEETING_KEY) is not None
        assert await timers.get(AUTO_STOP_TIMER) == to_epoch_ms(event.end + timedelta(minutes=5))

        clock.advance(minutes=37)
        assert await timers.tick(orchestrator.on_timer_fired) == 1

        (record,) = await orchestrator.durations.records()
        assert record.duration_minutes == 37
        assert record.platform == "Zoom"
        assert await store.get(ACTIVE_MEETING_KEY) is None

    async def test_daily_summary_fires_and_reschedules(self, build, store, timers, clock, output, make_event):
        orchestrator = build()
        await save_events(store, [CanonicalEvent.from_event(make_event("Planning"))])
        assert await orchestrator.summary.schedule() == clock() + timedelta(hours=1)

        clock.advance(hours=1)
        assert await timers.tick(orchestrator.on_timer_fired) == 1

        ((notification_id, options),) = output.named("create_notification")
        assert notification_id == DAILY_SUMMARY_TIMER
        assert options.title == "📅 Today: 1 Meeting"
        assert options.message.startswith("9:10 AM - Planning")
        assert await timers.get(DAILY_SUMMARY_TIMER) == to_epoch_ms(clock() + timedelta(days=1))

    async def test_non_meeting_timer_ignored(self, build, output):
        await build().on_timer_fired("CALENDAR_API_SYNC")
        assert output.calls == []

    async def test_secondary_button_ignored(self, build):
        assert await build().on_notification_action("meetbell_x", button_index=1) is False

    async def test_fire_handler_failure_is_logged(self, build, store, make_event):
        orchestrator = build()
        orchestrator._scheduler.handle_fire = AsyncMock(side_effect=RuntimeError("store down"))
        await orchestrator.on_timer_fired("meeting_x_1")

    async def test_decline_and_snooze(self, build, store, timers, make_event):
        orchestrator = build()
        (event,) = await orchestrator.ingest([_raw(make_event)], source="google-dom")

        snooze_name = await orchestrator.snooze(event.to_store(), minutes=2)
        assert snooze_name == f"{trigger_name(event)}_snooze"

        assert await orchestrator.decline(event.id) == 1
        assert await timers.names() == []
        assert await load_events(store) == []


class TestDecline:
    async def test_decline_holds_across_resync(self, build, store, timers, make_event):
        event = make_event("From API", id="g-1", source="google-api")
        google = _fake_producer("google", result=FetchResult(success=True, events=[event]))
        orchestrator = build(producers=[google])
        await orchestrator.resync()
        assert len(await timers.names()) == 1

        assert await orchestrator.decline("g-1") == 1

        google.decline.assert_awaited_once_with("g-1")
        assert await store.get(declined_key(event)) == {"end": event.end.isoformat()}

        # The provider still reports the meeting; the marker keeps it out.
        await orchestrator.resync()
        assert await timers.names() == []
        assert await load_events(store) == []

    async def test_disconnected_provider_declines_locally(self, build, store, make_event):
        google = _fake_producer("google", connected=False)
        orchestrator = build(producers=[google])
        (event,) = await orchestrator.ingest([_raw(make_event)], source="google-api")

        await orchestrator.decline(event.id)

        google.decline.assert_not_awaited()
        assert await store.keys(DECLINED_KEY_PREFIX) == [declined_key(event)]

    async def test_scraped_meeting_not_sent_to_provider(self, build, store, make_event):
        outlook = _fake_producer("outlook")
        orchestrator = build(producers=[outlook])
        (event,) = await orchestrator.ingest([_raw(make_event)], source="google-dom")

        await orchestrator.decline(event.id)

        outlook.decline.assert_not_awaited()
        assert await store.get(declined_key(event)) is not None

    async def test_decline_by_trigger_name_uses_snapshot(self, build, store, timers, make_event):
        orchestrator = build()
        (event,) = await orchestrator.ingest([_raw(make_event)], source="google-dom")
        await save_events(store, [])

        assert await orchestrator.decline(trigger_name(event)) == 0

        assert await timers.names() == []
        assert await store.get(declined_key(event)) is not None

    async def test_marker_pruned_once_meeting_ends(self, build, store, clock, make_event):
        orchestrator = build()
        (event,) = await orchestrator.ingest([_raw(make_event)], source="google-dom")
        await orchestrator.decline(event.id)

        clock.advance(minutes=30)
        await orchestrator.prune()
        assert await store.keys(DECLINED_KEY_PREFIX) == [declined_key(event)]

        clock.advance(minutes=15)
        await orchestrator.prune()
        assert await store.keys(DECLINED_KEY_PREFIX) == []


# ============================================================================
# Provider sync
# ============================================================================


class TestResync:
    async def test_connected_providers_fetched_and_ingested(self, build, store, clock, make_event):
        google = _fake_producer(
            "google",
            result=FetchResult(success=True, events=[make_event("From API", source="google-api")]),
        )
        outlook = _fake_producer("outlook", connected=False)
        orchestrator = build(producers=[google, outlook])

        results = await orchestrator.resync()

        assert set(results) == {"google"}
        outlook.fetch.assert_not_awaited()
        assert [e.title for e in await load_events(store)] == ["From API"]
        assert await store.get(LAST_SYNC_KEY) == clock().isoformat()

    async def test_failed_fetch_leaves_state_alone(self, build, store):
        google = _fake_producer("google", result=FetchResult(success=False, error="Not authenticated"))
        orchestrator = build(producers=[google])

        await orchestrator.resync()

        assert await store.get(LAST_SYNC_KEY) is None

    async def test_fetch_binds_provider_to_log_context(self, build):
        google = _fake_producer("google")
        seen: dict = {}

        async def fetch():
            seen.update(structlog.contextvars.get_contextvars())
            return FetchResult(success=True)

        google.fetch = AsyncMock(side_effect=fetch)
        await build(producers=[google]).resync()

        assert seen["provider"] == "google"

    async def test_sync_cycle_prunes_ended_meetings(self, build, store, timers, clock, make_event):
        google = _fake_producer("google", result=FetchResult(success=False, error="Backend Error"))
        orchestrator = build(producers=[google])
        await orchestrator.ingest([_raw(make_event)], source="google-api")

        clock.advance(minutes=45)
        await orchestrator.sync_cycle()

        assert await load_events(store) == []
        assert await timers.get(DAILY_SUMMARY_TIMER) is not None

    async def test_connection_status(self, build):
        orchestrator = build(
            producers=[_fake_producer("google"), _fake_producer("outlook", connected=False)]
        )
        assert await orchestrator.connection_status() == {"google": True, "outlook": False}


# ============================================================================
# Startup and periodic work
# ============================================================================


class TestStartup:
    async def test_startup_restores_deduplicates_and_prunes(self, build, store, timers, make_event):
        duplicate_a = CanonicalEvent.from_event(make_event("Standup", id="a"))
        duplicate_b = CanonicalEvent.from_event(
            make_event("standup", id="b", meeting_link="https://zoom.us/j/1", source="outlook-api")
        )
        ended = CanonicalEvent.from_event(
            make_event("Yesterday", starts_in=timedelta(hours=-5), duration=timedelta(hours=1))
        )
        await save_events(store, [duplicate_a, duplicate_b, ended])
        google = _fake_producer("google")
        orchestrator = build(producers=[google])

        await orchestrator.startup()

        stored = await load_events(store)
        assert [e.id for e in stored] == ["b"]
        assert await timers.names(TRIGGER_PREFIX) == [trigger_name(duplicate_b)]
        assert await timers.get(DAILY_SUMMARY_TIMER) is not None
        google.tokens.proactive_refresh.assert_awaited_once()
        google.fetch.assert_awaited_once()

    async def test_connectivity_recovery_refreshes_and_resyncs(self, build, store):
        google = _fake_producer("google")
        probe = AsyncMock(side_effect=[True, False, True])
        orchestrator = build(producers=[google], probe=probe)

        assert await orchestrator.check_connectivity() is True
        assert await orchestrator.check_connectivity() is False
        assert await store.get(ONLINE_KEY) is False
        google.fetch.assert_not_awaited()

        assert await orchestrator.check_connectivity() is True
        google.tokens.proactive_refresh.assert_awaited_once()
        google.fetch.assert_awaited_once()

    async def test_start_and_stop_loops(self, build):
        orchestrator = build()
        await orchestrator.start()
        assert orchestrator.running

        await orchestrator.stop()
        assert not orchestrator.running
