"""Wires producers, reconciler, scheduler, dispatcher and token managers.

The orchestrator owns no authoritative state: the canonical set, the live
triggers and snapshots, decline markers, token records and the connectivity
flag all live in the :class:`~meetbell.core.state.StateStore`.  Besides
meeting triggers it routes the daily summary timer to
:class:`~meetbell.summary.DailySummary` and the tracking auto-stop timer to
:class:`~meetbell.durations.DurationTracker`.  It can be discarded and
rebuilt at any time; :meth:`Orchestrator.start` re-derives everything.

Background work runs as asyncio tasks, one per loop:

- ``sync``, a provider resync every two minutes followed by pruning of ended
  meetings and a check that the daily summary is scheduled;
- ``tokens``, proactive refresh of every provider token every fifteen minutes;
- ``connectivity``, a probe every thirty seconds that refreshes and resyncs
  as soon as the network comes back;
- ``timers``, a one-second tick of the store-backed timer facility.

Host callbacks and loop iterations catch and log; a failing iteration never
stops its loop.  Direct entry points such as :meth:`Orchestrator.ingest` let
store errors reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

import httpx
from opentelemetry import trace

from meetbell import conflicts, reconciler
from meetbell.core.logging import log_context
from meetbell.core.state import StateStore
from meetbell.core.timers import Clock, StoreTimerFacility, TimerFacility, utc_now
from meetbell.dispatcher import NOTIFICATION_PREFIX, NotificationDispatcher
from meetbell.durations import AUTO_STOP_TIMER, DurationTracker
from meetbell.identity import event_key, is_meeting_trigger, trigger_name
from meetbell.models import CanonicalEvent, Event, EventSource, parse_canonical, parse_events
from meetbell.providers import CalendarProducer, FetchResult
from meetbell.scheduler import (
    DEFAULT_SNOOZE_MINUTES,
    ReminderScheduler,
    load_events,
    load_settings,
    save_events,
    snapshot_key,
)
from meetbell.summary import DAILY_SUMMARY_TIMER, DailySummary
from meetbell.tokens import TokenManager

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "sync::last"
ONLINE_KEY = "connectivity::online"
NOTIFICATION_KEY_PREFIX = "notification::"
DECLINED_KEY_PREFIX = "declined::"
DEFAULT_PROBE_URL = "https://www.google.com/generate_204"

ConnectivityProbe = Callable[[], Awaitable[bool]]


def declined_key(event: Event) -> str:
    """Marker key recording that the user declined *event*'s meeting."""
    return f"{DECLINED_KEY_PREFIX}{event_key(event)}"


def http_probe(
    http_client: httpx.AsyncClient,
    url: str = DEFAULT_PROBE_URL,
    timeout: float = 5.0,
) -> ConnectivityProbe:
    """Build a probe that reports online when *url* answers at all."""

    async def probe() -> bool:
        try:
            await http_client.head(url, timeout=timeout)
        except httpx.HTTPError:
            return False
        return True

    return probe


class Orchestrator:
    """Entry points for producers and the host, plus the periodic loops."""

    def __init__(
        self,
        store: StateStore,
        timers: TimerFacility,
        scheduler: ReminderScheduler,
        dispatcher: NotificationDispatcher,
        producers: Sequence[CalendarProducer] = (),
        *,
        probe: ConnectivityProbe | None = None,
        summary: DailySummary | None = None,
        durations: DurationTracker | None = None,
        clock: Clock = utc_now,
        horizon: timedelta = reconciler.DEFAULT_HORIZON,
        sync_interval: float = 120.0,
        token_interval: float = 900.0,
        connectivity_interval: float = 30.0,
        tick_interval: float = 1.0,
    ) -> None:
        self._store = store
        self._timers = timers
        self._scheduler = scheduler
        self._dispatcher = dispatcher
        self._producers = list(producers)
        self._probe = probe
        self._summary = summary or DailySummary(store, timers, dispatcher, clock=clock)
        self._durations = durations or DurationTracker(store, timers, clock=clock)
        self._clock = clock
        self._horizon = horizon
        self._intervals = {
            "sync": sync_interval,
            "tokens": token_interval,
            "connectivity": connectivity_interval,
            "timers": tick_interval,
        }
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def summary(self) -> DailySummary:
        return self._summary

    @property
    def durations(self) -> DurationTracker:
        return self._durations

    @property
    def token_managers(self) -> list[TokenManager]:
        return [producer.tokens for producer in self._producers]

    async def _connected_providers(self) -> set[str]:
        connected: set[str] = set()
        for producer in self._producers:
            if await producer.tokens.status():
                connected.add(producer.provider)
        return connected

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def ingest(
        self,
        events: Iterable[Mapping[str, Any] | Event],
        source: EventSource | str | None = None,
    ) -> list[CanonicalEvent]:
        """Fold a producer batch into the canonical set and schedule it.

        Meetings the user has declined, either upstream or through
        :meth:`decline`, are cancelled and removed rather than merged.

        Returns:
            The canonical set after the merge.
        """
        parsed = parse_events(events, source=source)
        parsed = reconciler.drop_scraped_duplicates(parsed, await self._connected_providers())
        now = self._clock()
        upcoming = reconciler.within_horizon(parsed, now, self._horizon)
        logger.info(
            "Ingesting %d upcoming event(s) of %d reported%s",
            len(upcoming),
            len(parsed),
            f" from {source}" if source else "",
        )

        declined = {key[len(DECLINED_KEY_PREFIX) :] for key in await self._store.keys(DECLINED_KEY_PREFIX)}
        rejected: dict[str, Event] = {}
        accepted: list[Event] = []
        for event in upcoming:
            key = event_key(event)
            if event.user_declined or key in declined:
                rejected[key] = event
            else:
                accepted.append(event)
        for event in rejected.values():
            logger.info("Dropping declined meeting: %s", event.display_title)
            await self._scheduler.cancel(event)

        stored = [
            e
            for e in await load_events(self._store)
            if e.end > now and event_key(e) not in rejected
        ]
        canonical = conflicts.annotate(reconciler.reconcile(stored, accepted))
        # Persist before scheduling so restore() can repair an interrupted batch.
        await save_events(self._store, canonical)
        await self._scheduler.schedule_all(canonical)
        await self.refresh_badge(canonical)
        return canonical

    def _producer_for(self, event: Event) -> CalendarProducer | None:
        return next((p for p in self._producers if p.source == event.source), None)

    async def decline(self, event_id: str) -> int:
        """Decline a meeting by producer id or trigger name.

        The meeting is declined at its provider when it came from a connected
        provider API, and a marker keeps later reports of it from being
        rescheduled until it ends.

        Returns:
            The number of stored events removed.
        """
        matching = [
            e for e in await load_events(self._store) if e.id == event_id or trigger_name(e) == event_id
        ]
        if not matching and is_meeting_trigger(event_id):
            matching = parse_canonical([await self._store.get(snapshot_key(event_id))])

        for event in matching:
            await self._store.set(declined_key(event), {"end": event.end.isoformat()})
            producer = self._producer_for(event)
            if producer is None:
                continue
            if not await producer.tokens.status():
                logger.info(
                    "%s not connected; %s declined locally only",
                    producer.provider,
                    event.display_title,
                )
                continue
            with log_context(provider=producer.provider):
                await producer.decline(event.id)

        removed = await self._scheduler.decline(event_id)
        await self.refresh_badge()
        return removed

    async def snooze(
        self,
        event: Mapping[str, Any] | Event,
        minutes: int = DEFAULT_SNOOZE_MINUTES,
    ) -> str | None:
        parsed = parse_events([event])
        if not parsed:
            logger.warning("Cannot snooze an unreadable event")
            return None
        return await self._scheduler.snooze(parsed[0], minutes)

    async def resync(self) -> dict[str, FetchResult]:
        """Fetch every connected provider and ingest what they return."""
        tracer = trace.get_tracer("meetbell")
        with tracer.start_as_current_span("meetbell.sync") as span:
            results: dict[str, FetchResult] = {}
            fetched: list[Event] = []
            for producer in self._producers:
                with log_context(provider=producer.provider):
                    if not await producer.tokens.status():
                        continue
                    result = await producer.fetch()
                results[producer.provider] = result
                if result.success:
                    fetched.extend(result.events)

            span.set_attribute("providers_synced", len(results))
            span.set_attribute("events_fetched", len(fetched))
            if any(r.success for r in results.values()):
                await self.ingest(fetched)
                await self._store.set(LAST_SYNC_KEY, self._clock().isoformat())
            return results

    async def sync_cycle(self) -> None:
        """One periodic sync: resync, prune ended state, keep the summary scheduled."""
        await self.resync()
        if await self.prune():
            await self.refresh_badge()
        await self._summary.schedule()

    async def connection_status(self) -> dict[str, bool]:
        return {producer.provider: await producer.tokens.status() for producer in self._producers}

    async def _dispatch_reminder(self, event: CanonicalEvent) -> None:
        config = await load_settings(self._store)
        if event.meeting_link:
            await self._store.set(
                f"{NOTIFICATION_KEY_PREFIX}{NOTIFICATION_PREFIX}{event.id}",
                {
                    "meeting_link": event.meeting_link,
                    "end": event.end.isoformat(),
                    "event": event.to_store(),
                },
            )
        await self._dispatcher.dispatch(event, config)

    async def on_timer_fired(self, name: str) -> None:
        """Route a fired durable timer to its handler.

        The badge is left as the reminder flash ends it; the next ingest or
        sync brings back the meeting count.
        """
        with log_context(trigger=name):
            try:
                if name == DAILY_SUMMARY_TIMER:
                    await self._summary.handle_fire()
                elif name == AUTO_STOP_TIMER:
                    await self._durations.stop()
                elif is_meeting_trigger(name):
                    await self._scheduler.handle_fire(name, self._dispatch_reminder)
                else:
                    logger.debug("Ignoring unknown timer %s", name)
            except Exception:
                logger.exception("Failed to handle fired timer %s", name)

    async def on_notification_action(self, notification_id: str, button_index: int = 0) -> bool:
        """Handle a click on a reminder notification or its "Join Now" button.

        Opening the link also starts tracking time spent in the meeting.

        Returns:
            ``True`` when a meeting link was opened.
        """
        if button_index != 0 or not notification_id.startswith(NOTIFICATION_PREFIX):
            return False
        key = f"{NOTIFICATION_KEY_PREFIX}{notification_id}"
        try:
            record = await self._store.get(key)
            await self._store.remove(key)
            link = record.get("meeting_link") if isinstance(record, dict) else None
            if not link:
                logger.debug("No meeting link recorded for notification %s", notification_id)
                return False
            await self._dispatcher.open_meeting(link)
            joined = parse_canonical([record.get("event")])
            if joined:
                await self._durations.start(joined[0])
        except Exception:
            logger.exception("Failed to handle notification action %s", notification_id)
            return False
        return True

    async def stop_tracking(self) -> None:
        """The host reports the joined meeting closed."""
        try:
            await self._durations.stop()
        except Exception:
            logger.exception("Failed to stop meeting tracking")

    async def refresh_badge(self, events: Sequence[CanonicalEvent] | None = None) -> None:
        if events is None:
            events = await load_events(self._store)
        now = self._clock()
        upcoming = [e for e in events if e.start_time > now and not e.user_declined]
        await self._dispatcher.update_badge(
            len(upcoming), has_conflicts=any(e.has_conflict for e in upcoming)
        )

    # ------------------------------------------------------------------
    # Startup and periodic work
    # ------------------------------------------------------------------

    async def startup(self) -> None:
        """Re-derive every durable trigger and bring the canonical set up to date."""
        await self._scheduler.restore()
        await self.refresh_tokens()
        await self.resync()

        stored = await load_events(self._store)
        deduplicated = conflicts.annotate(reconciler.deduplicate(stored))
        if len(deduplicated) != len(stored):
            logger.info(
                "Removed %d duplicate stored event(s); rescheduling",
                len(stored) - len(deduplicated),
            )
            await save_events(self._store, deduplicated)
            await self._scheduler.rebuild(deduplicated)

        await self.prune()
        await self.refresh_badge()
        await self._summary.schedule()

    async def prune(self) -> int:
        """Forget ended meetings, their snapshots, link records and decline markers.

        Returns:
            The number of canonical events removed.
        """
        pruned = await self._scheduler.prune()
        if pruned:
            logger.info("Pruned %d ended event(s)", pruned)
        await self._prune_ended(NOTIFICATION_KEY_PREFIX)
        await self._prune_ended(DECLINED_KEY_PREFIX)
        return pruned

    async def _prune_ended(self, prefix: str) -> None:
        now = self._clock()
        for key in await self._store.keys(prefix):
            record = await self._store.get(key)
            try:
                ended = datetime.fromisoformat(record["end"]) <= now
            except (TypeError, KeyError, ValueError):
                ended = True
            if ended:
                await self._store.remove(key)

    async def refresh_tokens(self) -> None:
        for manager in self.token_managers:
            await manager.proactive_refresh()

    async def check_connectivity(self) -> bool:
        """Probe the network; refresh and resync when it has just come back."""
        if self._probe is None:
            return True
        online = await self._probe()
        was_online = await self._store.get(ONLINE_KEY)
        await self._store.set(ONLINE_KEY, online)
        if online and was_online is False:
            logger.info("Connectivity restored; refreshing tokens and resyncing")
            await self.refresh_tokens()
            await self.resync()
        elif not online and was_online is not False:
            logger.warning("Connectivity lost")
        return online

    async def _tick(self) -> None:
        if isinstance(self._timers, StoreTimerFacility):
            await self._timers.tick(self.on_timer_fired)

    async def start(self) -> None:
        if self._tasks:
            logger.warning("Orchestrator already running")
            return

        try:
            await self.startup()
        except Exception:
            logger.exception("Startup reconciliation failed")

        loops: dict[str, Callable[[], Coroutine[Any, Any, object]]] = {
            "sync": self.sync_cycle,
            "tokens": self.refresh_tokens,
            "connectivity": self.check_connectivity,
        }
        if isinstance(self._timers, StoreTimerFacility):
            loops["timers"] = self._tick

        for name, action in loops.items():
            self._tasks[name] = asyncio.create_task(
                self._loop(name, self._intervals[name], action), name=f"meetbell-{name}"
            )
        logger.info("Started background loops: %s", ", ".join(self._tasks))

    async def stop(self) -> None:
        if not self._tasks:
            return

        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Background loops stopped")

    async def _loop(
        self,
        name: str,
        interval: float,
        action: Callable[[], Coroutine[Any, Any, object]],
    ) -> None:
        try:
            while True:
                await asyncio.sleep(interval)

                try:
                    await action()
                except Exception:
                    logger.exception("Periodic %s iteration failed", name)

        except asyncio.CancelledError:
            logger.debug("%s loop cancelled", name)
            raise
