"""Reminder scheduler: canonical events to durable, idempotent timed triggers.

Per logical meeting the scheduler walks ``Unscheduled -> Scheduled -> Fired ->
Consumed``.  Snoozing a fired reminder creates an independent trigger named
after the original plus ``_snooze``; it is not a transition of the original.

Every transition is re-derivable from the state store:

- the canonical set lives under ``events``;
- each live trigger has a durable timer (see :mod:`meetbell.core.timers`)
  and an event snapshot under ``snapshot::<trigger name>``.

Trigger names come from :func:`meetbell.identity.trigger_name`, so
re-ingesting the same meeting from another producer, or re-walking the stored
set after a restart, finds the existing timer and does nothing.  A trigger
that fires is consumed even when dispatch fails: a missed reminder is
preferred over a duplicate at an unpredictable later time.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from enum import StrEnum

from pydantic import ValidationError

from meetbell.core.state import StateStore
from meetbell.core.timers import Clock, TimerFacility, to_epoch_ms, utc_now
from meetbell.identity import (
    TRIGGER_PREFIX,
    is_snooze_trigger,
    snooze_trigger_name,
    trigger_name,
)
from meetbell.models import CanonicalEvent, Event, ReminderConfig, parse_canonical

logger = logging.getLogger(__name__)

EVENTS_KEY = "events"
SETTINGS_KEY = "settings"
SNAPSHOT_KEY_PREFIX = "snapshot::"
DEFAULT_SNOOZE_MINUTES = 1

Dispatch = Callable[[CanonicalEvent], Awaitable[object]]


class ScheduleOutcome(StrEnum):
    scheduled = "scheduled"
    already_scheduled = "already_scheduled"
    declined = "declined"
    past_due = "past_due"
    failed = "failed"


def snapshot_key(name: str) -> str:
    return f"{SNAPSHOT_KEY_PREFIX}{name}"


async def load_events(store: StateStore) -> list[CanonicalEvent]:
    return parse_canonical(await store.get(EVENTS_KEY))


async def save_events(store: StateStore, events: Iterable[CanonicalEvent]) -> None:
    await store.set(EVENTS_KEY, [event.to_store() for event in events])


async def load_settings(store: StateStore) -> ReminderConfig:
    raw = await store.get(SETTINGS_KEY)
    if not isinstance(raw, dict):
        return ReminderConfig()
    try:
        return ReminderConfig.model_validate(raw)
    except ValidationError:
        logger.warning("Stored reminder settings are invalid; using defaults")
        return ReminderConfig()


async def save_settings(store: StateStore, config: ReminderConfig) -> None:
    await store.set(SETTINGS_KEY, config.model_dump(mode="json"))


class ReminderScheduler:
    """Derive, persist and fire reminder triggers.

    The scheduler keeps no state of its own between calls; it may be
    discarded and rebuilt at any time.
    """

    def __init__(
        self,
        store: StateStore,
        timers: TimerFacility,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._timers = timers
        self._clock = clock

    async def schedule(
        self,
        event: CanonicalEvent,
        *,
        config: ReminderConfig | None = None,
    ) -> ScheduleOutcome:
        """Move *event* to ``Scheduled`` unless declined, already scheduled or too late."""
        if event.user_declined:
            logger.info("Skipping reminder for declined meeting: %s", event.display_title)
            return ScheduleOutcome.declined

        name = trigger_name(event)
        if await self._timers.get(name) is not None:
            logger.debug("Reminder already scheduled for %s", event.display_title)
            return ScheduleOutcome.already_scheduled

        config = config or await load_settings(self._store)
        fire_at = event.start_time - timedelta(minutes=config.lead_minutes)
        if fire_at <= self._clock():
            logger.debug("Reminder time already passed for %s", event.display_title)
            return ScheduleOutcome.past_due

        # Snapshot first: a restart between the two writes is repaired by restore().
        await self._store.set(snapshot_key(name), event.to_store())
        await self._timers.create(name, to_epoch_ms(fire_at))
        logger.info(
            "Scheduled reminder for %s at %s", event.display_title, fire_at.isoformat()
        )
        return ScheduleOutcome.scheduled

    async def schedule_all(self, events: Iterable[CanonicalEvent]) -> list[ScheduleOutcome]:
        """Schedule each event independently; one failure never blocks the rest."""
        config = await load_settings(self._store)
        outcomes: list[ScheduleOutcome] = []
        for event in events:
            try:
                outcomes.append(await self.schedule(event, config=config))
            except Exception:
                logger.exception("Failed to schedule reminder for %s", event.display_title)
                outcomes.append(ScheduleOutcome.failed)
        return outcomes

    async def restore(self) -> list[ScheduleOutcome]:
        """Re-walk the persisted canonical set after a (re)start.

        Recovers triggers the timer facility may have lost.  Reminders that
        were mid-dispatch when the process died are not recovered.
        """
        events = await load_events(self._store)
        logger.info("Restoring reminders for %d stored event(s)", len(events))
        return await self.schedule_all(events)

    async def handle_fire(self, name: str, dispatch: Dispatch) -> bool:
        """Fire trigger *name*: load its snapshot, dispatch once, consume.

        Returns:
            ``True`` when a snapshot was found and dispatch was attempted.
        """
        raw = await self._store.get(snapshot_key(name))
        if raw is None:
            logger.warning("No event snapshot found for trigger %s", name)
            return False

        try:
            event = CanonicalEvent.model_validate(raw)
        except ValidationError:
            logger.warning("Unreadable event snapshot for trigger %s; discarding", name)
            await self._store.remove(snapshot_key(name))
            return False

        if not is_snooze_trigger(name):
            # A richer report may have replaced the canonical event since scheduling.
            current = next(
                (e for e in await load_events(self._store) if trigger_name(e) == name), None
            )
            if current is not None:
                event = current

        logger.info(
            "Reminder fired for %s%s",
            event.display_title,
            " (snoozed)" if is_snooze_trigger(name) else "",
        )
        try:
            await dispatch(event)
        except Exception:
            logger.exception("Reminder dispatch failed for %s", event.display_title)

        await self._store.remove(snapshot_key(name))
        if not is_snooze_trigger(name):
            await self._consume(name)
        return True

    async def _consume(self, name: str) -> None:
        events = await load_events(self._store)
        remaining = [e for e in events if trigger_name(e) != name]
        if len(remaining) != len(events):
            await save_events(self._store, remaining)

    async def cancel(self, event: Event) -> None:
        """Cancel both the main and the snooze trigger for *event*."""
        for name in (trigger_name(event), snooze_trigger_name(event)):
            await self._timers.clear(name)
            await self._store.remove(snapshot_key(name))

    async def decline(self, event_id: str) -> int:
        """Consume every trigger for the meeting identified by *event_id*.

        *event_id* may be a producer id or a trigger name.  The meeting is also
        removed from the canonical set.

        Returns:
            The number of stored events removed.
        """
        events = await load_events(self._store)
        declined = [e for e in events if e.id == event_id or trigger_name(e) == event_id]
        for event in declined:
            await self.cancel(event)

        if event_id.startswith(TRIGGER_PREFIX):
            await self._timers.clear(event_id)
            await self._store.remove(snapshot_key(event_id))

        if declined:
            await save_events(self._store, [e for e in events if e not in declined])
        logger.info("Declined meeting %s (%d stored event(s) removed)", event_id, len(declined))
        return len(declined)

    async def snooze(self, event: Event, minutes: int = DEFAULT_SNOOZE_MINUTES) -> str:
        """Schedule an independent reminder *minutes* from now."""
        name = snooze_trigger_name(event)
        fire_at = self._clock() + timedelta(minutes=minutes)
        await self._store.set(snapshot_key(name), CanonicalEvent.from_event(event).to_store())
        await self._timers.create(name, to_epoch_ms(fire_at))
        logger.info("Snoozed %s for %d minute(s)", event.display_title, minutes)
        return name

    async def rebuild(self, events: Iterable[CanonicalEvent]) -> list[ScheduleOutcome]:
        """Drop every non-snooze meeting trigger and schedule *events* afresh."""
        for name in await self._timers.names(TRIGGER_PREFIX):
            if is_snooze_trigger(name):
                continue
            await self._timers.clear(name)
            await self._store.remove(snapshot_key(name))
        return await self.schedule_all(events)

    async def prune(self, now: datetime | None = None) -> int:
        """Forget meetings that have ended, and snapshots no timer refers to.

        Returns:
            The number of canonical events removed.
        """
        now = now or self._clock()
        events = await load_events(self._store)
        current = [e for e in events if e.end > now]
        if len(current) != len(events):
            await save_events(self._store, current)

        live = set(await self._timers.names())
        for key in await self._store.keys(SNAPSHOT_KEY_PREFIX):
            name = key[len(SNAPSHOT_KEY_PREFIX) :]
            if name in live:
                continue
            # A fired trigger's snapshot stays until its handler consumes it.
            snapshot = parse_canonical([await self._store.get(key)])
            if snapshot and snapshot[0].end > now:
                continue
            await self._store.remove(key)
            logger.debug("Removed orphaned snapshot %s", name)

        return len(events) - len(current)
