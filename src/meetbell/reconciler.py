"""Merge event reports from several producers into one canonical set.

Producers disagree about ids, timing precision and how much detail they
carry.  Reports collide when their :func:`~meetbell.identity.event_key`
matches; the richer report wins and ties keep what was already there.  The
merge is commutative and idempotent for reports of differing richness, so
batches from different producers may arrive in any interleaving.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable
from datetime import datetime, timedelta

from meetbell.identity import event_key
from meetbell.models import CanonicalEvent, Event

logger = logging.getLogger(__name__)

DEFAULT_HORIZON = timedelta(hours=24)


def richness_score(event: Event) -> int:
    """How much detail a report carries: link (x2), attendees, description, location."""
    return (
        (2 if event.meeting_link else 0)
        + len(event.attendees)
        + len(event.description)
        + len(event.location)
    )


def _merge_into(merged: dict[str, CanonicalEvent], event: Event) -> None:
    key = event_key(event)
    current = merged.get(key)
    if current is None:
        merged[key] = CanonicalEvent.from_event(event)
        return
    if richness_score(event) > richness_score(current):
        logger.debug(
            "Replacing %r from %s with richer report from %s",
            current.title,
            current.source,
            event.source,
        )
        merged[key] = CanonicalEvent.from_event(event)


def reconcile(
    existing: Iterable[CanonicalEvent],
    incoming: Iterable[Event],
) -> list[CanonicalEvent]:
    """Return the new canonical set after folding *incoming* into *existing*.

    Ordering follows first appearance of each logical meeting.  Nothing is
    persisted here.
    """
    merged: dict[str, CanonicalEvent] = {}
    for event in existing:
        _merge_into(merged, event)
    for event in incoming:
        _merge_into(merged, event)
    return list(merged.values())


def deduplicate(events: Iterable[Event]) -> list[CanonicalEvent]:
    """Collapse duplicates within a single list."""
    return reconcile([], events)


def drop_scraped_duplicates(
    events: Iterable[Event],
    connected_providers: Collection[str],
) -> list[Event]:
    """Drop page-scraped reports for providers whose API feed is connected.

    The API feed carries the same meetings with complete fields, so scraped
    copies would only add noisier duplicates.
    """
    kept: list[Event] = []
    for event in events:
        if event.source.is_scraped and event.source.provider in connected_providers:
            logger.debug("Skipping scraped event (API connected): %s", event.title)
            continue
        kept.append(event)
    return kept


def within_horizon(
    events: Iterable[Event],
    now: datetime,
    horizon: timedelta = DEFAULT_HORIZON,
) -> list[Event]:
    """Keep events starting after *now* and no later than ``now + horizon``."""
    return [e for e in events if now < e.start_time <= now + horizon]
