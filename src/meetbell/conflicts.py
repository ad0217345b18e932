"""Pairwise scheduling conflict detection.

Intervals are half-open: a meeting ending exactly when another starts does
not conflict.  Detection is quadratic, which is fine for a day's meetings.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta

from meetbell.models import CanonicalEvent, Conflict, ConflictSeverity, Event

HIGH_OVERLAP = timedelta(minutes=30)
MEDIUM_OVERLAP = timedelta(minutes=15)


def overlap(a: Event, b: Event) -> bool:
    return a.start_time < b.end and b.start_time < a.end


def overlap_duration(a: Event, b: Event) -> timedelta:
    duration = min(a.end, b.end) - max(a.start_time, b.start_time)
    return max(duration, timedelta(0))


def severity(a: Event, b: Event) -> ConflictSeverity:
    """``high`` on identical start or >30 min overlap, ``medium`` >15 min, else ``low``."""
    if a.start_time == b.start_time:
        return ConflictSeverity.high
    duration = overlap_duration(a, b)
    if duration > HIGH_OVERLAP:
        return ConflictSeverity.high
    if duration > MEDIUM_OVERLAP:
        return ConflictSeverity.medium
    return ConflictSeverity.low


def detect(events: Sequence[CanonicalEvent]) -> list[Conflict]:
    """Return every overlapping pair, ordered by the earlier event's start."""
    ordered = sorted(events, key=lambda e: e.start_time)
    conflicts: list[Conflict] = []
    for i, first in enumerate(ordered):
        for second in ordered[i + 1 :]:
            if overlap(first, second):
                conflicts.append(
                    Conflict(
                        events=(first, second),
                        message=f'"{first.title}" overlaps with "{second.title}"',
                        severity=severity(first, second),
                    )
                )
    return conflicts


def conflicting_events(event: Event, events: Sequence[Event]) -> list[Event]:
    """Events in *events* overlapping *event*, excluding *event* itself."""
    return [other for other in events if other is not event and overlap(event, other)]


def annotate(events: Sequence[CanonicalEvent]) -> list[CanonicalEvent]:
    """Return copies carrying ``has_conflict``/``conflict_count``."""
    annotated: list[CanonicalEvent] = []
    for event in events:
        count = len(conflicting_events(event, events))
        annotated.append(
            event.model_copy(update={"has_conflict": count > 0, "conflict_count": count})
        )
    return annotated


def upcoming_conflicts(
    events: Sequence[CanonicalEvent],
    now: datetime,
    hours_ahead: int = 24,
) -> list[Conflict]:
    cutoff = now + timedelta(hours=hours_ahead)
    return detect([e for e in events if now <= e.start_time <= cutoff])


def conflict_summary(conflicts: Sequence[Conflict]) -> str:
    if not conflicts:
        return "No scheduling conflicts detected."

    high = sum(1 for c in conflicts if c.severity == ConflictSeverity.high)
    medium = sum(1 for c in conflicts if c.severity == ConflictSeverity.medium)
    low = len(conflicts) - high - medium

    plural = "s" if len(conflicts) > 1 else ""
    summary = f"{len(conflicts)} scheduling conflict{plural} detected"
    if high:
        return f"{summary} ({high} high priority)"
    if medium:
        return f"{summary} ({medium} medium priority)"
    return f"{summary} ({low} low priority)"
