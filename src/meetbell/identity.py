"""What "the same meeting" means.

Both the reconciler (deduplication) and the scheduler (trigger naming) derive
identity from these functions so the two layers can never disagree.  Identity
is the normalized title plus the start instant floored to the containing
minute; producer ids play no part because they are not stable across
producers.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from urllib.parse import quote

from meetbell.models import Event

TRIGGER_PREFIX = "meeting_"
SNOOZE_SUFFIX = "_snooze"

_WHITESPACE = re.compile(r"\s+")
_MINUTE_MS = 60_000
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def normalize_title(title: str | None) -> str:
    """Lower-case, strip and collapse internal whitespace to single spaces."""
    return _WHITESPACE.sub(" ", (title or "").strip().lower())


def floor_to_minute_ms(value: datetime) -> int:
    """Return *value* as epoch milliseconds floored to the containing minute."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    minutes = (normalized - _EPOCH) // timedelta(minutes=1)
    return minutes * _MINUTE_MS


def meeting_key(title: str | None, start_time: datetime) -> str:
    """Identity key shared by deduplication and trigger naming."""
    return f"{normalize_title(title)}_{floor_to_minute_ms(start_time)}"


def event_key(event: Event) -> str:
    return meeting_key(event.title, event.start_time)


def trigger_name(event: Event) -> str:
    """Durable-timer name for *event*'s reminder.

    The meeting key is percent-encoded so the name stays a single token in
    host alarm listings and distinct keys never share a name.
    """
    return f"{TRIGGER_PREFIX}{quote(event_key(event), safe='_')}"


def snooze_trigger_name(event: Event) -> str:
    return f"{trigger_name(event)}{SNOOZE_SUFFIX}"


def is_meeting_trigger(name: str) -> bool:
    return name.startswith(TRIGGER_PREFIX)


def is_snooze_trigger(name: str) -> bool:
    return name.endswith(SNOOZE_SUFFIX)
