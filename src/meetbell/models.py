"""Shared data model: raw events, canonical events, conflicts, settings, tokens.

Producers push loosely-shaped dicts (camelCase from scrapers, snake_case from
the store); every model accepts both spellings on input and always dumps
snake_case.  Models are frozen: a canonical event is replaced, never mutated.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

DEFAULT_EVENT_DURATION = timedelta(hours=1)
UNTITLED_MEETING = "Untitled Meeting"


class EventSource(StrEnum):
    """Producer tag attached to every raw event."""

    google_api = "google-api"
    google_dom = "google-dom"
    outlook_api = "outlook-api"
    outlook_dom = "outlook-dom"

    @property
    def provider(self) -> str:
        return self.value.split("-", 1)[0]

    @property
    def is_scraped(self) -> bool:
        return self.value.endswith("-dom")


class ResponseStatus(StrEnum):
    """RSVP response status of an attendee."""

    needs_action = "needsAction"
    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"


class ConflictSeverity(StrEnum):
    low = "low"
    medium = "medium"
    high = "high"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Attendee(BaseModel):
    """One attendee entry, in producer order."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    email: str | None = None
    display_name: str | None = Field(
        default=None, validation_alias=AliasChoices("display_name", "displayName", "name")
    )
    response_status: ResponseStatus = Field(
        default=ResponseStatus.needs_action,
        validation_alias=AliasChoices("response_status", "responseStatus"),
    )
    is_self: bool = Field(default=False, validation_alias=AliasChoices("is_self", "isSelf", "self"))

    @field_validator("response_status", mode="before")
    @classmethod
    def _coerce_response_status(cls, value: Any) -> Any:
        if value is None:
            return ResponseStatus.needs_action
        try:
            return ResponseStatus(value)
        except ValueError:
            return ResponseStatus.needs_action


class Event(BaseModel):
    """A single raw meeting report from one producer.

    ``id`` is producer scoped and is not globally unique.  ``end_time``
    defaults to one hour after ``start_time``; naive timestamps are taken as UTC.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str
    title: str = ""
    start_time: datetime = Field(validation_alias=AliasChoices("start_time", "startTime"))
    end_time: datetime | None = Field(
        default=None, validation_alias=AliasChoices("end_time", "endTime")
    )
    attendees: list[Attendee] = Field(default_factory=list)
    meeting_link: str | None = Field(
        default=None, validation_alias=AliasChoices("meeting_link", "meetingLink")
    )
    source: EventSource
    description: str = ""
    location: str = ""
    html_link: str | None = Field(
        default=None, validation_alias=AliasChoices("html_link", "htmlLink")
    )
    organizer: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("title", "description", "location", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value

    @field_validator("meeting_link", "html_link", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("organizer", mode="before")
    @classmethod
    def _coerce_organizer(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return value.get("email") or value.get("name")
        return value

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _as_utc(value)

    @model_validator(mode="after")
    def _default_and_check_end(self) -> Event:
        if self.end_time is None:
            object.__setattr__(self, "end_time", self.start_time + DEFAULT_EVENT_DURATION)
        elif self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    @property
    def end(self) -> datetime:
        if self.end_time is None:
            return self.start_time + DEFAULT_EVENT_DURATION
        return self.end_time

    @property
    def display_title(self) -> str:
        return self.title.strip() or UNTITLED_MEETING

    def self_attendee(self) -> Attendee | None:
        return next((a for a in self.attendees if a.is_self), None)

    @property
    def user_declined(self) -> bool:
        me = self.self_attendee()
        return me is not None and me.response_status == ResponseStatus.declined

    def to_store(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CanonicalEvent(Event):
    """The deduplicated, conflict-annotated projection of one logical meeting."""

    has_conflict: bool = Field(
        default=False, validation_alias=AliasChoices("has_conflict", "hasConflict")
    )
    conflict_count: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("conflict_count", "conflictCount")
    )

    @classmethod
    def from_event(cls, event: Event) -> CanonicalEvent:
        if isinstance(event, CanonicalEvent):
            return event
        return cls.model_validate(event.model_dump())


class Conflict(BaseModel):
    """A pairwise overlap between two canonical events."""

    model_config = ConfigDict(frozen=True)

    type: str = "overlap"
    events: tuple[CanonicalEvent, CanonicalEvent]
    message: str
    severity: ConflictSeverity


class ReminderConfig(BaseModel):
    """User reminder preferences, persisted under the ``settings`` key."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    lead_minutes: int = Field(
        default=2,
        ge=0,
        validation_alias=AliasChoices("lead_minutes", "leadMinutes", "reminderMinutes"),
    )
    show_popup: bool = Field(default=True, validation_alias=AliasChoices("show_popup", "showPopup"))
    play_sound: bool = Field(default=True, validation_alias=AliasChoices("play_sound", "playSound"))
    voice_reminder: bool = Field(
        default=False, validation_alias=AliasChoices("voice_reminder", "voiceReminder")
    )
    auto_open: bool = Field(default=False, validation_alias=AliasChoices("auto_open", "autoOpen"))
    sound_volume: int = Field(
        default=70, ge=0, le=100, validation_alias=AliasChoices("sound_volume", "soundVolume")
    )
    daily_summary: bool = Field(
        default=True, validation_alias=AliasChoices("daily_summary", "dailySummary")
    )


class TokenRecord(BaseModel):
    """Bearer credentials for one provider.  Never use when ``connected`` is false."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    access_token: str | None = Field(
        default=None, validation_alias=AliasChoices("access_token", "accessToken")
    )
    refresh_token: str | None = Field(
        default=None, validation_alias=AliasChoices("refresh_token", "refreshToken")
    )
    expires_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("expires_at", "expiresAt")
    )
    connected: bool = False
    connected_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("connected_at", "connectedAt")
    )

    @field_validator("expires_at", mode="before")
    @classmethod
    def _coerce_epoch_ms(cls, value: Any) -> Any:
        # Host stores expiry as epoch milliseconds.
        if isinstance(value, int | float) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        return value

    @field_validator("expires_at", "connected_at")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return _as_utc(value)

    def __repr__(self) -> str:
        return (
            f"TokenRecord("
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r}, "
            f"connected={self.connected!r})"
        )

    # Pydantic's default __str__ would expose field values verbatim.
    __str__ = __repr__


def parse_events(
    raw_events: Iterable[Mapping[str, Any] | Event],
    source: EventSource | str | None = None,
) -> list[Event]:
    """Validate producer payloads into :class:`Event` objects.

    Malformed entries (missing or unparseable start time, unknown source,
    end before start) are logged and dropped; they never propagate.
    When *source* is given it overrides any per-event tag.
    """
    events: list[Event] = []
    for raw in raw_events:
        if isinstance(raw, Event):
            events.append(raw if source is None else raw.model_copy(update={"source": EventSource(source)}))
            continue
        if not isinstance(raw, Mapping):
            logger.warning("Dropping non-object event payload: %r", type(raw).__name__)
            continue
        payload = dict(raw)
        if source is not None:
            payload["source"] = str(source)
        try:
            events.append(Event.model_validate(payload))
        except ValidationError as exc:
            logger.warning(
                "Dropping malformed event %r (%s): %s",
                payload.get("id"),
                payload.get("title"),
                "; ".join(err["msg"] for err in exc.errors()),
            )
    return events


def parse_canonical(raw_events: Any) -> list[CanonicalEvent]:
    """Load a persisted canonical set, dropping entries that no longer validate."""
    if not isinstance(raw_events, list):
        return []
    events: list[CanonicalEvent] = []
    for raw in raw_events:
        try:
            events.append(CanonicalEvent.model_validate(raw))
        except ValidationError:
            logger.warning("Dropping unreadable stored event: %r", raw)
    return events
