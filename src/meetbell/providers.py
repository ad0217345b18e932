"""Provider-API producers: Google Calendar and Microsoft Graph.

Each producer fetches the upcoming window of timed events with a bearer token
from its :class:`~meetbell.tokens.TokenManager` and normalizes the provider's
payload into :class:`~meetbell.models.Event` reports tagged ``google-api`` or
``outlook-api``.  A 401 marks the provider disconnected; every other failure
is logged and surfaced as an unsuccessful :class:`FetchResult` so the next
periodic sync simply tries again.
"""

from __future__ import annotations

import abc
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from meetbell.core.timers import Clock, utc_now
from meetbell.models import UNTITLED_MEETING, Event, EventSource, ResponseStatus, parse_events
from meetbell.tokens import TokenManager

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
MS_GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_FETCH_WINDOW = timedelta(hours=24)
MAX_RESULTS = 100

_RINGCENTRAL_AND_WEBEX = (
    re.compile(r"https://[\w-]+\.webex\.com/[^\s\"<]+", re.IGNORECASE),
    re.compile(r"https://[\w-]+\.my\.webex\.com/[^\s\"<]+", re.IGNORECASE),
    re.compile(r"https://meetings\.ringcentral\.com/[^\s\"<]+", re.IGNORECASE),
    re.compile(r"https://v\.ringcentral\.com/[^\s\"<]+", re.IGNORECASE),
)
_GOOGLE_MEET = re.compile(r"https://meet\.google\.com/[a-z-]+", re.IGNORECASE)
_ZOOM = re.compile(r"https://[\w-]+\.zoom\.us/j/\d+[^\s\"<]*", re.IGNORECASE)
_TEAMS = re.compile(r"https://teams\.microsoft\.com/l/meetup-join/[^\s\"<]+", re.IGNORECASE)

GOOGLE_LINK_PATTERNS = (_GOOGLE_MEET, _ZOOM, _TEAMS, *_RINGCENTRAL_AND_WEBEX)
OUTLOOK_LINK_PATTERNS = (_TEAMS, _GOOGLE_MEET, _ZOOM, *_RINGCENTRAL_AND_WEBEX)

_OUTLOOK_RESPONSE_STATUS = {
    "accepted": ResponseStatus.accepted,
    "tentativelyAccepted": ResponseStatus.tentative,
    "declined": ResponseStatus.declined,
    "notResponded": ResponseStatus.needs_action,
    "none": ResponseStatus.needs_action,
    "organizer": ResponseStatus.accepted,
}

_GRAPH_FRACTION = re.compile(r"(\.\d{6})\d+")
_PROVIDER_ID_PREFIX = re.compile(r"^(google_|outlook_)")
DECLINE_COMMENT = "Declined via meetbell"


class ProviderRequestError(RuntimeError):
    """Raised when a provider list or decline request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar API request failed ({status_code}): {message}")


@dataclass
class FetchResult:
    success: bool
    events: list[Event] = field(default_factory=list)
    error: str | None = None


def _search_links(text: str, patterns: Iterable[re.Pattern[str]]) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


def extract_meeting_link(item: dict[str, Any]) -> str | None:
    """Google: conference video entry point, then hangout link, then text patterns."""
    conference = item.get("conferenceData")
    if isinstance(conference, dict):
        for entry in conference.get("entryPoints") or []:
            if isinstance(entry, dict) and entry.get("entryPointType") == "video" and entry.get("uri"):
                return str(entry["uri"])

    hangout = item.get("hangoutLink")
    if isinstance(hangout, str) and hangout:
        return hangout

    combined = f"{item.get('description') or ''} {item.get('location') or ''}"
    return _search_links(combined, GOOGLE_LINK_PATTERNS)


def extract_outlook_meeting_link(item: dict[str, Any]) -> str | None:
    """Outlook: online meeting URL, then join URL, then text patterns."""
    url = item.get("onlineMeetingUrl")
    if isinstance(url, str) and url:
        return url

    online = item.get("onlineMeeting")
    if isinstance(online, dict) and online.get("joinUrl"):
        return str(online["joinUrl"])

    location = item.get("location")
    location_text = location.get("displayName") or "" if isinstance(location, dict) else ""
    combined = f"{location_text} {item.get('bodyPreview') or ''}"
    return _search_links(combined, OUTLOOK_LINK_PATTERNS)


def map_outlook_response_status(status: str | None) -> ResponseStatus:
    return _OUTLOOK_RESPONSE_STATUS.get(status or "", ResponseStatus.needs_action)


def _graph_datetime(boundary: Any) -> str | None:
    """Graph ``{dateTime, timeZone}`` to an ISO string; fractions trimmed to microseconds."""
    if not isinstance(boundary, dict) or not boundary.get("dateTime"):
        return None
    value = _GRAPH_FRACTION.sub(r"\1", str(boundary["dateTime"]))
    if boundary.get("timeZone") == "UTC" and not value.endswith("Z"):
        value = f"{value}Z"
    return value


def parse_google_events(items: Iterable[Any]) -> list[Event]:
    """Normalize Google Calendar items.  All-day events are skipped."""
    raw: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        start = item.get("start") or {}
        if not start.get("dateTime"):
            continue
        end = item.get("end") or {}
        organizer = item.get("organizer") or {}
        raw.append(
            {
                "id": item.get("id"),
                "title": item.get("summary") or UNTITLED_MEETING,
                "start_time": start["dateTime"],
                "end_time": end.get("dateTime"),
                "location": item.get("location") or "",
                "description": item.get("description") or "",
                "meeting_link": extract_meeting_link(item),
                "organizer": organizer.get("email") or organizer.get("displayName"),
                "attendees": [
                    {
                        "email": a.get("email"),
                        "display_name": a.get("displayName")
                        or (a.get("email") or "").split("@")[0]
                        or None,
                        "response_status": a.get("responseStatus") or "needsAction",
                        "is_self": bool(a.get("self")),
                    }
                    for a in item.get("attendees") or []
                    if isinstance(a, dict)
                ],
                "html_link": item.get("htmlLink"),
            }
        )
    return parse_events(raw, source=EventSource.google_api)


def parse_outlook_events(items: Iterable[Any]) -> list[Event]:
    """Normalize Microsoft Graph calendarView items."""
    raw: list[dict[str, Any]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        start = _graph_datetime(item.get("start"))
        if start is None:
            continue
        location = item.get("location")
        organizer = (item.get("organizer") or {}).get("emailAddress") or {}
        attendees = []
        for a in item.get("attendees") or []:
            if not isinstance(a, dict):
                continue
            address = a.get("emailAddress") or {}
            email = address.get("address")
            attendees.append(
                {
                    "email": email,
                    "display_name": address.get("name") or (email or "").split("@")[0] or None,
                    "response_status": map_outlook_response_status(
                        (a.get("status") or {}).get("response")
                    ),
                    "is_self": False,
                }
            )
        raw.append(
            {
                "id": f"outlook_{item.get('id')}",
                "title": item.get("subject") or UNTITLED_MEETING,
                "start_time": start,
                "end_time": _graph_datetime(item.get("end")),
                "location": location.get("displayName") or "" if isinstance(location, dict) else "",
                "description": item.get("bodyPreview") or "",
                "meeting_link": extract_outlook_meeting_link(item),
                "organizer": organizer.get("address") or organizer.get("name"),
                "attendees": attendees,
                "html_link": item.get("webLink"),
            }
        )
    return parse_events(raw, source=EventSource.outlook_api)


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


class CalendarProducer(abc.ABC):
    """A provider-API feed of upcoming events."""

    source: EventSource

    def __init__(
        self,
        tokens: TokenManager,
        http_client: httpx.AsyncClient,
        *,
        clock: Clock = utc_now,
        window: timedelta = DEFAULT_FETCH_WINDOW,
    ) -> None:
        self._tokens = tokens
        self._http = http_client
        self._clock = clock
        self._window = window

    @property
    def provider(self) -> str:
        return self.source.provider

    @property
    def tokens(self) -> TokenManager:
        return self._tokens

    @abc.abstractmethod
    def _request(self, token: str, start: datetime, end: datetime) -> tuple[str, dict[str, str], dict[str, str]]:
        """Return ``(url, params, extra headers)`` for the list call."""

    @abc.abstractmethod
    def _parse(self, payload: dict[str, Any]) -> list[Event]:
        ...

    async def fetch(self) -> FetchResult:
        label = self._tokens.provider.label
        try:
            token = await self._tokens.get_valid_token()
            if not token:
                return FetchResult(success=False, error="Not authenticated")

            now = self._clock()
            url, params, headers = self._request(token, now, now + self._window)
            response = await self._http.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}", **headers},
            )
            if response.status_code == 401:
                logger.warning("%s rejected the access token; marking disconnected", label)
                await self._tokens.disconnect(notify=True)
                return FetchResult(
                    success=False, error="Token expired. Please reconnect in Settings."
                )
            if response.status_code < 200 or response.status_code >= 300:
                raise ProviderRequestError(
                    status_code=response.status_code,
                    message=_safe_error_message(response),
                )

            payload = response.json()
            events = self._parse(payload if isinstance(payload, dict) else {})
        except (httpx.HTTPError, ProviderRequestError, ValueError) as exc:
            logger.warning("Error fetching %s events: %s", label, exc)
            return FetchResult(success=False, error=str(exc))

        logger.info("Fetched %d event(s) from %s", len(events), label)
        return FetchResult(success=True, events=events)

    @abc.abstractmethod
    async def _send_decline(self, token: str, provider_id: str) -> httpx.Response:
        """Record the user's decline upstream; return the final response."""

    async def decline(self, event_id: str) -> bool:
        """Decline *event_id* at the provider so later fetches report it declined.

        Returns:
            ``True`` when the provider accepted the decline.
        """
        label = self._tokens.provider.label
        provider_id = _PROVIDER_ID_PREFIX.sub("", event_id)
        try:
            token = await self._tokens.get_valid_token()
            if not token:
                logger.warning("Cannot decline %s event %s: not authenticated", label, provider_id)
                return False

            response = await self._send_decline(token, provider_id)
            if response.status_code == 401:
                logger.warning("%s rejected the access token; marking disconnected", label)
                await self._tokens.disconnect(notify=True)
                return False
            if response.status_code < 200 or response.status_code >= 300:
                raise ProviderRequestError(
                    status_code=response.status_code,
                    message=_safe_error_message(response),
                )
        except (httpx.HTTPError, ProviderRequestError, ValueError) as exc:
            logger.warning("Error declining %s event %s: %s", label, provider_id, exc)
            return False

        logger.info("Declined %s event %s", label, provider_id)
        return True


class GoogleCalendarProducer(CalendarProducer):
    source = EventSource.google_api

    def _request(self, token: str, start: datetime, end: datetime) -> tuple[str, dict[str, str], dict[str, str]]:
        params = {
            "timeMin": _google_rfc3339(start),
            "timeMax": _google_rfc3339(end),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(MAX_RESULTS),
        }
        return f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events", params, {}

    def _parse(self, payload: dict[str, Any]) -> list[Event]:
        return parse_google_events(payload.get("items") or [])

    async def _send_decline(self, token: str, provider_id: str) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events/{provider_id}"
        headers = {"Authorization": f"Bearer {token}"}
        current = await self._http.get(url, headers=headers)
        if current.status_code < 200 or current.status_code >= 300:
            return current

        item = current.json()
        attendees = [a for a in item.get("attendees") or [] if isinstance(a, dict)]
        me = next((a for a in attendees if a.get("self")), None)
        if me is None:
            organizer = item.get("organizer") or {}
            attendees.append(
                {"email": organizer.get("email") or "", "responseStatus": "declined", "self": True}
            )
        else:
            me["responseStatus"] = "declined"
        return await self._http.patch(url, headers=headers, json={"attendees": attendees})


class OutlookCalendarProducer(CalendarProducer):
    source = EventSource.outlook_api

    def _request(self, token: str, start: datetime, end: datetime) -> tuple[str, dict[str, str], dict[str, str]]:
        params = {
            "startDateTime": _google_rfc3339(start),
            "endDateTime": _google_rfc3339(end),
            "$orderby": "start/dateTime",
            "$top": str(MAX_RESULTS),
        }
        # Ask Graph for UTC so boundaries carry an explicit zone.
        headers = {"Prefer": 'outlook.timezone="UTC"'}
        return f"{MS_GRAPH_API_BASE_URL}/me/calendarView", params, headers

    def _parse(self, payload: dict[str, Any]) -> list[Event]:
        return parse_outlook_events(payload.get("value") or [])

    async def _send_decline(self, token: str, provider_id: str) -> httpx.Response:
        return await self._http.post(
            f"{MS_GRAPH_API_BASE_URL}/me/events/{provider_id}/decline",
            headers={"Authorization": f"Bearer {token}"},
            json={"comment": DECLINE_COMMENT, "sendResponse": True},
        )
