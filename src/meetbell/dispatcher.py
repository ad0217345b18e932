"""Multi-channel reminder dispatch.

A fired reminder drives several attention channels through an
:class:`OutputFacility`:

- ``os_notification`` (always), with a "Join Now" action when a link exists
- ``popup``, a focused window positioned relative to the active window
- ``sound`` and ``speech``, rendered by a lazily created audio surface that is
  recreated once if a send fails
- ``badge``, an alternating flash ending on a persistent urgent state
- ``auto_open``, navigating to the meeting link after a short delay

Each channel runs as an independent task returning a :class:`ChannelResult`.
Failures are logged and recorded; one channel failing never prevents the
others from running.  The daily summary reuses the sound, popup and
notification channels with its own window size and a quiet notification.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Literal

from meetbell.core.timers import Clock, to_epoch_ms, utc_now
from meetbell.models import CanonicalEvent, ReminderConfig

logger = logging.getLogger(__name__)

NOTIFICATION_PREFIX = "meetbell_"
RECONNECT_NOTIFICATION_PREFIX = "token_expired_"
JOIN_BUTTON = "Join Now"

BADGE_DEFAULT = "#4285F4"
BADGE_URGENT = "#FF0000"
BADGE_WARNING = "#FF6600"
BADGE_FLASH_TEXT = "⏰"
BADGE_FLASH_SEQUENCE = (BADGE_URGENT, BADGE_WARNING, BADGE_URGENT, BADGE_WARNING, BADGE_URGENT)

POPUP_WIDTH = 480
POPUP_HEIGHT = 620
SUMMARY_WIDTH = 480
SUMMARY_HEIGHT = 600
SUMMARY_NOTIFICATION_ID = "daily_summary"
# Positioning uses the compact reminder card size, not the full popup size.
POSITION_WIDTH = 400
POSITION_HEIGHT = 280
POSITION_MIN_OFFSET = 50
POSITION_FALLBACK = (100, 100)

Sleep = Callable[[float], Awaitable[None]]


class DispatchError(RuntimeError):
    """Raised by an output facility when a channel cannot be rendered."""


@dataclass(frozen=True)
class NotificationOptions:
    title: str
    message: str
    buttons: tuple[str, ...] = ()
    priority: int = 2
    require_interaction: bool = True


@dataclass(frozen=True)
class WindowBounds:
    left: int
    top: int
    width: int
    height: int


@dataclass(frozen=True)
class WindowRequest:
    payload: dict[str, Any]
    width: int
    height: int
    left: int
    top: int
    focused: bool = True


@dataclass(frozen=True)
class AudioMessage:
    kind: Literal["sound", "speech"]
    text: str | None = None
    volume: float = 0.7


class OutputFacility(abc.ABC):
    """Host primitives the dispatcher renders through."""

    @abc.abstractmethod
    async def create_notification(self, notification_id: str, options: NotificationOptions) -> None:
        ...

    @abc.abstractmethod
    async def get_active_window(self) -> WindowBounds | None:
        ...

    @abc.abstractmethod
    async def create_window(self, request: WindowRequest) -> None:
        ...

    @abc.abstractmethod
    async def has_audio_surface(self) -> bool:
        ...

    @abc.abstractmethod
    async def create_audio_surface(self) -> None:
        ...

    @abc.abstractmethod
    async def close_audio_surface(self) -> None:
        ...

    @abc.abstractmethod
    async def send_audio(self, message: AudioMessage) -> None:
        ...

    @abc.abstractmethod
    async def set_badge(self, text: str, color: str) -> None:
        ...

    @abc.abstractmethod
    async def open_url(self, url: str) -> None:
        ...


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    ok: bool
    error: str | None = None


@dataclass
class DispatchReport:
    event_id: str
    results: list[ChannelResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def failed(self) -> list[str]:
        return [r.channel for r in self.results if not r.ok]

    def result(self, channel: str) -> ChannelResult | None:
        return next((r for r in self.results if r.channel == channel), None)


def format_lead_title(minutes: int) -> str:
    """Notification title for a reminder firing *minutes* before start."""
    prefix = "Meeting starting "
    if minutes == 1:
        return f"{prefix}in 1 minute!"
    if minutes < 60:
        return f"{prefix}in {minutes} minutes!"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{prefix}in {hours}h {mins}m!"
    return f"{prefix}in {hours} hour{'s' if hours > 1 else ''}!"


def popup_position(
    active: WindowBounds | None,
    width: int = POSITION_WIDTH,
    height: int = POSITION_HEIGHT,
) -> tuple[int, int]:
    """Return ``(left, top)`` centred horizontally, a third of the way down."""
    if active is None:
        return POSITION_FALLBACK
    left = active.left + (active.width - width) // 2
    top = active.top + (active.height - height) // 3
    return max(POSITION_MIN_OFFSET, left), max(POSITION_MIN_OFFSET, top)


class NotificationDispatcher:
    """Render a fired reminder across every enabled channel."""

    def __init__(
        self,
        output: OutputFacility,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = utc_now,
        auto_open_delay: float = 0.5,
        badge_step_delay: float = 0.3,
        surface_warmup: float = 0.1,
        surface_retry_warmup: float = 0.15,
    ) -> None:
        self._output = output
        self._sleep = sleep
        self._clock = clock
        self._auto_open_delay = auto_open_delay
        self._badge_step_delay = badge_step_delay
        self._surface_warmup = surface_warmup
        self._surface_retry_warmup = surface_retry_warmup

    async def dispatch(self, event: CanonicalEvent, config: ReminderConfig) -> DispatchReport:
        logger.info("Triggering attention for %s", event.display_title)

        tasks: list[Coroutine[Any, Any, list[ChannelResult]]] = [
            self._run([("os_notification", lambda: self.show_os_notification(event, config))]),
        ]
        if config.show_popup:
            tasks.append(self._run([("popup", lambda: self.show_popup(event))]))

        # Both audio channels share one surface, so they run in sequence.
        audio: list[tuple[str, Callable[[], Awaitable[None]]]] = []
        if config.play_sound:
            audio.append(("sound", lambda: self.play_sound(config)))
        if config.voice_reminder:
            audio.append(("speech", lambda: self.speak_reminder(event)))
        if audio:
            tasks.append(self._run(audio))

        tasks.append(self._run([("badge", lambda: self.flash_badge(config.lead_minutes))]))
        if config.auto_open and event.meeting_link:
            tasks.append(self._run([("auto_open", lambda: self.auto_open(event))]))

        report = DispatchReport(event_id=event.id)
        for results in await asyncio.gather(*tasks):
            report.results.extend(results)

        if report.failed:
            logger.warning(
                "Reminder for %s dispatched with failed channel(s): %s",
                event.display_title,
                ", ".join(report.failed),
            )
        return report

    async def _run(
        self,
        channels: list[tuple[str, Callable[[], Awaitable[None]]]],
    ) -> list[ChannelResult]:
        results: list[ChannelResult] = []
        for name, action in channels:
            try:
                await action()
                results.append(ChannelResult(channel=name, ok=True))
            except Exception as exc:
                logger.exception("Reminder channel %s failed", name)
                results.append(ChannelResult(channel=name, ok=False, error=str(exc)))
        return results

    async def show_os_notification(self, event: CanonicalEvent, config: ReminderConfig) -> str:
        notification_id = f"{NOTIFICATION_PREFIX}{event.id}"
        options = NotificationOptions(
            title=format_lead_title(config.lead_minutes),
            message=event.display_title,
            buttons=(JOIN_BUTTON,) if event.meeting_link else (),
        )
        await self._output.create_notification(notification_id, options)
        logger.debug("OS notification created for %s", event.display_title)
        return notification_id

    async def show_popup(self, event: CanonicalEvent) -> None:
        try:
            active = await self._output.get_active_window()
        except Exception as exc:
            logger.warning("Could not determine active window position: %s", exc)
            active = None
        left, top = popup_position(active)
        await self._output.create_window(
            WindowRequest(
                payload=event.to_store(),
                width=POPUP_WIDTH,
                height=POPUP_HEIGHT,
                left=left,
                top=top,
            )
        )

    async def send_daily_summary(
        self,
        events: Sequence[CanonicalEvent],
        *,
        title: str,
        message: str,
        config: ReminderConfig,
    ) -> DispatchReport:
        """Sound, summary window and a quiet OS notification, each isolated."""
        channels: list[tuple[str, Callable[[], Awaitable[None]]]] = []
        if config.play_sound:
            channels.append(("sound", lambda: self.play_sound(config)))
        channels.append(("popup", lambda: self.show_summary_popup(events)))
        channels.append(
            (
                "os_notification",
                lambda: self._output.create_notification(
                    SUMMARY_NOTIFICATION_ID,
                    NotificationOptions(
                        title=title, message=message, priority=1, require_interaction=False
                    ),
                ),
            )
        )

        report = DispatchReport(event_id=SUMMARY_NOTIFICATION_ID, results=await self._run(channels))
        if report.failed:
            logger.warning("Daily summary dispatched with failed channel(s): %s", ", ".join(report.failed))
        return report

    async def show_summary_popup(self, events: Sequence[CanonicalEvent]) -> None:
        try:
            active = await self._output.get_active_window()
        except Exception as exc:
            logger.warning("Could not determine active window position: %s", exc)
            active = None
        left, top = popup_position(active, SUMMARY_WIDTH, SUMMARY_HEIGHT)
        payload = {
            "kind": "daily_summary",
            "events": [
                {
                    "id": e.id,
                    "title": e.display_title,
                    "start_time": e.start_time.isoformat(),
                    "end_time": e.end.isoformat(),
                    "meeting_link": e.meeting_link,
                    "html_link": e.html_link,
                    "attendees": [
                        {"name": a.display_name, "email": a.email} for a in e.attendees
                    ],
                    "has_conflict": e.has_conflict,
                }
                for e in events
            ],
        }
        await self._output.create_window(
            WindowRequest(
                payload=payload,
                width=SUMMARY_WIDTH,
                height=SUMMARY_HEIGHT,
                left=left,
                top=top,
            )
        )

    async def play_sound(self, config: ReminderConfig) -> None:
        await self._send_audio(AudioMessage(kind="sound", volume=config.sound_volume / 100))

    def speech_text(self, event: CanonicalEvent) -> str:
        remaining = event.start_time - self._clock()
        minutes = round(remaining / timedelta(minutes=1))
        plural = "" if minutes == 1 else "s"
        return f"Meeting reminder: {event.display_title} starts in {minutes} minute{plural}."

    async def speak_reminder(self, event: CanonicalEvent) -> None:
        await self._send_audio(AudioMessage(kind="speech", text=self.speech_text(event)))

    async def _ensure_audio_surface(self) -> None:
        if not await self._output.has_audio_surface():
            await self._output.create_audio_surface()

    async def _recreate_audio_surface(self) -> None:
        try:
            await self._output.close_audio_surface()
        except Exception as exc:
            logger.debug("No audio surface to close: %s", exc)
        await self._output.create_audio_surface()

    async def _send_audio(self, message: AudioMessage) -> None:
        await self._ensure_audio_surface()
        await self._sleep(self._surface_warmup)
        try:
            await self._output.send_audio(message)
        except Exception as exc:
            logger.warning("Audio surface did not accept %s message, recreating: %s", message.kind, exc)
            await self._recreate_audio_surface()
            await self._sleep(self._surface_retry_warmup)
            await self._output.send_audio(message)

    async def flash_badge(self, lead_minutes: int) -> None:
        for color in BADGE_FLASH_SEQUENCE:
            await self._output.set_badge(BADGE_FLASH_TEXT, color)
            await self._sleep(self._badge_step_delay)
        await self._output.set_badge(f"{lead_minutes}m", BADGE_URGENT)

    async def auto_open(self, event: CanonicalEvent) -> None:
        if not event.meeting_link:
            logger.debug("No meeting link to open for %s", event.display_title)
            return
        await self._sleep(self._auto_open_delay)
        await self._output.open_url(event.meeting_link)

    async def open_meeting(self, url: str) -> None:
        await self._output.open_url(url)

    async def update_badge(self, count: int, has_conflicts: bool = False) -> None:
        """Show the upcoming meeting count, in warning colour when any conflict."""
        if count <= 0:
            await self._output.set_badge("", BADGE_DEFAULT)
            return
        await self._output.set_badge(str(count), BADGE_WARNING if has_conflicts else BADGE_DEFAULT)

    async def notify_reconnect(self, provider_label: str) -> None:
        """Out-of-band "reconnect required" notification for a disconnected provider."""
        notification_id = f"{RECONNECT_NOTIFICATION_PREFIX}{to_epoch_ms(self._clock())}"
        await self._output.create_notification(
            notification_id,
            NotificationOptions(
                title="Calendar Disconnected",
                message=(
                    f"{provider_label} connection expired. "
                    "Please reconnect in Settings to continue syncing events."
                ),
                priority=1,
                require_interaction=False,
            ),
        )
        logger.info("%s reconnect notification sent", provider_label)
