"""Terminal host for the reminder dispatcher.

Renders every channel as log records and terminal output: notifications and
popups are echoed, sound rings the terminal bell, speech is printed, badge
changes are logged, and meeting links open in the default browser.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser

import click

from meetbell.dispatcher import (
    AudioMessage,
    NotificationOptions,
    OutputFacility,
    WindowBounds,
    WindowRequest,
)

logger = logging.getLogger(__name__)


class ConsoleOutput(OutputFacility):
    def __init__(self, *, open_browser: bool = True) -> None:
        self._open_browser = open_browser
        self._audio_ready = False

    async def create_notification(self, notification_id: str, options: NotificationOptions) -> None:
        click.secho(f"[{options.title}] {options.message}", bold=options.priority >= 2)
        if options.buttons:
            click.echo(f"  actions: {', '.join(options.buttons)} ({notification_id})")

    async def get_active_window(self) -> WindowBounds | None:
        return None

    async def create_window(self, request: WindowRequest) -> None:
        payload = request.payload
        if payload.get("kind") == "daily_summary":
            for event in payload["events"]:
                click.echo(f"  {event['start_time']}  {event['title']}")
            return
        click.echo(f"  {payload.get('title')} at {payload.get('start_time')}")
        if payload.get("meeting_link"):
            click.echo(f"  join: {payload['meeting_link']}")

    async def has_audio_surface(self) -> bool:
        return self._audio_ready

    async def create_audio_surface(self) -> None:
        self._audio_ready = True

    async def close_audio_surface(self) -> None:
        self._audio_ready = False

    async def send_audio(self, message: AudioMessage) -> None:
        if message.kind == "sound":
            click.echo("\a", nl=False)
        elif message.text:
            click.echo(f"  {message.text}")

    async def set_badge(self, text: str, color: str) -> None:
        logger.debug("Badge set to %r (%s)", text, color)

    async def open_url(self, url: str) -> None:
        if not self._open_browser:
            logger.info("Meeting link: %s", url)
            return
        opened = await asyncio.to_thread(webbrowser.open, url)
        if not opened:
            logger.warning("No browser available to open %s", url)
