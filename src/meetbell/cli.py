"""CLI for meetbell: run the reminder service and manage its stored state."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import asyncpg
import click
import httpx

from meetbell import __version__
from meetbell.config import ConfigError, MeetbellConfig, load_config
from meetbell.console import ConsoleOutput
from meetbell.core.logging import configure_logging
from meetbell.core.state import MemoryStateStore, PostgresStateStore, StateStore
from meetbell.core.timers import StoreTimerFacility
from meetbell.dispatcher import NotificationDispatcher, OutputFacility
from meetbell.orchestrator import Orchestrator, http_probe
from meetbell.providers import CalendarProducer, GoogleCalendarProducer, OutlookCalendarProducer
from meetbell.scheduler import ReminderScheduler, load_settings, save_settings
from meetbell.summary import DailySummary
from meetbell.tokens import PROVIDERS, TokenManager

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("meetbell.toml")
HTTP_TIMEOUT_S = 30.0

_PRODUCERS: dict[str, type[CalendarProducer]] = {
    "google": GoogleCalendarProducer,
    "outlook": OutlookCalendarProducer,
}

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to meetbell.toml or its directory",
)


def _load(config_path: Path) -> MeetbellConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)


@asynccontextmanager
async def open_store(config: MeetbellConfig) -> AsyncIterator[StateStore]:
    """Yield the configured state store, closing its pool on exit."""
    if config.store.dsn is None:
        logger.warning("No store DSN configured; state is kept in memory only")
        yield MemoryStateStore()
        return

    pool = await asyncpg.create_pool(
        dsn=config.store.dsn,
        min_size=config.store.min_pool_size,
        max_size=config.store.max_pool_size,
    )
    try:
        store = PostgresStateStore(pool)
        await store.ensure_schema()
        yield store
    finally:
        await pool.close()


@dataclass
class Service:
    orchestrator: Orchestrator
    dispatcher: NotificationDispatcher
    tokens: dict[str, TokenManager]


async def build_service(
    config: MeetbellConfig,
    store: StateStore,
    http_client: httpx.AsyncClient,
    output: OutputFacility,
) -> Service:
    """Wire every component for *config* around *store*."""
    timers = StoreTimerFacility(store)
    dispatcher = NotificationDispatcher(output)
    scheduler = ReminderScheduler(store, timers)
    summary = DailySummary(store, timers, dispatcher, tz=config.summary.tz, at=config.summary.at)

    tokens: dict[str, TokenManager] = {}
    producers: list[CalendarProducer] = []
    for provider in config.enabled_providers:
        manager = TokenManager(
            PROVIDERS[provider.name],
            store,
            http_client,
            on_disconnect=dispatcher.notify_reconnect,
        )
        if provider.client_id:
            await manager.save_credentials(provider.client_id, provider.client_secret)
        tokens[provider.name] = manager
        producers.append(_PRODUCERS[provider.name](manager, http_client))

    orchestrator = Orchestrator(
        store,
        timers,
        scheduler,
        dispatcher,
        producers,
        probe=http_probe(http_client, config.sync.probe_url) if config.sync.probe_url else None,
        summary=summary,
        horizon=timedelta(hours=config.sync.horizon_hours),
        sync_interval=config.sync.interval_s,
        token_interval=config.sync.token_check_interval_s,
        connectivity_interval=config.sync.connectivity_interval_s,
        tick_interval=config.sync.tick_interval_s,
    )
    return Service(orchestrator=orchestrator, dispatcher=dispatcher, tokens=tokens)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """meetbell: meeting reminders that are never duplicated or lost."""


@cli.command()
@_config_option
def run(config_path: Path) -> None:
    """Run the reminder service until interrupted."""
    config = _load(config_path)
    configure_logging(config.logging.level, config.logging.format, config.name)
    click.echo(f"Starting {config.name} from {config_path}")
    asyncio.run(_run(config))


async def _run(config: MeetbellConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    async with open_store(config) as store, httpx.AsyncClient(timeout=HTTP_TIMEOUT_S) as http_client:
        service = await build_service(config, store, http_client, ConsoleOutput())
        await service.orchestrator.start()
        providers = ", ".join(service.tokens) or "none"
        click.echo(f"{config.name} running (providers: {providers})")

        await shutdown_event.wait()
        await service.orchestrator.stop()


@cli.command("check-config")
@_config_option
def check_config(config_path: Path) -> None:
    """Validate the configuration file and print what it resolves to."""
    config = _load(config_path)
    click.echo(f"Configuration OK: {config.name}")
    click.echo(f"  store:     {'postgres' if config.store.dsn else 'memory'}")
    click.echo(f"  sync:      every {config.sync.interval_s:g}s, {config.sync.horizon_hours:g}h horizon")
    enabled = ", ".join(p.name for p in config.enabled_providers) or "none"
    click.echo(f"  providers: {enabled}")


@cli.command()
@_config_option
def status(config_path: Path) -> None:
    """Show provider connection status and reminder settings."""
    config = _load(config_path)

    async def _status() -> None:
        async with open_store(config) as store, httpx.AsyncClient() as http_client:
            service = await build_service(config, store, http_client, ConsoleOutput(open_browser=False))
            connections = await service.orchestrator.connection_status()
            settings = await load_settings(store)
        for name, connected in connections.items():
            click.echo(f"{name:<10} {'connected' if connected else 'disconnected'}")
        click.echo(json.dumps(settings.model_dump(mode="json"), indent=2))

    asyncio.run(_status())


@cli.command()
@_config_option
@click.option("--provider", type=click.Choice(sorted(PROVIDERS)), required=True)
@click.option("--access-token", required=True, help="Access token issued by the OAuth flow")
@click.option("--refresh-token", default=None, help="Refresh token issued by the OAuth flow")
@click.option("--expires-in", type=int, default=3600, show_default=True, help="Token lifetime in seconds")
def connect(
    config_path: Path,
    provider: str,
    access_token: str,
    refresh_token: str | None,
    expires_in: int,
) -> None:
    """Store a provider token obtained from an OAuth authorization flow."""
    config = _load(config_path)

    async def _connect() -> None:
        async with open_store(config) as store, httpx.AsyncClient() as http_client:
            manager = TokenManager(PROVIDERS[provider], store, http_client)
            await manager.connect(access_token, refresh_token=refresh_token, expires_in=expires_in)

    asyncio.run(_connect())
    click.echo(f"Connected {PROVIDERS[provider].label}")


@cli.command()
@_config_option
@click.option("--provider", type=click.Choice(sorted(PROVIDERS)), required=True)
def disconnect(config_path: Path, provider: str) -> None:
    """Mark a provider disconnected; stored OAuth client credentials are kept."""
    config = _load(config_path)

    async def _disconnect() -> None:
        async with open_store(config) as store, httpx.AsyncClient() as http_client:
            await TokenManager(PROVIDERS[provider], store, http_client).disconnect()

    asyncio.run(_disconnect())
    click.echo(f"Disconnected {PROVIDERS[provider].label}")


@cli.command()
@_config_option
@click.option("--lead-minutes", type=click.IntRange(min=0), default=None)
@click.option("--popup/--no-popup", default=None)
@click.option("--sound/--no-sound", default=None)
@click.option("--voice/--no-voice", default=None)
@click.option("--auto-open/--no-auto-open", default=None)
@click.option("--volume", type=click.IntRange(0, 100), default=None)
@click.option("--daily-summary/--no-daily-summary", default=None)
def settings(
    config_path: Path,
    lead_minutes: int | None,
    popup: bool | None,
    sound: bool | None,
    voice: bool | None,
    auto_open: bool | None,
    volume: int | None,
    daily_summary: bool | None,
) -> None:
    """Show or update reminder preferences."""
    config = _load(config_path)
    updates = {
        key: value
        for key, value in {
            "lead_minutes": lead_minutes,
            "show_popup": popup,
            "play_sound": sound,
            "voice_reminder": voice,
            "auto_open": auto_open,
            "sound_volume": volume,
            "daily_summary": daily_summary,
        }.items()
        if value is not None
    }

    async def _settings() -> dict:
        async with open_store(config) as store, httpx.AsyncClient() as http_client:
            current = await load_settings(store)
            if updates:
                current = current.model_copy(update=updates)
                await save_settings(store, current)
            if daily_summary is not None:
                service = await build_service(config, store, http_client, ConsoleOutput(open_browser=False))
                await service.orchestrator.summary.schedule()
            return current.model_dump(mode="json")

    click.echo(json.dumps(asyncio.run(_settings()), indent=2))


@cli.command()
@_config_option
def summary(config_path: Path) -> None:
    """Send today's meeting summary now."""
    config = _load(config_path)

    async def _summary() -> int | None:
        async with open_store(config) as store, httpx.AsyncClient() as http_client:
            service = await build_service(config, store, http_client, ConsoleOutput(open_browser=False))
            report = await service.orchestrator.summary.send()
        return None if report is None else len(report.failed)

    failed = asyncio.run(_summary())
    if failed is None:
        click.echo("Daily summary is disabled")
    elif failed:
        click.echo(f"Daily summary sent with {failed} failed channel(s)", err=True)
        sys.exit(1)


@cli.command()
@_config_option
def stats(config_path: Path) -> None:
    """Show time spent in meetings over the last week."""
    config = _load(config_path)

    async def _stats() -> dict:
        async with open_store(config) as store, httpx.AsyncClient() as http_client:
            service = await build_service(config, store, http_client, ConsoleOutput(open_browser=False))
            statistics = await service.orchestrator.durations.statistics()
        return statistics.to_dict()

    click.echo(json.dumps(asyncio.run(_stats()), indent=2))


def main() -> None:
    cli()
