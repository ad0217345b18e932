"""Shared fixtures for the meetbell test suite.

Unit tests run against :class:`MemoryStateStore`, a controllable clock, and a
recording :class:`OutputFacility`.  DB-backed tests use the session-scoped
``postgres_container`` and skip when Docker is not available.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from meetbell.core.state import MemoryStateStore
from meetbell.core.timers import StoreTimerFacility
from meetbell.dispatcher import (
    AudioMessage,
    NotificationOptions,
    OutputFacility,
    WindowBounds,
    WindowRequest,
)
from meetbell.models import Event

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class RecordingOutput(OutputFacility):
    """Output facility that records every call and can be told to fail."""

    calls: list[tuple[str, Any]] = field(default_factory=list)
    fail: dict[str, Exception] = field(default_factory=dict)
    send_audio_failures: int = 0
    active_window: WindowBounds | None = None
    audio_surface: bool = False

    def _record(self, name: str, payload: Any = None) -> None:
        self.calls.append((name, payload))
        if name in self.fail:
            raise self.fail[name]

    def named(self, name: str) -> list[Any]:
        return [payload for call, payload in self.calls if call == name]

    async def create_notification(self, notification_id: str, options: NotificationOptions) -> None:
        self._record("create_notification", (notification_id, options))

    async def get_active_window(self) -> WindowBounds | None:
        self._record("get_active_window")
        return self.active_window

    async def create_window(self, request: WindowRequest) -> None:
        self._record("create_window", request)

    async def has_audio_surface(self) -> bool:
        return self.audio_surface

    async def create_audio_surface(self) -> None:
        self._record("create_audio_surface")
        self.audio_surface = True

    async def close_audio_surface(self) -> None:
        self._record("close_audio_surface")
        self.audio_surface = False

    async def send_audio(self, message: AudioMessage) -> None:
        self.calls.append(("send_audio", message))
        if self.send_audio_failures > 0:
            self.send_audio_failures -= 1
            raise RuntimeError("audio surface not listening")
        if "send_audio" in self.fail:
            raise self.fail["send_audio"]

    async def set_badge(self, text: str, color: str) -> None:
        self._record("set_badge", (text, color))

    async def open_url(self, url: str) -> None:
        self._record("open_url", url)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def timers(store: MemoryStateStore, clock: FakeClock) -> StoreTimerFacility:
    return StoreTimerFacility(store, clock=clock)


@pytest.fixture
def output() -> RecordingOutput:
    return RecordingOutput()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_event() -> Callable[..., Event]:
    """Factory for raw events relative to ``NOW``."""

    def _make(
        title: str = "Standup",
        *,
        starts_in: timedelta = timedelta(minutes=10),
        duration: timedelta | None = timedelta(minutes=30),
        **overrides: Any,
    ) -> Event:
        start = NOW + starts_in
        payload: dict[str, Any] = {
            "id": overrides.pop("id", f"evt-{title.lower().replace(' ', '-')}"),
            "title": title,
            "start_time": start,
            "end_time": start + duration if duration is not None else None,
            "source": overrides.pop("source", "google-api"),
        }
        payload.update(overrides)
        return Event.model_validate(payload)

    return _make


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this session.

    Each test provisions its own database, so rows never leak between tests.
    """
    if not docker_available:
        pytest.skip("Docker not available")

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg
