"""Service configuration loading and validation.

Reads ``meetbell.toml``, resolves ``${VAR_NAME}`` references from the
environment, and returns a validated :class:`MeetbellConfig` dataclass.
Reminder preferences are not configured here; they live in the state store
as :class:`~meetbell.models.ReminderConfig`.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import time, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_FILENAME = "meetbell.toml"

# Pattern matching ${VAR_NAME}
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_KNOWN_PROVIDERS = ("google", "outlook")


class ConfigError(Exception):
    """Raised when meetbell configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [meetbell.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass
class StoreConfig:
    """State store from [meetbell.store].  No DSN means an in-memory store."""

    dsn: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 5


@dataclass
class SyncConfig:
    """Periodic work cadence from [meetbell.sync], in seconds."""

    interval_s: float = 120.0
    token_check_interval_s: float = 900.0
    connectivity_interval_s: float = 30.0
    tick_interval_s: float = 1.0
    horizon_hours: float = 24.0
    probe_url: str | None = "https://www.google.com/generate_204"


@dataclass
class SummaryConfig:
    """Daily summary delivery from [meetbell.summary].  No timezone means host local time."""

    at: time = time(10, 0)
    timezone: str | None = None

    @property
    def tz(self) -> tzinfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None


@dataclass
class ProviderConfig:
    """One calendar provider from [meetbell.providers.<name>]."""

    name: str
    enabled: bool = True
    client_id: str | None = None
    client_secret: str | None = None


@dataclass
class MeetbellConfig:
    """Complete parsed configuration."""

    name: str = "meetbell"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    summary: SummaryConfig = field(default_factory=SummaryConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)

    @property
    def enabled_providers(self) -> list[ProviderConfig]:
        return [p for p in self.providers.values() if p.enabled]


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing name at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path} must be a TOML table")
    return value


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"{path}.{key} must be a number")
    if raw <= 0:
        raise ConfigError(f"{path}.{key} must be positive, got {raw!r}")
    return float(raw)


def _optional_str(section: dict[str, Any], key: str, path: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    return raw.strip() or None


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(
            f"Invalid meetbell.logging.format: {fmt!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(level=level, format=fmt)


def _parse_store(section: dict[str, Any]) -> StoreConfig:
    path = "meetbell.store"
    min_size = section.get("min_pool_size", 1)
    max_size = section.get("max_pool_size", 5)
    if not isinstance(min_size, int) or not isinstance(max_size, int) or min_size < 1:
        raise ConfigError(f"{path} pool sizes must be positive integers")
    if max_size < min_size:
        raise ConfigError(f"{path}.max_pool_size must be >= min_pool_size")
    return StoreConfig(
        dsn=_optional_str(section, "dsn", path),
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    path = "meetbell.sync"
    defaults = SyncConfig()
    probe_url = section.get("probe_url", defaults.probe_url)
    if probe_url is not None and not isinstance(probe_url, str):
        raise ConfigError(f"{path}.probe_url must be a string when set")
    return SyncConfig(
        interval_s=_positive_float(section, "interval_s", defaults.interval_s, path),
        token_check_interval_s=_positive_float(
            section, "token_check_interval_s", defaults.token_check_interval_s, path
        ),
        connectivity_interval_s=_positive_float(
            section, "connectivity_interval_s", defaults.connectivity_interval_s, path
        ),
        tick_interval_s=_positive_float(section, "tick_interval_s", defaults.tick_interval_s, path),
        horizon_hours=_positive_float(section, "horizon_hours", defaults.horizon_hours, path),
        # An empty probe URL disables the connectivity probe.
        probe_url=probe_url or None,
    )


def _parse_summary(section: dict[str, Any]) -> SummaryConfig:
    path = "meetbell.summary"
    raw_time = section.get("time", "10:00")
    if isinstance(raw_time, time):
        at = raw_time
    elif isinstance(raw_time, str):
        try:
            at = time.fromisoformat(raw_time.strip())
        except ValueError as exc:
            raise ConfigError(f"{path}.time must be HH:MM, got {raw_time!r}") from exc
    else:
        raise ConfigError(f"{path}.time must be a string or TOML local time")

    timezone = _optional_str(section, "timezone", path)
    if timezone is not None:
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown {path}.timezone: {timezone!r}") from exc
    return SummaryConfig(at=at.replace(tzinfo=None), timezone=timezone)


def _parse_providers(section: dict[str, Any]) -> dict[str, ProviderConfig]:
    providers: dict[str, ProviderConfig] = {}
    for name, raw in section.items():
        path = f"meetbell.providers.{name}"
        if name not in _KNOWN_PROVIDERS:
            raise ConfigError(
                f"Unknown provider {name!r} in {path}. Expected one of: {', '.join(_KNOWN_PROVIDERS)}"
            )
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must be a TOML table")
        enabled = raw.get("enabled", True)
        if not isinstance(enabled, bool):
            raise ConfigError(f"{path}.enabled must be a boolean")
        providers[name] = ProviderConfig(
            name=name,
            enabled=enabled,
            client_id=_optional_str(raw, "client_id", path),
            client_secret=_optional_str(raw, "client_secret", path),
        )
    return providers


def parse_config(data: dict[str, Any]) -> MeetbellConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    root = data.get("meetbell", {})
    if not isinstance(root, dict):
        raise ConfigError("[meetbell] must be a TOML table")

    name = root.get("name", "meetbell")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("meetbell.name must be a non-empty string")

    return MeetbellConfig(
        name=name.strip(),
        logging=_parse_logging(_section(root, "logging", "meetbell.logging")),
        store=_parse_store(_section(root, "store", "meetbell.store")),
        sync=_parse_sync(_section(root, "sync", "meetbell.sync")),
        summary=_parse_summary(_section(root, "summary", "meetbell.summary")),
        providers=_parse_providers(_section(root, "providers", "meetbell.providers")),
    )


def load_config(path: Path) -> MeetbellConfig:
    """Load and validate ``meetbell.toml``.

    *path* may be the file itself or the directory containing it.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
