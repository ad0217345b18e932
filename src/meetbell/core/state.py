"""Key-value state store used for every piece of durable meetbell state.

The canonical event set, trigger snapshots, durable timers, token records and
user settings all live here.  Nothing held in process memory is authoritative:
the host may tear the process down between any two awaits, so components
re-read the store at the start of every handler.

Two implementations are provided:

- :class:`PostgresStateStore` backed by a ``state`` table with a JSONB value
  column (asyncpg pool).
- :class:`MemoryStateStore`, a dict-backed store for tests and single-process
  development runs.
"""

from __future__ import annotations

import abc
import copy
import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

STATE_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS state (
    key TEXT PRIMARY KEY,
    value JSONB NOT NULL DEFAULT '{}',
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as Python strings when no custom codec is
    registered.  Normally one ``json.loads`` pass suffices.  If the stored
    value was accidentally double-encoded a second pass is applied.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected, applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class StateStore(abc.ABC):
    """Abstract persistent key-value store.

    Values are any JSON-serialisable structure.  Implementations must be
    read-after-write consistent within one process.
    """

    @abc.abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored at *key*, or ``None`` if absent."""

    @abc.abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Upsert *key* with *value*."""

    @abc.abstractmethod
    async def remove(self, key: str) -> None:
        """Delete *key*.  No-op if the key does not exist."""

    @abc.abstractmethod
    async def keys(self, prefix: str | None = None) -> list[str]:
        """Return stored keys ordered by name, optionally filtered by *prefix*."""


class PostgresStateStore(StateStore):
    """State store backed by the PostgreSQL ``state`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        await self._pool.execute(STATE_TABLE_DDL)

    async def get(self, key: str) -> Any | None:
        row = await self._pool.fetchval(
            "SELECT value FROM state WHERE key = $1",
            key,
        )
        if row is None:
            return None
        return decode_jsonb(row)

    async def set(self, key: str, value: Any) -> None:
        await self._pool.execute(
            """
            INSERT INTO state (key, value, updated_at)
            VALUES ($1, $2::jsonb, now())
            ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value,
                    updated_at = now()
            """,
            key,
            json.dumps(value),
        )

    async def remove(self, key: str) -> None:
        await self._pool.execute("DELETE FROM state WHERE key = $1", key)

    async def keys(self, prefix: str | None = None) -> list[str]:
        if prefix is not None:
            # Trigger names contain "_", which LIKE treats as a wildcard.
            escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            rows = await self._pool.fetch(
                "SELECT key FROM state WHERE key LIKE $1 ESCAPE '\\' ORDER BY key",
                f"{escaped}%",
            )
        else:
            rows = await self._pool.fetch("SELECT key FROM state ORDER BY key")
        return [row["key"] for row in rows]


class MemoryStateStore(StateStore):
    """Dict-backed store.

    Values are round-tripped through JSON on write so callers observe the same
    serialisation constraints as the PostgreSQL store, and deep-copied on read
    so no caller can mutate stored state in place.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = {}
        for key, value in (initial or {}).items():
            self._data[key] = json.loads(json.dumps(value))

    async def get(self, key: str) -> Any | None:
        if key not in self._data:
            return None
        return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.loads(json.dumps(value))

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str | None = None) -> list[str]:
        return sorted(k for k in self._data if prefix is None or k.startswith(prefix))

    def snapshot(self) -> dict[str, Any]:
        """Return a deep copy of everything stored (test helper)."""
        return copy.deepcopy(self._data)
