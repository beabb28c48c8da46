"""Key-value persistence for local tracker state."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Protocol

import aiosqlite

from .errors import StorageError

logger = logging.getLogger(__name__)

# Keys of the persisted state document.
TIME_LEDGER = "timeLedger"
BLOCKED_SITES = "blockedSites"
PRODUCTIVE_SITES = "productiveSites"
DISTRACTING_SITES = "distractingSites"
PREFERENCES_UPDATED_AT = "preferencesUpdatedAt"
BLOCKING_ENABLED = "blockingEnabled"
FOCUS_SESSION = "focusSession"
LAST_SYNC = "lastSync"
DAILY_REPORTS = "dailyReports"

STATE_KEYS = (
    TIME_LEDGER,
    BLOCKED_SITES,
    PRODUCTIVE_SITES,
    DISTRACTING_SITES,
    PREFERENCES_UPDATED_AT,
    BLOCKING_ENABLED,
    FOCUS_SESSION,
    LAST_SYNC,
    DAILY_REPORTS,
)


class KeyValueStore(Protocol):
    async def get(self, key: str, default: Any = None) -> Any: ...

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def set_many(self, values: Mapping[str, Any]) -> None: ...

    async def close(self) -> None: ...


async def open_database(path: Path) -> aiosqlite.Connection:
    """Open (and initialize) the SQLite database."""
    conn = await aiosqlite.connect(path, isolation_level=None)
    conn.row_factory = aiosqlite.Row
    try:
        await initialize_schema(conn)
    except aiosqlite.Error:
        await conn.close()
        raise
    return conn


async def initialize_schema(conn: aiosqlite.Connection) -> None:
    await conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
        );
        """
    )


async def read_values(conn: aiosqlite.Connection, keys: Iterable[str]) -> dict[str, Any]:
    keys = list(keys)
    if not keys:
        return {}
    placeholders = ", ".join("?" for _ in keys)
    async with conn.execute(
        f"SELECT key, value FROM kv_store WHERE key IN ({placeholders})",
        keys,
    ) as cursor:
        rows = await cursor.fetchall()
    return {row["key"]: json.loads(row["value"]) for row in rows}


async def write_values(conn: aiosqlite.Connection, values: Mapping[str, Any]) -> None:
    rows = [(key, json.dumps(value, sort_keys=True)) for key, value in values.items()]
    await conn.execute("BEGIN")
    try:
        await conn.executemany(
            """
            INSERT INTO kv_store (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = strftime('%Y-%m-%d %H:%M:%f', 'now')
            """,
            rows,
        )
    except Exception:
        await conn.execute("ROLLBACK")
        raise
    await conn.execute("COMMIT")


class SQLiteKeyValueStore:
    """JSON documents keyed by name in a single SQLite table.

    Queries run on aiosqlite's worker thread, so the event loop serving
    ``decide()`` and the timers is never blocked on disk I/O.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._conn: Optional[aiosqlite.Connection] = None

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await open_database(self.path)
        return self._conn

    async def get(self, key: str, default: Any = None) -> Any:
        values = await self.get_many([key])
        return values.get(key, default)

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        try:
            return await read_values(await self._connection(), keys)
        except (aiosqlite.Error, OSError, ValueError) as exc:
            raise StorageError(f"failed to read from {self.path}: {exc}") from exc

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def set_many(self, values: Mapping[str, Any]) -> None:
        try:
            await write_values(await self._connection(), values)
        except (aiosqlite.Error, OSError, TypeError, ValueError) as exc:
            raise StorageError(f"failed to write to {self.path}: {exc}") from exc

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.debug("Closed state database %s", self.path)


class MemoryKeyValueStore:
    """Process-local store; values are JSON round-tripped like the SQLite one."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._data: dict[str, str] = {}
        if initial:
            for key, value in initial.items():
                self._data[key] = json.dumps(value, sort_keys=True)

    async def get(self, key: str, default: Any = None) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else default

    async def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        return {key: json.loads(self._data[key]) for key in keys if key in self._data}

    async def set(self, key: str, value: Any) -> None:
        await self.set_many({key: value})

    async def set_many(self, values: Mapping[str, Any]) -> None:
        try:
            encoded = {key: json.dumps(value, sort_keys=True) for key, value in values.items()}
        except (TypeError, ValueError) as exc:
            raise StorageError(f"value is not serializable: {exc}") from exc
        self._data.update(encoded)

    async def close(self) -> None:
        pass
