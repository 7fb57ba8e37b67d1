"""Key-value persistence used for all durable relay state.

Stores are strongly consistent per key and offer no cross-key transactions.
Values are plain strings; structured records go through :func:`get_json` and
:func:`put_json`.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

import anyio
import msgspec

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 1000


@dataclass(frozen=True, slots=True)
class KeyPage:
    keys: list[str]
    cursor: str | None = None

    @property
    def complete(self) -> bool:
        return self.cursor is None


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, *, ttl_s: float | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(
        self,
        prefix: str,
        *,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> KeyPage: ...


class MemoryStore:
    """Process-local store with expiry, mainly for tests and dry runs."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, *, ttl_s: float | None = None) -> None:
        expires_at = None if ttl_s is None else self._clock() + max(ttl_s, 0.0)
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(
        self,
        prefix: str,
        *,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> KeyPage:
        matching = sorted(
            key
            for key in list(self._data)
            if key.startswith(prefix)
            and (cursor is None or key > cursor)
            and self._live(key) is not None
        )
        page = matching[:limit]
        next_cursor = page[-1] if len(matching) > limit else None
        return KeyPage(keys=page, cursor=next_cursor)

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key) is not None)


def _init_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS relay_kv (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            expires_at REAL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_relay_kv_expires_at ON relay_kv(expires_at)"
    )


class SqliteStore:
    def __init__(
        self, path: Path, *, clock: Callable[[], float] = time.time
    ) -> None:
        self._path = path.expanduser()
        self._clock = clock
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        with self._lock:
            _init_schema(self._conn)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _get(self, key: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value, expires_at FROM relay_kv WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at is not None and expires_at <= self._clock():
                self._conn.execute("DELETE FROM relay_kv WHERE key = ?", (key,))
                self._conn.commit()
                return None
            return value

    def _put(self, key: str, value: str, ttl_s: float | None) -> None:
        expires_at = None if ttl_s is None else self._clock() + max(ttl_s, 0.0)
        with self._lock:
            self._conn.execute(
                "INSERT INTO relay_kv (key, value, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, expires_at = excluded.expires_at",
                (key, value, expires_at),
            )
            self._conn.commit()

    def _delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM relay_kv WHERE key = ?", (key,))
            self._conn.commit()

    def _list_keys(self, prefix: str, cursor: str | None, limit: int) -> KeyPage:
        escaped = (
            prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        )
        with self._lock:
            rows = self._conn.execute(
                "SELECT key FROM relay_kv "
                "WHERE key LIKE ? ESCAPE '\\' AND key > ? "
                "AND (expires_at IS NULL OR expires_at > ?) "
                "ORDER BY key LIMIT ?",
                (escaped + "%", cursor or "", self._clock(), limit + 1),
            ).fetchall()
        keys = [row[0] for row in rows[:limit]]
        next_cursor = keys[-1] if len(rows) > limit else None
        return KeyPage(keys=keys, cursor=next_cursor)

    async def get(self, key: str) -> str | None:
        return await anyio.to_thread.run_sync(self._get, key)

    async def put(self, key: str, value: str, *, ttl_s: float | None = None) -> None:
        await anyio.to_thread.run_sync(self._put, key, value, ttl_s)

    async def delete(self, key: str) -> None:
        await anyio.to_thread.run_sync(self._delete, key)

    async def list_keys(
        self,
        prefix: str,
        *,
        cursor: str | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> KeyPage:
        return await anyio.to_thread.run_sync(self._list_keys, prefix, cursor, limit)


async def iter_keys(
    store: KeyValueStore, prefix: str, *, page_size: int = DEFAULT_PAGE_SIZE
) -> AsyncIterator[str]:
    cursor: str | None = None
    while True:
        page = await store.list_keys(prefix, cursor=cursor, limit=page_size)
        for key in page.keys:
            yield key
        if page.complete:
            return
        cursor = page.cursor


async def get_json(store: KeyValueStore, key: str, kind: type[T]) -> T | None:
    raw = await store.get(key)
    if raw is None:
        return None
    try:
        return msgspec.json.decode(raw, type=kind)
    except msgspec.DecodeError as exc:
        logger.warning("store.decode_failed", key=key, error=str(exc))
        return None


async def put_json(
    store: KeyValueStore, key: str, value: Any, *, ttl_s: float | None = None
) -> None:
    await store.put(key, msgspec.json.encode(value).decode("utf-8"), ttl_s=ttl_s)


async def get_int(store: KeyValueStore, key: str) -> int:
    raw = await store.get(key)
    if raw is None:
        return 0
    try:
        return int(raw)
    except ValueError:
        return 0
