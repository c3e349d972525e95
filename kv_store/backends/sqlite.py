"""SQLite backend implementation using aiosqlite."""

from __future__ import annotations

import re
import sqlite3
from typing import Any, override


try:
    import aiosqlite
except ImportError:  # pragma: no cover - exercised when dependency is absent
    aiosqlite = None

from kv_store.errors import BackendError, BackendUnavailableError, QuotaExceededError

from .protocol import Backend


_VALID_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LIKE_SPECIAL = re.compile(r"[\\%_]")


def _backend_error(error: Exception, operation: str, key: str | None) -> BackendError | None:
    if not isinstance(error, sqlite3.Error):
        return None
    if "full" in str(error):
        return QuotaExceededError(operation, key, str(error))
    if isinstance(error, sqlite3.OperationalError):
        return BackendUnavailableError(operation, key, str(error))
    return None


class SQLiteBackend(Backend):
    """Durable single-file backend.

    SQLite has no change feed, so :meth:`watch` is not supported and stores
    built on this backend only observe their own writes.

    Parameters
    ----------
    db_path
        Path to the SQLite database file. Use ``":memory:"`` for a private
        in-memory database (useful for testing).
    table
        Table holding ``k`` and ``v`` columns; created when missing.
    """

    def __init__(self, db_path: str = "kv_store.db", table: str = "kv_store") -> None:
        super().__init__()
        if not _VALID_IDENTIFIER.fullmatch(table):
            msg = "table must be a valid unquoted SQL identifier"
            raise ValueError(msg)
        self._db_path = db_path
        self._table = table
        self._db: Any | None = None

    async def _connect(self) -> Any:
        if self._db is not None:
            return self._db

        if aiosqlite is None:
            msg = "aiosqlite dependency is required for SQLiteBackend; install with `pip install aiosqlite`"
            raise RuntimeError(msg)
        try:
            db = await aiosqlite.connect(self._db_path)
            await db.execute(f'CREATE TABLE IF NOT EXISTS "{self._table}" (k TEXT PRIMARY KEY, v TEXT NOT NULL)')
            await db.commit()
        except sqlite3.Error as error:
            raise BackendUnavailableError("connect", None, str(error)) from error
        self._db = db
        return db

    @override
    async def get(self, key: str) -> str | None:
        """Return raw value for key, or None when key does not exist."""
        db = await self._connect()
        try:
            cursor = await db.execute(f'SELECT v FROM "{self._table}" WHERE k = ?', (key,))  # noqa: S608
            row = await cursor.fetchone()
        except Exception as error:
            translated = _backend_error(error, "get", key)
            if translated is None:
                raise
            raise translated from error
        if row is None:
            return None
        return row[0]

    @override
    async def set(self, key: str, value: str) -> None:
        """Store raw value for key."""
        db = await self._connect()
        try:
            await db.execute(
                f'INSERT INTO "{self._table}" (k, v) VALUES (?, ?) ON CONFLICT (k) DO UPDATE SET v = excluded.v',  # noqa: S608
                (key, value),
            )
            await db.commit()
        except Exception as error:
            translated = _backend_error(error, "set", key)
            if translated is None:
                raise
            raise translated from error

    @override
    async def delete(self, key: str) -> None:
        """Delete key if present."""
        db = await self._connect()
        try:
            await db.execute(f'DELETE FROM "{self._table}" WHERE k = ?', (key,))  # noqa: S608
            await db.commit()
        except Exception as error:
            translated = _backend_error(error, "delete", key)
            if translated is None:
                raise
            raise translated from error

    @override
    async def list_keys(self, prefix: str) -> list[str]:
        """List all keys beginning with prefix in sorted order."""
        db = await self._connect()
        pattern = _LIKE_SPECIAL.sub(r"\\\g<0>", prefix) + "%"
        try:
            cursor = await db.execute(
                f'SELECT k FROM "{self._table}" WHERE k LIKE ? ESCAPE \'\\\' ORDER BY k ASC',  # noqa: S608
                (pattern,),
            )
            rows = await cursor.fetchall()
        except Exception as error:
            translated = _backend_error(error, "list_keys", None)
            if translated is None:
                raise
            raise translated from error
        # LIKE ignores ASCII case
        return [row[0] for row in rows if row[0].startswith(prefix)]

    @override
    async def close(self) -> None:
        """Close the database connection."""
        if self._db is None:
            return
        await self._db.close()
        self._db = None
