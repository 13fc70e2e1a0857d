"""SQLite storage backend.

Blocking sqlite3 calls run in a worker thread of the default executor; a
single connection is shared and serialized by a thread lock, so every record
is read and written as one row. A call whose caller was cancelled before the
commit is rolled back.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from boxreg.records.storage import (
    DomainRecord,
    DuplicateRecordError,
    RecordStore,
    StoreError,
)

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS domains (
    token TEXT PRIMARY KEY,
    local_name TEXT NOT NULL,
    remote_name TEXT NOT NULL UNIQUE,
    dns_challenge TEXT,
    local_ip TEXT,
    public_ip TEXT,
    description TEXT NOT NULL DEFAULT '',
    email TEXT,
    timestamp INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_domains_public_ip ON domains(public_ip);
CREATE TABLE IF NOT EXISTS discovery (
    disco TEXT PRIMARY KEY,
    token TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_discovery_token ON discovery(token);
"""

_COLUMNS = (
    "token, local_name, remote_name, dns_challenge, local_ip, public_ip, "
    "description, email, timestamp"
)


def _row_to_record(row: sqlite3.Row) -> DomainRecord:
    return DomainRecord.from_dict(dict(row))


class _Abandoned(Exception):
    """The caller gave up before the transaction committed."""


class _CommitGuard:
    """Decides, once, whether a worker transaction commits or is called off."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._committed = False

    def commit(self, conn: sqlite3.Connection) -> None:
        with self._lock:
            if self._abandoned:
                raise _Abandoned()
            conn.commit()
            self._committed = True

    def abandon(self) -> bool:
        """Call off the commit. Returns False if it already happened."""
        with self._lock:
            if not self._committed:
                self._abandoned = True
            return not self._committed


def _consume_result(future: asyncio.Future[Any]) -> None:
    if not future.cancelled():
        future.exception()


class SQLiteRecordStore(RecordStore):
    """SQLite storage backend for single-server deployments.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.
    """

    def __init__(self, db_path: str | Path = "registry.db") -> None:
        self.db_path = str(db_path)
        self._thread_lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.executescript(_SCHEMA)
            self._conn = conn
        return self._conn

    @contextmanager
    def cursor(self, guard: _CommitGuard | None = None) -> Iterator[sqlite3.Cursor]:
        """Get a cursor with automatic commit/rollback."""
        conn = self._get_connection()
        cur = conn.cursor()
        try:
            yield cur
            if guard is None:
                conn.commit()
            else:
                guard.commit(conn)
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()

    async def _run(self, func: Callable[[sqlite3.Cursor], T]) -> T:
        """Run ``func`` in one transaction on the worker thread.

        If the awaiting task is cancelled before the transaction commits, the
        worker rolls it back, so a caller that gave up never sees the change
        land later. A cancellation arriving after the commit is ignored and the
        result is returned.
        """
        guard = _CommitGuard()

        def call() -> T:
            with self._thread_lock:
                try:
                    with self.cursor(guard) as cur:
                        return func(cur)
                except sqlite3.IntegrityError as e:
                    raise DuplicateRecordError(str(e)) from e
                except sqlite3.Error as e:
                    raise StoreError(str(e)) from e

        future = asyncio.get_running_loop().run_in_executor(None, call)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if guard.abandon():
                future.add_done_callback(_consume_result)
                raise
            return await future

    async def initialize(self) -> None:
        """Create the schema if needed."""
        await self._run(lambda cur: None)

    async def get_record_by_token(self, token: str) -> DomainRecord | None:
        def query(cur: sqlite3.Cursor) -> DomainRecord | None:
            cur.execute(f"SELECT {_COLUMNS} FROM domains WHERE token = ?", (token,))
            row = cur.fetchone()
            return _row_to_record(row) if row else None

        return await self._run(query)

    async def get_record_by_name(self, remote_name: str) -> DomainRecord | None:
        def query(cur: sqlite3.Cursor) -> DomainRecord | None:
            cur.execute(f"SELECT {_COLUMNS} FROM domains WHERE remote_name = ?", (remote_name,))
            row = cur.fetchone()
            return _row_to_record(row) if row else None

        return await self._run(query)

    async def get_records_by_public_ip(self, public_ip: str) -> list[DomainRecord]:
        def query(cur: sqlite3.Cursor) -> list[DomainRecord]:
            cur.execute(f"SELECT {_COLUMNS} FROM domains WHERE public_ip = ?", (public_ip,))
            return [_row_to_record(row) for row in cur.fetchall()]

        return await self._run(query)

    async def add_record(self, record: DomainRecord) -> None:
        values = _record_values(record)

        def insert(cur: sqlite3.Cursor) -> None:
            cur.execute(
                f"INSERT INTO domains ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                values,
            )

        await self._run(insert)

    async def update_record(self, record: DomainRecord) -> bool:
        def update(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                "UPDATE domains SET local_name = ?, dns_challenge = ?, local_ip = ?, "
                "public_ip = ?, description = ?, email = ?, timestamp = ? "
                "WHERE token = ? AND remote_name = ?",
                (
                    record.local_name,
                    record.dns_challenge,
                    record.local_ip,
                    record.public_ip,
                    record.description,
                    record.email,
                    record.timestamp,
                    record.token,
                    record.remote_name,
                ),
            )
            return cur.rowcount > 0

        return await self._run(update)

    async def delete_record_by_token(self, token: str) -> int:
        def delete(cur: sqlite3.Cursor) -> int:
            cur.execute("DELETE FROM domains WHERE token = ?", (token,))
            deleted = cur.rowcount
            cur.execute("DELETE FROM discovery WHERE token = ?", (token,))
            return deleted

        return await self._run(delete)

    async def add_discovery(self, token: str, discovery_id: str) -> None:
        def insert(cur: sqlite3.Cursor) -> None:
            cur.execute("INSERT INTO discovery (disco, token) VALUES (?, ?)", (discovery_id, token))

        await self._run(insert)

    async def delete_discovery(self, discovery_id: str, token: str | None = None) -> int:
        def delete(cur: sqlite3.Cursor) -> int:
            if token is None:
                cur.execute("DELETE FROM discovery WHERE disco = ?", (discovery_id,))
            else:
                cur.execute(
                    "DELETE FROM discovery WHERE disco = ? AND token = ?",
                    (discovery_id, token),
                )
            return cur.rowcount

        return await self._run(delete)

    async def get_token_for_discovery(self, discovery_id: str) -> str | None:
        def query(cur: sqlite3.Cursor) -> str | None:
            cur.execute("SELECT token FROM discovery WHERE disco = ?", (discovery_id,))
            row = cur.fetchone()
            return row["token"] if row else None

        return await self._run(query)

    async def close(self) -> None:
        def close() -> None:
            with self._thread_lock:
                if self._conn is not None:
                    self._conn.close()
                    self._conn = None

        await asyncio.to_thread(close)


def _record_values(record: DomainRecord) -> tuple[Any, ...]:
    return (
        record.token,
        record.local_name,
        record.remote_name,
        record.dns_challenge,
        record.local_ip,
        record.public_ip,
        record.description,
        record.email,
        record.timestamp,
    )
