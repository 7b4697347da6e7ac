"""Document store on top of SQLite.

Records are JSON objects grouped into named collections and addressed by
generated opaque ids. The store offers point reads/writes, equality listing,
atomic counters, multi-document transactions and in-process change listeners.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
import secrets
import sqlite3
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from config import DB_PATH

SQLITE_BUSY_TIMEOUT_MS = 5000
WRITE_RETRY_ATTEMPTS = 3
WRITE_RETRY_BASE_DELAY_SEC = 0.05
DOCUMENT_ID_BYTES = 10
FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

logger = logging.getLogger(__name__)

Record = dict[str, Any]
ChangeCallback = Callable[[Any], Any]


class StoreUnavailableError(RuntimeError):
    """Raised when a database call fails or stays locked after retries."""


def utc_now_iso() -> str:
    """Current UTC timestamp in ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


def new_document_id() -> str:
    return secrets.token_hex(DOCUMENT_ID_BYTES)


def _to_json(data: Record) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def _row_to_record(row: aiosqlite.Row) -> Record:
    record = json.loads(row["data_json"])
    record["id"] = row["id"]
    return record


def _field_path(name: str) -> str:
    if not FIELD_NAME_RE.fullmatch(str(name)):
        raise ValueError(f"Unsupported field name: {name!r}")
    return f"$.{name}"


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "database is locked" in msg or "database table is locked" in msg


async def apply_sqlite_pragmas(db: aiosqlite.Connection) -> None:
    """SQLite settings for concurrent access from several processes."""
    await db.execute("PRAGMA journal_mode=WAL;")
    await db.execute("PRAGMA synchronous=NORMAL;")
    await db.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")


@dataclass(eq=False)
class _Listener:
    collection: str
    callback: ChangeCallback
    doc_id: str | None = None


@dataclass(eq=False)
class StoreTransaction:
    """Operations bound to one open write transaction."""

    db: aiosqlite.Connection
    touched: dict[str, set[str]] = field(default_factory=dict)

    def _touch(self, collection: str, doc_id: str) -> None:
        self.touched.setdefault(collection, set()).add(doc_id)

    async def read(self, collection: str, doc_id: str) -> Record | None:
        return await _read(self.db, collection, doc_id)

    async def list(self, collection: str, where: Record | None = None) -> list[Record]:
        return await _list(self.db, collection, where)

    async def create(self, collection: str, data: Record) -> str:
        doc_id = new_document_id()
        await self.put(collection, doc_id, data)
        return doc_id

    async def put(self, collection: str, doc_id: str, data: Record) -> None:
        payload = {k: v for k, v in data.items() if k != "id"}
        now = utc_now_iso()
        await self.db.execute(
            """INSERT INTO documents(collection, id, data_json, created_at, updated_at)
               VALUES(?, ?, ?, ?, ?)
               ON CONFLICT(collection, id) DO UPDATE SET
                   data_json = excluded.data_json,
                   updated_at = excluded.updated_at""",
            (collection, str(doc_id), _to_json(payload), now, now),
        )
        self._touch(collection, str(doc_id))

    async def update(self, collection: str, doc_id: str, fields: Record) -> bool:
        """Shallow-merge ``fields`` into an existing record. No upsert."""
        current = await self.read(collection, doc_id)
        if current is None:
            return False
        current.pop("id", None)
        current.update({k: v for k, v in fields.items() if k != "id"})
        await self.db.execute(
            "UPDATE documents SET data_json = ?, updated_at = ? WHERE collection = ? AND id = ?",
            (_to_json(current), utc_now_iso(), collection, str(doc_id)),
        )
        self._touch(collection, str(doc_id))
        return True

    async def delete(self, collection: str, doc_id: str) -> bool:
        cursor = await self.db.execute(
            "DELETE FROM documents WHERE collection = ? AND id = ?",
            (collection, str(doc_id)),
        )
        if not cursor.rowcount:
            return False
        self._touch(collection, str(doc_id))
        return True

    async def increment(self, collection: str, doc_id: str, field_name: str, amount: int = 1) -> bool:
        path = _field_path(field_name)
        cursor = await self.db.execute(
            """UPDATE documents
                  SET data_json = json_set(data_json, ?, COALESCE(json_extract(data_json, ?), 0) + ?),
                      updated_at = ?
                WHERE collection = ? AND id = ?""",
            (path, path, int(amount), utc_now_iso(), collection, str(doc_id)),
        )
        if not cursor.rowcount:
            return False
        self._touch(collection, str(doc_id))
        return True


async def _read(db: aiosqlite.Connection, collection: str, doc_id: str) -> Record | None:
    async with db.execute(
        "SELECT id, data_json FROM documents WHERE collection = ? AND id = ?",
        (collection, str(doc_id)),
    ) as cur:
        row = await cur.fetchone()
        return _row_to_record(row) if row else None


async def _list(db: aiosqlite.Connection, collection: str, where: Record | None) -> list[Record]:
    query = "SELECT id, data_json FROM documents WHERE collection = ?"
    params: list[Any] = [collection]
    for name, value in (where or {}).items():
        query += " AND json_extract(data_json, ?) IS ?"
        params.extend((_field_path(name), value))
    query += " ORDER BY created_at, id"
    async with db.execute(query, params) as cur:
        rows = await cur.fetchall()
        return [_row_to_record(row) for row in rows]


class DocumentStore:
    """Collections of JSON records in a single SQLite file.

    Listeners registered with :meth:`subscribe` are notified after every
    committed write made through this instance, so the process should share
    one store object between its services.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or DB_PATH
        self._listeners: dict[str, list[_Listener]] = {}

    @asynccontextmanager
    async def open_db(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await apply_sqlite_pragmas(db)
                yield db
        except sqlite3.Error as error:
            raise StoreUnavailableError(f"Document store unavailable: {error}") from error

    async def init_db(self) -> None:
        """Create schema (idempotent)."""
        async with self.open_db() as db:
            await db.execute(
                """CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                )"""
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_collection_created "
                "ON documents (collection, created_at)"
            )
            await db.commit()

    async def _begin(self, db: aiosqlite.Connection) -> None:
        for attempt in range(WRITE_RETRY_ATTEMPTS):
            try:
                await db.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as error:
                if not _is_sqlite_locked_error(error) or attempt >= WRITE_RETRY_ATTEMPTS - 1:
                    raise
                delay = WRITE_RETRY_BASE_DELAY_SEC * (2**attempt)
                logger.warning("SQLite locked; retry %s/%s in %.2fs", attempt + 1, WRITE_RETRY_ATTEMPTS, delay)
                await asyncio.sleep(delay)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Run several writes atomically.

        Everything done through the yielded object commits together; any
        exception rolls the whole batch back and is re-raised.
        """
        async with self.open_db() as db:
            await self._begin(db)
            tx = StoreTransaction(db)
            try:
                yield tx
            except BaseException:
                await db.rollback()
                raise
            await db.commit()
        await self._notify(tx.touched)

    async def read(self, collection: str, doc_id: str) -> Record | None:
        async with self.open_db() as db:
            return await _read(db, collection, doc_id)

    async def list(self, collection: str, where: Record | None = None) -> list[Record]:
        async with self.open_db() as db:
            return await _list(db, collection, where)

    async def create(self, collection: str, data: Record) -> str:
        async with self.transaction() as tx:
            return await tx.create(collection, data)

    async def put(self, collection: str, doc_id: str, data: Record) -> None:
        async with self.transaction() as tx:
            await tx.put(collection, doc_id, data)

    async def update(self, collection: str, doc_id: str, fields: Record) -> bool:
        async with self.transaction() as tx:
            return await tx.update(collection, doc_id, fields)

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self.transaction() as tx:
            return await tx.delete(collection, doc_id)

    async def increment(self, collection: str, doc_id: str, field_name: str, amount: int = 1) -> bool:
        """Atomic server-side counter increment; False when the record is missing."""
        async with self.transaction() as tx:
            return await tx.increment(collection, doc_id, field_name, amount)

    async def subscribe(
        self,
        collection: str,
        on_change: ChangeCallback,
        *,
        doc_id: str | None = None,
    ) -> Callable[[], None]:
        """Listen to a collection (list snapshots) or one document (record or None).

        The current snapshot is delivered before returning. Call the returned
        handle to stop listening.
        """
        listener = _Listener(collection=collection, callback=on_change, doc_id=doc_id)
        self._listeners.setdefault(collection, []).append(listener)
        await self._deliver(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(collection)
            if listeners and listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def listener_count(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._listeners.get(collection) or [])
        return sum(len(items) for items in self._listeners.values())

    async def _deliver(self, listener: _Listener) -> None:
        try:
            if listener.doc_id is None:
                snapshot: Any = await self.list(listener.collection)
            else:
                snapshot = await self.read(listener.collection, listener.doc_id)
            result = listener.callback(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Change listener failed collection=%s doc_id=%s", listener.collection, listener.doc_id)

    async def _notify(self, touched: dict[str, set[str]]) -> None:
        for collection, doc_ids in touched.items():
            for listener in list(self._listeners.get(collection) or []):
                if listener.doc_id is not None and listener.doc_id not in doc_ids:
                    continue
                await self._deliver(listener)
