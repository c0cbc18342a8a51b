# manages the local sqlite file: keyed collections plus the image blob table
from __future__ import annotations

import asyncio
import json
import os.path
import re
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import aiosqlite

from dataservice.errors import ImageUploadError, StorageUnavailable
from utils.clock import epoch_millis, now_iso
from utils.logger import get_logger

_logger = get_logger(__name__)

DB_INIT_SCRIPT = """
CREATE TABLE IF NOT EXISTS collections (
    name    TEXT PRIMARY KEY,
    payload TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS images (
    id         TEXT PRIMARY KEY,
    data       BLOB NOT NULL,
    created_at TEXT NOT NULL
);
"""


class LocalStore:
    """
    Keyed store addressed by collection name, one JSON payload per collection.

    Mirrors a browser key/value store: callers read a whole collection, change
    it in memory and write it back. ``transaction()`` serialises those
    read-modify-write cycles for every caller sharing this instance. Separate
    processes opening the same file get last-writer-wins.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._lock = asyncio.Lock()

    async def _init_db(self, conn: aiosqlite.Connection) -> None:
        _logger.info(f"Initializing local store at {self.path}...")
        await conn.executescript(DB_INIT_SCRIPT)
        await conn.commit()

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yields an aiosqlite connection, creating the tables on first use."""
        directory = os.path.dirname(self.path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            conn = await aiosqlite.connect(self.path)
        except (OSError, sqlite3.Error) as exc:
            raise StorageUnavailable(f"Cannot open local store {self.path}") from exc

        try:
            if not self._initialized:
                async with self._init_lock:
                    if not self._initialized:
                        await self._init_db(conn)
                        self._initialized = True
            yield conn
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Local store error: {exc}") from exc
        finally:
            await conn.close()

    async def read(self, name: str, default: Any = None) -> Any:
        async with self.connect() as conn:
            return await _fetch_payload(conn, name, default)

    async def exists(self, name: str) -> bool:
        async with self.connect() as conn:
            cur = await conn.execute(
                "SELECT 1 FROM collections WHERE name = ? LIMIT 1;", (name,)
            )
            row = await cur.fetchone()
            await cur.close()
            return row is not None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["StoreTransaction"]:
        async with self._lock:
            async with self.connect() as conn:
                tx = StoreTransaction(conn)
                yield tx
                await tx.flush()


class StoreTransaction:
    """Collections loaded once, written back together on a clean exit."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn
        self._cache: Dict[str, Any] = {}
        self._dirty: set = set()

    async def load(self, name: str, default: Any = None) -> Any:
        if name not in self._cache:
            if default is None:
                default = []
            self._cache[name] = await _fetch_payload(self._conn, name, default)
        return self._cache[name]

    def save(self, name: str, value: Any) -> None:
        self._cache[name] = value
        self._dirty.add(name)

    async def flush(self) -> None:
        if not self._dirty:
            return
        for name in sorted(self._dirty):
            await self._conn.execute(
                """
                INSERT INTO collections(name, payload) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET payload = excluded.payload;
                """,
                (name, json.dumps(self._cache[name])),
            )
        await self._conn.commit()
        self._dirty.clear()


async def _fetch_payload(conn: aiosqlite.Connection, name: str, default: Any) -> Any:
    cur = await conn.execute("SELECT payload FROM collections WHERE name = ?;", (name,))
    row = await cur.fetchone()
    await cur.close()
    if row is None:
        return default
    try:
        return json.loads(row[0])
    except ValueError:
        _logger.error(f"Collection '{name}' holds unreadable JSON, using default")
        return default


def _sanitize_filename(filename: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.]", "_", filename or "image")


class BlobStore:
    """Binary image storage keyed by image id, living next to the collections."""

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    async def put(
        self, entity_id: str, image_type: str, data: bytes, filename: str = "image"
    ) -> str:
        if not data:
            raise ImageUploadError("Empty image payload", kind="other")
        image_id = (
            f"{entity_id}_{image_type}_{epoch_millis()}_{_sanitize_filename(filename)}"
        )
        try:
            async with self._store.connect() as conn:
                await conn.execute(
                    "INSERT OR REPLACE INTO images(id, data, created_at) VALUES (?, ?, ?);",
                    (image_id, bytes(data), now_iso()),
                )
                await conn.commit()
        except StorageUnavailable as exc:
            raise ImageUploadError(f"Could not store image {image_id}", kind="other") from exc
        return image_id

    async def get(self, image_id: Optional[str]) -> Optional[bytes]:
        if not image_id:
            return None
        async with self._store.connect() as conn:
            cur = await conn.execute("SELECT data FROM images WHERE id = ?;", (image_id,))
            row = await cur.fetchone()
            await cur.close()
        return bytes(row[0]) if row else None

    async def delete(self, image_id: Optional[str]) -> None:
        if image_id:
            await self.delete_many([image_id])

    async def delete_many(self, image_ids: Iterable[Optional[str]]) -> None:
        ids = [i for i in image_ids if i]
        if not ids:
            return
        async with self._store.connect() as conn:
            await conn.executemany("DELETE FROM images WHERE id = ?;", [(i,) for i in ids])
            await conn.commit()
        _logger.debug(f"Released {len(ids)} image(s)")
