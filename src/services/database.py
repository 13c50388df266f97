"""Single SQLite persistence boundary shared by every store."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Callable, List, TypeVar

from config import settings
from .errors import PersistenceError

logger = logging.getLogger("jollykite.hub.database")

T = TypeVar("T")


class Database:
    """Owns the database path, the schema and the single writer lock.

    Reads run on worker threads with their own connection and never take the
    writer lock; WAL mode keeps them from blocking the writer.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._schema: List[str] = []
        self._ready_path: Path | None = None
        self._schema_lock = threading.Lock()
        self._write_lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    @property
    def path(self) -> Path:
        return self._db_path

    def configure(self, db_path: Path) -> None:
        """Point the database at another file; the schema is applied on next use."""
        with self._schema_lock:
            self._db_path = db_path
            self._ready_path = None

    def register_schema(self, *statements: str) -> None:
        with self._schema_lock:
            self._schema.extend(statements)
            self._ready_path = None

    def connect(self) -> sqlite3.Connection:
        self._ensure_schema()
        return self._open()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _ensure_schema(self) -> None:
        with self._schema_lock:
            if self._ready_path == self._db_path:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._open()
            try:
                for statement in self._schema:
                    conn.execute(statement)
                conn.commit()
            finally:
                conn.close()
            self._ready_path = self._db_path
            logger.debug("Schema ready at %s", self._db_path)

    def _call(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        try:
            conn = self.connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"could not open {self._db_path}: {exc}") from exc
        try:
            result = fn(conn)
            conn.commit()
            return result
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    async def read(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._call, fn)

    def _writer_lock(self) -> asyncio.Lock:
        # One lock per running loop; test clients spin up their own loops
        loop = asyncio.get_running_loop()
        if self._write_lock is None or self._lock_loop is not loop:
            self._write_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._write_lock

    async def write(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        async with self._writer_lock():
            return await asyncio.to_thread(self._call, fn)


database = Database(Path(settings.database_path))

__all__ = ["Database", "database"]
