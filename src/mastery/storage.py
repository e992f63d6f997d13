"""
Key/Value Persistence Substrate.

Provides the durable storage the progress stores sit on:
- KeyValueStore protocol (get / set / remove on bytes)
- In-memory, JSON-file and SQLite backends
- PersistenceWriter, which dispatches writes on a background worker so
  store operations never wait on disk

Write failures are logged and swallowed: in-memory state stays
authoritative for the process lifetime, and the latest transition may be
lost if the process dies before a later write succeeds.
"""

from __future__ import annotations

import os
import re
import sqlite3
import tempfile
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Protocol

from loguru import logger

from config import Settings, StorageBackend
from src.mastery.exceptions import StorageError


class KeyValueStore(Protocol):
    """Protocol for durable key/value backends."""

    def get(self, key: str) -> bytes | None:
        """Return the stored value, or None if the key is absent."""
        ...

    def set(self, key: str, value: bytes) -> None:
        """Store value under key, replacing any previous value."""
        ...

    def remove(self, key: str) -> None:
        """Delete key. Removing an absent key is not an error."""
        ...


# =============================================================================
# Backends
# =============================================================================


class MemoryKeyValueStore:
    """Dict-backed store for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, bytes] | None = None):
        self._data: dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._data)


class JsonFileKeyValueStore:
    """
    One JSON file per key under a directory.

    Keys are sanitised into file names ("@quantara_module_progress" is
    stored as "quantara_module_progress.json"). Writes go through a
    temporary file and an atomic rename.
    """

    _UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError("open", str(self.directory), exc) from exc

    def path_for(self, key: str) -> Path:
        name = self._UNSAFE.sub("_", key).strip("_.") or "default"
        return self.directory / f"{name}.json"

    def get(self, key: str) -> bytes | None:
        path = self.path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError("get", key, exc) from exc

    def set(self, key: str, value: bytes) -> None:
        path = self.path_for(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{path.stem}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(value)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageError("set", key, exc) from exc

    def remove(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError("remove", key, exc) from exc


class SQLiteKeyValueStore:
    """
    SQLite-backed key/value table.

    Database location defaults to ~/.mastery/mastery.db. The connection is
    shared with the persistence worker thread and guarded by a lock.
    """

    DEFAULT_DB_PATH = Path.home() / ".mastery" / "mastery.db"

    def __init__(self, db_path: Path | None = None):
        """
        Initialize the store.

        Args:
            db_path: Custom database path (defaults to ~/.mastery/mastery.db)
        """
        self.db_path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_schema()
        except (OSError, sqlite3.Error) as exc:
            self.close()
            raise StorageError("open", str(self.db_path), exc) from exc

        logger.debug("SQLiteKeyValueStore initialized at {}", self.db_path)

    @property
    def conn(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        return self._conn

    def _init_schema(self) -> None:
        with self._lock:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    updated_at TIMESTAMP
                )
            """)
            self.conn.commit()

    def get(self, key: str) -> bytes | None:
        try:
            with self._lock:
                row = self.conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError("get", key, exc) from exc
        return bytes(row[0]) if row else None

    def set(self, key: str, value: bytes) -> None:
        try:
            with self._lock:
                self.conn.execute(
                    """
                    INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                """,
                    (key, sqlite3.Binary(value), datetime.now().isoformat()),
                )
                self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError("set", key, exc) from exc

    def remove(self, key: str) -> None:
        try:
            with self._lock:
                self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                self.conn.commit()
        except sqlite3.Error as exc:
            raise StorageError("remove", key, exc) from exc

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


def create_key_value_store(settings: Settings) -> KeyValueStore:
    """
    Build the backend named by settings.storage_backend.

    Raises:
        StorageError: If the data directory or database cannot be opened
    """
    backend = StorageBackend(settings.storage_backend)
    if backend == StorageBackend.MEMORY:
        return MemoryKeyValueStore()
    if backend == StorageBackend.SQLITE:
        return SQLiteKeyValueStore(settings.sqlite_path)
    return JsonFileKeyValueStore(settings.data_dir)


# =============================================================================
# Persistence Writer
# =============================================================================


class PersistenceWriter:
    """
    Fire-and-forget writer in front of a KeyValueStore.

    Writes run on a single worker thread in submission order, so the last
    write for a key wins. Failures are logged and counted, never raised.

    Usage:
        writer = PersistenceWriter(store)
        writer.write("key", b"{}")   # returns immediately
        writer.flush()               # wait for queued writes
        writer.close()
    """

    def __init__(self, store: KeyValueStore, background: bool = True):
        self.store = store
        self.background = background
        self._executor: ThreadPoolExecutor | None = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="mastery-persist")
            if background
            else None
        )
        self._lock = threading.Lock()
        self._pending = 0
        self._failed_writes = 0
        self._last_error: Exception | None = None
        self._closed = False

    @property
    def failed_writes(self) -> int:
        return self._failed_writes

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def has_pending_writes(self) -> bool:
        with self._lock:
            return self._pending > 0

    def read(self, key: str) -> bytes | None:
        """Read a key directly from the backend (may raise StorageError)."""
        return self.store.get(key)

    def write(self, key: str, value: bytes) -> None:
        self._dispatch("set", key, lambda: self.store.set(key, value))

    def delete(self, key: str) -> None:
        self._dispatch("remove", key, lambda: self.store.remove(key))

    def _dispatch(self, operation: str, key: str, action: Callable[[], None]) -> None:
        if self._executor is None or self._closed:
            self._run(operation, key, action)
            return

        with self._lock:
            self._pending += 1
        try:
            self._executor.submit(self._run_queued, operation, key, action)
        except RuntimeError as exc:
            # Executor already shut down; fall back to an inline write
            with self._lock:
                self._pending -= 1
            logger.debug("Persistence worker unavailable ({}), writing inline", exc)
            self._run(operation, key, action)

    def _run_queued(self, operation: str, key: str, action: Callable[[], None]) -> None:
        try:
            self._run(operation, key, action)
        finally:
            with self._lock:
                self._pending -= 1

    def _run(self, operation: str, key: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as exc:
            with self._lock:
                self._failed_writes += 1
                self._last_error = exc
            logger.error("Failed to persist {} ({}): {}", key, operation, exc)

    def flush(self, timeout: float | None = None) -> None:
        """Block until every write queued so far has been applied."""
        if self._executor is None or self._closed:
            return
        marker: Future = self._executor.submit(lambda: None)
        marker.result(timeout=timeout)

    def close(self) -> None:
        """Flush queued writes and stop the worker."""
        if self._closed:
            return
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._closed = True
