import copy
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol

from securechat.core.errors import StorageError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Synchronous durable key-value capability consumed by the engine."""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def set_many(self, items: Dict[str, Any], deletes: Iterable[str] = ()) -> None:
        """Apply every write and delete, or none of them."""
        ...


class MemoryStore:
    """
    Process-local store. Values are deep-copied on the way in and out so
    callers can never mutate what has been "persisted".
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def set_many(self, items: Dict[str, Any], deletes: Iterable[str] = ()) -> None:
        staged = {key: copy.deepcopy(value) for key, value in items.items()}
        with self._lock:
            self._data.update(staged)
            for key in deletes:
                self._data.pop(key, None)


class SqliteStore:
    """
    JSON documents in a single SQLite table, one row per key.
    """

    def __init__(self, path: Path, lock: Optional[threading.Lock] = None):
        self._lock = lock or threading.Lock()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open storage at {path}") from exc

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT value FROM kv WHERE key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot read '{key}'") from exc
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt value stored under %r", key)
            return default

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, separators=(",", ":"))
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, payload),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot write '{key}'") from exc

    def delete(self, key: str) -> None:
        with self._lock:
            try:
                self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot delete '{key}'") from exc

    def set_many(self, items: Dict[str, Any], deletes: Iterable[str] = ()) -> None:
        rows = [(key, json.dumps(value, separators=(",", ":"))) for key, value in items.items()]
        gone = [(key,) for key in deletes]
        with self._lock:
            try:
                with self._conn:
                    self._conn.executemany(
                        "INSERT INTO kv (key, value) VALUES (?, ?) "
                        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                        rows,
                    )
                    if gone:
                        self._conn.executemany("DELETE FROM kv WHERE key = ?", gone)
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot write {len(rows) + len(gone)} key(s)") from exc

    def close(self):
        with self._lock:
            self._conn.close()


_DELETED = object()


class StagedStore:
    """
    Write-behind view over another store.

    Between begin() and commit() writes are held back and reads see them;
    commit() hands the batch to the backing store's set_many(), discard()
    forgets it. Outside a batch, writes go straight through.
    """

    def __init__(self, backing):
        self.backing = backing
        self._pending: Optional[Dict[str, Any]] = None

    def begin(self) -> None:
        self._pending = {}

    def get(self, key: str, default: Any = None) -> Any:
        if self._pending is not None and key in self._pending:
            value = self._pending[key]
            return default if value is _DELETED else copy.deepcopy(value)
        return self.backing.get(key, default)

    def set(self, key: str, value: Any) -> None:
        if self._pending is None:
            self.backing.set(key, value)
        else:
            self._pending[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        if self._pending is None:
            self.backing.delete(key)
        else:
            self._pending[key] = _DELETED

    def commit(self) -> None:
        pending, self._pending = self._pending or {}, None
        if not pending:
            return
        items = {k: v for k, v in pending.items() if v is not _DELETED}
        deletes = [k for k, v in pending.items() if v is _DELETED]
        self.backing.set_many(items, deletes)

    def discard(self) -> None:
        self._pending = None
