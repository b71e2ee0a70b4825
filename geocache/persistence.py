"""
Snapshot Persistence for the Cache.

Provides best-effort durability for the in-memory cache:
- Snapshot backends (memory, SQLite) that store serialized entries and
  region popularity
- A write-behind queue that coalesces pending writes per id and flushes
  them on a background thread

Durability is best-effort. Every storage call is retried once; a second
failure is logged and the write is dropped. The in-memory cache never
depends on the backend being reachable.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar, Union

from geocache.exceptions import TransientStorageError
from geocache.store import CacheEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(operation: str, func: Callable[..., T], *args: Any) -> T:
    """
    Call a storage function, retrying once on failure.

    Raises:
        TransientStorageError: If both attempts fail
    """
    try:
        return func(*args)
    except Exception as first:
        logger.debug(f"Snapshot {operation} failed, retrying once: {first}")
        try:
            return func(*args)
        except Exception as second:
            raise TransientStorageError(operation, second) from second


class SnapshotBackend(ABC):
    """
    Abstract base class for snapshot backends.

    Entries are exchanged as dictionaries produced by CacheEntry.to_dict();
    regions as {"id", "popularity_score", "last_updated"} dictionaries.
    """

    @abstractmethod
    def save_entries(self, entries: List[Dict[str, Any]]) -> None:
        """Insert or replace serialized entries."""
        pass

    @abstractmethod
    def delete_entries(self, entry_ids: List[str]) -> None:
        """Delete entries by id; unknown ids are ignored."""
        pass

    @abstractmethod
    def load_entries(self) -> List[Dict[str, Any]]:
        """Load every stored entry."""
        pass

    @abstractmethod
    def save_regions(self, regions: List[Dict[str, Any]]) -> None:
        """Insert or replace region popularity records."""
        pass

    @abstractmethod
    def load_regions(self) -> List[Dict[str, Any]]:
        """Load every stored region record."""
        pass

    @abstractmethod
    def clear(self) -> int:
        """
        Delete everything.

        Returns:
            Number of entries deleted
        """
        pass


class MemorySnapshotBackend(SnapshotBackend):
    """
    In-memory snapshot backend for testing.

    Stores JSON strings so unserializable content fails the same way it
    would with a real backend.
    """

    def __init__(self):
        self._entries: Dict[str, str] = {}
        self._regions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def save_entries(self, entries: List[Dict[str, Any]]) -> None:
        encoded = {e["entry_id"]: json.dumps(e) for e in entries}
        with self._lock:
            self._entries.update(encoded)

    def delete_entries(self, entry_ids: List[str]) -> None:
        with self._lock:
            for entry_id in entry_ids:
                self._entries.pop(entry_id, None)

    def load_entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(v) for v in self._entries.values()]

    def save_regions(self, regions: List[Dict[str, Any]]) -> None:
        encoded = {r["id"]: json.dumps(r) for r in regions}
        with self._lock:
            self._regions.update(encoded)

    def load_regions(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(v) for v in self._regions.values()]

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._regions.clear()
            return count


class SQLiteSnapshotBackend(SnapshotBackend):
    """
    SQLite snapshot backend.

    Entries are stored as JSON payloads keyed by entry id; region
    popularity is stored separately so pre-warming survives restarts.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
        Initialize SQLite backend.

        Args:
            db_path: Path to SQLite database (uses memory if None)
        """
        self._db_path = Path(db_path).expanduser() if db_path is not None else None
        self._lock = threading.RLock()
        # Each new ":memory:" connection is a separate database, so keep one open
        self._persistent_conn: Optional[sqlite3.Connection] = None
        if self._db_path is None:
            self._persistent_conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

        logger.info(f"SQLiteSnapshotBackend initialized at {self._db_path or ':memory:'}")

    def _init_database(self) -> None:
        """Initialize SQLite schema."""
        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshot_entries (
                    entry_id TEXT PRIMARY KEY,
                    region_i INTEGER NOT NULL,
                    region_j INTEGER NOT NULL,
                    expires_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_snapshot_expires
                ON snapshot_entries(expires_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshot_regions (
                    region_id TEXT PRIMARY KEY,
                    popularity_score REAL NOT NULL DEFAULT 0,
                    last_updated TEXT,
                    payload TEXT NOT NULL
                )
            """)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection, committing on success and rolling back on error."""
        with self._lock:
            if self._persistent_conn is not None:
                conn = self._persistent_conn
                close = False
            else:
                conn = sqlite3.connect(str(self._db_path), timeout=30.0)
                close = True
            conn.row_factory = sqlite3.Row
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                if close:
                    conn.close()

    def save_entries(self, entries: List[Dict[str, Any]]) -> None:
        rows = [
            (
                e["entry_id"],
                e["region_id"][0],
                e["region_id"][1],
                e["expires_at"],
                json.dumps(e),
            )
            for e in entries
        ]
        if not rows:
            return
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO snapshot_entries
                (entry_id, region_i, region_j, expires_at, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )

    def delete_entries(self, entry_ids: List[str]) -> None:
        if not entry_ids:
            return
        with self._connection() as conn:
            conn.executemany(
                "DELETE FROM snapshot_entries WHERE entry_id = ?",
                [(entry_id,) for entry_id in entry_ids],
            )

    def load_entries(self) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT payload FROM snapshot_entries ORDER BY rowid"
            ).fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def save_regions(self, regions: List[Dict[str, Any]]) -> None:
        rows = [
            (r["id"], r.get("popularity_score", 0.0), r.get("last_updated"), json.dumps(r))
            for r in regions
        ]
        if not rows:
            return
        with self._connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO snapshot_regions
                (region_id, popularity_score, last_updated, payload)
                VALUES (?, ?, ?, ?)
                """,
                rows,
            )

    def load_regions(self) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            rows = conn.execute("SELECT payload FROM snapshot_regions").fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def count(self) -> int:
        with self._connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM snapshot_entries").fetchone()[0]

    def clear(self) -> int:
        with self._connection() as conn:
            count = conn.execute("SELECT COUNT(*) FROM snapshot_entries").fetchone()[0]
            conn.execute("DELETE FROM snapshot_entries")
            conn.execute("DELETE FROM snapshot_regions")
        logger.info(f"Cleared {count} snapshot entries")
        return count

    def close(self) -> None:
        if self._persistent_conn is not None:
            self._persistent_conn.close()
            self._persistent_conn = None


_DELETE = None


class WriteBehindQueue:
    """
    Coalescing write-behind buffer in front of a snapshot backend.

    Mutations are recorded per id (the latest state wins) and written in
    batches by flush(), either from the background thread or on demand.
    """

    def __init__(self, backend: SnapshotBackend, flush_interval_seconds: float = 5.0):
        """
        Initialize write-behind queue.

        Args:
            backend: Snapshot backend to write to
            flush_interval_seconds: Interval of the background flush loop
        """
        self.backend = backend
        self.flush_interval_seconds = flush_interval_seconds
        self._pending_entries: Dict[str, Optional[Dict[str, Any]]] = {}
        self._pending_regions: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._flush_thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()
        self.failed_writes = 0

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending_entries) + len(self._pending_regions)

    def schedule_put(self, entry: CacheEntry) -> None:
        """Buffer the current state of an entry."""
        payload = entry.to_dict()
        with self._lock:
            self._pending_entries[entry.entry_id] = payload

    def schedule_delete(self, entry_id: str) -> None:
        """Buffer the deletion of an entry."""
        with self._lock:
            self._pending_entries[entry_id] = _DELETE

    def schedule_region(self, region: Dict[str, Any]) -> None:
        """Buffer the current state of a region record."""
        with self._lock:
            self._pending_regions[region["id"]] = region

    def discard_pending(self) -> None:
        with self._lock:
            self._pending_entries.clear()
            self._pending_regions.clear()

    def clear_backend(self) -> int:
        """
        Drop pending writes and empty the backend.

        Holds the flush lock so a flush already in progress finishes before
        the backend is cleared and cannot write stale records afterwards.

        Returns:
            Number of entries deleted from the backend

        Raises:
            TransientStorageError: If the backend fails twice
        """
        with self._flush_lock:
            self.discard_pending()
            return call_with_retry("clear", self.backend.clear)

    def flush(self) -> int:
        """
        Write all pending changes.

        Failures are logged and the affected writes are dropped.

        Returns:
            Number of records written
        """
        with self._flush_lock:
            with self._lock:
                entries = self._pending_entries
                regions = self._pending_regions
                self._pending_entries = {}
                self._pending_regions = {}

            puts = [payload for payload in entries.values() if payload is not _DELETE]
            deletes = [eid for eid, payload in entries.items() if payload is _DELETE]
            region_rows = list(regions.values())

            written = 0
            for operation, func, batch in (
                ("save_entries", self.backend.save_entries, puts),
                ("delete_entries", self.backend.delete_entries, deletes),
                ("save_regions", self.backend.save_regions, region_rows),
            ):
                if not batch:
                    continue
                try:
                    call_with_retry(operation, func, batch)
                    written += len(batch)
                except TransientStorageError as e:
                    self.failed_writes += len(batch)
                    logger.warning(f"Dropped {len(batch)} snapshot writes: {e}")

            if written:
                logger.debug(f"Write-behind flushed {written} records")
            return written

    def start(self) -> None:
        """Start the background flush thread."""
        if self._flush_thread is not None and self._flush_thread.is_alive():
            return

        self._shutdown_event.clear()
        self._flush_thread = threading.Thread(
            target=self._flush_loop,
            daemon=True,
            name="geocache-write-behind",
        )
        self._flush_thread.start()
        logger.info(
            f"Started write-behind thread (interval={self.flush_interval_seconds}s)"
        )

    def stop(self, timeout: float = 5.0) -> None:
        """
        Stop the background flush thread and flush what is left.

        Args:
            timeout: Maximum time to wait for thread to stop
        """
        if self._flush_thread is not None and self._flush_thread.is_alive():
            self._shutdown_event.set()
            self._flush_thread.join(timeout=timeout)
            logger.info("Stopped write-behind thread")
        self.flush()

    def _flush_loop(self) -> None:
        """Background flush loop."""
        while not self._shutdown_event.wait(timeout=self.flush_interval_seconds):
            try:
                self.flush()
            except Exception as e:
                logger.error(f"Error in write-behind loop: {e}")
