"""
Translation cache with per-key in-flight de-duplication.

Entries are keyed by the encoded CacheKey and persist in a CacheStore. The
TranslationCache guarantees at most one concurrent compute per key: callers
that ask for a key already being computed wait on the owner's Future and get
its value or its exception. Failures are never stored.
"""

import logging
import sqlite3
import threading
import time
from collections import OrderedDict
from abc import ABC, abstractmethod
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from ..errors import CacheError
from ..models import CacheEntry, CacheKey

logger = logging.getLogger(__name__)

# Entries kept in memory in front of the durable store
DEFAULT_MEMORY_ENTRIES = 1000


class CacheStore(ABC):
    """Durable keyed store behind the translation cache."""

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        """Returns the entry or None. Raises CacheError on I/O failure."""

    @abstractmethod
    def put(self, entry: CacheEntry) -> None:
        """Stores or overwrites an entry (last writer wins)."""

    @abstractmethod
    def clear(self) -> int:
        """Deletes every entry and returns how many were removed."""

    @abstractmethod
    def prune(self, older_than: timedelta) -> int:
        """Deletes entries created before now - older_than."""

    @abstractmethod
    def __len__(self) -> int:
        pass

    def close(self) -> None:
        pass


class MemoryStore(CacheStore):
    """Process-local store, used for tests, when persistence is disabled and in
    front of a durable store.

    ``max_entries`` bounds the store, evicting the least recently used entry;
    ``ttl`` expires entries that many seconds after they were stored. Zero or
    None disables either limit.
    """

    def __init__(self, max_entries: Optional[int] = None, ttl: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries or None
        self.ttl = ttl or None
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, CacheEntry]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            stored_at, entry = item
            if self.ttl is not None and self._clock() - stored_at >= self.ttl:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = (self._clock(), entry)
            self._entries.move_to_end(entry.key)
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def prune(self, older_than: timedelta) -> int:
        cutoff = datetime.now(timezone.utc) - older_than
        with self._lock:
            stale = [k for k, (_, e) in self._entries.items() if e.created_at < cutoff]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class LayeredStore(CacheStore):
    """Read-through memory layer in front of a durable store.

    Hits in the durable store are copied into memory. Writes go to memory
    first, so a failing durable store still serves this process.
    """

    def __init__(self, memory: MemoryStore, disk: CacheStore):
        self.memory = memory
        self.disk = disk

    def get(self, key: str) -> Optional[CacheEntry]:
        entry = self.memory.get(key)
        if entry is not None:
            return entry
        entry = self.disk.get(key)
        if entry is not None:
            self.memory.put(entry)
        return entry

    def put(self, entry: CacheEntry) -> None:
        self.memory.put(entry)
        self.disk.put(entry)

    def clear(self) -> int:
        self.memory.clear()
        return self.disk.clear()

    def prune(self, older_than: timedelta) -> int:
        self.memory.prune(older_than)
        return self.disk.prune(older_than)

    def __len__(self) -> int:
        return len(self.disk)

    def close(self) -> None:
        self.disk.close()


class SqliteStore(CacheStore):
    """
    SQLite-backed store shared by all threads and by other processes using the same file.

    Uses one connection per thread and WAL journaling so readers never block
    on a writer.
    """

    DB_TIMEOUT = 30.0  # seconds to wait on a locked database

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._local = threading.local()
        self._connections: Dict[int, sqlite3.Connection] = {}
        self._connections_lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            raise CacheError(f"failed to open cache at {self.db_path}: {e}") from e
        logger.debug("Opened translation cache at %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.DB_TIMEOUT, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        if conn is None:
            conn = self._connect()
            self._local.connection = conn
            with self._connections_lock:
                self._connections[threading.get_ident()] = conn
        return conn

    def _init_db(self):
        conn = self._connect()
        try:
            with conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS translations (
                        key TEXT PRIMARY KEY,
                        translated_text TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_translations_created_at ON translations (created_at)")
        finally:
            conn.close()

    def get(self, key: str) -> Optional[CacheEntry]:
        try:
            row = self._get_connection().execute(
                "SELECT key, translated_text, created_at FROM translations WHERE key = ?", (key,)
            ).fetchone()
        except sqlite3.Error as e:
            raise CacheError(f"failed to read from cache: {e}") from e
        if row is None:
            return None
        return CacheEntry(key=row[0], translated_text=row[1], created_at=datetime.fromisoformat(row[2]))

    def put(self, entry: CacheEntry) -> None:
        try:
            conn = self._get_connection()
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO translations (key, translated_text, created_at) VALUES (?, ?, ?)",
                    (entry.key, entry.translated_text, entry.created_at.isoformat()),
                )
        except sqlite3.Error as e:
            raise CacheError(f"failed to write to cache: {e}") from e

    def clear(self) -> int:
        try:
            conn = self._get_connection()
            with conn:
                return conn.execute("DELETE FROM translations").rowcount
        except sqlite3.Error as e:
            raise CacheError(f"failed to clear cache: {e}") from e

    def prune(self, older_than: timedelta) -> int:
        cutoff = (datetime.now(timezone.utc) - older_than).isoformat()
        try:
            conn = self._get_connection()
            with conn:
                return conn.execute("DELETE FROM translations WHERE created_at < ?", (cutoff,)).rowcount
        except sqlite3.Error as e:
            raise CacheError(f"failed to prune cache: {e}") from e

    def __len__(self) -> int:
        try:
            return self._get_connection().execute("SELECT COUNT(*) FROM translations").fetchone()[0]
        except sqlite3.Error as e:
            raise CacheError(f"failed to count cache entries: {e}") from e

    def close(self) -> None:
        with self._connections_lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug("Error closing cache connection for thread %d: %s", thread_id, e)
            self._connections.clear()
        self._local.connection = None


def open_store(cache_path: Optional[str], memory_entries: int = DEFAULT_MEMORY_ENTRIES,
               memory_ttl: Optional[float] = None) -> CacheStore:
    """Opens the store for a cache location.

    None, '' or ':memory:' give an unbounded MemoryStore. A file path gives a
    SqliteStore behind a bounded memory layer (``memory_entries=0`` disables the
    layer). A file that cannot be opened falls back to memory with a warning.
    """
    if not cache_path or cache_path == ":memory:":
        return MemoryStore()
    try:
        disk = SqliteStore(Path(cache_path).expanduser())
    except CacheError as e:
        logger.warning("%s; translations will not persist beyond this run", e)
        return MemoryStore()
    if memory_entries <= 0:
        return disk
    return LayeredStore(MemoryStore(max_entries=memory_entries, ttl=memory_ttl), disk)


class LookupSource(str, Enum):
    STORE = "store"        # served from the backing store
    COMPUTED = "computed"  # this caller ran the compute
    SHARED = "shared"      # another caller's in-flight compute


class CacheLookup(BaseModel):
    """Per-key outcome of a get_or_compute_many call."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    value: Optional[str] = None
    error: Optional[BaseException] = None
    source: LookupSource = LookupSource.COMPUTED

    @property
    def ok(self) -> bool:
        return self.error is None


class TranslationCache:
    """Content-addressed translation cache shared by all concurrent page requests.

    Only the in-flight table is guarded by a lock, and only while claiming or
    releasing keys; store reads, computes and store writes run unlocked, so
    unrelated keys proceed in parallel.
    """

    def __init__(self, store: CacheStore, clear_on_start: bool = False):
        self.store = store
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        if clear_on_start:
            removed = self.clear()
            logger.info("Cleared %d cached translations", removed)

    def get_or_compute(self, key: CacheKey, compute: Callable[[], str]) -> str:
        """Returns the cached translation for key, computing it at most once across concurrent callers.

        Raises:
            Exception: whatever compute raised, delivered to the owner and every waiter.
        """
        [lookup] = self.get_or_compute_many([key], lambda missing: [compute()])
        if lookup.error is not None:
            raise lookup.error
        return lookup.value

    def get_or_compute_many(self, keys: Sequence[CacheKey],
                            compute_batch: Callable[[List[CacheKey]], List[str]],
                            refresh: bool = False) -> List[CacheLookup]:
        """Resolves several keys, computing all misses with a single compute_batch call.

        Args:
            keys: Keys to resolve; duplicates share one lookup.
            compute_batch: Called with the keys this caller must compute, returns
                one value per key in the same order.
            refresh: Skip the store lookup (the computed values still overwrite it).

        Returns:
            One CacheLookup per input key, in input order.
        """
        encoded = [key.encode() for key in keys]
        by_encoded = dict(zip(encoded, keys))

        owned: Dict[str, Future] = {}
        waiting: Dict[str, Future] = {}
        with self._lock:
            for enc in by_encoded:
                future = self._inflight.get(enc)
                if future is not None:
                    waiting[enc] = future
                else:
                    future = Future()
                    self._inflight[enc] = future
                    owned[enc] = future

        results: Dict[str, CacheLookup] = {}
        try:
            missing = []
            for enc in owned:
                entry = None if refresh else self._read(enc)
                if entry is not None:
                    logger.debug("Cache hit for %s", enc[:12])
                    results[enc] = CacheLookup(value=entry.translated_text, source=LookupSource.STORE)
                else:
                    missing.append(enc)

            if missing:
                results.update(self._compute(missing, by_encoded, compute_batch))
        except BaseException as e:
            # Never leave waiters hanging on an unresolved owner future
            for enc in owned:
                results.setdefault(enc, CacheLookup(error=e))
            raise
        finally:
            self._release(owned, results)

        for enc, future in waiting.items():
            try:
                results[enc] = CacheLookup(value=future.result(), source=LookupSource.SHARED)
            except Exception as e:
                results[enc] = CacheLookup(error=e, source=LookupSource.SHARED)

        return [results[enc] for enc in encoded]

    def _compute(self, missing: List[str], by_encoded: Dict[str, CacheKey],
                 compute_batch) -> Dict[str, CacheLookup]:
        try:
            values = compute_batch([by_encoded[enc] for enc in missing])
            if len(values) != len(missing):
                raise ValueError(f"compute returned {len(values)} values for {len(missing)} keys")
        except Exception as e:
            return {enc: CacheLookup(error=e) for enc in missing}

        results = {}
        for enc, value in zip(missing, values):
            self._write(CacheEntry(key=enc, translated_text=value))
            results[enc] = CacheLookup(value=value, source=LookupSource.COMPUTED)
        return results

    def _release(self, owned: Dict[str, Future], results: Dict[str, CacheLookup]):
        with self._lock:
            for enc in owned:
                self._inflight.pop(enc, None)
        for enc, future in owned.items():
            lookup = results.get(enc)
            if lookup is None or lookup.error is not None:
                future.set_exception(lookup.error if lookup else RuntimeError("cache compute aborted"))
            else:
                future.set_result(lookup.value)

    def _read(self, enc: str) -> Optional[CacheEntry]:
        try:
            return self.store.get(enc)
        except CacheError as e:
            logger.warning("Cache unavailable, computing directly: %s", e)
            return None

    def _write(self, entry: CacheEntry):
        try:
            self.store.put(entry)
        except CacheError as e:
            logger.warning("Failed to store translation, continuing uncached: %s", e)

    def contains(self, key: CacheKey) -> bool:
        return self._read(key.encode()) is not None

    def in_flight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def clear(self) -> int:
        return self.store.clear()

    def prune(self, max_age: timedelta) -> int:
        removed = self.store.prune(max_age)
        logger.info("Pruned %d cached translations older than %s", removed, max_age)
        return removed

    def __len__(self) -> int:
        return len(self.store)

    def close(self) -> None:
        try:
            self.store.close()
        except CacheError as e:
            logger.warning("Failed to close translation cache: %s", e)
