"""In-memory TTL cache with a disk snapshot for restart recovery.

Expiry is lazy: a stale entry stays in the map until a lookup touches it or
the periodic sweep removes it. The disk image is one JSON file per entry
plus ``cache-index.json`` listing the keys, so a restart picks up whatever
was still fresh at the last flush.

The map is guarded by a lock because snapshots run in a worker thread
(``asyncio.to_thread``) while request handlers keep reading and writing.
"""

import asyncio
import base64
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from errors import PersistenceError

logger = logging.getLogger(__name__)

INDEX_FILE = "cache-index.json"


@dataclass
class CacheEntry:
    key: str
    payload: Any
    stored_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


def encode_key(key: str) -> str:
    """Filesystem-safe, invertible file stem for a cache key."""
    return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii")


def decode_key(stem: str) -> str:
    return base64.urlsafe_b64decode(stem.encode("ascii")).decode("utf-8")


class PersistentTTLCache:
    def __init__(
        self,
        cache_dir: str | Path | None = None,
        default_ttl: float = 3600,
        flush_every: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self._store: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self._cache_dir = Path(cache_dir) if cache_dir is not None else None
        self._clock = clock
        self._writes = 0
        self._pending_flushes: set[asyncio.Future] = set()
        self.default_ttl = default_ttl
        self.flush_every = flush_every

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            if entry.is_valid(now):
                return entry.payload
            del self._store[key]
        logger.info("Cache expired: %s", key)
        return default

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        entry = CacheEntry(
            key=key,
            payload=value,
            stored_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        with self._lock:
            self._store[key] = entry
            self._writes += 1
            flush_due = self.flush_every > 0 and self._writes % self.flush_every == 0
        if flush_due:
            self._schedule_flush()

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._store)

    def sweep(self, now: float | None = None) -> int:
        """Remove every expired entry. Returns how many were removed."""
        if now is None:
            now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._store.items() if not entry.is_valid(now)]
            for key in expired:
                del self._store[key]
        if expired:
            logger.info("Cache cleanup: removed %d entries", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _schedule_flush(self) -> None:
        """Snapshot in the background when a loop is running, inline otherwise."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.snapshot_to_disk()
            return
        task = loop.create_task(asyncio.to_thread(self.snapshot_to_disk))
        self._pending_flushes.add(task)
        task.add_done_callback(self._pending_flushes.discard)

    def snapshot_to_disk(self) -> int:
        """Write every still-valid entry to disk. Returns how many were written.

        Snapshots are serialized; each copies the entry list under the map
        lock, then does its file I/O outside it so lookups are never blocked
        on the disk. A failure on one entry is logged and the rest are still
        written. Only files named by the previous index are ever removed.
        """
        if self._cache_dir is None:
            return 0

        with self._flush_lock:
            now = self._clock()
            with self._lock:
                entries = [entry for entry in self._store.values() if entry.is_valid(now)]

            try:
                self._cache_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error("Error saving cache to disk: %s", e)
                return 0

            previous = self._previous_keys()
            written: list[str] = []
            for entry in entries:
                try:
                    self._write_entry(entry)
                except PersistenceError as e:
                    logger.error("Error saving cache item %s: %s", entry.key, e)
                    continue
                written.append(entry.key)

            try:
                _atomic_write_json(self._cache_dir / INDEX_FILE, {"keys": written})
            except OSError as e:
                logger.error("Error saving cache index: %s", e)
                return 0

            self._prune_dropped(previous - set(written))

        logger.info("Saved %d items to disk cache", len(written))
        return len(written)

    def load_from_disk(self) -> int:
        """Repopulate memory from the disk image. Returns how many were admitted.

        Corrupt or unreadable entry files are skipped; a missing or broken
        index leaves the cache empty.
        """
        if self._cache_dir is None:
            return 0

        index_path = self._cache_dir / INDEX_FILE
        if not index_path.exists():
            return 0

        try:
            keys = self._read_index(index_path)
        except PersistenceError as e:
            logger.error("Error loading cache from disk: %s", e)
            return 0

        now = self._clock()
        loaded = 0
        for key in keys:
            try:
                entry = self._read_entry(key)
            except PersistenceError as e:
                logger.warning("Error loading cache item %s: %s", key, e)
                continue
            if entry is None or not entry.is_valid(now):
                continue
            with self._lock:
                self._store[key] = entry
            loaded += 1
            logger.debug("Loaded from disk cache: %s", key)

        logger.info("Loaded %d items from disk cache", loaded)
        return loaded

    def _entry_path(self, key: str) -> Path:
        return self._cache_dir / f"{encode_key(key)}.json"

    def _write_entry(self, entry: CacheEntry) -> None:
        record = {
            "timestamp": int(entry.stored_at * 1000),
            "duration": int(entry.ttl * 1000),
            "data": entry.payload,
        }
        try:
            _atomic_write_json(self._entry_path(entry.key), record)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(str(e)) from e

    def _read_entry(self, key: str) -> CacheEntry | None:
        path = self._entry_path(key)
        if not path.exists():
            return None
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
            return CacheEntry(
                key=key,
                payload=record["data"],
                stored_at=float(record["timestamp"]) / 1000,
                ttl=float(record["duration"]) / 1000,
            )
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"{path.name}: {e}") from e

    @staticmethod
    def _read_index(path: Path) -> list[str]:
        try:
            index = json.loads(path.read_text(encoding="utf-8"))
            keys = index["keys"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"{path.name}: {e}") from e
        if not isinstance(keys, list):
            raise PersistenceError(f"{path.name}: 'keys' is not a list")
        return [key for key in keys if isinstance(key, str)]

    def _previous_keys(self) -> set[str]:
        index_path = self._cache_dir / INDEX_FILE
        if not index_path.exists():
            return set()
        try:
            return set(self._read_index(index_path))
        except PersistenceError as e:
            logger.warning("Ignoring unreadable cache index: %s", e)
            return set()

    def _prune_dropped(self, dropped: set[str]) -> None:
        for key in dropped:
            try:
                self._entry_path(key).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove stale cache file for %s: %s", key, e)


def _atomic_write_json(path: Path, data: Any) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
