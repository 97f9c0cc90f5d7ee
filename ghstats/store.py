"""
Snapshot store: last-known-good results per cache key.

Holds one ``CacheEntry`` per key in memory and mirrors each entry to a JSON
record on disk so the cache survives restarts.  Entries are never deleted;
once older than the TTL they are *stale*, and stale entries remain available
as fallback data.

Usage:
    store = SnapshotStore("./cache")
    store.ensure_dir()
    await store.load_all()
    store.set("octocat", snapshot)
    await store.persist("octocat")
"""

import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from ghstats.errors import PersistenceError

logger = logging.getLogger(__name__)

Snapshot = dict[str, Any]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_RECORD_SUFFIX = ".json"
_HASH_CHARS = 12


@dataclass(frozen=True)
class CacheEntry:
    """One stored snapshot.  Replaced wholesale on refresh, never mutated."""

    key: str
    generated_at: int
    data: Snapshot

    def age(self, now: float) -> float:
        """Seconds elapsed between generation and *now*."""
        return now - self.generated_at

    def to_record(self) -> dict[str, Any]:
        """JSON-ready record: ``{"key", "generatedAt", "data"}``."""
        return {"key": self.key, "generatedAt": self.generated_at, "data": self.data}


def sanitize_key(key: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_-]`` with ``_``."""
    return _UNSAFE_CHARS.sub("_", key)


def record_filename(key: str) -> str:
    """File name for *key*'s persisted record.

    The sanitized key keeps the directory readable; the hash suffix keeps
    keys that sanitize identically (``a.b`` and ``a_b``) in separate files.
    """
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:_HASH_CHARS]
    return f"{sanitize_key(key)}-{digest}{_RECORD_SUFFIX}"


def _legacy_key(stem: str) -> str:
    # Records written without a "key" field only carry the sanitized name.
    return stem.replace("_", "-")


class SnapshotStore:
    """In-memory map of cache entries with a one-file-per-key disk mirror.

    Storage layout:
        _entries: dict[str, CacheEntry]
            key -> latest successfully fetched entry

    All in-memory operations are synchronous and never suspend, so under
    asyncio they are atomic with respect to other tasks.  Only ``persist``
    and ``load_all`` touch the filesystem, in a worker thread.

    Args:
        cache_dir: Directory holding the persisted records.
        clock:     Returns the current unix time; injectable for tests.
    """

    def __init__(
        self,
        cache_dir: str | Path,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._persist_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # In-memory access
    # ------------------------------------------------------------------

    def now(self) -> int:
        """Current time in whole unix seconds, from the injected clock."""
        return int(self._clock())

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Return the full entry for *key*, fresh or stale."""
        return self._entries.get(key)

    def get(self, key: str) -> Optional[Snapshot]:
        """Return the snapshot for *key* regardless of freshness.

        Args:
            key: Cache key to look up.

        Returns:
            The stored snapshot, or ``None`` if *key* was never populated.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry.data

    def is_valid(self, key: str, ttl_seconds: int) -> bool:
        """True while ``now - generated_at < ttl_seconds``."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        return entry.age(self.now()) < ttl_seconds

    def get_valid(self, key: str, ttl_seconds: int) -> Optional[Snapshot]:
        """Return the snapshot for *key* only if it is still fresh.

        Args:
            key:         Cache key to look up.
            ttl_seconds: Freshness window in seconds.

        Returns:
            The snapshot, or ``None`` if absent or stale.
        """
        if not self.is_valid(key, ttl_seconds):
            return None
        return self.get(key)

    def set(self, key: str, data: Snapshot) -> CacheEntry:
        """Store *data* under *key*, stamped with the current time.

        The stamp never moves backwards for a key, even if the wall clock
        does.

        Args:
            key:  Cache key.
            data: Snapshot produced by a successful fetch.

        Returns:
            The new entry.
        """
        generated_at = self.now()
        previous = self._entries.get(key)
        if previous is not None and previous.generated_at > generated_at:
            generated_at = previous.generated_at

        entry = CacheEntry(key=key, generated_at=generated_at, data=data)
        self._entries[key] = entry
        logger.info("Cache updated: key=%r generated_at=%d", key, generated_at)
        return entry

    def remaining_ttl(self, key: str, ttl_seconds: int) -> int:
        """Seconds until *key* goes stale; ``0`` if stale or absent."""
        entry = self._entries.get(key)
        if entry is None:
            return 0
        return max(0, int(ttl_seconds - entry.age(self.now())))

    def keys(self) -> list[str]:
        """Return every cached key, fresh or stale, in insertion order."""
        return list(self._entries)

    def stats(self) -> dict[str, Any]:
        """Return the entry count and the cached keys."""
        return {"cache_count": len(self._entries), "keys": self.keys()}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def ensure_dir(self) -> None:
        """Create the cache directory if it does not exist yet."""
        if not self.cache_dir.exists():
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Cache directory created: %s", self.cache_dir)

    def record_path(self, key: str) -> Path:
        """Path of the persisted record for *key*, whether or not it exists."""
        return self.cache_dir / record_filename(key)

    async def persist(self, key: str) -> bool:
        """Write the current entry for *key* to disk.

        Failures are logged and swallowed; the in-memory entry stays
        authoritative either way.  Writes for one key are serialized, and
        each writes whatever entry is current when it runs, so the file
        never ends up older than memory.

        Args:
            key: Cache key whose entry should be written.

        Returns:
            ``True`` if the record was written.
        """
        lock = self._persist_locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.warning("Cannot persist, cache entry not found: key=%r", key)
                return False

            path = self.record_path(key)
            try:
                await asyncio.to_thread(self._write_record, path, entry)
            except PersistenceError as exc:
                logger.error("Failed to persist cache: key=%r error=%s", key, exc)
                return False

        logger.info("Cache persisted: key=%r path=%s", key, path)
        return True

    async def load_all(self) -> int:
        """Load every persisted record into memory.

        Corrupt or unreadable records are logged and skipped.  An in-memory
        entry newer than its record is kept.

        Returns:
            Number of records loaded.
        """
        entries = await asyncio.to_thread(self._read_all)

        loaded = 0
        for entry in entries:
            current = self._entries.get(entry.key)
            if current is not None and current.generated_at > entry.generated_at:
                logger.debug("Skipping older persisted record: key=%r", entry.key)
                continue
            self._entries[entry.key] = entry
            loaded += 1

        logger.info("Loaded %d cache record(s) from %s", loaded, self.cache_dir)
        return loaded

    # ------------------------------------------------------------------
    # Blocking file IO, run in a worker thread
    # ------------------------------------------------------------------

    def _write_record(self, path: Path, entry: CacheEntry) -> None:
        tmp_name: Optional[str] = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=".tmp-",
                suffix=_RECORD_SUFFIX,
                delete=False,
            ) as fh:
                tmp_name = fh.name
                json.dump(entry.to_record(), fh, indent=2)
            os.replace(tmp_name, path)
        except (OSError, TypeError, ValueError) as exc:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise PersistenceError(f"could not write {path}: {exc}") from exc

    def _read_all(self) -> list[CacheEntry]:
        if not self.cache_dir.is_dir():
            return []

        entries: list[CacheEntry] = []
        for path in sorted(self.cache_dir.glob(f"*{_RECORD_SUFFIX}")):
            if path.name.startswith(".tmp-"):
                continue
            try:
                entries.append(self._read_record(path))
            except PersistenceError as exc:
                logger.error("Skipping unreadable cache record %s: %s", path.name, exc)
        return entries

    def _read_record(self, path: Path) -> CacheEntry:
        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as exc:
            raise PersistenceError(str(exc)) from exc

        if not isinstance(raw, dict) or "data" not in raw:
            raise PersistenceError("record is not an object with a 'data' field")

        generated_at = raw.get("generatedAt")
        if not isinstance(generated_at, int) or isinstance(generated_at, bool):
            raise PersistenceError("record has no integer 'generatedAt'")

        key = raw.get("key")
        if not isinstance(key, str) or not key:
            key = _legacy_key(path.stem)

        return CacheEntry(key=key, generated_at=generated_at, data=raw["data"])
