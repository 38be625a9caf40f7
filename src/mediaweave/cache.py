"""Persistent cross-reference cache with TTL and size cap."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiosqlite
from pydantic import ValidationError

from mediaweave.models import CrossReferenceEntry, ProviderId, cross_reference_key

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)
DEFAULT_MAX_SIZE_BYTES = 10 * 1024 * 1024


class CacheFailure(Exception):
    """The durable store is unavailable or its contents are corrupt."""


class NotInitializedError(CacheFailure):
    """The cache was used before init()."""

    def __init__(self) -> None:
        super().__init__("Cross-reference cache used before init()")


@runtime_checkable
class KeyValueStore(Protocol):
    """Byte-valued durable store backing the cross-reference cache."""

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def get(self, key: str) -> bytes | None: ...

    async def put(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def keys(self) -> list[str]: ...


class MemoryKeyValueStore:
    """Dict-backed store, used for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def open(self) -> None:
        logger.debug("Memory store opened")

    async def close(self) -> None:
        pass

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def put(self, key: str, value: bytes) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self) -> list[str]:
        return list(self._data)


class SQLiteKeyValueStore:
    """SQLite store with WAL mode for persistence."""

    def __init__(self, db_path: str | Path = "~/.cache/mediaweave/xref.db") -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path).expanduser()
        self._conn: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the connection and configure SQLite."""
        if self._conn is not None:
            return
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self._db_path), timeout=30.0)

        # WAL lets readers proceed while a write is in flight
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA synchronous=NORMAL")

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value BLOB NOT NULL
            )
        """)
        await self._conn.commit()
        logger.info(f"SQLite store initialized at {self._db_path}")

    async def close(self) -> None:
        """Close SQLite connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise CacheFailure(f"SQLite store at {self._db_path} is not open")
        return self._conn

    async def get(self, key: str) -> bytes | None:
        cursor = await self._connection().execute("SELECT value FROM kv WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return None if row is None else bytes(row[0])

    async def put(self, key: str, value: bytes) -> None:
        conn = self._connection()
        await conn.execute("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, value))
        await conn.commit()

    async def delete(self, key: str) -> bool:
        conn = self._connection()
        cursor = await conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        await conn.commit()
        return cursor.rowcount > 0

    async def keys(self) -> list[str]:
        cursor = await self._connection().execute("SELECT key FROM kv")
        rows = await cursor.fetchall()
        return [row[0] for row in rows]


def _encode(entry: CrossReferenceEntry) -> bytes:
    return entry.model_dump_json().encode("utf-8")


def _decode(raw: bytes) -> CrossReferenceEntry:
    return CrossReferenceEntry.model_validate_json(raw)


class CrossReferenceCache:
    """Maps a primary title to its ids on other providers.

    Entries are keyed by "<primary_provider>_<primary_media_id>" and stored
    as JSON. Lookups return stale entries too; callers decide what to do
    with them via is_expired(). When the store grows past max_size_bytes
    the oldest entries are evicted.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl: timedelta = DEFAULT_TTL,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self.ttl = ttl
        self.max_size_bytes = max_size_bytes
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._key_locks: dict[str, asyncio.Lock] = {}

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """Open the backing store. Safe to call more than once."""
        async with self._init_lock:
            if self._initialized:
                return
            try:
                await self._store.open()
            except CacheFailure:
                raise
            except Exception as e:
                raise CacheFailure(f"Failed to open cache store: {e}") from e
            self._initialized = True
            logger.debug("Cross-reference cache initialized")

    def _require_init(self) -> None:
        if not self._initialized:
            raise NotInitializedError()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    def is_expired(self, cached_at: datetime) -> bool:
        """True if an entry cached at cached_at is older than the TTL.

        An entry exactly ttl old is still fresh.
        """
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)
        return self._clock() - cached_at > self.ttl

    async def _read(self, key: str) -> CrossReferenceEntry | None:
        try:
            raw = await self._store.get(key)
        except CacheFailure:
            raise
        except Exception as e:
            raise CacheFailure(f"Failed to read cache key {key}: {e}") from e
        if raw is None:
            return None
        try:
            return _decode(raw)
        except ValidationError as e:
            raise CacheFailure(f"Corrupt cache entry {key}") from e

    async def _write(self, entry: CrossReferenceEntry) -> None:
        payload = _encode(entry)
        try:
            await self._store.put(entry.cache_key, payload)
        except CacheFailure:
            raise
        except Exception as e:
            raise CacheFailure(f"Failed to write cache key {entry.cache_key}: {e}") from e
        logger.debug(f"Cached cross-references for {entry.cache_key}: {sorted(entry.mappings)}")
        await self._enforce_size_limit(keep=entry.cache_key)

    async def store(
        self, primary_provider: ProviderId, primary_media_id: str, mappings: dict[ProviderId, str]
    ) -> CrossReferenceEntry:
        """Replace the entry for a primary title.

        Any mappings previously stored under the same key are discarded.
        """
        self._require_init()
        entry = CrossReferenceEntry(
            primary_provider=primary_provider,
            primary_media_id=primary_media_id,
            mappings=mappings,
            cached_at=self._clock(),
        )
        async with self._lock_for(entry.cache_key):
            await self._write(entry)
        return entry

    async def merge(
        self, primary_provider: ProviderId, primary_media_id: str, mappings: dict[ProviderId, str]
    ) -> CrossReferenceEntry:
        """Add mappings to the entry for a primary title.

        Existing mappings for other providers are kept; new values win on
        conflict. An unreadable or expired existing entry is replaced, so
        mappings past their TTL are never carried into a fresh entry.
        """
        self._require_init()
        key = cross_reference_key(primary_provider, primary_media_id)
        async with self._lock_for(key):
            try:
                existing = await self._read(key)
            except CacheFailure as e:
                logger.warning(f"Replacing unreadable cache entry {key}: {e}")
                existing = None
            if existing is not None and self.is_expired(existing.cached_at):
                logger.debug(f"Replacing expired cache entry {key}")
                existing = None
            merged = dict(existing.mappings) if existing else {}
            merged.update(mappings)
            entry = CrossReferenceEntry(
                primary_provider=primary_provider,
                primary_media_id=primary_media_id,
                mappings=merged,
                cached_at=self._clock(),
            )
            await self._write(entry)
        return entry

    async def lookup_entry(
        self, primary_provider: ProviderId, primary_media_id: str
    ) -> CrossReferenceEntry | None:
        """Full entry for a primary title, stale or not."""
        self._require_init()
        return await self._read(cross_reference_key(primary_provider, primary_media_id))

    async def lookup(
        self, primary_provider: ProviderId, primary_media_id: str
    ) -> dict[ProviderId, str] | None:
        """Stored mappings for a primary title, or None if absent."""
        entry = await self.lookup_entry(primary_provider, primary_media_id)
        if entry is None:
            logger.debug(f"Cross-reference miss: {primary_provider}_{primary_media_id}")
            return None
        return dict(entry.mappings)

    async def invalidate(self, primary_provider: ProviderId, primary_media_id: str) -> bool:
        """Remove the entry for a primary title.

        Returns:
            True if an entry was removed
        """
        self._require_init()
        key = cross_reference_key(primary_provider, primary_media_id)
        try:
            return await self._store.delete(key)
        except CacheFailure:
            raise
        except Exception as e:
            raise CacheFailure(f"Failed to delete cache key {key}: {e}") from e

    async def _all_keys(self) -> list[str]:
        try:
            return list(await self._store.keys())
        except CacheFailure:
            raise
        except Exception as e:
            raise CacheFailure(f"Failed to list cache keys: {e}") from e

    async def _raw_items(self) -> list[tuple[str, bytes]]:
        items = []
        for key in await self._all_keys():
            try:
                raw = await self._store.get(key)
            except CacheFailure:
                raise
            except Exception as e:
                raise CacheFailure(f"Failed to read cache key {key}: {e}") from e
            if raw is not None:
                items.append((key, raw))
        return items

    async def clear_expired(self) -> int:
        """Remove expired and unreadable entries.

        Returns:
            Number of entries removed
        """
        self._require_init()
        removed = 0
        for key, raw in await self._raw_items():
            try:
                expired = self.is_expired(_decode(raw).cached_at)
            except ValidationError:
                logger.warning(f"Dropping unreadable cache entry {key}")
                expired = True
            if expired:
                await self._store.delete(key)
                removed += 1
        if removed:
            logger.info(f"Cleared {removed} expired cross-reference entries")
        return removed

    async def clear_all(self) -> int:
        """Remove every entry.

        Returns:
            Number of entries removed
        """
        self._require_init()
        keys = await self._all_keys()
        for key in keys:
            await self._store.delete(key)
        logger.info(f"Cleared {len(keys)} cross-reference entries")
        return len(keys)

    async def entry_count(self) -> int:
        self._require_init()
        return len(await self._all_keys())

    async def approximate_byte_size(self) -> int:
        """Sum of key and value sizes, in bytes."""
        self._require_init()
        return sum(len(key.encode("utf-8")) + len(raw) for key, raw in await self._raw_items())

    async def _enforce_size_limit(self, keep: str) -> None:
        items = await self._raw_items()
        total = sum(len(key.encode("utf-8")) + len(raw) for key, raw in items)
        if total <= self.max_size_bytes:
            return

        def age(item: tuple[str, bytes]) -> datetime:
            try:
                return _decode(item[1]).cached_at
            except ValidationError:
                return datetime.min.replace(tzinfo=timezone.utc)

        evicted = 0
        for key, raw in sorted(items, key=age):
            if total <= self.max_size_bytes:
                break
            if key == keep:
                continue
            await self._store.delete(key)
            total -= len(key.encode("utf-8")) + len(raw)
            evicted += 1
        logger.info(
            f"Evicted {evicted} cross-reference entries to stay under {self.max_size_bytes} bytes"
        )

    async def close(self) -> None:
        """Close the backing store."""
        if self._initialized:
            await self._store.close()
            self._initialized = False


__all__ = [
    "CacheFailure",
    "CrossReferenceCache",
    "DEFAULT_MAX_SIZE_BYTES",
    "DEFAULT_TTL",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "NotInitializedError",
    "SQLiteKeyValueStore",
]
