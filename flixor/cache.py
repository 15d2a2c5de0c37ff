"""Upstream response cache with a disk mirror.

Entries live in an in-memory map guarded by a lock and are mirrored to a
``diskcache`` store, so a restart rehydrates instead of sending every client
to the media server at once. Expiry is checked on read; there is no sweeper.

The disk is an optimization only. Any disk failure is logged and counted,
the in-memory entry keeps serving, and unreadable records are treated as
misses.

Keys come from ``fingerprint()``, which always folds in the owning user
and/or media server so two users never share a slot even when the upstream
URL text is identical.
"""

from __future__ import annotations

import asyncio
import fnmatch
import re
import sqlite3
import threading
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote, urlencode

import structlog
from diskcache import Cache as DiskCache
from diskcache import Timeout as DiskTimeout

logger = structlog.get_logger()

DISK_ERRORS = (OSError, sqlite3.Error, DiskTimeout)


class CacheTTL:
    """TTL presets in seconds."""

    STATIC = 86400
    TRENDING = 3600
    DYNAMIC = 300
    SHORT = 60
    LIVE = 10
    NONE = 0


# Per resource class, by volatility
RESOURCE_TTLS: dict[str, int] = {
    "libraries": CacheTTL.TRENDING,
    "library_items": CacheTTL.SHORT,
    "metadata": CacheTTL.TRENDING,
    "children": CacheTTL.DYNAMIC,
    "on_deck": CacheTTL.SHORT,
    "recently_added": CacheTTL.DYNAMIC,
    "search": CacheTTL.SHORT,
    "sessions": CacheTTL.LIVE,
}

FORMAT_VERSION = 1

# Query parameters that carry credentials never become part of a key
_CREDENTIAL_PARAMS = {"x-plex-token"}

_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


def _component(value: object) -> str:
    return quote(str(value), safe="")


def normalize_path(path: str) -> str:
    """Canonical form of an upstream path.

    Percent-encoding differences, duplicate slashes and trailing slashes do
    not produce distinct keys.
    """
    if not path or not path.strip():
        raise ValueError("cache fingerprint needs a non-empty path")
    segments = [s for s in unquote(path.strip()).split("/") if s]
    return "/" + "/".join(quote(s, safe="") for s in segments)


def normalize_query(
    params: Mapping[str, Any] | Iterable[tuple[str, Any]] | None,
) -> str:
    """Sorted, consistently encoded query string."""
    if not params:
        return ""
    items = params.items() if isinstance(params, Mapping) else params
    pairs: list[tuple[str, str]] = []
    for key, value in items:
        if value is None or key.lower() in _CREDENTIAL_PARAMS:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        pairs.extend((str(key), str(v)) for v in values if v is not None)
    pairs.sort()
    return urlencode(pairs, quote_via=quote, safe="")


def owner_prefix(
    user_id: object | None = None,
    server_id: object | None = None,
    resource: str | None = None,
    namespace: str = "plex",
) -> str:
    """Key prefix covering everything cached for a user / server / resource class."""
    if user_id is None and server_id is None:
        raise ValueError("cache fingerprint needs a user id or a server id")
    if not _NAME_RE.match(namespace):
        raise ValueError(f"invalid cache namespace {namespace!r}")
    user = _component(user_id) if user_id is not None else "-"
    prefix = f"{namespace}:u={user}:"
    if server_id is None and resource is None:
        return prefix
    server = _component(server_id) if server_id is not None else "-"
    prefix += f"s={server}:"
    if resource is None:
        return prefix
    if not _NAME_RE.match(resource):
        raise ValueError(f"invalid cache resource class {resource!r}")
    return prefix + f"{resource}:"


def fingerprint(
    resource: str,
    path: str,
    params: Mapping[str, Any] | Iterable[tuple[str, Any]] | None = None,
    *,
    user_id: object | None = None,
    server_id: object | None = None,
    namespace: str = "plex",
) -> str:
    """Deterministic cache key for one upstream request made on behalf of one owner."""
    prefix = owner_prefix(user_id, server_id, resource, namespace)
    return f"{prefix}{normalize_path(path)}?{normalize_query(params)}"


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


class ResponseLike(Protocol):
    body: str
    content_type: str
    status_code: int


@dataclass
class CacheEntry:
    key: str
    body: str
    content_type: str
    status_code: int
    created_at: float
    ttl_seconds: int

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_record(self) -> dict:
        return {"version": FORMAT_VERSION, **asdict(self)}

    @classmethod
    def from_record(cls, record: dict) -> CacheEntry:
        if record.get("version") != FORMAT_VERSION:
            raise ValueError(f"unsupported cache record version {record.get('version')!r}")
        return cls(
            key=str(record["key"]),
            body=str(record["body"]),
            content_type=str(record["content_type"]),
            status_code=int(record["status_code"]),
            created_at=float(record["created_at"]),
            ttl_seconds=int(record["ttl_seconds"]),
        )


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    evictions: int = 0
    disk_errors: int = 0
    loaded: int = 0


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class ResponseCache:
    """In-memory response cache mirrored to a ``diskcache`` directory.

    Args:
        directory: Mirror directory, or None for a memory-only cache.
        max_entries: Upper bound on live entries; the oldest are evicted.
        clock: Seconds-since-epoch source, injectable for tests.
    """

    def __init__(
        self,
        directory: Path | str | None,
        max_entries: int = 5000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory) if directory is not None else None
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._disk_lock = threading.Lock()
        self._disk: DiskCache | None = None
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._stats = CacheStats()

    # --- disk helpers (run in worker threads, never under self._lock) ---

    def _open_disk(self) -> DiskCache:
        """Open the mirror on first use. Caller holds ``_disk_lock``."""
        assert self.directory is not None
        if self._disk is None:
            self._disk = DiskCache(str(self.directory))
            logger.info("cache_disk_opened", directory=str(self.directory))
        return self._disk

    def _sync(self, keys: Iterable[str]) -> None:
        """Make the mirror match memory for ``keys``.

        State is read under the disk lock right before each write, so a late
        cleanup never removes a record a newer ``set`` already mirrored.
        """
        with self._disk_lock:
            disk = self._open_disk()
            for key in keys:
                now = self._clock()
                with self._lock:
                    current = self._entries.get(key)
                if current is None or current.is_expired(now):
                    disk.delete(key)
                else:
                    disk.set(key, current.to_record(), expire=current.expires_at - now)

    async def _mirror(self, keys: Iterable[str]) -> None:
        if self.directory is None:
            return
        keys = list(keys)
        if not keys:
            return
        try:
            await asyncio.to_thread(self._sync, keys)
        except DISK_ERRORS as e:
            self._count("disk_errors")
            logger.warning("cache_disk_error", keys=len(keys), error=str(e))

    def _count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self._stats, name, getattr(self._stats, name) + amount)

    # --- startup / shutdown ---

    def load(self) -> int:
        """Rehydrate from the mirror, discarding expired or unreadable records.

        Blocking; call it once at startup (from a worker thread under asyncio).
        """
        if self.directory is None or not self.directory.is_dir():
            return 0
        now = self._clock()
        loaded: dict[str, CacheEntry] = {}
        stale: list[str] = []
        try:
            with self._disk_lock:
                disk = self._open_disk()
                disk.expire()
                for key in list(disk.iterkeys()):
                    try:
                        entry = CacheEntry.from_record(disk.get(key))
                    except (ValueError, KeyError, TypeError, AttributeError) as e:
                        logger.warning("cache_disk_entry_unreadable", key=key, error=str(e))
                        stale.append(key)
                        continue
                    if entry.key != key or entry.is_expired(now):
                        stale.append(key)
                        continue
                    loaded[key] = entry
                for key in stale:
                    disk.delete(key)
        except DISK_ERRORS as e:
            self._count("disk_errors")
            logger.warning("cache_disk_unreadable", directory=str(self.directory), error=str(e))
            return 0
        with self._lock:
            for key, entry in loaded.items():
                current = self._entries.get(key)
                if current is None or current.created_at < entry.created_at:
                    self._entries[key] = entry
            victims = self._evict_locked(now)
            self._stats.loaded += len(loaded)
        if victims:
            try:
                self._sync(victims)
            except DISK_ERRORS as e:
                self._count("disk_errors")
                logger.warning("cache_disk_error", keys=len(victims), error=str(e))
        logger.info("cache_rehydrated", entries=len(loaded), discarded=len(stale))
        return len(loaded)

    def close(self) -> None:
        with self._disk_lock:
            if self._disk is not None:
                self._disk.close()
                self._disk = None

    # --- core operations ---

    async def get(self, key: str) -> CacheEntry | None:
        """Return a live entry, or None. Expired entries count as misses."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(now):
                del self._entries[key]
                entry = None
                expired = True
            else:
                expired = False
            if entry is None:
                self._stats.misses += 1
            else:
                self._stats.hits += 1
        if expired:
            logger.debug("cache_expired", key=key)
            await self._mirror([key])
        elif entry is not None:
            logger.debug("cache_hit", key=key)
        return entry

    async def set(
        self,
        key: str,
        body: str,
        *,
        ttl: int,
        content_type: str = "application/json",
        status_code: int = 200,
    ) -> CacheEntry | None:
        """Store (or overwrite) an entry. ``ttl <= 0`` stores nothing."""
        if ttl <= 0:
            return None
        now = self._clock()
        entry = CacheEntry(
            key=key,
            body=body,
            content_type=content_type,
            status_code=status_code,
            created_at=now,
            ttl_seconds=ttl,
        )
        with self._lock:
            self._entries[key] = entry
            self._stats.sets += 1
            victims = self._evict_locked(now)
        logger.debug("cache_set", key=key, ttl=ttl, size=len(body))
        await self._mirror([*victims, key])
        return entry

    def _evict_locked(self, now: float) -> list[str]:
        """Trim to ``max_entries``: expired entries first, then the oldest."""
        if len(self._entries) <= self.max_entries:
            return []
        victims = [k for k, e in self._entries.items() if e.is_expired(now)]
        for k in victims:
            del self._entries[k]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:overflow]
            for e in oldest:
                del self._entries[e.key]
                victims.append(e.key)
        self._stats.evictions += len(victims)
        return victims

    async def _drop(self, match: Callable[[str], bool], reason: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if match(k)]
            for k in keys:
                del self._entries[k]
            self._stats.invalidations += len(keys)
        await self._mirror(keys)
        logger.info("cache_invalidated", reason=reason, removed=len(keys))
        return len(keys)

    async def invalidate(self, key: str, *, prefix: bool = False) -> int:
        """Remove one exact key, or every key starting with ``key`` when ``prefix``."""
        if not key:
            raise ValueError("refusing to invalidate with an empty key")
        if prefix:
            return await self._drop(lambda k: k.startswith(key), f"prefix:{key}")
        return await self._drop(lambda k: k == key, f"exact:{key}")

    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove keys matching a glob (``*`` wildcard)."""
        return await self._drop(lambda k: fnmatch.fnmatchcase(k, pattern), f"pattern:{pattern}")

    async def clear(self) -> int:
        return await self._drop(lambda k: True, "clear")

    # --- single-flight ---

    async def _fetch_and_store(
        self, key: str, ttl: int, fetch: Callable[[], Awaitable[ResponseLike]]
    ) -> ResponseLike:
        response = await fetch()
        if 200 <= response.status_code < 300:
            await self.set(
                key,
                response.body,
                ttl=ttl,
                content_type=response.content_type,
                status_code=response.status_code,
            )
        return response

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Retrieved here so a failure nobody awaited does not warn at GC time.
            task.exception()

    async def get_or_fetch(
        self,
        key: str,
        ttl: int,
        fetch: Callable[[], Awaitable[ResponseLike]],
    ) -> tuple[ResponseLike, bool]:
        """Serve ``key`` from cache, or call ``fetch`` once for all concurrent misses.

        Returns ``(response, hit)``. Only 2xx responses are stored. The fetch
        runs as its own task, so a caller that is cancelled leaves it running
        for the others. A failed fetch reaches every waiter and leaves the
        cache untouched.
        """
        entry = await self.get(key)
        if entry is not None:
            return entry, True

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch_and_store(key, ttl, fetch))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget(key, t))
        return await asyncio.shield(task), False

    # --- introspection ---

    def count(self, prefix: str = "") -> int:
        now = self._clock()
        with self._lock:
            return sum(
                1
                for k, e in self._entries.items()
                if k.startswith(prefix) and not e.is_expired(now)
            )

    def stats(self) -> dict:
        with self._lock:
            data = asdict(self._stats)
            data["entries"] = len(self._entries)
        data["max_entries"] = self.max_entries
        data["persistent"] = self.directory is not None
        return data
