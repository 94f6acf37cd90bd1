"""In-memory caches for conversion results and static asset bytes."""

import hashlib
import time
from dataclasses import dataclass
from typing import Callable, Iterable

import structlog

from docsync.models import JobManifest

logger = structlog.get_logger()


def conversion_key(data: bytes, formats: Iterable[str], input_type: str = "") -> str:
    """Build a cache key from the raw upload bytes and a format set.

    Format order does not matter; duplicates collapse.
    """
    digest = hashlib.sha256(data).hexdigest()
    normalized = ",".join(sorted({fmt.lower() for fmt in formats}))
    return f"{digest}:{input_type}:{normalized}"


@dataclass
class _CachedConversion:
    manifest: JobManifest
    time: float


class ConversionCache:
    """
    Memoizes completed conversions by content key.

    Entries expire lazily at lookup after ``ttl_seconds``. The cache holds at
    most ``max_size`` entries and evicts in insertion order.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_size = max(max_size, 1)
        self._clock = clock
        self._entries: dict[str, _CachedConversion] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> JobManifest | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.time > self._ttl:
            del self._entries[key]
            logger.debug("Conversion cache entry expired", key=key)
            return None
        return entry.manifest

    def set(self, key: str, manifest: JobManifest) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self._max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            logger.debug("Conversion cache evicted oldest entry", key=oldest)
        self._entries[key] = _CachedConversion(manifest=manifest, time=self._clock())

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class StaticEntry:
    """Buffered bytes of a small static asset plus its validators."""

    body: bytes
    etag: str
    last_modified: str
    content_type: str
    mtime_ns: int
    time: float


class StaticFileCache:
    """Small LRU cache of static asset bytes keyed by filesystem path."""

    # Files at or above this size are streamed and never cached
    MAX_FILE_BYTES = 1024 * 1024

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max(max_entries, 1)
        self._clock = clock
        self._entries: dict[str, StaticEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, path: str, mtime_ns: int) -> StaticEntry | None:
        entry = self._entries.get(path)
        if entry is None:
            return None
        if self._clock() - entry.time > self._ttl or entry.mtime_ns != mtime_ns:
            del self._entries[path]
            return None
        # Move to the end so eviction drops the least recently used
        self._entries[path] = self._entries.pop(path)
        return entry

    def put(
        self,
        path: str,
        body: bytes,
        etag: str,
        last_modified: str,
        content_type: str,
        mtime_ns: int,
    ) -> StaticEntry:
        self._entries.pop(path, None)
        while len(self._entries) >= self._max_entries:
            del self._entries[next(iter(self._entries))]
        entry = StaticEntry(
            body=body,
            etag=etag,
            last_modified=last_modified,
            content_type=content_type,
            mtime_ns=mtime_ns,
            time=self._clock(),
        )
        self._entries[path] = entry
        return entry
