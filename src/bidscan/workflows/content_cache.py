"""Bounded TTL content cache with hit-count aware eviction.

Keeps previously fetched page content keyed by URL so repeated scans of the
same page (retries, overlapping batches, resumed runs) skip the network.
Entries may be mirrored to ``cache_dir`` as one JSON file per URL.
"""

from __future__ import annotations

import base64
import hashlib
import itertools
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .scan_config import CACHE_MAX_ENTRIES, CACHE_MAX_SIZE_BYTES, CACHE_TTL_SECONDS, DEFAULT_CACHE_DIR
from .scan_utils import atomic_write_json

logger = logging.getLogger(__name__)

Content = Union[str, bytes]


@dataclass
class CacheConfig:
    """Configuration for :class:`ContentCache`."""

    max_size: int = CACHE_MAX_SIZE_BYTES
    ttl: float = CACHE_TTL_SECONDS
    max_entries: int = CACHE_MAX_ENTRIES
    cache_dir: Path = field(default_factory=lambda: DEFAULT_CACHE_DIR)
    persistent: bool = True


@dataclass
class CacheEntry:
    url: str
    content: Content
    size_bytes: int
    created_at: float
    expires_at: float
    hit_count: int = 0
    seq: int = 0

    def to_json(self) -> Dict[str, Any]:
        payload = asdict(self)
        if isinstance(self.content, bytes):
            payload["content"] = base64.b64encode(self.content).decode("ascii")
            payload["encoding"] = "base64"
        return payload

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CacheEntry":
        content = data["content"]
        if data.get("encoding") == "base64":
            content = base64.b64decode(content)
        return cls(
            url=str(data["url"]),
            content=content,
            size_bytes=int(data["size_bytes"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            hit_count=int(data.get("hit_count", 0)),
        )


def content_size(content: Content) -> int:
    if isinstance(content, bytes):
        return len(content)
    return len(content.encode("utf-8"))


def cache_key(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


class ContentCache:
    """In-memory cache bounded by total bytes and entry count.

    Eviction removes the entry with the lowest hit count first, ties broken by
    oldest insertion, so a few hot URLs survive churn from many cold ones.
    All public methods take the instance lock.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._size = 0
        self._hits = 0
        self._misses = 0
        self._seq = itertools.count()
        self._lock = threading.Lock()
        self._persistent = bool(self.config.persistent)
        if self._persistent:
            self._init_persistence()

    def _init_persistence(self) -> None:
        cache_dir = Path(self.config.cache_dir)
        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
            self._load_persisted(cache_dir)
        except OSError as exc:
            logger.warning("Failed to initialize persistent cache at %s: %s", cache_dir, exc)
            self._entries.clear()
            self._size = 0
            self._persistent = False

    def _load_persisted(self, cache_dir: Path) -> None:
        now = self._clock()
        loaded = 0
        for path in sorted(cache_dir.glob("*.json")):
            try:
                entry = CacheEntry.from_json(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable cache file %s: %s", path.name, exc)
                continue
            if now > entry.expires_at:
                self._unlink(path)
                continue
            if entry.size_bytes > self.config.max_size:
                continue
            entry.seq = next(self._seq)
            self._evict_for(entry.size_bytes)
            self._entries[entry.url] = entry
            self._size += entry.size_bytes
            loaded += 1
        if loaded:
            logger.info("Loaded %d cache entries from %s", loaded, cache_dir)

    @property
    def persistent(self) -> bool:
        return self._persistent

    def _path_for(self, url: str) -> Path:
        return Path(self.config.cache_dir) / f"{cache_key(url)}.json"

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.debug("Failed to remove cache file %s: %s", path, exc)

    def _persist(self, entry: CacheEntry) -> None:
        if not self._persistent:
            return
        try:
            atomic_write_json(self._path_for(entry.url), entry.to_json(), indent=None)
        except OSError as exc:
            logger.warning("Failed to save cache entry for %s: %s", entry.url, exc)

    def _remove(self, url: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(url, None)
        if entry is None:
            return None
        self._size -= entry.size_bytes
        if self._persistent:
            self._unlink(self._path_for(url))
        return entry

    def _evict_for(self, incoming_size: int) -> int:
        removed = 0
        while self._entries and (
            len(self._entries) + 1 > self.config.max_entries
            or self._size + incoming_size > self.config.max_size
        ):
            victim = min(self._entries.values(), key=lambda e: (e.hit_count, e.seq))
            self._remove(victim.url)
            removed += 1
        return removed

    def set(self, url: str, content: Content) -> None:
        size = content_size(content)
        if size > self.config.max_size:
            logger.warning("Content too large to cache: %s (%d bytes)", url, size)
            return
        with self._lock:
            self._remove(url)
            evicted = self._evict_for(size)
            if evicted:
                logger.info("Evicted %d cache entries to free space", evicted)
            now = self._clock()
            entry = CacheEntry(
                url=url,
                content=content,
                size_bytes=size,
                created_at=now,
                expires_at=now + self.config.ttl,
                hit_count=0,
                seq=next(self._seq),
            )
            self._entries[url] = entry
            self._size += size
            self._persist(entry)
        logger.debug("Cached content for %s (%d bytes)", url, size)

    def get(self, url: str) -> Optional[Content]:
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() > entry.expires_at:
                self._remove(url)
                self._misses += 1
                return None
            entry.hit_count += 1
            self._hits += 1
            logger.debug("Cache hit for %s (%d hits)", url, entry.hit_count)
            return entry.content

    def delete(self, url: str) -> bool:
        with self._lock:
            return self._remove(url) is not None

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            for url in list(self._entries):
                self._remove(url)
            self._size = 0
        logger.info("Cleared %d cache entries", count)

    def cleanup(self) -> int:
        """Sweep all expired entries; returns how many were removed."""

        with self._lock:
            now = self._clock()
            expired = [url for url, e in self._entries.items() if now > e.expires_at]
            for url in expired:
                self._remove(url)
        if expired:
            logger.info("Cleaned up %d expired cache entries", len(expired))
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
            lookups = self._hits + self._misses
            return {
                "entries": len(entries),
                "size": self._size,
                "max_size": self.config.max_size,
                "max_entries": self.config.max_entries,
                "hit_rate": (self._hits / lookups) if lookups else 0.0,
                "oldest_entry": min((e.created_at for e in entries), default=None),
                "newest_entry": max((e.created_at for e in entries), default=None),
            }

    def close(self) -> None:
        self.cleanup()


_GLOBAL_CACHE: Optional[ContentCache] = None
_GLOBAL_LOCK = threading.Lock()


def get_content_cache(config: Optional[CacheConfig] = None) -> ContentCache:
    """Process-wide accessor; returns the same instance until closed."""

    global _GLOBAL_CACHE
    with _GLOBAL_LOCK:
        if _GLOBAL_CACHE is None:
            _GLOBAL_CACHE = ContentCache(config)
        return _GLOBAL_CACHE


def close_content_cache() -> None:
    global _GLOBAL_CACHE
    with _GLOBAL_LOCK:
        if _GLOBAL_CACHE is not None:
            _GLOBAL_CACHE.close()
            _GLOBAL_CACHE = None


__all__ = [
    "CacheConfig",
    "CacheEntry",
    "ContentCache",
    "cache_key",
    "content_size",
    "get_content_cache",
    "close_content_cache",
]
