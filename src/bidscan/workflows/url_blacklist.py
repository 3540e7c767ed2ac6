"""Persistent exclusion list for URLs that repeatedly crash the scan engine."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..core.keys import K_CRASH_COUNTS, K_LAST_UPDATED, K_URLS
from .scan_config import CRASHES_BEFORE_BLACKLIST, DEFAULT_BLACKLIST_PATH
from .scan_utils import atomic_write_json, utc_now_iso

logger = logging.getLogger(__name__)


class UrlBlacklist:
    """Crash-count-triggered blacklist mirrored to a JSON file.

    A URL is added once its crash counter reaches ``threshold``; only
    :meth:`remove_from_blacklist` takes it out again. Every mutation is
    written through immediately.
    """

    def __init__(
        self,
        path: Optional[Path] = DEFAULT_BLACKLIST_PATH,
        threshold: int = CRASHES_BEFORE_BLACKLIST,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self.threshold = max(1, int(threshold))
        self._urls: Dict[str, None] = {}
        self._crash_counts: Dict[str, int] = {}
        self._reasons: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            urls = [str(u) for u in data.get(K_URLS) or []]
            counts = {str(k): int(v) for k, v in (data.get(K_CRASH_COUNTS) or {}).items()}
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            logger.error("Error loading URL blacklist %s: %s", self.path, exc)
            return
        self._urls = dict.fromkeys(urls)
        self._crash_counts = counts
        logger.info("Loaded %d URLs from blacklist", len(self._urls))

    def _save(self) -> None:
        if self.path is None:
            return
        payload: Dict[str, Any] = {
            K_URLS: list(self._urls),
            K_CRASH_COUNTS: dict(self._crash_counts),
            K_LAST_UPDATED: utc_now_iso(),
        }
        try:
            atomic_write_json(self.path, payload)
        except OSError as exc:
            logger.error("Error saving URL blacklist %s: %s", self.path, exc)

    def is_blacklisted(self, url: str) -> bool:
        with self._lock:
            return url in self._urls

    def crash_count(self, url: str) -> int:
        with self._lock:
            return self._crash_counts.get(url, 0)

    def reason(self, url: str) -> Optional[str]:
        with self._lock:
            return self._reasons.get(url)

    def record_crash(self, url: str, error: str) -> bool:
        """Count a crash for ``url``; returns True when this crash blacklisted it."""

        with self._lock:
            count = self._crash_counts.get(url, 0) + 1
            self._crash_counts[url] = count
            logger.warning("URL %s has crashed %d times: %s", url, count, error)
            newly_added = False
            if count >= self.threshold and url not in self._urls:
                self._add(url, f"Crashed {count} times with: {error}")
                newly_added = True
            self._save()
            return newly_added

    def _add(self, url: str, reason: str) -> None:
        self._urls[url] = None
        self._reasons[url] = reason
        logger.error("Added %s to blacklist: %s", url, reason)

    def add_to_blacklist(self, url: str, reason: str) -> None:
        with self._lock:
            self._add(url, reason)
            self._save()

    def remove_from_blacklist(self, url: str) -> bool:
        with self._lock:
            present = url in self._urls or url in self._crash_counts
            self._urls.pop(url, None)
            self._crash_counts.pop(url, None)
            self._reasons.pop(url, None)
            self._save()
        if present:
            logger.info("Removed %s from blacklist", url)
        return present

    def filter_urls(self, urls: Iterable[str]) -> Dict[str, List[str]]:
        valid: List[str] = []
        blacklisted: List[str] = []
        with self._lock:
            for url in urls:
                (blacklisted if url in self._urls else valid).append(url)
        if blacklisted:
            logger.info("Filtered out %d blacklisted URLs", len(blacklisted))
        return {"valid": valid, "blacklisted": blacklisted}

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            crashing = sorted(self._crash_counts.items(), key=lambda kv: kv[1], reverse=True)
            return {
                "blacklistedCount": len(self._urls),
                "crashingUrls": [{"url": url, "crashes": count} for url, count in crashing],
            }

    def flush(self) -> None:
        with self._lock:
            self._save()


__all__ = ["UrlBlacklist"]
