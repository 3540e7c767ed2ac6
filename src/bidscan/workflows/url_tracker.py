"""Processed-URL store used to skip work that a previous run already finished."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from ..core.keys import K_HAS_PREBID, K_STATUS
from .scan_config import DEFAULT_TRACKER_PATH
from .scan_utils import atomic_write_json, utc_now_iso

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_NO_DATA = "no_data"


class UrlTracker(Protocol):
    def is_processed(self, url: str) -> bool: ...

    def filter_unprocessed(self, urls: Iterable[str]) -> List[str]: ...

    def record_result(self, url: str, status: str, has_prebid: bool = False, error: Optional[str] = None) -> None: ...

    def close(self) -> None: ...


class JsonUrlTracker:
    """URL -> {status, hasPrebid, attempts, lastAttempt} mapping kept in one JSON file.

    Writes are batched: the file is rewritten every ``flush_every`` results and
    on :meth:`close`.
    """

    def __init__(self, path: Optional[Path] = DEFAULT_TRACKER_PATH, flush_every: int = 50) -> None:
        self.path = Path(path) if path is not None else None
        self.flush_every = max(1, int(flush_every))
        self._records: Dict[str, Dict[str, Any]] = {}
        self._dirty = 0
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Error loading URL tracker %s: %s", self.path, exc)
            return
        if isinstance(data, dict):
            self._records = {str(k): dict(v) for k, v in data.items() if isinstance(v, dict)}
        logger.info("Loaded %d tracked URLs from %s", len(self._records), self.path)

    def _flush_locked(self) -> None:
        if self.path is None or not self._dirty:
            return
        try:
            atomic_write_json(self.path, self._records)
            self._dirty = 0
        except OSError as exc:
            logger.error("Error saving URL tracker %s: %s", self.path, exc)

    def is_processed(self, url: str) -> bool:
        """True once a URL reached a final status (success or no data)."""

        with self._lock:
            record = self._records.get(url)
            return record is not None and record.get(K_STATUS) in {STATUS_SUCCESS, STATUS_NO_DATA}

    def filter_unprocessed(self, urls: Iterable[str]) -> List[str]:
        with self._lock:
            pending = [
                url
                for url in urls
                if self._records.get(url, {}).get(K_STATUS) not in {STATUS_SUCCESS, STATUS_NO_DATA}
            ]
        return pending

    def get(self, url: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(url)
            return dict(record) if record is not None else None

    def record_result(self, url: str, status: str, has_prebid: bool = False, error: Optional[str] = None) -> None:
        with self._lock:
            record = self._records.setdefault(url, {"attempts": 0})
            record[K_STATUS] = status
            record[K_HAS_PREBID] = bool(has_prebid)
            record["attempts"] = int(record.get("attempts", 0)) + 1
            record["lastAttempt"] = utc_now_iso()
            if error:
                record["error"] = error
            else:
                record.pop("error", None)
            self._dirty += 1
            if self._dirty >= self.flush_every:
                self._flush_locked()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {"total": len(self._records), STATUS_SUCCESS: 0, STATUS_ERROR: 0, STATUS_NO_DATA: 0}
            for record in self._records.values():
                status = record.get(K_STATUS)
                if status in counts:
                    counts[status] += 1
            return counts

    def close(self) -> None:
        with self._lock:
            self._flush_locked()


__all__ = [
    "UrlTracker",
    "JsonUrlTracker",
    "STATUS_SUCCESS",
    "STATUS_ERROR",
    "STATUS_NO_DATA",
]
