"""Persisted record of completed and failed batches for exact resume."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..core.keys import (
    K_BATCH_NUMBER,
    K_BATCH_SIZE,
    K_COMPLETED_BATCHES,
    K_FAILED_BATCHES,
    K_RANGE,
)
from .scan_config import BATCH_SIZE
from .scan_utils import atomic_write_json, utc_now_iso

logger = logging.getLogger(__name__)

PROGRESS_FILE_RE = re.compile(r"^batch-progress-(\d+)-(\d+)\.json$")


def progress_filename(start: int, end: int) -> str:
    return f"batch-progress-{start}-{end}.json"


def parse_progress_filename(name: str) -> Optional[Tuple[int, int]]:
    match = PROGRESS_FILE_RE.match(Path(name).name)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def find_progress_file(directory: Path = Path(".")) -> Optional[Path]:
    """First ``batch-progress-<start>-<end>.json`` in ``directory`` (sorted by name)."""

    candidates = sorted(p for p in Path(directory).glob("batch-progress-*.json") if PROGRESS_FILE_RE.match(p.name))
    return candidates[0] if candidates else None


@dataclass
class BatchProgressLedger:
    """Completed/failed batch bookkeeping over the inclusive range ``start..end``.

    Batch ``n`` (1-based) covers ``start + (n-1)*batch_size`` through
    ``min(end, start + n*batch_size - 1)``. A batch number lives in at most one
    of the two lists; ``completed_batches`` is append-only in completion order.
    """

    start: int
    end: int
    batch_size: int = BATCH_SIZE
    path: Optional[Path] = None
    completed_batches: List[Dict[str, Any]] = field(default_factory=list)
    failed_batches: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.start < 1 or self.end < self.start:
            raise ValueError(f"Invalid batch range {self.start}-{self.end}")
        if self.batch_size < 1:
            raise ValueError("batch_size must be positive")
        if self.path is not None:
            self.path = Path(self.path)

    @classmethod
    def for_range(cls, start: int, end: int, batch_size: int = BATCH_SIZE, directory: Path = Path(".")) -> "BatchProgressLedger":
        """Load the ledger for ``start-end`` from ``directory`` or start a fresh one."""

        path = Path(directory) / progress_filename(start, end)
        ledger = cls(start=start, end=end, batch_size=batch_size, path=path)
        ledger.load()
        return ledger

    @property
    def total_batches(self) -> int:
        return (self.end - self.start) // self.batch_size + 1

    def batch_bounds(self, batch_number: int) -> Tuple[int, int]:
        if batch_number < 1:
            raise ValueError(f"Batch numbers start at 1, got {batch_number}")
        first = self.start + (batch_number - 1) * self.batch_size
        last = min(self.end, first + self.batch_size - 1)
        return first, last

    def completed_numbers(self) -> List[int]:
        return [int(b[K_BATCH_NUMBER]) for b in self.completed_batches]

    def failed_numbers(self) -> List[int]:
        return [int(b[K_BATCH_NUMBER]) for b in self.failed_batches]

    def is_completed(self, batch_number: int) -> bool:
        return batch_number in self.completed_numbers()

    def record_completed(self, batch_number: int, **details: Any) -> None:
        """Mark a batch completed; a failed entry for it is cleared first."""

        self.failed_batches = [b for b in self.failed_batches if int(b[K_BATCH_NUMBER]) != batch_number]
        self.completed_batches = [b for b in self.completed_batches if int(b[K_BATCH_NUMBER]) != batch_number]
        entry = {K_BATCH_NUMBER: batch_number, "endTime": utc_now_iso()}
        entry.update(details)
        self.completed_batches.append(entry)
        logger.info("Batch %d completed", batch_number)

    def record_failed(self, batch_number: int, error: str = "", **details: Any) -> None:
        if self.is_completed(batch_number):
            logger.warning("Batch %d already completed; ignoring failure: %s", batch_number, error)
            return
        self.failed_batches = [b for b in self.failed_batches if int(b[K_BATCH_NUMBER]) != batch_number]
        entry = {K_BATCH_NUMBER: batch_number, "error": error, "endTime": utc_now_iso()}
        entry.update(details)
        self.failed_batches.append(entry)
        logger.error("Batch %d failed: %s", batch_number, error)

    def last_completed(self) -> int:
        return int(self.completed_batches[-1][K_BATCH_NUMBER]) if self.completed_batches else 0

    def next_batch(self) -> int:
        """Earliest failed batch if any, else the batch after the last completed one."""

        failed = self.failed_numbers()
        if failed:
            return min(failed)
        return self.last_completed() + 1

    def resume_start(self) -> Optional[int]:
        """First range position to continue from, or ``None`` when the run is complete."""

        first = self.start + (self.next_batch() - 1) * self.batch_size
        if first > self.end:
            return None
        return first

    def is_complete(self) -> bool:
        return self.resume_start() is None

    def to_json(self) -> Dict[str, Any]:
        return {
            K_RANGE: [self.start, self.end],
            K_BATCH_SIZE: self.batch_size,
            K_COMPLETED_BATCHES: list(self.completed_batches),
            K_FAILED_BATCHES: list(self.failed_batches),
        }

    def save(self) -> None:
        if self.path is None:
            return
        atomic_write_json(self.path, self.to_json())

    def load(self) -> bool:
        """Replace in-memory state from :attr:`path`; returns False when absent or unreadable."""

        if self.path is None or not self.path.exists():
            return False
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            completed = [dict(b) for b in data.get(K_COMPLETED_BATCHES) or []]
            failed = [dict(b) for b in data.get(K_FAILED_BATCHES) or []]
            batch_size = int(data.get(K_BATCH_SIZE) or self.batch_size)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Could not load progress file %s, starting fresh: %s", self.path, exc)
            return False
        self.completed_batches = completed
        self.failed_batches = failed
        self.batch_size = batch_size
        logger.info(
            "Loaded batch progress from %s: %d completed, %d failed",
            self.path,
            len(completed),
            len(failed),
        )
        return True

    @classmethod
    def from_file(cls, path: Path) -> "BatchProgressLedger":
        """Rebuild a ledger from a progress file; the range comes from the filename."""

        path = Path(path)
        bounds = parse_progress_filename(path.name)
        if bounds is None:
            data = json.loads(path.read_text(encoding="utf-8"))
            rng = data.get(K_RANGE) or []
            if len(rng) != 2:
                raise ValueError(f"Cannot determine range for progress file {path}")
            bounds = (int(rng[0]), int(rng[1]))
        ledger = cls(start=bounds[0], end=bounds[1], path=path)
        ledger.load()
        return ledger


__all__ = [
    "BatchProgressLedger",
    "progress_filename",
    "parse_progress_filename",
    "find_progress_file",
]
