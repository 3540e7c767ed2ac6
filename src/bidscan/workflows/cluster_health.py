"""Aggregate health signal over the stream of scan-engine task failures.

The scanner publishes a :class:`TaskErrorEvent` for every failed engine
attempt on a :class:`TaskErrorStream`. A :class:`ClusterHealthMonitor`
subscribes to the stream with its own queue and folds events into an error
counter from a consumer task. The signal is advisory only.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .scan_config import CLUSTER_ERROR_THRESHOLD, CRITICAL_ERROR_PATTERNS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskErrorEvent:
    url: str
    message: str
    timestamp: float = field(default_factory=time.time)


class TaskErrorStream:
    """Fan-out channel: every subscriber queue receives every published event."""

    def __init__(self) -> None:
        self._subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: TaskErrorEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)


def _pattern_bucket(message: str) -> str:
    lowered = message.lower()
    if "main frame" in lowered or "detached frame" in lowered:
        return "frame_error"
    if "timeout" in lowered or "timed out" in lowered:
        return "timeout"
    if "navigation" in lowered or "net::err" in lowered:
        return "navigation"
    if "protocol error" in lowered:
        return "protocol"
    return "other"


class ClusterHealthMonitor:
    def __init__(
        self,
        threshold: int = CLUSTER_ERROR_THRESHOLD,
        critical_patterns: Sequence[str] = CRITICAL_ERROR_PATTERNS,
    ) -> None:
        self.threshold = int(threshold)
        self.critical_patterns = tuple(critical_patterns)
        self._error_count = 0
        self._critical_count = 0
        self._patterns: Counter = Counter()
        self._last_error: Optional[TaskErrorEvent] = None
        self._lock = threading.Lock()
        self._stream: Optional[TaskErrorStream] = None
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    def start_monitoring(self, stream: TaskErrorStream) -> None:
        """Subscribe to ``stream``; must be called from a running event loop."""

        if self._stream is not None:
            self.stop_monitoring()
        self._stream = stream
        self._queue = stream.subscribe()
        self._task = asyncio.get_running_loop().create_task(self._consume(self._queue))
        logger.debug("Cluster health monitoring started")

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                self.observe(event)
            finally:
                queue.task_done()

    def observe(self, event: TaskErrorEvent) -> None:
        """Fold one failure event into the counters."""

        with self._lock:
            self._error_count += 1
            self._last_error = event
            self._patterns[_pattern_bucket(event.message)] += 1
            count = self._error_count
            critical = any(p in event.message for p in self.critical_patterns)
            if critical:
                self._critical_count += 1
        if critical:
            logger.error(
                "Critical cluster error for %s: %s (errorCount=%d)",
                event.url,
                event.message,
                count,
            )

    async def drain(self) -> None:
        """Wait until every event published so far has been observed."""

        if self._queue is not None:
            await self._queue.join()

    def get_health_status(self) -> Dict[str, object]:
        with self._lock:
            return {
                "errorCount": self._error_count,
                "healthy": self._error_count <= self.threshold,
            }

    def error_patterns(self) -> Dict[str, int]:
        with self._lock:
            return {
                "frame_error": self._patterns.get("frame_error", 0),
                "timeout": self._patterns.get("timeout", 0),
                "navigation": self._patterns.get("navigation", 0),
                "protocol": self._patterns.get("protocol", 0),
                "other": self._patterns.get("other", 0),
            }

    @property
    def critical_count(self) -> int:
        with self._lock:
            return self._critical_count

    @property
    def last_error(self) -> Optional[TaskErrorEvent]:
        with self._lock:
            return self._last_error

    def reset_error_count(self) -> None:
        with self._lock:
            self._error_count = 0
            self._critical_count = 0
            self._patterns.clear()

    def stop_monitoring(self) -> None:
        """Unsubscribe and stop the consumer; counters are kept."""

        if self._stream is not None and self._queue is not None:
            self._stream.unsubscribe(self._queue)
        if self._task is not None:
            self._task.cancel()
        self._stream = None
        self._queue = None
        self._task = None
        logger.debug("Cluster health monitoring stopped")


__all__ = ["TaskErrorEvent", "TaskErrorStream", "ClusterHealthMonitor"]
