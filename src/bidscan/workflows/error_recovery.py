"""Retry strategy per error code and per-domain health tracking."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional

from .error_types import ErrorCode
from .scan_config import (
    LIKELY_FAIL_MIN_ATTEMPTS,
    LIKELY_FAIL_MIN_FAILURES,
    LIKELY_FAIL_RATIO,
    SLOW_DOMAIN_MS,
)
from .scan_utils import hostname_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryStrategy:
    should_retry: bool
    delay_ms: int = 0
    max_attempts: int = 0
    backoff_multiplier: float = 1.0


NO_RETRY = RetryStrategy(should_retry=False)

PERMANENT_ERRORS = frozenset(
    {
        ErrorCode.DNS_RESOLUTION_FAILED,
        ErrorCode.INVALID_CERTIFICATE_AUTHORITY,
        ErrorCode.CERTIFICATE_EXPIRED,
        ErrorCode.CERTIFICATE_NAME_MISMATCH,
        ErrorCode.PAGE_NOT_FOUND,
        ErrorCode.ACCESS_FORBIDDEN,
        ErrorCode.IP_BLOCKED,
    }
)

_TRANSIENT = RetryStrategy(should_retry=True, delay_ms=2000, max_attempts=2, backoff_multiplier=2.0)
_THROTTLED = RetryStrategy(should_retry=True, delay_ms=30000, max_attempts=1, backoff_multiplier=1.0)
_ENGINE = RetryStrategy(should_retry=True, delay_ms=1000, max_attempts=1, backoff_multiplier=1.0)

RETRY_STRATEGIES: Dict[ErrorCode, RetryStrategy] = {
    ErrorCode.CONNECTION_TIMEOUT: _TRANSIENT,
    ErrorCode.NETWORK_CHANGED: _TRANSIENT,
    ErrorCode.NAVIGATION_TIMEOUT: _TRANSIENT,
    ErrorCode.RATE_LIMITED: _THROTTLED,
    ErrorCode.CDN_PROTECTION: _THROTTLED,
    ErrorCode.CAPTCHA_REQUIRED: _THROTTLED,
    ErrorCode.BROWSER_SESSION_CLOSED: _ENGINE,
    ErrorCode.CONTEXT_DESTROYED: _ENGINE,
    ErrorCode.FRAME_DETACHED: _ENGINE,
    ErrorCode.BROWSER_CRASHED: _ENGINE,
}


def get_retry_strategy(code: ErrorCode) -> RetryStrategy:
    """Return the retry policy for ``code``; unlisted codes are not retried."""

    if code in PERMANENT_ERRORS:
        return NO_RETRY
    return RETRY_STRATEGIES.get(code, NO_RETRY)


def retry_delays(strategy: RetryStrategy) -> List[float]:
    """Delays in seconds before each retry attempt (``delay * mult**(n-1)``)."""

    if not strategy.should_retry:
        return []
    return [
        strategy.delay_ms * (strategy.backoff_multiplier ** (attempt - 1)) / 1000.0
        for attempt in range(1, strategy.max_attempts + 1)
    ]


@dataclass
class DomainHealth:
    domain: str
    success_count: int = 0
    failure_count: int = 0
    last_success: Optional[float] = None
    last_failure: Optional[float] = None
    last_error_code: Optional[ErrorCode] = None
    avg_response_time: float = 0.0

    @property
    def attempts(self) -> int:
        return self.success_count + self.failure_count

    @property
    def failure_rate(self) -> float:
        return self.failure_count / self.attempts if self.attempts else 0.0


class DomainHealthTracker:
    """Success/failure bookkeeping keyed by hostname.

    Records for a domain are created on first touch. The tracker is shared by
    every concurrent scan task, so mutations happen under one lock.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._domains: Dict[str, DomainHealth] = {}
        self._lock = threading.Lock()
        self._clock = clock

    @staticmethod
    def _domain(url: str) -> str:
        return hostname_of(url) or (url or "").strip().lower()

    def _get_or_create(self, domain: str) -> DomainHealth:
        health = self._domains.get(domain)
        if health is None:
            health = DomainHealth(domain=domain)
            self._domains[domain] = health
        return health

    def record_success(self, url: str, response_time_ms: float) -> None:
        with self._lock:
            health = self._get_or_create(self._domain(url))
            health.success_count += 1
            health.last_success = self._clock()
            if health.avg_response_time == 0:
                health.avg_response_time = float(response_time_ms)
            else:
                health.avg_response_time = (health.avg_response_time + float(response_time_ms)) / 2

    def record_failure(self, url: str, code: ErrorCode) -> None:
        with self._lock:
            health = self._get_or_create(self._domain(url))
            health.failure_count += 1
            health.last_failure = self._clock()
            health.last_error_code = code

    def get_domain_health(self, url: str) -> Optional[DomainHealth]:
        with self._lock:
            health = self._domains.get(self._domain(url))
            return replace(health) if health is not None else None

    @staticmethod
    def _likely_to_fail(health: DomainHealth) -> bool:
        if health.failure_count >= LIKELY_FAIL_MIN_FAILURES and health.last_success is None:
            return True
        if health.attempts > LIKELY_FAIL_MIN_ATTEMPTS and health.failure_rate > LIKELY_FAIL_RATIO:
            return True
        # last error was permanent
        if health.last_error_code is not None:
            return not get_retry_strategy(health.last_error_code).should_retry
        return False

    def is_likely_to_fail(self, url: str) -> bool:
        with self._lock:
            health = self._domains.get(self._domain(url))
            return health is not None and self._likely_to_fail(health)

    def prioritize_urls(self, urls: Iterable[str]) -> Dict[str, List[str]]:
        """Stable partition into ``healthy`` / ``risky`` / ``failing``.

        Unknown domains and domains without failures are healthy.
        """

        groups: Dict[str, List[str]] = {"healthy": [], "risky": [], "failing": []}
        with self._lock:
            for url in urls:
                health = self._domains.get(self._domain(url))
                if health is None or health.failure_count == 0:
                    groups["healthy"].append(url)
                elif self._likely_to_fail(health):
                    groups["failing"].append(url)
                else:
                    groups["risky"].append(url)
        logger.info(
            "URL prioritization: %d healthy, %d risky, %d failing",
            len(groups["healthy"]),
            len(groups["risky"]),
            len(groups["failing"]),
        )
        return groups

    def get_recommended_concurrency(self, url: str, base: int) -> int:
        health = self.get_domain_health(url)
        if health is None:
            return base
        if health.avg_response_time > SLOW_DOMAIN_MS:
            return max(2, base // 3)
        if health.failure_count > 0:
            return max(1, base // 2)
        return base

    def snapshot(self) -> Dict[str, DomainHealth]:
        with self._lock:
            return {domain: replace(health) for domain, health in self._domains.items()}

    def reset(self, url: Optional[str] = None) -> None:
        with self._lock:
            if url is None:
                self._domains.clear()
            else:
                self._domains.pop(self._domain(url), None)
        logger.info("Domain health tracker reset (%s)", url or "all domains")


__all__ = [
    "RetryStrategy",
    "NO_RETRY",
    "PERMANENT_ERRORS",
    "RETRY_STRATEGIES",
    "get_retry_strategy",
    "retry_delays",
    "DomainHealth",
    "DomainHealthTracker",
]
