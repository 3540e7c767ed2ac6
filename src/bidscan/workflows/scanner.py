"""Batch scan orchestration.

``Scanner`` drives a list of URLs through the resilience pipeline one batch at a
time: tracker skip, DNS pre-validation, blacklist filter, domain-health
prioritization and finally dispatch to a :class:`ScanEngine` under a global and
a per-domain concurrency budget. Each URL is cache-checked first and failures
are classified and retried according to their :class:`RetryStrategy`.

After every batch the :class:`BatchProgressLedger` is saved, so an interrupted
run can resume at the first failed or unfinished batch.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from ..core.keys import K_CONTENT, K_HAS_PREBID, K_URL, K_VERSION
from .batch_progress import BatchProgressLedger
from .cluster_health import ClusterHealthMonitor, TaskErrorEvent, TaskErrorStream
from .content_cache import ContentCache
from .dns_validator import batch_validate
from .error_recovery import DomainHealthTracker, get_retry_strategy, retry_delays
from .error_types import (
    DetailedError,
    ErrorCategory,
    ErrorCode,
    ErrorLogWriter,
    ProcessingPhase,
    classify_error,
    is_crash,
)
from .scan_config import (
    BATCH_SIZE,
    CLUSTER_ERROR_THRESHOLD,
    DEFAULT_OUTPUT_DIR,
    DNS_CONCURRENCY,
    HARD_TIMEOUT_SECONDS,
    PAGE_TIMEOUT_SECONDS,
    PER_DOMAIN_CONCURRENCY,
    PREBID_MARKERS,
    SCAN_CONCURRENCY,
    USER_AGENT,
)
from .scan_utils import env_bool, env_int, hostname_of, utc_now_iso
from .url_blacklist import UrlBlacklist
from .url_sources import RangeOptions, load_source
from .url_tracker import STATUS_ERROR, STATUS_NO_DATA, STATUS_SUCCESS, UrlTracker

logger = logging.getLogger(__name__)

RESULTS_FILENAME = "results.jsonl"

_PREBID_VERSION_RE = re.compile(r"prebid(?:\.js)?\s+v?(\d+\.\d+\.\d+)", re.IGNORECASE)


@dataclass
class ScanConfig:
    """Knobs for one scan run."""

    source: str = ""
    range: Optional[RangeOptions] = None
    batch_size: int = BATCH_SIZE
    concurrency: int = SCAN_CONCURRENCY
    per_domain: int = PER_DOMAIN_CONCURRENCY
    skip_processed: bool = False
    dns_check: bool = True
    dns_concurrency: int = DNS_CONCURRENCY
    include_failing: bool = False
    hard_timeout: float = HARD_TIMEOUT_SECONDS
    cluster_error_threshold: int = CLUSTER_ERROR_THRESHOLD
    output_dir: Path = DEFAULT_OUTPUT_DIR
    progress_dir: Path = Path(".")

    @classmethod
    def from_env(cls, **overrides: Any) -> "ScanConfig":
        """Defaults, then ``BIDSCAN_*`` environment values, then explicit overrides."""

        values: Dict[str, Any] = {
            "batch_size": max(1, env_int("BIDSCAN_BATCH_SIZE", BATCH_SIZE)),
            "concurrency": max(1, env_int("BIDSCAN_CONCURRENCY", SCAN_CONCURRENCY)),
            "dns_concurrency": max(1, env_int("BIDSCAN_DNS_CONCURRENCY", DNS_CONCURRENCY)),
            "cluster_error_threshold": env_int("BIDSCAN_CLUSTER_ERROR_THRESHOLD", CLUSTER_ERROR_THRESHOLD),
            "dns_check": not env_bool("BIDSCAN_DNS_DISABLE", "0"),
        }
        known = {f.name for f in fields(cls)}
        values.update({k: v for k, v in overrides.items() if k in known and v is not None})
        return cls(**values)


@dataclass
class EngineResult:
    """What the scan engine reports for one successfully loaded page."""

    url: str
    content: str = ""
    has_prebid: bool = False
    version: Optional[str] = None
    status: int = 200
    response_time_ms: float = 0.0


class EngineError(RuntimeError):
    """Engine-side failure; the message is what gets classified."""


class ScanEngine(Protocol):
    async def scan(self, url: str) -> EngineResult: ...

    async def close(self) -> None: ...


def detect_prebid(content: str) -> Dict[str, Any]:
    lowered = (content or "").lower()
    found = any(marker in lowered for marker in PREBID_MARKERS)
    version = None
    if found:
        match = _PREBID_VERSION_RE.search(content)
        version = match.group(1) if match else None
    return {"has_prebid": found, "version": version}


class HttpScanEngine:
    """Plain aiohttp page loader standing in for a browser engine.

    Transport failures are re-raised as :class:`EngineError` with messages in
    the ``net::ERR_*`` vocabulary so the shared classifier handles both engines.
    """

    def __init__(self, timeout: float = PAGE_TIMEOUT_SECONDS, user_agent: str = USER_AGENT) -> None:
        self.timeout = float(timeout)
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {
                "User-Agent": self.user_agent,
                "Accept-Language": "en-US,en;q=0.9",
                "Accept-Encoding": "gzip, deflate",
            }
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def scan(self, url: str) -> EngineResult:
        session = self._ensure_session()
        started = time.perf_counter()
        try:
            async with session.get(url, allow_redirects=True) as resp:
                if resp.status >= 400:
                    raise EngineError(f"HTTP {resp.status} {resp.reason or ''}".strip())
                text = await resp.text(errors="replace")
                status = resp.status
        except asyncio.TimeoutError as exc:
            raise EngineError(f"Navigation timeout of {int(self.timeout * 1000)} ms exceeded") from exc
        except aiohttp.ClientConnectorCertificateError as exc:
            raise EngineError(f"net::ERR_CERT_AUTHORITY_INVALID at {url}: {exc}") from exc
        except aiohttp.ClientSSLError as exc:
            raise EngineError(f"net::ERR_SSL_PROTOCOL_ERROR at {url}: {exc}") from exc
        except aiohttp.ClientConnectorError as exc:
            raise EngineError(_connector_message(url, exc)) from exc
        except aiohttp.ClientError as exc:
            raise EngineError(f"{type(exc).__name__}: {exc}") from exc
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        detection = detect_prebid(text)
        return EngineResult(
            url=url,
            content=text,
            has_prebid=detection["has_prebid"],
            version=detection["version"],
            status=status,
            response_time_ms=elapsed_ms,
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def _connector_message(url: str, exc: aiohttp.ClientConnectorError) -> str:
    os_error = getattr(exc, "os_error", None)
    if isinstance(os_error, ConnectionRefusedError):
        return f"net::ERR_CONNECTION_REFUSED at {url}"
    if isinstance(os_error, TimeoutError):
        return f"net::ERR_CONNECTION_TIMED_OUT at {url}"
    text = str(exc)
    if "Name or service not known" in text or "nodename nor servname" in text or "getaddrinfo" in text:
        return f"net::ERR_NAME_NOT_RESOLVED at {url}"
    return f"net::ERR_ADDRESS_UNREACHABLE at {url}: {text}"


@dataclass
class ScanOutcome:
    url: str
    status: str
    has_prebid: bool = False
    version: Optional[str] = None
    from_cache: bool = False
    attempts: int = 0
    response_time_ms: Optional[float] = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    scanned_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


@dataclass
class ScanSummary:
    total: int = 0
    scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    cached: int = 0
    with_prebid: int = 0
    skipped_processed: int = 0
    skipped_dns: int = 0
    skipped_blacklisted: int = 0
    skipped_failing: int = 0
    batches_completed: int = 0
    batches_failed: int = 0
    batches_skipped: int = 0

    def add(self, other: "ScanSummary") -> None:
        for f in fields(self):
            if f.name == "total":
                continue
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _encode_cached(result: EngineResult) -> str:
    """Cache the engine's own detection next to the page so hits replay it."""
    return json.dumps(
        {
            K_URL: result.url,
            K_CONTENT: result.content,
            K_HAS_PREBID: result.has_prebid,
            K_VERSION: result.version,
        },
        ensure_ascii=False,
    )


def _decode_cached(cached: Any) -> Dict[str, Any]:
    text = cached.decode("utf-8", errors="replace") if isinstance(cached, bytes) else str(cached)
    try:
        payload = json.loads(text)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and K_CONTENT in payload:
        return {"has_prebid": bool(payload.get(K_HAS_PREBID)), "version": payload.get(K_VERSION)}
    # bare page text, e.g. an entry stored by an older run
    return detect_prebid(text)


def _write_outcomes(outcomes: Sequence[ScanOutcome], output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("a", encoding="utf-8") as fh:
        for outcome in outcomes:
            fh.write(outcome.to_json() + "\n")


class Scanner:
    """Owns one run's services; use as ``async with Scanner(...) as scanner``."""

    def __init__(
        self,
        config: ScanConfig,
        engine: ScanEngine,
        *,
        cache: Optional[ContentCache] = None,
        blacklist: Optional[UrlBlacklist] = None,
        health: Optional[DomainHealthTracker] = None,
        monitor: Optional[ClusterHealthMonitor] = None,
        stream: Optional[TaskErrorStream] = None,
        tracker: Optional[UrlTracker] = None,
        error_log: Optional[ErrorLogWriter] = None,
        resolver: Any = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.config = config
        self.engine = engine
        self.cache = cache
        self.blacklist = blacklist if blacklist is not None else UrlBlacklist(path=None)
        self.health = health if health is not None else DomainHealthTracker()
        self.monitor = monitor if monitor is not None else ClusterHealthMonitor(config.cluster_error_threshold)
        self.stream = stream if stream is not None else TaskErrorStream()
        self.tracker = tracker
        self.error_log = error_log
        self._resolver = resolver
        self._sleep = sleep
        self._global_sem: Optional[asyncio.Semaphore] = None
        self._domain_sems: Dict[str, asyncio.Semaphore] = {}
        self._domain_limits: Dict[str, int] = {}

    async def __aenter__(self) -> "Scanner":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @property
    def results_path(self) -> Path:
        return Path(self.config.output_dir) / RESULTS_FILENAME

    async def run(self, urls: Optional[Sequence[str]] = None) -> ScanSummary:
        """Scan ``urls`` (or the configured source) batch by batch."""

        if urls is None:
            loaded = await load_source(self.config.source, self.config.range)
            urls = loaded.urls
        urls = list(urls)
        summary = ScanSummary(total=len(urls))
        if not urls:
            logger.warning("No URLs to process for source %s (range=%s)", self.config.source, self.config.range)
            return summary

        start = self.config.range.start if self.config.range is not None else 1
        ledger = BatchProgressLedger.for_range(
            start,
            start + len(urls) - 1,
            self.config.batch_size,
            Path(self.config.progress_dir),
        )
        order = self._batch_order(ledger)
        summary.batches_skipped = ledger.total_batches - len(order)
        if summary.batches_skipped:
            logger.info("Skipping %d batches already completed in %s", summary.batches_skipped, ledger.path)

        self.monitor.start_monitoring(self.stream)
        try:
            for batch_number in order:
                first, last = ledger.batch_bounds(batch_number)
                batch_urls = urls[first - start : last - start + 1]
                started_at = utc_now_iso()
                logger.info(
                    "Processing batch %d/%d (URLs %d-%d)",
                    batch_number,
                    ledger.total_batches,
                    first,
                    last,
                )
                try:
                    stats = await self.scan_batch(batch_number, batch_urls)
                except asyncio.CancelledError:
                    logger.warning("Batch %d interrupted; leaving it unrecorded", batch_number)
                    raise
                except Exception as exc:
                    ledger.record_failed(batch_number, str(exc), startTime=started_at, urlCount=len(batch_urls))
                    summary.batches_failed += 1
                else:
                    ledger.record_completed(
                        batch_number,
                        startTime=started_at,
                        urlCount=len(batch_urls),
                        processed=stats.scanned,
                        errors=stats.failed,
                    )
                    summary.add(stats)
                    summary.batches_completed += 1
                ledger.save()
                if self.cache is not None:
                    self.cache.cleanup()
        finally:
            self.monitor.stop_monitoring()

        logger.info(
            "Scan finished: %d scanned, %d succeeded, %d failed, %d with prebid (%d batches completed, %d failed)",
            summary.scanned,
            summary.succeeded,
            summary.failed,
            summary.with_prebid,
            summary.batches_completed,
            summary.batches_failed,
        )
        return summary

    @staticmethod
    def _batch_order(ledger: BatchProgressLedger) -> List[int]:
        """Failed batches first (ascending), then every batch not yet completed."""

        failed = sorted(set(ledger.failed_numbers()))
        done = set(ledger.completed_numbers())
        rest = [n for n in range(1, ledger.total_batches + 1) if n not in done and n not in failed]
        return failed + rest

    async def scan_batch(self, batch_number: int, urls: Sequence[str]) -> ScanSummary:
        stats = ScanSummary(total=len(urls))
        pending = list(urls)

        if self.config.skip_processed and self.tracker is not None:
            unprocessed = self.tracker.filter_unprocessed(pending)
            stats.skipped_processed = len(pending) - len(unprocessed)
            pending = unprocessed

        if self.config.dns_check and pending:
            dns = await batch_validate(pending, self.config.dns_concurrency, resolver=self._resolver)
            reachable = []
            for url in pending:
                result = dns.get(url)
                if result is not None and result.valid:
                    reachable.append(url)
                    continue
                stats.skipped_dns += 1
                self._record_dns_failure(url, result.error if result is not None else None)
            pending = reachable

        filtered = self.blacklist.filter_urls(pending)
        stats.skipped_blacklisted = len(filtered["blacklisted"])
        pending = filtered["valid"]

        groups = self.health.prioritize_urls(pending)
        ordered = groups["healthy"] + groups["risky"]
        if self.config.include_failing:
            ordered += groups["failing"]
        else:
            stats.skipped_failing = len(groups["failing"])

        if self._global_sem is None:
            self._global_sem = asyncio.Semaphore(max(1, self.config.concurrency))
        # per-domain limits are re-read from domain health every batch
        self._domain_sems = {}
        tasks = [asyncio.create_task(self._dispatch(url)) for url in ordered]
        try:
            outcomes: List[ScanOutcome] = list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for outcome in outcomes:
            stats.scanned += 1
            if outcome.status == STATUS_ERROR:
                stats.failed += 1
            else:
                stats.succeeded += 1
            if outcome.from_cache:
                stats.cached += 1
            if outcome.has_prebid:
                stats.with_prebid += 1
        if outcomes:
            _write_outcomes(outcomes, self.results_path)

        await self.monitor.drain()
        status = self.monitor.get_health_status()
        if not status["healthy"]:
            last = self.monitor.last_error
            logger.warning(
                "Scan engine unhealthy after batch %d: %d task errors (%d critical, last: %s)",
                batch_number,
                status["errorCount"],
                self.monitor.critical_count,
                last.message if last is not None else "-",
            )
        self.monitor.reset_error_count()
        logger.info(
            "Batch %d done: %d scanned, %d failed, %d skipped (processed=%d dns=%d blacklisted=%d failing=%d)",
            batch_number,
            stats.scanned,
            stats.failed,
            stats.skipped_processed + stats.skipped_dns + stats.skipped_blacklisted + stats.skipped_failing,
            stats.skipped_processed,
            stats.skipped_dns,
            stats.skipped_blacklisted,
            stats.skipped_failing,
        )
        return stats

    def _domain_semaphore(self, url: str) -> asyncio.Semaphore:
        domain = hostname_of(url)
        sem = self._domain_sems.get(domain)
        if sem is None:
            limit = max(1, self.health.get_recommended_concurrency(url, self.config.per_domain))
            if limit != self._domain_limits.get(domain, self.config.per_domain):
                logger.info("Per-domain concurrency for %s set to %d", domain, limit)
            self._domain_limits[domain] = limit
            sem = asyncio.Semaphore(limit)
            self._domain_sems[domain] = sem
        return sem

    async def _dispatch(self, url: str) -> ScanOutcome:
        assert self._global_sem is not None
        async with self._global_sem, self._domain_semaphore(url):
            return await self.scan_url(url)

    async def _engine_scan(self, url: str) -> EngineResult:
        try:
            return await asyncio.wait_for(self.engine.scan(url), timeout=self.config.hard_timeout)
        except asyncio.TimeoutError as exc:
            raise EngineError(f"Hard timeout: exceeded maximum timeout of {self.config.hard_timeout:g}s") from exc

    async def scan_url(self, url: str) -> ScanOutcome:
        """Scan one URL with cache lookup and classified retries."""

        if self.cache is not None:
            cached = self.cache.get(url)
            if cached is not None:
                detection = _decode_cached(cached)
                outcome = ScanOutcome(
                    url=url,
                    status=STATUS_SUCCESS if detection["has_prebid"] else STATUS_NO_DATA,
                    has_prebid=detection["has_prebid"],
                    version=detection["version"],
                    from_cache=True,
                )
                if self.tracker is not None:
                    self.tracker.record_result(url, outcome.status, has_prebid=outcome.has_prebid)
                return outcome

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._engine_scan(url)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify_error(exc, url=url, phase=ProcessingPhase.NAVIGATION)
                self.stream.publish(TaskErrorEvent(url=url, message=error.message))
                delays = retry_delays(get_retry_strategy(error.code))
                if attempt <= len(delays):
                    delay = delays[attempt - 1]
                    logger.info(
                        "Retrying %s after %s in %.1fs (retry %d/%d)",
                        url,
                        error.code.value,
                        delay,
                        attempt,
                        len(delays),
                    )
                    await self._sleep(delay)
                    continue
                return self._record_failure(url, error, attempt)
            return self._record_success(url, result, attempt)

    def _record_success(self, url: str, result: EngineResult, attempts: int) -> ScanOutcome:
        self.health.record_success(url, result.response_time_ms)
        if self.cache is not None and result.content:
            self.cache.set(url, _encode_cached(result))
        status = STATUS_SUCCESS if result.has_prebid else STATUS_NO_DATA
        if self.tracker is not None:
            self.tracker.record_result(url, status, has_prebid=result.has_prebid)
        logger.debug("Scanned %s in %.0f ms (prebid=%s)", url, result.response_time_ms, result.has_prebid)
        return ScanOutcome(
            url=url,
            status=status,
            has_prebid=result.has_prebid,
            version=result.version,
            attempts=attempts,
            response_time_ms=round(result.response_time_ms, 1),
        )

    def _record_failure(self, url: str, error: DetailedError, attempts: int) -> ScanOutcome:
        self.health.record_failure(url, error.code)
        if is_crash(error):
            self.blacklist.record_crash(url, error.message)
        if self.error_log is not None:
            self.error_log.write(error)
        if self.tracker is not None:
            self.tracker.record_result(url, STATUS_ERROR, error=error.code.value)
        logger.warning("Failed %s after %d attempt(s): %s", url, attempts, error.code.value)
        return ScanOutcome(
            url=url,
            status=STATUS_ERROR,
            attempts=attempts,
            error_code=error.code.value,
            error=error.message,
        )

    def _record_dns_failure(self, url: str, code: Optional[str]) -> None:
        error = DetailedError(
            code=ErrorCode.DNS_RESOLUTION_FAILED,
            category=ErrorCategory.NETWORK,
            message=f"DNS lookup failed: {code or 'unknown'}",
            url=url,
            phase=ProcessingPhase.PREFLIGHT,
        )
        if self.error_log is not None:
            self.error_log.write(error)
        if self.tracker is not None:
            self.tracker.record_result(url, STATUS_ERROR, error=error.code.value)

    async def aclose(self) -> None:
        """Flush persisted state and release the engine."""

        try:
            await self.engine.close()
        finally:
            if self.tracker is not None:
                self.tracker.close()
            self.blacklist.flush()
            if self.cache is not None:
                self.cache.close()


__all__ = [
    "ScanConfig",
    "ScanEngine",
    "EngineResult",
    "EngineError",
    "HttpScanEngine",
    "ScanOutcome",
    "ScanSummary",
    "Scanner",
    "detect_prebid",
    "RESULTS_FILENAME",
]
