"""High-level exports for the bidscan workflows."""

from .batch_progress import BatchProgressLedger
from .cluster_health import ClusterHealthMonitor, TaskErrorEvent, TaskErrorStream
from .content_cache import CacheConfig, ContentCache
from .error_recovery import DomainHealthTracker, RetryStrategy, get_retry_strategy
from .error_types import DetailedError, ErrorCode, classify_error
from .scanner import HttpScanEngine, ScanConfig, Scanner, ScanSummary
from .url_blacklist import UrlBlacklist
from .url_sources import RangeOptions, load_source, parse_range

__all__ = [
    "BatchProgressLedger",
    "CacheConfig",
    "ClusterHealthMonitor",
    "ContentCache",
    "DetailedError",
    "DomainHealthTracker",
    "ErrorCode",
    "HttpScanEngine",
    "RangeOptions",
    "RetryStrategy",
    "ScanConfig",
    "ScanSummary",
    "Scanner",
    "TaskErrorEvent",
    "TaskErrorStream",
    "UrlBlacklist",
    "classify_error",
    "get_retry_strategy",
    "load_source",
    "parse_range",
]
