"""Scan defaults (thresholds, paths, timeouts, error patterns).

Centralizes static defaults so the workflow modules have no embedded magic
numbers. Callers can override any of them through ScanConfig / CacheConfig or
the BIDSCAN_* environment variables.
"""

from __future__ import annotations

from pathlib import Path

# Paths (relative to the working directory)
DEFAULT_CACHE_DIR = Path(".cache")
DEFAULT_BLACKLIST_PATH = Path("data") / "url-blacklist.json"
DEFAULT_TRACKER_PATH = Path("data") / "url-tracker.json"
DEFAULT_OUTPUT_DIR = Path("store")
DEFAULT_ERRORS_DIR = Path("errors")

# Content cache
CACHE_MAX_SIZE_BYTES = 100 * 1024 * 1024
CACHE_TTL_SECONDS = 30 * 60
CACHE_MAX_ENTRIES = 1000

# Blacklist
CRASHES_BEFORE_BLACKLIST = 2

# DNS
DNS_CONCURRENCY = 50
DNS_PROGRESS_EVERY = 500

# Domain health
LIKELY_FAIL_MIN_FAILURES = 3
LIKELY_FAIL_MIN_ATTEMPTS = 5
LIKELY_FAIL_RATIO = 0.8
SLOW_DOMAIN_MS = 30000.0

# Cluster health
CLUSTER_ERROR_THRESHOLD = 10
CRITICAL_ERROR_PATTERNS = (
    "Requesting main frame too early",
    "Target crashed",
    "Browser closed",
    "Protocol error",
)

# Scanning
SCAN_CONCURRENCY = 5
BATCH_SIZE = 500
PAGE_TIMEOUT_SECONDS = 60.0
HARD_TIMEOUT_SECONDS = 90.0
PER_DOMAIN_CONCURRENCY = 4
USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

# Remote sources
GITHUB_HOST = "github.com"
GITHUB_RAW_HOST = "raw.githubusercontent.com"
DEFAULT_REMOTE_SOURCE = "https://github.com/zer0h/top-1000000-domains/blob/master/top-1000000-domains"

# Markers that indicate a header-bidding library on a page
PREBID_MARKERS = ("pbjs", "prebid.js", "prebid.min.js", "pbjs.que")
