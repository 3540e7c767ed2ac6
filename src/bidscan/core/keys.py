"""Shared JSON keys for persisted scan state, to avoid magic strings across modules."""

from __future__ import annotations

# Blacklist file
K_URLS = "urls"
K_CRASH_COUNTS = "crashCounts"
K_LAST_UPDATED = "lastUpdated"

# Batch progress file
K_RANGE = "range"
K_BATCH_SIZE = "batchSize"
K_COMPLETED_BATCHES = "completedBatches"
K_FAILED_BATCHES = "failedBatches"
K_BATCH_NUMBER = "batchNumber"

# Cache entries / results
K_URL = "url"
K_CONTENT = "content"
K_STATUS = "status"
K_HAS_PREBID = "hasPrebid"
K_VERSION = "version"

__all__ = [name for name in globals() if name.startswith("K_")]
