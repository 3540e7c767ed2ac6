"""Batch DNS pre-validation so dead domains never reach the scan engine."""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from .scan_config import DNS_CONCURRENCY, DNS_PROGRESS_EVERY
from .scan_utils import hostname_of

logger = logging.getLogger(__name__)

DNS_LOOKUP_FAILED = "DNS_LOOKUP_FAILED"
INVALID_URL = "INVALID_URL"


@dataclass(frozen=True)
class DNSValidationResult:
    url: str
    hostname: str
    valid: bool
    error: Optional[str] = None


def _error_code(exc: BaseException) -> str:
    """Best-effort symbolic code (``EAI_NONAME`` ...) for a failed lookup."""

    for candidate in (exc, exc.__cause__, exc.__context__):
        if isinstance(candidate, socket.gaierror) and candidate.errno is not None:
            for name in dir(socket):
                if name.startswith("EAI_") and getattr(socket, name) == candidate.errno:
                    return name
    return DNS_LOOKUP_FAILED


async def _lookup(resolver: Any, url: str) -> DNSValidationResult:
    hostname = hostname_of(url)
    if not hostname:
        return DNSValidationResult(url=url, hostname="", valid=False, error=INVALID_URL)
    try:
        addrs = await resolver.resolve(hostname, 0, socket.AF_UNSPEC)
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # resolver failures of any shape mean "invalid"
        return DNSValidationResult(url=url, hostname=hostname, valid=False, error=_error_code(exc))
    if not addrs:
        return DNSValidationResult(url=url, hostname=hostname, valid=False, error=DNS_LOOKUP_FAILED)
    return DNSValidationResult(url=url, hostname=hostname, valid=True)


async def batch_validate(
    urls: Sequence[str],
    concurrency: int = DNS_CONCURRENCY,
    *,
    resolver: Any = None,
) -> Dict[str, DNSValidationResult]:
    """Resolve every URL's host in sequential chunks of ``concurrency`` lookups.

    Lookups inside a chunk run concurrently; the next chunk starts only when
    the previous one finished, bounding in-flight DNS queries. Failures are
    reported as ``valid=False`` and never raised.
    """

    chunk_size = max(1, int(concurrency))
    owns_resolver = resolver is None
    if resolver is None:
        resolver = aiohttp.ThreadedResolver()
    results: Dict[str, DNSValidationResult] = {}
    try:
        for offset in range(0, len(urls), chunk_size):
            chunk: List[str] = list(urls[offset : offset + chunk_size])
            for result in await asyncio.gather(*(_lookup(resolver, url) for url in chunk)):
                results[result.url] = result
            if offset % DNS_PROGRESS_EVERY == 0:
                logger.debug("DNS validation progress: %d/%d", offset + len(chunk), len(urls))
    finally:
        if owns_resolver:
            await resolver.close()

    valid_count = sum(1 for r in results.values() if r.valid)
    logger.info(
        "DNS validation complete: %d valid, %d invalid out of %d URLs",
        valid_count,
        len(results) - valid_count,
        len(urls),
    )
    return results


async def validate_single(url: str, *, resolver: Any = None) -> bool:
    """Quick check for one URL; every error reads as ``False``."""

    owns_resolver = resolver is None
    if resolver is None:
        resolver = aiohttp.ThreadedResolver()
    try:
        result = await _lookup(resolver, url)
        return result.valid
    finally:
        if owns_resolver:
            await resolver.close()


__all__ = ["DNSValidationResult", "batch_validate", "validate_single"]
