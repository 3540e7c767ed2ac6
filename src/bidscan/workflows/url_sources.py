"""Range-aware URL source loading.

Turns a newline-delimited source (local file, inline text or a remote list
such as a GitHub-hosted top-domains file) into an ordered list of absolute URLs,
optionally restricted to an inclusive 1-based position range.

The range must be applied exactly once. Remote sources select the range while
streaming, so their result is flagged ``range_applied`` and the generic
:func:`apply_range` step becomes a no-op for them. Re-slicing an already
range-limited list with the original offsets is what produced silent empty
scans for large offsets (e.g. 500000-500002 against a 3-element list).
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
import re
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Iterator, List, Optional
from urllib.parse import urlparse

import aiohttp

from .scan_config import GITHUB_HOST, GITHUB_RAW_HOST, PAGE_TIMEOUT_SECONDS, USER_AGENT

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"^https?://[^\s\"']+$", re.IGNORECASE)
_LINE_RE = re.compile(r"[^\r\n]+")

SOURCE_TEXT = "text"
SOURCE_FILE = "file"
SOURCE_REMOTE = "remote"


class RemoteSourceError(RuntimeError):
    """Raised when a remote URL list cannot be downloaded."""


@dataclass(frozen=True)
class RangeOptions:
    """Inclusive, 1-based position range. ``end=None`` means "to the end"."""

    start: int
    end: Optional[int] = None

    def __post_init__(self) -> None:
        if self.start < 1:
            raise ValueError(f"Range start must be >= 1, got {self.start}")
        if self.end is not None and self.end < 1:
            raise ValueError(f"Range end must be >= 1, got {self.end}")
        if self.end is not None and self.end < self.start:
            raise ValueError(f"Range end ({self.end}) must not be before start ({self.start})")

    def contains(self, position: int) -> bool:
        if position < self.start:
            return False
        return self.end is None or position <= self.end

    def exhausted(self, position: int) -> bool:
        return self.end is not None and position >= self.end

    def __str__(self) -> str:
        return f"{self.start}-{self.end if self.end is not None else ''}"


@dataclass
class SourceResult:
    """URLs produced by one source plus whether the range was already consumed."""

    urls: List[str] = field(default_factory=list)
    source: str = ""
    source_type: str = SOURCE_TEXT
    range_applied: bool = False


def parse_range(value: str) -> RangeOptions:
    """Parse ``"<start>-<end>"`` (both 1-based, inclusive)."""

    raw = (value or "").strip()
    if "-" not in raw:
        raise ValueError(f"Invalid range {value!r}: expected '<start>-<end>'")
    start_str, _, end_str = raw.partition("-")
    try:
        start = int(start_str.strip())
        end = int(end_str.strip()) if end_str.strip() else None
    except ValueError as exc:
        raise ValueError(f"Invalid range {value!r}: start and end must be numbers") from exc
    return RangeOptions(start=start, end=end)


def normalize_url_line(line: str) -> str:
    """Return ``line`` as an absolute URL; bare domains get ``https://``."""

    candidate = (line or "").strip()
    if not candidate:
        return ""
    if "://" in candidate:
        return candidate
    return f"https://{candidate}"


def _detect_format(name: str) -> str:
    lowered = (name or "").lower().split("?", 1)[0]
    if lowered.endswith(".json"):
        return "json"
    if lowered.endswith(".csv"):
        return "csv"
    return "txt"


def _iter_lines(text: str) -> Iterator[str]:
    """Lines of ``text`` without materializing a second copy of it."""
    return (m.group(0) for m in _LINE_RE.finditer(text))


def _iter_text_lines(lines: Iterable[str]) -> Iterator[str]:
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        yield line


def _iter_csv_cells(lines: Iterable[str]) -> Iterator[str]:
    for row in csv.reader(lines):
        if not row:
            continue
        cell = row[0].strip()
        if cell and not cell.startswith("#"):
            yield cell


def _walk_json_strings(data: Any) -> Iterator[str]:
    if isinstance(data, str):
        if _URL_RE.match(data.strip()):
            yield data.strip()
    elif isinstance(data, list):
        for item in data:
            yield from _walk_json_strings(item)
    elif isinstance(data, dict):
        for value in data.values():
            yield from _walk_json_strings(value)


def _iter_json_urls(text: str) -> Iterator[str]:
    try:
        data = json.loads(text)
    except ValueError as exc:
        logger.warning("Failed to parse JSON URL source, falling back to line scan: %s", exc)
        yield from (line for line in _iter_text_lines(_iter_lines(text)) if _URL_RE.match(line))
        return
    yield from _walk_json_strings(data)


def select_range(candidates: Iterable[str], range_options: Optional[RangeOptions]) -> Iterator[str]:
    """Yield normalized URLs at the requested positions, stopping after ``end``."""

    for position, line in enumerate(candidates, start=1):
        if range_options is not None and not range_options.contains(position):
            continue
        url = normalize_url_line(line)
        if url:
            yield url
        if range_options is not None and range_options.exhausted(position):
            break


def _line_candidates(lines: Iterable[str], fmt: str) -> Iterator[str]:
    if fmt == "csv":
        return _iter_csv_cells(lines)
    return _iter_text_lines(lines)


def extract_urls(
    source_text: str,
    range_options: Optional[RangeOptions] = None,
    *,
    fmt: str = "txt",
) -> List[str]:
    """Extract ordered URLs from ``source_text``.

    Lines are trimmed and blank or ``#`` comment lines are discarded before
    positions are counted. The text is iterated lazily so only the source
    string and the output list are resident.
    """

    if fmt == "json":
        candidates: Iterable[str] = _iter_json_urls(source_text)
    else:
        candidates = _line_candidates(_iter_lines(source_text), fmt)
    return list(select_range(candidates, range_options))


def apply_range(result: SourceResult, range_options: Optional[RangeOptions]) -> SourceResult:
    """Generic post-load range step; skipped when the source already consumed the range."""

    if range_options is None:
        return result
    if result.range_applied:
        logger.info(
            "Range %s already applied while loading %s; skipping duplicate range filtering",
            range_options,
            result.source or result.source_type,
        )
        return result
    total = len(result.urls)
    if range_options.start > total:
        logger.warning(
            "Start of range (%d) is beyond the total number of URLs (%d); no URLs to process",
            range_options.start,
            total,
        )
        return replace(result, urls=[], range_applied=True)
    end = total if range_options.end is None else min(range_options.end, total)
    selected = result.urls[range_options.start - 1 : end]
    logger.info(
        "Applied range %s: processing URLs %d to %d (%d of %d)",
        range_options,
        range_options.start,
        end,
        len(selected),
        total,
    )
    return replace(result, urls=selected, range_applied=True)


def load_local_source(path: Path, range_options: Optional[RangeOptions] = None) -> SourceResult:
    """Read a local URL list; the range is consumed while the file is read.

    Text and CSV files are iterated line by line and reading stops after the
    range end, so only the selected URLs are ever held in memory.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"URL source not found: {path}")
    fmt = _detect_format(path.name)
    with path.open(encoding="utf-8", newline="") as fh:
        if fmt == "json":
            candidates: Iterable[str] = _iter_json_urls(fh.read())
        else:
            candidates = _line_candidates(fh, fmt)
        urls = list(select_range(candidates, range_options))
    logger.info("Loaded %d URLs from local file %s", len(urls), path)
    return SourceResult(
        urls=urls,
        source=str(path),
        source_type=SOURCE_FILE,
        range_applied=range_options is not None,
    )


def to_raw_url(url: str) -> str:
    """Rewrite a GitHub ``/blob/`` view URL into its raw-content URL."""

    parsed = urlparse(url)
    if (parsed.hostname or "").lower() == GITHUB_HOST and "/blob/" in parsed.path:
        path = parsed.path.replace("/blob/", "/", 1)
        return parsed._replace(netloc=GITHUB_RAW_HOST, path=path).geturl()
    return url


async def _iter_remote_lines(session: aiohttp.ClientSession, url: str) -> AsyncIterator[str]:
    timeout = aiohttp.ClientTimeout(total=None, sock_read=PAGE_TIMEOUT_SECONDS)
    async with session.get(url, timeout=timeout) as resp:
        if resp.status != 200:
            raise RemoteSourceError(f"Failed to download {url}: HTTP {resp.status}")
        async for raw in resp.content:
            yield raw.decode("utf-8", errors="replace")


async def fetch_remote_source(
    url: str,
    range_options: Optional[RangeOptions] = None,
    *,
    session: Optional[aiohttp.ClientSession] = None,
) -> SourceResult:
    """Stream a remote newline-delimited list and select the range while reading.

    Reading stops as soon as the range end has been passed. Download failures
    are logged and yield an empty result.
    """

    effective = to_raw_url(url)
    if effective != url:
        logger.info("Converted GitHub blob URL to raw content URL: %s", effective)
    result = SourceResult(
        source=url,
        source_type=SOURCE_REMOTE,
        range_applied=range_options is not None,
    )
    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession(headers={"User-Agent": USER_AGENT})
    try:
        async with aclosing(_iter_remote_lines(session, effective)) as lines:
            result.urls = [u async for u in _aselect_range(lines, range_options)]
    except (aiohttp.ClientError, asyncio.TimeoutError, RemoteSourceError) as exc:
        logger.error("Error fetching URL list from %s: %s", effective, exc)
        result.urls = []
    finally:
        if owns_session:
            await session.close()
    logger.info("Loaded %d URLs from remote source %s (range=%s)", len(result.urls), url, range_options)
    return result


async def _aselect_range(lines: AsyncIterator[str], range_options: Optional[RangeOptions]) -> AsyncIterator[str]:
    position = 0
    async for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        position += 1
        if range_options is not None and not range_options.contains(position):
            continue
        yield normalize_url_line(line)
        if range_options is not None and range_options.exhausted(position):
            break


def is_remote_source(source: str) -> bool:
    lowered = (source or "").strip().lower()
    return lowered.startswith("http://") or lowered.startswith("https://")


async def load_source(
    source: str,
    range_options: Optional[RangeOptions] = None,
    *,
    session: Optional[aiohttp.ClientSession] = None,
) -> SourceResult:
    """Load ``source`` (URL or path) and guarantee the range is applied once."""

    if is_remote_source(source):
        result = await fetch_remote_source(source, range_options, session=session)
    else:
        result = load_local_source(Path(source), range_options)
    return apply_range(result, range_options)


__all__ = [
    "RangeOptions",
    "SourceResult",
    "RemoteSourceError",
    "parse_range",
    "normalize_url_line",
    "select_range",
    "extract_urls",
    "apply_range",
    "load_local_source",
    "to_raw_url",
    "fetch_remote_source",
    "is_remote_source",
    "load_source",
]
