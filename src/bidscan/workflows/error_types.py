"""Failure taxonomy for scan errors.

Raw engine failures arrive as free-form message strings. ``classify_error``
maps them onto a closed :class:`ErrorCode` set through an ordered rule table
(first match wins), which the retry strategy, domain health and blacklist
escalation all key off.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple, Union

from .scan_config import DEFAULT_ERRORS_DIR

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    CONTENT = "content"
    EXTRACTION = "extraction"
    BROWSER = "browser"
    ACCESS = "access"
    SSL = "ssl"
    UNKNOWN = "unknown"


class ProcessingPhase(str, Enum):
    PREFLIGHT = "preflight"
    NAVIGATION = "navigation"
    PAGE_LOAD = "page_load"
    DATA_EXTRACTION = "data_extraction"
    CLEANUP = "cleanup"


class ErrorCode(str, Enum):
    # network
    DNS_RESOLUTION_FAILED = "DNS_RESOLUTION_FAILED"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
    NETWORK_CHANGED = "NETWORK_CHANGED"
    NO_INTERNET = "NO_INTERNET"
    ADDRESS_UNREACHABLE = "ADDRESS_UNREACHABLE"
    # ssl
    INVALID_CERTIFICATE_AUTHORITY = "INVALID_CERTIFICATE_AUTHORITY"
    CERTIFICATE_EXPIRED = "CERTIFICATE_EXPIRED"
    SSL_PROTOCOL_ERROR = "SSL_PROTOCOL_ERROR"
    CERTIFICATE_NAME_MISMATCH = "CERTIFICATE_NAME_MISMATCH"
    # timeout
    NAVIGATION_TIMEOUT = "NAVIGATION_TIMEOUT"
    OPERATION_TIMEOUT = "OPERATION_TIMEOUT"
    ELEMENT_WAIT_TIMEOUT = "ELEMENT_WAIT_TIMEOUT"
    HARD_TIMEOUT = "HARD_TIMEOUT"
    # browser / automation engine
    BROWSER_SESSION_CLOSED = "BROWSER_SESSION_CLOSED"
    BROWSER_PROTOCOL_ERROR = "BROWSER_PROTOCOL_ERROR"
    CONTEXT_DESTROYED = "CONTEXT_DESTROYED"
    FRAME_DETACHED = "FRAME_DETACHED"
    BROWSER_CRASHED = "BROWSER_CRASHED"
    MAIN_FRAME_ERROR = "MAIN_FRAME_ERROR"
    # content
    PAGE_UNAVAILABLE = "PAGE_UNAVAILABLE"
    PAGE_NOT_FOUND = "PAGE_NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    # access
    ACCESS_FORBIDDEN = "ACCESS_FORBIDDEN"
    UNAUTHORIZED = "UNAUTHORIZED"
    CAPTCHA_REQUIRED = "CAPTCHA_REQUIRED"
    RATE_LIMITED = "RATE_LIMITED"
    IP_BLOCKED = "IP_BLOCKED"
    CDN_PROTECTION = "CDN_PROTECTION"
    # extraction
    JS_EVALUATION_FAILED = "JS_EVALUATION_FAILED"
    JS_PROPERTY_ERROR = "JS_PROPERTY_ERROR"
    JS_UNDEFINED_ERROR = "JS_UNDEFINED_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass(frozen=True)
class DetailedError:
    """A classified failure. Produced once per failure and never mutated."""

    code: ErrorCode
    category: ErrorCategory
    message: str
    url: str = ""
    phase: ProcessingPhase = ProcessingPhase.NAVIGATION
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)


MetadataFn = Callable[[str], Dict[str, Any]]


def _int_group(pattern: str, key: str) -> MetadataFn:
    compiled = re.compile(pattern, re.IGNORECASE)

    def _extract(message: str) -> Dict[str, Any]:
        match = compiled.search(message)
        return {key: int(match.group(1)) if match else None}

    return _extract


def _selector(message: str) -> Dict[str, Any]:
    match = re.search(r"waiting for selector [\"'](.*?)[\"']", message, re.IGNORECASE)
    return {"selector": match.group(1) if match else None}


def _page_title(message: str) -> Dict[str, Any]:
    match = re.search(r"\(([^)]+)\)\s*$", message)
    return {"page_title": match.group(1) if match else None}


def _rule(
    pattern: str,
    category: ErrorCategory,
    code: ErrorCode,
    *,
    flags: int = 0,
    metadata: Optional[MetadataFn] = None,
) -> Tuple[Pattern[str], ErrorCategory, ErrorCode, Optional[MetadataFn]]:
    return re.compile(pattern, flags), category, code, metadata


_I = re.IGNORECASE

# Order matters: browser/engine rules precede the generic HTTP-ish substrings
# ("404", "blocked") so engine messages that embed URLs do not misclassify.
ERROR_DETECTION_RULES: List[Tuple[Pattern[str], ErrorCategory, ErrorCode, Optional[MetadataFn]]] = [
    _rule(r"net::ERR_NAME_NOT_RESOLVED|Name or service not known|getaddrinfo|nodename nor servname", ErrorCategory.NETWORK, ErrorCode.DNS_RESOLUTION_FAILED),
    _rule(r"net::ERR_CONNECTION_REFUSED|Connection refused", ErrorCategory.NETWORK, ErrorCode.CONNECTION_REFUSED),
    _rule(r"net::ERR_CONNECTION_TIMED_OUT|Connection timed out|Connection timeout", ErrorCategory.NETWORK, ErrorCode.CONNECTION_TIMEOUT),
    _rule(r"net::ERR_NETWORK_CHANGED", ErrorCategory.NETWORK, ErrorCode.NETWORK_CHANGED),
    _rule(r"net::ERR_INTERNET_DISCONNECTED", ErrorCategory.NETWORK, ErrorCode.NO_INTERNET),
    _rule(r"net::ERR_ADDRESS_UNREACHABLE", ErrorCategory.NETWORK, ErrorCode.ADDRESS_UNREACHABLE),
    _rule(r"net::ERR_CERT_AUTHORITY_INVALID|CERTIFICATE_VERIFY_FAILED", ErrorCategory.SSL, ErrorCode.INVALID_CERTIFICATE_AUTHORITY),
    _rule(r"net::ERR_CERT_DATE_INVALID|certificate has expired", ErrorCategory.SSL, ErrorCode.CERTIFICATE_EXPIRED),
    _rule(r"net::ERR_SSL_PROTOCOL_ERROR|SSL: WRONG_VERSION_NUMBER", ErrorCategory.SSL, ErrorCode.SSL_PROTOCOL_ERROR),
    _rule(r"net::ERR_CERT_COMMON_NAME_INVALID|Hostname mismatch", ErrorCategory.SSL, ErrorCode.CERTIFICATE_NAME_MISMATCH),
    _rule(r"Navigation timeout of \d+ ms exceeded", ErrorCategory.TIMEOUT, ErrorCode.NAVIGATION_TIMEOUT, metadata=_int_group(r"Navigation timeout of (\d+) ms", "timeout_ms")),
    _rule(r"Timeout \d+ms exceeded", ErrorCategory.TIMEOUT, ErrorCode.OPERATION_TIMEOUT, metadata=_int_group(r"Timeout (\d+)ms", "timeout_ms")),
    _rule(r"waiting for selector .* timed out", ErrorCategory.TIMEOUT, ErrorCode.ELEMENT_WAIT_TIMEOUT, flags=_I, metadata=_selector),
    _rule(r"exceeded maximum timeout|hard timeout", ErrorCategory.TIMEOUT, ErrorCode.HARD_TIMEOUT, flags=_I),
    _rule(r"Requesting main frame too early", ErrorCategory.BROWSER, ErrorCode.MAIN_FRAME_ERROR),
    _rule(r"Session closed|Target closed", ErrorCategory.BROWSER, ErrorCode.BROWSER_SESSION_CLOSED),
    _rule(r"Target crashed", ErrorCategory.BROWSER, ErrorCode.BROWSER_CRASHED),
    _rule(r"Execution context was destroyed", ErrorCategory.BROWSER, ErrorCode.CONTEXT_DESTROYED),
    _rule(r"detached Frame", ErrorCategory.BROWSER, ErrorCode.FRAME_DETACHED),
    _rule(r"Protocol error", ErrorCategory.BROWSER, ErrorCode.BROWSER_PROTOCOL_ERROR),
    _rule(r"Page appears to be unavailable or redirected to error page", ErrorCategory.CONTENT, ErrorCode.PAGE_UNAVAILABLE, metadata=_page_title),
    _rule(r"captcha|recaptcha", ErrorCategory.ACCESS, ErrorCode.CAPTCHA_REQUIRED, flags=_I),
    _rule(r"rate limit|too many requests|\b429\b", ErrorCategory.ACCESS, ErrorCode.RATE_LIMITED, flags=_I),
    _rule(r"cloudflare|cf-ray", ErrorCategory.ACCESS, ErrorCode.CDN_PROTECTION, flags=_I),
    _rule(r"\b404\b|not found", ErrorCategory.CONTENT, ErrorCode.PAGE_NOT_FOUND, flags=_I),
    _rule(r"\b403\b|forbidden", ErrorCategory.ACCESS, ErrorCode.ACCESS_FORBIDDEN, flags=_I),
    _rule(r"\b401\b|unauthorized", ErrorCategory.ACCESS, ErrorCode.UNAUTHORIZED, flags=_I),
    _rule(r"\b500\b|internal server error", ErrorCategory.CONTENT, ErrorCode.SERVER_ERROR, flags=_I),
    _rule(r"\b503\b|service unavailable", ErrorCategory.CONTENT, ErrorCode.SERVICE_UNAVAILABLE, flags=_I),
    _rule(r"blocked|banned|blacklisted", ErrorCategory.ACCESS, ErrorCode.IP_BLOCKED, flags=_I),
    _rule(r"Evaluation failed|Execution context", ErrorCategory.EXTRACTION, ErrorCode.JS_EVALUATION_FAILED),
    _rule(r"Cannot read prop", ErrorCategory.EXTRACTION, ErrorCode.JS_PROPERTY_ERROR),
    _rule(r"undefined is not", ErrorCategory.EXTRACTION, ErrorCode.JS_UNDEFINED_ERROR),
]

CRASH_CODES = frozenset(
    {
        ErrorCode.BROWSER_SESSION_CLOSED,
        ErrorCode.BROWSER_PROTOCOL_ERROR,
        ErrorCode.CONTEXT_DESTROYED,
        ErrorCode.FRAME_DETACHED,
        ErrorCode.BROWSER_CRASHED,
        ErrorCode.MAIN_FRAME_ERROR,
        ErrorCode.HARD_TIMEOUT,
    }
)


def classify_error(
    error: Union[BaseException, str],
    url: str = "",
    phase: ProcessingPhase = ProcessingPhase.NAVIGATION,
) -> DetailedError:
    """Map a raw engine failure to a :class:`DetailedError`."""

    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
    else:
        message = str(error or "")
    for pattern, category, code, metadata_fn in ERROR_DETECTION_RULES:
        if pattern.search(message):
            metadata = metadata_fn(message) if metadata_fn else {}
            return DetailedError(code=code, category=category, message=message, url=url, phase=phase, metadata=metadata)
    return DetailedError(
        code=ErrorCode.UNKNOWN_ERROR,
        category=ErrorCategory.UNKNOWN,
        message=message,
        url=url,
        phase=phase,
    )


def is_crash(error: DetailedError) -> bool:
    """True for automation-engine failures that count toward the blacklist."""

    return error.code in CRASH_CODES


def format_detailed_error(error: DetailedError) -> str:
    parts = [
        f"[{error.timestamp}]",
        f"Category: {error.category.value}",
        f"Phase: {error.phase.value}",
        f"Code: {error.code.value}",
        f"URL: {error.url}",
        f"Message: {error.message}",
    ]
    meta = {k: v for k, v in (error.metadata or {}).items() if v is not None}
    if meta:
        parts.append(f"Metadata: {meta}")
    return " | ".join(parts)


_ERROR_FILES: Dict[str, Tuple[ErrorCode, ...]] = {
    "navigation_errors.txt": (
        ErrorCode.DNS_RESOLUTION_FAILED,
        ErrorCode.CONNECTION_REFUSED,
        ErrorCode.CONNECTION_TIMEOUT,
        ErrorCode.ADDRESS_UNREACHABLE,
        ErrorCode.NO_INTERNET,
        ErrorCode.NETWORK_CHANGED,
    ),
    "ssl_errors.txt": (
        ErrorCode.INVALID_CERTIFICATE_AUTHORITY,
        ErrorCode.CERTIFICATE_EXPIRED,
        ErrorCode.SSL_PROTOCOL_ERROR,
        ErrorCode.CERTIFICATE_NAME_MISMATCH,
    ),
    "timeout_errors.txt": (
        ErrorCode.NAVIGATION_TIMEOUT,
        ErrorCode.OPERATION_TIMEOUT,
        ErrorCode.ELEMENT_WAIT_TIMEOUT,
        ErrorCode.HARD_TIMEOUT,
    ),
    "access_errors.txt": (
        ErrorCode.ACCESS_FORBIDDEN,
        ErrorCode.UNAUTHORIZED,
        ErrorCode.CAPTCHA_REQUIRED,
        ErrorCode.RATE_LIMITED,
        ErrorCode.IP_BLOCKED,
        ErrorCode.CDN_PROTECTION,
    ),
    "content_errors.txt": (
        ErrorCode.PAGE_UNAVAILABLE,
        ErrorCode.PAGE_NOT_FOUND,
        ErrorCode.SERVER_ERROR,
        ErrorCode.SERVICE_UNAVAILABLE,
    ),
    "browser_errors.txt": (
        ErrorCode.BROWSER_SESSION_CLOSED,
        ErrorCode.BROWSER_PROTOCOL_ERROR,
        ErrorCode.CONTEXT_DESTROYED,
        ErrorCode.FRAME_DETACHED,
        ErrorCode.BROWSER_CRASHED,
        ErrorCode.MAIN_FRAME_ERROR,
    ),
    "extraction_errors.txt": (
        ErrorCode.JS_EVALUATION_FAILED,
        ErrorCode.JS_PROPERTY_ERROR,
        ErrorCode.JS_UNDEFINED_ERROR,
    ),
}


def categorize_error_for_file(error: DetailedError) -> str:
    for filename, codes in _ERROR_FILES.items():
        if error.code in codes:
            return filename
    return "error_processing.txt"


class ErrorLogWriter:
    """Appends formatted terminal failures to per-category files under ``errors_dir``."""

    def __init__(self, errors_dir: Path = DEFAULT_ERRORS_DIR) -> None:
        self.errors_dir = Path(errors_dir)

    def write(self, error: DetailedError) -> Optional[Path]:
        path = self.errors_dir / categorize_error_for_file(error)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(format_detailed_error(error) + "\n")
        except OSError as exc:
            logger.error("Failed to write error log %s: %s", path, exc)
            return None
        return path


__all__ = [
    "ErrorCategory",
    "ErrorCode",
    "ProcessingPhase",
    "DetailedError",
    "ERROR_DETECTION_RULES",
    "CRASH_CODES",
    "classify_error",
    "is_crash",
    "format_detailed_error",
    "categorize_error_for_file",
    "ErrorLogWriter",
]
