import pytest

from bidscan.workflows.error_types import (
    DetailedError,
    ErrorCategory,
    ErrorCode,
    ErrorLogWriter,
    ProcessingPhase,
    categorize_error_for_file,
    classify_error,
    format_detailed_error,
    is_crash,
)


@pytest.mark.parametrize(
    "message, code",
    [
        ("net::ERR_NAME_NOT_RESOLVED at https://x.example", ErrorCode.DNS_RESOLUTION_FAILED),
        ("net::ERR_CONNECTION_REFUSED at https://x.example", ErrorCode.CONNECTION_REFUSED),
        ("net::ERR_CONNECTION_TIMED_OUT", ErrorCode.CONNECTION_TIMEOUT),
        ("net::ERR_CERT_DATE_INVALID", ErrorCode.CERTIFICATE_EXPIRED),
        ("net::ERR_CERT_COMMON_NAME_INVALID", ErrorCode.CERTIFICATE_NAME_MISMATCH),
        ("Navigation timeout of 30000 ms exceeded", ErrorCode.NAVIGATION_TIMEOUT),
        ("Timeout 5000ms exceeded.", ErrorCode.OPERATION_TIMEOUT),
        ("Protocol error (Page.navigate): Target closed.", ErrorCode.BROWSER_SESSION_CLOSED),
        ("Protocol error (Runtime.callFunctionOn): foo", ErrorCode.BROWSER_PROTOCOL_ERROR),
        ("Protocol error (Page.navigate): Requesting main frame too early!", ErrorCode.MAIN_FRAME_ERROR),
        ("Execution context was destroyed, most likely because of a navigation", ErrorCode.CONTEXT_DESTROYED),
        ("Attempted to use detached Frame 'ABC'.", ErrorCode.FRAME_DETACHED),
        ("Target crashed", ErrorCode.BROWSER_CRASHED),
        ("HTTP 404 Not Found", ErrorCode.PAGE_NOT_FOUND),
        ("HTTP 403 Forbidden", ErrorCode.ACCESS_FORBIDDEN),
        ("HTTP 429 Too Many Requests", ErrorCode.RATE_LIMITED),
        ("HTTP 503 Service Unavailable", ErrorCode.SERVICE_UNAVAILABLE),
        ("Please complete the CAPTCHA", ErrorCode.CAPTCHA_REQUIRED),
        ("Attention Required! | Cloudflare", ErrorCode.CDN_PROTECTION),
        ("Your IP has been banned", ErrorCode.IP_BLOCKED),
        ("Evaluation failed: ReferenceError: pbjs is not defined", ErrorCode.JS_EVALUATION_FAILED),
        ("TypeError: Cannot read properties of undefined", ErrorCode.JS_PROPERTY_ERROR),
        ("Hard timeout: exceeded maximum timeout of 90s", ErrorCode.HARD_TIMEOUT),
        ("something nobody has seen before", ErrorCode.UNKNOWN_ERROR),
    ],
)
def test_classify_error_codes(message, code):
    assert classify_error(message).code == code


def test_classify_error_accepts_exceptions_and_extracts_metadata():
    error = classify_error(RuntimeError("Navigation timeout of 45000 ms exceeded"), url="https://a.example")
    assert error.category == ErrorCategory.TIMEOUT
    assert error.url == "https://a.example"
    assert error.metadata["timeout_ms"] == 45000
    assert error.phase == ProcessingPhase.NAVIGATION

    bare = classify_error(ValueError())
    assert bare.message == "ValueError"
    assert bare.code == ErrorCode.UNKNOWN_ERROR


def test_detailed_error_is_immutable():
    error = classify_error("Target crashed")
    with pytest.raises(Exception):
        error.code = ErrorCode.UNKNOWN_ERROR  # type: ignore[misc]


def test_is_crash_only_for_engine_family():
    assert is_crash(classify_error("Target crashed"))
    assert is_crash(classify_error("Session closed. Most likely the page has been closed."))
    assert is_crash(classify_error("Hard timeout: exceeded maximum timeout of 90s"))
    assert not is_crash(classify_error("HTTP 404 Not Found"))
    assert not is_crash(classify_error("Navigation timeout of 30000 ms exceeded"))


def test_categorize_error_for_file():
    assert categorize_error_for_file(classify_error("net::ERR_NAME_NOT_RESOLVED")) == "navigation_errors.txt"
    assert categorize_error_for_file(classify_error("net::ERR_SSL_PROTOCOL_ERROR")) == "ssl_errors.txt"
    assert categorize_error_for_file(classify_error("Timeout 10ms exceeded")) == "timeout_errors.txt"
    assert categorize_error_for_file(classify_error("HTTP 403 Forbidden")) == "access_errors.txt"
    assert categorize_error_for_file(classify_error("HTTP 500")) == "content_errors.txt"
    assert categorize_error_for_file(classify_error("Target crashed")) == "browser_errors.txt"
    assert categorize_error_for_file(classify_error("undefined is not a function")) == "extraction_errors.txt"
    assert categorize_error_for_file(classify_error("mystery")) == "error_processing.txt"


def test_format_and_write_error_log(tmp_path):
    error = DetailedError(
        code=ErrorCode.PAGE_NOT_FOUND,
        category=ErrorCategory.CONTENT,
        message="HTTP 404 Not Found",
        url="https://gone.example",
        timestamp="2024-01-01T00:00:00+00:00",
    )
    line = format_detailed_error(error)
    assert line == (
        "[2024-01-01T00:00:00+00:00] | Category: content | Phase: navigation | Code: PAGE_NOT_FOUND"
        " | URL: https://gone.example | Message: HTTP 404 Not Found"
    )

    writer = ErrorLogWriter(tmp_path / "errors")
    path = writer.write(error)
    writer.write(error)
    assert path == tmp_path / "errors" / "content_errors.txt"
    assert path.read_text(encoding="utf-8").splitlines() == [line, line]
