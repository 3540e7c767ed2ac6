import asyncio
import tracemalloc

import aiohttp
import pytest

from bidscan.workflows import url_sources
from bidscan.workflows.url_sources import (
    RangeOptions,
    SourceResult,
    apply_range,
    extract_urls,
    fetch_remote_source,
    load_local_source,
    load_source,
    normalize_url_line,
    parse_range,
    to_raw_url,
)


class _FakeContent:
    def __init__(self, lines, consumed):
        self._lines = lines
        self._consumed = consumed

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for line in self._lines:
            self._consumed.append(line)
            yield line.encode("utf-8")


class _FakeResponse:
    def __init__(self, status, lines, consumed):
        self.status = status
        self.content = _FakeContent(lines, consumed)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeSession:
    def __init__(self, lines, status=200):
        self.lines = lines
        self.status = status
        self.requested = []
        self.consumed = []

    def get(self, url, **kwargs):
        self.requested.append(url)
        return _FakeResponse(self.status, self.lines, self.consumed)


def test_parse_range_valid_and_open_ended():
    assert parse_range("10-20") == RangeOptions(10, 20)
    assert parse_range(" 5 - 7 ") == RangeOptions(5, 7)
    assert parse_range("100-") == RangeOptions(100, None)


@pytest.mark.parametrize("value", ["", "abc", "1-x", "0-5", "7", "10-5"])
def test_parse_range_rejects_bad_input(value):
    with pytest.raises(ValueError):
        parse_range(value)


def test_normalize_url_line():
    assert normalize_url_line("example.com") == "https://example.com"
    assert normalize_url_line("  http://example.com/a ") == "http://example.com/a"
    assert normalize_url_line("   ") == ""


def test_extract_urls_skips_blank_and_comment_lines():
    text = "# header\n\nalpha.com\n   \nbeta.com\n# note\ngamma.com\n"
    assert extract_urls(text) == ["https://alpha.com", "https://beta.com", "https://gamma.com"]
    assert extract_urls(text, RangeOptions(2, 3)) == ["https://beta.com", "https://gamma.com"]


def test_extract_urls_length_matches_range_arithmetic():
    lines = [f"site{i}.com" for i in range(1, 11)]
    text = "\n".join(lines)
    for start, end in [(1, 1), (1, 10), (3, 7), (8, 25), (10, 10)]:
        urls = extract_urls(text, RangeOptions(start, end))
        assert len(urls) == min(end, 10) - start + 1
        assert urls[0] == f"https://site{start}.com"
    assert extract_urls(text, RangeOptions(11, 20)) == []


def test_extract_urls_keeps_duplicates_in_position():
    text = "a.com\nb.com\na.com\n"
    assert extract_urls(text, RangeOptions(2, 3)) == ["https://b.com", "https://a.com"]


def test_large_offset_range_is_applied_exactly_once():
    text = "\n".join(f"domain{i}.com" for i in range(1, 500011))
    range_options = RangeOptions(500000, 500002)

    urls = extract_urls(text, range_options)
    assert urls == [
        "https://domain500000.com",
        "https://domain500001.com",
        "https://domain500002.com",
    ]

    already = SourceResult(urls=urls, source="remote", source_type="remote", range_applied=True)
    assert apply_range(already, range_options).urls == urls

    # re-slicing a range-limited list with the original offsets is the failure mode
    unflagged = SourceResult(urls=list(urls), range_applied=False)
    assert apply_range(unflagged, range_options).urls == []


def test_apply_range_slices_unconsumed_results():
    result = SourceResult(urls=[f"https://u{i}.com" for i in range(1, 6)])
    sliced = apply_range(result, RangeOptions(2, 9))
    assert sliced.urls == ["https://u2.com", "https://u3.com", "https://u4.com", "https://u5.com"]
    assert sliced.range_applied is True
    assert apply_range(result, None) is result


def test_load_local_source_marks_range_consumed(tmp_path):
    path = tmp_path / "urls.txt"
    path.write_text("one.com\ntwo.com\nthree.com\n", encoding="utf-8")

    result = load_local_source(path, RangeOptions(2, 3))
    assert result.urls == ["https://two.com", "https://three.com"]
    assert result.range_applied is True

    with pytest.raises(FileNotFoundError):
        load_local_source(tmp_path / "missing.txt")


def test_load_local_source_csv_and_json(tmp_path):
    csv_path = tmp_path / "urls.csv"
    csv_path.write_text("alpha.com,1\nbeta.com,2\n", encoding="utf-8")
    assert load_local_source(csv_path).urls == ["https://alpha.com", "https://beta.com"]

    json_path = tmp_path / "urls.json"
    json_path.write_text('{"sites": ["https://a.example", {"u": "http://b.example"}, "nope"]}', encoding="utf-8")
    assert load_local_source(json_path).urls == ["https://a.example", "http://b.example"]


def test_to_raw_url_rewrites_github_blob_links():
    blob = "https://github.com/zer0h/top-1000000-domains/blob/master/top-1000000-domains"
    assert to_raw_url(blob) == "https://raw.githubusercontent.com/zer0h/top-1000000-domains/master/top-1000000-domains"
    assert to_raw_url("https://example.com/list.txt") == "https://example.com/list.txt"


def test_fetch_remote_source_stops_after_range_end():
    session = _FakeSession([f"d{i}.com\n" for i in range(1, 101)])

    result = asyncio.run(
        fetch_remote_source(
            "https://github.com/org/repo/blob/main/list",
            RangeOptions(3, 5),
            session=session,
        )
    )

    assert result.urls == ["https://d3.com", "https://d4.com", "https://d5.com"]
    assert result.range_applied is True
    assert session.requested == ["https://raw.githubusercontent.com/org/repo/main/list"]
    assert len(session.consumed) == 5


def test_fetch_remote_source_http_error_yields_empty(caplog):
    session = _FakeSession(["a.com\n"], status=404)
    with caplog.at_level("ERROR"):
        result = asyncio.run(fetch_remote_source("https://example.com/list.txt", session=session))
    assert result.urls == []
    assert "Error fetching URL list" in caplog.text


def test_load_source_remote_range_not_reapplied(monkeypatch):
    lines = [f"domain{i}.com\n" for i in range(499990, 500011)]
    session = _FakeSession(["# top list\n"] + [f"pad{i}.com\n" for i in range(1, 499990)] + lines)

    result = asyncio.run(load_source("https://example.com/top", RangeOptions(500000, 500002), session=session))

    assert result.urls == [
        "https://domain500000.com",
        "https://domain500001.com",
        "https://domain500002.com",
    ]


def test_fetch_remote_source_client_error(monkeypatch):
    class _Boom:
        def get(self, url, **kwargs):
            raise aiohttp.ClientConnectionError("connection reset")

    result = asyncio.run(url_sources.fetch_remote_source("https://example.com/list", session=_Boom()))
    assert result.urls == []


def _peak_bytes(fn):
    tracemalloc.start()
    try:
        result = fn()
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()
    return result, peak


def test_extract_urls_iterates_text_without_copying_it():
    text = "\n".join(f"domain{i}.example" for i in range(1, 200001))

    urls, peak = _peak_bytes(lambda: extract_urls(text, RangeOptions(199998, 200000)))

    assert urls == [f"https://domain{i}.example" for i in (199998, 199999, 200000)]
    assert peak < len(text) // 4


def test_load_local_source_streams_the_file(tmp_path):
    path = tmp_path / "top.txt"
    path.write_text("\n".join(f"domain{i}.example" for i in range(1, 200001)), encoding="utf-8")

    result, peak = _peak_bytes(lambda: load_local_source(path, RangeOptions(200000, 200000)))

    assert result.urls == ["https://domain200000.example"]
    assert peak < path.stat().st_size // 4
