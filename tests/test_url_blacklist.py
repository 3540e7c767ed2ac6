import json

from bidscan.workflows.url_blacklist import UrlBlacklist


def test_two_crashes_blacklist_a_url(tmp_path):
    path = tmp_path / "data" / "url-blacklist.json"
    blacklist = UrlBlacklist(path)
    url = "https://crashy.example"

    assert blacklist.record_crash(url, "Target crashed") is False
    assert blacklist.is_blacklisted(url) is False

    assert blacklist.record_crash(url, "Target crashed") is True
    assert blacklist.is_blacklisted(url) is True
    assert blacklist.reason(url) == "Crashed 2 times with: Target crashed"

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["urls"] == [url]
    assert data["crashCounts"] == {url: 2}
    assert data["lastUpdated"]


def test_state_survives_reload(tmp_path):
    path = tmp_path / "bl.json"
    first = UrlBlacklist(path)
    first.record_crash("https://a.example", "boom")
    first.record_crash("https://a.example", "boom")
    first.record_crash("https://b.example", "boom")

    second = UrlBlacklist(path)
    assert second.is_blacklisted("https://a.example")
    assert not second.is_blacklisted("https://b.example")
    assert second.crash_count("https://b.example") == 1
    # one more crash on b reaches the threshold using the persisted count
    second.record_crash("https://b.example", "boom")
    assert second.is_blacklisted("https://b.example")


def test_corrupt_file_is_treated_as_empty(tmp_path, caplog):
    path = tmp_path / "bl.json"
    path.write_text("{broken", encoding="utf-8")

    with caplog.at_level("ERROR"):
        blacklist = UrlBlacklist(path)

    assert blacklist.get_stats() == {"blacklistedCount": 0, "crashingUrls": []}
    assert "Error loading URL blacklist" in caplog.text


def test_filter_and_admin_operations(tmp_path):
    blacklist = UrlBlacklist(tmp_path / "bl.json")
    blacklist.add_to_blacklist("https://bad.example", "manual")

    result = blacklist.filter_urls(["https://ok1.example", "https://bad.example", "https://ok2.example"])
    assert result == {
        "valid": ["https://ok1.example", "https://ok2.example"],
        "blacklisted": ["https://bad.example"],
    }

    assert blacklist.remove_from_blacklist("https://bad.example") is True
    assert blacklist.is_blacklisted("https://bad.example") is False
    assert blacklist.remove_from_blacklist("https://never.example") is False


def test_stats_sorted_by_crash_count(tmp_path):
    blacklist = UrlBlacklist(tmp_path / "bl.json", threshold=5)
    for url, crashes in [("https://one.example", 1), ("https://three.example", 3), ("https://two.example", 2)]:
        for _ in range(crashes):
            blacklist.record_crash(url, "Protocol error")

    stats = blacklist.get_stats()
    assert stats["blacklistedCount"] == 0
    assert [entry["url"] for entry in stats["crashingUrls"]] == [
        "https://three.example",
        "https://two.example",
        "https://one.example",
    ]
    assert stats["crashingUrls"][0]["crashes"] == 3


def test_in_memory_blacklist_never_writes(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    blacklist = UrlBlacklist(path=None)
    blacklist.record_crash("https://x.example", "Target crashed")
    blacklist.record_crash("https://x.example", "Target crashed")
    assert blacklist.is_blacklisted("https://x.example")
    assert list(tmp_path.iterdir()) == []
