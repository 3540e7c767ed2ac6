import json

from bidscan.workflows import content_cache
from bidscan.workflows.content_cache import CacheConfig, ContentCache, cache_key


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _memory_cache(clock, **overrides):
    config = CacheConfig(persistent=False, **overrides)
    return ContentCache(config, clock=clock)


def test_set_get_within_ttl_and_lazy_expiry():
    clock = Clock()
    cache = _memory_cache(clock, ttl=60)

    cache.set("https://a.example", "<html>a</html>")
    assert cache.get("https://a.example") == "<html>a</html>"

    clock.now += 61
    assert cache.get("https://a.example") is None
    assert cache.get_stats()["entries"] == 0


def test_oversized_content_is_rejected():
    cache = _memory_cache(Clock(), max_size=10)
    cache.set("https://small.example", "12345")
    cache.set("https://big.example", "x" * 11)

    stats = cache.get_stats()
    assert stats["entries"] == 1
    assert stats["size"] == 5
    assert cache.get("https://big.example") is None


def test_entry_bound_evicts_and_size_stays_within_budget():
    cache = _memory_cache(Clock(), max_entries=3, max_size=100)
    for i in range(4):
        cache.set(f"https://u{i}.example", "x" * 20)

    stats = cache.get_stats()
    assert stats["entries"] == 3
    assert stats["size"] <= 100
    assert cache.get("https://u0.example") is None


def test_size_budget_evicts_until_it_fits():
    cache = _memory_cache(Clock(), max_entries=100, max_size=50)
    cache.set("https://a.example", "x" * 20)
    cache.set("https://b.example", "x" * 20)
    cache.set("https://c.example", "x" * 20)

    stats = cache.get_stats()
    assert stats["size"] <= 50
    assert stats["entries"] == 2


def test_hot_entry_survives_churn():
    cache = _memory_cache(Clock(), max_entries=3)
    cache.set("https://hot.example", "hot")
    for _ in range(10):
        assert cache.get("https://hot.example") == "hot"
    cache.set("https://cold1.example", "c1")
    cache.set("https://cold2.example", "c2")

    for i in range(5):
        cache.set(f"https://new{i}.example", "n")

    assert cache.get("https://hot.example") == "hot"
    assert cache.get("https://cold1.example") is None


def test_delete_clear_cleanup_and_stats():
    clock = Clock()
    cache = _memory_cache(clock, ttl=10)
    cache.set("https://a.example", "a")
    clock.now += 5
    cache.set("https://b.example", "b")

    assert cache.delete("https://a.example") is True
    assert cache.delete("https://a.example") is False

    clock.now += 11
    cache.set("https://c.example", "c")
    assert cache.cleanup() == 1

    cache.get("https://c.example")
    cache.get("https://missing.example")
    stats = cache.get_stats()
    assert stats["entries"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["oldest_entry"] == stats["newest_entry"] == clock.now

    cache.clear()
    empty = cache.get_stats()
    assert empty["entries"] == 0
    assert empty["size"] == 0
    assert empty["oldest_entry"] is None


def test_persistence_round_trip_skips_corrupt_files(tmp_path, caplog):
    clock = Clock()
    config = CacheConfig(cache_dir=tmp_path / "cache", ttl=60)
    cache = ContentCache(config, clock=clock)
    cache.set("https://a.example", "alpha")
    cache.set("https://b.example", b"\x00\x01binary")

    (tmp_path / "cache" / "garbage.json").write_text("{not json", encoding="utf-8")
    stored = json.loads((tmp_path / "cache" / f"{cache_key('https://a.example')}.json").read_text(encoding="utf-8"))
    assert stored["content"] == "alpha"

    with caplog.at_level("WARNING"):
        reloaded = ContentCache(config, clock=clock)
    assert reloaded.persistent is True
    assert reloaded.get("https://a.example") == "alpha"
    assert reloaded.get("https://b.example") == b"\x00\x01binary"
    assert "garbage.json" in caplog.text


def test_unusable_cache_dir_degrades_to_memory(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")

    cache = ContentCache(CacheConfig(cache_dir=blocker / "cache"), clock=Clock())

    assert cache.persistent is False
    cache.set("https://a.example", "a")
    assert cache.get("https://a.example") == "a"


def test_global_accessor_returns_same_instance_until_closed(tmp_path):
    config = CacheConfig(persistent=False)
    content_cache.close_content_cache()
    first = content_cache.get_content_cache(config)
    assert content_cache.get_content_cache() is first
    content_cache.close_content_cache()
    second = content_cache.get_content_cache(config)
    assert second is not first
    content_cache.close_content_cache()
