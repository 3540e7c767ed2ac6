import json

from bidscan.workflows.url_tracker import STATUS_ERROR, STATUS_NO_DATA, STATUS_SUCCESS, JsonUrlTracker


def test_processed_urls_are_filtered(tmp_path):
    tracker = JsonUrlTracker(tmp_path / "tracker.json")
    tracker.record_result("https://a.example", STATUS_SUCCESS, has_prebid=True)
    tracker.record_result("https://b.example", STATUS_NO_DATA)
    tracker.record_result("https://c.example", STATUS_ERROR, error="NAVIGATION_TIMEOUT")

    assert tracker.is_processed("https://a.example")
    assert tracker.is_processed("https://b.example")
    assert not tracker.is_processed("https://c.example")
    assert tracker.filter_unprocessed(
        ["https://a.example", "https://c.example", "https://d.example"]
    ) == ["https://c.example", "https://d.example"]


def test_records_accumulate_attempts_and_persist_on_close(tmp_path):
    path = tmp_path / "tracker.json"
    tracker = JsonUrlTracker(path, flush_every=100)
    tracker.record_result("https://a.example", STATUS_ERROR, error="HTTP 500")
    tracker.record_result("https://a.example", STATUS_SUCCESS, has_prebid=True)
    assert not path.exists()

    tracker.close()
    data = json.loads(path.read_text(encoding="utf-8"))
    record = data["https://a.example"]
    assert record["status"] == STATUS_SUCCESS
    assert record["hasPrebid"] is True
    assert record["attempts"] == 2
    assert "error" not in record

    reopened = JsonUrlTracker(path)
    assert reopened.is_processed("https://a.example")
    assert reopened.stats()["success"] == 1


def test_flushes_every_n_results(tmp_path):
    path = tmp_path / "tracker.json"
    tracker = JsonUrlTracker(path, flush_every=2)
    tracker.record_result("https://a.example", STATUS_SUCCESS)
    assert not path.exists()
    tracker.record_result("https://b.example", STATUS_SUCCESS)
    assert len(json.loads(path.read_text(encoding="utf-8"))) == 2
