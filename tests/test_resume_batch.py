import json

import requests

from bidscan.tools.resume_batch import build_resume_plan, check_source, format_resume_command, main


def _write_progress(directory, start, end, completed, failed=()):
    path = directory / f"batch-progress-{start}-{end}.json"
    payload = {
        "completedBatches": [{"batchNumber": n} for n in completed],
        "failedBatches": [{"batchNumber": n, "error": "boom"} for n in failed],
    }
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_plan_continues_after_last_completed(tmp_path):
    path = _write_progress(tmp_path, 100000, 104999, completed=[1, 2, 3])

    plan = build_resume_plan(path)

    assert plan.next_batch == 4
    assert plan.batch_start == 101500
    assert plan.batch_end == 101999
    assert plan.urls_remaining == 3500
    cmd = format_resume_command(plan, "https://example.com/list")
    assert cmd == "bidscan scan https://example.com/list --range 101500-104999 --batch-size=500 --skip-processed"


def test_plan_retries_first_failed_batch(tmp_path):
    path = _write_progress(tmp_path, 1, 5000, completed=[1, 2, 4], failed=[3])
    plan = build_resume_plan(path)
    assert plan.next_batch == 3
    assert plan.batch_start == 1001


def test_main_reports_completion(tmp_path, capsys):
    _write_progress(tmp_path, 1, 1000, completed=[1, 2])
    assert main(["--dir", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "All batches have been completed!" in out


def test_main_prints_resume_command(tmp_path, capsys):
    _write_progress(tmp_path, 1, 2000, completed=[1])
    assert main(["--dir", str(tmp_path), "--source", "urls.txt"]) == 0
    out = capsys.readouterr().out
    assert "Next batch to process: 2" in out
    assert out.strip().splitlines()[-1] == "bidscan scan urls.txt --range 501-2000 --batch-size=500 --skip-processed"


def test_main_without_progress_file(tmp_path, capsys):
    assert main(["--dir", str(tmp_path)]) == 1
    assert "No batch progress file found" in capsys.readouterr().out


def test_check_source_remote_and_local(tmp_path):
    seen = []

    def ok(url):
        seen.append(url)
        return True

    def failing(url):
        raise requests.ConnectionError("offline")

    assert check_source("https://example.com/list", check=ok) is True
    assert seen == ["https://example.com/list"]
    assert check_source("https://example.com/list", check=failing) is False

    local = tmp_path / "urls.txt"
    assert check_source(str(local)) is False
    local.write_text("a.com\n", encoding="utf-8")
    assert check_source(str(local)) is True
