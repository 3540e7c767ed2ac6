"""Print the command that continues an interrupted batch scan."""

from __future__ import annotations

import argparse
import logging
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import requests

from ..workflows.batch_progress import BatchProgressLedger, find_progress_file
from ..workflows.scan_config import DEFAULT_REMOTE_SOURCE
from ..workflows.url_sources import is_remote_source, to_raw_url

logger = logging.getLogger(__name__)

CheckFunc = Callable[[str], bool]


@dataclass
class ResumePlan:
    progress_file: Path
    start: int
    end: int
    batch_size: int
    last_completed: int
    next_batch: int
    failed_batches: List[int]
    batch_start: Optional[int]
    batch_end: Optional[int]

    @property
    def complete(self) -> bool:
        return self.batch_start is None

    @property
    def urls_remaining(self) -> int:
        if self.batch_start is None:
            return 0
        return self.end - self.batch_start + 1


def build_resume_plan(progress_file: Path) -> ResumePlan:
    ledger = BatchProgressLedger.from_file(progress_file)
    batch_start = ledger.resume_start()
    batch_end = None
    if batch_start is not None:
        batch_end = min(ledger.end, batch_start + ledger.batch_size - 1)
    return ResumePlan(
        progress_file=Path(progress_file),
        start=ledger.start,
        end=ledger.end,
        batch_size=ledger.batch_size,
        last_completed=ledger.last_completed(),
        next_batch=ledger.next_batch(),
        failed_batches=sorted(ledger.failed_numbers()),
        batch_start=batch_start,
        batch_end=batch_end,
    )


def format_resume_command(plan: ResumePlan, source: str = DEFAULT_REMOTE_SOURCE) -> str:
    if plan.batch_start is None:
        raise ValueError("All batches have been completed; nothing to resume")
    return " ".join(
        [
            "bidscan",
            "scan",
            shlex.quote(source),
            "--range",
            shlex.quote(f"{plan.batch_start}-{plan.end}"),
            f"--batch-size={plan.batch_size}",
            "--skip-processed",
        ]
    )


def _default_check(url: str, *, timeout: int = 15) -> bool:
    resp = requests.head(to_raw_url(url), timeout=timeout, allow_redirects=True)
    return resp.status_code < 400


def check_source(source: str, *, check: Optional[CheckFunc] = None) -> bool:
    """True when a remote source still answers; local paths are checked on disk."""

    if not is_remote_source(source):
        return Path(source).exists()
    checker = check or _default_check
    try:
        return bool(checker(source))
    except requests.RequestException as exc:
        logger.warning("Source check failed for %s: %s", source, exc)
        return False


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Show how to resume an interrupted batch scan")
    parser.add_argument(
        "--progress-file",
        type=Path,
        default=None,
        help="Progress file (default: first batch-progress-*.json in --dir)",
    )
    parser.add_argument("--dir", type=Path, default=Path("."), help="Directory holding progress files")
    parser.add_argument("--source", default=DEFAULT_REMOTE_SOURCE, help="URL list the scan was started from")
    parser.add_argument("--check-source", action="store_true", help="Verify the source is still reachable")
    args = parser.parse_args(argv)

    progress_file = args.progress_file or find_progress_file(args.dir)
    if progress_file is None or not Path(progress_file).exists():
        print("No batch progress file found. Please start a new batch process.")
        return 1
    print(f"Found progress file: {progress_file}")

    plan = build_resume_plan(progress_file)
    if plan.failed_batches:
        print(f"Found failed batch #{plan.failed_batches[0]} - will retry it")
    if plan.complete:
        print("All batches have been completed!")
        return 0

    print("Batch Progress Summary:")
    print(f"   - Original range: {plan.start}-{plan.end}")
    print(f"   - Last completed batch: {plan.last_completed}")
    print(f"   - Next batch to process: {plan.next_batch}")
    print(f"   - URLs remaining: {plan.urls_remaining}")
    print("")
    print(f"Resuming from batch {plan.next_batch} (URLs {plan.batch_start}-{plan.batch_end})")

    if args.check_source and not check_source(args.source):
        print(f"Warning: source {args.source} is not reachable")

    print("")
    print("Run this command to resume:")
    print("")
    print(format_resume_command(plan, args.source))
    return 0


if __name__ == "__main__":
    sys.exit(main())
