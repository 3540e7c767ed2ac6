from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

from .tools.resume_batch import build_resume_plan
from .workflows.batch_progress import find_progress_file
from .workflows.cluster_health import ClusterHealthMonitor, TaskErrorStream
from .workflows.content_cache import CacheConfig, close_content_cache, get_content_cache
from .workflows.error_recovery import DomainHealthTracker
from .workflows.error_types import ErrorLogWriter
from .workflows.scan_config import (
    CACHE_TTL_SECONDS,
    DEFAULT_BLACKLIST_PATH,
    DEFAULT_CACHE_DIR,
    DEFAULT_ERRORS_DIR,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_REMOTE_SOURCE,
    DEFAULT_TRACKER_PATH,
)
from .workflows.scan_utils import env_bool, env_int
from .workflows.scanner import HttpScanEngine, ScanConfig, Scanner, ScanSummary
from .workflows.url_blacklist import UrlBlacklist
from .workflows.url_sources import RangeOptions, parse_range
from .workflows.url_tracker import JsonUrlTracker

load_dotenv(override=False)

logger = logging.getLogger("bidscan")

app = typer.Typer(add_help_option=True, no_args_is_help=True, help="Resilient header-bidding scanner.")

EXIT_INTERRUPTED = 130


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _cache_config() -> CacheConfig:
    return CacheConfig(
        ttl=float(env_int("BIDSCAN_CACHE_TTL_SECONDS", CACHE_TTL_SECONDS)),
        cache_dir=Path(os.getenv("BIDSCAN_CACHE_DIR") or DEFAULT_CACHE_DIR),
        persistent=not env_bool("BIDSCAN_CACHE_DISABLE", "0"),
    )


def _blacklist() -> UrlBlacklist:
    return UrlBlacklist(Path(os.getenv("BIDSCAN_BLACKLIST_PATH") or DEFAULT_BLACKLIST_PATH))


async def _run_scan(config: ScanConfig) -> ScanSummary:
    loop = asyncio.get_running_loop()
    current = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, current.cancel)
        except (NotImplementedError, RuntimeError):
            pass

    scanner = Scanner(
        config,
        HttpScanEngine(),
        cache=get_content_cache(_cache_config()),
        blacklist=_blacklist(),
        health=DomainHealthTracker(),
        monitor=ClusterHealthMonitor(config.cluster_error_threshold),
        stream=TaskErrorStream(),
        tracker=JsonUrlTracker(Path(os.getenv("BIDSCAN_TRACKER_PATH") or DEFAULT_TRACKER_PATH)),
        error_log=ErrorLogWriter(DEFAULT_ERRORS_DIR),
    )
    try:
        async with scanner:
            return await scanner.run()
    finally:
        close_content_cache()


def _execute(config: ScanConfig, json_out: bool) -> None:
    try:
        summary = asyncio.run(_run_scan(config))
    except (KeyboardInterrupt, asyncio.CancelledError):
        typer.echo("interrupted: progress saved up to the last completed batch", err=True)
        raise typer.Exit(code=EXIT_INTERRUPTED)
    except Exception as exc:
        logger.exception("Scan failed")
        typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if json_out:
        sys.stdout.write(json.dumps(summary.to_dict(), ensure_ascii=False) + "\n")
    else:
        typer.echo(
            f"scanned={summary.scanned} succeeded={summary.succeeded} failed={summary.failed} "
            f"prebid={summary.with_prebid} batches_completed={summary.batches_completed} "
            f"batches_failed={summary.batches_failed}"
        )
    raise typer.Exit(code=0 if summary.batches_failed == 0 else 1)


@app.command("scan")
def scan_cmd(
    source: str = typer.Argument(DEFAULT_REMOTE_SOURCE, help="URL list: local file or http(s) URL."),
    range_: Optional[str] = typer.Option(None, "--range", help="1-based inclusive range '<start>-<end>'."),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="URLs per resumable batch."),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Global concurrent scans."),
    skip_processed: bool = typer.Option(False, "--skip-processed", help="Skip URLs the tracker already finished."),
    no_dns_check: bool = typer.Option(False, "--no-dns-check", help="Skip DNS pre-validation."),
    include_failing: bool = typer.Option(False, "--include-failing", help="Also scan domains predicted to fail."),
    output_dir: Path = typer.Option(DEFAULT_OUTPUT_DIR, "--output-dir", help="Directory for results.jsonl."),
    json_out: bool = typer.Option(False, "--json", help="Print the summary JSON to stdout."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Scan a URL list for header-bidding libraries."""
    _configure_logging(verbose)
    range_options: Optional[RangeOptions] = None
    if range_:
        try:
            range_options = parse_range(range_)
        except ValueError as exc:
            typer.echo(f"error: {exc}", err=True)
            raise typer.Exit(code=2)
    config = ScanConfig.from_env(
        source=source,
        range=range_options,
        batch_size=batch_size,
        concurrency=concurrency,
        skip_processed=skip_processed,
        dns_check=False if no_dns_check else None,
        include_failing=include_failing,
        output_dir=output_dir,
    )
    _execute(config, json_out)


@app.command("resume")
def resume_cmd(
    progress_file: Optional[Path] = typer.Option(None, "--progress-file", help="batch-progress-<start>-<end>.json"),
    directory: Path = typer.Option(Path("."), "--dir", help="Directory holding progress files."),
    source: str = typer.Option(DEFAULT_REMOTE_SOURCE, "--source", help="URL list the scan was started from."),
    output_dir: Path = typer.Option(DEFAULT_OUTPUT_DIR, "--output-dir", help="Directory for results.jsonl."),
    json_out: bool = typer.Option(False, "--json", help="Print the summary JSON to stdout."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Continue the crawl recorded in a progress file."""
    _configure_logging(verbose)
    path = progress_file or find_progress_file(directory)
    if path is None or not Path(path).exists():
        typer.echo("error: no batch progress file found", err=True)
        raise typer.Exit(code=2)
    try:
        plan = build_resume_plan(path)
    except (OSError, ValueError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    if plan.complete:
        typer.echo("All batches have been completed!")
        raise typer.Exit(code=0)
    typer.echo(f"Resuming batch {plan.next_batch} (URLs {plan.batch_start}-{plan.batch_end}) of {plan.start}-{plan.end}")
    config = ScanConfig.from_env(
        source=source,
        range=RangeOptions(plan.start, plan.end),
        batch_size=plan.batch_size,
        skip_processed=True,
        output_dir=output_dir,
        progress_dir=Path(path).parent,
    )
    _execute(config, json_out)


@app.command("blacklist-stats")
def blacklist_stats_cmd() -> None:
    """Print blacklist size and per-URL crash counts."""
    typer.echo(json.dumps(_blacklist().get_stats(), indent=2))


@app.command("blacklist-remove")
def blacklist_remove_cmd(url: str = typer.Argument(..., help="URL to take off the blacklist.")) -> None:
    if not _blacklist().remove_from_blacklist(url):
        typer.echo(f"{url} was not blacklisted", err=True)
        raise typer.Exit(code=2)
    typer.echo(f"removed {url}")


@app.command("cache-stats")
def cache_stats_cmd() -> None:
    cache = get_content_cache(_cache_config())
    try:
        typer.echo(json.dumps(cache.get_stats(), indent=2))
    finally:
        close_content_cache()


@app.command("cache-clear")
def cache_clear_cmd() -> None:
    cache = get_content_cache(_cache_config())
    try:
        cache.clear()
    finally:
        close_content_cache()
    typer.echo("cache cleared")


if __name__ == "__main__":
    app()
