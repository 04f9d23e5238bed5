"""
Command line interface for tickercache batch ingestion.

Create a job, run it (one budgeted slice, or to completion in a background
runner), inspect progress and manage the failed-ticker registry.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from tickercache.exceptions import JobNotFoundError, TickerCacheError, ValidationError
from tickercache.jobs.service import IngestionService
from tickercache.utils.config import get_config
from tickercache.utils.log_setup import setup_logging


def read_symbols(symbols: list[str] | None, symbols_file: str | None) -> list[str]:
    """Symbols from the command line and/or a file (one per line or comma separated)."""
    collected = list(symbols or [])
    if symbols_file:
        text = Path(symbols_file).expanduser().read_text()
        for line in text.splitlines():
            line = line.split("#", 1)[0]
            collected.extend(part.strip() for part in line.split(",") if part.strip())
    return collected


def emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def print_progress(progress: dict[str, Any]) -> None:
    print(f"Job:       {progress['job_id']}")
    print(f"Status:    {progress['status']}")
    print(
        f"Progress:  {progress['processed']}/{progress['total']} ({progress['percentage']:.1f}%), "
        f"{progress['successful']} successful, {progress['failed']} failed"
    )
    print(f"Chunks:    {progress['current_chunk']}/{progress['total_chunks']}")
    if progress.get("current_ticker"):
        print(f"Next:      {progress['current_ticker']}")
    if progress.get("estimated_seconds_remaining") is not None:
        print(f"ETA:       {progress['estimated_seconds_remaining']}s")
    print(f"Elapsed:   {progress['elapsed_seconds']}s")
    print(progress["message"])


def report_progress(progress: dict[str, Any], as_json: bool) -> None:
    if as_json:
        emit(progress)
    else:
        print_progress(progress)


def run_job(service: IngestionService, job_id: str, budget: float | None, background: bool) -> dict[str, Any]:
    """
    Run one budgeted slice, or the whole job in a background runner.

    Returns:
        Progress dict after the run
    """
    if not background:
        result = service.run_orchestrator(job_id, budget)
        logger.info(
            f"Processed {result['chunks_processed']} chunks, "
            f"{'completed' if result['completed'] else 'paused'}"
        )
        return result["progress"]

    runner = service.start_background(job_id, budget)
    try:
        while not runner.join(timeout=5.0):
            progress = service.get_progress(job_id)
            logger.info(f"{progress['message']} ({progress['percentage']:.1f}%)")
    except KeyboardInterrupt:
        logger.warning("Interrupted; pausing job after the current chunk")
        runner.stop()
        runner.join()

    if runner.error is not None:
        raise runner.error
    return service.get_progress(job_id)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tickercache",
        description="Resumable batch ingestion of historical ticker data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create a job for a few symbols
  tickercache create --symbols AAPL MSFT SPY

  # Create from a file, 10 symbols per chunk
  tickercache create --file symbols.txt --chunk-size 10

  # Run one 4-minute slice (resume by running again)
  tickercache run batch_job_lx2k9a1b_7f3qz --budget 240

  # Run to completion in the background runner
  tickercache run batch_job_lx2k9a1b_7f3qz --background

  # Progress
  tickercache status batch_job_lx2k9a1b_7f3qz

  # Failed-ticker registry
  tickercache failed list
  tickercache failed clear --symbols ZZZZ --confirm
        """,
    )
    parser.add_argument("--db", type=str, help="Path to the DuckDB store (default: from config)")
    parser.add_argument("--log-level", type=str, help="Log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--no-log-file", action="store_true", help="Log to stderr only")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    create_parser = subparsers.add_parser("create", help="Create a batch job")
    create_parser.add_argument("--symbols", type=str, nargs="+", help="Symbols to ingest")
    create_parser.add_argument("--file", type=str, help="File of symbols")
    create_parser.add_argument("--chunk-size", type=int, help="Symbols per chunk (1-50)")
    create_parser.add_argument("--run", action="store_true", help="Run to completion after creating")

    run_parser = subparsers.add_parser("run", help="Run or resume a batch job")
    run_parser.add_argument("job_id", type=str)
    run_parser.add_argument("--budget", type=float, help="Wall-clock budget in seconds per slice")
    run_parser.add_argument("--background", action="store_true", help="Run slices until completed")

    status_parser = subparsers.add_parser("status", help="Show job progress")
    status_parser.add_argument("job_id", type=str)

    subparsers.add_parser("jobs", help="List live batch jobs")

    coverage_parser = subparsers.add_parser("coverage", help="Check which symbols are cached")
    coverage_parser.add_argument("--symbols", type=str, nargs="+", help="Symbols to check")
    coverage_parser.add_argument("--file", type=str, help="File of symbols")

    failed_parser = subparsers.add_parser("failed", help="Manage the failed-ticker registry")
    failed_sub = failed_parser.add_subparsers(dest="failed_command")
    failed_sub.add_parser("list", help="List failed tickers")
    clear_parser = failed_sub.add_parser("clear", help="Clear failed tickers so they are retried")
    clear_parser.add_argument("--symbols", type=str, nargs="+", help="Symbols to clear (default: all)")
    clear_parser.add_argument("--confirm", action="store_true", help="Confirm without prompting")

    show_parser = subparsers.add_parser("show", help="Show cached data")
    show_parser.add_argument("--symbols", type=str, nargs="+", help="Symbols (default: all cached)")

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    config = get_config()
    if args.db:
        config.store.db_path_override = Path(args.db).expanduser()

    setup_logging(
        args.log_level or config.log_level,
        None if args.no_log_file else config.store.logs_dir / "tickercache.log",
    )

    try:
        service = IngestionService.from_config(config)

        if args.command == "create":
            symbols = read_symbols(args.symbols, args.file)
            created = service.create_job(symbols, args.chunk_size)
            if args.json:
                emit(created)
            else:
                print(
                    f"Created {created['job_id']} ({created['status']}): "
                    f"{created['to_process']} to process in {created['total_chunks']} chunks, "
                    f"{created['already_cached']} already cached, {created['eliminated']} eliminated"
                )
            if args.run and created["status"] != "completed":
                progress = run_job(service, created["job_id"], None, background=True)
                report_progress(progress, args.json)

        elif args.command == "run":
            progress = run_job(service, args.job_id, args.budget, args.background)
            report_progress(progress, args.json)

        elif args.command == "status":
            progress = service.get_progress(args.job_id)
            report_progress(progress, args.json)

        elif args.command == "jobs":
            jobs = service.list_jobs()
            if args.json:
                emit(jobs)
            elif not jobs:
                print("No batch jobs found")
            else:
                print(f"{'Job':<32} {'Status':<10} {'Progress':<14} {'Chunks':<10}")
                print("-" * 70)
                for job in jobs:
                    print(
                        f"{job['job_id']:<32} {job['status']:<10} "
                        f"{job['processed']}/{job['total']:<10} "
                        f"{job['current_chunk']}/{job['total_chunks']}"
                    )

        elif args.command == "coverage":
            report = service.check_coverage(read_symbols(args.symbols, args.file))
            if args.json:
                emit(report)
            else:
                print(f"Cached ({len(report['cached'])}): {' '.join(report['cached'])}")
                print(f"Missing ({len(report['missing'])}): {' '.join(report['missing'])}")
                print(f"Eliminated ({len(report['eliminated'])}):")
                for entry in report["eliminated"]:
                    print(f"  {entry['symbol']}: {entry['reason']}")

        elif args.command == "failed":
            if args.failed_command == "clear":
                if not args.confirm:
                    target = " ".join(args.symbols) if args.symbols else "ALL failed tickers"
                    response = input(f"Clear {target} from the registry? [y/N]: ")
                    if response.lower() != "y":
                        print("Cancelled")
                        return 0
                count = service.clear_failed(args.symbols)
                print(f"Cleared {count} failed tickers")
            else:
                failed = service.list_failed()
                if args.json:
                    emit(failed)
                elif not failed:
                    print("No failed tickers")
                else:
                    for entry in failed:
                        print(f"{entry['ticker']:<12} {entry['last_attempt']:<34} {entry['reason']}")

        elif args.command == "show":
            frame = service.load_frame(args.symbols)
            if args.json:
                emit(frame.to_dict(orient="records"))
            elif frame.empty:
                print("No cached data")
            else:
                print(frame.to_string(index=False))

    except ValidationError as e:
        logger.error(f"Invalid request: {e}")
        return 2
    except JobNotFoundError as e:
        logger.error(str(e))
        return 3
    except TickerCacheError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
