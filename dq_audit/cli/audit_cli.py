"""
Command-line interface for the daily data-quality audit.

Usage:
    dq-audit run --date <YYYY-MM-DD> [--window-size N] [--top-k K] [--dry-run]
    dq-audit run-range --start <YYYY-MM-DD> --end <YYYY-MM-DD> [options]
    dq-audit recompute [--dry-run]
    dq-audit top --date <YYYY-MM-DD> [--limit K]
    dq-audit init-db

Exit codes: 0 success, 1 failed partition or fatal error, 2 bad arguments.
"""

import argparse
import signal
import sys
import threading
from datetime import date

from pydantic import ValidationError
from pyspark.sql import SparkSession

from dq_audit.batch.pipeline import AuditPipeline
from dq_audit.batch.sources import SparkCsvRecordSource
from dq_audit.batch.spark_job import SparkAuditJob
from dq_audit.config import AuditConfig, load_config
from dq_audit.core.errors import AuditError, InvariantViolation
from dq_audit.core.models import AuditRunSummary, AuditTableRow
from dq_audit.observability import metrics
from dq_audit.observability.logger import configure_logging, get_logger
from dq_audit.warehouse.audit_table import (
    InMemoryAuditSink,
    PostgresAuditSink,
    attach_audit_sink,
    close_audit_sink,
    get_audit_sink,
)
from dq_audit.warehouse.connection import DatabaseConnectionPool

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def create_spark_session(app_name: str = "DataQualityAudit") -> SparkSession:
    """
    Create Spark session for reading feeds.

    Args:
        app_name: Application name

    Returns:
        SparkSession
    """
    spark = SparkSession.builder \
        .appName(app_name) \
        .master("local[*]") \
        .config("spark.sql.adaptive.enabled", "true") \
        .config("spark.sql.shuffle.partitions", "4") \
        .getOrCreate()

    return spark


def install_signal_handlers(cancel_event: threading.Event) -> dict:
    """
    Turn SIGINT/SIGTERM into a cancellation request.

    Returns:
        Previous handlers, to restore with restore_signal_handlers
    """
    def handler(signum, frame):  # type: ignore[no-untyped-def]
        logger.info(f"Received {signal.Signals(signum).name} signal, cancelling audit run...")
        cancel_event.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def open_sink(args: argparse.Namespace, config: AuditConfig, dry_run: bool = False):
    """
    Attach the process-wide audit sink: in memory for dry runs, PostgreSQL otherwise.
    """
    if dry_run:
        logger.info("DRY RUN MODE: audit rows are kept in memory only")
        return attach_audit_sink(InMemoryAuditSink())

    pool = DatabaseConnectionPool(
        host=args.db_host,
        port=args.db_port,
        database=args.db_name,
        user=args.db_user,
        password=args.db_password,
    )
    pool.open()
    return attach_audit_sink(
        PostgresAuditSink(pool, statement_timeout=config.sink_timeout_seconds, owns_pool=True)
    )


def print_summary(summary: AuditRunSummary) -> None:
    status = "CANCELLED" if summary.cancelled else ("OK" if summary.succeeded else "FAILED")
    print(f"\n{'=' * 60}")
    print(f"AUDIT {summary.load_date.isoformat()}: {status}")
    print(f"{'=' * 60}")
    print(f"  Rows processed:      {summary.rows_processed}")
    print(f"  Rows written:        {summary.rows_written}")
    print(f"  Partitions:          {summary.partitions_total} ({summary.partitions_failed} failed)")
    print(f"  Structural defects:  {summary.structural_defects}")
    print(f"  Ambiguous records:   {summary.ambiguous_records}")
    print(f"  Duration:            {summary.duration_seconds:.2f}s")

    if summary.error_counts:
        print("\n  Errors by kind:")
        for kind, count in sorted(summary.error_counts.items()):
            print(f"    {kind:<20} {count:>8}")

    for failure in summary.failures:
        print(f"  ! {failure.file_name or '<all files>'}: [{failure.error_kind}] {failure.message}")


def format_rate(value: float | None) -> str:
    return "-" if value is None else f"{value:.4f}"


def print_rows(title: str, rows: list[AuditTableRow]) -> None:
    print(f"\n{'=' * 90}")
    print(title)
    print(f"{'=' * 90}")
    if not rows:
        print("No audit rows.")
        return

    print(f"{'Rank':<6} {'File':<30} {'Date':<12} {'Total':>8} {'Invalid':>8} {'Rate':>8} {'Rolling':>8}")
    print(f"{'-' * 90}")
    for row in rows:
        rank = str(row.error_rank) if row.error_rank is not None else "-"
        print(
            f"{rank:<6} {row.file_name:<30} {row.load_date.isoformat():<12} "
            f"{row.nb_total:>8} {row.nb_invalid:>8} "
            f"{format_rate(row.error_rate):>8} {format_rate(row.rolling_error_rate):>8}"
        )


def _run_audit(args: argparse.Namespace, config: AuditConfig, dates: tuple[date, date]) -> int:
    start, end = dates
    cancel_event = threading.Event()
    previous = install_signal_handlers(cancel_event)

    spark = create_spark_session(f"DataQualityAudit-{start.isoformat()}")
    try:
        source = SparkCsvRecordSource(
            spark,
            args.data_dir or config.data_dir,
            events_glob=config.events_glob,
            transactions_glob=config.transactions_glob,
        )
        open_sink(args, config, dry_run=args.dry_run)
        pipeline = AuditPipeline(source, get_audit_sink(), config, cancel_event=cancel_event)

        if start == end:
            summaries = [pipeline.run_for_date(start, args.window_size, args.top_k)]
        else:
            summaries = pipeline.run_range(start, end, args.window_size, args.top_k)

        for summary in summaries:
            print_summary(summary)
        if args.dry_run:
            print_rows("DRY RUN: rows that would be written", get_audit_sink().fetch_all())

        if cancel_event.is_set():
            return EXIT_FAILED
        return EXIT_OK if all(s.succeeded for s in summaries) else EXIT_FAILED
    finally:
        close_audit_sink()
        spark.stop()
        restore_signal_handlers(previous)


def run_command(args: argparse.Namespace, config: AuditConfig) -> int:
    """Audit one load date."""
    return _run_audit(args, config, (args.date, args.date))


def run_range_command(args: argparse.Namespace, config: AuditConfig) -> int:
    """Audit every available load date between --start and --end."""
    if args.end < args.start:
        print(f"Error: --end {args.end} is before --start {args.start}", file=sys.stderr)
        return EXIT_USAGE
    return _run_audit(args, config, (args.start, args.end))


def recompute_command(args: argparse.Namespace, config: AuditConfig) -> int:
    """Rebuild the audit table from the full feed history with Spark."""
    spark = create_spark_session("DataQualityAudit-recompute")
    try:
        source = SparkCsvRecordSource(
            spark,
            args.data_dir or config.data_dir,
            events_glob=config.events_glob,
            transactions_glob=config.transactions_glob,
        )
        job = SparkAuditJob(
            spark,
            window_size=args.window_size or config.window_size,
            top_k=args.top_k or config.top_k,
        )
        result = job.compute(source.events_frame(), source.transactions_frame())

        sink = open_sink(args, config, dry_run=args.dry_run)
        report = job.write(result, sink)

        print(f"\n{'=' * 60}")
        print("RECOMPUTE COMPLETE" if report.succeeded else "RECOMPUTE FINISHED WITH FAILURES")
        print(f"{'=' * 60}")
        print(f"  Keys written:        {report.rows_written}")
        print(f"  Keys failed:         {len(report.failures)}")
        print(f"  Structural defects:  {result.structural_defects}")
        print(f"  Ambiguous records:   {result.ambiguous_records}")
        if args.dry_run:
            print_rows("DRY RUN: rows that would be written", sink.fetch_all())
        for failure in report.failures:
            print(f"  FAILED {failure.file_name or '-'} {failure.load_date.isoformat()}: {failure.error_kind}: {failure.message}")
        return EXIT_OK if report.succeeded else EXIT_FAILED
    finally:
        close_audit_sink()
        spark.stop()


def top_command(args: argparse.Namespace, config: AuditConfig) -> int:
    """Print the worst files of a load date from the audit table."""
    sink = open_sink(args, config)
    try:
        rows = sink.fetch_top_n(args.date, args.limit)
        print_rows(f"TOP OFFENDERS {args.date.isoformat()}", rows)
        return EXIT_OK
    finally:
        close_audit_sink()


def init_db_command(args: argparse.Namespace, config: AuditConfig) -> int:
    """Create the audit table."""
    sink = open_sink(args, config)
    try:
        sink.ensure_schema()
        print("Audit table ready.")
        return EXIT_OK
    finally:
        close_audit_sink()


def add_db_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db-host",
        default=None,
        help="Database host (default: env DB_HOST or localhost)"
    )
    parser.add_argument(
        "--db-port",
        type=int,
        default=None,
        help="Database port (default: env DB_PORT or 5432)"
    )
    parser.add_argument(
        "--db-name",
        default=None,
        help="Database name (default: env DB_NAME or datawarehouse)"
    )
    parser.add_argument(
        "--db-user",
        default=None,
        help="Database user (default: env DB_USER or pipeline)"
    )
    parser.add_argument(
        "--db-password",
        default=None,
        help="Database password (default: env DB_PASSWORD)"
    )


def add_audit_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--window-size",
        type=positive_int,
        default=None,
        help="Rolling window length in observed days (default: from config, 7)"
    )
    parser.add_argument(
        "--top-k",
        type=positive_int,
        default=None,
        help="Number of ranked files per load date (default: from config, 3)"
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Base directory of the feeds (default: from config)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Compute the audit without writing to the database"
    )


def iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dq-audit",
        description="Daily data-quality audit of event and transaction feeds",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Audit one day
  %(prog)s run --date 2024-01-05

  # Audit a range with a 14-day window, without writing
  %(prog)s run-range --start 2024-01-01 --end 2024-01-31 --window-size 14 --dry-run

  # Rebuild the whole audit table
  %(prog)s recompute

  # Worst files of a day
  %(prog)s top --date 2024-01-05 --limit 5
        """
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to audit configuration YAML (default: config/audit.yaml)"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level"
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port while running"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Audit one load date")
    run_parser.add_argument("--date", required=True, type=iso_date, help="Load date (YYYY-MM-DD)")
    add_audit_arguments(run_parser)
    add_db_arguments(run_parser)

    range_parser = subparsers.add_parser("run-range", help="Audit a range of load dates")
    range_parser.add_argument("--start", required=True, type=iso_date, help="First load date")
    range_parser.add_argument("--end", required=True, type=iso_date, help="Last load date")
    add_audit_arguments(range_parser)
    add_db_arguments(range_parser)

    recompute_parser = subparsers.add_parser(
        "recompute",
        help="Rebuild the audit table from the full history with Spark"
    )
    add_audit_arguments(recompute_parser)
    add_db_arguments(recompute_parser)

    top_parser = subparsers.add_parser("top", help="Show the worst files of a load date")
    top_parser.add_argument("--date", required=True, type=iso_date, help="Load date (YYYY-MM-DD)")
    top_parser.add_argument(
        "--limit",
        type=positive_int,
        default=None,
        help="Maximum number of files to show (default: all ranked)"
    )
    add_db_arguments(top_parser)

    init_parser = subparsers.add_parser("init-db", help="Create the audit table")
    add_db_arguments(init_parser)

    return parser


COMMANDS = {
    "run": run_command,
    "run-range": run_range_command,
    "recompute": recompute_command,
    "top": top_command,
    "init-db": init_db_command,
}


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_USAGE

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError, ValidationError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(args.log_level or config.log_level, config.log_format)
    if args.metrics_port:
        metrics.start_metrics_server(args.metrics_port)

    try:
        return COMMANDS[args.command](args, config)
    except InvariantViolation as e:
        logger.critical(f"Audit halted: {e}", extra={"error_kind": e.error_kind})
        return EXIT_FAILED
    except AuditError as e:
        logger.error(f"Audit failed: {e}", extra={"error_kind": e.error_kind})
        return EXIT_FAILED
    except ValueError as e:
        # DatabaseConnectionPool raises it for a missing password
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return EXIT_FAILED
    except Exception as e:
        logger.error(f"Error during audit: {e}", exc_info=True)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
