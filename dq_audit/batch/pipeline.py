"""
Daily audit pipeline orchestration.

Coordinates the flow for one load date:
fetch → normalize → join/classify + aggregate (per file_name) → rank → smooth → write
"""

import math
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import date
from typing import Any, Callable

from dq_audit.config import AuditConfig
from dq_audit.core.aggregator import DailyAggregator
from dq_audit.core.classifier import JoinClassifier
from dq_audit.core.errors import (
    AmbiguousJoinKey,
    AuditError,
    InvariantViolation,
    SourceUnavailable,
    StructuralDefect,
    WriteFailure,
)
from dq_audit.core.models import (
    AuditRunSummary,
    DailyAuditRow,
    EventRecord,
    PartitionFailure,
    RollingAuditRow,
    TopNRow,
)
from dq_audit.core.normalizer import RecordNormalizer
from dq_audit.core.ranker import rank_load_date
from dq_audit.core.smoother import RollingSmoother
from dq_audit.observability import metrics
from dq_audit.observability.logger import get_logger, log_operation
from dq_audit.warehouse.audit_table import AuditSink

from .sources import RecordSource

logger = get_logger(__name__)

INTERNAL_ERROR = "internal_error"


class AuditPipeline:
    """
    Runs the daily data-quality audit against a record source and an audit sink.

    Partitions are keyed by file_name. Classification and aggregation of
    different partitions run concurrently and share only immutable inputs.
    Rolling state is kept per file_name across runs of the same pipeline,
    seeded from the sink the first time a file is seen.

    Args:
        source: Where raw rows come from
        sink: Where audit rows are upserted
        config: Runtime settings (defaults apply when omitted)
        cancel_event: Set it to stop a run between partitions
    """

    def __init__(
        self,
        source: RecordSource,
        sink: AuditSink,
        config: AuditConfig | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.source = source
        self.sink = sink
        self.config = config or AuditConfig()
        self.cancel_event = cancel_event or threading.Event()
        self.normalizer = RecordNormalizer()
        self._smoothers: dict[int, RollingSmoother] = {}
        self._smoothers_lock = threading.Lock()

    def smoother(self, window_size: int) -> RollingSmoother:
        with self._smoothers_lock:
            smoother = self._smoothers.get(window_size)
            if smoother is None:
                smoother = RollingSmoother(window_size, history_loader=self.sink.fetch_history)
                self._smoothers[window_size] = smoother
            return smoother

    def cancel(self) -> None:
        self.cancel_event.set()

    # =======================
    # PUBLIC ENTRY POINTS
    # =======================

    def run_for_date(
        self,
        load_date: date,
        window_size: int | None = None,
        top_k: int | None = None,
    ) -> AuditRunSummary:
        """
        Audit one load date and upsert its rows.

        Args:
            load_date: Date to audit
            window_size: Rolling window length (config default when None)
            top_k: Number of ranked files kept (config default when None)

        Returns:
            AuditRunSummary with rows_processed, partitions_failed, rows_written
            and every error kind encountered

        Raises:
            InvariantViolation: On a logic bug; the run stops immediately
        """
        window_size = self.config.window_size if window_size is None else window_size
        top_k = self.config.top_k if top_k is None else top_k
        if window_size < 1 or top_k < 1:
            raise ValueError(f"window_size and top_k must be >= 1, got {window_size}, {top_k}")

        summary = AuditRunSummary(load_date=load_date)
        started = time.time()

        with log_operation("Audit run", logger=logger, load_date=load_date.isoformat()):
            try:
                self._run(load_date, window_size, top_k, summary)
            except InvariantViolation as e:
                metrics.record_error(e.error_kind, "pipeline")
                logger.critical(
                    "Invariant violated, halting run",
                    extra={"error_kind": e.error_kind, "load_date": load_date.isoformat(), "error_message": str(e)},
                )
                raise

        summary.duration_seconds = round(time.time() - started, 3)
        metrics.observe_histogram(metrics.run_duration_seconds, summary.duration_seconds)
        self._log_summary(summary)
        return summary

    def run_range(
        self,
        start: date,
        end: date,
        window_size: int | None = None,
        top_k: int | None = None,
    ) -> list[AuditRunSummary]:
        """
        Audit every load date the source offers in [start, end], ascending.
        """
        if end < start:
            raise ValueError(f"end {end} is before start {start}")

        summaries = []
        for load_date in self.source.list_load_dates():
            if load_date < start or load_date > end:
                continue
            if self.cancel_event.is_set():
                break
            summaries.append(self.run_for_date(load_date, window_size, top_k))
        return summaries

    # =======================
    # STAGES
    # =======================

    def _run(self, load_date: date, window_size: int, top_k: int, summary: AuditRunSummary) -> None:
        if self._cancelled(summary):
            return

        try:
            raw_events, raw_transactions = self._fetch_feeds(load_date)
        except SourceUnavailable as e:
            self._fail(summary, e)
            return

        normalized = self.normalizer.normalize(raw_events, raw_transactions, load_date)
        summary.structural_defects = len(normalized.defects)
        summary.count_error(StructuralDefect.error_kind, len(normalized.defects))
        for feed in ("events", "transactions"):
            metrics.increment_counter(
                metrics.structural_defects_total, normalized.defect_count(feed), feed=feed
            )

        partitions: dict[str, list[EventRecord]] = {
            name: [] for name in normalized.declared_file_names
        }
        for event in normalized.events:
            partitions[event.file_name].append(event)
        summary.partitions_total = len(partitions)

        classifier = JoinClassifier.from_transactions(normalized.transactions)
        daily_rows = self._aggregate_partitions(load_date, classifier, partitions, summary)
        if not daily_rows or self._cancelled(summary):
            return

        top_rows = {row.file_name: row for row in rank_load_date(daily_rows.values(), top_k)}
        smoother = self.smoother(window_size)
        rolling_rows = self._smooth(smoother, daily_rows, summary)

        written: set[str] = set()
        try:
            if not self._cancelled(summary):
                written = self._write(load_date, daily_rows, rolling_rows, top_rows, summary)
                if not self._cancelled(summary):
                    self._clear_stale_ranks(load_date, set(partitions), summary)
        finally:
            # Rolling state must only hold days that reached the table
            for file_name in set(partitions) - written:
                smoother.forget(file_name)

    def _fetch_feeds(self, load_date: date) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """
        Fetch both feeds, each bounded by the source timeout and retried.

        Raises:
            SourceUnavailable: When every attempt failed
        """
        def fetch(feed: str, fn: Callable[[date], list[dict[str, Any]]]) -> list[dict[str, Any]]:
            try:
                return self._bounded(
                    lambda: fn(load_date),
                    self.config.source_timeout_seconds,
                    lambda: SourceUnavailable(f"timed out fetching {feed}", load_date=load_date),
                )
            except OSError as e:
                raise SourceUnavailable(f"fetching {feed} failed: {e}", load_date=load_date) from e

        attempts = 1 + self.config.source_retries
        for attempt in range(1, attempts + 1):
            try:
                events = fetch("events", self.source.fetch_events)
                transactions = fetch("transactions", self.source.fetch_transactions)
                if attempt > 1:
                    metrics.increment_counter(metrics.retries_total, operation="fetch", status="success")
                return events, transactions
            except SourceUnavailable as e:
                if attempt >= attempts:
                    raise
                metrics.increment_counter(metrics.retries_total, operation="fetch", status="failure")
                logger.warning(
                    "Fetch failed, retrying",
                    extra={"attempt": attempt, "load_date": load_date.isoformat(), "error_message": str(e)},
                )
                time.sleep(self.config.retry_delay_seconds)

        raise SourceUnavailable("no fetch attempt made", load_date=load_date)

    def _aggregate_partitions(
        self,
        load_date: date,
        classifier: JoinClassifier,
        partitions: dict[str, list[EventRecord]],
        summary: AuditRunSummary,
    ) -> dict[str, DailyAuditRow]:
        aggregator = DailyAggregator(load_date)

        def process(file_name: str, events: list[EventRecord]):
            result = classifier.classify(events, load_date)
            return result, aggregator.aggregate_partition(file_name, result.joined)

        outcomes = self._run_partitions(
            {name: (lambda n=name, ev=events: process(n, ev)) for name, events in partitions.items()},
            load_date,
            summary,
        )

        daily_rows = {}
        for file_name, (result, row) in outcomes.items():
            summary.rows_processed += len(result.joined)
            summary.ambiguous_records += len(result.ambiguous)
            summary.count_error(AmbiguousJoinKey.error_kind, len(result.ambiguous))
            metrics.increment_counter(metrics.ambiguous_records_total, len(result.ambiguous))
            metrics.record_classification(result.valid_count, result.invalid_count)
            daily_rows[file_name] = row
        return daily_rows

    def _smooth(
        self,
        smoother: RollingSmoother,
        daily_rows: dict[str, DailyAuditRow],
        summary: AuditRunSummary,
    ) -> dict[str, list[RollingAuditRow]]:
        outcomes = self._run_partitions(
            {name: (lambda r=row: smoother.update(r)) for name, row in daily_rows.items()},
            next(iter(daily_rows.values())).load_date,
            summary,
        )
        for file_name in list(daily_rows):
            if file_name not in outcomes:
                del daily_rows[file_name]
        return outcomes

    def _write(
        self,
        load_date: date,
        daily_rows: dict[str, DailyAuditRow],
        rolling_rows: dict[str, list[RollingAuditRow]],
        top_rows: dict[str, TopNRow],
        summary: AuditRunSummary,
    ) -> set[str]:
        """
        Upsert every key of the load date.

        Returns:
            File names whose row was committed
        """
        def write(file_name: str) -> int | None:
            if self.cancel_event.is_set():
                return None

            daily = daily_rows[file_name]
            current = next(r for r in rolling_rows[file_name] if r.load_date == load_date)
            later = [r for r in rolling_rows[file_name] if r.load_date > load_date]

            with metrics.write_duration_seconds.time():
                self.sink.upsert(file_name, load_date, daily, current, top_rows.get(file_name))
            metrics.increment_counter(metrics.audit_rows_written_total, operation="upsert")
            metrics.record_audit_values(file_name, daily.error_rate, current.rolling_error_rate)

            refreshed = 0
            for rolling in later:
                if self.sink.refresh_rolling(file_name, rolling.load_date, rolling):
                    refreshed += 1
            if refreshed:
                metrics.increment_counter(metrics.audit_rows_written_total, refreshed, operation="refresh_rolling")
                logger.info(
                    "Refreshed rolling values after backfill",
                    extra={"file_name": file_name, "load_date": load_date.isoformat(), "refreshed": refreshed},
                )
            return 1 + refreshed

        with log_operation("Writing audit rows", logger=logger, load_date=load_date.isoformat(), keys=len(daily_rows)):
            written = self._run_partitions(
                {name: (lambda n=name: write(n)) for name in daily_rows},
                load_date,
                summary,
                timeout=self.config.sink_timeout_seconds,
                timeout_error=lambda name: WriteFailure("upsert timed out", load_date=load_date, file_name=name),
            )

        written = {name: count for name, count in written.items() if count is not None}
        summary.rows_written += sum(written.values())
        for _ in written:
            metrics.record_partition(success=True)
        self._cancelled(summary)
        return set(written)

    def _clear_stale_ranks(self, load_date: date, file_names: set[str], summary: AuditRunSummary) -> None:
        """
        Drop ranks left on keys of the load date that this run did not see.

        Keys seen by the run either hold their new rank or kept their prior
        state after a failed write, so only absent keys are touched.
        """
        try:
            cleared = self._bounded(
                lambda: self.sink.clear_ranks(load_date, keep=file_names),
                self.config.sink_timeout_seconds,
                lambda: WriteFailure("clearing stale ranks timed out", load_date=load_date),
            )
        except InvariantViolation:
            raise
        except Exception as e:
            self._fail(summary, e)
            return

        if cleared:
            metrics.increment_counter(metrics.audit_rows_written_total, cleared, operation="clear_ranks")
            logger.info(
                "Cleared stale ranks",
                extra={"load_date": load_date.isoformat(), "cleared": cleared},
            )

    # =======================
    # HELPERS
    # =======================

    def _run_partitions(
        self,
        tasks: dict[str, Callable[[], Any]],
        load_date: date,
        summary: AuditRunSummary,
        timeout: float | None = None,
        timeout_error: Callable[[str], AuditError] | None = None,
    ) -> dict[str, Any]:
        """
        Run one task per file_name on the worker pool.

        A failing task fails its partition only; InvariantViolation cancels
        the remaining tasks and propagates.

        Args:
            tasks: Task per file_name
            load_date: Load date, used in failure reports
            summary: Summary receiving failures
            timeout: Bound on each task, counted in waves of max_workers
            timeout_error: Builds the error reported for a task that timed out

        Returns:
            Results of the tasks that succeeded
        """
        if not tasks:
            return {}

        results: dict[str, Any] = {}
        executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="dq-audit"
        )
        try:
            futures: dict[Future, str] = {}
            for file_name in sorted(tasks):
                if self.cancel_event.is_set():
                    break
                futures[executor.submit(tasks[file_name])] = file_name

            deadline = None
            if timeout is not None:
                waves = math.ceil(len(futures) / self.config.max_workers)
                deadline = time.monotonic() + timeout * waves

            pending = set(futures)
            while pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                done, pending = wait(pending, timeout=remaining, return_when=FIRST_EXCEPTION)

                for future in done:
                    file_name = futures[future]
                    try:
                        results[file_name] = future.result()
                    except InvariantViolation:
                        for other in pending:
                            other.cancel()
                        raise
                    except Exception as e:
                        self._fail(summary, e, file_name)

                if pending and deadline is not None and time.monotonic() >= deadline:
                    for future in pending:
                        future.cancel()
                        error = timeout_error(futures[future]) if timeout_error else FutureTimeoutError()
                        self._fail(summary, error, futures[future])
                    break
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return results

    @staticmethod
    def _bounded(fn: Callable[[], Any], timeout: float, on_timeout: Callable[[], AuditError]) -> Any:
        """Run fn on a helper thread and give up waiting after timeout seconds."""
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dq-audit-io")
        try:
            return executor.submit(fn).result(timeout=timeout)
        except FutureTimeoutError as e:
            raise on_timeout() from e
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _fail(self, summary: AuditRunSummary, error: Exception, file_name: str | None = None) -> None:
        """Record a failed partition (or the whole date when file_name is None)."""
        if isinstance(error, AuditError):
            error_kind = error.error_kind
            retryable = error.retryable
        else:
            error_kind = INTERNAL_ERROR
            retryable = False

        already_failed = any(f.file_name == file_name for f in summary.failures)
        summary.failures.append(
            PartitionFailure(
                load_date=summary.load_date,
                file_name=file_name,
                error_kind=error_kind,
                message=str(error),
                retryable=retryable,
            )
        )
        if not already_failed:
            summary.partitions_failed += 1
            metrics.record_partition(success=False)
        summary.count_error(error_kind)
        metrics.record_error(error_kind, "pipeline")

        logger.error(
            "Partition failed",
            extra={
                "error_kind": error_kind,
                "file_name": file_name,
                "load_date": summary.load_date.isoformat(),
                "retryable": retryable,
                "error_message": str(error),
            },
            exc_info=not isinstance(error, AuditError),
        )

    def _cancelled(self, summary: AuditRunSummary) -> bool:
        if self.cancel_event.is_set() and not summary.cancelled:
            summary.cancelled = True
            logger.warning("Run cancelled", extra={"load_date": summary.load_date.isoformat()})
        return summary.cancelled

    def _log_summary(self, summary: AuditRunSummary) -> None:
        logger.info(
            "Audit run summary",
            extra={
                "load_date": summary.load_date.isoformat(),
                "rows_processed": summary.rows_processed,
                "rows_written": summary.rows_written,
                "partitions_total": summary.partitions_total,
                "partitions_failed": summary.partitions_failed,
                "structural_defects": summary.structural_defects,
                "ambiguous_records": summary.ambiguous_records,
                "error_counts": summary.error_counts,
                "cancelled": summary.cancelled,
                "duration_seconds": summary.duration_seconds,
            },
        )
