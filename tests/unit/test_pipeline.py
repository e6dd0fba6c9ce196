"""
Unit tests for the daily audit pipeline, run against in-memory sources and sinks.
"""

import threading
import pytest
from datetime import date

from dq_audit.batch.pipeline import AuditPipeline
from dq_audit.batch.sources import InMemoryRecordSource
from dq_audit.config import AuditConfig
from dq_audit.core.errors import InvariantViolation, SourceUnavailable, WriteFailure
from dq_audit.warehouse.audit_table import InMemoryAuditSink

DAY1 = date(2024, 1, 1)
DAY2 = date(2024, 1, 2)
DAY3 = date(2024, 1, 3)


def ev(event_id, transaction_id, file_name="a.csv", status="OK", event_time="2024-01-01T08:00:00"):
    return {
        "event_id": event_id,
        "transaction_id": transaction_id,
        "file_name": file_name,
        "status": status,
        "event_time": event_time,
    }


def tx(transaction_id, amount="10", customer_id="C1", load_time="2024-01-01T09:00:00"):
    return {
        "transaction_id": transaction_id,
        "amount": amount,
        "customer_id": customer_id,
        "load_time": load_time,
    }


def file_day(file_name, nb_valid, nb_invalid, prefix=None):
    """Events and transactions giving nb_valid valid and nb_invalid invalid records."""
    prefix = prefix or file_name
    events, transactions = [], []
    for i in range(nb_valid):
        events.append(ev(f"{prefix}-v{i}", f"{prefix}-tv{i}", file_name))
        transactions.append(tx(f"{prefix}-tv{i}", "5"))
    for i in range(nb_invalid):
        events.append(ev(f"{prefix}-i{i}", f"{prefix}-ti{i}", file_name, status="KO"))
        transactions.append(tx(f"{prefix}-ti{i}", "5"))
    return events, transactions


def fast_config(**overrides):
    values = {"retry_delay_seconds": 0.0, "max_workers": 2}
    values.update(overrides)
    return AuditConfig(**values)


@pytest.fixture
def source():
    return InMemoryRecordSource()


@pytest.fixture
def sink():
    return InMemoryAuditSink()


@pytest.fixture
def basic_day(source):
    """a.csv: e1 OK/100, e2 KO/50, e3 OK unmatched; b.csv: one valid record"""
    source.add(
        DAY1,
        [ev("e1", "t1"), ev("e2", "t2", status="KO"), ev("e3", "t3"), ev("e4", "t4", file_name="b.csv")],
        [tx("t1", "100"), tx("t2", "50"), tx("t4", "1")],
    )
    return source


@pytest.mark.unit
class TestRunForDate:
    """Tests for AuditPipeline.run_for_date"""

    def test_summary_and_rows(self, basic_day, sink):
        summary = AuditPipeline(basic_day, sink, fast_config()).run_for_date(DAY1)

        assert summary.succeeded
        assert summary.rows_processed == 4
        assert summary.partitions_total == 2
        assert summary.partitions_failed == 0
        assert summary.rows_written == 2

        a = sink.fetch_row("a.csv", DAY1)
        assert (a.nb_total, a.nb_invalid) == (3, 2)
        assert a.error_rate == pytest.approx(0.6667, abs=1e-4)
        assert a.rolling_error_rate == pytest.approx(a.error_rate)
        assert a.error_rank == 1

        b = sink.fetch_row("b.csv", DAY1)
        assert b.error_rate == 0.0
        assert b.error_rank == 2

    def test_rerun_is_idempotent(self, basic_day, sink):
        pipeline = AuditPipeline(basic_day, sink, fast_config())
        pipeline.run_for_date(DAY1)
        first = sink.fetch_all()

        pipeline.run_for_date(DAY1)
        AuditPipeline(basic_day, sink, fast_config()).run_for_date(DAY1)

        assert sink.fetch_all() == first

    def test_top_k_limits_ranked_rows(self, source, sink):
        events, transactions = [], []
        for name, invalid in (("a.csv", 1), ("b.csv", 2), ("c.csv", 3), ("d.csv", 0)):
            e, t = file_day(name, 3 - min(invalid, 3), invalid)
            events += e
            transactions += t
        source.add(DAY1, events, transactions)

        AuditPipeline(source, sink, fast_config()).run_for_date(DAY1, top_k=2)

        ranked = sink.fetch_top_n(DAY1)
        assert [(r.file_name, r.error_rank) for r in ranked] == [("c.csv", 1), ("b.csv", 2)]
        assert sink.fetch_row("d.csv", DAY1).error_rank is None
        assert len(sink.fetch_all()) == 4

    def test_rerun_without_a_file_clears_its_rank(self, source, sink):
        feeds = {name: file_day(name, 3 - invalid, invalid) for name, invalid in (("a.csv", 3), ("b.csv", 2), ("c.csv", 1))}
        source.add(DAY1, *[sum((feeds[n][i] for n in feeds), []) for i in (0, 1)])
        pipeline = AuditPipeline(source, sink, fast_config())
        pipeline.run_for_date(DAY1)
        assert [r.file_name for r in sink.fetch_top_n(DAY1)] == ["a.csv", "b.csv", "c.csv"]

        corrected = ("b.csv", "c.csv")
        source.add(DAY1, *[sum((feeds[n][i] for n in corrected), []) for i in (0, 1)])
        summary = pipeline.run_for_date(DAY1)

        assert summary.succeeded
        assert [(r.file_name, r.error_rank) for r in sink.fetch_top_n(DAY1)] == [("b.csv", 1), ("c.csv", 2)]
        stale = sink.fetch_row("a.csv", DAY1)
        assert stale.error_rank is None
        assert stale.nb_invalid == 3

    def test_structural_defects_counted(self, source, sink):
        source.add(
            DAY1,
            [ev("e1", "t1"), ev("e2", "t2", event_time="garbage"), ev("e3", "t3", file_name="gone.csv", event_time="")],
            [tx("t1"), tx("t2", load_time="never")],
        )

        summary = AuditPipeline(source, sink, fast_config()).run_for_date(DAY1)

        assert summary.structural_defects == 3
        assert summary.error_counts["structural_defect"] == 3
        assert summary.succeeded

        gone = sink.fetch_row("gone.csv", DAY1)
        assert gone.nb_total == 0
        assert gone.error_rate is None
        assert gone.rolling_error_rate is None
        assert sink.fetch_row("a.csv", DAY1).nb_total == 1

    def test_ambiguous_join_key_excluded(self, source, sink):
        source.add(DAY1, [ev("e1", "t1"), ev("e2", "t2")], [tx("t1"), tx("t1", "7"), tx("t2")])

        summary = AuditPipeline(source, sink, fast_config()).run_for_date(DAY1)

        assert summary.ambiguous_records == 1
        assert summary.error_counts["ambiguous_join_key"] == 1
        assert sink.fetch_row("a.csv", DAY1).nb_total == 1

    def test_empty_day(self, source, sink):
        source.add(DAY1, [], [])
        summary = AuditPipeline(source, sink, fast_config()).run_for_date(DAY1)
        assert summary.succeeded
        assert summary.rows_written == 0
        assert sink.fetch_all() == []

    def test_rejects_non_positive_parameters(self, basic_day, sink):
        pipeline = AuditPipeline(basic_day, sink, fast_config())
        with pytest.raises(ValueError):
            pipeline.run_for_date(DAY1, window_size=-1)


@pytest.mark.unit
class TestRollingAcrossRuns:
    """Rolling values carried across dates"""

    def test_rolling_mean_over_days(self, source, sink):
        for day, invalid in ((DAY1, 0), (DAY2, 1), (DAY3, 2)):
            source.add(day, *file_day("f.csv", 2 - invalid, invalid, prefix=day.isoformat()))

        pipeline = AuditPipeline(source, sink, fast_config())
        for day in (DAY1, DAY2, DAY3):
            pipeline.run_for_date(day)

        assert sink.fetch_row("f.csv", DAY3).rolling_error_rate == pytest.approx(0.5)

    def test_window_of_one_equals_daily_rate(self, source, sink):
        for day, invalid in ((DAY1, 0), (DAY2, 2)):
            source.add(day, *file_day("f.csv", 2 - invalid, invalid, prefix=day.isoformat()))

        pipeline = AuditPipeline(source, sink, fast_config())
        pipeline.run_for_date(DAY1, window_size=1)
        pipeline.run_for_date(DAY2, window_size=1)

        row = sink.fetch_row("f.csv", DAY2)
        assert row.rolling_error_rate == row.error_rate == 1.0

    def test_history_seeded_from_sink(self, source, sink):
        source.add(DAY1, *file_day("f.csv", 0, 2, prefix="d1"))
        source.add(DAY2, *file_day("f.csv", 2, 0, prefix="d2"))

        AuditPipeline(source, sink, fast_config()).run_for_date(DAY1)
        AuditPipeline(source, sink, fast_config()).run_for_date(DAY2)

        assert sink.fetch_row("f.csv", DAY2).rolling_error_rate == pytest.approx(0.5)

    def test_backfill_refreshes_later_rolling_values(self, source, sink):
        source.add(DAY1, *file_day("f.csv", 2, 0, prefix="d1"))
        source.add(DAY2, *file_day("f.csv", 0, 2, prefix="d2"))
        source.add(DAY3, *file_day("f.csv", 0, 2, prefix="d3"))

        pipeline = AuditPipeline(source, sink, fast_config())
        pipeline.run_for_date(DAY1)
        pipeline.run_for_date(DAY3)
        assert sink.fetch_row("f.csv", DAY3).rolling_error_rate == pytest.approx(0.5)

        summary = pipeline.run_for_date(DAY2)

        assert summary.rows_written == 2
        assert sink.fetch_row("f.csv", DAY2).rolling_error_rate == pytest.approx(0.5)
        assert sink.fetch_row("f.csv", DAY3).rolling_error_rate == pytest.approx(2 / 3)


@pytest.mark.unit
class TestFailureIsolation:
    """Partition and source failures"""

    def test_failed_write_isolated_to_its_partition(self, basic_day):
        class FlakySink(InMemoryAuditSink):
            def upsert(self, file_name, load_date, daily, rolling=None, top_n=None):
                if file_name == "b.csv":
                    raise WriteFailure("disk full", load_date=load_date, file_name=file_name)
                return super().upsert(file_name, load_date, daily, rolling, top_n)

        sink = FlakySink()
        summary = AuditPipeline(basic_day, sink, fast_config()).run_for_date(DAY1)

        assert not summary.succeeded
        assert summary.partitions_failed == 1
        assert summary.rows_written == 1
        failure = summary.failures[0]
        assert (failure.file_name, failure.error_kind, failure.retryable) == ("b.csv", "write_failure", True)
        assert sink.fetch_row("a.csv", DAY1) is not None
        assert sink.fetch_row("b.csv", DAY1) is None

    def test_failed_write_leaves_rolling_window(self, source):
        source.add(DAY1, *file_day("f.csv", 0, 2, prefix="d1"))
        source.add(DAY2, *file_day("f.csv", 2, 0, prefix="d2"))

        class FirstDayDownSink(InMemoryAuditSink):
            def upsert(self, file_name, load_date, daily, rolling=None, top_n=None):
                if load_date == DAY1:
                    raise WriteFailure("disk full", load_date=load_date, file_name=file_name)
                return super().upsert(file_name, load_date, daily, rolling, top_n)

        sink = FirstDayDownSink()
        pipeline = AuditPipeline(source, sink, fast_config())
        first = pipeline.run_for_date(DAY1)
        second = pipeline.run_for_date(DAY2)

        assert first.partitions_failed == 1
        assert sink.fetch_row("f.csv", DAY1) is None
        assert second.succeeded
        assert sink.fetch_row("f.csv", DAY2).rolling_error_rate == 0.0

        restarted = FirstDayDownSink()
        AuditPipeline(source, restarted, fast_config()).run_for_date(DAY2)
        assert restarted.fetch_all() == sink.fetch_all()

    def test_timed_out_write_leaves_rolling_window(self, source):
        source.add(DAY1, *file_day("f.csv", 0, 2, prefix="d1"))
        source.add(DAY2, *file_day("f.csv", 2, 0, prefix="d2"))
        release = threading.Event()

        class StuckFirstDaySink(InMemoryAuditSink):
            def upsert(self, file_name, load_date, daily, rolling=None, top_n=None):
                if load_date == DAY1:
                    release.wait(5)
                    raise WriteFailure("statement timeout", load_date=load_date, file_name=file_name)
                return super().upsert(file_name, load_date, daily, rolling, top_n)

        sink = StuckFirstDaySink()
        pipeline = AuditPipeline(source, sink, fast_config(sink_timeout_seconds=0.2))
        try:
            first = pipeline.run_for_date(DAY1)
        finally:
            release.set()
        pipeline.run_for_date(DAY2)

        assert first.failures[0].error_kind == "write_failure"
        assert sink.fetch_row("f.csv", DAY2).rolling_error_rate == 0.0

    def test_unexpected_error_reported_as_internal(self, basic_day):
        class BrokenSink(InMemoryAuditSink):
            def upsert(self, file_name, load_date, daily, rolling=None, top_n=None):
                if file_name == "a.csv":
                    raise RuntimeError("driver crashed")
                return super().upsert(file_name, load_date, daily, rolling, top_n)

        summary = AuditPipeline(basic_day, BrokenSink(), fast_config()).run_for_date(DAY1)

        assert summary.partitions_failed == 1
        assert summary.error_counts == {"internal_error": 1}

    def test_write_timeout_fails_partition(self, basic_day):
        release = threading.Event()

        class StuckSink(InMemoryAuditSink):
            def upsert(self, file_name, load_date, daily, rolling=None, top_n=None):
                if file_name == "a.csv":
                    release.wait(5)
                return super().upsert(file_name, load_date, daily, rolling, top_n)

        try:
            summary = AuditPipeline(
                basic_day, StuckSink(), fast_config(sink_timeout_seconds=0.2)
            ).run_for_date(DAY1)
        finally:
            release.set()

        assert [f.file_name for f in summary.failures] == ["a.csv"]
        assert summary.failures[0].error_kind == "write_failure"

    def test_source_failure_fails_whole_date(self, sink):
        class DownSource(InMemoryRecordSource):
            def fetch_events(self, load_date):
                raise SourceUnavailable("bucket unreachable", load_date=load_date)

        summary = AuditPipeline(DownSource(), sink, fast_config()).run_for_date(DAY1)

        assert summary.partitions_failed == 1
        assert summary.failures[0].file_name is None
        assert summary.failures[0].error_kind == "source_unavailable"
        assert sink.fetch_all() == []

    def test_os_error_wrapped_as_source_unavailable(self, sink):
        class MissingSource(InMemoryRecordSource):
            def fetch_transactions(self, load_date):
                raise FileNotFoundError("transactions.csv")

        summary = AuditPipeline(MissingSource(), sink, fast_config()).run_for_date(DAY1)
        assert summary.error_counts == {"source_unavailable": 1}

    def test_fetch_retried(self, basic_day, sink):
        calls = []
        original = basic_day.fetch_events

        def flaky_fetch(load_date):
            calls.append(load_date)
            if len(calls) == 1:
                raise SourceUnavailable("hiccup", load_date=load_date)
            return original(load_date)

        basic_day.fetch_events = flaky_fetch
        summary = AuditPipeline(basic_day, sink, fast_config(source_retries=1)).run_for_date(DAY1)

        assert len(calls) == 2
        assert summary.succeeded
        assert len(sink.fetch_all()) == 2

    def test_source_timeout(self, sink):
        release = threading.Event()

        class SlowSource(InMemoryRecordSource):
            def fetch_events(self, load_date):
                release.wait(5)
                return []

        try:
            summary = AuditPipeline(
                SlowSource(), sink, fast_config(source_timeout_seconds=0.1)
            ).run_for_date(DAY1)
        finally:
            release.set()

        assert summary.failures[0].error_kind == "source_unavailable"
        assert "timed out" in summary.failures[0].message

    def test_invariant_violation_halts_run(self, basic_day):
        class BuggySink(InMemoryAuditSink):
            def upsert(self, file_name, load_date, daily, rolling=None, top_n=None):
                raise InvariantViolation("rank mismatch", load_date=load_date, file_name=file_name)

        with pytest.raises(InvariantViolation):
            AuditPipeline(basic_day, BuggySink(), fast_config()).run_for_date(DAY1)


@pytest.mark.unit
class TestCancellation:
    """Cooperative cancellation"""

    def test_cancel_before_run(self, basic_day, sink):
        pipeline = AuditPipeline(basic_day, sink, fast_config())
        pipeline.cancel()

        summary = pipeline.run_for_date(DAY1)

        assert summary.cancelled
        assert not summary.succeeded
        assert sink.fetch_all() == []

    def test_cancel_during_writes_keeps_committed_keys(self, basic_day):
        cancel_event = threading.Event()

        class CancellingSink(InMemoryAuditSink):
            def upsert(self, file_name, load_date, daily, rolling=None, top_n=None):
                row = super().upsert(file_name, load_date, daily, rolling, top_n)
                cancel_event.set()
                return row

        sink = CancellingSink()
        summary = AuditPipeline(
            basic_day, sink, fast_config(max_workers=1), cancel_event=cancel_event
        ).run_for_date(DAY1)

        assert summary.cancelled
        assert summary.rows_written == 1
        assert [r.file_name for r in sink.fetch_all()] == ["a.csv"]


@pytest.mark.unit
class TestRunRange:
    """Tests for AuditPipeline.run_range"""

    def test_dates_in_range_ascending(self, source, sink):
        for day in (DAY3, DAY1, DAY2, date(2024, 2, 1)):
            source.add(day, *file_day("f.csv", 1, 0, prefix=day.isoformat()))

        summaries = AuditPipeline(source, sink, fast_config()).run_range(DAY1, DAY3)

        assert [s.load_date for s in summaries] == [DAY1, DAY2, DAY3]
        assert {r.load_date for r in sink.fetch_all()} == {DAY1, DAY2, DAY3}

    def test_end_before_start_rejected(self, source, sink):
        with pytest.raises(ValueError):
            AuditPipeline(source, sink, fast_config()).run_range(DAY3, DAY1)
