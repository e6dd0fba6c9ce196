"""
Unit tests for the rolling smoother.

Includes property-based testing with hypothesis: incremental updates in
any arrival order must equal a full recomputation.
"""

import pytest
from datetime import date, timedelta
from hypothesis import given, settings
from hypothesis import strategies as st

from dq_audit.core.errors import InvariantViolation
from dq_audit.core.models import DailyAuditRow
from dq_audit.core.smoother import FileRollingState, RollingSmoother, rolling_history

START = date(2024, 1, 1)


def daily(day_offset, nb_total, nb_invalid, file_name="f.csv"):
    return DailyAuditRow(
        load_date=START + timedelta(days=day_offset),
        file_name=file_name,
        nb_total=nb_total,
        nb_invalid=nb_invalid,
        error_rate=nb_invalid / nb_total if nb_total else None,
    )


@pytest.mark.unit
class TestRollingSmoother:
    """Tests for RollingSmoother"""

    def test_seven_day_mean_after_ten_days(self):
        """Rates 0.1 .. 1.0 over ten days: the last window covers 0.4 .. 1.0"""
        smoother = RollingSmoother(window_size=7)
        results = [smoother.update(daily(i, 10, i + 1))[-1] for i in range(10)]

        assert results[-1].rolling_error_rate == pytest.approx(0.7)
        assert results[-1].window_size == 7

    def test_partial_window_uses_available_rows(self):
        smoother = RollingSmoother(window_size=7)
        smoother.update(daily(0, 10, 1))
        second = smoother.update(daily(1, 10, 3))

        assert second[0].rolling_error_rate == pytest.approx(0.2)

    def test_window_of_one_is_daily_rate(self):
        smoother = RollingSmoother(window_size=1)
        for i in range(5):
            row = daily(i, 4, i % 5)
            assert smoother.update(row)[0].rolling_error_rate == row.error_rate

    def test_null_day_takes_no_slot(self):
        smoother = RollingSmoother(window_size=2)
        first = smoother.update(daily(0, 2, 1))[0]
        empty = smoother.update(daily(1, 0, 0))[0]
        third = smoother.update(daily(2, 4, 1))[0]

        assert first.rolling_error_rate == 0.5
        # A day without records carries the previous window
        assert empty.rolling_error_rate == 0.5
        # Window of 2 spans day 0 and day 2; the empty day is skipped
        assert third.rolling_error_rate == pytest.approx(0.375)

    def test_file_without_any_rate_is_null(self):
        smoother = RollingSmoother()
        assert smoother.update(daily(0, 0, 0))[0].rolling_error_rate is None

    def test_files_are_independent(self):
        smoother = RollingSmoother(window_size=3)
        smoother.update(daily(0, 1, 1, "a.csv"))
        b = smoother.update(daily(0, 1, 0, "b.csv"))[0]
        assert b.rolling_error_rate == 0.0

    def test_backfill_recomputes_later_days(self):
        smoother = RollingSmoother(window_size=2)
        smoother.update(daily(0, 10, 1))
        smoother.update(daily(2, 10, 5))

        refreshed = smoother.update(daily(1, 10, 9))

        assert [r.load_date for r in refreshed] == [START + timedelta(days=1), START + timedelta(days=2)]
        assert refreshed[0].rolling_error_rate == pytest.approx(0.5)
        assert refreshed[1].rolling_error_rate == pytest.approx(0.7)

    def test_rerun_with_same_counts_changes_nothing(self):
        smoother = RollingSmoother(window_size=3)
        for i in range(4):
            smoother.update(daily(i, 10, i))
        before = smoother.history("f.csv")

        again = smoother.update(daily(1, 10, 1))

        assert [r.load_date for r in again] == [START + timedelta(days=1)]
        assert smoother.history("f.csv") == before

    def test_rerun_with_new_counts_replaces_day(self):
        smoother = RollingSmoother(window_size=3)
        for i in range(3):
            smoother.update(daily(i, 10, 0))

        refreshed = smoother.update(daily(1, 10, 3))

        assert len(refreshed) == 2
        assert refreshed[-1].rolling_error_rate == pytest.approx(0.1)

    def test_history_loader_seeds_state(self):
        persisted = [daily(0, 10, 2), daily(1, 10, 4)]
        calls = []

        def loader(file_name):
            calls.append(file_name)
            return persisted

        smoother = RollingSmoother(window_size=3, history_loader=loader)
        row = smoother.update(daily(2, 10, 6))[0]

        assert row.rolling_error_rate == pytest.approx(0.4)
        smoother.update(daily(3, 10, 6))
        assert calls == ["f.csv"]

    def test_forget_reloads_history(self):
        calls = []
        smoother = RollingSmoother(history_loader=lambda name: calls.append(name) or [])
        smoother.update(daily(0, 1, 0))
        smoother.forget("f.csv")
        smoother.update(daily(1, 1, 0))
        assert calls == ["f.csv", "f.csv"]

    def test_window_size_must_be_positive(self):
        with pytest.raises(ValueError):
            RollingSmoother(window_size=0)

    def test_foreign_row_rejected_by_file_state(self):
        state = FileRollingState("a.csv")
        with pytest.raises(InvariantViolation):
            state.apply(daily(0, 1, 0, "b.csv"))


daily_counts = st.lists(
    st.tuples(st.integers(min_value=0, max_value=20), st.integers(min_value=0, max_value=20)),
    min_size=1,
    max_size=25,
)


@pytest.mark.unit
class TestRollingHistory:
    """Full recomputation against incremental updates"""

    def test_sorted_by_file_then_date(self):
        rows = rolling_history(
            [daily(1, 1, 0, "b.csv"), daily(0, 1, 1, "b.csv"), daily(0, 1, 0, "a.csv")]
        )
        assert [(r.file_name, r.load_date.day) for r in rows] == [
            ("a.csv", 1), ("b.csv", 1), ("b.csv", 2)
        ]

    @settings(max_examples=50, deadline=None)
    @given(daily_counts, st.integers(min_value=1, max_value=8), st.randoms(use_true_random=False))
    def test_incremental_matches_recompute_in_any_order(self, counts, window_size, rnd):
        rows = [daily(i, total, min(total, invalid)) for i, (total, invalid) in enumerate(counts)]
        shuffled = list(rows)
        rnd.shuffle(shuffled)

        smoother = RollingSmoother(window_size=window_size)
        for row in shuffled:
            smoother.update(row)

        assert smoother.history("f.csv") == rolling_history(rows, window_size)

    @settings(max_examples=50, deadline=None)
    @given(daily_counts, st.integers(min_value=1, max_value=8))
    def test_rolling_rate_within_bounds(self, counts, window_size):
        rows = [daily(i, total, min(total, invalid)) for i, (total, invalid) in enumerate(counts)]
        for row in rolling_history(rows, window_size):
            if row.rolling_error_rate is not None:
                assert 0.0 <= row.rolling_error_rate <= 1.0
