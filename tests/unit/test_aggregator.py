"""
Unit tests for the daily aggregator.

Includes property-based testing with hypothesis for partial-count merging.
"""

import pytest
from datetime import date, datetime
from hypothesis import given
from hypothesis import strategies as st

from dq_audit.core.aggregator import (
    DailyAggregator,
    PartialAggregate,
    check_counts,
    merge_partials,
)
from dq_audit.core.errors import InvariantViolation
from dq_audit.core.models import JoinedRecord

LOAD_DATE = date(2024, 1, 5)


def joined(event_id, file_name="f.csv", is_invalid=False):
    return JoinedRecord(
        event_id=event_id,
        transaction_id=f"t-{event_id}",
        file_name=file_name,
        status="OK" if not is_invalid else "KO",
        event_time=datetime(2024, 1, 5, 8),
        amount=None,
        customer_id=None,
        load_time=None,
        matched=False,
        is_invalid=is_invalid,
    )


partials = st.builds(
    lambda total, invalid_share: PartialAggregate(total, min(total, invalid_share)),
    st.integers(min_value=0, max_value=10_000),
    st.integers(min_value=0, max_value=10_000),
)


@pytest.mark.unit
class TestPartialAggregate:
    """Tests for PartialAggregate"""

    def test_empty_partition_has_null_rate(self):
        assert PartialAggregate().error_rate is None

    def test_rate(self):
        assert PartialAggregate(4, 1).error_rate == 0.25

    @given(partials, partials, partials)
    def test_combine_is_associative(self, a, b, c):
        assert (a + b) + c == a + (b + c)

    @given(partials, partials)
    def test_combine_is_commutative(self, a, b):
        assert a + b == b + a

    @given(partials)
    def test_empty_is_identity(self, a):
        assert a + PartialAggregate() == a

    @given(st.lists(st.booleans(), max_size=200), st.integers(min_value=0, max_value=200))
    def test_chunked_reduction_equals_single_pass(self, flags, split):
        records = [joined(f"e{i}", is_invalid=flag) for i, flag in enumerate(flags)]
        split = min(split, len(records))

        whole = PartialAggregate.of(records)
        chunked = PartialAggregate.of(records[:split]) + PartialAggregate.of(records[split:])

        assert whole == chunked
        assert 0 <= whole.nb_invalid <= whole.nb_total

    def test_to_row_rejects_inconsistent_counts(self):
        with pytest.raises(InvariantViolation):
            PartialAggregate(1, 2).to_row(LOAD_DATE, "f.csv")


@pytest.mark.unit
class TestDailyAggregator:
    """Tests for DailyAggregator"""

    def test_three_events_two_invalid(self):
        records = [
            joined("e1", is_invalid=False),
            joined("e2", is_invalid=True),
            joined("e3", is_invalid=True),
        ]
        row = DailyAggregator(LOAD_DATE).aggregate_partition("f.csv", records)

        assert row.nb_total == 3
        assert row.nb_invalid == 2
        assert row.error_rate == pytest.approx(0.6667, abs=1e-4)
        assert row.load_date == LOAD_DATE

    def test_rows_unique_and_sorted_by_file_name(self):
        records = [
            joined("e1", "b.csv", True),
            joined("e2", "a.csv", False),
            joined("e3", "b.csv", False),
        ]
        rows = DailyAggregator(LOAD_DATE).aggregate(records)

        assert [r.file_name for r in rows] == ["a.csv", "b.csv"]
        assert (rows[1].nb_total, rows[1].nb_invalid) == (2, 1)

    def test_declared_file_without_records_gets_zero_row(self):
        rows = DailyAggregator(LOAD_DATE).aggregate(
            [joined("e1", "a.csv")], declared_file_names=["a.csv", "z.csv"]
        )

        empty = rows[1]
        assert empty.file_name == "z.csv"
        assert empty.nb_total == 0
        assert empty.error_rate is None

    def test_foreign_record_in_partition_is_a_bug(self):
        with pytest.raises(InvariantViolation):
            DailyAggregator(LOAD_DATE).aggregate_partition("a.csv", [joined("e1", "b.csv")])

    def test_merge_partials(self):
        merged = merge_partials(
            {"a.csv": PartialAggregate(2, 1)},
            {"a.csv": PartialAggregate(3, 0), "b.csv": PartialAggregate(1, 1)},
        )
        assert merged == {"a.csv": PartialAggregate(5, 1), "b.csv": PartialAggregate(1, 1)}


@pytest.mark.unit
class TestCheckCounts:
    """Tests for count invariants"""

    def test_negative_counts(self):
        with pytest.raises(InvariantViolation, match="negative"):
            check_counts(-1, 0)

    def test_invalid_exceeds_total(self):
        with pytest.raises(InvariantViolation, match="exceeds"):
            check_counts(1, 2, load_date=LOAD_DATE, file_name="f.csv")

    def test_consistent_counts(self):
        check_counts(2, 2)
