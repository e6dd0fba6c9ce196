"""
Ranker: worst offenders of each load date by raw daily error_rate.
"""

from collections import defaultdict
from datetime import date
from typing import Iterable

from dq_audit.core.models import DailyAuditRow, TopNRow

DEFAULT_TOP_K = 3


def _sort_key(row: DailyAuditRow) -> tuple:
    # error_rate descending, nulls last, then file_name ascending
    if row.error_rate is None:
        return (1, 0.0, row.file_name)
    return (0, -row.error_rate, row.file_name)


def rank_load_date(rows: Iterable[DailyAuditRow], top_k: int = DEFAULT_TOP_K) -> list[TopNRow]:
    """
    Rank the rows of a single load date and keep the first top_k.

    Ranks are positions 1..N; equal error rates are ordered by file_name so
    the result is deterministic.

    Raises:
        ValueError: If top_k < 1 or rows span several load dates
    """
    if top_k < 1:
        raise ValueError(f"top_k must be >= 1, got {top_k}")

    ordered = sorted(rows, key=_sort_key)
    load_dates = {row.load_date for row in ordered}
    if len(load_dates) > 1:
        raise ValueError(f"rows span several load dates: {sorted(load_dates)}")

    return [
        TopNRow(
            load_date=row.load_date,
            file_name=row.file_name,
            rank=position,
            error_rate=row.error_rate,
        )
        for position, row in enumerate(ordered[:top_k], start=1)
    ]


def rank_daily(rows: Iterable[DailyAuditRow], top_k: int = DEFAULT_TOP_K) -> list[TopNRow]:
    """
    Rank every load date present in rows.

    Returns:
        TopNRow list ordered by load_date, then rank
    """
    by_date: dict[date, list[DailyAuditRow]] = defaultdict(list)
    for row in rows:
        by_date[row.load_date].append(row)

    ranked = []
    for load_date in sorted(by_date):
        ranked.extend(rank_load_date(by_date[load_date], top_k))
    return ranked
