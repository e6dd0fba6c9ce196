"""
Record sources: where the raw event and transaction rows of a load date come from.
"""

from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Any, Iterable

from pyspark.sql import DataFrame, SparkSession

from dq_audit.core.errors import SourceUnavailable
from dq_audit.observability.logger import get_logger

from .readers import CSVReader

logger = get_logger(__name__)

RawRow = dict[str, Any]


class RecordSource(ABC):
    """
    Yields raw (string-typed) rows of both feeds for a calendar date.

    Implementations raise SourceUnavailable on any I/O failure.
    """

    @abstractmethod
    def fetch_events(self, load_date: date) -> list[RawRow]:
        pass

    @abstractmethod
    def fetch_transactions(self, load_date: date) -> list[RawRow]:
        pass

    @abstractmethod
    def list_load_dates(self) -> list[date]:
        """Load dates available in the source, ascending."""


class InMemoryRecordSource(RecordSource):
    """
    Serves rows kept in memory, keyed by load date.
    """

    def __init__(
        self,
        events: dict[date, Iterable[RawRow]] | None = None,
        transactions: dict[date, Iterable[RawRow]] | None = None,
    ):
        self.events = {day: list(rows) for day, rows in (events or {}).items()}
        self.transactions = {day: list(rows) for day, rows in (transactions or {}).items()}

    def add(self, load_date: date, events: Iterable[RawRow], transactions: Iterable[RawRow]) -> None:
        self.events[load_date] = list(events)
        self.transactions[load_date] = list(transactions)

    def fetch_events(self, load_date: date) -> list[RawRow]:
        return [dict(row) for row in self.events.get(load_date, [])]

    def fetch_transactions(self, load_date: date) -> list[RawRow]:
        return [dict(row) for row in self.transactions.get(load_date, [])]

    def list_load_dates(self) -> list[date]:
        return sorted(set(self.events) | set(self.transactions))


class SparkCsvRecordSource(RecordSource):
    """
    Reads CSV feeds laid out by load date:

        <data_dir>/<YYYY-MM-DD>/events*.csv
        <data_dir>/<YYYY-MM-DD>/transactions*.csv

    Args:
        spark: Active Spark session
        data_dir: Base directory of the feeds
        events_glob: Event file pattern inside a date directory
        transactions_glob: Transaction file pattern inside a date directory
    """

    def __init__(
        self,
        spark: SparkSession,
        data_dir: str | Path,
        events_glob: str = "events*.csv",
        transactions_glob: str = "transactions*.csv",
    ):
        self.spark = spark
        self.data_dir = Path(data_dir)
        self.events_glob = events_glob
        self.transactions_glob = transactions_glob
        self.reader = CSVReader(spark)

    def _files(self, load_date: date, pattern: str) -> list[str]:
        day_dir = self.data_dir / load_date.isoformat()
        if not day_dir.is_dir():
            raise SourceUnavailable(f"no feed directory {day_dir}", load_date=load_date)
        return sorted(str(path) for path in day_dir.glob(pattern))

    def _fetch(self, load_date: date, pattern: str, feed: str) -> list[RawRow]:
        files = self._files(load_date, pattern)
        if not files:
            logger.warning(
                "No feed files found",
                extra={"feed": feed, "pattern": pattern, "load_date": load_date.isoformat()},
            )
            return []

        try:
            rows = self.reader.read(files).collect()
        except Exception as e:
            raise SourceUnavailable(f"reading {feed} failed: {e}", load_date=load_date) from e

        logger.info(
            f"Read {len(rows)} {feed} rows",
            extra={"feed": feed, "files": len(files), "load_date": load_date.isoformat()},
        )
        return [row.asDict() for row in rows]

    def fetch_events(self, load_date: date) -> list[RawRow]:
        return self._fetch(load_date, self.events_glob, "events")

    def fetch_transactions(self, load_date: date) -> list[RawRow]:
        return self._fetch(load_date, self.transactions_glob, "transactions")

    def list_load_dates(self) -> list[date]:
        if not self.data_dir.is_dir():
            raise SourceUnavailable(f"data directory {self.data_dir} does not exist")

        dates = []
        for child in self.data_dir.iterdir():
            if not child.is_dir():
                continue
            try:
                dates.append(date.fromisoformat(child.name))
            except ValueError:
                continue
        return sorted(dates)

    def _frame(self, pattern: str) -> DataFrame:
        paths = [
            str(self.data_dir / day.isoformat() / pattern)
            for day in self.list_load_dates()
        ]
        if not paths:
            raise SourceUnavailable(f"no load date directories under {self.data_dir}")
        try:
            return self.reader.read_with_load_date(paths)
        except Exception as e:
            raise SourceUnavailable(f"reading {pattern} failed: {e}") from e

    def events_frame(self) -> DataFrame:
        """Every event file of every load date, with a load_date column."""
        return self._frame(self.events_glob)

    def transactions_frame(self) -> DataFrame:
        """Every transaction file of every load date, with a load_date column."""
        return self._frame(self.transactions_glob)
