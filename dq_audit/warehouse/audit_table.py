"""
Idempotent upsert of audit results into the audit table.

The audit table holds one row per (file_name, load_date) with the daily
counts, the rolling error rate and the rank. Every write replaces the whole
row triple for its key in one statement, so re-running a day changes
nothing and a failed write leaves the previous row untouched. Writes never
delete other keys.
"""

import threading
from abc import ABC, abstractmethod
from datetime import date
from typing import Iterable

import psycopg

from dq_audit.core.errors import InvariantViolation, WriteFailure
from dq_audit.core.models import AuditTableRow, DailyAuditRow, RollingAuditRow, TopNRow
from dq_audit.observability.logger import get_logger

from .connection import DatabaseConnectionPool

logger = get_logger(__name__)

AUDIT_TABLE = "dq_audit"

AUDIT_TABLE_DDL = f"""
    CREATE TABLE IF NOT EXISTS {AUDIT_TABLE} (
        file_name TEXT NOT NULL,
        load_date DATE NOT NULL,
        nb_total INTEGER NOT NULL CHECK (nb_total >= 0),
        nb_invalid INTEGER NOT NULL CHECK (nb_invalid >= 0 AND nb_invalid <= nb_total),
        error_rate DOUBLE PRECISION CHECK (error_rate >= 0 AND error_rate <= 1),
        rolling_error_rate DOUBLE PRECISION CHECK (rolling_error_rate >= 0 AND rolling_error_rate <= 1),
        error_rank INTEGER CHECK (error_rank >= 1),
        PRIMARY KEY (file_name, load_date)
    );
    CREATE INDEX IF NOT EXISTS idx_{AUDIT_TABLE}_load_date_rank
        ON {AUDIT_TABLE} (load_date, error_rank);
"""

_COLUMNS = "file_name, load_date, nb_total, nb_invalid, error_rate, rolling_error_rate, error_rank"


def _check_key(part, file_name: str, load_date: date) -> None:
    if part is not None and part.key != (file_name, load_date):
        raise InvariantViolation(
            f"{type(part).__name__} for {part.key} passed with key ({file_name}, {load_date})",
            load_date=load_date,
            file_name=file_name,
        )


def build_row(
    file_name: str,
    load_date: date,
    daily: DailyAuditRow,
    rolling: RollingAuditRow | None = None,
    top_n: TopNRow | None = None,
) -> AuditTableRow:
    """
    Assemble the persisted row triple for one key.

    Raises:
        InvariantViolation: If a component row belongs to another key
    """
    for part in (daily, rolling, top_n):
        _check_key(part, file_name, load_date)

    return AuditTableRow(
        file_name=file_name,
        load_date=load_date,
        nb_total=daily.nb_total,
        nb_invalid=daily.nb_invalid,
        error_rate=daily.error_rate,
        rolling_error_rate=rolling.rolling_error_rate if rolling else None,
        error_rank=top_n.rank if top_n else None,
    )


def _to_daily(row: AuditTableRow) -> DailyAuditRow:
    return DailyAuditRow(
        load_date=row.load_date,
        file_name=row.file_name,
        nb_total=row.nb_total,
        nb_invalid=row.nb_invalid,
        error_rate=row.error_rate,
    )


class AuditSink(ABC):
    """
    Durable store of audit rows keyed by (file_name, load_date).

    Implementations must make upsert atomic per key: either the whole row
    triple is visible or the previous state is.
    """

    @abstractmethod
    def upsert(
        self,
        file_name: str,
        load_date: date,
        daily: DailyAuditRow,
        rolling: RollingAuditRow | None = None,
        top_n: TopNRow | None = None,
    ) -> AuditTableRow:
        """
        Insert or overwrite the row of one key.

        Raises:
            WriteFailure: If the store rejected the write
            InvariantViolation: If the rows do not belong to the key
        """

    @abstractmethod
    def refresh_rolling(self, file_name: str, load_date: date, rolling: RollingAuditRow) -> bool:
        """
        Replace only the rolling value of an existing key.

        Used when a backfilled day shifts the trailing window of later days.

        Returns:
            Whether the key existed
        """

    @abstractmethod
    def clear_ranks(self, load_date: date, keep: Iterable[str] = ()) -> int:
        """
        Set the rank of every key of load_date to null, except keep.

        A re-run that no longer sees a file must not leave its old rank
        next to the new ones.

        Returns:
            Number of keys whose rank was cleared
        """

    @abstractmethod
    def fetch_row(self, file_name: str, load_date: date) -> AuditTableRow | None:
        pass

    @abstractmethod
    def fetch_history(self, file_name: str) -> list[DailyAuditRow]:
        """Daily rows of a file in load_date order."""

    @abstractmethod
    def fetch_top_n(self, load_date: date, limit: int | None = None) -> list[AuditTableRow]:
        """Ranked rows of a load date in rank order."""

    @abstractmethod
    def fetch_all(self) -> list[AuditTableRow]:
        """Every row ordered by (file_name, load_date)."""

    def close(self) -> None:
        pass


class InMemoryAuditSink(AuditSink):
    """
    Audit table held in a dict; used for dry runs and tests.

    Rows are immutable and replaced whole under a lock, which gives
    last-writer-wins semantics per key.
    """

    def __init__(self):
        self._rows: dict[tuple[str, date], AuditTableRow] = {}
        self._lock = threading.Lock()

    def upsert(self, file_name, load_date, daily, rolling=None, top_n=None) -> AuditTableRow:
        row = build_row(file_name, load_date, daily, rolling, top_n)
        with self._lock:
            self._rows[(file_name, load_date)] = row
        return row

    def refresh_rolling(self, file_name, load_date, rolling) -> bool:
        _check_key(rolling, file_name, load_date)
        with self._lock:
            current = self._rows.get((file_name, load_date))
            if current is None:
                return False
            self._rows[(file_name, load_date)] = current.model_copy(
                update={"rolling_error_rate": rolling.rolling_error_rate}
            )
            return True

    def clear_ranks(self, load_date, keep=()) -> int:
        keep = set(keep)
        cleared = 0
        with self._lock:
            for (file_name, day), row in list(self._rows.items()):
                if day != load_date or file_name in keep or row.error_rank is None:
                    continue
                self._rows[(file_name, day)] = row.model_copy(update={"error_rank": None})
                cleared += 1
        return cleared

    def fetch_row(self, file_name, load_date) -> AuditTableRow | None:
        with self._lock:
            return self._rows.get((file_name, load_date))

    def fetch_history(self, file_name) -> list[DailyAuditRow]:
        with self._lock:
            rows = [row for (name, _), row in self._rows.items() if name == file_name]
        return [_to_daily(row) for row in sorted(rows, key=lambda r: r.load_date)]

    def fetch_top_n(self, load_date, limit=None) -> list[AuditTableRow]:
        with self._lock:
            ranked = [
                row for (_, day), row in self._rows.items()
                if day == load_date and row.error_rank is not None
            ]
        ranked.sort(key=lambda r: r.error_rank)
        return ranked[:limit] if limit is not None else ranked

    def fetch_all(self) -> list[AuditTableRow]:
        with self._lock:
            return [self._rows[key] for key in sorted(self._rows)]


class PostgresAuditSink(AuditSink):
    """
    Audit table in PostgreSQL.

    Every upsert is a single INSERT ... ON CONFLICT statement in its own
    transaction, bounded by a server-side statement timeout.

    Args:
        pool: Database connection pool
        statement_timeout: Seconds after which a write is aborted
        owns_pool: Close the pool together with the sink
    """

    def __init__(
        self,
        pool: DatabaseConnectionPool,
        statement_timeout: float | None = 30.0,
        owns_pool: bool = False,
    ):
        self.pool = pool
        self.statement_timeout = statement_timeout
        self.owns_pool = owns_pool

    def ensure_schema(self) -> None:
        """Create the audit table if it does not exist."""
        self.pool.execute_command(AUDIT_TABLE_DDL)
        logger.info("Audit table ready", extra={"table": AUDIT_TABLE})

    def upsert(self, file_name, load_date, daily, rolling=None, top_n=None) -> AuditTableRow:
        row = build_row(file_name, load_date, daily, rolling, top_n)

        query = f"""
            INSERT INTO {AUDIT_TABLE} ({_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (file_name, load_date) DO UPDATE SET
                nb_total = EXCLUDED.nb_total,
                nb_invalid = EXCLUDED.nb_invalid,
                error_rate = EXCLUDED.error_rate,
                rolling_error_rate = EXCLUDED.rolling_error_rate,
                error_rank = EXCLUDED.error_rank
        """

        try:
            with self.pool.transaction(self.statement_timeout) as cur:
                cur.execute(
                    query,
                    (
                        row.file_name,
                        row.load_date,
                        row.nb_total,
                        row.nb_invalid,
                        row.error_rate,
                        row.rolling_error_rate,
                        row.error_rank,
                    ),
                )
        except psycopg.Error as e:
            raise WriteFailure(str(e), load_date=load_date, file_name=file_name) from e

        return row

    def refresh_rolling(self, file_name, load_date, rolling) -> bool:
        _check_key(rolling, file_name, load_date)

        query = f"""
            UPDATE {AUDIT_TABLE}
            SET rolling_error_rate = %s
            WHERE file_name = %s AND load_date = %s
        """

        try:
            with self.pool.transaction(self.statement_timeout) as cur:
                cur.execute(query, (rolling.rolling_error_rate, file_name, load_date))
                return cur.rowcount > 0
        except psycopg.Error as e:
            raise WriteFailure(str(e), load_date=load_date, file_name=file_name) from e

    def clear_ranks(self, load_date, keep=()) -> int:
        query = f"""
            UPDATE {AUDIT_TABLE}
            SET error_rank = NULL
            WHERE load_date = %s
              AND error_rank IS NOT NULL
              AND NOT (file_name = ANY(%s))
        """

        try:
            with self.pool.transaction(self.statement_timeout) as cur:
                cur.execute(query, (load_date, sorted(keep)))
                return cur.rowcount
        except psycopg.Error as e:
            raise WriteFailure(str(e), load_date=load_date) from e

    def fetch_row(self, file_name, load_date) -> AuditTableRow | None:
        rows = self.pool.execute_query(
            f"SELECT {_COLUMNS} FROM {AUDIT_TABLE} WHERE file_name = %s AND load_date = %s",
            (file_name, load_date),
        )
        return AuditTableRow(**rows[0]) if rows else None

    def fetch_history(self, file_name) -> list[DailyAuditRow]:
        rows = self.pool.execute_query(
            f"""
            SELECT load_date, file_name, nb_total, nb_invalid, error_rate
            FROM {AUDIT_TABLE}
            WHERE file_name = %s
            ORDER BY load_date
            """,
            (file_name,),
        )
        return [DailyAuditRow(**row) for row in rows]

    def fetch_top_n(self, load_date, limit=None) -> list[AuditTableRow]:
        query = f"""
            SELECT {_COLUMNS} FROM {AUDIT_TABLE}
            WHERE load_date = %s AND error_rank IS NOT NULL
            ORDER BY error_rank
        """
        params: tuple = (load_date,)
        if limit is not None:
            query += " LIMIT %s"
            params = (load_date, limit)
        return [AuditTableRow(**row) for row in self.pool.execute_query(query, params)]

    def fetch_all(self) -> list[AuditTableRow]:
        rows = self.pool.execute_query(
            f"SELECT {_COLUMNS} FROM {AUDIT_TABLE} ORDER BY file_name, load_date"
        )
        return [AuditTableRow(**row) for row in rows]

    def close(self) -> None:
        if self.owns_pool:
            self.pool.close()


# Process-wide audit table handle
_audit_sink: AuditSink | None = None
_audit_sink_lock = threading.Lock()


def attach_audit_sink(sink: AuditSink) -> AuditSink:
    """
    Attach the process-wide audit sink, closing any previous one.
    """
    global _audit_sink
    with _audit_sink_lock:
        if _audit_sink is not None and _audit_sink is not sink:
            _audit_sink.close()
        _audit_sink = sink
    return sink


def get_audit_sink() -> AuditSink:
    """
    Raises:
        RuntimeError: If no sink has been attached
    """
    if _audit_sink is None:
        raise RuntimeError("Audit sink not attached. Call attach_audit_sink() first.")
    return _audit_sink


def close_audit_sink() -> None:
    global _audit_sink
    with _audit_sink_lock:
        if _audit_sink is not None:
            _audit_sink.close()
            _audit_sink = None
