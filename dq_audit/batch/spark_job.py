"""
Full-history audit recomputation with Spark DataFrames.

Applies the same rules as the per-date pipeline to every load date at once:
typed casting, left join on transaction_id, invalid flag, daily counts,
row-based rolling mean over non-null error rates, and top-K ranking.
Used to rebuild the audit table from scratch.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date

from pyspark.sql import DataFrame, SparkSession, Window
from pyspark.sql import functions as F

from dq_audit.core.classifier import VALID_STATUS
from dq_audit.core.errors import AuditError, InvariantViolation
from dq_audit.core.models import DailyAuditRow, PartitionFailure, RollingAuditRow, TopNRow
from dq_audit.core.ranker import DEFAULT_TOP_K
from dq_audit.core.smoother import DEFAULT_WINDOW_SIZE
from dq_audit.observability import metrics
from dq_audit.observability.logger import get_logger, log_operation
from dq_audit.warehouse.audit_table import AuditSink

logger = get_logger(__name__)

AMOUNT_TYPE = "DECIMAL(38, 10)"
INTERNAL_ERROR = "internal_error"


@dataclass
class SparkAuditResult:
    """DataFrames produced by one recomputation, plus the drop counts."""

    daily: DataFrame
    rolling: DataFrame
    top_n: DataFrame
    structural_defects: int
    ambiguous_records: int


@dataclass
class SparkWriteReport:
    """Keys written by SparkAuditJob.write and the writes that failed."""

    rows_written: int = 0
    failures: list[PartitionFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures


class SparkAuditJob:
    """
    Recomputes daily, rolling and top-K audit rows for whole feeds.

    Input frames carry the raw string columns of each feed plus a
    load_date column (see CSVReader.read_with_load_date).

    Args:
        spark: Active Spark session
        window_size: Rolling window length in observed rows
        top_k: Number of ranked files kept per load date
    """

    def __init__(
        self,
        spark: SparkSession,
        window_size: int = DEFAULT_WINDOW_SIZE,
        top_k: int = DEFAULT_TOP_K,
    ):
        if window_size < 1 or top_k < 1:
            raise ValueError(f"window_size and top_k must be >= 1, got {window_size}, {top_k}")
        self.spark = spark
        self.window_size = window_size
        self.top_k = top_k

    def type_events(self, events: DataFrame) -> DataFrame:
        """Cast events and drop rows that are not structurally sound or repeat an event_id."""
        typed = events.select(
            "load_date",
            "event_id",
            "transaction_id",
            "file_name",
            F.coalesce(F.col("status"), F.lit("")).alias("status"),
            F.expr("try_to_timestamp(event_time)").alias("event_time"),
        ).dropna(subset=["load_date", "event_id", "transaction_id", "file_name", "event_time"])
        return typed.dropDuplicates(["load_date", "event_id"])

    def type_transactions(self, transactions: DataFrame) -> DataFrame:
        """Cast transactions; an unparseable amount becomes null, a bad load_time drops the row."""
        return transactions.select(
            "load_date",
            "transaction_id",
            F.expr(f"try_cast(amount AS {AMOUNT_TYPE})").alias("amount"),
            "customer_id",
            F.expr("try_to_timestamp(load_time)").alias("load_time"),
        ).dropna(subset=["load_date", "transaction_id", "customer_id", "load_time"])

    def classify(self, events: DataFrame, transactions: DataFrame) -> tuple[DataFrame, DataFrame]:
        """
        Left-join typed events to typed transactions of the same load date.

        Returns:
            (joined, ambiguous_events): joined carries is_invalid; events whose
            transaction_id matches several transactions are set apart
        """
        keys = ["load_date", "transaction_id"]
        counts = transactions.groupBy(*keys).agg(F.count(F.lit(1)).alias("match_count"))
        ambiguous_ids = counts.filter(F.col("match_count") > 1).select(*keys)
        unique = transactions.join(ambiguous_ids, keys, "left_anti")

        ambiguous_events = events.join(ambiguous_ids, keys, "left_semi")
        joinable = events.join(ambiguous_ids, keys, "left_anti")

        joined = joinable.join(unique, keys, "left").withColumn(
            "is_invalid",
            (F.col("status") != F.lit(VALID_STATUS))
            | F.col("amount").isNull()
            | (F.col("amount") < 0),
        )
        return joined, ambiguous_events

    def daily(self, joined: DataFrame, declared: DataFrame | None = None) -> DataFrame:
        """
        Count totals and invalids per (load_date, file_name).

        Args:
            joined: Output of classify
            declared: Distinct (load_date, file_name) seen in raw events; files
                whose rows were all dropped get a zero-count row
        """
        daily = joined.groupBy("load_date", "file_name").agg(
            F.count(F.lit(1)).alias("nb_total"),
            F.sum(F.when(F.col("is_invalid"), 1).otherwise(0)).alias("nb_invalid"),
        )
        if declared is not None:
            daily = declared.join(daily, ["load_date", "file_name"], "left").fillna(
                0, subset=["nb_total", "nb_invalid"]
            )

        return daily.withColumn(
            "error_rate",
            F.when(F.col("nb_total") > 0, F.col("nb_invalid") / F.col("nb_total")),
        )

    def rolling(self, daily: DataFrame) -> DataFrame:
        """
        Trailing mean of error_rate over the last window_size non-null days per file.

        Null days take no slot in the window and carry the previous value.
        """
        by_file = Window.partitionBy("file_name").orderBy("load_date")

        observed = daily.filter(F.col("error_rate").isNotNull()).withColumn(
            "window_mean",
            F.avg("error_rate").over(by_file.rowsBetween(-(self.window_size - 1), Window.currentRow)),
        ).select("load_date", "file_name", "window_mean")

        return daily.join(observed, ["load_date", "file_name"], "left").select(
            "load_date",
            "file_name",
            F.last("window_mean", ignorenulls=True).over(
                by_file.rowsBetween(Window.unboundedPreceding, Window.currentRow)
            ).alias("rolling_error_rate"),
        )

    def top_n(self, daily: DataFrame) -> DataFrame:
        """Rank files within each load date by error_rate desc (nulls last), file_name asc."""
        by_date = Window.partitionBy("load_date").orderBy(
            F.col("error_rate").desc_nulls_last(), F.col("file_name").asc()
        )
        return daily.withColumn("rank", F.row_number().over(by_date)).filter(
            F.col("rank") <= self.top_k
        ).select("load_date", "file_name", "rank", "error_rate")

    def compute(self, raw_events: DataFrame, raw_transactions: DataFrame) -> SparkAuditResult:
        """
        Run the whole audit over raw feeds.

        Returns:
            SparkAuditResult with daily, rolling and top_n frames
        """
        events = self.type_events(raw_events).cache()
        transactions = self.type_transactions(raw_transactions).cache()

        structural_defects = (
            raw_events.count() - events.count()
            + raw_transactions.count() - transactions.count()
        )

        joined, ambiguous_events = self.classify(events, transactions)
        declared = raw_events.select("load_date", "file_name").dropna().distinct()
        daily = self.daily(joined, declared).cache()

        return SparkAuditResult(
            daily=daily,
            rolling=self.rolling(daily),
            top_n=self.top_n(daily),
            structural_defects=structural_defects,
            ambiguous_records=ambiguous_events.count(),
        )

    def collect_rows(
        self, result: SparkAuditResult
    ) -> tuple[list[DailyAuditRow], list[RollingAuditRow], list[TopNRow]]:
        daily = [
            DailyAuditRow(
                load_date=row["load_date"],
                file_name=row["file_name"],
                nb_total=row["nb_total"],
                nb_invalid=row["nb_invalid"],
                error_rate=row["error_rate"],
            )
            for row in result.daily.orderBy("file_name", "load_date").collect()
        ]
        rolling = [
            RollingAuditRow(
                load_date=row["load_date"],
                file_name=row["file_name"],
                rolling_error_rate=row["rolling_error_rate"],
                window_size=self.window_size,
            )
            for row in result.rolling.orderBy("file_name", "load_date").collect()
        ]
        top_n = [
            TopNRow(
                load_date=row["load_date"],
                file_name=row["file_name"],
                rank=row["rank"],
                error_rate=row["error_rate"],
            )
            for row in result.top_n.orderBy("load_date", "rank").collect()
        ]
        return daily, rolling, top_n

    def write(self, result: SparkAuditResult, sink: AuditSink) -> SparkWriteReport:
        """
        Upsert every recomputed key into the sink.

        Keys absent from the feeds keep their counts, but lose any rank on
        load dates that were recomputed. A key whose write fails is
        reported and the remaining keys are still written.

        Returns:
            SparkWriteReport with the keys written and the failed ones

        Raises:
            InvariantViolation: If rows do not belong to their key
        """
        daily, rolling, top_n = self.collect_rows(result)
        rolling_by_key = {row.key: row for row in rolling}
        top_by_key = {row.key: row for row in top_n}
        report = SparkWriteReport()

        names_by_date: dict[date, set[str]] = defaultdict(set)
        for row in daily:
            names_by_date[row.load_date].add(row.file_name)

        with log_operation("Writing recomputed audit", logger=logger, keys=len(daily)):
            for row in daily:
                try:
                    sink.upsert(
                        row.file_name,
                        row.load_date,
                        row,
                        rolling_by_key.get(row.key),
                        top_by_key.get(row.key),
                    )
                except InvariantViolation:
                    raise
                except Exception as e:
                    self._record_failure(report, e, row.load_date, row.file_name)
                    continue
                report.rows_written += 1

            for load_date in sorted(names_by_date):
                try:
                    sink.clear_ranks(load_date, keep=names_by_date[load_date])
                except InvariantViolation:
                    raise
                except Exception as e:
                    self._record_failure(report, e, load_date)

        metrics.increment_counter(metrics.audit_rows_written_total, report.rows_written, operation="upsert")
        return report

    @staticmethod
    def _record_failure(report: SparkWriteReport, error: Exception, load_date: date, file_name: str | None = None) -> None:
        if isinstance(error, AuditError):
            error_kind, retryable = error.error_kind, error.retryable
        else:
            error_kind, retryable = INTERNAL_ERROR, False

        report.failures.append(
            PartitionFailure(
                load_date=load_date,
                file_name=file_name,
                error_kind=error_kind,
                message=str(error),
                retryable=retryable,
            )
        )
        metrics.record_error(error_kind, "recompute")
        logger.error(
            "Recomputed key not written",
            extra={
                "error_kind": error_kind,
                "file_name": file_name,
                "load_date": load_date.isoformat(),
                "retryable": retryable,
                "error_message": str(error),
            },
            exc_info=not isinstance(error, AuditError),
        )
