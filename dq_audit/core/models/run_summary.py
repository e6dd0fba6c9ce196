"""
AuditRunSummary model: what one run-for-date did (ephemeral, returned to caller).
"""

from datetime import date

from pydantic import BaseModel, Field


class PartitionFailure(BaseModel):
    """
    A partition that did not reach the audit table.

    file_name is null when the failure affected the whole load date
    (for example the feed itself could not be read).
    """

    load_date: date
    file_name: str | None = None
    error_kind: str
    message: str
    retryable: bool = False


class AuditRunSummary(BaseModel):
    """
    Outcome of auditing one load date.

    Attributes:
        load_date: The audited date
        rows_processed: Joined records classified
        rows_written: Audit table keys upserted (including rolling refreshes)
        partitions_total: Partitions attempted (one per file_name)
        partitions_failed: Partitions that did not commit
        structural_defects: Raw rows dropped by the normalizer
        ambiguous_records: Events excluded for an ambiguous join key
        error_counts: Occurrences per error kind
        failures: Detail of each failed partition
        cancelled: Whether the run stopped on a cancellation request
        duration_seconds: Wall-clock duration of the run
    """

    load_date: date
    rows_processed: int = 0
    rows_written: int = 0
    partitions_total: int = 0
    partitions_failed: int = 0
    structural_defects: int = 0
    ambiguous_records: int = 0
    error_counts: dict[str, int] = Field(default_factory=dict)
    failures: list[PartitionFailure] = Field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.partitions_failed == 0 and not self.cancelled

    def count_error(self, error_kind: str, count: int = 1) -> None:
        if count > 0:
            self.error_counts[error_kind] = self.error_counts.get(error_kind, 0) + count
