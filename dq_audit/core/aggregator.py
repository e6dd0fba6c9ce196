"""
Daily aggregator: joined records to one DailyAuditRow per (load_date, file_name).

Partial counts combine associatively and commutatively, so a partition can
be reduced chunk by chunk or in parallel and merged afterwards.
"""

from dataclasses import dataclass
from datetime import date
from typing import Iterable

from pydantic import ValidationError

from dq_audit.core.errors import InvariantViolation
from dq_audit.core.models import DailyAuditRow, JoinedRecord


@dataclass(frozen=True)
class PartialAggregate:
    """Running counts of one partition."""

    nb_total: int = 0
    nb_invalid: int = 0

    @classmethod
    def of(cls, records: Iterable[JoinedRecord]) -> "PartialAggregate":
        nb_total = 0
        nb_invalid = 0
        for record in records:
            nb_total += 1
            if record.is_invalid:
                nb_invalid += 1
        return cls(nb_total, nb_invalid)

    def combine(self, other: "PartialAggregate") -> "PartialAggregate":
        return PartialAggregate(
            self.nb_total + other.nb_total,
            self.nb_invalid + other.nb_invalid,
        )

    def __add__(self, other: "PartialAggregate") -> "PartialAggregate":
        return self.combine(other)

    @property
    def error_rate(self) -> float | None:
        """nb_invalid / nb_total, null for an empty partition instead of dividing by zero."""
        if self.nb_total == 0:
            return None
        return self.nb_invalid / self.nb_total

    def to_row(self, load_date: date, file_name: str) -> DailyAuditRow:
        """
        Materialize the partition as a DailyAuditRow.

        Raises:
            InvariantViolation: If the counts are inconsistent
        """
        check_counts(self.nb_total, self.nb_invalid, load_date=load_date, file_name=file_name)
        try:
            return DailyAuditRow(
                load_date=load_date,
                file_name=file_name,
                nb_total=self.nb_total,
                nb_invalid=self.nb_invalid,
                error_rate=self.error_rate,
            )
        except ValidationError as e:
            raise InvariantViolation(str(e), load_date=load_date, file_name=file_name) from e


def check_counts(
    nb_total: int,
    nb_invalid: int,
    load_date: date | None = None,
    file_name: str | None = None,
) -> None:
    """
    Enforce 0 <= nb_invalid <= nb_total.

    Raises:
        InvariantViolation: On negative counts or more invalid than total records
    """
    if nb_total < 0 or nb_invalid < 0:
        raise InvariantViolation(
            f"negative counts: nb_total={nb_total}, nb_invalid={nb_invalid}",
            load_date=load_date,
            file_name=file_name,
        )
    if nb_invalid > nb_total:
        raise InvariantViolation(
            f"nb_invalid ({nb_invalid}) exceeds nb_total ({nb_total})",
            load_date=load_date,
            file_name=file_name,
        )


class DailyAggregator:
    """
    Groups joined records by file_name for one load date.
    """

    def __init__(self, load_date: date):
        self.load_date = load_date

    def partials(self, records: Iterable[JoinedRecord]) -> dict[str, PartialAggregate]:
        counts: dict[str, list[int]] = {}
        for record in records:
            entry = counts.setdefault(record.file_name, [0, 0])
            entry[0] += 1
            if record.is_invalid:
                entry[1] += 1
        return {name: PartialAggregate(total, invalid) for name, (total, invalid) in counts.items()}

    def aggregate_partition(self, file_name: str, records: Iterable[JoinedRecord]) -> DailyAuditRow:
        """
        Reduce the records of a single file_name partition.

        Raises:
            InvariantViolation: If a record belongs to another file_name
        """
        partial = PartialAggregate()
        for name, counts in self.partials(records).items():
            if name != file_name:
                raise InvariantViolation(
                    f"record of file {name!r} routed to partition {file_name!r}",
                    load_date=self.load_date,
                    file_name=file_name,
                )
            partial = partial.combine(counts)
        return partial.to_row(self.load_date, file_name)

    def aggregate(
        self,
        records: Iterable[JoinedRecord],
        declared_file_names: Iterable[str] = (),
    ) -> list[DailyAuditRow]:
        """
        Reduce records to one row per file_name, sorted by file_name.

        Args:
            records: Joined records of the load date
            declared_file_names: Files known to exist for the date; those
                without any joined record get an nb_total = 0 row

        Returns:
            List of DailyAuditRow, unique per file_name
        """
        partials = self.partials(records)
        for file_name in declared_file_names:
            partials.setdefault(file_name, PartialAggregate())

        return [
            partials[file_name].to_row(self.load_date, file_name)
            for file_name in sorted(partials)
        ]


def merge_partials(*chunks: dict[str, PartialAggregate]) -> dict[str, PartialAggregate]:
    """Merge per-file partial counts computed on separate chunks."""
    merged: dict[str, PartialAggregate] = {}
    for chunk in chunks:
        for file_name, partial in chunk.items():
            merged[file_name] = merged.get(file_name, PartialAggregate()).combine(partial)
    return merged
