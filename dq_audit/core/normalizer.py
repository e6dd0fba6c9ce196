"""
Record normalizer: raw string rows to typed event and transaction records.

Only structural parseability is judged here. A row that cannot be typed is
dropped and returned as a RecordDefect so that the run summary counts it;
business validity is left to the classifier.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from pydantic import ValidationError

from dq_audit.core.errors import StructuralDefect
from dq_audit.core.models import EventRecord, TransactionRecord
from dq_audit.observability.logger import get_logger

logger = get_logger(__name__)

EVENT_FIELDS = ("event_id", "transaction_id", "file_name", "status", "event_time")
TRANSACTION_FIELDS = ("transaction_id", "amount", "customer_id", "load_time")


@dataclass(frozen=True)
class RecordDefect:
    """A raw row dropped during normalization."""

    feed: str
    reason: str
    raw_row: dict[str, Any]

    @property
    def file_name(self) -> str | None:
        value = self.raw_row.get("file_name")
        if isinstance(value, str) and value.strip():
            return value
        return None

    def to_error(self, load_date: date | None = None) -> StructuralDefect:
        return StructuralDefect(
            f"{self.feed} row dropped: {self.reason}",
            raw_row=self.raw_row,
            load_date=load_date,
            file_name=self.file_name,
        )


@dataclass
class NormalizationResult:
    """Typed records plus the defects found while building them."""

    events: list[EventRecord] = field(default_factory=list)
    transactions: list[TransactionRecord] = field(default_factory=list)
    defects: list[RecordDefect] = field(default_factory=list)

    @property
    def declared_file_names(self) -> set[str]:
        """File names declared by any event row, including dropped ones."""
        names = {event.file_name for event in self.events}
        names.update(
            defect.file_name for defect in self.defects
            if defect.feed == "events" and defect.file_name
        )
        return names

    def defect_count(self, feed: str | None = None) -> int:
        if feed is None:
            return len(self.defects)
        return sum(1 for defect in self.defects if defect.feed == feed)


def _describe(error: ValidationError) -> str:
    """Flatten a pydantic error into one line."""
    parts = []
    for detail in error.errors():
        location = ".".join(str(item) for item in detail.get("loc", ()))
        parts.append(f"{location}: {detail.get('msg')}")
    return "; ".join(parts)


def _blank_to_none(raw_row: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    """Keep only known fields; empty strings become null like Spark's CSV reader does."""
    cleaned = {}
    for name in fields:
        value = raw_row.get(name)
        if isinstance(value, str) and value == "":
            value = None
        cleaned[name] = value
    return cleaned


class RecordNormalizer:
    """
    Casts raw feed rows into EventRecord / TransactionRecord.

    Duplicate event ids within one run are structural defects: the first
    occurrence is kept and the others are dropped.
    """

    def normalize_events(
        self,
        raw_rows: Iterable[dict[str, Any]],
        result: NormalizationResult | None = None,
    ) -> NormalizationResult:
        result = result or NormalizationResult()
        seen_ids: set[str] = set()

        for raw_row in raw_rows:
            try:
                event = EventRecord(**_blank_to_none(raw_row, EVENT_FIELDS))
            except ValidationError as e:
                result.defects.append(RecordDefect("events", _describe(e), dict(raw_row)))
                continue

            if event.event_id in seen_ids:
                result.defects.append(
                    RecordDefect("events", f"duplicate event_id {event.event_id!r}", dict(raw_row))
                )
                continue

            seen_ids.add(event.event_id)
            result.events.append(event)

        return result

    def normalize_transactions(
        self,
        raw_rows: Iterable[dict[str, Any]],
        result: NormalizationResult | None = None,
    ) -> NormalizationResult:
        result = result or NormalizationResult()

        for raw_row in raw_rows:
            try:
                transaction = TransactionRecord(**_blank_to_none(raw_row, TRANSACTION_FIELDS))
            except ValidationError as e:
                result.defects.append(RecordDefect("transactions", _describe(e), dict(raw_row)))
                continue
            result.transactions.append(transaction)

        return result

    def normalize(
        self,
        raw_events: Iterable[dict[str, Any]],
        raw_transactions: Iterable[dict[str, Any]],
        load_date: date | None = None,
    ) -> NormalizationResult:
        """
        Normalize both feeds of one load date.

        Args:
            raw_events: Raw event rows
            raw_transactions: Raw transaction rows
            load_date: Load date, used for log context only

        Returns:
            NormalizationResult with typed records and defects
        """
        result = NormalizationResult()
        self.normalize_events(raw_events, result)
        self.normalize_transactions(raw_transactions, result)

        for defect in result.defects:
            logger.warning(
                "Dropped structurally defective row",
                extra={
                    "error_kind": StructuralDefect.error_kind,
                    "feed": defect.feed,
                    "reason": defect.reason,
                    "file_name": defect.file_name,
                    "load_date": load_date.isoformat() if load_date else None,
                },
            )

        return result
