"""
Join & classification engine.

Left-joins events to transactions on transaction_id and flags each joined
record with the invalid-record predicate:

    is_invalid = status != "OK" or amount is null or amount < 0
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping

from dq_audit.core.errors import AmbiguousJoinKey
from dq_audit.core.models import EventRecord, JoinedRecord, TransactionRecord
from dq_audit.observability.logger import get_logger

logger = get_logger(__name__)

VALID_STATUS = "OK"


def is_invalid_record(status: str | None, amount: Decimal | None) -> bool:
    """An unmatched event has a null amount, so it is always invalid."""
    return status != VALID_STATUS or amount is None or amount < 0


@dataclass(frozen=True)
class TransactionIndex:
    """
    Transactions of one load date keyed by transaction_id.

    Ids carried by more than one transaction are kept apart as ambiguous;
    events pointing at them cannot be joined deterministically.
    """

    unique: Mapping[str, TransactionRecord]
    ambiguous: Mapping[str, int]

    @classmethod
    def build(cls, transactions: Iterable[TransactionRecord]) -> "TransactionIndex":
        grouped: dict[str, list[TransactionRecord]] = defaultdict(list)
        for transaction in transactions:
            grouped[transaction.transaction_id].append(transaction)

        unique = {}
        ambiguous = {}
        for transaction_id, matches in grouped.items():
            if len(matches) == 1:
                unique[transaction_id] = matches[0]
            else:
                ambiguous[transaction_id] = len(matches)
        return cls(unique=unique, ambiguous=ambiguous)


@dataclass
class ClassificationResult:
    """Joined records of one partition plus the events excluded from it."""

    joined: list[JoinedRecord] = field(default_factory=list)
    ambiguous: list[AmbiguousJoinKey] = field(default_factory=list)

    @property
    def invalid_count(self) -> int:
        return sum(1 for record in self.joined if record.is_invalid)

    @property
    def valid_count(self) -> int:
        return len(self.joined) - self.invalid_count


class JoinClassifier:
    """
    Joins and classifies the events of one load date.

    The index is immutable, so several partitions of the same date can be
    classified concurrently against one shared instance.
    """

    def __init__(self, index: TransactionIndex):
        self.index = index

    @classmethod
    def from_transactions(cls, transactions: Iterable[TransactionRecord]) -> "JoinClassifier":
        return cls(TransactionIndex.build(transactions))

    def join(self, event: EventRecord, load_date: date | None = None) -> JoinedRecord:
        """
        Join one event to its transaction and compute the verdict.

        Raises:
            AmbiguousJoinKey: If several transactions carry the event's transaction_id
        """
        match_count = self.index.ambiguous.get(event.transaction_id)
        if match_count:
            raise AmbiguousJoinKey(
                event.transaction_id,
                match_count,
                load_date=load_date,
                file_name=event.file_name,
            )

        transaction = self.index.unique.get(event.transaction_id)
        amount = transaction.amount if transaction else None

        return JoinedRecord(
            event_id=event.event_id,
            transaction_id=event.transaction_id,
            file_name=event.file_name,
            status=event.status,
            event_time=event.event_time,
            amount=amount,
            customer_id=transaction.customer_id if transaction else None,
            load_time=transaction.load_time if transaction else None,
            matched=transaction is not None,
            is_invalid=is_invalid_record(event.status, amount),
        )

    def classify(
        self,
        events: Iterable[EventRecord],
        load_date: date | None = None,
    ) -> ClassificationResult:
        """
        Classify a sequence of events.

        Output order follows event_id so that results do not depend on
        the order partitions were read or scheduled in.

        Args:
            events: Events to classify (typically one file_name partition)
            load_date: Load date, attached to reported errors

        Returns:
            ClassificationResult
        """
        result = ClassificationResult()

        for event in sorted(events, key=lambda e: e.event_id):
            try:
                result.joined.append(self.join(event, load_date))
            except AmbiguousJoinKey as e:
                result.ambiguous.append(e)
                logger.warning(
                    "Excluded event with ambiguous join key",
                    extra={
                        "error_kind": e.error_kind,
                        "event_id": event.event_id,
                        "transaction_id": e.transaction_id,
                        "match_count": e.match_count,
                        "file_name": event.file_name,
                        "load_date": load_date.isoformat() if load_date else None,
                    },
                )

        return result
