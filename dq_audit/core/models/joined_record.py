"""
JoinedRecord model: one event left-joined to its transaction, with a verdict.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class JoinedRecord(BaseModel):
    """
    Result of joining one EventRecord to at most one TransactionRecord.

    Transaction fields are null when the event had no matching transaction.

    Attributes:
        event_id: Event identifier
        transaction_id: Join key
        file_name: File group declared on the event
        status: Event status
        event_time: Event timestamp
        amount: Transaction amount (null if unmatched or unparseable)
        customer_id: Transaction customer (null if unmatched)
        load_time: Transaction load time (null if unmatched)
        matched: Whether a transaction was found
        is_invalid: Classification verdict
    """

    event_id: str
    transaction_id: str
    file_name: str
    status: str
    event_time: datetime
    amount: Decimal | None = None
    customer_id: str | None = None
    load_time: datetime | None = None
    matched: bool
    is_invalid: bool

    class Config:
        frozen = True
