"""
TransactionRecord model representing one typed row of the transaction feed.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .timestamps import parse_iso_timestamp


class TransactionRecord(BaseModel):
    """
    A typed transaction, immutable once normalized.

    An amount that does not parse as a finite decimal is kept as null: it
    is a business-data problem judged later, not a structural one.

    Attributes:
        transaction_id: Business key, joined against EventRecord.transaction_id
        amount: Transaction amount (null when missing or unparseable)
        customer_id: Customer the transaction belongs to
        load_time: When the transaction was loaded
    """

    transaction_id: str = Field(..., min_length=1)
    amount: Decimal | None = None
    customer_id: str
    load_time: datetime

    @field_validator("amount", mode="before")
    @classmethod
    def parse_amount(cls, value: Any) -> Decimal | None:
        """Parse amount leniently, falling back to null."""
        if value is None:
            return None
        if isinstance(value, Decimal):
            return value if value.is_finite() else None

        text = str(value).strip()
        if not text:
            return None
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return None
        return amount if amount.is_finite() else None

    @field_validator("load_time", mode="before")
    @classmethod
    def parse_load_time(cls, value: Any) -> Any:
        return parse_iso_timestamp(value)

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "transaction_id": "t1",
                "amount": "100.00",
                "customer_id": "C042",
                "load_time": "2024-01-05T09:00:00"
            }
        }
