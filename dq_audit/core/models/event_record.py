"""
EventRecord model representing one typed row of the event feed.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .timestamps import parse_iso_timestamp


class EventRecord(BaseModel):
    """
    A typed event, immutable once normalized.

    A missing status is kept as an empty string, which classifies as
    invalid instead of dropping the event.

    Attributes:
        event_id: Unique identifier within a load run
        transaction_id: Transaction the event refers to (join key)
        file_name: Source file group the event was declared in
        status: Processing status reported by the producer ("OK" when healthy)
        event_time: When the event happened
    """

    event_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    file_name: str = Field(..., min_length=1)
    status: str
    event_time: datetime

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("event_time", mode="before")
    @classmethod
    def parse_event_time(cls, value: Any) -> Any:
        return parse_iso_timestamp(value)

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "event_id": "e1",
                "transaction_id": "t1",
                "file_name": "events_2024-01-05.csv",
                "status": "OK",
                "event_time": "2024-01-05T08:15:00"
            }
        }
