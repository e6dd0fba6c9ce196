"""
Timestamp parsing shared by the feed record models.
"""

from datetime import datetime
from typing import Any


def parse_iso_timestamp(value: Any) -> Any:
    """
    Parse an ISO-8601 date or date-time string.

    Digit-only strings are rejected rather than read as Unix epochs, so a
    row dropped by Spark's try_to_timestamp is dropped here as well.
    None and datetime values pass through unchanged.

    Raises:
        ValueError: If the value is not an ISO-8601 timestamp
    """
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValueError(f"expected an ISO-8601 timestamp string, got {type(value).__name__}")

    text = value.strip()
    if text.isdigit():
        raise ValueError(f"expected an ISO-8601 timestamp, got bare number {text!r}")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)
