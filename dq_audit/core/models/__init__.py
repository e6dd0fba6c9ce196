"""
Core data models for the data-quality audit.

All models use Pydantic for runtime validation and are immutable once built,
except the run summary which is filled in as a run progresses.
"""

from .audit_table_row import AuditTableRow
from .daily_audit_row import DailyAuditRow
from .event_record import EventRecord
from .joined_record import JoinedRecord
from .rolling_audit_row import RollingAuditRow
from .run_summary import AuditRunSummary, PartitionFailure
from .top_n_row import TopNRow
from .transaction_record import TransactionRecord

__all__ = [
    "EventRecord",
    "TransactionRecord",
    "JoinedRecord",
    "DailyAuditRow",
    "RollingAuditRow",
    "TopNRow",
    "AuditTableRow",
    "AuditRunSummary",
    "PartitionFailure",
]
