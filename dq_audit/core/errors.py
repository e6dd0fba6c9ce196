"""
Error taxonomy for the audit pipeline.

Row-level and partition-level errors are isolated and reported in the run
summary. Only InvariantViolation halts a run.
"""

from datetime import date
from typing import Any


class AuditError(Exception):
    """Base class for every error raised by the audit pipeline."""

    error_kind = "audit_error"
    retryable = False

    def __init__(
        self,
        message: str,
        load_date: date | None = None,
        file_name: str | None = None,
    ):
        self.message = message
        self.load_date = load_date
        self.file_name = file_name
        super().__init__(self._format())

    def _format(self) -> str:
        scope = []
        if self.load_date is not None:
            scope.append(f"load_date={self.load_date.isoformat()}")
        if self.file_name is not None:
            scope.append(f"file_name={self.file_name}")
        if scope:
            return f"[{self.error_kind}] {' '.join(scope)}: {self.message}"
        return f"[{self.error_kind}] {self.message}"


class StructuralDefect(AuditError):
    """A raw row could not be parsed into a typed record."""

    error_kind = "structural_defect"

    def __init__(self, message: str, raw_row: dict[str, Any] | None = None, **kwargs):
        self.raw_row = raw_row
        super().__init__(message, **kwargs)


class AmbiguousJoinKey(AuditError):
    """Several transactions share the transaction id an event points at."""

    error_kind = "ambiguous_join_key"

    def __init__(self, transaction_id: str, match_count: int, **kwargs):
        self.transaction_id = transaction_id
        self.match_count = match_count
        super().__init__(
            f"transaction_id {transaction_id!r} matched {match_count} transactions",
            **kwargs,
        )


class SourceUnavailable(AuditError):
    """Reading a feed failed or timed out."""

    error_kind = "source_unavailable"
    retryable = True


class WriteFailure(AuditError):
    """The audit sink rejected or timed out an upsert."""

    error_kind = "write_failure"
    retryable = True


class InvariantViolation(AuditError):
    """A computed value broke an invariant. Signals a logic bug; never coerced."""

    error_kind = "invariant_violation"
