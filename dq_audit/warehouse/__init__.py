"""
Audit table storage: PostgreSQL connection pool and audit sinks.
"""

from .audit_table import (
    AUDIT_TABLE,
    AuditSink,
    InMemoryAuditSink,
    PostgresAuditSink,
    attach_audit_sink,
    close_audit_sink,
    get_audit_sink,
)
from .connection import DatabaseConnectionPool

__all__ = [
    "AUDIT_TABLE",
    "AuditSink",
    "InMemoryAuditSink",
    "PostgresAuditSink",
    "DatabaseConnectionPool",
    "attach_audit_sink",
    "get_audit_sink",
    "close_audit_sink",
]
