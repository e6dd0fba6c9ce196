"""
Batch audit: record sources, the per-date pipeline and the Spark full-history job.
"""

from .pipeline import AuditPipeline
from .sources import InMemoryRecordSource, RecordSource, SparkCsvRecordSource
from .spark_job import SparkAuditJob, SparkAuditResult, SparkWriteReport

__all__ = [
    "AuditPipeline",
    "RecordSource",
    "InMemoryRecordSource",
    "SparkCsvRecordSource",
    "SparkAuditJob",
    "SparkAuditResult",
    "SparkWriteReport",
]
