"""
AuditTableRow model: one persisted row of the audit table.
"""

from datetime import date

from pydantic import BaseModel, Field


class AuditTableRow(BaseModel):
    """
    The (file_name, load_date) row triple as stored in the audit table.

    Attributes:
        file_name: Audited file group (PK part)
        load_date: Load date (PK part)
        nb_total: Daily record count
        nb_invalid: Daily invalid count
        error_rate: Daily error rate
        rolling_error_rate: Trailing mean error rate
        error_rank: Rank within the load date when in the top K, else null
    """

    file_name: str = Field(..., min_length=1)
    load_date: date
    nb_total: int = Field(..., ge=0)
    nb_invalid: int = Field(..., ge=0)
    error_rate: float | None = None
    rolling_error_rate: float | None = None
    error_rank: int | None = Field(None, ge=1)

    class Config:
        frozen = True
