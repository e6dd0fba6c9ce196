"""
RollingAuditRow model: trailing mean of error_rate for one file.
"""

from datetime import date

from pydantic import BaseModel, Field


class RollingAuditRow(BaseModel):
    """
    Trailing-window error rate ending at load_date.

    rolling_error_rate is the mean over the last window_size observed days
    of this file that had a non-null error_rate. It is null only while the
    file has no such day yet.
    """

    load_date: date
    file_name: str = Field(..., min_length=1)
    rolling_error_rate: float | None = Field(None, ge=0.0, le=1.0)
    window_size: int = Field(7, ge=1)

    @property
    def key(self) -> tuple[str, date]:
        return self.file_name, self.load_date

    class Config:
        frozen = True
