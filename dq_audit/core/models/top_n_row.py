"""
TopNRow model: a file ranked among the worst offenders of a load date.
"""

from datetime import date

from pydantic import BaseModel, Field


class TopNRow(BaseModel):
    """
    Rank of a file within its load date, ordered by error_rate descending.

    Only ranks <= K are materialized.
    """

    load_date: date
    file_name: str = Field(..., min_length=1)
    rank: int = Field(..., ge=1)
    error_rate: float | None = Field(None, ge=0.0, le=1.0)

    @property
    def key(self) -> tuple[str, date]:
        return self.file_name, self.load_date

    class Config:
        frozen = True
