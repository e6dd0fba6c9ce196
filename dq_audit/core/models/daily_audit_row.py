"""
DailyAuditRow model: error counts for one (load_date, file_name) partition.
"""

from datetime import date

from pydantic import BaseModel, Field, model_validator


class DailyAuditRow(BaseModel):
    """
    Aggregated audit figures for one file on one load date.

    Attributes:
        load_date: Calendar date the batch represents
        file_name: Audited file group
        nb_total: Number of joined records in the partition
        nb_invalid: Number of those flagged invalid
        error_rate: nb_invalid / nb_total, null iff nb_total is 0
    """

    load_date: date
    file_name: str = Field(..., min_length=1)
    nb_total: int = Field(..., ge=0)
    nb_invalid: int = Field(..., ge=0)
    error_rate: float | None = Field(None, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_counts_consistency(self) -> "DailyAuditRow":
        """Validate nb_invalid <= nb_total and error_rate nullness."""
        if self.nb_invalid > self.nb_total:
            raise ValueError(
                f"nb_invalid ({self.nb_invalid}) exceeds nb_total ({self.nb_total})"
            )
        if (self.error_rate is None) != (self.nb_total == 0):
            raise ValueError("error_rate must be null exactly when nb_total is 0")
        return self

    @property
    def key(self) -> tuple[str, date]:
        return self.file_name, self.load_date

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "load_date": "2024-01-05",
                "file_name": "f.csv",
                "nb_total": 3,
                "nb_invalid": 2,
                "error_rate": 0.6666666666666666
            }
        }
