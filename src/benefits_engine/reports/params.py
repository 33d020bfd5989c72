"""Parameter models for each report kind."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIN_REPORT_YEAR = 2020

CLAIM_GROUPINGS = ("department", "benefit_type", "employee_level", "month", "quarter")
BUDGET_GROUPINGS = ("department", "benefit_type", "employee_level")
UTILIZATION_SORTS = ("usage_percentage", "total_amount", "claims_count")
PERIOD_TYPES = ("daily", "weekly", "monthly", "quarterly")
TREND_METRICS = ("claims_count", "total_amount", "average_amount", "unique_employees")


def _check_year(v: int | None) -> int | None:
    if v is None:
        return v
    latest = date.today().year + 1
    if v < MIN_REPORT_YEAR or v > latest:
        raise ValueError(f"Year must be between {MIN_REPORT_YEAR} and {latest}")
    return v


class ReportParams(BaseModel):
    """Base for report parameters."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    def cache_params(self) -> dict:
        return self.model_dump(mode="json")


class DateRangeParams(ReportParams):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("End date must be after or equal to start date")
        return self


class ClaimsSummaryParams(DateRangeParams):
    group_by: str
    department: str | None = None
    benefit_type_id: int | None = None
    employee_level_id: int | None = None

    @field_validator("group_by")
    @classmethod
    def validate_group_by(cls, v):
        if v not in CLAIM_GROUPINGS:
            raise ValueError("Invalid group by value")
        return v


class EmployeeUtilizationParams(ReportParams):
    year: int = Field(default_factory=lambda: date.today().year)
    department: str | None = None
    employee_level_id: int | None = None
    sort_by: str = "usage_percentage"
    sort_dir: str = "desc"
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=20, ge=1, le=100)

    @field_validator("year")
    @classmethod
    def validate_year(cls, v):
        return _check_year(v)

    @field_validator("sort_by")
    @classmethod
    def validate_sort_by(cls, v):
        if v not in UTILIZATION_SORTS:
            raise ValueError("Invalid sort_by value")
        return v

    @field_validator("sort_dir")
    @classmethod
    def validate_sort_dir(cls, v):
        if v not in ("asc", "desc"):
            raise ValueError("Invalid sort_dir value")
        return v


class BenefitUsageStatsParams(DateRangeParams):
    compare_period: bool = False


class TrendAnalysisParams(DateRangeParams):
    period_type: str
    metric: str

    @field_validator("period_type")
    @classmethod
    def validate_period_type(cls, v):
        if v not in PERIOD_TYPES:
            raise ValueError("Invalid period type")
        return v

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, v):
        if v not in TREND_METRICS:
            raise ValueError("Invalid metric")
        return v


class BudgetVsActualParams(ReportParams):
    group_by: str
    year: int = Field(default_factory=lambda: date.today().year)

    @field_validator("group_by")
    @classmethod
    def validate_group_by(cls, v):
        if v not in BUDGET_GROUPINGS:
            raise ValueError("Invalid group by value")
        return v

    @field_validator("year")
    @classmethod
    def validate_year(cls, v):
        return _check_year(v)
