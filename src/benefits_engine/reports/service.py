"""Reports service: validates parameters, dispatches to builders, caches results."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from benefits_engine.models import utcnow
from benefits_engine.reports import builders
from benefits_engine.reports.cache import NullReportCache, ReportCache, make_cache_key
from benefits_engine.reports.data import ReportData
from benefits_engine.reports.params import (
    BenefitUsageStatsParams,
    BudgetVsActualParams,
    ClaimsSummaryParams,
    EmployeeUtilizationParams,
    ReportParams,
    TrendAnalysisParams,
)
from benefits_engine.services.errors import BenefitsError

logger = logging.getLogger(__name__)


class ReportKind(str, Enum):
    """Available reports."""

    CLAIMS_SUMMARY = "claims-summary"
    EMPLOYEE_UTILIZATION = "employee-utilization"
    BENEFIT_USAGE_STATS = "benefit-usage-stats"
    TREND_ANALYSIS = "trend-analysis"
    BUDGET_VS_ACTUAL = "budget-vs-actual"


class ReportParamsError(BenefitsError):
    """Raised when report parameters fail validation."""

    def __init__(self, kind: str, errors: dict[str, str]):
        self.kind = kind
        self.errors = errors
        super().__init__(f"Invalid parameters for {kind} report: {errors}")


@dataclass(frozen=True)
class ReportDefinition:
    params_model: type[ReportParams]
    build: Callable[[ReportData, Any], dict]
    ttl_seconds: int = 300


REPORTS: dict[ReportKind, ReportDefinition] = {
    ReportKind.CLAIMS_SUMMARY: ReportDefinition(
        ClaimsSummaryParams, builders.build_claims_summary
    ),
    ReportKind.EMPLOYEE_UTILIZATION: ReportDefinition(
        EmployeeUtilizationParams, builders.build_employee_utilization, ttl_seconds=600
    ),
    ReportKind.BENEFIT_USAGE_STATS: ReportDefinition(
        BenefitUsageStatsParams, builders.build_benefit_usage_stats
    ),
    ReportKind.TREND_ANALYSIS: ReportDefinition(
        TrendAnalysisParams, builders.build_trend_analysis
    ),
    ReportKind.BUDGET_VS_ACTUAL: ReportDefinition(
        BudgetVsActualParams, builders.build_budget_vs_actual, ttl_seconds=900
    ),
}


def _field_errors(exc: ValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for error in exc.errors():
        field = ".".join(str(p) for p in error["loc"]) or "params"
        message = error["msg"].removeprefix("Value error, ")
        errors.setdefault(field, message)
    return errors


class ReportsService:
    """Generates read-only reports over approved claims.

    Results may be stale by up to the report's TTL; claim writes do not
    invalidate the cache.
    """

    def __init__(
        self,
        session: Session,
        cache: ReportCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.data = ReportData(session)
        self.cache = cache or NullReportCache()
        self.clock = clock

    @staticmethod
    def kinds() -> list[str]:
        return [k.value for k in ReportKind]

    def validate(self, kind: ReportKind | str, raw_params: dict[str, Any]) -> ReportParams:
        """Parse raw parameters for a report kind.

        Raises:
            ReportParamsError: unknown kind or invalid parameters
        """
        try:
            kind = ReportKind(kind)
        except ValueError:
            raise ReportParamsError(str(kind), {"report": f"Unknown report '{kind}'"}) from None

        try:
            return REPORTS[kind].params_model.model_validate(raw_params)
        except ValidationError as e:
            raise ReportParamsError(kind.value, _field_errors(e)) from e

    def generate(self, kind: ReportKind | str, raw_params: dict[str, Any] | None = None) -> dict:
        """Validated, possibly cached report with ``generated_at`` and ``cache_key``."""
        params = self.validate(kind, raw_params or {})
        kind = ReportKind(kind)
        definition = REPORTS[kind]
        cache_key = make_cache_key(kind.value, params.cache_params())

        def build() -> dict:
            logger.info("Building %s report (%s)", kind.value, cache_key)
            report = definition.build(self.data, params)
            return {
                **report,
                "generated_at": self.clock().isoformat(),
                "cache_key": cache_key,
            }

        return self.cache.get_or_set(cache_key, definition.ttl_seconds, build)
