"""Read-only reports over approved benefit claims."""

from benefits_engine.reports.cache import NullReportCache, ReportCache, TTLReportCache, make_cache_key
from benefits_engine.reports.service import REPORTS, ReportKind, ReportParamsError, ReportsService

__all__ = [
    "NullReportCache",
    "ReportCache",
    "TTLReportCache",
    "make_cache_key",
    "REPORTS",
    "ReportKind",
    "ReportParamsError",
    "ReportsService",
]
