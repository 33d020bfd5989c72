"""Report API endpoints."""

from typing import Any

from fastapi import APIRouter, Request

from benefits_engine.api.dependencies import DbSession, ReportCacheDep
from benefits_engine.api.schemas import ErrorResponse
from benefits_engine.reports.service import ReportsService

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("")
def list_reports() -> dict[str, list[str]]:
    """Available report kinds."""
    return {"reports": ReportsService.kinds()}


@router.get("/{kind}", responses={422: {"model": ErrorResponse}})
def generate_report(
    db: DbSession,
    cache: ReportCacheDep,
    kind: str,
    request: Request,
) -> dict[str, Any]:
    """Generate a report; parameters are passed as query string."""
    return ReportsService(db, cache).generate(kind, dict(request.query_params))
