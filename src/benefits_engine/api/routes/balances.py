"""Balance management API endpoints."""

from datetime import date
from decimal import Decimal
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Path, Query, status

from benefits_engine.api.dependencies import DbSession, ReportCacheDep
from benefits_engine.api.schemas import (
    AdjustmentRequest,
    AdjustmentResponse,
    AvailabilityResponse,
    DiscrepancyResponse,
    ErrorResponse,
    HistoryResponse,
    RecalculationRequest,
    RecalculationResponse,
    TransactionResponse,
)
from benefits_engine.services.balance_management import (
    BalanceManagementService,
    RecalculationScope,
)
from benefits_engine.services.ledger_service import HistoryFilters

router = APIRouter(prefix="/balances", tags=["balances"])

EmployeeId = Annotated[int, Path()]


@router.get("/alerts/low", responses={422: {"model": ErrorResponse}})
def low_balance_alerts(
    db: DbSession,
    cache: ReportCacheDep,
    threshold: Annotated[Decimal, Query(ge=0, le=100)] = Decimal("20"),
    year: int | None = None,
) -> dict[str, Any]:
    """Balances at or below ``threshold`` percent remaining, or overdrawn."""
    return BalanceManagementService(db, cache=cache).get_low_balance_alerts(threshold, year)


@router.post(
    "/adjust",
    response_model=AdjustmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def adjust_balance(db: DbSession, payload: AdjustmentRequest) -> AdjustmentResponse:
    """Manually credit or debit a balance."""
    try:
        result = BalanceManagementService(db).adjust_balance(
            payload.employee_id,
            payload.benefit_budget_id,
            payload.amount,
            payload.reason,
            payload.processed_by,
            allow_overdraft=payload.allow_overdraft,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    db.commit()
    return AdjustmentResponse(
        adjustment_id=result.adjustment_id,
        employee_id=result.employee_id,
        benefit_budget_id=result.benefit_budget_id,
        benefit_type_id=result.benefit_type_id,
        adjustment_type=result.adjustment_type,
        amount=result.amount,
        balance_before=result.balance_before,
        balance_after=result.balance_after,
        reason=result.reason,
        transaction_id=result.transaction.transaction_id,
    )


@router.post("/recalculate", response_model=RecalculationResponse)
def recalculate_balances(db: DbSession, payload: RecalculationRequest) -> RecalculationResponse:
    """Rebuild balances from the ledger and report the drift found."""
    scope = RecalculationScope(
        year=payload.year,
        employee_ids=payload.employee_ids,
        benefit_type_ids=payload.benefit_type_ids,
    )
    report = BalanceManagementService(db).recalculate_balances(scope, dry_run=payload.dry_run)
    db.commit()
    return RecalculationResponse(
        year=report.year,
        recalculated_employees=report.recalculated_employees,
        recalculated_balances=report.recalculated_balances,
        discrepancies_found=report.discrepancies_found,
        discrepancies=[
            DiscrepancyResponse(
                employee_id=d.employee_id,
                benefit_type_id=d.benefit_type_id,
                benefit_budget_id=d.benefit_budget_id,
                old_balance=d.old_balance,
                calculated_balance=d.calculated_balance,
                difference=d.difference,
            )
            for d in report.discrepancies
        ],
        dry_run=report.dry_run,
        processed_at=report.processed_at,
    )


@router.get("/{employee_id}/summary", responses={404: {"model": ErrorResponse}})
def balance_summary(
    db: DbSession,
    employee_id: EmployeeId,
    year: int | None = None,
) -> dict[str, Any]:
    """Per-benefit balances of an employee with totals."""
    return BalanceManagementService(db).get_summary(employee_id, year)


@router.get(
    "/{employee_id}/check",
    response_model=AvailabilityResponse,
    responses={404: {"model": ErrorResponse}},
)
def check_available(
    db: DbSession,
    employee_id: EmployeeId,
    benefit_type_id: int,
    year: int | None = None,
    amount: Annotated[Decimal | None, Query(gt=0)] = None,
) -> AvailabilityResponse:
    """Whether the employee's balance covers ``amount``."""
    check = BalanceManagementService(db).check_available(
        employee_id, benefit_type_id, year or date.today().year, amount
    )
    return AvailabilityResponse(
        sufficient_balance=check.sufficient,
        current_balance=check.current_balance,
        requested_amount=check.requested_amount,
        remaining_after_claim=check.remaining_after_claim,
        shortage_amount=check.shortage_amount,
        benefit_type=check.benefit_type,
        employee_id=check.employee_id,
        year=check.year,
    )


@router.get(
    "/{employee_id}/history",
    response_model=HistoryResponse,
    responses={404: {"model": ErrorResponse}},
)
def balance_history(
    db: DbSession,
    employee_id: EmployeeId,
    page: Annotated[int, Query(ge=1)] = 1,
    per_page: Annotated[int, Query(ge=1, le=100)] = 20,
    benefit_type_id: int | None = None,
    year: int | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    transaction_type: Annotated[str | None, Query(pattern="^(debit|credit)$")] = None,
) -> HistoryResponse:
    """Ledger rows of an employee, newest first."""
    filters = HistoryFilters(
        benefit_type_id=benefit_type_id,
        year=year,
        start_date=start_date,
        end_date=end_date,
        transaction_type=transaction_type,
    )
    history = BalanceManagementService(db).get_history(
        employee_id, filters, page=page, per_page=per_page
    )
    return HistoryResponse(
        items=[TransactionResponse.model_validate(t) for t in history.items],
        total=history.total,
        page=history.page,
        per_page=history.per_page,
        last_page=history.last_page,
    )


@router.get("/{employee_id}/status", responses={404: {"model": ErrorResponse}})
def balance_status(
    db: DbSession,
    employee_id: EmployeeId,
    benefit_type_id: int,
    year: int | None = None,
) -> dict[str, Any]:
    """Balance with its overdraft position."""
    return BalanceManagementService(db).get_balance_status(
        employee_id, benefit_type_id, year or date.today().year
    )
