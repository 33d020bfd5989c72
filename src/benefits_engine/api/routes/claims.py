"""Benefit claim API endpoints."""

from datetime import date
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Path, Query, status

from benefits_engine.api.dependencies import DbSession
from benefits_engine.api.schemas import (
    ClaimCreate,
    ClaimListResponse,
    ClaimResponse,
    ClaimUpdate,
    ClaimWriteResponse,
    ErrorResponse,
    ReconciliationSummary,
)
from benefits_engine.services.claim_service import (
    ClaimChanges,
    ClaimFilters,
    ClaimResult,
    ClaimService,
)

router = APIRouter(prefix="/claims", tags=["claims"])


def _write_response(result: ClaimResult) -> ClaimWriteResponse:
    outcome = result.outcome
    return ClaimWriteResponse(
        claim=ClaimResponse.model_validate(result.claim),
        reconciliation=ReconciliationSummary(
            transactions=[t.transaction_id for t in outcome.transactions],
            queued=outcome.queued,
            error=str(outcome.error) if outcome.error else None,
        ),
    )


@router.post(
    "",
    response_model=ClaimWriteResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def create_claim(db: DbSession, payload: ClaimCreate) -> ClaimWriteResponse:
    """Submit a claim. Rejected with 400 if the balance does not cover it."""
    result = ClaimService(db).create_claim(**payload.model_dump())
    db.commit()
    return _write_response(result)


@router.get("", response_model=ClaimListResponse)
def list_claims(
    db: DbSession,
    page: Annotated[int, Query(ge=1)] = 1,
    per_page: Annotated[int, Query(ge=1, le=100)] = 10,
    sort_by: str = "claim_date",
    sort_dir: Annotated[str, Query(pattern="^(asc|desc)$")] = "desc",
    employee_id: int | None = None,
    benefit_type_id: int | None = None,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    start_date: date | None = None,
    end_date: date | None = None,
    min_amount: Decimal | None = None,
    max_amount: Decimal | None = None,
    search: str | None = None,
) -> ClaimListResponse:
    """List claims with optional filters."""
    filters = ClaimFilters(
        employee_id=employee_id,
        benefit_type_id=benefit_type_id,
        status=status_filter,
        start_date=start_date,
        end_date=end_date,
        min_amount=min_amount,
        max_amount=max_amount,
        search=search,
    )
    claims = ClaimService(db).list_claims(
        filters, page=page, per_page=per_page, sort_by=sort_by, sort_dir=sort_dir
    )
    return ClaimListResponse(
        items=[ClaimResponse.model_validate(c) for c in claims.items],
        total=claims.total,
        page=claims.page,
        per_page=claims.per_page,
        last_page=claims.last_page,
    )


@router.get(
    "/{claim_id}",
    response_model=ClaimResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_claim(db: DbSession, claim_id: Annotated[int, Path()]) -> ClaimResponse:
    """Get a claim by id."""
    return ClaimResponse.model_validate(ClaimService(db).get_claim(claim_id))


@router.patch(
    "/{claim_id}",
    response_model=ClaimWriteResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def update_claim(
    db: DbSession,
    claim_id: Annotated[int, Path()],
    payload: ClaimUpdate,
) -> ClaimWriteResponse:
    """Change a claim; the ledger follows status and amount changes."""
    data = payload.model_dump(exclude={"processed_by", "allow_overdraft"})
    result = ClaimService(db).update_claim(
        claim_id,
        ClaimChanges(**data),
        processed_by=payload.processed_by,
        allow_overdraft=payload.allow_overdraft,
    )
    db.commit()
    return _write_response(result)


@router.delete(
    "/{claim_id}",
    response_model=ReconciliationSummary,
    responses={404: {"model": ErrorResponse}},
)
def delete_claim(
    db: DbSession,
    claim_id: Annotated[int, Path()],
    force: bool = False,
    processed_by: int | None = None,
) -> ReconciliationSummary:
    """Delete a claim, restoring the balance if it was approved."""
    result = ClaimService(db).delete_claim(claim_id, processed_by=processed_by, force=force)
    db.commit()
    outcome = result.outcome
    return ReconciliationSummary(
        transactions=[t.transaction_id for t in outcome.transactions],
        queued=outcome.queued,
        error=str(outcome.error) if outcome.error else None,
    )
