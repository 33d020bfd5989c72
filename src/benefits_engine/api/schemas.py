"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Error body for 4xx responses."""

    status: int
    message: str
    data: dict[str, Any] | None = None
    errors: dict[str, str] | None = None


# ============================================================================
# Claim schemas
# ============================================================================


class ClaimCreate(BaseModel):
    """Schema for submitting a claim."""

    employee_id: int
    benefit_type_id: int
    amount: Decimal = Field(gt=0)
    claim_date: date
    status: str = "pending"
    description: str | None = Field(default=None, max_length=1000)
    notes: str | None = Field(default=None, max_length=500)
    receipt_file: str | None = Field(default=None, max_length=255)
    created_by: int | None = None
    allow_overdraft: bool = False


class ClaimUpdate(BaseModel):
    """Schema for changing a claim. Omitted fields are left unchanged."""

    amount: Decimal | None = Field(default=None, gt=0)
    status: str | None = None
    claim_date: date | None = None
    benefit_type_id: int | None = None
    description: str | None = Field(default=None, max_length=1000)
    notes: str | None = Field(default=None, max_length=500)
    receipt_file: str | None = Field(default=None, max_length=255)
    processed_by: int | None = None
    allow_overdraft: bool = False


class ClaimResponse(BaseModel):
    """Schema for claim response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    claim_number: str
    employee_id: int
    benefit_type_id: int
    amount: Decimal
    claim_date: date
    status: str
    description: str | None = None
    notes: str | None = None
    receipt_file: str | None = None
    created_by: int | None = None
    revision: int
    created_at: datetime
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class ReconciliationSummary(BaseModel):
    """What a claim write did to the ledger."""

    transactions: list[str] = []
    queued: bool = False
    error: str | None = None


class ClaimWriteResponse(BaseModel):
    claim: ClaimResponse
    reconciliation: ReconciliationSummary


class ClaimListResponse(BaseModel):
    """Schema for listing claims."""

    items: list[ClaimResponse]
    total: int
    page: int
    per_page: int
    last_page: int


# ============================================================================
# Balance schemas
# ============================================================================


class TransactionResponse(BaseModel):
    """Schema for a ledger row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    transaction_id: str
    employee_id: int
    benefit_type_id: int
    benefit_budget_id: int
    transaction_type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reference_type: str
    reference_id: int | None = None
    description: str | None = None
    processed_by: int | None = None
    year: int
    created_at: datetime


class HistoryResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    page: int
    per_page: int
    last_page: int


class AvailabilityResponse(BaseModel):
    """Whether a balance covers a requested amount."""

    sufficient_balance: bool
    current_balance: Decimal
    requested_amount: Decimal | None = None
    remaining_after_claim: Decimal | None = None
    shortage_amount: Decimal | None = None
    benefit_type: str
    employee_id: int
    year: int


class AdjustmentRequest(BaseModel):
    """Manual balance correction. Positive credits, negative debits."""

    employee_id: int
    benefit_budget_id: int
    amount: Decimal
    reason: str = Field(min_length=1, max_length=500)
    processed_by: int | None = None
    allow_overdraft: bool = False


class AdjustmentResponse(BaseModel):
    adjustment_id: str
    employee_id: int
    benefit_budget_id: int
    benefit_type_id: int
    adjustment_type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reason: str
    transaction_id: str


class RecalculationRequest(BaseModel):
    year: int
    employee_ids: list[int] = []
    benefit_type_ids: list[int] = []
    dry_run: bool = False


class DiscrepancyResponse(BaseModel):
    employee_id: int
    benefit_type_id: int
    benefit_budget_id: int
    old_balance: Decimal
    calculated_balance: Decimal
    difference: Decimal


class RecalculationResponse(BaseModel):
    year: int
    recalculated_employees: int
    recalculated_balances: int
    discrepancies_found: int
    discrepancies: list[DiscrepancyResponse]
    dry_run: bool
    processed_at: datetime
