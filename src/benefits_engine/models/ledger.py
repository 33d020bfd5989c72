"""Append-only balance ledger and reconciliation outbox."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from benefits_engine.models.base import Base, TimestampMixin


class BalanceTransaction(Base, TimestampMixin):
    """Immutable record of one balance movement.

    Rows are never updated or deleted. Replaying the rows of an
    (employee, budget) pair from the budget amount reproduces its balance.
    """

    __tablename__ = "balance_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_balance_transaction_amount_positive"),
        CheckConstraint(
            "transaction_type IN ('debit', 'credit')",
            name="ck_balance_transaction_type",
        ),
        CheckConstraint(
            "reference_type IN ('claim', 'adjustment')",
            name="ck_balance_transaction_reference_type",
        ),
        Index("ix_balance_transactions_employee_type", "employee_id", "benefit_type_id"),
        Index("ix_balance_transactions_pair", "employee_id", "benefit_budget_id"),
        Index("ix_balance_transactions_reference", "reference_type", "reference_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    benefit_type_id: Mapped[int] = mapped_column(
        ForeignKey("benefit_types.id", ondelete="CASCADE"),
        nullable=False,
    )
    benefit_budget_id: Mapped[int] = mapped_column(
        ForeignKey("benefit_budgets.id", ondelete="CASCADE"),
        nullable=False,
    )
    transaction_type: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reference_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    @property
    def signed_amount(self) -> Decimal:
        """Amount as it moves the balance (credits positive)."""
        return self.amount if self.transaction_type == "credit" else -self.amount


class PendingReconciliation(Base, TimestampMixin):
    """Claim ledger work that could not be applied when the claim was written.

    Items are replayed oldest first; the idempotency key prefix makes a replay
    safe to repeat.
    """

    __tablename__ = "pending_reconciliations"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'done', 'failed')",
            name="ck_pending_reconciliation_status",
        ),
        Index("ix_pending_reconciliations_claim_status", "claim_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    claim_id: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event: Mapped[str] = mapped_column(String(20), nullable=False)
    before_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    after_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    key_prefix: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
