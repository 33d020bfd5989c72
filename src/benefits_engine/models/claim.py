"""Benefit claim model."""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from benefits_engine.models.base import Base, SoftDeleteMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from benefits_engine.models.employee import Employee
    from benefits_engine.models.reference import BenefitType, User


class BenefitClaim(Base, UpdatedAtMixin, SoftDeleteMixin):
    """A claim against an employee's benefit balance.

    ``ledger_key`` is unique to the claim for its whole life and, with
    ``revision``, scopes the idempotency keys of the ledger rows a change
    produces. Ids are never reused after a hard delete.
    """

    __tablename__ = "benefit_claims"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_benefit_claim_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'processing')",
            name="ck_benefit_claim_status",
        ),
        Index("ix_benefit_claims_employee_type", "employee_id", "benefit_type_id"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    claim_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    ledger_key: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
        default=lambda: uuid.uuid4().hex,
    )
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    benefit_type_id: Mapped[int] = mapped_column(
        ForeignKey("benefit_types.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    claim_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    receipt_file: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Relationships
    employee: Mapped[Employee] = relationship()
    benefit_type: Mapped[BenefitType] = relationship()
    creator: Mapped[User | None] = relationship()

    def __repr__(self) -> str:
        return f"<BenefitClaim {self.claim_number} {self.status} {self.amount}>"
