"""Reference data: employee levels, marriage statuses, benefit types, users.

These tables are maintained outside this package; the ledger only reads them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from benefits_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from benefits_engine.models.budget import BenefitBudget


class LevelEmployee(Base, TimestampMixin):
    """Employee level (grade) used to pick a budget envelope."""

    __tablename__ = "level_employees"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class MarriageStatus(Base, TimestampMixin):
    """Marriage status category."""

    __tablename__ = "marriage_statuses"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class BenefitType(Base, TimestampMixin):
    """Kind of benefit an employee can claim (medical, dental, ...)."""

    __tablename__ = "benefit_types"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    budgets: Mapped[list[BenefitBudget]] = relationship(back_populates="benefit_type")


class User(Base, TimestampMixin):
    """Operator recorded as the actor on claims and ledger rows."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
