"""Budget envelopes and per-employee running balances."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from benefits_engine.models.base import Base, SoftDeleteMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from benefits_engine.models.employee import Employee
    from benefits_engine.models.reference import BenefitType, LevelEmployee, MarriageStatus


class BenefitBudget(Base, UpdatedAtMixin, SoftDeleteMixin):
    """Budget ceiling for one cohort (level x marriage status x year) and benefit type.

    A NULL marriage_status_id makes the row marriage-status agnostic: it matches
    employees whose effective marriage status is NULL.
    """

    __tablename__ = "benefit_budgets"
    __table_args__ = (
        UniqueConstraint(
            "benefit_type_id",
            "level_employee_id",
            "marriage_status_id",
            "year",
            name="uq_benefit_budget_cohort",
        ),
        CheckConstraint("budget >= 0", name="ck_benefit_budget_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    benefit_type_id: Mapped[int] = mapped_column(
        ForeignKey("benefit_types.id"),
        nullable=False,
    )
    level_employee_id: Mapped[int] = mapped_column(
        ForeignKey("level_employees.id"),
        nullable=False,
    )
    marriage_status_id: Mapped[int | None] = mapped_column(
        ForeignKey("marriage_statuses.id"),
        nullable=True,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    budget: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    # Relationships
    benefit_type: Mapped[BenefitType] = relationship(back_populates="budgets")
    level: Mapped[LevelEmployee] = relationship()
    marriage_status: Mapped[MarriageStatus | None] = relationship()

    def __repr__(self) -> str:
        return (
            f"<BenefitBudget {self.id} type={self.benefit_type_id} "
            f"level={self.level_employee_id} ms={self.marriage_status_id} year={self.year}>"
        )


class EmployeeBenefitBalance(Base, UpdatedAtMixin):
    """Running balance of one employee against one budget envelope.

    Mutated only through BalanceStore.apply_delta / recalculation. The version
    column guards the read-modify-write against lost updates.
    """

    __tablename__ = "employee_benefit_balances"
    __table_args__ = (
        UniqueConstraint(
            "employee_id",
            "benefit_budget_id",
            name="uq_employee_benefit_balance",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    employee_id: Mapped[int] = mapped_column(
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
    )
    benefit_budget_id: Mapped[int] = mapped_column(
        ForeignKey("benefit_budgets.id", ondelete="CASCADE"),
        nullable=False,
    )
    current_balance: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    employee: Mapped[Employee] = relationship(back_populates="balances")
    budget: Mapped[BenefitBudget] = relationship()
