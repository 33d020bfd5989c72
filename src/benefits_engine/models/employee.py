"""Employee model."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from benefits_engine.models.base import Base, SoftDeleteMixin, UpdatedAtMixin

if TYPE_CHECKING:
    from benefits_engine.models.budget import EmployeeBenefitBalance
    from benefits_engine.models.reference import LevelEmployee, MarriageStatus


class Employee(Base, UpdatedAtMixin, SoftDeleteMixin):
    """Employee as seen by the benefits ledger."""

    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(primary_key=True)
    nik: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    department: Mapped[str] = mapped_column(String(255), nullable=False)
    gender: Mapped[str | None] = mapped_column(String(10), nullable=True)
    level_employee_id: Mapped[int] = mapped_column(
        ForeignKey("level_employees.id"),
        nullable=False,
    )
    marriage_status_id: Mapped[int | None] = mapped_column(
        ForeignKey("marriage_statuses.id"),
        nullable=True,
    )

    # Relationships
    level: Mapped[LevelEmployee] = relationship()
    marriage_status: Mapped[MarriageStatus | None] = relationship()
    balances: Mapped[list[EmployeeBenefitBalance]] = relationship(back_populates="employee")

    def __repr__(self) -> str:
        return f"<Employee {self.id} {self.nik}>"
