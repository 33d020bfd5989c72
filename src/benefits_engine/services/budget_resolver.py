"""Benefit budget resolution.

Every code path that maps an employee to a budget envelope goes through this
module so the marriage-status normalization is applied identically everywhere.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from benefits_engine.models import BenefitBudget, BenefitType, Employee, EmployeeBenefitBalance
from benefits_engine.services.errors import NotFoundError

# Employees at this level draw from marriage-status agnostic budgets.
MARRIAGE_AGNOSTIC_LEVEL_ID = 2


def effective_marriage_status_id(employee: Employee) -> int | None:
    """Marriage status used for budget lookup."""
    if employee.level_employee_id == MARRIAGE_AGNOSTIC_LEVEL_ID:
        return None
    return employee.marriage_status_id


@dataclass(frozen=True)
class ResolvedBudget:
    """Employee, the budget envelope that applies, and its balance row if any."""

    employee: Employee
    budget: BenefitBudget
    balance: EmployeeBenefitBalance | None

    @property
    def benefit_type_name(self) -> str:
        benefit_type = self.budget.benefit_type
        return benefit_type.name if benefit_type is not None else "Unknown"


class BudgetResolver:
    """Finds the budget envelope for an employee, benefit type and year."""

    def __init__(self, session: Session):
        self.session = session

    def get_employee(self, employee_id: int) -> Employee:
        """Load an active employee or raise NotFoundError."""
        employee = self.session.get(Employee, employee_id)
        if employee is None or employee.deleted_at is not None:
            raise NotFoundError("Employee", employee_id)
        return employee

    def _cohort_query(self, employee: Employee, year: int):
        marriage_status_id = effective_marriage_status_id(employee)
        query = select(BenefitBudget).where(
            BenefitBudget.level_employee_id == employee.level_employee_id,
            BenefitBudget.year == year,
            BenefitBudget.deleted_at.is_(None),
        )
        if marriage_status_id is None:
            return query.where(BenefitBudget.marriage_status_id.is_(None))
        return query.where(BenefitBudget.marriage_status_id == marriage_status_id)

    def find_budget(
        self, employee: Employee, benefit_type_id: int, year: int
    ) -> BenefitBudget | None:
        """Find the budget row for an employee, or None."""
        query = self._cohort_query(employee, year).where(
            BenefitBudget.benefit_type_id == benefit_type_id
        )
        return self.session.scalars(query.order_by(BenefitBudget.id)).first()

    def budgets_for_employee(
        self,
        employee: Employee,
        year: int,
        benefit_type_ids: Iterable[int] | None = None,
    ) -> list[BenefitBudget]:
        """All budget rows that apply to an employee in a year."""
        query = self._cohort_query(employee, year)
        if benefit_type_ids:
            query = query.where(BenefitBudget.benefit_type_id.in_(list(benefit_type_ids)))
        return list(self.session.scalars(query.order_by(BenefitBudget.benefit_type_id)))

    def find_balance(self, employee_id: int, budget_id: int) -> EmployeeBenefitBalance | None:
        """Balance row for an (employee, budget) pair, unlocked."""
        return self.session.scalars(
            select(EmployeeBenefitBalance).where(
                EmployeeBenefitBalance.employee_id == employee_id,
                EmployeeBenefitBalance.benefit_budget_id == budget_id,
            )
        ).one_or_none()

    def resolve_for_year(
        self,
        employee_id: int,
        year: int,
        benefit_type_id: int,
        *,
        require_balance: bool = True,
    ) -> ResolvedBudget:
        """Resolve the envelope for a year.

        Raises NotFoundError if the employee or budget is missing, or if the
        balance row is missing and ``require_balance`` is set.
        """
        employee = self.get_employee(employee_id)
        budget = self.find_budget(employee, benefit_type_id, year)
        if budget is None:
            raise NotFoundError(
                "BenefitBudget",
                {
                    "employee_id": employee_id,
                    "benefit_type_id": benefit_type_id,
                    "year": year,
                },
            )

        balance = self.find_balance(employee.id, budget.id)
        if balance is None and require_balance:
            raise NotFoundError(
                "EmployeeBenefitBalance",
                {"employee_id": employee_id, "benefit_budget_id": budget.id},
            )
        return ResolvedBudget(employee=employee, budget=budget, balance=balance)

    def resolve(
        self,
        employee_id: int,
        claim_date: date,
        benefit_type_id: int,
        *,
        require_balance: bool = True,
    ) -> ResolvedBudget:
        """Resolve the envelope a claim dated ``claim_date`` draws from."""
        return self.resolve_for_year(
            employee_id,
            claim_date.year,
            benefit_type_id,
            require_balance=require_balance,
        )

    def benefit_type_name(self, benefit_type_id: int) -> str:
        """Display name of a benefit type, "Unknown" if missing."""
        benefit_type = self.session.get(BenefitType, benefit_type_id)
        return benefit_type.name if benefit_type is not None else "Unknown"
