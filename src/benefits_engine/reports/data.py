"""Read-only data access for reports.

Reports only ever see approved, non-deleted claims.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import distinct, func, or_, select
from sqlalchemy.orm import Session

from benefits_engine.models import (
    BenefitBudget,
    BenefitClaim,
    BenefitType,
    Employee,
    EmployeeBenefitBalance,
    LevelEmployee,
)
from benefits_engine.services.budget_resolver import effective_marriage_status_id
from benefits_engine.services.state_machine import ClaimStatus


@dataclass(frozen=True)
class ClaimRow:
    """Flattened approved claim with the attributes reports group on."""

    id: int
    employee_id: int
    department: str | None
    level_id: int | None
    level_name: str | None
    benefit_type_id: int
    benefit_type_name: str | None
    amount: Decimal
    claim_date: date


@dataclass(frozen=True)
class BudgetGroup:
    """A group budget-vs-actual is computed for."""

    id: int | str
    name: str


@dataclass(frozen=True)
class BudgetLine:
    benefit_type_id: int
    benefit_type_name: str
    budget: Decimal


class ReportData:
    """Queries shared by the report builders."""

    def __init__(self, session: Session):
        self.session = session

    def _claims_query(self):
        return (
            select(
                BenefitClaim.id,
                BenefitClaim.employee_id,
                Employee.department,
                LevelEmployee.id,
                LevelEmployee.name,
                BenefitClaim.benefit_type_id,
                BenefitType.name,
                BenefitClaim.amount,
                BenefitClaim.claim_date,
            )
            .join(Employee, Employee.id == BenefitClaim.employee_id)
            .outerjoin(LevelEmployee, LevelEmployee.id == Employee.level_employee_id)
            .outerjoin(BenefitType, BenefitType.id == BenefitClaim.benefit_type_id)
            .where(
                BenefitClaim.status == ClaimStatus.APPROVED.value,
                BenefitClaim.deleted_at.is_(None),
            )
        )

    def claims_for_period(
        self,
        start_date: date,
        end_date: date,
        *,
        department: str | None = None,
        benefit_type_id: int | None = None,
        employee_level_id: int | None = None,
        employee_id: int | None = None,
    ) -> list[ClaimRow]:
        """Approved claims dated within [start_date, end_date]."""
        query = self._claims_query().where(
            BenefitClaim.claim_date >= start_date,
            BenefitClaim.claim_date <= end_date,
        )
        if department:
            query = query.where(Employee.department == department)
        if benefit_type_id:
            query = query.where(BenefitClaim.benefit_type_id == benefit_type_id)
        if employee_level_id:
            query = query.where(Employee.level_employee_id == employee_level_id)
        if employee_id:
            query = query.where(BenefitClaim.employee_id == employee_id)

        rows = self.session.execute(query.order_by(BenefitClaim.claim_date, BenefitClaim.id))
        return [ClaimRow(*row) for row in rows]

    def claims_for_year(self, year: int, **filters) -> list[ClaimRow]:
        return self.claims_for_period(date(year, 1, 1), date(year, 12, 31), **filters)

    def benefit_types(self) -> list[BenefitType]:
        return list(self.session.scalars(select(BenefitType).order_by(BenefitType.id)))

    def employees_with_balances(
        self,
        year: int,
        *,
        department: str | None = None,
        employee_level_id: int | None = None,
    ) -> list[Employee]:
        """Active employees holding at least one balance for the year."""
        holders = (
            select(EmployeeBenefitBalance.employee_id)
            .join(BenefitBudget, BenefitBudget.id == EmployeeBenefitBalance.benefit_budget_id)
            .where(BenefitBudget.year == year)
        )
        query = select(Employee).where(
            Employee.id.in_(holders),
            Employee.deleted_at.is_(None),
        )
        if department:
            query = query.where(Employee.department == department)
        if employee_level_id:
            query = query.where(Employee.level_employee_id == employee_level_id)
        return list(self.session.scalars(query.order_by(Employee.id)))

    def budget_lines_for(self, employee: Employee, year: int) -> list[BudgetLine]:
        """Budgets counted towards an employee's allocation.

        Includes marriage-agnostic budgets of the level as well as those
        matching the employee's marriage status.
        """
        marriage_status_id = effective_marriage_status_id(employee)
        cohort = BenefitBudget.marriage_status_id.is_(None)
        if marriage_status_id is not None:
            cohort = or_(cohort, BenefitBudget.marriage_status_id == marriage_status_id)

        rows = self.session.execute(
            select(BenefitBudget.benefit_type_id, BenefitType.name, BenefitBudget.budget)
            .join(BenefitType, BenefitType.id == BenefitBudget.benefit_type_id)
            .where(
                BenefitBudget.year == year,
                BenefitBudget.level_employee_id == employee.level_employee_id,
                BenefitBudget.deleted_at.is_(None),
                cohort,
            )
            .order_by(BenefitBudget.benefit_type_id, BenefitBudget.id)
        )
        return [BudgetLine(*row) for row in rows]

    # ------------------------------------------------------------------
    # Budget-vs-actual groups
    # ------------------------------------------------------------------

    def _year_budgets(self, year: int):
        return select(BenefitBudget).where(
            BenefitBudget.year == year,
            BenefitBudget.deleted_at.is_(None),
        )

    def budget_groups(self, group_by: str, year: int) -> list[BudgetGroup]:
        budgeted = self._year_budgets(year).subquery()

        if group_by == "department":
            rows = self.session.scalars(
                select(distinct(Employee.department))
                .where(
                    Employee.level_employee_id.in_(select(budgeted.c.level_employee_id)),
                    Employee.deleted_at.is_(None),
                    Employee.department.is_not(None),
                )
                .order_by(Employee.department)
            )
            return [BudgetGroup(id=name, name=name) for name in rows]

        if group_by == "benefit_type":
            rows = self.session.execute(
                select(BenefitType.id, BenefitType.name)
                .where(BenefitType.id.in_(select(budgeted.c.benefit_type_id)))
                .order_by(BenefitType.id)
            )
            return [BudgetGroup(id=row.id, name=row.name) for row in rows]

        if group_by == "employee_level":
            rows = self.session.execute(
                select(LevelEmployee.id, LevelEmployee.name)
                .where(LevelEmployee.id.in_(select(budgeted.c.level_employee_id)))
                .order_by(LevelEmployee.id)
            )
            return [BudgetGroup(id=row.id, name=row.name) for row in rows]

        return []

    def group_budget(self, group_by: str, group: BudgetGroup, year: int) -> Decimal:
        """Sum of budget rows for a group in a year."""
        query = select(func.coalesce(func.sum(BenefitBudget.budget), 0)).where(
            BenefitBudget.year == year,
            BenefitBudget.deleted_at.is_(None),
        )
        if group_by == "department":
            levels = select(Employee.level_employee_id).where(
                Employee.department == group.id,
                Employee.deleted_at.is_(None),
            )
            query = query.where(BenefitBudget.level_employee_id.in_(levels))
        elif group_by == "benefit_type":
            query = query.where(BenefitBudget.benefit_type_id == group.id)
        elif group_by == "employee_level":
            query = query.where(BenefitBudget.level_employee_id == group.id)
        return Decimal(self.session.scalar(query) or 0)

    def group_actual(self, group_by: str, group: BudgetGroup, year: int) -> Decimal:
        """Sum of approved claim amounts for a group in a year."""
        filters = {
            "department": {"department": group.id},
            "benefit_type": {"benefit_type_id": group.id},
            "employee_level": {"employee_level_id": group.id},
        }[group_by]
        return sum((c.amount for c in self.claims_for_year(year, **filters)), Decimal("0"))
