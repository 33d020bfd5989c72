"""Balance Management Service - operator-facing balance operations."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from benefits_engine.config import LedgerPolicy, get_policy
from benefits_engine.models import (
    BalanceTransaction,
    BenefitBudget,
    BenefitClaim,
    Employee,
    EmployeeBenefitBalance,
    utcnow,
)
from benefits_engine.reports.cache import NullReportCache, ReportCache, make_cache_key
from benefits_engine.services.balance_store import BalanceStore
from benefits_engine.services.budget_resolver import BudgetResolver
from benefits_engine.services.errors import NotFoundError
from benefits_engine.services.ledger_service import (
    HistoryFilters,
    Page,
    ReferenceType,
    TransactionLedger,
)
from benefits_engine.services.reconciler import ClaimReconciler, RetryReport
from benefits_engine.services.state_machine import ClaimStatus

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def _pct(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= 0:
        return Decimal("0")
    return (part / whole * HUNDRED).quantize(Decimal("0.01"))


def _employee_ref(employee: Employee) -> dict[str, Any]:
    return {
        "id": employee.id,
        "name": employee.name,
        "nik": employee.nik,
        "department": employee.department,
    }


def _benefit_type_ref(budget: BenefitBudget) -> dict[str, Any]:
    return {
        "id": budget.benefit_type_id,
        "name": budget.benefit_type.name if budget.benefit_type else "Unknown",
    }


@dataclass(frozen=True)
class AvailabilityCheck:
    """Whether a balance covers a requested amount."""

    employee_id: int
    benefit_type_id: int
    benefit_type: str
    year: int
    current_balance: Decimal
    requested_amount: Decimal | None

    @property
    def sufficient(self) -> bool:
        if self.requested_amount is None:
            return self.current_balance > 0
        return self.current_balance >= self.requested_amount

    @property
    def remaining_after_claim(self) -> Decimal | None:
        if self.requested_amount is None or not self.sufficient:
            return None
        return self.current_balance - self.requested_amount

    @property
    def shortage_amount(self) -> Decimal | None:
        if self.requested_amount is None or self.sufficient:
            return None
        return self.requested_amount - self.current_balance


@dataclass(frozen=True)
class AdjustmentResult:
    """A manual balance correction."""

    adjustment_id: str
    employee_id: int
    benefit_budget_id: int
    benefit_type_id: int
    adjustment_type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reason: str
    transaction: BalanceTransaction


@dataclass(frozen=True)
class RecalculationScope:
    """Which pairs a recalculation touches. Empty lists mean all."""

    year: int
    employee_ids: list[int] = field(default_factory=list)
    benefit_type_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class Discrepancy:
    employee_id: int
    benefit_type_id: int
    benefit_budget_id: int
    old_balance: Decimal
    calculated_balance: Decimal

    @property
    def difference(self) -> Decimal:
        return self.calculated_balance - self.old_balance


@dataclass(frozen=True)
class RecalculationReport:
    """What a recalculation run found and fixed."""

    year: int
    recalculated_employees: int
    recalculated_balances: int
    discrepancies: list[Discrepancy]
    dry_run: bool
    processed_at: datetime

    @property
    def discrepancies_found(self) -> int:
        return len(self.discrepancies)


@dataclass(frozen=True)
class InitializationResult:
    year: int
    employees: int
    created: int
    skipped: int


class BalanceManagementService:
    """Summary, history, adjustment, recalculation and alerting for balances.

    Notes:
    - Writes go through BalanceStore so every movement is ledgered.
    - recalculate_balances commits after each pair when ``commit_each`` is
      set, so no lock is held across the whole run.
    """

    def __init__(
        self,
        session: Session,
        policy: LedgerPolicy | None = None,
        cache: ReportCache | None = None,
        alerts_ttl_seconds: int = 300,
    ):
        self.session = session
        self.policy = policy or get_policy()
        self.cache = cache or NullReportCache()
        self.alerts_ttl_seconds = alerts_ttl_seconds
        self.resolver = BudgetResolver(session)
        self.ledger = TransactionLedger(session)
        self.store = BalanceStore(session, self.ledger, self.policy)

    def overdraft_limit(self, budget_amount: Decimal, benefit_type_name: str | None) -> Decimal:
        return self.policy.overdraft_limit(budget_amount, benefit_type_name)

    def _current_balance(self, employee_id: int, budget: BenefitBudget) -> Decimal:
        balance = self.resolver.find_balance(employee_id, budget.id)
        if balance is None:
            return Decimal(budget.budget)
        return Decimal(balance.current_balance)

    def _claim_stats(self, employee_id: int, benefit_type_id: int, year: int) -> tuple[int, date | None]:
        """Count and latest date of approved claims on an envelope."""
        count, last = self.session.execute(
            select(func.count(BenefitClaim.id), func.max(BenefitClaim.claim_date)).where(
                BenefitClaim.employee_id == employee_id,
                BenefitClaim.benefit_type_id == benefit_type_id,
                BenefitClaim.status == ClaimStatus.APPROVED.value,
                BenefitClaim.deleted_at.is_(None),
                BenefitClaim.claim_date >= date(year, 1, 1),
                BenefitClaim.claim_date <= date(year, 12, 31),
            )
        ).one()
        return count or 0, last

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_summary(self, employee_id: int, year: int | None = None) -> dict[str, Any]:
        """Per-envelope balances of an employee for a year, with totals."""
        year = year or date.today().year
        employee = self.resolver.get_employee(employee_id)

        balances = []
        total_initial = total_used = total_current = Decimal("0")
        for budget in self.resolver.budgets_for_employee(employee, year):
            initial = Decimal(budget.budget)
            current = self._current_balance(employee.id, budget)
            used = initial - current

            claim_count, last_claim_date = self._claim_stats(
                employee.id, budget.benefit_type_id, year
            )

            balances.append(
                {
                    "benefit_budget_id": budget.id,
                    "benefit_type": _benefit_type_ref(budget),
                    "initial_balance": initial,
                    "used_amount": used,
                    "current_balance": current,
                    "usage_percentage": _pct(used, initial),
                    "last_claim_date": last_claim_date,
                    "total_claims": claim_count,
                }
            )
            total_initial += initial
            total_used += used
            total_current += current

        return {
            "employee": _employee_ref(employee),
            "year": year,
            "balances": balances,
            "summary": {
                "total_initial_balance": total_initial,
                "total_used_amount": total_used,
                "total_current_balance": total_current,
                "overall_usage_percentage": _pct(total_used, total_initial),
            },
        }

    def check_available(
        self,
        employee_id: int,
        benefit_type_id: int,
        year: int,
        amount: Decimal | None = None,
    ) -> AvailabilityCheck:
        """Current balance of an envelope, compared with ``amount`` if given.

        Unlike the submission rule this raises NotFoundError for a missing
        employee or budget, and treats a missing balance row as untouched.
        """
        resolved = self.resolver.resolve_for_year(
            employee_id, year, benefit_type_id, require_balance=False
        )
        current = (
            Decimal(resolved.balance.current_balance)
            if resolved.balance is not None
            else Decimal(resolved.budget.budget)
        )
        return AvailabilityCheck(
            employee_id=employee_id,
            benefit_type_id=benefit_type_id,
            benefit_type=resolved.benefit_type_name,
            year=year,
            current_balance=current,
            requested_amount=Decimal(amount) if amount is not None else None,
        )

    def get_history(
        self,
        employee_id: int,
        filters: HistoryFilters | None = None,
        *,
        page: int = 1,
        per_page: int = 20,
        descending: bool = True,
    ) -> Page:
        """Ledger rows of an employee, newest first by default."""
        self.resolver.get_employee(employee_id)
        return self.ledger.history(
            employee_id,
            filters,
            page=page,
            per_page=per_page,
            descending=descending,
        )

    def get_balance_status(self, employee_id: int, benefit_type_id: int, year: int) -> dict[str, Any]:
        """Balance with overdraft position and a coarse status."""
        resolved = self.resolver.resolve_for_year(
            employee_id, year, benefit_type_id, require_balance=False
        )
        budget = resolved.budget
        initial = Decimal(budget.budget)
        current = self._current_balance(employee_id, budget)
        limit = self.overdraft_limit(initial, resolved.benefit_type_name)
        used = initial - current

        if current < 0:
            status = "overdraft_allowed" if current >= limit else "overdraft_exceeded"
        elif current < initial * self.policy.low_balance_ratio:
            status = "low_balance"
        else:
            status = "sufficient"

        return {
            "employee": _employee_ref(resolved.employee),
            "benefit_type": _benefit_type_ref(budget),
            "year": year,
            "balance_info": {
                "initial_budget": initial,
                "current_balance": current,
                "used_amount": used,
                "overdraft_limit": limit,
                "available_credit": max(Decimal("0"), current),
                "available_overdraft": max(Decimal("0"), current - limit),
                "status": status,
                "is_overdrawn": current < 0,
                "overdraft_amount": -current if current < 0 else Decimal("0"),
                "usage_percentage": _pct(used, initial),
            },
        }

    def get_low_balance_alerts(self, threshold_pct: Decimal | float = 20, year: int | None = None) -> dict[str, Any]:
        """Balances whose remaining share is at or below ``threshold_pct``, or overdrawn."""
        year = year or date.today().year
        threshold = Decimal(str(threshold_pct))
        key = make_cache_key("low-balance-alerts", {"threshold": str(threshold), "year": year})
        return self.cache.get_or_set(
            key,
            self.alerts_ttl_seconds,
            lambda: self._build_low_balance_alerts(threshold, year),
        )

    def _alert_level(self, current: Decimal, limit: Decimal, remaining_pct: Decimal) -> str:
        if current < limit:
            return "critical_overdraft_exceeded"
        if current < 0:
            return "critical_overdrawn"
        if remaining_pct <= 5:
            return "critical"
        if remaining_pct <= 10:
            return "high"
        return "warning"

    def _build_low_balance_alerts(self, threshold: Decimal, year: int) -> dict[str, Any]:
        rows = self.session.execute(
            select(EmployeeBenefitBalance, BenefitBudget, Employee)
            .join(BenefitBudget, BenefitBudget.id == EmployeeBenefitBalance.benefit_budget_id)
            .join(Employee, Employee.id == EmployeeBenefitBalance.employee_id)
            .where(
                BenefitBudget.year == year,
                BenefitBudget.deleted_at.is_(None),
                Employee.deleted_at.is_(None),
            )
            .order_by(EmployeeBenefitBalance.id)
        ).all()

        alerts = []
        for balance, budget, employee in rows:
            initial = Decimal(budget.budget)
            current = Decimal(balance.current_balance)
            used = initial - current
            usage_pct = _pct(used, initial)
            remaining_pct = HUNDRED - usage_pct
            limit = self.overdraft_limit(initial, budget.benefit_type.name if budget.benefit_type else None)
            overdrawn = current < 0

            if remaining_pct > threshold and not overdrawn:
                continue

            alerts.append(
                {
                    "employee": _employee_ref(employee),
                    "benefit_type": _benefit_type_ref(budget),
                    "benefit_budget_id": budget.id,
                    "initial_balance": initial,
                    "current_balance": current,
                    "used_amount": used,
                    "usage_percentage": usage_pct,
                    "remaining_percentage": remaining_pct,
                    "alert_level": self._alert_level(current, limit, remaining_pct),
                    "overdraft_info": {
                        "is_overdrawn": overdrawn,
                        "overdraft_amount": -current if overdrawn else Decimal("0"),
                        "overdraft_limit": limit,
                        "exceeds_overdraft_limit": current < limit,
                        "available_overdraft": max(Decimal("0"), current - limit),
                    },
                }
            )

        alerts.sort(key=lambda a: a["remaining_percentage"])
        return {
            "threshold_percentage": threshold,
            "year": year,
            "alerts": alerts,
            "total_alerts": len(alerts),
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def adjust_balance(
        self,
        employee_id: int,
        budget_id: int,
        amount: Decimal,
        reason: str,
        processed_by: int | None = None,
        *,
        allow_overdraft: bool = False,
    ) -> AdjustmentResult:
        """Manually correct a balance; positive credits, negative debits.

        A debit may not go past the overdraft limit unless ``allow_overdraft``.
        """
        amount = Decimal(amount)
        if amount == 0:
            raise ValueError("Adjustment amount must be non-zero")
        if not reason or not reason.strip():
            raise ValueError("Adjustment reason is required")

        self.resolver.get_employee(employee_id)
        budget = self.session.get(BenefitBudget, budget_id)
        if budget is None or budget.deleted_at is not None:
            raise NotFoundError("BenefitBudget", budget_id)

        floor = None
        if not allow_overdraft:
            floor = self.overdraft_limit(
                budget.budget, budget.benefit_type.name if budget.benefit_type else None
            )

        change = self.store.apply_delta(
            employee_id,
            budget,
            amount,
            reference_type=ReferenceType.ADJUSTMENT,
            description=f"Manual adjustment: {reason.strip()}",
            processed_by=processed_by,
            floor=floor,
        )
        adjustment_id = f"ADJ-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"
        logger.info(
            "Adjusted balance of employee %s budget %s by %s (%s): %s",
            employee_id,
            budget_id,
            amount,
            adjustment_id,
            reason,
        )
        return AdjustmentResult(
            adjustment_id=adjustment_id,
            employee_id=employee_id,
            benefit_budget_id=budget.id,
            benefit_type_id=budget.benefit_type_id,
            adjustment_type="increase" if amount > 0 else "decrease",
            amount=abs(amount),
            balance_before=change.balance_before,
            balance_after=change.balance_after,
            reason=reason.strip(),
            transaction=change.post.transaction,
        )

    def _employees_in_scope(self, employee_ids: list[int]) -> list[Employee]:
        query = select(Employee).where(Employee.deleted_at.is_(None)).order_by(Employee.id)
        if employee_ids:
            query = query.where(Employee.id.in_(employee_ids))
        return list(self.session.scalars(query))

    def _budgets_in_scope(self, employee: Employee, scope: RecalculationScope) -> list[BenefitBudget]:
        budgets = {
            b.id: b
            for b in self.resolver.budgets_for_employee(
                employee, scope.year, scope.benefit_type_ids or None
            )
        }

        # Pairs that no longer match the employee's cohort are still replayed.
        query = (
            select(BenefitBudget)
            .join(EmployeeBenefitBalance, EmployeeBenefitBalance.benefit_budget_id == BenefitBudget.id)
            .where(
                EmployeeBenefitBalance.employee_id == employee.id,
                BenefitBudget.year == scope.year,
            )
        )
        if scope.benefit_type_ids:
            query = query.where(BenefitBudget.benefit_type_id.in_(scope.benefit_type_ids))
        for budget in self.session.scalars(query):
            budgets.setdefault(budget.id, budget)

        return [budgets[k] for k in sorted(budgets)]

    def recalculate_balances(
        self,
        scope: RecalculationScope,
        *,
        dry_run: bool = False,
        commit_each: bool = True,
    ) -> RecalculationReport:
        """Rebuild running balances from the ledger, one pair at a time."""
        employees = self._employees_in_scope(scope.employee_ids)
        discrepancies: list[Discrepancy] = []
        balances = 0

        for employee in employees:
            for budget in self._budgets_in_scope(employee, scope):
                result = self.store.recalculate(employee.id, budget, dry_run=dry_run)
                balances += 1

                if abs(result.difference) > self.policy.recalculation_tolerance:
                    logger.warning(
                        "Balance drift for employee %s budget %s: %s -> %s",
                        employee.id,
                        budget.id,
                        result.old_balance,
                        result.calculated_balance,
                    )
                    discrepancies.append(
                        Discrepancy(
                            employee_id=employee.id,
                            benefit_type_id=budget.benefit_type_id,
                            benefit_budget_id=budget.id,
                            old_balance=result.old_balance,
                            calculated_balance=result.calculated_balance,
                        )
                    )

                if commit_each and not dry_run:
                    self.session.commit()

        report = RecalculationReport(
            year=scope.year,
            recalculated_employees=len(employees),
            recalculated_balances=balances,
            discrepancies=discrepancies,
            dry_run=dry_run,
            processed_at=utcnow(),
        )
        logger.info(
            "Recalculated %d balance(s) for %d employee(s) in %s: %d discrepancy(ies)%s",
            report.recalculated_balances,
            report.recalculated_employees,
            scope.year,
            report.discrepancies_found,
            " [dry run]" if dry_run else "",
        )
        return report

    def initialize_balances(self, year: int, employee_ids: list[int] | None = None) -> InitializationResult:
        """Create missing balance rows at their budget amount."""
        employees = self._employees_in_scope(employee_ids or [])
        created = skipped = 0

        for employee in employees:
            for budget in self.resolver.budgets_for_employee(employee, year):
                if self.resolver.find_balance(employee.id, budget.id) is not None:
                    skipped += 1
                    continue
                self.store.get_or_create(employee.id, budget)
                created += 1

        self.session.flush()
        logger.info("Initialized %d balance(s) for %s (%d already present)", created, year, skipped)
        return InitializationResult(
            year=year,
            employees=len(employees),
            created=created,
            skipped=skipped,
        )

    def retry_pending_reconciliations(
        self, limit: int = 100, *, requeue_failed: bool = False
    ) -> RetryReport:
        """Replay parked claim reconciliations.

        ``requeue_failed`` first puts items that ran out of attempts back in
        line, once their cause has been fixed.
        """
        reconciler = ClaimReconciler(
            self.session, store=self.store, resolver=self.resolver, policy=self.policy
        )
        if requeue_failed:
            reconciler.requeue_failed()
        return reconciler.retry_pending(limit)
