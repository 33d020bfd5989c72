"""Balance Store - running balance per (employee, budget) pair.

Every mutation follows the same sequence inside one savepoint:
lock balance row -> compute new balance -> write balance -> append ledger row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from benefits_engine.config import LedgerPolicy, get_policy
from benefits_engine.database import lock_balance_row
from benefits_engine.models import BalanceTransaction, BenefitBudget, EmployeeBenefitBalance
from benefits_engine.services.errors import (
    ConcurrentUpdateConflictError,
    InsufficientBalanceError,
)
from benefits_engine.services.ledger_service import (
    PostResult,
    ReferenceType,
    TransactionLedger,
    TransactionType,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BalanceChange:
    """Result of apply_delta."""

    balance: EmployeeBenefitBalance
    post: PostResult
    balance_before: Decimal
    balance_after: Decimal

    @property
    def applied(self) -> bool:
        """False when the idempotency key had already been applied."""
        return self.post.is_new


@dataclass(frozen=True)
class ReplayResult:
    """Balance rebuilt from the ledger."""

    balance: Decimal
    entries: int
    chain_breaks: list[str]

    @property
    def is_consistent(self) -> bool:
        return not self.chain_breaks


@dataclass(frozen=True)
class RecomputeResult:
    """Outcome of recalculating one pair."""

    employee_id: int
    benefit_budget_id: int
    benefit_type_id: int
    old_balance: Decimal
    calculated_balance: Decimal
    created: bool

    @property
    def difference(self) -> Decimal:
        return self.calculated_balance - self.old_balance


class BalanceStore:
    """Serialized read-modify-write of employee balances.

    Notes:
    - The balance row lock is held until the caller's transaction ends.
    - A lost update detected by the version column is retried a bounded
      number of times, then surfaced as ConcurrentUpdateConflictError.
    """

    def __init__(
        self,
        session: Session,
        ledger: TransactionLedger | None = None,
        policy: LedgerPolicy | None = None,
    ):
        self.session = session
        self.ledger = ledger or TransactionLedger(session)
        self.policy = policy or get_policy()

    def get_or_create(self, employee_id: int, budget: BenefitBudget) -> EmployeeBenefitBalance:
        """Lock the balance row, creating it at the budget amount if missing."""
        balance = lock_balance_row(self.session, employee_id, budget.id)
        if balance is not None:
            return balance

        try:
            with self.session.begin_nested():
                balance = EmployeeBenefitBalance(
                    employee_id=employee_id,
                    benefit_budget_id=budget.id,
                    current_balance=Decimal(budget.budget),
                )
                self.session.add(balance)
                self.session.flush()
            logger.info(
                "Created balance for employee %s budget %s at %s",
                employee_id,
                budget.id,
                budget.budget,
            )
            return balance
        except IntegrityError:
            # Created by a concurrent writer; take its row.
            balance = lock_balance_row(self.session, employee_id, budget.id)
            if balance is None:
                raise
            return balance

    def apply_delta(
        self,
        employee_id: int,
        budget: BenefitBudget,
        signed_amount: Decimal,
        *,
        reference_type: ReferenceType | str,
        reference_id: int | None = None,
        description: str | None = None,
        processed_by: int | None = None,
        idempotency_key: str | None = None,
        floor: Decimal | None = None,
    ) -> BalanceChange:
        """Move a balance and record the movement.

        Args:
            employee_id: Employee whose balance moves
            budget: Envelope the balance belongs to
            signed_amount: Positive to credit, negative to debit
            reference_type: claim or adjustment
            reference_id: Claim id for claim movements
            description: Text for the ledger row
            processed_by: Optional acting user
            idempotency_key: Skip the movement if this key was already applied
            floor: If set, a debit may not take the balance below it

        Returns:
            BalanceChange with the before/after balances and the ledger row
        """
        signed_amount = Decimal(signed_amount)
        if signed_amount == 0:
            raise ValueError("Amount must be non-zero")

        attempts = max(1, self.policy.max_lock_retries)
        for attempt in range(1, attempts + 1):
            try:
                return self._apply_once(
                    employee_id,
                    budget,
                    signed_amount,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    description=description,
                    processed_by=processed_by,
                    idempotency_key=idempotency_key,
                    floor=floor,
                )
            except StaleDataError:
                logger.warning(
                    "Stale balance for employee %s budget %s (attempt %d/%d)",
                    employee_id,
                    budget.id,
                    attempt,
                    attempts,
                )

        raise ConcurrentUpdateConflictError(employee_id, budget.id, attempts)

    def _apply_once(
        self,
        employee_id: int,
        budget: BenefitBudget,
        signed_amount: Decimal,
        *,
        reference_type: ReferenceType | str,
        reference_id: int | None,
        description: str | None,
        processed_by: int | None,
        idempotency_key: str | None,
        floor: Decimal | None,
    ) -> BalanceChange:
        with self.session.begin_nested():
            balance = self.get_or_create(employee_id, budget)
            before = Decimal(balance.current_balance)

            if idempotency_key is not None:
                existing = self.ledger.find_by_key(idempotency_key)
                if existing is not None:
                    return BalanceChange(
                        balance=balance,
                        post=PostResult(transaction=existing, is_new=False),
                        balance_before=before,
                        balance_after=before,
                    )

            after = before + signed_amount
            if floor is not None and signed_amount < 0 and after < floor:
                raise InsufficientBalanceError(
                    requested=-signed_amount,
                    available=before - floor,
                    benefit_type=budget.benefit_type.name if budget.benefit_type else "Unknown",
                )

            if after < 0:
                logger.warning(
                    "Balance for employee %s budget %s goes negative: %s -> %s",
                    employee_id,
                    budget.id,
                    before,
                    after,
                )

            balance.current_balance = after
            post = self.ledger.append(
                employee_id=employee_id,
                benefit_type_id=budget.benefit_type_id,
                benefit_budget_id=budget.id,
                transaction_type=(
                    TransactionType.CREDIT if signed_amount > 0 else TransactionType.DEBIT
                ),
                amount=abs(signed_amount),
                balance_before=before,
                balance_after=after,
                reference_type=reference_type,
                reference_id=reference_id,
                description=description,
                processed_by=processed_by,
                year=budget.year,
                idempotency_key=idempotency_key,
            )
            return BalanceChange(
                balance=balance,
                post=post,
                balance_before=before,
                balance_after=after,
            )

    def replay(self, employee_id: int, budget: BenefitBudget) -> ReplayResult:
        """Rebuild a balance from the budget amount and the ledger.

        Also reports rows whose balance_before does not continue the previous
        row's balance_after.
        """
        running = Decimal(budget.budget)
        breaks: list[str] = []
        entries: list[BalanceTransaction] = self.ledger.entries_for(employee_id, budget.id)

        previous_after: Decimal | None = None
        for txn in entries:
            if previous_after is not None and Decimal(txn.balance_before) != previous_after:
                breaks.append(txn.transaction_id)
            running += txn.signed_amount
            previous_after = Decimal(txn.balance_after)

        return ReplayResult(balance=running, entries=len(entries), chain_breaks=breaks)

    def recompute_from_ledger(self, employee_id: int, budget: BenefitBudget) -> Decimal:
        """Authoritative balance for a pair. Read-only."""
        return self.replay(employee_id, budget).balance

    def recalculate(
        self,
        employee_id: int,
        budget: BenefitBudget,
        *,
        dry_run: bool = False,
    ) -> RecomputeResult:
        """Overwrite the running balance with the ledger replay, under lock."""
        with self.session.begin_nested():
            existing = lock_balance_row(self.session, employee_id, budget.id)
            calculated = self.recompute_from_ledger(employee_id, budget)
            old = Decimal(existing.current_balance) if existing is not None else Decimal(budget.budget)

            created = False
            if not dry_run:
                if existing is None:
                    self.session.add(
                        EmployeeBenefitBalance(
                            employee_id=employee_id,
                            benefit_budget_id=budget.id,
                            current_balance=calculated,
                        )
                    )
                    created = True
                elif Decimal(existing.current_balance) != calculated:
                    existing.current_balance = calculated
                self.session.flush()

        return RecomputeResult(
            employee_id=employee_id,
            benefit_budget_id=budget.id,
            benefit_type_id=budget.benefit_type_id,
            old_balance=old,
            calculated_balance=calculated,
            created=created,
        )
