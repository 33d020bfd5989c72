"""Transaction Ledger - append-only record of balance movements.

Provides:
- Append of debit/credit rows with before/after balance snapshots
- Idempotency via a unique, optional idempotency_key
- Filtered, paginated history
- Ordered replay of an (employee, budget) pair
"""

from __future__ import annotations

import math
import secrets
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from benefits_engine.models import BalanceTransaction, utcnow


class TransactionType(str, Enum):
    """Direction of a balance movement."""

    DEBIT = "debit"
    CREDIT = "credit"


class ReferenceType(str, Enum):
    """What caused a balance movement."""

    CLAIM = "claim"
    ADJUSTMENT = "adjustment"


def generate_transaction_id(now: datetime | None = None) -> str:
    """External reference for a ledger row: TXN-<timestamp>-<random>."""
    stamp = (now or utcnow()).strftime("%Y%m%d%H%M%S")
    return f"TXN-{stamp}-{secrets.token_hex(4).upper()}"


@dataclass(frozen=True)
class PostResult:
    """Result of a ledger append.

    ``is_new=False`` means the idempotency key was already used and the
    existing row was returned; no balance change should follow.
    """

    transaction: BalanceTransaction
    is_new: bool

    @property
    def was_duplicate(self) -> bool:
        return not self.is_new


@dataclass(frozen=True)
class HistoryFilters:
    """Optional filters for ledger history queries."""

    benefit_type_id: int | None = None
    benefit_budget_id: int | None = None
    year: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    transaction_type: str | None = None
    reference_type: str | None = None


@dataclass(frozen=True)
class Page:
    """One page of ledger rows."""

    items: list[BalanceTransaction]
    total: int
    page: int
    per_page: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))


def _start_of(day: date) -> datetime:
    if isinstance(day, datetime):
        return day
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _end_of(day: date) -> datetime:
    if isinstance(day, datetime):
        return day
    return datetime.combine(day + timedelta(days=1), time.min, tzinfo=timezone.utc)


class TransactionLedger:
    """Append-only ledger of balance transactions.

    Notes:
    - This is a recorder, not a gate: it performs no balance validation.
    - Callers hold the balance row lock when appending so that row order for a
      pair follows the order deltas were applied.
    """

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        *,
        employee_id: int,
        benefit_type_id: int,
        benefit_budget_id: int,
        transaction_type: TransactionType | str,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        reference_type: ReferenceType | str,
        year: int,
        reference_id: int | None = None,
        description: str | None = None,
        processed_by: int | None = None,
        idempotency_key: str | None = None,
    ) -> PostResult:
        """Append one ledger row.

        Args:
            employee_id: Employee whose balance moved
            benefit_type_id: Benefit type of the envelope
            benefit_budget_id: Budget envelope the balance belongs to
            transaction_type: debit or credit
            amount: Positive amount moved
            balance_before: Balance before the movement
            balance_after: Balance after the movement
            reference_type: claim or adjustment
            year: Budget year
            reference_id: Claim id for claim movements
            description: Free text shown in history
            processed_by: Optional user who caused the movement
            idempotency_key: Optional key for deduplication

        Returns:
            PostResult with the row and whether it was newly created
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError("Amount must be positive")

        transaction_type = TransactionType(transaction_type)
        reference_type = ReferenceType(reference_type)

        if idempotency_key is not None:
            existing = self.find_by_key(idempotency_key)
            if existing is not None:
                return PostResult(transaction=existing, is_new=False)

        txn = BalanceTransaction(
            transaction_id=generate_transaction_id(),
            idempotency_key=idempotency_key,
            employee_id=employee_id,
            benefit_type_id=benefit_type_id,
            benefit_budget_id=benefit_budget_id,
            transaction_type=transaction_type.value,
            amount=amount,
            balance_before=Decimal(balance_before),
            balance_after=Decimal(balance_after),
            reference_type=reference_type.value,
            reference_id=reference_id,
            description=description,
            processed_by=processed_by,
            year=year,
        )
        self.session.add(txn)
        self.session.flush()
        return PostResult(transaction=txn, is_new=True)

    def find_by_key(self, idempotency_key: str) -> BalanceTransaction | None:
        """Row previously appended with this idempotency key."""
        return self.session.scalars(
            select(BalanceTransaction).where(
                BalanceTransaction.idempotency_key == idempotency_key
            )
        ).one_or_none()

    def history(
        self,
        employee_id: int,
        filters: HistoryFilters | None = None,
        *,
        page: int = 1,
        per_page: int = 20,
        descending: bool = False,
    ) -> Page:
        """Ledger rows for an employee, oldest first unless ``descending``."""
        if page < 1:
            raise ValueError("Page must be at least 1")
        if per_page < 1:
            raise ValueError("Per page must be at least 1")

        filters = filters or HistoryFilters()
        query = select(BalanceTransaction).where(BalanceTransaction.employee_id == employee_id)

        if filters.benefit_type_id is not None:
            query = query.where(BalanceTransaction.benefit_type_id == filters.benefit_type_id)
        if filters.benefit_budget_id is not None:
            query = query.where(BalanceTransaction.benefit_budget_id == filters.benefit_budget_id)
        if filters.year is not None:
            query = query.where(BalanceTransaction.year == filters.year)
        if filters.start_date is not None:
            query = query.where(BalanceTransaction.created_at >= _start_of(filters.start_date))
        if filters.end_date is not None:
            query = query.where(BalanceTransaction.created_at < _end_of(filters.end_date))
        if filters.transaction_type:
            query = query.where(
                BalanceTransaction.transaction_type == TransactionType(filters.transaction_type).value
            )
        if filters.reference_type:
            query = query.where(
                BalanceTransaction.reference_type == ReferenceType(filters.reference_type).value
            )

        total = self.session.scalar(select(func.count()).select_from(query.subquery())) or 0

        if descending:
            query = query.order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
        else:
            query = query.order_by(BalanceTransaction.created_at, BalanceTransaction.id)
        query = query.offset((page - 1) * per_page).limit(per_page)

        return Page(
            items=list(self.session.scalars(query)),
            total=total,
            page=page,
            per_page=per_page,
        )

    def entries_for(self, employee_id: int, benefit_budget_id: int) -> list[BalanceTransaction]:
        """Every row of one (employee, budget) pair in replay order."""
        return list(
            self.session.scalars(
                select(BalanceTransaction)
                .where(
                    BalanceTransaction.employee_id == employee_id,
                    BalanceTransaction.benefit_budget_id == benefit_budget_id,
                )
                .order_by(BalanceTransaction.created_at, BalanceTransaction.id)
            )
        )

    def claim_entries(self, claim_id: int) -> list[BalanceTransaction]:
        """Rows produced by one claim, in order."""
        return list(
            self.session.scalars(
                select(BalanceTransaction)
                .where(
                    BalanceTransaction.reference_type == ReferenceType.CLAIM.value,
                    BalanceTransaction.reference_id == claim_id,
                )
                .order_by(BalanceTransaction.created_at, BalanceTransaction.id)
            )
        )

    def last_claim_budget_id(self, claim_id: int, ledger_key: str | None = None) -> int | None:
        """Budget the claim was most recently debited against.

        With ``ledger_key`` only rows keyed to that claim count.
        """
        query = select(BalanceTransaction.benefit_budget_id).where(
            BalanceTransaction.reference_type == ReferenceType.CLAIM.value,
            BalanceTransaction.reference_id == claim_id,
            BalanceTransaction.transaction_type == TransactionType.DEBIT.value,
        )
        if ledger_key:
            query = query.where(
                BalanceTransaction.idempotency_key.like(f"claim:{claim_id}:{ledger_key}:%")
            )
        return self.session.scalar(
            query
            .order_by(BalanceTransaction.created_at.desc(), BalanceTransaction.id.desc())
            .limit(1)
        )
