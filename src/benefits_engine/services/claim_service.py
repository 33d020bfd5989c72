"""Claim write path.

Persists claim changes and reconciles their ledger effects in the caller's
transaction. Callers commit (or roll back) once per request.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from benefits_engine.config import LedgerPolicy, get_policy
from benefits_engine.models import BenefitClaim, BenefitType, Employee, utcnow
from benefits_engine.services.balance_validation import BalanceValidationRule
from benefits_engine.services.budget_resolver import BudgetResolver
from benefits_engine.services.errors import InvalidClaimError, NotFoundError
from benefits_engine.services.reconciler import ClaimReconciler, ReconciliationOutcome
from benefits_engine.services.state_machine import (
    ClaimEvent,
    ClaimLedgerStateMachine,
    ClaimSnapshot,
    ClaimStatus,
)

logger = logging.getLogger(__name__)

MAX_CLAIM_AMOUNT = Decimal("999999999999.99")

# Inserts retried when a concurrent submission took the same claim number.
CLAIM_NUMBER_ATTEMPTS = 3

SORTABLE_FIELDS = {
    "id": BenefitClaim.id,
    "claim_date": BenefitClaim.claim_date,
    "amount": BenefitClaim.amount,
    "status": BenefitClaim.status,
    "created_at": BenefitClaim.created_at,
    "updated_at": BenefitClaim.updated_at,
}


@dataclass(frozen=True)
class ClaimChanges:
    """Fields to change on a claim. None leaves a field unchanged."""

    amount: Decimal | None = None
    status: str | None = None
    claim_date: date | None = None
    benefit_type_id: int | None = None
    description: str | None = None
    notes: str | None = None
    receipt_file: str | None = None


@dataclass(frozen=True)
class ClaimFilters:
    """Filters for listing claims."""

    employee_id: int | None = None
    benefit_type_id: int | None = None
    status: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    search: str | None = None
    include_deleted: bool = False


@dataclass(frozen=True)
class ClaimResult:
    """A written claim and what its reconciliation did."""

    claim: BenefitClaim
    outcome: ReconciliationOutcome


@dataclass(frozen=True)
class ClaimPage:
    items: list[BenefitClaim]
    total: int
    page: int
    per_page: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))


class ClaimService:
    """Creates, updates and deletes benefit claims."""

    def __init__(
        self,
        session: Session,
        reconciler: ClaimReconciler | None = None,
        policy: LedgerPolicy | None = None,
    ):
        self.session = session
        self.policy = policy or get_policy()
        self.resolver = BudgetResolver(session)
        self.reconciler = reconciler or ClaimReconciler(
            session, resolver=self.resolver, policy=self.policy
        )
        self.validator = BalanceValidationRule(session, self.resolver)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_amount(amount: Decimal) -> Decimal:
        try:
            amount = Decimal(amount)
        except (ArithmeticError, TypeError, ValueError):
            raise InvalidClaimError("Amount must be a number")
        if not amount.is_finite():
            raise InvalidClaimError("Amount must be a number")
        if amount <= 0:
            raise InvalidClaimError("Amount must be greater than 0")
        if amount > MAX_CLAIM_AMOUNT:
            raise InvalidClaimError("Amount exceeds maximum limit")
        return amount.quantize(Decimal("0.01"))

    @staticmethod
    def _validate_claim_date(claim_date: date) -> date:
        if claim_date > date.today():
            raise InvalidClaimError("Claim date cannot be in the future")
        return claim_date

    @staticmethod
    def _validate_text(description: str | None, notes: str | None, receipt_file: str | None) -> None:
        if description is not None and len(description) > 1000:
            raise InvalidClaimError("Description cannot exceed 1000 characters")
        if notes is not None and len(notes) > 500:
            raise InvalidClaimError("Notes cannot exceed 500 characters")
        if receipt_file is not None and len(receipt_file) > 255:
            raise InvalidClaimError("Receipt file path cannot exceed 255 characters")

    def _require_employee(self, employee_id: int) -> Employee:
        return self.resolver.get_employee(employee_id)

    def _require_benefit_type(self, benefit_type_id: int) -> BenefitType:
        benefit_type = self.session.get(BenefitType, benefit_type_id)
        if benefit_type is None:
            raise NotFoundError("BenefitType", benefit_type_id)
        return benefit_type

    def _next_claim_number(self, year: int) -> str:
        prefix = f"CLM-{year}-"
        last = self.session.scalar(
            select(func.max(BenefitClaim.claim_number)).where(
                BenefitClaim.claim_number.like(f"{prefix}%")
            )
        )
        sequence = int(last[len(prefix):]) + 1 if last else 1
        return f"{prefix}{sequence:06d}"

    def _claim_number_taken(self, claim_number: str) -> bool:
        return (
            self.session.scalar(
                select(BenefitClaim.id).where(BenefitClaim.claim_number == claim_number)
            )
            is not None
        )

    def _insert_claim(self, fields: dict[str, object]) -> BenefitClaim:
        """Insert a claim under the next free claim number.

        Two concurrent submissions can pick the same number; the one that
        loses the unique check retries with a fresh number.
        """
        year = date.today().year
        attempt = 1
        while True:
            claim = BenefitClaim(claim_number=self._next_claim_number(year), **fields)
            try:
                with self.session.begin_nested():
                    self.session.add(claim)
                    self.session.flush()
                return claim
            except IntegrityError:
                if attempt >= CLAIM_NUMBER_ATTEMPTS or not self._claim_number_taken(
                    claim.claim_number
                ):
                    raise
                logger.warning(
                    "Claim number %s already taken (attempt %d/%d), retrying",
                    claim.claim_number,
                    attempt,
                    CLAIM_NUMBER_ATTEMPTS,
                )
                attempt += 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_claim(self, claim_id: int, *, include_deleted: bool = False) -> BenefitClaim:
        claim = self.session.get(BenefitClaim, claim_id)
        if claim is None or (claim.deleted_at is not None and not include_deleted):
            raise NotFoundError("BenefitClaim", claim_id)
        return claim

    def _get_for_update(self, claim_id: int, *, include_deleted: bool = False) -> BenefitClaim:
        claim = self.session.scalars(
            select(BenefitClaim)
            .where(BenefitClaim.id == claim_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one_or_none()
        if claim is None or (claim.deleted_at is not None and not include_deleted):
            raise NotFoundError("BenefitClaim", claim_id)
        return claim

    def list_claims(
        self,
        filters: ClaimFilters | None = None,
        *,
        page: int = 1,
        per_page: int = 10,
        sort_by: str = "claim_date",
        sort_dir: str = "desc",
    ) -> ClaimPage:
        """Filtered, sorted, paginated claims (max 100 per page)."""
        filters = filters or ClaimFilters()
        per_page = max(1, min(per_page, 100))
        page = max(1, page)

        query = select(BenefitClaim)
        if not filters.include_deleted:
            query = query.where(BenefitClaim.deleted_at.is_(None))
        if filters.employee_id is not None:
            query = query.where(BenefitClaim.employee_id == filters.employee_id)
        if filters.benefit_type_id is not None:
            query = query.where(BenefitClaim.benefit_type_id == filters.benefit_type_id)
        if filters.status:
            query = query.where(BenefitClaim.status == filters.status)
        if filters.start_date is not None:
            query = query.where(BenefitClaim.claim_date >= filters.start_date)
        if filters.end_date is not None:
            query = query.where(BenefitClaim.claim_date <= filters.end_date)
        if filters.min_amount is not None:
            query = query.where(BenefitClaim.amount >= filters.min_amount)
        if filters.max_amount is not None:
            query = query.where(BenefitClaim.amount <= filters.max_amount)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.join(Employee, Employee.id == BenefitClaim.employee_id).where(
                or_(
                    Employee.name.like(pattern),
                    Employee.nik.like(pattern),
                    BenefitClaim.description.like(pattern),
                )
            )

        total = self.session.scalar(select(func.count()).select_from(query.subquery())) or 0

        column = SORTABLE_FIELDS.get(sort_by, BenefitClaim.claim_date)
        order = column.asc() if sort_dir == "asc" else column.desc()
        query = query.order_by(order, BenefitClaim.id.desc())
        query = query.offset((page - 1) * per_page).limit(per_page)

        return ClaimPage(
            items=list(self.session.scalars(query)),
            total=total,
            page=page,
            per_page=per_page,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_claim(
        self,
        *,
        employee_id: int,
        benefit_type_id: int,
        amount: Decimal,
        claim_date: date,
        status: str = ClaimStatus.PENDING.value,
        description: str | None = None,
        notes: str | None = None,
        receipt_file: str | None = None,
        created_by: int | None = None,
        allow_overdraft: bool = False,
    ) -> ClaimResult:
        """Submit a claim.

        Raises:
            InvalidClaimError: input fails validation
            NotFoundError: employee or benefit type missing
            InsufficientBalanceError: amount exceeds the available balance;
                nothing is written
        """
        amount = self._validate_amount(amount)
        claim_date = self._validate_claim_date(claim_date)
        status = ClaimLedgerStateMachine.validate_status(status)
        self._validate_text(description, notes, receipt_file)
        self._require_employee(employee_id)
        self._require_benefit_type(benefit_type_id)

        self.validator.check(employee_id, claim_date, benefit_type_id, amount)

        fields = dict(
            employee_id=employee_id,
            benefit_type_id=benefit_type_id,
            amount=amount,
            claim_date=claim_date,
            status=status,
            description=description,
            notes=notes,
            receipt_file=receipt_file,
            created_by=created_by,
            revision=0,
        )
        with self.session.begin_nested():
            claim = self._insert_claim(fields)

            outcome = self.reconciler.reconcile(
                ClaimEvent.CREATED,
                None,
                ClaimSnapshot.from_claim(claim),
                processed_by=created_by,
                allow_overdraft=allow_overdraft,
            )
        logger.info("Created claim %s (%s, %s)", claim.claim_number, claim.status, claim.amount)
        return ClaimResult(claim=claim, outcome=outcome)

    def update_claim(
        self,
        claim_id: int,
        changes: ClaimChanges,
        *,
        processed_by: int | None = None,
        allow_overdraft: bool = False,
    ) -> ClaimResult:
        """Change a claim and reconcile the ledger against the prior state.

        Approving a claim or raising an approved amount re-checks the balance
        under lock when re-validation is enabled.
        """
        claim = self._get_for_update(claim_id)
        before = ClaimSnapshot.from_claim(claim)

        updates: dict[str, object] = {}
        if changes.amount is not None:
            updates["amount"] = self._validate_amount(changes.amount)
        if changes.status is not None:
            updates["status"] = ClaimLedgerStateMachine.validate_status(changes.status)
        if changes.claim_date is not None:
            updates["claim_date"] = self._validate_claim_date(changes.claim_date)
        if changes.benefit_type_id is not None:
            self._require_benefit_type(changes.benefit_type_id)
            updates["benefit_type_id"] = changes.benefit_type_id
        self._validate_text(changes.description, changes.notes, changes.receipt_file)
        for name in ("description", "notes", "receipt_file"):
            value = getattr(changes, name)
            if value is not None:
                updates[name] = value

        updates = {k: v for k, v in updates.items() if getattr(claim, k) != v}
        if not updates:
            return ClaimResult(
                claim=claim,
                outcome=ReconciliationOutcome(claim_id=claim.id, event=ClaimEvent.UPDATED, effects=[]),
            )

        target_status = updates.get("status", claim.status)
        envelope_changed = any(k in updates for k in ("amount", "claim_date", "benefit_type_id"))
        if target_status != ClaimStatus.APPROVED and envelope_changed:
            self.validator.check(
                claim.employee_id,
                updates.get("claim_date", claim.claim_date),
                updates.get("benefit_type_id", claim.benefit_type_id),
                updates.get("amount", claim.amount),
            )

        with self.session.begin_nested():
            for name, value in updates.items():
                setattr(claim, name, value)
            claim.revision = (claim.revision or 0) + 1
            self.session.flush()

            outcome = self.reconciler.reconcile(
                ClaimEvent.UPDATED,
                before,
                ClaimSnapshot.from_claim(claim),
                processed_by=processed_by,
                allow_overdraft=allow_overdraft,
            )
        logger.info(
            "Updated claim %s r%d: %s",
            claim.claim_number,
            claim.revision,
            ", ".join(sorted(updates)),
        )
        return ClaimResult(claim=claim, outcome=outcome)

    def set_status(
        self,
        claim_id: int,
        status: str,
        *,
        processed_by: int | None = None,
        allow_overdraft: bool = False,
    ) -> ClaimResult:
        """Move a claim to another status."""
        return self.update_claim(
            claim_id,
            ClaimChanges(status=status),
            processed_by=processed_by,
            allow_overdraft=allow_overdraft,
        )

    def delete_claim(
        self,
        claim_id: int,
        *,
        processed_by: int | None = None,
        force: bool = False,
    ) -> ClaimResult:
        """Soft-delete a claim, or remove it when ``force`` is set.

        A claim that was already soft-deleted has had its balance restored;
        removing it for good does not credit again.
        """
        claim = self._get_for_update(claim_id, include_deleted=force)
        before = ClaimSnapshot.from_claim(claim)
        already_deleted = claim.deleted_at is not None

        with self.session.begin_nested():
            if force:
                self.session.delete(claim)
            else:
                claim.deleted_at = utcnow()
                claim.revision = (claim.revision or 0) + 1
            self.session.flush()

            if already_deleted:
                outcome = ReconciliationOutcome(
                    claim_id=claim_id, event=ClaimEvent.DELETED, effects=[]
                )
            else:
                outcome = self.reconciler.reconcile(
                    ClaimEvent.DELETED,
                    before,
                    None,
                    processed_by=processed_by,
                )
        logger.info("Deleted claim %s (force=%s)", before.label, force)
        return ClaimResult(claim=claim, outcome=outcome)

