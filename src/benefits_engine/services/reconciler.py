"""Claim Lifecycle Reconciler.

Turns claim create/update/delete events into balance movements. Runs inside
the caller's transaction, so a claim write and its ledger rows commit or roll
back together. Work that cannot be resolved (missing employee or budget) is
logged and parked in the pending_reconciliations outbox for replay.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from benefits_engine.config import LedgerPolicy, get_policy
from benefits_engine.models import BalanceTransaction, BenefitBudget, PendingReconciliation, utcnow
from benefits_engine.services.balance_store import BalanceChange, BalanceStore
from benefits_engine.services.budget_resolver import BudgetResolver
from benefits_engine.services.errors import (
    ConcurrentUpdateConflictError,
    NotFoundError,
    ReconciliationError,
)
from benefits_engine.services.ledger_service import ReferenceType, TransactionLedger
from benefits_engine.services.state_machine import (
    ClaimEvent,
    ClaimLedgerStateMachine,
    ClaimSnapshot,
    EffectReason,
    LedgerEffect,
)

logger = logging.getLogger(__name__)

# Outbox items are marked failed after this many unsuccessful replays.
MAX_OUTBOX_ATTEMPTS = 5

# Outbox states that hold back later events of the same claim.
BLOCKING_STATUSES = ("pending", "failed")

# Effects that must land on the envelope the claim was originally debited from.
_FOLLOWS_ORIGINAL_DEBIT = {
    EffectReason.REVERSAL,
    EffectReason.AMOUNT_CHANGE,
    EffectReason.DELETION,
    EffectReason.MOVE_OUT,
}


@dataclass(frozen=True)
class ReconciliationOutcome:
    """What reconciling one claim event did."""

    claim_id: int
    event: ClaimEvent
    effects: list[LedgerEffect]
    changes: list[BalanceChange] = field(default_factory=list)
    queued: bool = False
    error: ReconciliationError | None = None

    @property
    def transactions(self) -> list[BalanceTransaction]:
        """Ledger rows newly written by this reconciliation."""
        return [c.post.transaction for c in self.changes if c.applied]

    @property
    def is_noop(self) -> bool:
        return not self.effects


@dataclass(frozen=True)
class RetryReport:
    """Summary of an outbox replay run."""

    processed: int
    succeeded: int
    still_pending: int
    failed: int


class ClaimReconciler:
    """Applies the ledger effects of claim lifecycle events.

    Notes:
    - Each event's effects are applied in one savepoint: all or nothing.
    - Idempotency keys are derived from claim id, revision, event and effect
      position, so replaying an event never double-applies it.
    - While a claim has pending outbox items, new events for it are queued
      behind them to keep ledger order causal.
    """

    def __init__(
        self,
        session: Session,
        store: BalanceStore | None = None,
        resolver: BudgetResolver | None = None,
        policy: LedgerPolicy | None = None,
    ):
        self.session = session
        self.policy = policy or get_policy()
        self.store = store or BalanceStore(session, policy=self.policy)
        self.ledger: TransactionLedger = self.store.ledger
        self.resolver = resolver or BudgetResolver(session)

    @staticmethod
    def key_prefix(
        event: ClaimEvent, before: ClaimSnapshot | None, after: ClaimSnapshot | None
    ) -> str:
        snapshot = after if after is not None else before
        scope = f"claim:{snapshot.claim_id}"
        if snapshot.ledger_key:
            scope = f"{scope}:{snapshot.ledger_key}"
        return f"{scope}:r{snapshot.revision}:{ClaimEvent(event).value}"

    def reconcile(
        self,
        event: ClaimEvent | str,
        before: ClaimSnapshot | None,
        after: ClaimSnapshot | None,
        *,
        processed_by: int | None = None,
        allow_overdraft: bool = False,
    ) -> ReconciliationOutcome:
        """Apply the ledger effects of one claim event.

        Raises:
            InsufficientBalanceError: a debit would take the balance below the
                allowed floor (re-validation on approval).
            ConcurrentUpdateConflictError: the balance row kept changing.
        """
        event = ClaimEvent(event)
        effects = ClaimLedgerStateMachine.effects(event, before, after)
        snapshot = after if after is not None else before
        if not effects:
            return ReconciliationOutcome(claim_id=snapshot.claim_id, event=event, effects=effects)

        prefix = self.key_prefix(event, before, after)

        if self.has_pending(snapshot.claim_id):
            logger.info(
                "Claim %s has pending reconciliations; queueing %s",
                snapshot.claim_id,
                prefix,
            )
            self._enqueue(event, before, after, prefix, processed_by, None)
            return ReconciliationOutcome(
                claim_id=snapshot.claim_id, event=event, effects=effects, queued=True
            )

        try:
            changes = self._apply(
                effects,
                prefix,
                processed_by,
                validate=self.policy.revalidate_on_approval,
                allow_overdraft=allow_overdraft,
            )
        except NotFoundError as e:
            error = ReconciliationError(
                claim_id=snapshot.claim_id,
                employee_id=snapshot.employee_id,
                amount=snapshot.amount,
                status=snapshot.status,
                cause=e,
            )
            logger.error(
                "Failed to reconcile claim %s (%s): employee=%s amount=%s status=%s: %s",
                snapshot.claim_id,
                event.value,
                snapshot.employee_id,
                snapshot.amount,
                snapshot.status,
                e,
                extra={**error.context(), "event": event.value},
            )
            self._enqueue(event, before, after, prefix, processed_by, str(e))
            return ReconciliationOutcome(
                claim_id=snapshot.claim_id,
                event=event,
                effects=effects,
                queued=True,
                error=error,
            )

        return ReconciliationOutcome(
            claim_id=snapshot.claim_id, event=event, effects=effects, changes=changes
        )

    def _floor_for(self, budget: BenefitBudget, allow_overdraft: bool) -> Decimal:
        if allow_overdraft:
            return self.policy.overdraft_limit(
                budget.budget,
                budget.benefit_type.name if budget.benefit_type else None,
            )
        return Decimal("0")

    def _apply(
        self,
        effects: list[LedgerEffect],
        prefix: str,
        processed_by: int | None,
        *,
        validate: bool,
        allow_overdraft: bool = False,
    ) -> list[BalanceChange]:
        changes: list[BalanceChange] = []
        with self.session.begin_nested():
            for position, effect in enumerate(effects):
                budget = self._envelope_for(effect)
                floor = self._floor_for(budget, allow_overdraft) if validate else None
                changes.append(
                    self.store.apply_delta(
                        effect.snapshot.employee_id,
                        budget,
                        effect.signed_amount,
                        reference_type=ReferenceType.CLAIM,
                        reference_id=effect.snapshot.claim_id,
                        description=effect.description,
                        processed_by=processed_by,
                        idempotency_key=f"{prefix}:{position}:{effect.action}",
                        floor=floor,
                    )
                )
        return changes

    def _envelope_for(self, effect: LedgerEffect) -> BenefitBudget:
        snapshot = effect.snapshot
        if effect.reason in _FOLLOWS_ORIGINAL_DEBIT:
            budget_id = self.ledger.last_claim_budget_id(snapshot.claim_id, snapshot.ledger_key)
            if budget_id is not None:
                budget = self.session.get(BenefitBudget, budget_id)
                if budget is not None:
                    return budget

        resolved = self.resolver.resolve(
            snapshot.employee_id,
            snapshot.claim_date,
            snapshot.benefit_type_id,
            require_balance=False,
        )
        return resolved.budget

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def has_pending(self, claim_id: int) -> bool:
        """Whether the claim has outbox items not yet applied.

        Failed items count until an operator requeues them: a later reversal
        must not credit an amount whose debit never landed.
        """
        return (
            self.session.scalar(
                select(PendingReconciliation.id)
                .where(
                    PendingReconciliation.claim_id == claim_id,
                    PendingReconciliation.status.in_(BLOCKING_STATUSES),
                )
                .limit(1)
            )
            is not None
        )

    def pending(self, limit: int | None = None) -> list[PendingReconciliation]:
        query = (
            select(PendingReconciliation)
            .where(PendingReconciliation.status == "pending")
            .order_by(PendingReconciliation.id)
        )
        if limit is not None:
            query = query.limit(limit)
        return list(self.session.scalars(query))

    def _failed_claim_ids(self) -> set[int]:
        return set(
            self.session.scalars(
                select(PendingReconciliation.claim_id).where(
                    PendingReconciliation.status == "failed"
                )
            )
        )

    def requeue_failed(self, claim_id: int | None = None) -> int:
        """Put failed outbox items back in line for replay.

        This is the operator action once the cause (a missing budget or
        employee) has been fixed. Attempts restart from zero.
        """
        query = select(PendingReconciliation).where(PendingReconciliation.status == "failed")
        if claim_id is not None:
            query = query.where(PendingReconciliation.claim_id == claim_id)
        items = list(self.session.scalars(query))
        for item in items:
            item.status = "pending"
            item.attempts = 0
        self.session.flush()
        if items:
            logger.info("Requeued %d failed reconciliation(s)", len(items))
        return len(items)

    def _enqueue(
        self,
        event: ClaimEvent,
        before: ClaimSnapshot | None,
        after: ClaimSnapshot | None,
        prefix: str,
        processed_by: int | None,
        error: str | None,
    ) -> PendingReconciliation:
        snapshot = after if after is not None else before
        item = PendingReconciliation(
            claim_id=snapshot.claim_id,
            employee_id=snapshot.employee_id,
            event=event.value,
            before_snapshot=before.to_dict() if before is not None else None,
            after_snapshot=after.to_dict() if after is not None else None,
            key_prefix=prefix,
            processed_by=processed_by,
            status="pending",
            attempts=0,
            last_error=error,
        )
        self.session.add(item)
        self.session.flush()
        return item

    def retry_pending(self, limit: int = 100) -> RetryReport:
        """Replay outbox items oldest first.

        Replays skip balance re-validation: the claim change they belong to was
        already accepted. A failing item blocks later items of the same claim,
        and a failed one keeps blocking them until it is requeued.
        """
        items = self.pending(limit)
        blocked = self._failed_claim_ids()
        succeeded = failed = still_pending = 0

        for item in items:
            if item.claim_id in blocked:
                still_pending += 1
                continue

            before = ClaimSnapshot.from_dict(item.before_snapshot) if item.before_snapshot else None
            after = ClaimSnapshot.from_dict(item.after_snapshot) if item.after_snapshot else None
            effects = ClaimLedgerStateMachine.effects(item.event, before, after)

            item.attempts += 1
            try:
                self._apply(effects, item.key_prefix, item.processed_by, validate=False)
            except (NotFoundError, ConcurrentUpdateConflictError) as e:
                item.last_error = str(e)
                blocked.add(item.claim_id)
                if item.attempts >= MAX_OUTBOX_ATTEMPTS:
                    item.status = "failed"
                    failed += 1
                    logger.error(
                        "Giving up on reconciliation %s for claim %s after %d attempts: %s",
                        item.key_prefix,
                        item.claim_id,
                        item.attempts,
                        e,
                    )
                else:
                    still_pending += 1
                    logger.warning(
                        "Reconciliation %s for claim %s still failing: %s",
                        item.key_prefix,
                        item.claim_id,
                        e,
                    )
                continue

            item.status = "done"
            item.processed_at = utcnow()
            item.last_error = None
            succeeded += 1

        self.session.flush()
        return RetryReport(
            processed=len(items),
            succeeded=succeeded,
            still_pending=still_pending,
            failed=failed,
        )
