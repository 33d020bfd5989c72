"""Claim status values and the ledger effects of claim changes."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from benefits_engine.services.errors import InvalidClaimError

if TYPE_CHECKING:
    from benefits_engine.models import BenefitClaim


class ClaimStatus(str, Enum):
    """Claim status values."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"


class ClaimEvent(str, Enum):
    """Claim write that may move a balance."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class EffectReason(str, Enum):
    """Why a ledger effect was produced."""

    APPROVAL = "approval"
    REVERSAL = "reversal"
    AMOUNT_CHANGE = "amount_change"
    DELETION = "deletion"
    MOVE_OUT = "move_out"
    MOVE_IN = "move_in"


@dataclass(frozen=True)
class ClaimSnapshot:
    """Claim fields that matter to the ledger, captured at one point in time.

    The pre-update snapshot must be taken before the change is flushed.
    """

    claim_id: int
    employee_id: int
    benefit_type_id: int
    amount: Decimal
    claim_date: date
    status: str
    revision: int = 0
    claim_number: str | None = None
    ledger_key: str | None = None

    @property
    def is_approved(self) -> bool:
        return self.status == ClaimStatus.APPROVED

    @property
    def year(self) -> int:
        return self.claim_date.year

    @property
    def label(self) -> str:
        return self.claim_number or f"#{self.claim_id}"

    @classmethod
    def from_claim(cls, claim: BenefitClaim) -> ClaimSnapshot:
        return cls(
            claim_id=claim.id,
            employee_id=claim.employee_id,
            benefit_type_id=claim.benefit_type_id,
            amount=Decimal(claim.amount),
            claim_date=claim.claim_date,
            status=str(claim.status),
            revision=claim.revision or 0,
            claim_number=claim.claim_number,
            ledger_key=claim.ledger_key,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form for the reconciliation outbox."""
        data = asdict(self)
        data["amount"] = str(self.amount)
        data["claim_date"] = self.claim_date.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClaimSnapshot:
        return cls(
            claim_id=int(data["claim_id"]),
            employee_id=int(data["employee_id"]),
            benefit_type_id=int(data["benefit_type_id"]),
            amount=Decimal(data["amount"]),
            claim_date=date.fromisoformat(data["claim_date"]),
            status=data["status"],
            revision=int(data.get("revision", 0)),
            claim_number=data.get("claim_number"),
            ledger_key=data.get("ledger_key"),
        )


@dataclass(frozen=True)
class LedgerEffect:
    """One balance movement a claim change requires.

    ``signed_amount`` is negative for a debit and positive for a credit.
    ``snapshot`` identifies the envelope the movement applies to.
    """

    signed_amount: Decimal
    snapshot: ClaimSnapshot
    reason: EffectReason
    description: str

    @property
    def is_debit(self) -> bool:
        return self.signed_amount < 0

    @property
    def action(self) -> str:
        return "debit" if self.is_debit else "credit"


class ClaimLedgerStateMachine:
    """Maps (event, before, after) claim snapshots to ledger effects.

    Any status may move to any other status. Only transitions into or out of
    approved, and amount edits while approved, touch the ledger:

    - created approved                    -> debit amount
    - not approved -> approved            -> debit new amount
    - approved -> not approved            -> credit old amount
    - approved -> approved, amount moved  -> single corrective delta
    - deleted while approved              -> credit amount on record
    - everything else                     -> no effect
    """

    LEDGER_STATUS = ClaimStatus.APPROVED

    STATUSES = frozenset(s.value for s in ClaimStatus)

    @classmethod
    def validate_status(cls, status: str) -> str:
        """Normalize a status value, raising InvalidClaimError if unknown."""
        value = status.value if isinstance(status, ClaimStatus) else str(status).lower()
        if value not in cls.STATUSES:
            raise InvalidClaimError(f"Invalid claim status '{status}'")
        return value

    @classmethod
    def touches_ledger(cls, from_status: str | None, to_status: str | None) -> bool:
        """Whether a status change alone can move a balance."""
        return (from_status == cls.LEDGER_STATUS) != (to_status == cls.LEDGER_STATUS)

    @classmethod
    def same_envelope(cls, before: ClaimSnapshot, after: ClaimSnapshot) -> bool:
        return (
            before.employee_id == after.employee_id
            and before.benefit_type_id == after.benefit_type_id
            and before.year == after.year
        )

    @classmethod
    def effects(
        cls,
        event: ClaimEvent | str,
        before: ClaimSnapshot | None,
        after: ClaimSnapshot | None,
    ) -> list[LedgerEffect]:
        """Ledger effects for a claim event, in the order to apply them."""
        event = ClaimEvent(event)

        if event == ClaimEvent.CREATED:
            if after is None:
                raise ValueError("Created event requires an after snapshot")
            if after.is_approved:
                return [cls._debit(after, EffectReason.APPROVAL, f"Claim {after.label} approved")]
            return []

        if event == ClaimEvent.DELETED:
            if before is None:
                raise ValueError("Deleted event requires a before snapshot")
            if before.is_approved:
                return [
                    cls._credit(
                        before,
                        before.amount,
                        EffectReason.DELETION,
                        f"Claim {before.label} deleted",
                    )
                ]
            return []

        if before is None or after is None:
            raise ValueError("Updated event requires before and after snapshots")

        if not before.is_approved and not after.is_approved:
            return []

        if not before.is_approved:
            return [cls._debit(after, EffectReason.APPROVAL, f"Claim {after.label} approved")]

        if not after.is_approved:
            return [
                cls._credit(
                    before,
                    before.amount,
                    EffectReason.REVERSAL,
                    f"Claim {before.label} reversal ({before.status} -> {after.status})",
                )
            ]

        if not cls.same_envelope(before, after):
            return [
                cls._credit(
                    before,
                    before.amount,
                    EffectReason.MOVE_OUT,
                    f"Claim {before.label} moved out of envelope",
                ),
                cls._debit(after, EffectReason.MOVE_IN, f"Claim {after.label} moved into envelope"),
            ]

        delta = after.amount - before.amount
        if delta == 0:
            return []
        return [
            LedgerEffect(
                signed_amount=-delta,
                snapshot=after,
                reason=EffectReason.AMOUNT_CHANGE,
                description=(
                    f"Claim {after.label} amount changed {before.amount} -> {after.amount}"
                ),
            )
        ]

    @staticmethod
    def _debit(snapshot: ClaimSnapshot, reason: EffectReason, description: str) -> LedgerEffect:
        return LedgerEffect(
            signed_amount=-snapshot.amount,
            snapshot=snapshot,
            reason=reason,
            description=description,
        )

    @staticmethod
    def _credit(
        snapshot: ClaimSnapshot, amount: Decimal, reason: EffectReason, description: str
    ) -> LedgerEffect:
        return LedgerEffect(
            signed_amount=amount,
            snapshot=snapshot,
            reason=reason,
            description=description,
        )
