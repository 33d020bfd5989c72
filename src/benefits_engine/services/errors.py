"""Exceptions raised by the benefits ledger services."""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class BenefitsError(Exception):
    """Base class for benefits ledger errors."""


class NotFoundError(BenefitsError):
    """Raised when an employee, budget, balance or claim is missing."""

    def __init__(self, entity: str, key: Any):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class InsufficientBalanceError(BenefitsError):
    """Raised when a requested amount exceeds the available balance."""

    message = "Insufficient benefit balance"

    def __init__(self, requested: Decimal, available: Decimal, benefit_type: str = "Unknown"):
        self.requested = Decimal(requested)
        self.available = Decimal(available)
        self.benefit_type = benefit_type
        super().__init__(
            f"{self.message}: requested {self.requested} of {benefit_type}, "
            f"available {self.available}"
        )

    def to_payload(self) -> dict[str, Any]:
        """Structured error body returned to claim submitters."""
        return {
            "status": 400,
            "message": self.message,
            "data": {
                "requested_amount": float(self.requested),
                "available_balance": float(self.available),
                "benefit_type": self.benefit_type,
            },
        }


class ReconciliationError(BenefitsError):
    """Raised when a claim change could not be turned into ledger rows."""

    def __init__(
        self,
        claim_id: int,
        employee_id: int,
        amount: Decimal,
        status: str,
        cause: Exception | str,
    ):
        self.claim_id = claim_id
        self.employee_id = employee_id
        self.amount = amount
        self.status = status
        self.cause = cause
        super().__init__(
            f"Failed to reconcile claim {claim_id} (employee {employee_id}, "
            f"amount {amount}, status {status}): {cause}"
        )

    def context(self) -> dict[str, Any]:
        """Log context for operators."""
        return {
            "claim_id": self.claim_id,
            "employee_id": self.employee_id,
            "amount": str(self.amount),
            "status": self.status,
        }


class ConcurrentUpdateConflictError(BenefitsError):
    """Raised when a balance row kept changing underneath us."""

    def __init__(self, employee_id: int, budget_id: int, attempts: int):
        self.employee_id = employee_id
        self.budget_id = budget_id
        self.attempts = attempts
        super().__init__(
            f"Balance for employee {employee_id} / budget {budget_id} changed "
            f"concurrently; gave up after {attempts} attempt(s)"
        )


class InvalidClaimError(BenefitsError):
    """Raised when claim input fails validation."""
