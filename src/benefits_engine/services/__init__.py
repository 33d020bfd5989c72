"""Benefits ledger services."""

from benefits_engine.services.balance_management import BalanceManagementService
from benefits_engine.services.balance_store import BalanceStore
from benefits_engine.services.balance_validation import BalanceValidationRule
from benefits_engine.services.budget_resolver import BudgetResolver
from benefits_engine.services.claim_service import ClaimService
from benefits_engine.services.errors import (
    BenefitsError,
    ConcurrentUpdateConflictError,
    InsufficientBalanceError,
    InvalidClaimError,
    NotFoundError,
    ReconciliationError,
)
from benefits_engine.services.ledger_service import TransactionLedger
from benefits_engine.services.reconciler import ClaimReconciler
from benefits_engine.services.state_machine import ClaimLedgerStateMachine, ClaimStatus

__all__ = [
    "BalanceManagementService",
    "BalanceStore",
    "BalanceValidationRule",
    "BudgetResolver",
    "ClaimService",
    "ClaimReconciler",
    "ClaimLedgerStateMachine",
    "ClaimStatus",
    "TransactionLedger",
    "BenefitsError",
    "ConcurrentUpdateConflictError",
    "InsufficientBalanceError",
    "InvalidClaimError",
    "NotFoundError",
    "ReconciliationError",
]
