"""ORM models for the benefits ledger."""

from benefits_engine.models.base import Base, TimestampMixin, utcnow
from benefits_engine.models.budget import BenefitBudget, EmployeeBenefitBalance
from benefits_engine.models.claim import BenefitClaim
from benefits_engine.models.employee import Employee
from benefits_engine.models.ledger import BalanceTransaction, PendingReconciliation
from benefits_engine.models.reference import BenefitType, LevelEmployee, MarriageStatus, User

__all__ = [
    "Base",
    "TimestampMixin",
    "utcnow",
    "BalanceTransaction",
    "BenefitBudget",
    "BenefitClaim",
    "BenefitType",
    "Employee",
    "EmployeeBenefitBalance",
    "LevelEmployee",
    "MarriageStatus",
    "PendingReconciliation",
    "User",
]
