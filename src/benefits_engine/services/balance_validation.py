"""Balance sufficiency check run before a claim is accepted."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session

from benefits_engine.services.budget_resolver import BudgetResolver
from benefits_engine.services.errors import InsufficientBalanceError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a balance check."""

    passes: bool
    requested: Decimal
    available: Decimal
    benefit_type_name: str

    def to_error(self) -> InsufficientBalanceError:
        return InsufficientBalanceError(
            requested=self.requested,
            available=self.available,
            benefit_type=self.benefit_type_name,
        )


class BalanceValidationRule:
    """Checks a requested amount against the current balance.

    Read-only. A missing employee, budget or balance row fails closed with an
    available balance of zero.
    """

    def __init__(self, session: Session, resolver: BudgetResolver | None = None):
        self.session = session
        self.resolver = resolver or BudgetResolver(session)

    def validate(
        self,
        employee_id: int,
        claim_date: date,
        benefit_type_id: int,
        requested_amount: Decimal,
    ) -> ValidationResult:
        requested = Decimal(requested_amount)
        benefit_type_name = self.resolver.benefit_type_name(benefit_type_id)

        try:
            resolved = self.resolver.resolve(employee_id, claim_date, benefit_type_id)
        except NotFoundError as e:
            logger.info(
                "Balance check failed closed for employee %s benefit type %s: %s",
                employee_id,
                benefit_type_id,
                e,
            )
            return ValidationResult(
                passes=False,
                requested=requested,
                available=Decimal("0"),
                benefit_type_name=benefit_type_name,
            )

        available = resolved.balance.current_balance
        if available is None:
            available = Decimal("0")

        return ValidationResult(
            passes=requested <= available,
            requested=requested,
            available=Decimal(available),
            benefit_type_name=benefit_type_name,
        )

    def check(
        self,
        employee_id: int,
        claim_date: date,
        benefit_type_id: int,
        requested_amount: Decimal,
    ) -> ValidationResult:
        """Validate, raising InsufficientBalanceError on failure."""
        result = self.validate(employee_id, claim_date, benefit_type_id, requested_amount)
        if not result.passes:
            raise result.to_error()
        return result
