"""Tests for the claim balance validation rule."""

from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from benefits_engine.services.balance_validation import BalanceValidationRule
from benefits_engine.services.errors import InsufficientBalanceError
from tests.conftest import DENTAL, MARRIED, MEDICAL, SUPERVISOR, BenefitsTestData


class TestBalanceValidationRule:
    """Test sufficiency checks."""

    def test_passes_when_amount_fits(self, db: Session, seeded, test_data: BenefitsTestData):
        employee, _ = seeded
        result = BalanceValidationRule(db).validate(
            employee.id, test_data.claim_date, MEDICAL, Decimal("1000000")
        )

        assert result.passes is True
        assert result.available == Decimal("1000000")

    def test_fails_when_amount_exceeds_balance(
        self, db: Session, seeded, test_data: BenefitsTestData
    ):
        employee, _ = seeded
        result = BalanceValidationRule(db).validate(
            employee.id, test_data.claim_date, MEDICAL, Decimal("1000000.01")
        )

        assert result.passes is False
        assert result.requested == Decimal("1000000.01")
        assert result.benefit_type_name == "Medical"

    def test_check_raises_with_payload(self, db: Session, test_data: BenefitsTestData):
        test_data.seed_reference()
        employee = test_data.create_employee()
        budget = test_data.create_budget(MEDICAL)
        test_data.create_balance(employee, budget, current="800000")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            BalanceValidationRule(db).check(
                employee.id, test_data.claim_date, MEDICAL, Decimal("1200000")
            )

        assert exc_info.value.to_payload() == {
            "status": 400,
            "message": "Insufficient benefit balance",
            "data": {
                "requested_amount": 1200000.0,
                "available_balance": 800000.0,
                "benefit_type": "Medical",
            },
        }

    def test_missing_budget_fails_closed(self, db: Session, seeded, test_data: BenefitsTestData):
        employee, _ = seeded
        result = BalanceValidationRule(db).validate(
            employee.id, test_data.claim_date, DENTAL, Decimal("1")
        )

        assert result.passes is False
        assert result.available == Decimal("0")
        assert result.benefit_type_name == "Dental"

    def test_missing_employee_fails_closed(self, db: Session, seeded, test_data: BenefitsTestData):
        result = BalanceValidationRule(db).validate(
            9999, test_data.claim_date, MEDICAL, Decimal("1")
        )

        assert result.passes is False
        assert result.available == Decimal("0")

    def test_negative_balance_rejects_everything(
        self, db: Session, test_data: BenefitsTestData
    ):
        test_data.seed_reference()
        employee = test_data.create_employee()
        budget = test_data.create_budget(MEDICAL)
        test_data.create_balance(employee, budget, current="-100")

        result = BalanceValidationRule(db).validate(
            employee.id, test_data.claim_date, MEDICAL, Decimal("0.01")
        )
        assert result.passes is False


class TestLevelTwoNormalization:
    """Level 2 employees validate against the marriage-agnostic budget."""

    def test_married_supervisor_uses_null_marriage_budget(
        self, db: Session, test_data: BenefitsTestData
    ):
        test_data.seed_reference()
        employee = test_data.create_employee(level_id=SUPERVISOR, marriage_status_id=MARRIED)
        agnostic = test_data.create_budget(
            MEDICAL, "1000000", level_id=SUPERVISOR, marriage_status_id=None
        )
        married = test_data.create_budget(
            MEDICAL, "5000000", level_id=SUPERVISOR, marriage_status_id=MARRIED
        )
        test_data.create_balance(employee, agnostic)
        test_data.create_balance(employee, married)

        result = BalanceValidationRule(db).validate(
            employee.id, test_data.claim_date, MEDICAL, Decimal("1200000")
        )

        assert result.passes is False
        assert result.available == Decimal("1000000")
