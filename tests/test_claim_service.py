"""Tests for the claim write path."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from benefits_engine.models import (
    BalanceTransaction,
    BenefitClaim,
    EmployeeBenefitBalance,
    utcnow,
)
from benefits_engine.services.claim_service import ClaimChanges, ClaimFilters, ClaimService
from benefits_engine.services.errors import (
    InsufficientBalanceError,
    InvalidClaimError,
    NotFoundError,
)
from tests.conftest import DENTAL, GLASSES, MARRIED, MEDICAL, SUPERVISOR, BenefitsTestData


def _balance(db: Session, employee_id: int, budget_id: int) -> Decimal:
    return db.scalar(
        select(EmployeeBenefitBalance.current_balance).where(
            EmployeeBenefitBalance.employee_id == employee_id,
            EmployeeBenefitBalance.benefit_budget_id == budget_id,
        )
    )


def _count(db: Session, model) -> int:
    return db.scalar(select(func.count(model.id)))


def _submit(service: ClaimService, employee, test_data, amount="200000", status="pending", **kw):
    return service.create_claim(
        employee_id=employee.id,
        benefit_type_id=kw.pop("benefit_type_id", MEDICAL),
        amount=Decimal(amount),
        claim_date=kw.pop("claim_date", test_data.claim_date),
        status=status,
        **kw,
    )


class TestCreateClaim:
    """Test claim submission."""

    def test_insufficient_balance_writes_nothing(self, db: Session, test_data: BenefitsTestData):
        employee, budget = test_data.standard_setup("800000")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            _submit(ClaimService(db), employee, test_data, amount="1200000")

        payload = exc_info.value.to_payload()
        assert payload["data"]["requested_amount"] == 1200000.0
        assert payload["data"]["available_balance"] == 800000.0
        assert payload["data"]["benefit_type"] == "Medical"
        assert _count(db, BenefitClaim) == 0
        assert _count(db, BalanceTransaction) == 0
        assert _balance(db, employee.id, budget.id) == Decimal("800000")

    def test_pending_claim_holds_no_funds(self, db: Session, seeded, test_data):
        employee, budget = seeded
        result = _submit(ClaimService(db), employee, test_data)

        assert result.claim.status == "pending"
        assert result.outcome.is_noop
        assert _balance(db, employee.id, budget.id) == Decimal("1000000")

    def test_approved_claim_debits(self, db: Session, seeded, test_data):
        employee, budget = seeded
        result = _submit(ClaimService(db), employee, test_data, status="approved", created_by=1)

        assert _balance(db, employee.id, budget.id) == Decimal("800000")
        (txn,) = result.outcome.transactions
        assert txn.processed_by == 1
        assert txn.reference_type == "claim"

    def test_claim_numbers_are_sequential(self, db: Session, seeded, test_data):
        employee, _ = seeded
        service = ClaimService(db)
        year = date.today().year

        first = _submit(service, employee, test_data, amount="10").claim
        second = _submit(service, employee, test_data, amount="10").claim

        assert first.claim_number == f"CLM-{year}-000001"
        assert second.claim_number == f"CLM-{year}-000002"

    def test_taken_claim_number_is_retried(self, db: Session, seeded, test_data, monkeypatch):
        employee, budget = seeded
        service = ClaimService(db)
        year = date.today().year
        first = _submit(service, employee, test_data, amount="10").claim

        # A concurrent submission would hand out the same number once.
        next_number = service._next_claim_number
        numbers = iter([first.claim_number])
        monkeypatch.setattr(
            service, "_next_claim_number", lambda y: next(numbers, None) or next_number(y)
        )

        second = _submit(service, employee, test_data, amount="20", status="approved").claim

        assert second.claim_number == f"CLM-{year}-000002"
        assert _count(db, BenefitClaim) == 2
        assert _balance(db, employee.id, budget.id) == Decimal("999980")

    @pytest.mark.parametrize("amount", ["0", "-1", "1000000000000"])
    def test_invalid_amount(self, db: Session, seeded, test_data, amount):
        employee, _ = seeded
        with pytest.raises(InvalidClaimError):
            _submit(ClaimService(db), employee, test_data, amount=amount)

    def test_future_claim_date_rejected(self, db: Session, seeded, test_data):
        employee, _ = seeded
        with pytest.raises(InvalidClaimError, match="future"):
            _submit(
                ClaimService(db),
                employee,
                test_data,
                claim_date=date.today() + timedelta(days=1),
            )

    def test_unknown_status_rejected(self, db: Session, seeded, test_data):
        employee, _ = seeded
        with pytest.raises(InvalidClaimError):
            _submit(ClaimService(db), employee, test_data, status="paid")

    def test_long_description_rejected(self, db: Session, seeded, test_data):
        employee, _ = seeded
        with pytest.raises(InvalidClaimError):
            _submit(ClaimService(db), employee, test_data, description="x" * 1001)

    def test_unknown_employee(self, db: Session, seeded, test_data):
        with pytest.raises(NotFoundError):
            ClaimService(db).create_claim(
                employee_id=9999,
                benefit_type_id=MEDICAL,
                amount=Decimal("1"),
                claim_date=test_data.claim_date,
            )

    def test_missing_budget_rejected_as_insufficient(self, db: Session, seeded, test_data):
        employee, _ = seeded
        with pytest.raises(InsufficientBalanceError) as exc_info:
            _submit(ClaimService(db), employee, test_data, benefit_type_id=GLASSES)

        assert exc_info.value.available == Decimal("0")


class TestUpdateClaim:
    """Test claim changes and their ledger effects."""

    def test_approve_then_edit_then_reject(self, db: Session, seeded, test_data):
        employee, budget = seeded
        service = ClaimService(db)
        claim = _submit(service, employee, test_data).claim

        service.set_status(claim.id, "approved")
        assert _balance(db, employee.id, budget.id) == Decimal("800000")

        service.update_claim(claim.id, ClaimChanges(amount=Decimal("350000")))
        assert _balance(db, employee.id, budget.id) == Decimal("650000")

        service.set_status(claim.id, "rejected")
        assert _balance(db, employee.id, budget.id) == Decimal("1000000")
        assert claim.revision == 3

    def test_no_change_is_noop(self, db: Session, seeded, test_data):
        employee, _ = seeded
        service = ClaimService(db)
        claim = _submit(service, employee, test_data, status="approved").claim

        result = service.update_claim(
            claim.id, ClaimChanges(amount=Decimal("200000"), status="approved")
        )

        assert result.outcome.is_noop
        assert claim.revision == 0
        assert _count(db, BalanceTransaction) == 1

    def test_approval_revalidates_balance(self, db: Session, seeded, test_data):
        employee, budget = seeded
        service = ClaimService(db)
        first = _submit(service, employee, test_data, amount="700000").claim
        second = _submit(service, employee, test_data, amount="700000").claim
        service.set_status(first.id, "approved")

        with pytest.raises(InsufficientBalanceError):
            service.set_status(second.id, "approved")

        db.refresh(second)
        assert second.status == "pending"
        assert _balance(db, employee.id, budget.id) == Decimal("300000")

    def test_amount_increase_on_approved_claim_revalidated(self, db: Session, seeded, test_data):
        employee, budget = seeded
        service = ClaimService(db)
        claim = _submit(service, employee, test_data, status="approved").claim

        with pytest.raises(InsufficientBalanceError):
            service.update_claim(claim.id, ClaimChanges(amount=Decimal("1200000.01")))

        db.refresh(claim)
        assert claim.amount == Decimal("200000")
        assert _balance(db, employee.id, budget.id) == Decimal("800000")

    def test_pending_amount_change_checked_against_balance(self, db: Session, seeded, test_data):
        employee, _ = seeded
        service = ClaimService(db)
        claim = _submit(service, employee, test_data).claim

        with pytest.raises(InsufficientBalanceError):
            service.update_claim(claim.id, ClaimChanges(amount=Decimal("2000000")))

    def test_benefit_type_change_moves_funds(self, db: Session, seeded, test_data):
        employee, medical = seeded
        dental = test_data.create_budget(DENTAL, "500000")
        test_data.create_balance(employee, dental)
        service = ClaimService(db)
        claim = _submit(service, employee, test_data, amount="100000", status="approved").claim

        service.update_claim(claim.id, ClaimChanges(benefit_type_id=DENTAL))

        assert _balance(db, employee.id, medical.id) == Decimal("1000000")
        assert _balance(db, employee.id, dental.id) == Decimal("400000")

    def test_update_missing_claim(self, db: Session, seeded):
        with pytest.raises(NotFoundError):
            ClaimService(db).set_status(12345, "approved")


class TestDeleteClaim:
    """Test claim removal."""

    def test_soft_delete_credits_approved_claim(self, db: Session, seeded, test_data):
        employee, budget = seeded
        service = ClaimService(db)
        claim = _submit(service, employee, test_data, status="approved").claim

        service.delete_claim(claim.id)

        assert claim.deleted_at is not None
        assert _balance(db, employee.id, budget.id) == Decimal("1000000")
        with pytest.raises(NotFoundError):
            service.get_claim(claim.id)

    def test_force_after_soft_delete_does_not_credit_twice(
        self, db: Session, seeded, test_data
    ):
        employee, budget = seeded
        service = ClaimService(db)
        claim_id = _submit(service, employee, test_data, status="approved").claim.id

        service.delete_claim(claim_id)
        result = service.delete_claim(claim_id, force=True)

        assert result.outcome.is_noop
        assert db.get(BenefitClaim, claim_id) is None
        assert _balance(db, employee.id, budget.id) == Decimal("1000000")
        assert _count(db, BalanceTransaction) == 2

    def test_force_delete_of_live_claim_credits(self, db: Session, seeded, test_data):
        employee, budget = seeded
        service = ClaimService(db)
        claim_id = _submit(service, employee, test_data, status="approved").claim.id

        service.delete_claim(claim_id, force=True)

        assert _balance(db, employee.id, budget.id) == Decimal("1000000")

    def test_claim_after_force_delete_is_debited(self, db: Session, seeded, test_data):
        employee, budget = seeded
        service = ClaimService(db)
        removed = _submit(service, employee, test_data, amount="100000", status="approved").claim
        removed_id, removed_key = removed.id, removed.ledger_key
        service.delete_claim(removed_id, force=True)

        result = _submit(service, employee, test_data, amount="300000", status="approved")

        assert result.claim.id != removed_id
        assert result.claim.ledger_key != removed_key
        (txn,) = result.outcome.transactions
        assert txn.amount == Decimal("300000")
        assert _balance(db, employee.id, budget.id) == Decimal("700000")

    def test_deleting_pending_claim_has_no_effect(self, db: Session, seeded, test_data):
        employee, _ = seeded
        service = ClaimService(db)
        claim_id = _submit(service, employee, test_data).claim.id

        result = service.delete_claim(claim_id)

        assert result.outcome.is_noop
        assert _count(db, BalanceTransaction) == 0


class TestListClaims:
    """Test claim listing."""

    def test_filters_and_pagination(self, db: Session, seeded, test_data):
        employee, _ = seeded
        other = test_data.create_employee(name="Dewi Lestari")
        test_data.create_claim_row(employee, "100", status="approved")
        test_data.create_claim_row(employee, "200", status="pending")
        test_data.create_claim_row(other, "300", status="approved")
        deleted = test_data.create_claim_row(other, "400", status="approved")
        deleted.deleted_at = utcnow()
        db.flush()
        service = ClaimService(db)

        assert service.list_claims().total == 3
        assert service.list_claims(ClaimFilters(include_deleted=True)).total == 4
        assert service.list_claims(ClaimFilters(status="approved")).total == 2
        assert service.list_claims(ClaimFilters(employee_id=employee.id)).total == 2
        assert service.list_claims(ClaimFilters(min_amount=Decimal("150"))).total == 2
        assert service.list_claims(ClaimFilters(search="Dewi")).total == 1

        page = service.list_claims(page=2, per_page=2, sort_by="amount", sort_dir="asc")
        assert page.last_page == 2
        assert [c.amount for c in page.items] == [Decimal("300")]


class TestMarriedSupervisorScenario:
    """A level 2 married employee claims against the marriage-agnostic budget."""

    @pytest.fixture
    def supervisor(self, db: Session, test_data: BenefitsTestData):
        test_data.seed_reference()
        employee = test_data.create_employee(level_id=SUPERVISOR, marriage_status_id=MARRIED)
        budget = test_data.create_budget(
            MEDICAL, "1000000", level_id=SUPERVISOR, marriage_status_id=None
        )
        test_data.create_balance(employee, budget)
        return employee, budget

    def _claim_txns(self, db: Session, claim_id: int) -> list[BalanceTransaction]:
        return list(
            db.scalars(
                select(BalanceTransaction)
                .where(BalanceTransaction.reference_id == claim_id)
                .order_by(BalanceTransaction.id)
            )
        )

    def test_submit_approve_edit_reject(self, db: Session, supervisor, test_data):
        employee, budget = supervisor
        service = ClaimService(db)

        claim = _submit(service, employee, test_data, amount="200000").claim
        service.set_status(claim.id, "approved")

        assert _balance(db, employee.id, budget.id) == Decimal("800000")
        (debit,) = self._claim_txns(db, claim.id)
        assert (debit.transaction_type, debit.amount) == ("debit", Decimal("200000"))
        assert debit.benefit_budget_id == budget.id

        service.update_claim(claim.id, ClaimChanges(amount=Decimal("350000")))

        assert _balance(db, employee.id, budget.id) == Decimal("650000")
        corrective = self._claim_txns(db, claim.id)[-1]
        assert (corrective.transaction_type, corrective.amount) == ("debit", Decimal("150000"))

        service.set_status(claim.id, "rejected")

        assert _balance(db, employee.id, budget.id) == Decimal("1000000")
        credit = self._claim_txns(db, claim.id)[-1]
        assert (credit.transaction_type, credit.amount) == ("credit", Decimal("350000"))
        assert len(self._claim_txns(db, claim.id)) == 3

    def test_oversized_submission_writes_nothing(self, db: Session, supervisor, test_data):
        employee, budget = supervisor
        service = ClaimService(db)
        _submit(service, employee, test_data, amount="200000", status="approved")

        with pytest.raises(InsufficientBalanceError) as exc_info:
            _submit(service, employee, test_data, amount="1200000")

        assert exc_info.value.to_payload()["data"]["available_balance"] == 800000.0
        assert _count(db, BenefitClaim) == 1
        assert _count(db, BalanceTransaction) == 1
        assert _balance(db, employee.id, budget.id) == Decimal("800000")
