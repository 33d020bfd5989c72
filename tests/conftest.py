"""Pytest fixtures for benefits engine tests."""

from __future__ import annotations

from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from benefits_engine.config import LedgerPolicy
from benefits_engine.models import (
    Base,
    BenefitBudget,
    BenefitClaim,
    BenefitType,
    Employee,
    EmployeeBenefitBalance,
    LevelEmployee,
    MarriageStatus,
    User,
)

# In-memory SQLite shared across threads so the API client sees test data.
TEST_DATABASE_URL = "sqlite://"

STAFF, SUPERVISOR, MANAGER = 1, 2, 3
SINGLE, MARRIED = 1, 2
MEDICAL, DENTAL, GLASSES = 1, 2, 3


def make_engine():
    """In-memory database with the schema created."""
    engine = create_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's implicit transactions break SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def engine():
    """Create a fresh in-memory database per test."""
    engine = make_engine()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Database session for a test."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def policy() -> LedgerPolicy:
    return LedgerPolicy()


class BenefitsTestData:
    """Test data generator for benefits tests."""

    def __init__(self, db: Session):
        self.db = db
        self.year = date.today().year
        # Always in the past and in the current year.
        self.claim_date = date.today().replace(day=1)
        self._nik = 0

    def seed_reference(self) -> None:
        """Levels, marriage statuses, benefit types and an operator."""
        self.db.add_all(
            [
                LevelEmployee(id=STAFF, name="Staff"),
                LevelEmployee(id=SUPERVISOR, name="Supervisor"),
                LevelEmployee(id=MANAGER, name="Manager"),
                MarriageStatus(id=SINGLE, name="Single"),
                MarriageStatus(id=MARRIED, name="Married"),
                BenefitType(id=MEDICAL, name="Medical"),
                BenefitType(id=DENTAL, name="Dental"),
                BenefitType(id=GLASSES, name="Glasses"),
                User(id=1, name="HR Admin", email="hr@example.com"),
            ]
        )
        self.db.flush()

    def create_employee(
        self,
        level_id: int = STAFF,
        marriage_status_id: int | None = SINGLE,
        department: str = "Engineering",
        name: str | None = None,
    ) -> Employee:
        self._nik += 1
        employee = Employee(
            nik=f"EMP{self._nik:04d}",
            name=name or f"Employee {self._nik}",
            department=department,
            level_employee_id=level_id,
            marriage_status_id=marriage_status_id,
        )
        self.db.add(employee)
        self.db.flush()
        return employee

    def create_budget(
        self,
        benefit_type_id: int = MEDICAL,
        amount: Decimal | str = "1000000",
        level_id: int = STAFF,
        marriage_status_id: int | None = SINGLE,
        year: int | None = None,
    ) -> BenefitBudget:
        budget = BenefitBudget(
            benefit_type_id=benefit_type_id,
            level_employee_id=level_id,
            marriage_status_id=marriage_status_id,
            year=year or self.year,
            budget=Decimal(amount),
        )
        self.db.add(budget)
        self.db.flush()
        return budget

    def create_balance(
        self,
        employee: Employee,
        budget: BenefitBudget,
        current: Decimal | str | None = None,
    ) -> EmployeeBenefitBalance:
        balance = EmployeeBenefitBalance(
            employee_id=employee.id,
            benefit_budget_id=budget.id,
            current_balance=Decimal(current) if current is not None else Decimal(budget.budget),
        )
        self.db.add(balance)
        self.db.flush()
        return balance

    def create_claim_row(
        self,
        employee: Employee,
        amount: Decimal | str,
        benefit_type_id: int = MEDICAL,
        status: str = "approved",
        claim_date: date | None = None,
    ) -> BenefitClaim:
        """Insert a claim directly, bypassing the ledger."""
        self._nik += 1
        claim = BenefitClaim(
            claim_number=f"CLM-TEST-{self._nik:06d}",
            employee_id=employee.id,
            benefit_type_id=benefit_type_id,
            amount=Decimal(amount),
            claim_date=claim_date or self.claim_date,
            status=status,
            revision=0,
        )
        self.db.add(claim)
        self.db.flush()
        return claim

    def standard_setup(self, amount: str = "1000000") -> tuple[Employee, BenefitBudget]:
        """One staff employee with a medical balance at ``amount``."""
        self.seed_reference()
        employee = self.create_employee()
        budget = self.create_budget(MEDICAL, amount)
        self.create_balance(employee, budget)
        return employee, budget


@pytest.fixture
def test_data(db: Session) -> BenefitsTestData:
    return BenefitsTestData(db)


@pytest.fixture
def seeded(test_data: BenefitsTestData) -> tuple[Employee, BenefitBudget]:
    """Standard employee and medical budget of 1,000,000."""
    return test_data.standard_setup()
