"""Database connection and session management."""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from benefits_engine.config import get_settings
from benefits_engine.models import Base, EmployeeBenefitBalance

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def get_engine(url: str | None = None) -> Engine:
    """Create database engine."""
    database_url = url or get_settings().database_url
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_db() -> tuple[Engine, sessionmaker[Session]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine()
        _session_factory = sessionmaker(
            _engine,
            expire_on_commit=False,
            autoflush=False,
        )
    return _engine, _session_factory


def create_schema(engine: Engine | None = None) -> None:
    """Create all tables that do not exist yet."""
    if engine is None:
        engine, _ = init_db()
    Base.metadata.create_all(engine)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get a database session that commits on success."""
    _, factory = init_db()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def lock_balance_row(
    session: Session, employee_id: int, benefit_budget_id: int
) -> EmployeeBenefitBalance | None:
    """Load a balance row with an exclusive row lock.

    The lock is held until the enclosing transaction ends. Backends without
    row locks (SQLite) ignore FOR UPDATE and rely on the version check.
    """
    return session.scalars(
        select(EmployeeBenefitBalance)
        .where(
            EmployeeBenefitBalance.employee_id == employee_id,
            EmployeeBenefitBalance.benefit_budget_id == benefit_budget_id,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    ).one_or_none()
