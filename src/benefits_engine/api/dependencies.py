"""FastAPI dependencies for dependency injection."""

from collections.abc import Generator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from benefits_engine.config import get_settings
from benefits_engine.database import init_db
from benefits_engine.reports.cache import ReportCache, TTLReportCache


def get_db_session() -> Generator[Session, None, None]:
    """Get database session dependency. Routes commit explicitly."""
    _, factory = init_db()
    with factory() as session:
        yield session


@lru_cache(maxsize=1)
def get_report_cache() -> ReportCache:
    """Process-wide report cache."""
    return TTLReportCache(default_ttl=get_settings().report_cache_ttl_seconds)


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
ReportCacheDep = Annotated[ReportCache, Depends(get_report_cache)]
