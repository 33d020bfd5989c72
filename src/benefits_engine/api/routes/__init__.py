"""API routes."""

from benefits_engine.api.routes.balances import router as balances_router
from benefits_engine.api.routes.claims import router as claims_router
from benefits_engine.api.routes.health import router as health_router
from benefits_engine.api.routes.reports import router as reports_router

__all__ = ["balances_router", "claims_router", "health_router", "reports_router"]
