"""Configuration management for the benefits engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache

from dotenv import load_dotenv


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    engine_version: str
    host: str
    port: int
    debug: bool
    log_level: str
    report_cache_ttl_seconds: int
    balance_lock_retries: int
    revalidate_on_approval: bool

    @property
    def HOST(self) -> str:
        """Alias for host."""
        return self.host

    @property
    def PORT(self) -> int:
        """Alias for port."""
        return self.port

    @property
    def DEBUG(self) -> bool:
        """Alias for debug."""
        return self.debug

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv()

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./benefits.db"),
            engine_version=os.getenv("ENGINE_VERSION", "1.0.0"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            debug=_env_bool("DEBUG", "false"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            report_cache_ttl_seconds=int(os.getenv("REPORT_CACHE_TTL_SECONDS", "300")),
            balance_lock_retries=int(os.getenv("BALANCE_LOCK_RETRIES", "3")),
            revalidate_on_approval=_env_bool("REVALIDATE_ON_APPROVAL", "true"),
        )


@dataclass(frozen=True)
class LedgerPolicy:
    """Business rules applied when balances move.

    Overdraft rates are fractions of the budget amount that a balance may go
    below zero when an overdraft is explicitly allowed. Keys are matched
    against the lower-cased benefit type name.
    """

    overdraft_rates: dict[str, Decimal] = field(
        default_factory=lambda: {
            "medical": Decimal("0.5"),
            "dental": Decimal("0.2"),
            "maternity": Decimal("0.3"),
            "glasses": Decimal("0.1"),
        }
    )
    default_overdraft_rate: Decimal = Decimal("0.25")
    low_balance_ratio: Decimal = Decimal("0.2")
    recalculation_tolerance: Decimal = Decimal("0.01")
    max_lock_retries: int = 3
    revalidate_on_approval: bool = True

    def overdraft_rate(self, benefit_type_name: str | None) -> Decimal:
        """Get the overdraft rate for a benefit type name."""
        key = (benefit_type_name or "").strip().lower()
        return self.overdraft_rates.get(key, self.default_overdraft_rate)

    def overdraft_limit(self, budget_amount: Decimal, benefit_type_name: str | None) -> Decimal:
        """Lowest balance an overdraft may reach (zero or negative)."""
        limit = -(Decimal(budget_amount) * self.overdraft_rate(benefit_type_name))
        return limit.quantize(Decimal("0.01"))

    @classmethod
    def from_settings(cls, settings: Settings) -> LedgerPolicy:
        """Build a policy from application settings."""
        return cls(
            max_lock_retries=settings.balance_lock_retries,
            revalidate_on_approval=settings.revalidate_on_approval,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()


@lru_cache(maxsize=1)
def get_policy() -> LedgerPolicy:
    """Get cached ledger policy built from settings."""
    return LedgerPolicy.from_settings(get_settings())


settings = get_settings()
