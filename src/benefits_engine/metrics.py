"""Benefits ledger observability metrics.

Metric Categories:
- Ledger metrics: transaction counts by direction and reference
- Balance metrics: balance rows, negative and drifted balances
- Claim metrics: claims by status
- Reconciliation metrics: pending and failed outbox items

Usage:
    collector = MetricsCollector(session)
    metrics = collector.collect_all()

    # For Prometheus export
    print(metrics.to_prometheus())

    # For JSON export
    print(metrics.to_json())
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from benefits_engine.models import (
    BalanceTransaction,
    BenefitClaim,
    EmployeeBenefitBalance,
    PendingReconciliation,
    utcnow,
)
from benefits_engine.services.balance_store import BalanceStore
from benefits_engine.services.ledger_service import ReferenceType, TransactionType
from benefits_engine.services.state_machine import ClaimStatus


@dataclass
class Counter:
    """A counter metric (monotonically increasing)."""

    name: str
    value: int
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


@dataclass
class Gauge:
    """A gauge metric (can go up or down)."""

    name: str
    value: float | int | Decimal
    labels: dict[str, str] = field(default_factory=dict)
    help_text: str = ""


Metric = Counter | Gauge


@dataclass
class LedgerMetrics:
    """Collection of all ledger metrics."""

    # Ledger
    transactions_total: Counter
    transactions_by_type: list[Counter]
    transactions_by_reference: list[Counter]

    # Balances
    balance_rows: Gauge
    balance_total: Gauge
    negative_balances: Gauge
    drifted_balances: Gauge

    # Claims
    claims_by_status: list[Gauge]

    # Reconciliation outbox
    pending_reconciliations: Gauge
    failed_reconciliations: Gauge

    collected_at: datetime = field(default_factory=utcnow)

    def metrics(self) -> list[Metric]:
        """All metrics, flattened."""
        result: list[Metric] = []
        for name in self.__dataclass_fields__:
            if name == "collected_at":
                continue
            value = getattr(self, name)
            if isinstance(value, list):
                result.extend(value)
            else:
                result.append(value)
        return result

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {"collected_at": self.collected_at.isoformat()}
        for name in self.__dataclass_fields__:
            if name == "collected_at":
                continue
            value = getattr(self, name)
            if isinstance(value, list):
                result[name] = [self._metric_to_dict(m) for m in value]
            else:
                result[name] = self._metric_to_dict(value)
        return result

    @staticmethod
    def _metric_to_dict(metric: Metric) -> dict[str, Any]:
        return {
            "name": metric.name,
            "value": float(metric.value) if isinstance(metric.value, Decimal) else metric.value,
            "labels": metric.labels,
            "help": metric.help_text,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=2)

    def to_prometheus(self) -> str:
        """Convert to Prometheus text format."""
        lines: list[str] = []
        seen: set[str] = set()

        for metric in self.metrics():
            if metric.name not in seen:
                seen.add(metric.name)
                if metric.help_text:
                    lines.append(f"# HELP {metric.name} {metric.help_text}")
                metric_type = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {metric.name} {metric_type}")

            labels = ""
            if metric.labels:
                label_parts = [f'{k}="{v}"' for k, v in metric.labels.items()]
                labels = "{" + ",".join(label_parts) + "}"

            value = float(metric.value) if isinstance(metric.value, Decimal) else metric.value
            lines.append(f"{metric.name}{labels} {value}")

        return "\n".join(lines)


class MetricsCollector:
    """Collects metrics from database."""

    def __init__(self, session: Session, year: int | None = None) -> None:
        self._session = session
        self._year = year

    def collect_all(self) -> LedgerMetrics:
        """Collect all metrics."""
        return LedgerMetrics(
            transactions_total=self._count_transactions(),
            transactions_by_type=self._count_transactions_by_type(),
            transactions_by_reference=self._count_transactions_by_reference(),
            balance_rows=self._gauge_balance_rows(),
            balance_total=self._gauge_balance_total(),
            negative_balances=self._gauge_negative_balances(),
            drifted_balances=self._gauge_drifted_balances(),
            claims_by_status=self._gauge_claims_by_status(),
            pending_reconciliations=self._gauge_outbox("pending"),
            failed_reconciliations=self._gauge_outbox("failed"),
        )

    def _transactions(self):
        query = select(func.count(BalanceTransaction.id))
        if self._year:
            query = query.where(BalanceTransaction.year == self._year)
        return query

    def _count_transactions(self) -> Counter:
        return Counter(
            name="benefits_ledger_transactions_total",
            value=self._session.scalar(self._transactions()) or 0,
            help_text="Ledger rows written",
        )

    def _count_transactions_by_type(self) -> list[Counter]:
        return [
            Counter(
                name="benefits_ledger_transactions_by_type",
                value=self._session.scalar(
                    self._transactions().where(BalanceTransaction.transaction_type == t.value)
                )
                or 0,
                labels={"type": t.value},
                help_text="Ledger rows by direction",
            )
            for t in TransactionType
        ]

    def _count_transactions_by_reference(self) -> list[Counter]:
        return [
            Counter(
                name="benefits_ledger_transactions_by_reference",
                value=self._session.scalar(
                    self._transactions().where(BalanceTransaction.reference_type == r.value)
                )
                or 0,
                labels={"reference": r.value},
                help_text="Ledger rows by cause",
            )
            for r in ReferenceType
        ]

    def _balances(self):
        return list(self._session.scalars(select(EmployeeBenefitBalance)))

    def _gauge_balance_rows(self) -> Gauge:
        return Gauge(
            name="benefits_balance_rows",
            value=self._session.scalar(select(func.count(EmployeeBenefitBalance.id))) or 0,
            help_text="Employee balance rows",
        )

    def _gauge_balance_total(self) -> Gauge:
        total = self._session.scalar(
            select(func.coalesce(func.sum(EmployeeBenefitBalance.current_balance), 0))
        )
        return Gauge(
            name="benefits_balance_total",
            value=Decimal(total or 0),
            help_text="Sum of current balances",
        )

    def _gauge_negative_balances(self) -> Gauge:
        count = self._session.scalar(
            select(func.count(EmployeeBenefitBalance.id)).where(
                EmployeeBenefitBalance.current_balance < 0
            )
        )
        return Gauge(
            name="benefits_negative_balances",
            value=count or 0,
            help_text="Balances below zero",
        )

    def _gauge_drifted_balances(self) -> Gauge:
        """Balances that disagree with their ledger replay."""
        store = BalanceStore(self._session)
        drifted = 0
        for balance in self._balances():
            if self._year and balance.budget.year != self._year:
                continue
            replayed = store.recompute_from_ledger(balance.employee_id, balance.budget)
            if Decimal(balance.current_balance) != replayed:
                drifted += 1
        return Gauge(
            name="benefits_drifted_balances",
            value=drifted,
            help_text="Balances that differ from the ledger replay",
        )

    def _gauge_claims_by_status(self) -> list[Gauge]:
        gauges = []
        for status in ClaimStatus:
            count = self._session.scalar(
                select(func.count(BenefitClaim.id)).where(
                    BenefitClaim.status == status.value,
                    BenefitClaim.deleted_at.is_(None),
                )
            )
            gauges.append(
                Gauge(
                    name="benefits_claims",
                    value=count or 0,
                    labels={"status": status.value},
                    help_text="Claims by status",
                )
            )
        return gauges

    def _gauge_outbox(self, status: str) -> Gauge:
        count = self._session.scalar(
            select(func.count(PendingReconciliation.id)).where(
                PendingReconciliation.status == status
            )
        )
        return Gauge(
            name=f"benefits_reconciliations_{status}",
            value=count or 0,
            help_text=f"Claim reconciliations {status} in the outbox",
        )
