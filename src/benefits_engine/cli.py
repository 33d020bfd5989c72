"""Benefits ledger command line interface.

Provides operational tools for:
- Schema creation
- Balance initialization and recalculation
- Replay of parked claim reconciliations
- Low-balance alerts
- Metrics emission

Usage:
    python -m benefits_engine.cli init-db
    python -m benefits_engine.cli initialize-balances --year 2025
    python -m benefits_engine.cli recalculate --year 2025 --dry-run
    python -m benefits_engine.cli retry-reconciliations --limit 100
    python -m benefits_engine.cli low-balance-alerts --threshold 10
    python -m benefits_engine.cli metrics --format prometheus
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal

from sqlalchemy.orm import Session, sessionmaker

from benefits_engine.config import get_settings
from benefits_engine.database import create_schema, get_session
from benefits_engine.metrics import MetricsCollector
from benefits_engine.services.balance_management import (
    BalanceManagementService,
    RecalculationScope,
)

logger = logging.getLogger(__name__)


def parse_ids(s: str) -> list[int]:
    """Parse a comma-separated list of ids."""
    return [int(part) for part in s.split(",") if part.strip()]


class BenefitsCli:
    """Benefits ledger command line interface."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self.parser = self._build_parser()
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        if self._session_factory is None:
            with get_session() as session:
                yield session
            return

        with self._session_factory() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m benefits_engine.cli",
            description="Benefits ledger operational tools",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            default=None,
            help="Logging level (default: LOG_LEVEL or INFO)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("init-db", help="Create database tables")

        init = subparsers.add_parser(
            "initialize-balances",
            help="Create missing balance rows at their budget amount",
        )
        init.add_argument("--year", type=int, default=date.today().year)
        init.add_argument(
            "--employee-ids",
            type=parse_ids,
            default=[],
            help="Comma-separated employee ids (default: all)",
        )

        recalc = subparsers.add_parser(
            "recalculate",
            help="Rebuild balances from the ledger",
        )
        recalc.add_argument("--year", type=int, default=date.today().year)
        recalc.add_argument(
            "--employee-ids",
            type=parse_ids,
            default=[],
            help="Comma-separated employee ids (default: all)",
        )
        recalc.add_argument(
            "--benefit-type-ids",
            type=parse_ids,
            default=[],
            help="Comma-separated benefit type ids (default: all)",
        )
        recalc.add_argument(
            "--dry-run",
            action="store_true",
            help="Report discrepancies without writing",
        )

        retry = subparsers.add_parser(
            "retry-reconciliations",
            help="Replay parked claim reconciliations",
        )
        retry.add_argument(
            "--limit",
            type=int,
            default=100,
            help="Maximum items to replay (default: 100)",
        )
        retry.add_argument(
            "--requeue-failed",
            action="store_true",
            help="Put items that ran out of attempts back in line first",
        )

        alerts = subparsers.add_parser(
            "low-balance-alerts",
            help="List balances running low or overdrawn",
        )
        alerts.add_argument(
            "--threshold",
            type=Decimal,
            default=Decimal("20"),
            help="Remaining percentage at or below which to alert (default: 20)",
        )
        alerts.add_argument("--year", type=int, default=None)

        metrics = subparsers.add_parser("metrics", help="Emit ledger metrics")
        metrics.add_argument(
            "--format",
            choices=["prometheus", "json"],
            default="prometheus",
            help="Output format (default: prometheus)",
        )
        metrics.add_argument("--year", type=int, default=None)

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        logging.basicConfig(
            level=(parsed.log_level or get_settings().log_level).upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        if not parsed.command:
            self.parser.print_help()
            return 1

        handlers: dict[str, Callable[..., int]] = {
            "init-db": self._cmd_init_db,
            "initialize-balances": self._cmd_initialize_balances,
            "recalculate": self._cmd_recalculate,
            "retry-reconciliations": self._cmd_retry_reconciliations,
            "low-balance-alerts": self._cmd_low_balance_alerts,
            "metrics": self._cmd_metrics,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables."""
        if self._session_factory is not None:
            create_schema(self._session_factory.kw["bind"])
        else:
            create_schema()
        print("Database schema created")
        return 0

    def _cmd_initialize_balances(self, args: argparse.Namespace) -> int:
        """Create missing balances."""
        with self._session() as session:
            result = BalanceManagementService(session).initialize_balances(
                args.year, args.employee_ids or None
            )
        print(
            f"Initialized {result.created} balance(s) for {result.employees} employee(s) "
            f"in {result.year}; {result.skipped} already present"
        )
        return 0

    def _cmd_recalculate(self, args: argparse.Namespace) -> int:
        """Recalculate balances."""
        scope = RecalculationScope(
            year=args.year,
            employee_ids=args.employee_ids,
            benefit_type_ids=args.benefit_type_ids,
        )
        with self._session() as session:
            report = BalanceManagementService(session).recalculate_balances(
                scope, dry_run=args.dry_run
            )

        print(
            f"Recalculated {report.recalculated_balances} balance(s) for "
            f"{report.recalculated_employees} employee(s) in {report.year}"
            + (" [dry run]" if report.dry_run else "")
        )
        print(f"Discrepancies found: {report.discrepancies_found}")
        for d in report.discrepancies:
            print(
                f"  employee={d.employee_id} benefit_type={d.benefit_type_id} "
                f"old={d.old_balance} calculated={d.calculated_balance} diff={d.difference}"
            )
        return 0

    def _cmd_retry_reconciliations(self, args: argparse.Namespace) -> int:
        """Replay the reconciliation outbox."""
        with self._session() as session:
            report = BalanceManagementService(session).retry_pending_reconciliations(
                args.limit, requeue_failed=args.requeue_failed
            )

        print(
            f"Processed {report.processed}: {report.succeeded} succeeded, "
            f"{report.still_pending} still pending, {report.failed} failed"
        )
        return 1 if report.failed else 0

    def _cmd_low_balance_alerts(self, args: argparse.Namespace) -> int:
        """Print low-balance alerts."""
        with self._session() as session:
            alerts = BalanceManagementService(session).get_low_balance_alerts(
                args.threshold, args.year
            )

        print(f"{alerts['total_alerts']} alert(s) at threshold {alerts['threshold_percentage']}%")
        for alert in alerts["alerts"]:
            print(
                f"  [{alert['alert_level']}] {alert['employee']['name']} "
                f"({alert['benefit_type']['name']}): {alert['current_balance']} "
                f"of {alert['initial_balance']} ({alert['remaining_percentage']}% left)"
            )
        return 0

    def _cmd_metrics(self, args: argparse.Namespace) -> int:
        """Emit metrics."""
        with self._session() as session:
            metrics = MetricsCollector(session, year=args.year).collect_all()

        if args.format == "json":
            print(metrics.to_json())
        else:
            print(metrics.to_prometheus())
        return 0


def main() -> int:
    """CLI entry point."""
    cli = BenefitsCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
