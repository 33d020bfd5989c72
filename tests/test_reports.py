"""Tests for reports.

Tests verify:
1. Parameter validation per report kind
2. Each report's figures over a fixed set of approved claims
3. Period generation and trend helpers
4. Caching of generated reports
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from benefits_engine.models import utcnow
from benefits_engine.reports import ReportKind, ReportParamsError, ReportsService, TTLReportCache
from benefits_engine.reports.builders import (
    budget_recommendations,
    budget_status,
    categorize_utilization,
    generate_periods,
    overall_trend,
    previous_period,
    utilization_category,
    volatility,
)
from tests.conftest import DENTAL, MEDICAL, SUPERVISOR, BenefitsTestData

YEAR = 2024
FIXED_NOW = datetime(2024, 7, 1, 8, 30, tzinfo=timezone.utc)


@pytest.fixture
def claims(db: Session, test_data: BenefitsTestData):
    """Three employees and a half year of claims.

    Approved: e1 medical 300k (Jan), e1 dental 100k (Feb),
    e2 medical 900k (Apr), e3 medical 200k (Apr).
    """
    test_data.seed_reference()
    e1 = test_data.create_employee(department="Engineering", name="Ayu")
    e2 = test_data.create_employee(department="Finance", name="Budi")
    e3 = test_data.create_employee(
        level_id=SUPERVISOR, marriage_status_id=None, department="Engineering", name="Citra"
    )

    staff_medical = test_data.create_budget(MEDICAL, "1000000", year=YEAR)
    test_data.create_budget(DENTAL, "500000", year=YEAR)
    supervisor_medical = test_data.create_budget(
        MEDICAL, "2000000", level_id=SUPERVISOR, marriage_status_id=None, year=YEAR
    )
    test_data.create_balance(e1, staff_medical)
    test_data.create_balance(e2, staff_medical)
    test_data.create_balance(e3, supervisor_medical)

    test_data.create_claim_row(e1, "300000", MEDICAL, claim_date=date(2024, 1, 15))
    test_data.create_claim_row(e1, "100000", DENTAL, claim_date=date(2024, 2, 10))
    test_data.create_claim_row(e2, "900000", MEDICAL, claim_date=date(2024, 4, 5))
    test_data.create_claim_row(e3, "200000", MEDICAL, claim_date=date(2024, 4, 20))

    test_data.create_claim_row(e1, "50000", MEDICAL, status="pending", claim_date=date(2024, 3, 1))
    test_data.create_claim_row(e2, "70000", MEDICAL, status="rejected", claim_date=date(2024, 3, 2))
    deleted = test_data.create_claim_row(e2, "80000", MEDICAL, claim_date=date(2024, 3, 3))
    deleted.deleted_at = utcnow()
    db.flush()

    return {"e1": e1, "e2": e2, "e3": e3}


@pytest.fixture
def reports(db: Session) -> ReportsService:
    return ReportsService(db, clock=lambda: FIXED_NOW)


class TestReportParams:
    """Test parameter validation."""

    def test_unknown_report(self, reports: ReportsService):
        with pytest.raises(ReportParamsError) as exc_info:
            reports.generate("headcount", {})
        assert "report" in exc_info.value.errors

    def test_invalid_group_by(self, reports: ReportsService):
        with pytest.raises(ReportParamsError) as exc_info:
            reports.generate(
                "claims-summary",
                {"start_date": "2024-01-01", "end_date": "2024-01-31", "group_by": "team"},
            )
        assert exc_info.value.errors == {"group_by": "Invalid group by value"}

    def test_end_before_start(self, reports: ReportsService):
        with pytest.raises(ReportParamsError) as exc_info:
            reports.generate(
                "trend-analysis",
                {
                    "start_date": "2024-02-01",
                    "end_date": "2024-01-01",
                    "period_type": "monthly",
                    "metric": "total_amount",
                },
            )
        assert exc_info.value.errors == {
            "params": "End date must be after or equal to start date"
        }

    def test_missing_required_fields(self, reports: ReportsService):
        with pytest.raises(ReportParamsError) as exc_info:
            reports.generate("benefit-usage-stats", {})
        assert set(exc_info.value.errors) == {"start_date", "end_date"}

    @pytest.mark.parametrize(
        "raw",
        [
            {"year": "2019"},
            {"sort_by": "name"},
            {"sort_dir": "up"},
            {"per_page": "101"},
            {"page": "0"},
        ],
    )
    def test_invalid_utilization_params(self, reports: ReportsService, raw):
        with pytest.raises(ReportParamsError):
            reports.validate(ReportKind.EMPLOYEE_UTILIZATION, raw)

    def test_query_strings_are_coerced(self, reports: ReportsService):
        params = reports.validate(
            "benefit-usage-stats",
            {"start_date": "2024-01-01", "end_date": "2024-03-31", "compare_period": "true"},
        )
        assert params.start_date == date(2024, 1, 1)
        assert params.compare_period is True

    def test_kinds(self):
        assert ReportsService.kinds() == [
            "claims-summary",
            "employee-utilization",
            "benefit-usage-stats",
            "trend-analysis",
            "budget-vs-actual",
        ]


class TestClaimsSummary:
    """Test the claims summary report."""

    def test_grouped_by_department(self, claims, reports: ReportsService):
        report = reports.generate(
            "claims-summary",
            {"start_date": "2024-01-01", "end_date": "2024-06-30", "group_by": "department"},
        )

        assert report["summary"] == {
            "total_claims": 4,
            "total_amount": Decimal("1500000"),
            "average_amount": Decimal("375000.00"),
            "unique_employees": 3,
            "departments_count": 2,
        }
        finance, engineering = report["grouped_data"]
        assert (finance["group_name"], finance["total_amount"], finance["percentage"]) == (
            "Finance",
            Decimal("900000"),
            60.0,
        )
        assert (engineering["claims_count"], engineering["unique_employees"]) == (3, 2)
        assert report["generated_at"] == FIXED_NOW.isoformat()
        assert report["cache_key"].startswith("claims-summary:")

    def test_grouped_by_quarter_with_filter(self, claims, reports: ReportsService):
        report = reports.generate(
            "claims-summary",
            {
                "start_date": "2024-01-01",
                "end_date": "2024-06-30",
                "group_by": "quarter",
                "benefit_type_id": str(MEDICAL),
            },
        )

        assert [(g["group_name"], g["total_amount"]) for g in report["grouped_data"]] == [
            ("2024-Q2", Decimal("1100000")),
            ("2024-Q1", Decimal("300000")),
        ]

    def test_empty_period(self, claims, reports: ReportsService):
        report = reports.generate(
            "claims-summary",
            {"start_date": "2023-01-01", "end_date": "2023-12-31", "group_by": "month"},
        )
        assert report["summary"]["total_claims"] == 0
        assert report["summary"]["average_amount"] == Decimal("0")
        assert report["grouped_data"] == []


class TestEmployeeUtilization:
    """Test the employee utilization report."""

    def test_usage_and_categories(self, claims, reports: ReportsService):
        report = reports.generate("employee-utilization", {"year": str(YEAR)})

        names = [e["employee"]["name"] for e in report["employees"]]
        assert names == ["Budi", "Ayu", "Citra"]

        budi, ayu, citra = report["employees"]
        assert budi["total_allocation"] == Decimal("1500000")
        assert budi["usage_percentage"] == 60.0
        assert budi["utilization_category"] == "normal"
        assert ayu["usage_percentage"] == 26.67
        assert ayu["last_claim_date"] == "2024-02-10"
        assert [b["used"] for b in ayu["benefit_breakdown"]] == [
            Decimal("300000"),
            Decimal("100000"),
        ]
        assert citra["total_allocation"] == Decimal("2000000")
        assert citra["employee"]["level"] == "Supervisor"

        summary = report["summary"]
        assert summary["total_employees"] == 3
        assert summary["average_utilization"] == 32.22
        assert (summary["high_utilizers"], summary["normal_utilizers"], summary["low_utilizers"]) == (
            0,
            1,
            2,
        )

    def test_sort_and_paginate(self, claims, reports: ReportsService):
        report = reports.generate(
            "employee-utilization",
            {
                "year": str(YEAR),
                "sort_by": "total_amount",
                "sort_dir": "asc",
                "page": "2",
                "per_page": "2",
            },
        )

        assert [e["employee"]["name"] for e in report["employees"]] == ["Budi"]
        assert report["pagination"] == {
            "total": 3,
            "per_page": 2,
            "current_page": 2,
            "last_page": 2,
            "from": 3,
            "to": 3,
        }

    def test_department_filter(self, claims, reports: ReportsService):
        report = reports.generate(
            "employee-utilization", {"year": str(YEAR), "department": "Finance"}
        )
        assert report["summary"]["total_employees"] == 1
        assert report["analysis_period"]["filters_applied"] == {"department": "Finance"}


class TestBenefitUsageStats:
    """Test the benefit usage statistics report."""

    def test_compare_with_previous_period(self, claims, reports: ReportsService):
        report = reports.generate(
            "benefit-usage-stats",
            {"start_date": "2024-04-01", "end_date": "2024-06-30", "compare_period": "true"},
        )

        medical, dental, glasses = report["benefit_types"]
        assert medical["current_period"]["total_amount"] == Decimal("1100000")
        assert medical["previous_period"]["total_amount"] == Decimal("300000")
        assert medical["comparison"]["amount_growth"] == 266.67
        assert medical["comparison"]["trend"] == "increasing"
        assert dental["comparison"]["trend"] == "decreasing"
        assert glasses["comparison"]["trend"] == "stable"

        top = medical["current_period"]["top_departments"]
        assert [d["department"] for d in top] == ["Finance", "Engineering"]

    def test_without_comparison(self, claims, reports: ReportsService):
        report = reports.generate(
            "benefit-usage-stats", {"start_date": "2024-01-01", "end_date": "2024-01-31"}
        )
        assert "comparison" not in report["benefit_types"][0]

    def test_previous_period_has_same_length(self):
        assert previous_period(date(2024, 4, 1), date(2024, 6, 30)) == (
            date(2024, 1, 1),
            date(2024, 3, 31),
        )


class TestTrendAnalysis:
    """Test the trend analysis report and its helpers."""

    def test_monthly_total_amount(self, claims, reports: ReportsService):
        report = reports.generate(
            "trend-analysis",
            {
                "start_date": "2024-01-01",
                "end_date": "2024-04-30",
                "period_type": "monthly",
                "metric": "total_amount",
            },
        )

        trend = report["trend_data"]
        assert [p["period"] for p in trend] == ["2024-01", "2024-02", "2024-03", "2024-04"]
        assert [p["value"] for p in trend] == [
            Decimal("300000"),
            Decimal("100000"),
            Decimal("0"),
            Decimal("1100000"),
        ]
        assert [p["growth_rate"] for p in trend] == [None, -66.67, -100.0, None]

        summary = report["summary"]
        assert summary["highest_period"]["period"] == "2024-04"
        assert summary["lowest_period"]["period"] == "2024-03"
        assert summary["overall_trend"] == "decreasing"
        assert summary["average_value"] == 375000.0

    def test_unique_employees_metric(self, claims, reports: ReportsService):
        report = reports.generate(
            "trend-analysis",
            {
                "start_date": "2024-01-01",
                "end_date": "2024-06-30",
                "period_type": "quarterly",
                "metric": "unique_employees",
            },
        )
        assert [p["value"] for p in report["trend_data"]] == [1, 2]

    def test_weekly_periods_start_on_monday(self):
        periods = generate_periods("weekly", date(2024, 1, 3), date(2024, 1, 20))

        assert [p["key"] for p in periods] == ["2024-01", "2024-02", "2024-03"]
        assert periods[0]["start"] == date(2024, 1, 1)
        assert periods[-1]["end"] == date(2024, 1, 20)

    def test_quarterly_periods(self):
        periods = generate_periods("quarterly", date(2024, 2, 15), date(2024, 8, 1))

        assert [p["key"] for p in periods] == ["2024-Q1", "2024-Q2", "2024-Q3"]
        assert periods[0]["start"] == date(2024, 1, 1)
        assert periods[1]["end"] == date(2024, 6, 30)
        assert periods[2]["end"] == date(2024, 8, 1)

    def test_monthly_periods_cross_year(self):
        periods = generate_periods("monthly", date(2023, 11, 15), date(2024, 2, 10))

        assert [p["key"] for p in periods] == ["2023-11", "2023-12", "2024-01", "2024-02"]
        assert periods[1]["end"] == date(2023, 12, 31)
        assert periods[-1]["label"] == "February 2024"

    def test_daily_periods(self):
        periods = generate_periods("daily", date(2024, 2, 28), date(2024, 3, 1))
        assert [p["key"] for p in periods] == ["2024-02-28", "2024-02-29", "2024-03-01"]

    def test_overall_trend(self):
        assert overall_trend([{"growth_rate": None}]) == "insufficient_data"
        assert overall_trend([{"growth_rate": None}, {"growth_rate": None}]) == "stable"
        assert overall_trend([{"growth_rate": None}, {"growth_rate": 6}]) == "increasing"
        assert overall_trend([{"growth_rate": None}, {"growth_rate": -5}]) == "stable"

    def test_volatility(self):
        assert volatility([2, 4, 4, 4, 5, 5, 7, 9]) == 2.0
        assert volatility([Decimal("10")]) == 0.0


class TestBudgetVsActual:
    """Test the budget versus actual report."""

    def test_by_employee_level(self, claims, reports: ReportsService):
        report = reports.generate(
            "budget-vs-actual", {"group_by": "employee_level", "year": str(YEAR)}
        )

        staff, supervisor = report["groups"]
        assert (staff["group_name"], staff["budget"], staff["actual"]) == (
            "Staff",
            Decimal("1500000"),
            Decimal("1300000"),
        )
        assert staff["status"] == "near_budget"
        assert supervisor["utilization_rate"] == 10.0
        assert supervisor["status"] == "under_utilized"

        summary = report["summary"]
        assert summary["total_budget"] == Decimal("3500000")
        assert summary["overall_utilization"] == 42.86
        assert summary["groups_breakdown"]["near_budget"] == 1

        insights = report["insights"]
        assert insights["best_performer"]["group_name"] == "Staff"
        assert [r["type"] for r in insights["recommendations"]] == [
            "budget_reallocation",
            "utilization_improvement",
        ]

    def test_by_benefit_type_excludes_unbudgeted_types(self, claims, reports: ReportsService):
        report = reports.generate(
            "budget-vs-actual", {"group_by": "benefit_type", "year": str(YEAR)}
        )
        assert {g["group_name"] for g in report["groups"]} == {"Medical", "Dental"}

    @pytest.mark.parametrize(
        ("utilization", "status"),
        [(95, "over_budget"), (90, "over_budget"), (85, "near_budget"), (60, "on_track"), (10, "under_utilized")],
    )
    def test_budget_status(self, utilization, status):
        assert budget_status(utilization) == status

    def test_recommendations_for_overspend(self):
        groups = [{"status": "over_budget"}, {"status": "on_track"}]
        types = [r["type"] for r in budget_recommendations(groups, 120)]
        assert types == ["budget_increase", "monitoring"]


class TestUtilizationCategories:
    """Test utilization banding."""

    def test_bands(self):
        assert utilization_category(80) == "high"
        assert utilization_category(30) == "low"
        assert utilization_category(50) == "normal"

    def test_zero_users_also_count_as_low(self):
        counts = categorize_utilization(
            [{"usage_percentage": 0}, {"usage_percentage": 90}, {"usage_percentage": 40}]
        )
        assert counts == {
            "high_utilizers": 1,
            "normal_utilizers": 1,
            "low_utilizers": 1,
            "zero_utilizers": 1,
        }


class TestReportCaching:
    """Test that generated reports are cached by kind and parameters."""

    def test_second_call_served_from_cache(self, db: Session, claims):
        cache = TTLReportCache()
        service = ReportsService(db, cache=cache, clock=lambda: FIXED_NOW)
        params = {"group_by": "benefit_type", "year": str(YEAR)}

        first = service.generate("budget-vs-actual", params)
        second = service.generate("budget-vs-actual", dict(reversed(params.items())))

        assert second is first
        assert (cache.hits, cache.misses) == (1, 1)

    def test_different_params_are_separate_entries(self, db: Session, claims):
        cache = TTLReportCache()
        service = ReportsService(db, cache=cache)

        a = service.generate("budget-vs-actual", {"group_by": "benefit_type", "year": str(YEAR)})
        b = service.generate("budget-vs-actual", {"group_by": "employee_level", "year": str(YEAR)})

        assert a["cache_key"] != b["cache_key"]
        assert len(cache) == 2
