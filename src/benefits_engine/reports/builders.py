"""Report builders.

Each builder is a plain function ``(ReportData, params) -> dict``. Amounts
stay Decimal; percentages are floats rounded to two places.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import date, timedelta
from decimal import Decimal

from benefits_engine.reports.data import ClaimRow, ReportData
from benefits_engine.reports.params import (
    BenefitUsageStatsParams,
    BudgetVsActualParams,
    ClaimsSummaryParams,
    EmployeeUtilizationParams,
    TrendAnalysisParams,
)

ZERO = Decimal("0")

# Best performer is the group whose utilization is closest to this.
IDEAL_UTILIZATION = 85.0


def percentage(part, whole) -> float:
    """``part`` as a percentage of ``whole``, 0 when whole is not positive."""
    if not whole or whole <= 0:
        return 0.0
    return round(float(part) / float(whole) * 100, 2)


def growth(current, previous) -> float:
    if not previous or previous <= 0:
        return 0.0
    return round((float(current) - float(previous)) / float(previous) * 100, 2)


def total(claims: Iterable[ClaimRow]) -> Decimal:
    return sum((c.amount for c in claims), ZERO)


def average(claims: list[ClaimRow]) -> Decimal:
    if not claims:
        return ZERO
    return (total(claims) / len(claims)).quantize(Decimal("0.01"))


def unique_employees(claims: Iterable[ClaimRow]) -> int:
    return len({c.employee_id for c in claims})


def quarter_of(day: date) -> int:
    return (day.month - 1) // 3 + 1


# ============================================================================
# Grouping
# ============================================================================


def group_key(claim: ClaimRow, group_by: str) -> str:
    """Label a claim is grouped under."""
    if group_by == "department":
        return claim.department or "Unknown"
    if group_by == "benefit_type":
        return claim.benefit_type_name or "Unknown"
    if group_by == "employee_level":
        return claim.level_name or "Unknown"
    if group_by == "month":
        return claim.claim_date.strftime("%Y-%m")
    if group_by == "quarter":
        return f"{claim.claim_date.year}-Q{quarter_of(claim.claim_date)}"
    return "Unknown"


def group_claims(claims: list[ClaimRow], group_by: str) -> list[dict]:
    """Per-group totals, largest total first."""
    groups: dict[str, list[ClaimRow]] = defaultdict(list)
    for claim in claims:
        groups[group_key(claim, group_by)].append(claim)

    grand_total = total(claims)
    result = []
    for name, members in groups.items():
        group_total = total(members)
        result.append(
            {
                "group_name": name,
                "claims_count": len(members),
                "total_amount": group_total,
                "average_amount": average(members),
                "percentage": percentage(group_total, grand_total),
                "unique_employees": unique_employees(members),
            }
        )
    result.sort(key=lambda g: g["total_amount"], reverse=True)
    return result


def claims_statistics(claims: list[ClaimRow]) -> dict:
    return {
        "total_claims": len(claims),
        "total_amount": total(claims),
        "average_amount": average(claims),
        "unique_employees": unique_employees(claims),
        "departments_count": len({c.department for c in claims}),
    }


def utilization_category(usage_percentage: float) -> str:
    if usage_percentage >= 80:
        return "high"
    if usage_percentage <= 30:
        return "low"
    return "normal"


def categorize_utilization(employees: list[dict]) -> dict:
    """Count employees per utilization band. Zero users are also low users."""
    counts = {"high_utilizers": 0, "normal_utilizers": 0, "low_utilizers": 0, "zero_utilizers": 0}
    for employee in employees:
        category = utilization_category(employee["usage_percentage"])
        counts[f"{category}_utilizers"] += 1
        if employee["usage_percentage"] == 0:
            counts["zero_utilizers"] += 1
    return counts


# ============================================================================
# claims-summary
# ============================================================================


def build_claims_summary(data: ReportData, params: ClaimsSummaryParams) -> dict:
    claims = data.claims_for_period(
        params.start_date,
        params.end_date,
        department=params.department,
        benefit_type_id=params.benefit_type_id,
        employee_level_id=params.employee_level_id,
    )
    return {
        "report_period": {
            "start_date": params.start_date.isoformat(),
            "end_date": params.end_date.isoformat(),
            "group_by": params.group_by,
        },
        "summary": claims_statistics(claims),
        "grouped_data": group_claims(claims, params.group_by),
    }


# ============================================================================
# employee-utilization
# ============================================================================


def employee_utilization(data: ReportData, employee, year: int) -> dict:
    lines = data.budget_lines_for(employee, year)
    claims = data.claims_for_year(year, employee_id=employee.id)

    allocation = sum((line.budget for line in lines), ZERO)
    used = total(claims)
    usage = percentage(used, allocation)

    breakdown = []
    for line in lines:
        line_used = total(c for c in claims if c.benefit_type_id == line.benefit_type_id)
        breakdown.append(
            {
                "benefit_type": line.benefit_type_name,
                "allocated": line.budget,
                "used": line_used,
                "percentage": percentage(line_used, line.budget),
            }
        )

    last_claim = max((c.claim_date for c in claims), default=None)
    return {
        "employee": {
            "id": employee.id,
            "name": employee.name,
            "nik": employee.nik,
            "department": employee.department,
            "level": employee.level.name if employee.level else "Unknown",
        },
        "total_allocation": allocation,
        "total_used": used,
        "remaining_balance": allocation - used,
        "usage_percentage": usage,
        "claims_count": len(claims),
        "average_claim_amount": average(claims),
        "last_claim_date": last_claim.isoformat() if last_claim else None,
        "utilization_category": utilization_category(usage),
        "benefit_breakdown": breakdown,
    }


def build_employee_utilization(data: ReportData, params: EmployeeUtilizationParams) -> dict:
    employees = data.employees_with_balances(
        params.year,
        department=params.department,
        employee_level_id=params.employee_level_id,
    )
    utilization = [employee_utilization(data, e, params.year) for e in employees]
    categories = categorize_utilization(utilization)

    sort_field = "total_used" if params.sort_by == "total_amount" else params.sort_by
    utilization.sort(key=lambda e: e[sort_field], reverse=params.sort_dir == "desc")

    count = len(utilization)
    offset = (params.page - 1) * params.per_page
    filters = {
        k: v
        for k, v in {
            "department": params.department,
            "employee_level_id": params.employee_level_id,
        }.items()
        if v
    }
    average_utilization = (
        round(sum(e["usage_percentage"] for e in utilization) / count, 2) if count else 0.0
    )

    return {
        "analysis_period": {"year": params.year, "filters_applied": filters},
        "summary": {
            "total_employees": count,
            "employees_with_claims": sum(1 for e in utilization if e["claims_count"] > 0),
            "average_utilization": average_utilization,
            **categories,
        },
        "employees": utilization[offset : offset + params.per_page],
        "pagination": {
            "total": count,
            "per_page": params.per_page,
            "current_page": params.page,
            "last_page": math.ceil(count / params.per_page),
            "from": offset + 1,
            "to": min(offset + params.per_page, count),
        },
    }


# ============================================================================
# benefit-usage-stats
# ============================================================================


def benefit_period_stats(claims: list[ClaimRow]) -> dict:
    amount = total(claims)
    departments: dict[str | None, list[ClaimRow]] = defaultdict(list)
    for claim in claims:
        departments[claim.department].append(claim)

    top = sorted(
        (
            {
                "department": name,
                "claims": len(members),
                "amount": total(members),
                "percentage": percentage(total(members), amount),
            }
            for name, members in departments.items()
        ),
        key=lambda d: d["amount"],
        reverse=True,
    )[:5]

    return {
        "total_claims": len(claims),
        "total_amount": amount,
        "average_claim": average(claims),
        "unique_employees": unique_employees(claims),
        "top_departments": top,
    }


def compare_periods(current: dict, previous: dict) -> dict:
    amount_growth = growth(current["total_amount"], previous["total_amount"])
    if amount_growth > 10:
        trend = "increasing"
    elif amount_growth < -10:
        trend = "decreasing"
    else:
        trend = "stable"
    return {
        "claims_growth": growth(current["total_claims"], previous["total_claims"]),
        "amount_growth": amount_growth,
        "employee_growth": growth(current["unique_employees"], previous["unique_employees"]),
        "trend": trend,
    }


def previous_period(start: date, end: date) -> tuple[date, date]:
    """Period of the same length ending the day before ``start``."""
    length = (end - start).days
    return start - timedelta(days=length + 1), start - timedelta(days=1)


def build_benefit_usage_stats(data: ReportData, params: BenefitUsageStatsParams) -> dict:
    stats = []
    for benefit_type in data.benefit_types():
        claims = data.claims_for_period(
            params.start_date, params.end_date, benefit_type_id=benefit_type.id
        )
        entry = {
            "benefit_type": {"id": benefit_type.id, "name": benefit_type.name},
            "current_period": benefit_period_stats(claims),
        }
        if params.compare_period:
            prev_start, prev_end = previous_period(params.start_date, params.end_date)
            previous = benefit_period_stats(
                data.claims_for_period(prev_start, prev_end, benefit_type_id=benefit_type.id)
            )
            entry["previous_period"] = previous
            entry["comparison"] = compare_periods(entry["current_period"], previous)
        stats.append(entry)

    return {
        "report_period": {
            "start_date": params.start_date.isoformat(),
            "end_date": params.end_date.isoformat(),
            "compare_period": params.compare_period,
        },
        "benefit_types": stats,
    }


# ============================================================================
# trend-analysis
# ============================================================================


def _month_end(day: date) -> date:
    first_next = date(day.year + day.month // 12, day.month % 12 + 1, 1)
    return first_next - timedelta(days=1)


def _add_months(day: date, months: int) -> date:
    index = day.month - 1 + months
    return date(day.year + index // 12, index % 12 + 1, 1)


def generate_periods(period_type: str, start: date, end: date) -> list[dict]:
    """Consecutive periods covering [start, end]; the last one is clipped to end."""
    periods = []

    if period_type == "daily":
        day = start
        while day <= end:
            periods.append(
                {
                    "key": day.isoformat(),
                    "label": day.strftime("%d %b %Y"),
                    "start": day,
                    "end": day,
                }
            )
            day += timedelta(days=1)

    elif period_type == "weekly":
        cursor = start - timedelta(days=start.weekday())
        while cursor <= end:
            iso_year, iso_week, _ = cursor.isocalendar()
            periods.append(
                {
                    "key": f"{iso_year}-{iso_week:02d}",
                    "label": f"Week of {cursor:%d %b %Y}",
                    "start": cursor,
                    "end": min(cursor + timedelta(days=6), end),
                }
            )
            cursor += timedelta(weeks=1)

    elif period_type == "monthly":
        cursor = start.replace(day=1)
        while cursor <= end:
            periods.append(
                {
                    "key": cursor.strftime("%Y-%m"),
                    "label": cursor.strftime("%B %Y"),
                    "start": cursor,
                    "end": min(_month_end(cursor), end),
                }
            )
            cursor = _add_months(cursor, 1)

    elif period_type == "quarterly":
        quarter = quarter_of(start)
        cursor = date(start.year, (quarter - 1) * 3 + 1, 1)
        while cursor <= end:
            quarter = quarter_of(cursor)
            periods.append(
                {
                    "key": f"{cursor.year}-Q{quarter}",
                    "label": f"Q{quarter} {cursor.year}",
                    "start": cursor,
                    "end": min(_month_end(_add_months(cursor, 2)), end),
                }
            )
            cursor = _add_months(cursor, 3)

    return periods


METRICS: dict[str, Callable[[list[ClaimRow]], object]] = {
    "claims_count": len,
    "total_amount": total,
    "average_amount": average,
    "unique_employees": unique_employees,
}


def overall_trend(trend_data: list[dict]) -> str:
    if len(trend_data) < 2:
        return "insufficient_data"
    rates = [p["growth_rate"] for p in trend_data if p["growth_rate"] is not None]
    if not rates:
        return "stable"
    avg_growth = sum(rates) / len(rates)
    if avg_growth > 5:
        return "increasing"
    if avg_growth < -5:
        return "decreasing"
    return "stable"


def volatility(values: list) -> float:
    """Population standard deviation, rounded to two places."""
    if len(values) < 2:
        return 0.0
    floats = [float(v) for v in values]
    mean = sum(floats) / len(floats)
    variance = sum((v - mean) ** 2 for v in floats) / len(floats)
    return round(math.sqrt(variance), 2)


def build_trend_analysis(data: ReportData, params: TrendAnalysisParams) -> dict:
    metric = METRICS[params.metric]
    trend_data = []
    previous = None

    for period in generate_periods(params.period_type, params.start_date, params.end_date):
        claims = data.claims_for_period(period["start"], period["end"])
        value = metric(claims)
        entry = {
            "period": period["key"],
            "period_label": period["label"],
            "value": value,
            "claims_count": len(claims),
            "unique_employees": unique_employees(claims),
            "growth_rate": None,
        }
        if previous is not None and previous > 0:
            entry["growth_rate"] = growth(value, previous)
        trend_data.append(entry)
        previous = value

    values = [p["value"] for p in trend_data]
    highest = max(trend_data, key=lambda p: p["value"], default=None)
    lowest = min(trend_data, key=lambda p: p["value"], default=None)

    return {
        "analysis_config": {
            "period_type": params.period_type,
            "metric": params.metric,
            "start_date": params.start_date.isoformat(),
            "end_date": params.end_date.isoformat(),
        },
        "trend_data": trend_data,
        "summary": {
            "total_periods": len(trend_data),
            "average_value": round(sum(float(v) for v in values) / len(values), 2) if values else 0.0,
            "highest_period": (
                {"period": highest["period"], "value": highest["value"]} if highest else None
            ),
            "lowest_period": (
                {"period": lowest["period"], "value": lowest["value"]} if lowest else None
            ),
            "overall_trend": overall_trend(trend_data),
            "volatility": volatility(values),
        },
    }


# ============================================================================
# budget-vs-actual
# ============================================================================


def budget_status(utilization: float) -> str:
    if utilization >= 90:
        return "over_budget"
    if utilization >= 80:
        return "near_budget"
    if utilization >= 50:
        return "on_track"
    return "under_utilized"


def budget_recommendations(groups: list[dict], overall_utilization: float) -> list[dict]:
    recommendations = []
    if overall_utilization > 100:
        recommendations.append(
            {
                "type": "budget_increase",
                "priority": "high",
                "message": (
                    "Overall spending exceeds budget. Consider increasing budget "
                    "allocation or implementing stricter controls."
                ),
            }
        )
    elif overall_utilization < 50:
        recommendations.append(
            {
                "type": "budget_reallocation",
                "priority": "medium",
                "message": (
                    "Low overall utilization detected. Consider reallocating unused "
                    "budget to high-demand areas."
                ),
            }
        )

    over = sum(1 for g in groups if g["status"] == "over_budget")
    if over:
        recommendations.append(
            {
                "type": "monitoring",
                "priority": "high",
                "message": (
                    f"{over} group(s) are over budget. Implement monitoring and approval processes."
                ),
            }
        )

    under = sum(1 for g in groups if g["status"] == "under_utilized")
    if under:
        recommendations.append(
            {
                "type": "utilization_improvement",
                "priority": "low",
                "message": (
                    f"{under} group(s) are under-utilizing their budget. Consider "
                    "awareness campaigns or need assessment."
                ),
            }
        )
    return recommendations


def build_budget_vs_actual(data: ReportData, params: BudgetVsActualParams) -> dict:
    groups = []
    total_budget = total_actual = ZERO

    for group in data.budget_groups(params.group_by, params.year):
        budget = data.group_budget(params.group_by, group, params.year)
        actual = data.group_actual(params.group_by, group, params.year)
        utilization = percentage(actual, budget)
        groups.append(
            {
                "group_name": group.name,
                "budget": budget,
                "actual": actual,
                "variance": actual - budget,
                "variance_percentage": percentage(actual - budget, budget),
                "utilization_rate": utilization,
                "status": budget_status(utilization),
            }
        )
        total_budget += budget
        total_actual += actual

    groups.sort(key=lambda g: g["variance_percentage"], reverse=True)
    overall_utilization = percentage(total_actual, total_budget)

    breakdown = {"over_budget": 0, "near_budget": 0, "on_track": 0, "under_utilized": 0}
    for group in groups:
        breakdown[group["status"]] += 1

    return {
        "analysis_period": {"year": params.year, "group_by": params.group_by},
        "summary": {
            "total_budget": total_budget,
            "total_actual": total_actual,
            "total_variance": total_actual - total_budget,
            "variance_percentage": percentage(total_actual - total_budget, total_budget),
            "overall_utilization": overall_utilization,
            "overall_status": budget_status(overall_utilization),
            "groups_breakdown": breakdown,
        },
        "groups": groups,
        "insights": {
            "highest_variance": max(groups, key=lambda g: g["variance_percentage"], default=None),
            "lowest_utilization": min(groups, key=lambda g: g["utilization_rate"], default=None),
            "best_performer": min(
                groups,
                key=lambda g: abs(g["utilization_rate"] - IDEAL_UTILIZATION),
                default=None,
            ),
            "recommendations": budget_recommendations(groups, overall_utilization),
        },
    }
