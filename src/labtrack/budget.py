"""Budget allocation, spending and burn-rate figures for a project.

Allocations split a project's total budget into categories by percentage;
spending entries are charged against those categories. Everything here is a
pure function of the rows passed in.
"""
from __future__ import annotations

import math
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import ValidationError
from .progress import parse_datetime

GOOD = "good"
WARNING = "warning"
OVER = "over"

WARNING_UTILIZATION = 75.0
BURN_WINDOW_DAYS = 30
FORECAST_MONTHS = 6

HIGH_UTILIZATION_SHARE = 0.75
HIGH_BURN_SHARE = 0.2
DEPLETION_MONTHS = 3


def _day(value: Any) -> Optional[date]:
    if isinstance(value, date) and not hasattr(value, "hour"):
        return value
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def _today(today: Any) -> date:
    return _day(today) or date.today()


def _amount(entry: Mapping[str, Any]) -> float:
    return float(entry.get("amount") or 0)


def _month_start(day: date) -> date:
    return day.replace(day=1)


def _shift_month(first: date, offset: int) -> date:
    index = first.year * 12 + first.month - 1 + offset
    return date(index // 12, index % 12 + 1, 1)


def total_spent(spending: Iterable[Mapping[str, Any]]) -> float:
    return float(sum(_amount(entry) for entry in spending))


def spent_by_category(spending: Iterable[Mapping[str, Any]]) -> Dict[str, float]:
    totals: Dict[str, float] = {}
    for entry in spending:
        category = entry.get("category") or ""
        totals[category] = totals.get(category, 0.0) + _amount(entry)
    return totals


def utilization_status(utilization: float) -> str:
    if utilization > 100:
        return OVER
    if utilization > WARNING_UTILIZATION:
        return WARNING
    return GOOD


def validate_allocations(allocations: Iterable[Mapping[str, Any]]) -> None:
    """Allocations must name a category each and add up to exactly 100%."""
    allocations = list(allocations)
    total = sum(float(allocation.get("percentage") or 0) for allocation in allocations)
    if not math.isclose(total, 100.0):
        raise ValidationError("Total percentage must equal 100%")
    if any(not str(allocation.get("category") or "").strip() for allocation in allocations):
        raise ValidationError("Please select a category for all allocations")


def category_performance(
    allocations: Iterable[Mapping[str, Any]],
    spending: Iterable[Mapping[str, Any]],
    total_budget: float,
) -> List[Dict[str, Any]]:
    by_category = spent_by_category(spending)
    rows: List[Dict[str, Any]] = []
    for allocation in allocations:
        allocated = float(allocation.get("percentage") or 0) / 100 * (total_budget or 0)
        spent = by_category.get(allocation.get("category") or "", 0.0)
        utilization = spent / allocated * 100 if allocated > 0 else 0.0
        rows.append(
            {
                "category": allocation.get("category"),
                "allocated": allocated,
                "spent": spent,
                "remaining": allocated - spent,
                "utilization": utilization,
                "status": utilization_status(utilization),
                "color": allocation.get("color"),
            }
        )
    return rows


def monthly_burn_rate(spending: Iterable[Mapping[str, Any]], today: Any = None) -> float:
    """Spending recorded over the last thirty days."""
    cutoff = _today(today) - timedelta(days=BURN_WINDOW_DAYS)
    total = 0.0
    for entry in spending:
        day = _day(entry.get("date"))
        if day is not None and day >= cutoff:
            total += _amount(entry)
    return total


def months_remaining(total_budget: float, spent: float, burn_rate: float) -> float:
    """Months until the budget runs out at ``burn_rate``; infinite without spend."""
    if burn_rate <= 0:
        return math.inf
    return ((total_budget or 0) - spent) / burn_rate


def monthly_trends(
    spending: Iterable[Mapping[str, Any]],
    today: Any = None,
    months: int = FORECAST_MONTHS,
) -> List[Dict[str, Any]]:
    """Per-month and cumulative spending for the ``months`` ending this month."""
    dated = [(_day(entry.get("date")), _amount(entry)) for entry in spending]
    dated = [(day, amount) for day, amount in dated if day is not None]
    current = _month_start(_today(today))
    trends: List[Dict[str, Any]] = []
    for offset in range(-(months - 1), 1):
        start = _shift_month(current, offset)
        end = _shift_month(start, 1) - timedelta(days=1)
        trends.append(
            {
                "month": start.strftime("%b %Y"),
                "spending": sum(amount for day, amount in dated if start <= day <= end),
                "cumulative": sum(amount for day, amount in dated if day <= end),
            }
        )
    return trends


def projections(
    total_budget: float,
    spent: float,
    burn_rate: float,
    today: Any = None,
    months: int = FORECAST_MONTHS,
) -> List[Dict[str, Any]]:
    current = _month_start(_today(today))
    return [
        {
            "month": _shift_month(current, index).strftime("%b %Y"),
            "projected": min(spent + burn_rate * (index + 1), total_budget or 0),
            "budget_line": total_budget or 0,
        }
        for index in range(months)
    ]


def risk_factors(total_budget: float, spent: float, burn_rate: float, months_left: float) -> List[str]:
    risks: List[str] = []
    if total_budget and spent / total_budget > HIGH_UTILIZATION_SHARE:
        risks.append("High budget utilization (>75%)")
    if burn_rate > (total_budget or 0) * HIGH_BURN_SHARE:
        risks.append("High monthly burn rate")
    if months_left < DEPLETION_MONTHS:
        risks.append("Budget depletion risk within 3 months")
    return risks


def budget_summary(
    total_budget: Optional[float],
    allocations: Iterable[Mapping[str, Any]],
    spending: Iterable[Mapping[str, Any]],
    today: Any = None,
) -> Dict[str, Any]:
    allocations = list(allocations)
    spending = list(spending)
    total = float(total_budget or 0)
    spent = total_spent(spending)
    burn = monthly_burn_rate(spending, today)
    months_left = months_remaining(total, spent, burn)
    return {
        "total_budget": total,
        "total_spent": spent,
        "remaining": total - spent,
        "utilization": spent / total * 100 if total > 0 else 0.0,
        "monthly_burn_rate": burn,
        "months_remaining": months_left,
        "categories": category_performance(allocations, spending, total),
        "trends": monthly_trends(spending, today),
        "projections": projections(total, spent, burn, today),
        "risk_factors": risk_factors(total, spent, burn, months_left),
    }
