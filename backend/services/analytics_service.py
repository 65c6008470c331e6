"""
Spending analytics — pure aggregation over persisted receipts and items.

Items are summed as stored, so a discount line reduces its category's total.
Items without a category count as "Other".
"""
from calendar import month_abbr
from datetime import date
from typing import Optional

from models.schemas import CategorySpending, MonthlySpending, SpendingAnalytics

DEFAULT_COLOR = "hsl(220, 13%, 50%)"


def _cents(value: float) -> float:
    return round(value * 100) / 100


def month_label(year: int, month: int) -> str:
    """Label like "Mar 24" for a calendar month."""
    return f"{month_abbr[month]} {year % 100:02d}"


def category_breakdown(items: list[dict], colors: dict[str, str]) -> list[CategorySpending]:
    totals: dict[str, dict] = {}
    for item in items:
        category = item.get("category") or "Other"
        bucket = totals.setdefault(category, {"total": 0.0, "count": 0})
        bucket["total"] += float(item.get("total_price") or 0)
        bucket["count"] += 1

    breakdown = [
        CategorySpending(
            category=category,
            total=_cents(data["total"]),
            count=data["count"],
            color=colors.get(category) or colors.get("Other") or DEFAULT_COLOR,
        )
        for category, data in totals.items()
    ]
    breakdown.sort(key=lambda c: c.total, reverse=True)
    return breakdown


def _last_months(today: date, months: int) -> list[tuple[int, int]]:
    result = []
    year, month = today.year, today.month
    for _ in range(months):
        result.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return result[::-1]


def monthly_trends(
    items: list[dict],
    months: int = 6,
    today: Optional[date] = None,
) -> list[MonthlySpending]:
    """Per-category totals for the last ``months`` calendar months, oldest first.

    Every month in the window is present, zero-filled.  Items whose
    receipt_date falls outside the window (or is unreadable) are ignored.
    """
    today = today or date.today()
    window = _last_months(today, months)
    data = {key: {"total": 0.0, "categories": {}} for key in window}

    for item in items:
        raw = item.get("receipt_date") or ""
        try:
            d = date.fromisoformat(raw[:10])
        except ValueError:
            continue
        bucket = data.get((d.year, d.month))
        if bucket is None:
            continue
        amount = float(item.get("total_price") or 0)
        category = item.get("category") or "Other"
        bucket["total"] += amount
        bucket["categories"][category] = bucket["categories"].get(category, 0.0) + amount

    return [
        MonthlySpending(
            month=month_label(year, month),
            total=_cents(bucket["total"]),
            categories={k: _cents(v) for k, v in bucket["categories"].items()},
        )
        for (year, month), bucket in data.items()
    ]


def summarize(
    receipts: list[dict],
    items: list[dict],
    colors: dict[str, str],
    months: int = 6,
    today: Optional[date] = None,
) -> SpendingAnalytics:
    breakdown = category_breakdown(items, colors)
    total_spent = sum(float(r.get("total_amount") or 0) for r in receipts)
    receipt_count = len(receipts)
    average = total_spent / receipt_count if receipt_count else 0.0

    return SpendingAnalytics(
        category_breakdown=breakdown,
        monthly_trends=monthly_trends(items, months, today),
        total_spent=_cents(total_spent),
        average_per_receipt=_cents(average),
        receipt_count=receipt_count,
        top_category=breakdown[0].category if breakdown else "None",
    )
