"""
Trends Router

GET /api/trends/analytics                    — breakdown + monthly trends + totals
GET /api/trends/monthly                      — spending by category for last N months
GET /api/trends/categories/{category}/items  — line items for one category
GET /api/trends/stores                       — spending by store

Every endpoint is scoped to the acting user's receipts and accepts optional
``start`` / ``end`` ISO dates bounding receipt_date (inclusive).
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
import aiosqlite

from db.database import get_db
from models.schemas import CategoryItemDetail, MonthlySpending, SpendingAnalytics
from routers.receipts import get_actor
from services import analytics_service

router = APIRouter()


def _parse_day(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"{name} must be YYYY-MM-DD")


def _receipt_filter(
    actor: str, start: Optional[date], end: Optional[date], alias: str = "r"
) -> tuple[str, list]:
    clauses, params = [f"{alias}.user_id = ?"], [actor]
    if start:
        clauses.append(f"{alias}.receipt_date >= ?")
        params.append(start.isoformat())
    if end:
        clauses.append(f"{alias}.receipt_date <= ?")
        params.append(end.isoformat())
    return " AND ".join(clauses), params


async def _category_colors(db: aiosqlite.Connection) -> dict[str, str]:
    async with db.execute("SELECT name, color FROM categories") as cur:
        return {row["name"]: row["color"] for row in await cur.fetchall()}


async def _fetch_receipts(db, actor, start, end) -> list[dict]:
    where, params = _receipt_filter(actor, start, end)
    async with db.execute(
        f"SELECT r.id, r.total_amount FROM receipts r WHERE {where}", params
    ) as cur:
        return [dict(r) for r in await cur.fetchall()]


async def _fetch_items(db, actor, start, end) -> list[dict]:
    where, params = _receipt_filter(actor, start, end)
    async with db.execute(
        f"""
        SELECT ri.category, ri.total_price, r.receipt_date
        FROM receipt_items ri
        JOIN receipts r ON r.id = ri.receipt_id
        WHERE {where}
        """,
        params,
    ) as cur:
        return [dict(r) for r in await cur.fetchall()]


@router.get("/analytics", response_model=SpendingAnalytics)
async def analytics(
    months: int = Query(default=6, ge=1, le=24),
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: aiosqlite.Connection = Depends(get_db),
    actor: str = Depends(get_actor),
):
    start_d, end_d = _parse_day(start, "start"), _parse_day(end, "end")
    receipts = await _fetch_receipts(db, actor, start_d, end_d)
    items = await _fetch_items(db, actor, start_d, end_d)
    colors = await _category_colors(db)
    # A bounded range anchors the monthly window on its last day.
    return analytics_service.summarize(receipts, items, colors, months, today=end_d)


@router.get("/monthly", response_model=list[MonthlySpending])
async def monthly(
    months: int = Query(default=6, ge=1, le=24),
    end: Optional[str] = None,
    db: aiosqlite.Connection = Depends(get_db),
    actor: str = Depends(get_actor),
):
    end_d = _parse_day(end, "end")
    items = await _fetch_items(db, actor, None, end_d)
    return analytics_service.monthly_trends(items, months, today=end_d)


@router.get("/categories/{category}/items", response_model=list[CategoryItemDetail])
async def category_items(
    category: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: aiosqlite.Connection = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """Individual line items behind one slice of the category breakdown."""
    where, params = _receipt_filter(actor, _parse_day(start, "start"), _parse_day(end, "end"))
    # Uncategorised items are reported under "Other" by the breakdown.
    category_sql = "COALESCE(ri.category, 'Other') = ?"
    async with db.execute(
        f"""
        SELECT ri.item_name, ri.product_code, ri.brand,
               COALESCE(ri.total_price, 0) AS total_price,
               COALESCE(ri.quantity, 1)    AS quantity,
               r.store_name, r.receipt_date
        FROM receipt_items ri
        JOIN receipts r ON r.id = ri.receipt_id
        WHERE {category_sql} AND {where}
        ORDER BY ri.total_price DESC
        """,
        [category, *params],
    ) as cur:
        rows = await cur.fetchall()

    return [CategoryItemDetail(**dict(r)) for r in rows]


@router.get("/stores")
async def store_breakdown(
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: aiosqlite.Connection = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """Spending by chain, largest first."""
    where, params = _receipt_filter(actor, _parse_day(start, "start"), _parse_day(end, "end"))
    async with db.execute(
        f"""
        SELECT r.store_chain,
               MAX(r.store_name)             AS store_name,
               COUNT(r.id)                   AS receipt_count,
               ROUND(SUM(r.total_amount), 2) AS total_spent,
               ROUND(AVG(r.total_amount), 2) AS avg_trip
        FROM receipts r
        WHERE r.total_amount IS NOT NULL AND {where}
        GROUP BY r.store_chain
        ORDER BY total_spent DESC
        """,
        params,
    ) as cur:
        rows = await cur.fetchall()

    return [dict(r) for r in rows]
