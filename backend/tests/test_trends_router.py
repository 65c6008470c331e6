"""
Tests for the trends router — analytics summary, monthly window, category
detail and per-store totals over persisted receipts.
"""
from datetime import date

import pytest
from httpx import ASGITransport, AsyncClient


# ── Helpers ──────────────────────────────────────────────────────────────────

async def insert_receipt(db, *, store_name="Real Canadian Superstore", store_chain="superstore",
                         receipt_date="2024-03-02", total=10.00, items=(), user="local"):
    cur = await db.execute(
        """INSERT INTO receipts (user_id, store_name, store_chain, receipt_date, total_amount)
           VALUES (?, ?, ?, ?, ?)""",
        (user, store_name, store_chain, receipt_date, total),
    )
    receipt_id = cur.lastrowid
    for n, (name, category, price) in enumerate(items, start=1):
        await db.execute(
            """INSERT INTO receipt_items (receipt_id, line_number, item_name, category, total_price)
               VALUES (?, ?, ?, ?, ?)""",
            (receipt_id, n, name, category, price),
        )
    await db.commit()
    return receipt_id


@pytest.fixture
async def client(mount):
    from routers.trends import router
    app = mount(router, "/api/trends")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
async def seeded(db):
    await insert_receipt(db, receipt_date="2024-01-15", total=12.00, items=[
        ("Milk 2% 2L", "Dairy", 4.99),
        ("Bananas", "Produce", 1.40),
        ("Bread", None, 3.00),
    ])
    await insert_receipt(db, receipt_date="2024-03-02", total=8.00, items=[
        ("Butter 454g", "Dairy", 6.49),
        ("ARCP SAVE", "Dairy", -1.00),
    ])
    await insert_receipt(db, store_name="Walmart", store_chain="walmart",
                         receipt_date="2024-03-10", total=25.00, items=[
        ("Paper Towels", "Household", 9.97),
    ])


# ── GET /analytics ───────────────────────────────────────────────────────────

class TestAnalytics:

    @pytest.mark.asyncio
    async def test_empty(self, client):
        resp = await client.get("/api/trends/analytics")
        assert resp.status_code == 200
        data = resp.json()
        assert data["receipt_count"] == 0
        assert data["top_category"] == "None"
        assert len(data["monthly_trends"]) == 6

    @pytest.mark.asyncio
    async def test_summary_over_range(self, client, seeded):
        resp = await client.get("/api/trends/analytics",
                                params={"start": "2024-01-01", "end": "2024-03-31", "months": 3})
        data = resp.json()

        assert data["receipt_count"] == 3
        assert data["total_spent"] == 45.00
        assert data["average_per_receipt"] == 15.00
        assert data["top_category"] == "Dairy"

        breakdown = {c["category"]: c for c in data["category_breakdown"]}
        assert breakdown["Dairy"]["total"] == 10.48
        assert breakdown["Dairy"]["count"] == 3
        assert breakdown["Dairy"]["color"].startswith("hsl(")
        assert breakdown["Other"]["total"] == 3.00

        assert [m["month"] for m in data["monthly_trends"]] == ["Jan 24", "Feb 24", "Mar 24"]
        assert data["monthly_trends"][1]["total"] == 0
        assert data["monthly_trends"][2]["total"] == 15.46

    @pytest.mark.asyncio
    async def test_start_filters_out_earlier_receipts(self, client, seeded):
        resp = await client.get("/api/trends/analytics",
                                params={"start": "2024-03-01", "end": "2024-03-31"})
        assert resp.json()["receipt_count"] == 2

    @pytest.mark.asyncio
    async def test_bad_date_is_422(self, client):
        resp = await client.get("/api/trends/analytics", params={"start": "March"})
        assert resp.status_code == 422


# ── GET /monthly ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_monthly_window(client, seeded):
    resp = await client.get("/api/trends/monthly", params={"months": 2, "end": "2024-03-31"})
    months = resp.json()
    assert [m["month"] for m in months] == ["Feb 24", "Mar 24"]
    assert months[1]["categories"] == {"Dairy": 5.49, "Household": 9.97}


@pytest.mark.asyncio
async def test_monthly_defaults_to_current_window(client):
    months = (await client.get("/api/trends/monthly")).json()
    today = date.today()
    assert len(months) == 6
    assert months[-1]["month"] == today.strftime("%b %y")


# ── GET /categories/{category}/items ─────────────────────────────────────────

class TestCategoryItems:

    @pytest.mark.asyncio
    async def test_items_largest_first(self, client, seeded):
        resp = await client.get("/api/trends/categories/Dairy/items")
        names = [i["item_name"] for i in resp.json()]
        assert names == ["Butter 454g", "Milk 2% 2L", "ARCP SAVE"]

    @pytest.mark.asyncio
    async def test_other_includes_uncategorised(self, client, seeded):
        resp = await client.get("/api/trends/categories/Other/items")
        items = resp.json()
        assert [i["item_name"] for i in items] == ["Bread"]
        assert items[0]["store_name"] == "Real Canadian Superstore"
        assert items[0]["quantity"] == 1

    @pytest.mark.asyncio
    async def test_date_range(self, client, seeded):
        resp = await client.get("/api/trends/categories/Dairy/items",
                                params={"end": "2024-02-01"})
        assert [i["item_name"] for i in resp.json()] == ["Milk 2% 2L"]


# ── GET /stores ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_store_breakdown(client, seeded):
    stores = (await client.get("/api/trends/stores")).json()
    assert [s["store_chain"] for s in stores] == ["walmart", "superstore"]
    assert stores[1]["receipt_count"] == 2
    assert stores[1]["total_spent"] == 20.00
    assert stores[1]["avg_trip"] == 10.00


# ── Per-user scoping ─────────────────────────────────────────────────────────

class TestUserScoping:

    @pytest.fixture
    async def two_users(self, db):
        await insert_receipt(db, total=10.00, user="alice", items=[("Milk 2% 2L", "Dairy", 10.00)])
        await insert_receipt(db, store_name="Walmart", store_chain="walmart", total=90.00,
                             user="bob", items=[("Patio Chair", "Household", 90.00)])

    @pytest.mark.asyncio
    async def test_analytics_only_counts_own_receipts(self, client, two_users):
        resp = await client.get("/api/trends/analytics", headers={"X-User-Id": "alice"},
                                params={"end": "2024-03-31"})
        data = resp.json()
        assert data["receipt_count"] == 1
        assert data["total_spent"] == 10.00
        assert [c["category"] for c in data["category_breakdown"]] == ["Dairy"]

    @pytest.mark.asyncio
    async def test_monthly_only_counts_own_items(self, client, two_users):
        resp = await client.get("/api/trends/monthly", headers={"X-User-Id": "bob"},
                                params={"months": 1, "end": "2024-03-31"})
        assert resp.json()[0]["categories"] == {"Household": 90.00}

    @pytest.mark.asyncio
    async def test_category_items_only_own(self, client, two_users):
        resp = await client.get("/api/trends/categories/Household/items",
                                headers={"X-User-Id": "alice"})
        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_stores_only_own(self, client, two_users):
        stores = (await client.get("/api/trends/stores", headers={"X-User-Id": "bob"})).json()
        assert [s["store_chain"] for s in stores] == ["walmart"]

    @pytest.mark.asyncio
    async def test_no_header_uses_default_user(self, client, two_users):
        resp = await client.get("/api/trends/analytics")
        assert resp.json()["receipt_count"] == 0
