"""
Tests for VerifiedProductStore against the real schema in in-memory SQLite.
"""
from unittest.mock import patch

import pytest

from models.schemas import VerifiedProduct
from services.verified_products import VerifiedProductStore, VerifiedProductStoreError


async def seed(store, code="012345", chain="superstore", name="Milk 2% 2L", **fields):
    await store.upsert(VerifiedProduct(
        product_code=code, store_chain=chain, product_name=name, **fields,
    ))


# ── Lookup ───────────────────────────────────────────────────────────────────

class TestFind:

    @pytest.mark.asyncio
    async def test_find_many_returns_hits_only(self, db):
        store = VerifiedProductStore(db)
        await seed(store, "012345")
        await seed(store, "067890", name="Butter 454g")

        found = await store.find_many(["012345", "067890", "099999"], "superstore")

        assert sorted(p.product_code for p in found) == ["012345", "067890"]

    @pytest.mark.asyncio
    async def test_find_many_is_scoped_to_chain(self, db):
        store = VerifiedProductStore(db)
        await seed(store, "012345", chain="walmart", name="Great Value Milk")

        assert await store.find_many(["012345"], "superstore") == []

    @pytest.mark.asyncio
    async def test_find_many_empty_codes(self, db):
        assert await VerifiedProductStore(db).find_many([], "superstore") == []

    @pytest.mark.asyncio
    async def test_find_many_duplicate_codes(self, db):
        store = VerifiedProductStore(db)
        await seed(store)
        found = await store.find_many(["012345", "012345"], "superstore")
        assert len(found) == 1

    @pytest.mark.asyncio
    async def test_find_one_missing(self, db):
        assert await VerifiedProductStore(db).find_one("000000", "superstore") is None

    @pytest.mark.asyncio
    async def test_sqlite_error_is_wrapped(self, db):
        await db.execute("DROP TABLE verified_products")
        with pytest.raises(VerifiedProductStoreError):
            await VerifiedProductStore(db).find_many(["012345"], "superstore")


# ── Writes ───────────────────────────────────────────────────────────────────

class TestRecordConfirmation:

    @pytest.mark.asyncio
    async def test_first_confirmation_creates_with_count_one(self, db):
        store = VerifiedProductStore(db)
        product = await store.record_confirmation(
            "012345", "superstore", "Milk 2% 2L", brand="Neilson", actor="alex",
        )
        assert product.verification_count == 1
        assert product.brand == "Neilson"
        assert product.last_verified_by == "alex"

    @pytest.mark.asyncio
    async def test_second_confirmation_increments_and_overwrites(self, db):
        store = VerifiedProductStore(db)
        await store.record_confirmation("012345", "superstore", "Milk 2%")
        product = await store.record_confirmation(
            "012345", "superstore", "Milk 2% 2L", size="2 L", actor="sam",
        )

        assert product.verification_count == 2
        assert product.product_name == "Milk 2% 2L"
        assert product.size == "2 L"
        assert product.last_verified_by == "sam"

        async with db.execute("SELECT COUNT(*) FROM verified_products") as cur:
            assert (await cur.fetchone())[0] == 1

    @pytest.mark.asyncio
    async def test_same_code_different_chain_is_a_new_record(self, db):
        store = VerifiedProductStore(db)
        await store.record_confirmation("012345", "superstore", "Milk 2% 2L")
        other = await store.record_confirmation("012345", "walmart", "Great Value Milk 2L")
        assert other.verification_count == 1

    @pytest.mark.asyncio
    async def test_confirmation_returns_written_row_without_reread(self, db):
        store = VerifiedProductStore(db)
        await store.record_confirmation("012345", "superstore", "Milk 2%")
        with patch.object(store, "find_one", side_effect=VerifiedProductStoreError("locked")):
            product = await store.record_confirmation("012345", "superstore", "Milk 2% 2L")

        assert product.verification_count == 2
        assert product.product_name == "Milk 2% 2L"

    @pytest.mark.asyncio
    async def test_upsert_keeps_explicit_count(self, db):
        store = VerifiedProductStore(db)
        await seed(store, verification_count=7)
        product = await store.find_one("012345", "superstore")
        assert product.verification_count == 7


# ── Listing ──────────────────────────────────────────────────────────────────

class TestListing:

    @pytest.mark.asyncio
    async def test_list_orders_by_count_and_filters(self, db):
        store = VerifiedProductStore(db)
        await seed(store, "000001", name="Bananas", verification_count=1)
        await seed(store, "000002", name="Milk 2% 2L", verification_count=5)
        await seed(store, "000003", chain="walmart", name="Bread", verification_count=9)

        everything = await store.list_products()
        assert [p.product_code for p in everything] == ["000003", "000002", "000001"]

        superstore = await store.list_products(store_chain="superstore")
        assert [p.product_code for p in superstore] == ["000002", "000001"]

        assert await store.count(search="milk") == 1
        assert await store.count(store_chain="walmart") == 1
        assert await store.count() == 3
