"""
Verified-product store — human-confirmed product records keyed by
(product_code, store_chain).

Read by reconciliation (one batched query per receipt) and written by the
learning writer after approval.  Records are never deleted here.
"""
import logging
from typing import Optional

import aiosqlite

from models.schemas import VerifiedProduct

logger = logging.getLogger("basket.verified")


class VerifiedProductStoreError(Exception):
    """Raised when the verified_products table can't be read or written."""
    pass


def _row_to_product(row) -> VerifiedProduct:
    return VerifiedProduct(
        product_code=row["product_code"],
        store_chain=row["store_chain"],
        product_name=row["product_name"],
        brand=row["brand"],
        size=row["size"],
        category=row["category"],
        verification_count=row["verification_count"],
        last_verified_at=row["last_verified_at"],
        last_verified_by=row["last_verified_by"],
    )


class VerifiedProductStore:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def find_many(self, codes: list[str], store_chain: str) -> list[VerifiedProduct]:
        """All records for ``codes`` at ``store_chain`` in a single query."""
        codes = list(dict.fromkeys(c for c in codes if c))
        if not codes:
            return []
        placeholders = ", ".join("?" for _ in codes)
        try:
            async with self.db.execute(
                f"""SELECT * FROM verified_products
                    WHERE store_chain = ? AND product_code IN ({placeholders})""",
                [store_chain, *codes],
            ) as cur:
                rows = await cur.fetchall()
        except aiosqlite.Error as e:
            raise VerifiedProductStoreError(str(e)) from e
        return [_row_to_product(r) for r in rows]

    async def find_one(self, code: str, store_chain: str) -> Optional[VerifiedProduct]:
        try:
            async with self.db.execute(
                "SELECT * FROM verified_products WHERE product_code = ? AND store_chain = ?",
                (code, store_chain),
            ) as cur:
                row = await cur.fetchone()
        except aiosqlite.Error as e:
            raise VerifiedProductStoreError(str(e)) from e
        return _row_to_product(row) if row else None

    async def upsert(self, record: VerifiedProduct):
        """Write ``record`` as-is, including its verification_count."""
        try:
            await self.db.execute(
                """
                INSERT INTO verified_products
                    (product_code, store_chain, product_name, brand, size, category,
                     verification_count, last_verified_at, last_verified_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, COALESCE(?, datetime('now')), ?)
                ON CONFLICT(product_code, store_chain) DO UPDATE SET
                    product_name       = excluded.product_name,
                    brand              = excluded.brand,
                    size               = excluded.size,
                    category           = excluded.category,
                    verification_count = excluded.verification_count,
                    last_verified_at   = excluded.last_verified_at,
                    last_verified_by   = excluded.last_verified_by
                """,
                (record.product_code, record.store_chain, record.product_name,
                 record.brand, record.size, record.category,
                 record.verification_count, record.last_verified_at,
                 record.last_verified_by),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise VerifiedProductStoreError(str(e)) from e

    async def record_confirmation(
        self,
        code: str,
        store_chain: str,
        name: str,
        brand: Optional[str] = None,
        size: Optional[str] = None,
        category: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> VerifiedProduct:
        """Insert with count 1, or overwrite fields and bump the count.

        A single INSERT ... ON CONFLICT statement, so two confirmations of the
        same key can't both read the old count and lose an increment.
        Last write wins for name/brand/size/category.  The written row comes
        back through RETURNING, so there is no second read to fail.
        """
        try:
            async with self.db.execute(
                """
                INSERT INTO verified_products
                    (product_code, store_chain, product_name, brand, size, category,
                     verification_count, last_verified_at, last_verified_by)
                VALUES (?, ?, ?, ?, ?, ?, 1, datetime('now'), ?)
                ON CONFLICT(product_code, store_chain) DO UPDATE SET
                    product_name       = excluded.product_name,
                    brand              = excluded.brand,
                    size               = excluded.size,
                    category           = excluded.category,
                    verification_count = verified_products.verification_count + 1,
                    last_verified_at   = datetime('now'),
                    last_verified_by   = excluded.last_verified_by
                RETURNING *
                """,
                (code, store_chain, name, brand, size, category, actor),
            ) as cur:
                row = await cur.fetchone()
            await self.db.commit()
        except aiosqlite.Error as e:
            raise VerifiedProductStoreError(str(e)) from e

        product = _row_to_product(row)
        logger.debug("Confirmed %s@%s → %r (count=%d)",
                     code, store_chain, name, product.verification_count)
        return product

    async def count(self, search: str = "", store_chain: str = "") -> int:
        where_sql, params = _filters(search, store_chain)
        async with self.db.execute(
            f"SELECT COUNT(*) FROM verified_products{where_sql}", params
        ) as cur:
            return (await cur.fetchone())[0]

    async def list_products(
        self,
        limit: int = 50,
        offset: int = 0,
        search: str = "",
        store_chain: str = "",
    ) -> list[VerifiedProduct]:
        where_sql, params = _filters(search, store_chain)
        async with self.db.execute(
            f"""SELECT * FROM verified_products{where_sql}
                ORDER BY verification_count DESC, last_verified_at DESC
                LIMIT ? OFFSET ?""",
            params + [limit, offset],
        ) as cur:
            rows = await cur.fetchall()
        return [_row_to_product(r) for r in rows]


def _filters(search: str, store_chain: str) -> tuple[str, list]:
    where_clauses = []
    params: list = []

    if search:
        where_clauses.append(
            "(product_name LIKE ? OR product_code LIKE ? OR brand LIKE ?)"
        )
        q = f"%{search}%"
        params.extend([q, q, q])

    if store_chain:
        where_clauses.append("store_chain = ?")
        params.append(store_chain)

    where_sql = (" WHERE " + " AND ".join(where_clauses)) if where_clauses else ""
    return where_sql, params
