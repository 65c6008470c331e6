"""
Receipts Router

POST   /api/receipts/upload                   — image → OCR → reconcile; returns review payload
POST   /api/receipts/process                  — client-extracted receipt → reconcile; same payload
POST   /api/receipts                          — approve: persist receipt + items, then learn
GET    /api/receipts                          — list receipts (summary)
GET    /api/receipts/check-duplicates         — receipts with the same date and total
GET    /api/receipts/{id}                     — receipt with items
PATCH  /api/receipts/{id}                     — edit header fields
DELETE /api/receipts/{id}                     — remove a receipt
PATCH  /api/receipts/{id}/items/{item_id}     — edit a line item
DELETE /api/receipts/{id}/items/{item_id}     — remove a line item

Upload and process never write: the user reviews first, and only approval
persists.  OCR failure aborts with 422 before any write.
"""
import logging
import os
from typing import Optional

import aiosqlite
from fastapi import APIRouter, File, UploadFile, Depends, HTTPException, Form, Header
from pydantic import BaseModel

from db.database import get_db
from models.schemas import (
    Confidence, ProcessRequest, Receipt, ReceiptApproval, ReceiptItem, ReceiptItemUpdate,
    ReceiptSummary, ReceiptUpdate, ReviewPayload,
)
from services.date_service import normalize_date
from services.learning_service import learn
from services.ocr_service import normalize_orientation, run_ocr
from services.reconcile_service import annotate, review_receipt
from services.store_service import chain_key
from services.verified_products import VerifiedProductStore

logger = logging.getLogger("basket.receipts")
router = APIRouter()

DEFAULT_USER_ID = os.environ.get("DEFAULT_USER_ID", "local")

# Editing any of these by hand means the stored confidence no longer applies.
DESCRIPTIVE_FIELDS = ("item_name", "brand", "size", "category")


async def get_actor(x_user_id: Optional[str] = Header(None)) -> str:
    """Acting user.  Authentication lives outside this service."""
    return (x_user_id or "").strip() or DEFAULT_USER_ID


# ── Upload & Process ──────────────────────────────────────────────────────────

@router.post("/upload", response_model=ReviewPayload)
async def upload_receipt(
    file: UploadFile = File(...),
    store_name_hint: Optional[str] = Form(None),
    api_key: Optional[str] = Form(None),    # client-held credential for vision/enrichment
    db: aiosqlite.Connection = Depends(get_db),
):
    """
    Accept an image upload, run OCR, reconcile items against verified products
    and AI enrichment.  Returns the review payload — nothing is saved to DB yet.
    """
    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=422, detail="Empty upload")

    contents = normalize_orientation(contents)
    result = await run_ocr(contents, api_key=api_key)
    if not result.success:
        logger.warning("Upload aborted, OCR failed: %s", result.error)
        raise HTTPException(status_code=422, detail=f"OCR failed: {result.error}")

    return await review_receipt(
        result.parsed_data, db,
        store_name_hint=store_name_hint,
        ocr_text=result.ocr_text,
        api_key=api_key,
    )


@router.post("/process", response_model=ReviewPayload)
async def process_receipt(
    body: ProcessRequest,
    db: aiosqlite.Connection = Depends(get_db),
):
    """Reconcile a receipt the client already extracted (client-side vision path)."""
    return await review_receipt(
        body.parsed_data, db,
        store_name_hint=body.store_name_hint,
        ocr_text=body.ocr_text,
    )


# ── Approve (persist after review) ────────────────────────────────────────────

@router.post("", status_code=201)
async def approve_receipt(
    body: ReceiptApproval,
    db: aiosqlite.Connection = Depends(get_db),
    actor: str = Depends(get_actor),
):
    """
    Persist the reviewed receipt and its items in one transaction, then feed
    corrected coded items back into verified products.  A failed insert
    fails the request with nothing written; a failed learning write does not.
    """
    store_name = body.store_name.strip() or "Unknown Store"
    chain = chain_key(store_name)
    receipt_date = normalize_date(body.receipt_date, store_name)
    # Re-derive the discount tag; the client may have edited names/prices.
    items = [
        annotate(item).model_copy(update={"confidence": item.confidence})
        for item in body.items
    ]

    try:
        cursor = await db.execute(
            """INSERT INTO receipts
               (user_id, store_name, store_chain, store_address, store_phone,
                receipt_date, receipt_number, subtotal_amount, tax_amount,
                discount_amount, total_amount, payment_method, card_last_four, ocr_text)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (actor, store_name, chain, body.store_address, body.store_phone,
             receipt_date, body.receipt_number, body.subtotal_amount, body.tax_amount,
             body.discount_amount or 0, body.total_amount, body.payment_method,
             body.card_last_four, body.ocr_text),
        )
        receipt_id = cursor.lastrowid
        for idx, item in enumerate(items):
            await db.execute(
                """INSERT INTO receipt_items
                   (receipt_id, line_number, item_name, product_code, brand, size,
                    category, quantity, unit_price, total_price, discount_amount,
                    tax_code, is_discount, confidence)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (receipt_id, item.line_number or idx + 1, item.item_name.strip() or "Item",
                 item.product_code, item.brand, item.size, item.category,
                 item.quantity, item.unit_price, item.total_price, item.discount_amount,
                 item.tax_code, 1 if item.is_discount else 0, item.confidence.value),
            )
        await db.commit()
    except aiosqlite.Error as e:
        await db.rollback()
        logger.error("Receipt insert failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to save receipt")

    report = await learn(items, chain, actor, VerifiedProductStore(db))
    logger.info("Approved receipt %d (%s, %d items)", receipt_id, chain, len(items))
    return {"status": "ok", "receipt_id": receipt_id, "learning": report}


# ── Duplicate Detection ───────────────────────────────────────────────────────

class DuplicateMatch(BaseModel):
    id: int
    store_name: str
    receipt_date: Optional[str]
    total_amount: Optional[float]

@router.get("/check-duplicates", response_model=list[DuplicateMatch])
async def check_duplicates(
    total: Optional[float] = None,
    receipt_date: Optional[str] = None,
    exclude_id: Optional[int] = None,
    db: aiosqlite.Connection = Depends(get_db),
):
    """
    Existing receipts with the same date and a total within 1¢, so the
    client can warn before approving a receipt twice.
    """
    if total is None or receipt_date is None:
        return []

    query = """
        SELECT id, store_name, receipt_date, total_amount
        FROM receipts
        WHERE receipt_date = ?
          AND total_amount IS NOT NULL
          AND ABS(total_amount - ?) < 0.01
    """
    params: list = [receipt_date, total]

    if exclude_id is not None:
        query += " AND id != ?"
        params.append(exclude_id)

    async with db.execute(query, params) as cur:
        rows = await cur.fetchall()

    return [
        DuplicateMatch(
            id=row["id"],
            store_name=row["store_name"] or "Unknown Store",
            receipt_date=row["receipt_date"],
            total_amount=row["total_amount"],
        )
        for row in rows
    ]


# ── List Receipts ─────────────────────────────────────────────────────────────

@router.get("", response_model=list[ReceiptSummary])
async def list_receipts(
    limit: int = 50,
    offset: int = 0,
    db: aiosqlite.Connection = Depends(get_db),
    actor: str = Depends(get_actor),
):
    async with db.execute(
        """
        SELECT r.id, r.store_name, r.store_chain, r.receipt_date,
               r.total_amount, r.created_at,
               COUNT(ri.id) as item_count
        FROM receipts r
        LEFT JOIN receipt_items ri ON ri.receipt_id = r.id
        WHERE r.user_id = ?
        GROUP BY r.id
        ORDER BY COALESCE(r.receipt_date, r.created_at) DESC, r.id DESC
        LIMIT ? OFFSET ?
        """,
        (actor, limit, offset),
    ) as cur:
        rows = await cur.fetchall()

    results = [
        ReceiptSummary(
            id=row["id"],
            store_name=row["store_name"] or "Unknown Store",
            store_chain=row["store_chain"],
            receipt_date=row["receipt_date"],
            total_amount=row["total_amount"],
            item_count=row["item_count"],
            created_at=row["created_at"] or "",
        )
        for row in rows
    ]
    logger.debug("list_receipts returning %d receipts", len(results))
    return results


# ── Get Single Receipt ────────────────────────────────────────────────────────

def _row_to_item(row) -> ReceiptItem:
    return ReceiptItem(
        id=row["id"],
        receipt_id=row["receipt_id"],
        line_number=row["line_number"],
        item_name=row["item_name"],
        product_code=row["product_code"],
        brand=row["brand"],
        size=row["size"],
        category=row["category"],
        quantity=row["quantity"] if row["quantity"] is not None else 1.0,
        unit_price=row["unit_price"],
        total_price=row["total_price"],
        discount_amount=row["discount_amount"],
        tax_code=row["tax_code"],
        is_discount=bool(row["is_discount"]),
        confidence=row["confidence"],
    )


async def _fetch_receipt_row(db: aiosqlite.Connection, receipt_id: int):
    async with db.execute("SELECT * FROM receipts WHERE id = ?", (receipt_id,)) as cur:
        row = await cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return row


@router.get("/{receipt_id}", response_model=Receipt)
async def get_receipt(
    receipt_id: int,
    db: aiosqlite.Connection = Depends(get_db),
):
    row = await _fetch_receipt_row(db, receipt_id)

    async with db.execute(
        "SELECT * FROM receipt_items WHERE receipt_id = ? ORDER BY line_number, id",
        (receipt_id,),
    ) as cur:
        items = await cur.fetchall()

    return Receipt(
        id=row["id"],
        user_id=row["user_id"],
        store_name=row["store_name"],
        store_chain=row["store_chain"],
        store_address=row["store_address"],
        store_phone=row["store_phone"],
        receipt_date=row["receipt_date"],
        receipt_number=row["receipt_number"],
        subtotal_amount=row["subtotal_amount"],
        tax_amount=row["tax_amount"],
        discount_amount=row["discount_amount"],
        total_amount=row["total_amount"],
        payment_method=row["payment_method"],
        card_last_four=row["card_last_four"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        items=[_row_to_item(i) for i in items],
    )


# ── Edit ──────────────────────────────────────────────────────────────────────

@router.patch("/{receipt_id}")
async def update_receipt(
    receipt_id: int,
    body: ReceiptUpdate,
    db: aiosqlite.Connection = Depends(get_db),
):
    row = await _fetch_receipt_row(db, receipt_id)
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        return {"status": "ok", "receipt_id": receipt_id}

    if "store_name" in changes:
        changes["store_name"] = (changes["store_name"] or "").strip() or row["store_name"]
        changes["store_chain"] = chain_key(changes["store_name"])
    if "receipt_date" in changes:
        if not (changes["receipt_date"] or "").strip():
            raise HTTPException(status_code=422, detail="Receipt date cannot be empty")
        changes["receipt_date"] = normalize_date(
            changes["receipt_date"], changes.get("store_name", row["store_name"])
        )

    assignments = ", ".join(f"{col} = ?" for col in changes)
    await db.execute(
        f"UPDATE receipts SET {assignments}, updated_at = datetime('now') WHERE id = ?",
        (*changes.values(), receipt_id),
    )
    await db.commit()
    return {"status": "ok", "receipt_id": receipt_id}


@router.patch("/{receipt_id}/items/{item_id}")
async def update_item(
    receipt_id: int,
    item_id: int,
    body: ReceiptItemUpdate,
    db: aiosqlite.Connection = Depends(get_db),
):
    async with db.execute(
        "SELECT * FROM receipt_items WHERE id = ? AND receipt_id = ?", (item_id, receipt_id)
    ) as cur:
        row = await cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Item not found")

    changes = body.model_dump(exclude_unset=True)
    if "item_name" in changes and not (changes["item_name"] or "").strip():
        raise HTTPException(status_code=422, detail="Item name cannot be empty")
    if not changes:
        return {"status": "ok", "item_id": item_id}

    updated = annotate(_row_to_item(row).model_copy(update=changes))
    changes["is_discount"] = 1 if updated.is_discount else 0
    if any(f in changes and changes[f] != row[f] for f in DESCRIPTIVE_FIELDS):
        changes["confidence"] = Confidence.OCR.value

    assignments = ", ".join(f"{col} = ?" for col in changes)
    await db.execute(
        f"UPDATE receipt_items SET {assignments} WHERE id = ?",
        (*changes.values(), item_id),
    )
    await db.execute(
        "UPDATE receipts SET updated_at = datetime('now') WHERE id = ?", (receipt_id,)
    )
    await db.commit()
    return {"status": "ok", "item_id": item_id}


# ── Delete ────────────────────────────────────────────────────────────────────

@router.delete("/{receipt_id}")
async def delete_receipt(
    receipt_id: int,
    db: aiosqlite.Connection = Depends(get_db),
):
    await _fetch_receipt_row(db, receipt_id)
    await db.execute("DELETE FROM receipt_items WHERE receipt_id = ?", (receipt_id,))
    await db.execute("DELETE FROM receipts WHERE id = ?", (receipt_id,))
    await db.commit()
    return {"status": "deleted"}


@router.delete("/{receipt_id}/items/{item_id}")
async def delete_item(
    receipt_id: int,
    item_id: int,
    db: aiosqlite.Connection = Depends(get_db),
):
    cur = await db.execute(
        "DELETE FROM receipt_items WHERE id = ? AND receipt_id = ?", (item_id, receipt_id)
    )
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="Item not found")
    await db.commit()
    return {"status": "deleted"}
