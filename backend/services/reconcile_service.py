"""
Reconciliation Service

Turns a raw OCR item list into the annotated list the user reviews:

  1. Tag discount lines.  They are never looked up, never enriched, and keep
     their printed name.
  2. Look up every coded line (code length ≥ 4) in the verified-product store
     with ONE query for the whole receipt.  Hits are overwritten from the
     verified record and tagged ``verified``.
  3. Send the remaining coded lines to enrichment in ONE batched request.
     Each suggestion must pass the validity gate before it may overwrite.
  4. Everything else keeps ``ocr``, or ``fallback`` when extraction produced
     nothing usable for that line.

Lookup and enrichment failures degrade, they never abort: the receipt always
reaches the review screen, with lower confidence on the affected items.
Output order is input order.
"""
import logging
from typing import Awaitable, Callable, Optional

import aiosqlite

from models.schemas import (
    AnnotatedItem, Confidence, ParsedReceipt, RawOcrItem, ReviewPayload,
)
from services.date_service import resolve_date
from services.discount_service import is_discount
from services.enrich_service import (
    EnrichmentError, Suggestion, enrich_products, get_categories,
)
from services.store_service import chain_key, contains_retailer_brand
from services.verified_products import VerifiedProductStore, VerifiedProductStoreError

logger = logging.getLogger("basket.reconcile")

MIN_CODE_LENGTH = 4
MIN_SUGGESTION_LENGTH = 4

Enricher = Callable[..., Awaitable[dict[str, Suggestion]]]


def lookup_code(item: RawOcrItem) -> Optional[str]:
    """The item's product code if it is long enough to key a lookup."""
    code = (item.product_code or "").strip()
    return code if len(code) >= MIN_CODE_LENGTH else None


def lookup_candidates(items: list[AnnotatedItem]) -> list[str]:
    """Distinct codes that would be queried for these items, in line order."""
    codes = [lookup_code(i) for i in items if not i.is_discount]
    return list(dict.fromkeys(c for c in codes if c))


def is_valid_suggestion(suggested: Optional[str], current: Optional[str]) -> bool:
    """Gate for AI names: long enough, actually different, not a store banner."""
    name = (suggested or "").strip()
    if len(name) < MIN_SUGGESTION_LENGTH:
        return False
    if name.lower() == (current or "").strip().lower():
        return False
    if contains_retailer_brand(name):
        return False
    return True


def suggestion_confidence(tag: Optional[str]) -> Confidence:
    """Confidence for an accepted suggestion.

    Defaults to ``ai_suggested`` and is capped there: enrichment can't claim
    a human-verified tag.
    """
    try:
        confidence = Confidence(tag) if tag else Confidence.AI_SUGGESTED
    except ValueError:
        return Confidence.AI_SUGGESTED
    return min(confidence, Confidence.AI_SUGGESTED)


def _base_confidence(item: RawOcrItem, discount: bool) -> Confidence:
    if discount:
        return Confidence.OCR
    if not item.item_name.strip() or item.total_price is None or item.total_price <= 0:
        return Confidence.FALLBACK
    return Confidence.OCR


def annotate(item: RawOcrItem) -> AnnotatedItem:
    """Step 1: discount tag and starting confidence, no lookups."""
    fields = item.model_dump(include=set(RawOcrItem.model_fields))
    discount = is_discount(item.item_name, item.total_price)
    return AnnotatedItem(
        **fields,
        is_discount=discount,
        confidence=_base_confidence(item, discount),
    )


async def reconcile(
    raw_items: list[RawOcrItem],
    store_chain: str,
    store: VerifiedProductStore,
    store_name: Optional[str] = None,
    enricher: Enricher = enrich_products,
    categories: Optional[list[str]] = None,
    api_key: Optional[str] = None,
) -> list[AnnotatedItem]:
    items = [annotate(i) for i in raw_items]

    coded: list[tuple[int, str]] = []
    for idx, item in enumerate(items):
        code = None if item.is_discount else lookup_code(item)
        if code:
            coded.append((idx, code))
    if not coded:
        return items

    # ── Stage 1: verified products ────────────────────────────────────────────
    codes = list(dict.fromkeys(code for _, code in coded))
    try:
        verified = {vp.product_code: vp for vp in await store.find_many(codes, store_chain)}
    except VerifiedProductStoreError as e:
        logger.warning("Verified-product lookup failed (%s) — continuing unresolved", e)
        verified = {}

    pending: list[tuple[int, str]] = []
    for idx, code in coded:
        vp = verified.get(code)
        if vp is None:
            pending.append((idx, code))
            continue
        item = items[idx]
        items[idx] = item.model_copy(update={
            "item_name": vp.product_name,
            "brand": vp.brand,
            "size": vp.size,
            "category": vp.category,
            "confidence": Confidence.VERIFIED,
        })

    # ── Stage 2: AI enrichment for misses ─────────────────────────────────────
    suggestions: dict[str, Suggestion] = {}
    if pending:
        names: dict[str, str] = {}
        for idx, code in pending:
            names.setdefault(code, items[idx].item_name)
        request = [{"code": code, "name": name} for code, name in names.items()]
        try:
            suggestions = await enricher(
                request, store_name or store_chain,
                categories=categories, api_key=api_key,
            )
        except EnrichmentError as e:
            logger.warning("Enrichment failed for %d item(s) (%s) — keeping OCR names",
                           len(request), e)

    rejected = 0
    for idx, code in pending:
        suggestion = suggestions.get(code)
        if suggestion is None:
            continue
        item = items[idx]
        if not is_valid_suggestion(suggestion.full_name, item.item_name):
            rejected += 1
            continue
        items[idx] = item.model_copy(update={
            "item_name": suggestion.full_name.strip(),
            "brand": suggestion.brand or item.brand,
            "size": suggestion.size or item.size,
            "category": suggestion.category or item.category,
            "confidence": suggestion_confidence(suggestion.confidence),
        })

    logger.info(
        "Reconciled %d items @ %s: %d verified, %d ai, %d rejected, %d discounts",
        len(items), store_chain,
        sum(i.confidence == Confidence.VERIFIED for i in items),
        sum(i.confidence == Confidence.AI_SUGGESTED for i in items),
        rejected,
        sum(i.is_discount for i in items),
    )
    return items


def verify_total(parsed: ParsedReceipt, items: list[AnnotatedItem]) -> tuple[bool, str]:
    """
    Compare sum(items) + tax against the printed total.  Informational only —
    receipts carry untracked fees and rounding, so a mismatch never blocks.
    Returns (matches, message).
    """
    if parsed.total_amount is None:
        return False, "Could not find a total on the receipt."

    if not items:
        return False, "No line items found to verify against."
    items_sum = round(sum(i.total_price or 0.0 for i in items), 2)

    tax = parsed.tax_amount or 0.0
    computed = round(items_sum + tax, 2)
    expected = round(parsed.total_amount, 2)
    diff = abs(computed - expected)

    if diff <= 0.02:   # allow 2¢ rounding
        return True, f"Items ${items_sum:.2f} + Tax ${tax:.2f} = ${computed:.2f} ✓"
    return False, (
        f"Items ${items_sum:.2f} + tax ${tax:.2f} = ${computed:.2f}"
        f" ≠ receipt total ${expected:.2f} (diff ${diff:.2f})."
    )


async def review_receipt(
    parsed: ParsedReceipt,
    db: aiosqlite.Connection,
    store_name_hint: Optional[str] = None,
    ocr_text: Optional[str] = None,
    enricher: Enricher = enrich_products,
    api_key: Optional[str] = None,
) -> ReviewPayload:
    """
    Build the review screen payload for one extracted receipt.
    Resolves the chain, normalizes the date, reconciles items.
    Nothing is persisted.
    """
    store_name = store_name_hint or parsed.store_name or "Unknown Store"
    chain = chain_key(store_name)
    resolution = resolve_date(parsed.receipt_date, store_name)
    categories = await get_categories(db)

    items = await reconcile(
        parsed.items, chain, VerifiedProductStore(db),
        store_name=store_name, enricher=enricher,
        categories=categories, api_key=api_key,
    )
    verified, verify_msg = verify_total(parsed, items)

    return ReviewPayload(
        store_name=store_name,
        store_chain=chain,
        store_address=parsed.store_address,
        store_phone=parsed.store_phone,
        receipt_date=resolution.iso,
        receipt_date_raw=parsed.receipt_date,
        date_confident=resolution.confident,
        date_rule=resolution.rule,
        receipt_number=parsed.receipt_number,
        subtotal_amount=parsed.subtotal_amount,
        tax_amount=parsed.tax_amount,
        total_amount=parsed.total_amount,
        discount_amount=parsed.discount_amount,
        payment_method=parsed.payment_method,
        card_last_four=parsed.card_last_four,
        ocr_text=ocr_text,
        total_verified=verified,
        verification_message=verify_msg,
        items=items,
    )
