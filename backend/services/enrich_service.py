"""
Enrichment Service

Given SKU-coded lines whose codes aren't in the verified-product store, ask
Claude for a canonical product name, brand, size and category — all items of
a receipt in a single batched request, so a receipt costs at most one call
no matter how many items it has.

The result is a suggestion, not a fact: the reconciliation engine decides
whether to accept it.  A code missing from the result means "no suggestion".
"""
import json
import logging
import os
import re
from typing import Optional

import anthropic
import aiosqlite
from pydantic import BaseModel

logger = logging.getLogger("basket.enrich")
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")
ENRICH_MODEL = os.environ.get("ENRICH_MODEL", "claude-haiku-4-5")


class EnrichmentError(Exception):
    """Raised when the enrichment call fails (missing key, network, auth, parse error)."""
    pass


class Suggestion(BaseModel):
    full_name: str = ""
    brand: Optional[str] = None
    size: Optional[str] = None
    category: Optional[str] = None
    confidence: Optional[str] = None


# Fallback list used only when DB is unavailable (e.g. during cold startup)
_BUILTIN_CATEGORIES = [
    "Produce", "Dairy", "Meats", "Bakery", "Beverages", "Frozen",
    "Pantry", "Household", "Deli", "Dips", "Other",
]


async def get_categories(db: aiosqlite.Connection) -> list[str]:
    """Return enabled category names ordered by sort_order."""
    async with db.execute(
        "SELECT name FROM categories WHERE is_disabled = 0 ORDER BY sort_order, name"
    ) as cur:
        rows = await cur.fetchall()
    return [r["name"] for r in rows] if rows else _BUILTIN_CATEGORIES


SIZE_PATTERNS = [
    re.compile(r'(\d+(?:\.\d+)?)\s*(ml|l|g|kg|oz|lb|lbs|litre|liter|gram|kilogram)\b', re.IGNORECASE),
    re.compile(r'(\d+(?:\.\d+)?)\s*(pack|pk|ct|count)\b', re.IGNORECASE),
]


def extract_size_from_name(name: str) -> str:
    """Pull a size out of a product name: "Milk 2% 4L" → "4 L".  Last match wins."""
    for pattern in SIZE_PATTERNS:
        matches = pattern.findall(name or "")
        if matches:
            amount, unit = matches[-1]
            return f"{amount} {unit}"
    return ""


def _build_system_prompt(categories: list[str]) -> str:
    return f"""You are a grocery product identifier for Canadian supermarket receipts.
Receipt lines are abbreviated and truncated (e.g. "PC SPRK WTR GFRT", "NN BLK BEANS").
For each item you are given the store's product code (SKU or PLU) and the
abbreviated name as printed. Work out the real product.

Rules:
- "full_name" is the complete retail product name, title case, without the store's name.
- "brand" is the manufacturer or house brand, or null if unknown.
- "size" is the package size like "400 ml", "454 g", "12 ct", or null.
- "category" must be one of: {', '.join(categories)}
- Omit any item you cannot identify. Do not guess wildly.
- Return ONLY a JSON object. No prose, no markdown fences.

Input format: JSON array of objects with "code" and "name", plus "store".
Output format: JSON object keyed by code; each value has "full_name", "brand",
"size", "category".
"""


def _parse_response(raw: str, codes: set[str]) -> dict[str, Suggestion]:
    raw = raw.strip()
    raw = re.sub(r'^```[a-z]*\n?', '', raw)
    raw = re.sub(r'\n?```$', '', raw)
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise EnrichmentError(f"Expected a JSON object, got {type(data).__name__}")

    results: dict[str, Suggestion] = {}
    for code, entry in data.items():
        if code not in codes or not isinstance(entry, dict):
            continue
        suggestion = Suggestion(
            full_name=str(entry.get("full_name") or "").strip(),
            brand=entry.get("brand") or None,
            size=entry.get("size") or None,
            category=entry.get("category") or None,
            confidence=entry.get("confidence") or None,
        )
        if not suggestion.size:
            suggestion.size = extract_size_from_name(suggestion.full_name) or None
        results[code] = suggestion
    return results


async def enrich_products(
    items: list[dict],   # [{code, name}, ...]
    store_name: str,
    categories: Optional[list[str]] = None,
    api_key: Optional[str] = None,
) -> dict[str, Suggestion]:
    """
    Send every pending item to Claude in one request.
    Returns {code: Suggestion}; codes Claude couldn't identify are absent.
    Raises EnrichmentError on any failure — callers degrade, never abort.
    """
    if not items:
        return {}

    key = api_key or ANTHROPIC_API_KEY
    if not key:
        logger.warning("ANTHROPIC_API_KEY not set — skipping product enrichment")
        raise EnrichmentError("ANTHROPIC_API_KEY not set")

    system_prompt = _build_system_prompt(categories or _BUILTIN_CATEGORIES)
    payload = [
        {"code": item["code"], "name": item["name"], "store": store_name}
        for item in items
    ]

    client = anthropic.AsyncAnthropic(api_key=key)
    try:
        message = await client.messages.create(
            model=ENRICH_MODEL,
            max_tokens=2048,
            system=system_prompt,
            messages=[{"role": "user", "content": json.dumps(payload)}],
        )
        results = _parse_response(message.content[0].text, {i["code"] for i in items})
    except EnrichmentError:
        raise
    except Exception as e:
        logger.error("Claude API error during enrichment: %s", e)
        raise EnrichmentError(str(e)) from e

    logger.info("Enrichment: %d/%d codes identified", len(results), len(items))
    return results
