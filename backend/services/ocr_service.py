"""
OCR Service — extracts text from receipt images using Tesseract, then parses
it with heuristics tuned for SKU-coded Canadian grocery receipts.  When an
Anthropic key is available (server-side, or the one the client sent along)
a second, higher-quality pass is made via Claude Vision which reads the
image directly and returns the same ParsedReceipt shape.

Either way the caller gets an OcrResult; reconciliation doesn't care which
extractor produced it.  A receipt neither extractor can read aborts the
upload before anything is written.
"""
import logging
import re
import io
import os
import json
import base64
from typing import Optional

from models.schemas import OcrResult, ParsedReceipt, RawOcrItem
from services.store_service import detect_store_from_text

logger = logging.getLogger("basket.ocr")
VISION_MODEL = os.environ.get("VISION_MODEL", "claude-sonnet-4-5")

try:
    import pytesseract
    from PIL import Image, ImageEnhance, ImageFilter, ImageOps
    OCR_AVAILABLE = True
except ImportError:
    OCR_AVAILABLE = False
    logger.warning("pytesseract/Pillow not available — OCR disabled")

# Register HEIC/HEIF support via pillow-heif if available
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIF_AVAILABLE = True
except ImportError:
    HEIF_AVAILABLE = False
    logger.info("pillow-heif not installed — HEIC files will not be supported")


class OcrError(Exception):
    """Raised when an extractor can't produce a receipt from the image."""
    pass


def preprocess_image(image: "Image.Image") -> "Image.Image":
    """
    Improve OCR accuracy by preprocessing the receipt image:
    - Convert to grayscale
    - Upscale if small
    - Invert dark-background bands (white-on-black totals)
    - Enhance contrast and sharpen
    """
    import numpy as np

    img = image.convert("L")

    w, h = img.size
    if w < 800:
        scale = 800 / w
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)

    # Scan in horizontal bands; a band averaging below 80 is mostly dark, so
    # invert it and Tesseract sees black-on-white text.
    arr = np.array(img)
    band_height = max(1, arr.shape[0] // 40)
    for y in range(0, arr.shape[0], band_height):
        band = arr[y:y + band_height, :]
        if band.mean() < 80:
            arr[y:y + band_height, :] = 255 - band
    img = Image.fromarray(arr)

    img = ImageEnhance.Contrast(img).enhance(2.0)
    img = img.filter(ImageFilter.SHARPEN)
    return img


def normalize_orientation(image_bytes: bytes) -> bytes:
    """Apply EXIF rotation and re-encode as JPEG (phone photos are often rotated in metadata)."""
    if not OCR_AVAILABLE:
        return image_bytes
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=92, optimize=True)
        return buf.getvalue()
    except Exception as e:
        logger.warning("EXIF normalise failed, using raw bytes: %s", e)
        return image_bytes


def extract_text_from_image(image_bytes: bytes) -> str:
    """
    Run Tesseract OCR on image bytes, return raw text.
    Supports JPEG, PNG, WEBP, and HEIC/HEIF (with pillow-heif installed).
    """
    if not OCR_AVAILABLE:
        raise OcrError("OCR dependencies not installed (pytesseract, Pillow)")

    try:
        image = Image.open(io.BytesIO(image_bytes))
    except Exception as e:
        msg = str(e)
        if not HEIF_AVAILABLE and ("heif" in msg.lower() or "heic" in msg.lower()):
            raise OcrError("HEIC/HEIF files require pillow-heif") from e
        raise OcrError(f"Cannot open image: {msg}") from e

    if image.mode not in ("RGB", "L", "RGBA"):
        image = image.convert("RGB")

    processed = preprocess_image(image)
    try:
        text = pytesseract.image_to_string(processed, config="--psm 6")
    except pytesseract.TesseractNotFoundError as e:
        raise OcrError("tesseract binary not found in PATH") from e
    return text.strip()


# ── Receipt Text Parser ───────────────────────────────────────────────────────
#
# Loblaw-banner receipts look like:
#
#   21-GROCERY
#   06038313771 PC SPRK WTR GFRT HMRJ
#   1.29
#   (1)06041008007 LAY'S HONEY BUT HMRJ D
#   2 @ 2/$6.00
#   3.00
#   27-PRODUCE
#   4011
#   BANANAS
#   0.255 kg @ $5.49/kg
#   1.40
#   ARCP SAVE 2.50-
#   SUBTOTAL
#   36.32
#   36.32 @ 13.000% 4.72
#   TOTAL
#   41.04

SECTION_RE     = re.compile(r'^\d{2}-([A-Z][A-Z\s]*)$')
SKU_LINE_RE    = re.compile(r'^(?:\(\d+\))?(\*?\d{8,15})\s+(.+?)(?:\s+([HM]{0,2}R[QJ]?)(?:\s+[A-Z])?)?$')
PLU_LINE_RE    = re.compile(r'^\d{4}$')
PRICE_LINE_RE  = re.compile(r'^(\d{1,3}\.\d{2})$')
AMOUNT_LINE_RE = re.compile(r'^(\d{1,4}\.\d{2})$')
NAME_PRICE_RE  = re.compile(r'^(.+?)\s+(\d{1,3}\.\d{2})$')
WEIGHT_RE      = re.compile(r'^(\d+\.?\d*)\s+kg\s+@\s+\$(\d+\.\d{2})/kg', re.IGNORECASE)
PROMO_LINE_RE  = re.compile(r'^(?:\d+\s+@\s+\d+/\$[\d.]+|\$[\d.]+\s+ea\s+or)', re.IGNORECASE)
TAX_CODE_RE    = re.compile(r"^[HM]{0,2}R[QJ]?\s*$", re.IGNORECASE)
ADJUSTMENT_RE  = re.compile(r'^(?P<name>[A-Za-z].*?)\s+(?:-(?P<lead>\d{1,3}\.\d{2})|(?P<trail>\d{1,3}\.\d{2})-)$')
TAX_CALC_RE    = re.compile(r'^([\d.]+)\s+@\s+([\d.]+)%\s+([\d.]+)$')
DATE_RE        = re.compile(r'(\d{2}/\d{2}/\d{2,4}(?:\s+\d{1,2}:\d{2}(?::\d{2})?)?)')
PHONE_RE       = re.compile(r'\(?(\d{3})\)?[-.\s]?(\d{3})[-.\s]?(\d{4})')
ADDRESS_RE     = re.compile(r'\d+\s+[A-Za-z\s]+(?:st|street|ave|avenue|rd|road|blvd|boulevard|dr|drive|way)\b', re.IGNORECASE)
STORE_NAME_RE  = re.compile(r"^[A-Z\s&']{3,50}$")
CARD_RE        = re.compile(r'(?:\*{2,}|X{4,})\s*(\d{4})\b')

SECTION_CATEGORIES = {
    "GROCERY": "Pantry",
    "PRODUCE": "Produce",
    "DAIRY": "Dairy",
    "BAKERY": "Bakery",
    "BAKERY COMMERCIAL": "Bakery",
    "MEAT": "Meats",
    "MEATS": "Meats",
    "NEATS": "Meats",        # OCR misread of MEATS
    "SEAFOOD": "Meats",
    "FROZEN": "Frozen",
    "DELI": "Deli",
    "HOUSEHOLD": "Household",
    "HEALTH": "Household",
    "BEVERAGES": "Beverages",
}

# House-brand and common receipt abbreviations, expanded as whole words.
ABBREVIATIONS = {
    "PC": "President's Choice",
    "NN": "No Name",
    "SPRK WTR": "Sparkling Water",
    "BLK BEANS": "Black Beans",
    "CLNR": "Cleaner",
    "TRIGR": "Trigger",
    "XTR LEAN": "Extra Lean",
    "SRLN": "Sirloin",
    "CRN": "Corn",
    "TORT": "Tortillas",
    "ORGNC": "Organic",
    "INST": "Instant",
}


def map_section_to_category(section: str) -> str:
    return SECTION_CATEGORIES.get(section.strip().upper(), "Pantry")


def clean_product_name(name: str) -> str:
    """Strip tax codes and 'ea', expand known abbreviations, title-case."""
    if not name:
        return ""
    cleaned = re.sub(r'\s+[HM]{0,2}R[QJ]?$', '', name.strip())
    cleaned = re.sub(r'\s+ea$', '', cleaned, flags=re.IGNORECASE).strip()
    for abbrev, expansion in ABBREVIATIONS.items():
        cleaned = re.sub(rf'\b{re.escape(abbrev)}\b', expansion, cleaned, flags=re.IGNORECASE)
    return " ".join(w[:1].upper() + w[1:] for w in cleaned.lower().split())


def _parse_store_info(lines: list[str], result: ParsedReceipt):
    for i, line in enumerate(lines):
        if not result.store_name and i < 5 and STORE_NAME_RE.match(line) and len(line.strip()) > 3:
            result.store_name = line.strip().title()
            continue
        if not result.store_phone and PHONE_RE.search(line):
            result.store_phone = line
            continue
        if not result.store_address and ADDRESS_RE.search(line):
            result.store_address = line


def _scan_for_price(lines: list[str], start: int, limit: int) -> Optional[tuple[float, int]]:
    """First standalone price at or after ``start``, skipping tax codes and promo lines."""
    for j in range(start, min(len(lines), limit)):
        line = lines[j]
        if TAX_CODE_RE.match(line) or PROMO_LINE_RE.match(line):
            continue
        m = PRICE_LINE_RE.match(line)
        if m:
            return float(m.group(1)), j
    return None


def _parse_items(lines: list[str]) -> list[RawOcrItem]:
    items: list[RawOcrItem] = []
    section = "GROCERY"
    i = 0

    def add(**fields):
        items.append(RawOcrItem(line_number=len(items) + 1, **fields))

    while i < len(lines):
        line = lines[i]

        m = SECTION_RE.match(line)
        if m:
            section = m.group(1)
            i += 1
            continue

        if PROMO_LINE_RE.match(line) or TAX_CODE_RE.match(line) or re.match(r'^\([^)]+\)$', line):
            i += 1
            continue

        # "ARCP SAVE 2.50-" / "COUPON -1.00" — adjustments print with a minus
        m = ADJUSTMENT_RE.match(line)
        if m:
            amount = -float(m.group("lead") or m.group("trail"))
            add(item_name=m.group("name").strip(), total_price=amount, unit_price=amount)
            i += 1
            continue

        # SKU line, price on the same line or within the next few
        m = SKU_LINE_RE.match(line)
        if m:
            code = m.group(1).lstrip("*")          # '*' marks a price match
            name_part, tax_code = m.group(2), m.group(3)
            same_line = NAME_PRICE_RE.match(name_part)
            if same_line:
                price = float(same_line.group(2))
                add(item_name=clean_product_name(same_line.group(1)), product_code=code,
                    unit_price=price, total_price=price,
                    category=map_section_to_category(section), tax_code=tax_code)
                i += 1
                continue
            found = _scan_for_price(lines, i + 1, i + 8)
            if found:
                price, j = found
                add(item_name=clean_product_name(name_part), product_code=code,
                    unit_price=price, total_price=price,
                    category=map_section_to_category(section), tax_code=tax_code)
                i = j + 1
                continue
            i += 1
            continue

        # PLU (4-digit) produce line: code, name, optional weight line, price
        if PLU_LINE_RE.match(line) and i + 1 < len(lines):
            name = lines[i + 1]
            if not name[:1].isdigit() and len(name) > 2 and not TAX_CODE_RE.match(name):
                parsed = None
                for j in range(i + 2, min(len(lines), i + 6)):
                    w = WEIGHT_RE.match(lines[j])
                    if w and j + 1 < len(lines) and PRICE_LINE_RE.match(lines[j + 1]):
                        parsed = (float(w.group(1)), float(w.group(2)), float(lines[j + 1]), j + 2)
                        break
                    p = PRICE_LINE_RE.match(lines[j])
                    if p:
                        price = float(p.group(1))
                        parsed = (1.0, price, price, j + 1)
                        break
                if parsed:
                    qty, unit, total, i = parsed
                    add(item_name=clean_product_name(name), product_code=line,
                        quantity=qty, unit_price=unit, total_price=total,
                        category=map_section_to_category(section))
                    continue

        i += 1

    return items


def _parse_totals(lines: list[str], result: ParsedReceipt):
    for i, line in enumerate(lines):
        if "SUBTOTAL" in line.upper() and result.subtotal_amount is None:
            for j in range(i + 1, min(len(lines), i + 4)):
                m = AMOUNT_LINE_RE.match(lines[j])
                if m:
                    result.subtotal_amount = float(m.group(1))
                    break

        m = TAX_CALC_RE.match(line)
        if m and result.tax_amount is None:
            result.tax_amount = float(m.group(3))

        if result.total_amount is None:
            m = AMOUNT_LINE_RE.match(line)
            prev = lines[i - 1].upper() if i > 0 else ""
            if m and ("@" in prev or prev.strip() == "TOTAL"):
                result.total_amount = float(m.group(1))
            elif line.strip().upper() == "TOTAL":
                for j in range(i + 1, min(len(lines), i + 6)):
                    nxt = lines[j]
                    if "Trans. Type:" in nxt or "Account:" in nxt:
                        continue
                    m = AMOUNT_LINE_RE.match(nxt)
                    if m:
                        result.total_amount = float(m.group(1))
                        break

        if "Card Type:" in line and not result.payment_method:
            result.payment_method = line.split(":", 1)[1].strip() or line

        if not result.card_last_four:
            m = CARD_RE.search(line)
            if m:
                result.card_last_four = m.group(1)


def parse_receipt_text(text: str) -> ParsedReceipt:
    """
    Parse OCR text into structured receipt data.
    Heuristics-based — designed for SKU-coded supermarket receipts.
    """
    result = ParsedReceipt()
    lines = [line.strip() for line in text.split("\n") if line.strip()]

    items_start = next((i for i, l in enumerate(lines) if SECTION_RE.match(l)), 0)
    totals_start = next(
        (i for i in range(items_start, len(lines)) if "SUBTOTAL" in lines[i].upper()),
        len(lines),
    )

    result.store_name = detect_store_from_text(text)
    _parse_store_info(lines[:items_start], result)
    result.items = [
        item for item in _parse_items(lines[items_start:totals_start])
        if len(item.item_name) >= 2 and item.total_price
    ]
    _parse_totals(lines[totals_start:], result)

    # Date: footer first (where Loblaw prints it), then anywhere
    for line in lines[totals_start:] + lines[:totals_start]:
        m = DATE_RE.search(line)
        if m:
            result.receipt_date = m.group(1).strip()
            break

    if result.subtotal_amount is None and result.items:
        result.subtotal_amount = round(sum(i.total_price for i in result.items), 2)

    discounts = [-i.total_price for i in result.items if i.total_price < 0]
    if discounts:
        result.discount_amount = round(sum(discounts), 2)

    return result


# ── Claude Vision ─────────────────────────────────────────────────────────────

def _prepare_image_for_vision(image_bytes: bytes) -> tuple[bytes, str]:
    """
    Resize + compress an image so it fits within Claude Vision limits:
    - Max dimension: 1568px on the long side
    - JPEG quality 92 to keep small receipt text legible
    Returns (compressed_bytes, media_type).
    """
    if image_bytes[:4] == b'\x89PNG':
        orig_type = "image/png"
    elif image_bytes[:3] == b'\xff\xd8\xff':
        orig_type = "image/jpeg"
    elif image_bytes[:4] == b'%PDF':
        return image_bytes, "application/pdf"   # caller will skip vision
    else:
        orig_type = "image/jpeg"   # HEIC / WEBP etc.

    if not OCR_AVAILABLE:
        return image_bytes, orig_type

    try:
        img = Image.open(io.BytesIO(image_bytes))
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")

        max_dim = 1568
        w, h = img.size
        long_side = max(w, h)
        if long_side > max_dim:
            scale = max_dim / long_side
            img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
            logger.debug("Resized image %d×%d → %d×%d", w, h, img.size[0], img.size[1])

        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=92, optimize=True)
        return buf.getvalue(), "image/jpeg"
    except Exception as e:
        logger.warning("Image prep failed (%s), sending original", e)
        return image_bytes, orig_type


VISION_PROMPT = """You are a receipt data extractor. Transcribe this grocery receipt image into JSON.

Rules:
- "item_name": the product text exactly as printed (keep abbreviations).
- "product_code": the SKU or PLU printed on the line, digits only, or null.
- "quantity": units or weight (e.g. 0.255 for kg items); 1 if not stated.
- "unit_price": price of one unit; "total_price": the amount charged for the line.
- Discounts, coupons and price adjustments are separate items with a NEGATIVE total_price
  and their printed text as item_name (e.g. "ARCP SAVE").
- "receipt_date": the date EXACTLY as printed (e.g. "24/03/05" or "03/05/2024"). Do not reformat it.
- Do not include subtotal, tax, or total lines as items.
{ocr_hint}
Output ONLY this JSON (no prose, no markdown):

{{
  "store_name": "string or null",
  "store_address": "string or null",
  "store_phone": "string or null",
  "receipt_date": "string or null",
  "receipt_number": "string or null",
  "subtotal_amount": number or null,
  "tax_amount": number or null,
  "total_amount": number or null,
  "payment_method": "DEBIT | CREDIT | CASH or null",
  "card_last_four": "string or null",
  "items": [
    {{
      "item_name": "string",
      "product_code": "string or null",
      "quantity": number,
      "unit_price": number or null,
      "total_price": number,
      "brand": "string or null",
      "size": "string or null",
      "category": "string or null"
    }}
  ]
}}"""


def _items_from_vision(raw_items: list) -> list[RawOcrItem]:
    items: list[RawOcrItem] = []
    for raw in raw_items or []:
        name = str(raw.get("item_name") or "").strip()
        total = raw.get("total_price")
        if not name or total is None:
            continue
        total = float(total)
        qty = float(raw.get("quantity") or 1)
        unit = raw.get("unit_price")
        unit = float(unit) if unit is not None else None

        # line total is authoritative when unit × qty disagrees with it —
        # the model often reads a multi-pack line total as the unit price
        if unit is not None and qty > 0 and abs(round(unit * qty, 2) - round(total, 2)) > 0.02:
            logger.debug("Price mismatch for '%s': %s × %s ≠ %s — using line total",
                         name, unit, qty, total)
            unit = round(total / qty, 4)

        code = re.sub(r'\D', '', str(raw.get("product_code") or ""))
        items.append(RawOcrItem(
            item_name=name,
            product_code=code or None,
            quantity=qty,
            unit_price=unit if unit is not None else total,
            total_price=total,
            brand=raw.get("brand") or None,
            size=raw.get("size") or None,
            category=raw.get("category") or None,
            line_number=len(items) + 1,
        ))
    return items


async def parse_receipt_with_vision(
    image_bytes: bytes,
    ocr_text: str,
    api_key: str,
) -> ParsedReceipt:
    """
    Use Claude Vision to extract structured receipt data directly from the image.
    Tesseract text, when there is any, goes along as an alignment hint.
    Raises OcrError when the call or the parse fails.
    """
    vision_bytes, media_type = _prepare_image_for_vision(image_bytes)
    if media_type == "application/pdf":
        raise OcrError("PDF receipts can't be sent to vision")

    b64 = base64.standard_b64encode(vision_bytes).decode()
    logger.info("Sending %d KB b64 (%s) to Claude Vision", len(b64) // 1024, media_type)

    ocr_hint = ""
    if ocr_text and ocr_text.strip():
        ocr_hint = f"""
OCR text of the same receipt (may contain errors; the image is the primary source,
use this to align item names with their prices):

<ocr_text>
{ocr_text.strip()}
</ocr_text>
"""

    try:
        import anthropic
        client = anthropic.AsyncAnthropic(api_key=api_key)
        message = await client.messages.create(
            model=VISION_MODEL,
            max_tokens=4096,
            messages=[{
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {"type": "base64", "media_type": media_type, "data": b64},
                    },
                    {"type": "text", "text": VISION_PROMPT.format(ocr_hint=ocr_hint)},
                ],
            }],
        )
        raw = message.content[0].text.strip()
        raw = re.sub(r'^```[a-z]*\n?', '', raw)
        raw = re.sub(r'\n?```$', '', raw)
        data = json.loads(raw)
    except Exception as e:
        raise OcrError(f"Claude Vision parse failed: {e}") from e

    if not isinstance(data, dict):
        raise OcrError("Claude Vision returned non-object JSON")

    items = _items_from_vision(data.get("items") or [])
    discounts = [-i.total_price for i in items if i.total_price < 0]
    return ParsedReceipt(
        store_name=data.get("store_name"),
        store_address=data.get("store_address"),
        store_phone=data.get("store_phone"),
        receipt_date=data.get("receipt_date"),
        receipt_number=data.get("receipt_number"),
        subtotal_amount=data.get("subtotal_amount"),
        tax_amount=data.get("tax_amount"),
        total_amount=data.get("total_amount"),
        discount_amount=round(sum(discounts), 2) if discounts else None,
        payment_method=data.get("payment_method"),
        card_last_four=data.get("card_last_four"),
        items=items,
    )


def is_readable(parsed: Optional[ParsedReceipt]) -> bool:
    return parsed is not None and (bool(parsed.items) or parsed.total_amount is not None)


async def run_ocr(image_bytes: bytes, api_key: Optional[str] = None) -> OcrResult:
    """
    Tesseract first; Claude Vision refinement when a key is available.
    Vision failure falls back to the Tesseract parse.  Never raises — an
    unreadable receipt comes back as ``success=False``.
    """
    text = ""
    parsed: Optional[ParsedReceipt] = None
    errors: list[str] = []

    try:
        text = extract_text_from_image(image_bytes)
        parsed = parse_receipt_text(text)
    except OcrError as e:
        logger.warning("Tesseract OCR failed: %s", e)
        errors.append(str(e))

    source = "tesseract"
    key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
    if key:
        try:
            vision = await parse_receipt_with_vision(image_bytes, text, key)
        except OcrError as e:
            logger.warning("%s — using Tesseract fallback", e)
            errors.append(str(e))
        else:
            if is_readable(vision):
                if parsed and not vision.store_name:
                    vision.store_name = parsed.store_name
                parsed, source = vision, "vision"
            elif is_readable(parsed):
                logger.warning("Vision returned no items — using Tesseract parse")

    if not is_readable(parsed):
        error = "; ".join(errors) or "No items or total could be read from the receipt"
        return OcrResult(success=False, ocr_text=text or None, error=error, source=source)

    logger.info("OCR (%s): %d item(s), store=%r, date=%r",
                source, len(parsed.items), parsed.store_name, parsed.receipt_date)
    return OcrResult(success=True, parsed_data=parsed, ocr_text=text, source=source)
