"""
Tests for OCR parsing — pure text processing, plus run_ocr composition with
Tesseract and Claude Vision patched out.

Covers:
- parse_receipt_text: SKU, PLU/weight, promo and adjustment lines; totals footer
- clean_product_name: tax code stripping and abbreviation expansion
- _items_from_vision: line total is authoritative, codes reduced to digits
- run_ocr: Tesseract-only, Vision refinement, Vision fallback, total failure
- _prepare_image_for_vision: magic-byte media type detection
"""
import json
import os
from unittest.mock import patch, AsyncMock, MagicMock

import pytest

from models.schemas import ParsedReceipt, RawOcrItem
from services.ocr_service import (
    OcrError, _items_from_vision, _prepare_image_for_vision, clean_product_name,
    map_section_to_category, parse_receipt_text, parse_receipt_with_vision, run_ocr,
)

LOBLAW_RECEIPT = """
REAL CANADIAN SUPERSTORE
2549 WESTON RD
(416) 555-0142
21-GROCERY
06038313771 PC SPRK WTR HMRJ
1.29
(1)06041008007 LAYS HONEY BUT HMRJ
2 @ 2/$6.00
3.00
06340004410 NN BLK BEANS 1.49
27-PRODUCE
4011
BANANAS
0.255 kg @ $5.49/kg
1.40
ARCP SAVE 2.50-
SUBTOTAL
4.68
4.68 @ 13.000% 0.61
TOTAL
5.29
Card Type: VISA
************1234
24/03/15 14:22:07
"""


# ── parse_receipt_text ───────────────────────────────────────────────────────

class TestParseLoblawReceipt:

    @pytest.fixture
    def parsed(self):
        return parse_receipt_text(LOBLAW_RECEIPT)

    def test_store_header(self, parsed):
        assert parsed.store_name == "Real Canadian Superstore"
        assert parsed.store_address == "2549 WESTON RD"
        assert parsed.store_phone == "(416) 555-0142"

    def test_items_in_print_order(self, parsed):
        assert [(i.item_name, i.product_code, i.total_price) for i in parsed.items] == [
            ("President's Choice Sparkling Water", "06038313771", 1.29),
            ("Lays Honey But", "06041008007", 3.00),
            ("No Name Black Beans", "06340004410", 1.49),
            ("Bananas", "4011", 1.40),
            ("ARCP SAVE", None, -2.50),
        ]
        assert [i.line_number for i in parsed.items] == [1, 2, 3, 4, 5]

    def test_sections_become_categories(self, parsed):
        assert parsed.items[0].category == "Pantry"
        assert parsed.items[3].category == "Produce"

    def test_tax_code_kept_separately(self, parsed):
        assert parsed.items[0].tax_code == "HMRJ"

    def test_weighed_produce(self, parsed):
        bananas = parsed.items[3]
        assert bananas.quantity == 0.255
        assert bananas.unit_price == 5.49

    def test_totals_footer(self, parsed):
        assert parsed.subtotal_amount == 4.68
        assert parsed.tax_amount == 0.61
        assert parsed.total_amount == 5.29
        assert parsed.discount_amount == 2.50
        assert parsed.payment_method == "VISA"
        assert parsed.card_last_four == "1234"

    def test_date_as_printed(self, parsed):
        assert parsed.receipt_date == "24/03/15 14:22:07"


class TestParseEdgeCases:

    def test_empty_text(self):
        parsed = parse_receipt_text("")
        assert parsed.items == []
        assert parsed.total_amount is None

    def test_subtotal_computed_when_missing(self):
        parsed = parse_receipt_text("21-GROCERY\n06038313771 PC SPRK WTR 1.29\n06340004410 NN BLK BEANS 1.49")
        assert parsed.subtotal_amount == 2.78

    def test_leading_minus_coupon(self):
        parsed = parse_receipt_text("21-GROCERY\nCOUPON -1.00")
        assert parsed.items[0].total_price == -1.00

    def test_unknown_section_defaults_to_pantry(self):
        assert map_section_to_category("SEASONAL") == "Pantry"
        assert map_section_to_category("NEATS") == "Meats"


class TestCleanProductName:

    @pytest.mark.parametrize("raw,clean", [
        ("PC SPRK WTR HMRJ", "President's Choice Sparkling Water"),
        ("NN BLK BEANS", "No Name Black Beans"),
        ("XTR LEAN GRND BEEF MRJ", "Extra Lean Grnd Beef"),
        ("AVOCADO ea", "Avocado"),
        ("", ""),
    ])
    def test_clean(self, raw, clean):
        assert clean_product_name(raw) == clean


# ── Vision ───────────────────────────────────────────────────────────────────

class TestItemsFromVision:

    def test_line_total_wins_over_bad_unit_price(self):
        items = _items_from_vision([
            {"item_name": "LAYS", "quantity": 2, "unit_price": 6.00, "total_price": 6.00},
        ])
        assert items[0].unit_price == 3.00
        assert items[0].total_price == 6.00

    def test_code_reduced_to_digits_and_blank_lines_dropped(self):
        items = _items_from_vision([
            {"item_name": "PC SPRK WTR", "product_code": "*0603-8313771", "total_price": 1.29},
            {"item_name": "", "total_price": 1.00},
            {"item_name": "NO PRICE"},
        ])
        assert len(items) == 1
        assert items[0].product_code == "06038313771"
        assert items[0].unit_price == 1.29

    @pytest.mark.asyncio
    async def test_vision_call_parses_json(self):
        reply = MagicMock()
        reply.content = [MagicMock(text="```json\n" + json.dumps({
            "store_name": "Walmart",
            "receipt_date": "03/15/24",
            "total_amount": 4.49,
            "items": [
                {"item_name": "GV MILK", "product_code": "0628915", "total_price": 4.99},
                {"item_name": "ROLLBACK", "total_price": -0.50},
            ],
        }) + "\n```")]
        client = AsyncMock()
        client.messages.create.return_value = reply

        with patch("anthropic.AsyncAnthropic", return_value=client):
            parsed = await parse_receipt_with_vision(b"\xff\xd8\xff" + b"0" * 16, "", "sk-test")

        assert parsed.store_name == "Walmart"
        assert parsed.receipt_date == "03/15/24"
        assert parsed.discount_amount == 0.50
        assert [i.item_name for i in parsed.items] == ["GV MILK", "ROLLBACK"]

    @pytest.mark.asyncio
    async def test_vision_failure_raises_ocr_error(self):
        client = AsyncMock()
        client.messages.create.side_effect = RuntimeError("overloaded")
        with patch("anthropic.AsyncAnthropic", return_value=client):
            with pytest.raises(OcrError, match="overloaded"):
                await parse_receipt_with_vision(b"\xff\xd8\xff" + b"0" * 16, "", "sk-test")

    @pytest.mark.asyncio
    async def test_pdf_is_refused(self):
        with pytest.raises(OcrError):
            await parse_receipt_with_vision(b"%PDF-1.4", "", "sk-test")


class TestPrepareImageForVision:

    def test_pdf_passthrough(self):
        data = b"%PDF-1.4 rest"
        assert _prepare_image_for_vision(data) == (data, "application/pdf")

    def test_unreadable_jpeg_is_sent_as_is(self):
        data = b"\xff\xd8\xff" + b"not really a jpeg"
        out, media_type = _prepare_image_for_vision(data)
        assert out == data
        assert media_type == "image/jpeg"


# ── run_ocr composition ──────────────────────────────────────────────────────

VISION_RESULT = ParsedReceipt(
    store_name=None,
    total_amount=5.29,
    items=[RawOcrItem(item_name="PC SPRK WTR", product_code="06038313771", total_price=1.29)],
)


class TestRunOcr:

    @pytest.mark.asyncio
    async def test_tesseract_only_without_key(self):
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": ""}), \
             patch("services.ocr_service.extract_text_from_image", return_value=LOBLAW_RECEIPT), \
             patch("services.ocr_service.parse_receipt_with_vision", new_callable=AsyncMock) as vision:
            result = await run_ocr(b"img")

        vision.assert_not_called()
        assert result.success
        assert result.source == "tesseract"
        assert len(result.parsed_data.items) == 5

    @pytest.mark.asyncio
    async def test_vision_refines_when_key_given(self):
        with patch("services.ocr_service.extract_text_from_image", return_value=LOBLAW_RECEIPT), \
             patch("services.ocr_service.parse_receipt_with_vision",
                   new_callable=AsyncMock, return_value=VISION_RESULT.model_copy(deep=True)) as vision:
            result = await run_ocr(b"img", api_key="sk-client")

        vision.assert_awaited_once_with(b"img", LOBLAW_RECEIPT, "sk-client")
        assert result.source == "vision"
        assert len(result.parsed_data.items) == 1
        # store name carried over from the Tesseract header
        assert result.parsed_data.store_name == "Real Canadian Superstore"

    @pytest.mark.asyncio
    async def test_vision_failure_falls_back_to_tesseract(self):
        with patch("services.ocr_service.extract_text_from_image", return_value=LOBLAW_RECEIPT), \
             patch("services.ocr_service.parse_receipt_with_vision",
                   new_callable=AsyncMock, side_effect=OcrError("Claude Vision parse failed: 529")):
            result = await run_ocr(b"img", api_key="sk-client")

        assert result.success
        assert result.source == "tesseract"
        assert len(result.parsed_data.items) == 5

    @pytest.mark.asyncio
    async def test_unreadable_receipt_is_a_failure(self):
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": ""}), \
             patch("services.ocr_service.extract_text_from_image",
                   side_effect=OcrError("Cannot open image: truncated")):
            result = await run_ocr(b"img")

        assert not result.success
        assert result.parsed_data is None
        assert "truncated" in result.error

    @pytest.mark.asyncio
    async def test_text_without_items_is_a_failure(self):
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": ""}), \
             patch("services.ocr_service.extract_text_from_image", return_value="THANK YOU"):
            result = await run_ocr(b"img")

        assert not result.success
        assert result.ocr_text == "THANK YOU"
