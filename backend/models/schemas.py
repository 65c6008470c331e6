from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List


# ── Confidence ─────────────────────────────────────────
class Confidence(str, Enum):
    """Provenance of an item's current field values.

    Ordered by trust: verified > ai_suggested > ocr > fallback, so
    ``Confidence.VERIFIED > Confidence.OCR`` compares ranks, not strings.
    """
    FALLBACK = "fallback"
    OCR = "ocr"
    AI_SUGGESTED = "ai_suggested"
    VERIFIED = "verified"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Confidence):
            return NotImplemented
        return self.rank >= other.rank


_CONFIDENCE_RANK = {
    Confidence.FALLBACK: 0,
    Confidence.OCR: 1,
    Confidence.AI_SUGGESTED: 2,
    Confidence.VERIFIED: 3,
}


# ── Line Items ─────────────────────────────────────────
class RawOcrItem(BaseModel):
    """One line as the OCR collaborator returned it.  Not yet trusted."""
    item_name: str = ""
    quantity: float = 1.0
    unit_price: Optional[float] = None
    total_price: Optional[float] = None
    product_code: Optional[str] = None
    brand: Optional[str] = None
    size: Optional[str] = None
    category: Optional[str] = None
    line_number: Optional[int] = None
    discount_amount: Optional[float] = None
    tax_code: Optional[str] = None

class AnnotatedItem(RawOcrItem):
    is_discount: bool = False
    confidence: Confidence = Confidence.OCR


# ── Verified Product ───────────────────────────────────
class VerifiedProduct(BaseModel):
    product_code: str
    store_chain: str
    product_name: str
    brand: Optional[str] = None
    size: Optional[str] = None
    category: Optional[str] = None
    verification_count: int = 1
    last_verified_at: Optional[str] = None
    last_verified_by: Optional[str] = None

    class Config:
        from_attributes = True

class PaginatedProducts(BaseModel):
    items: List[VerifiedProduct]
    total: int


# ── Receipt (transient, as extracted) ──────────────────
class ParsedReceipt(BaseModel):
    store_name: Optional[str] = None
    store_address: Optional[str] = None
    store_phone: Optional[str] = None
    receipt_date: Optional[str] = None     # as printed, ambiguous until normalized
    receipt_number: Optional[str] = None
    subtotal_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount: Optional[float] = None
    discount_amount: Optional[float] = None
    payment_method: Optional[str] = None
    card_last_four: Optional[str] = None
    items: List[RawOcrItem] = Field(default_factory=list)

class OcrResult(BaseModel):
    success: bool
    parsed_data: Optional[ParsedReceipt] = None
    ocr_text: Optional[str] = None
    error: Optional[str] = None
    source: str = "tesseract"              # tesseract | vision | client


# ── Review / Approval ──────────────────────────────────
class ReviewPayload(BaseModel):
    """Returned to the client for human review.  Nothing is persisted yet."""
    store_name: str
    store_chain: str
    store_address: Optional[str] = None
    store_phone: Optional[str] = None
    receipt_date: str                      # normalized ISO date
    receipt_date_raw: Optional[str] = None
    date_confident: bool = True
    date_rule: str = ""
    receipt_number: Optional[str] = None
    subtotal_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount: Optional[float] = None
    discount_amount: Optional[float] = None
    payment_method: Optional[str] = None
    card_last_four: Optional[str] = None
    ocr_text: Optional[str] = None
    total_verified: bool = False
    verification_message: str = ""
    items: List[AnnotatedItem]

class ProcessRequest(BaseModel):
    """Client-side extraction result, submitted for the same reconciliation."""
    parsed_data: ParsedReceipt
    ocr_text: Optional[str] = None
    store_name_hint: Optional[str] = None

class ReceiptApproval(BaseModel):
    """Sent by the client after the user reviews and corrects the receipt."""
    store_name: str
    receipt_date: Optional[str] = None
    store_address: Optional[str] = None
    store_phone: Optional[str] = None
    receipt_number: Optional[str] = None
    subtotal_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount: Optional[float] = None
    discount_amount: Optional[float] = None
    payment_method: Optional[str] = None
    card_last_four: Optional[str] = None
    ocr_text: Optional[str] = None
    items: List[AnnotatedItem] = Field(default_factory=list)

class LearningReport(BaseModel):
    eligible: int = 0
    written: int = 0
    failed: int = 0


# ── Receipt (persisted) ────────────────────────────────
class ReceiptItem(AnnotatedItem):
    id: int
    receipt_id: int

    class Config:
        from_attributes = True

class Receipt(BaseModel):
    id: int
    user_id: str
    store_name: str
    store_chain: str
    store_address: Optional[str] = None
    store_phone: Optional[str] = None
    receipt_date: Optional[str] = None
    receipt_number: Optional[str] = None
    subtotal_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    discount_amount: Optional[float] = None
    total_amount: Optional[float] = None
    payment_method: Optional[str] = None
    card_last_four: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    items: List[ReceiptItem] = []

    class Config:
        from_attributes = True

class ReceiptSummary(BaseModel):
    id: int
    store_name: str
    store_chain: str
    receipt_date: Optional[str]
    total_amount: Optional[float]
    item_count: int
    created_at: str

class ReceiptUpdate(BaseModel):
    store_name: Optional[str] = None
    receipt_date: Optional[str] = None
    subtotal_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount: Optional[float] = None
    payment_method: Optional[str] = None

class ReceiptItemUpdate(BaseModel):
    item_name: Optional[str] = None
    brand: Optional[str] = None
    size: Optional[str] = None
    category: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    total_price: Optional[float] = None


# ── Analytics ──────────────────────────────────────────
class CategorySpending(BaseModel):
    category: str
    total: float
    count: int
    color: str

class MonthlySpending(BaseModel):
    month: str             # e.g. "Mar 24"
    total: float
    categories: dict[str, float]

class SpendingAnalytics(BaseModel):
    category_breakdown: List[CategorySpending]
    monthly_trends: List[MonthlySpending]
    total_spent: float
    average_per_receipt: float
    receipt_count: int
    top_category: str

class CategoryItemDetail(BaseModel):
    item_name: str
    product_code: Optional[str] = None
    brand: Optional[str] = None
    total_price: float
    quantity: float
    store_name: Optional[str] = None
    receipt_date: Optional[str] = None
