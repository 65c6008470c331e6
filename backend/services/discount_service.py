"""
Discount classifier — decides whether a receipt line is a store adjustment
rather than a purchased product.  Pure, no I/O.
"""
import re
from typing import Optional

# Name patterns for adjustment lines.  A negative price is checked separately
# and always wins, since some discount lines carry product-looking names.
DISCOUNT_PATTERNS = [
    re.compile(r'^\s*ARCP', re.IGNORECASE),                          # Loblaw-banner price adjustment lines
    re.compile(r'discount', re.IGNORECASE),
    re.compile(r'savings', re.IGNORECASE),
    re.compile(r'^\s*-'),                                             # "-2.00 COUPON"
    re.compile(r'\(\s*\d+(?:\.\d+)?\s*%(?:\s*off)?\s*\)', re.IGNORECASE),  # "(20% off)", "(15%)"
]


def is_discount(name: Optional[str], total_price: Optional[float]) -> bool:
    if total_price is not None and total_price < 0:
        return True
    if not name:
        return False
    return any(p.search(name) for p in DISCOUNT_PATTERNS)
