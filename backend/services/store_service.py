"""
Store classification — the one place that turns a free-text store name into
a canonical chain.

Three call sites depend on it:
  * the verified-product key (same SKU at different chains is tracked apart)
  * date-format priors (Loblaw banners print YY/MM/DD, Walmart prints MM/DD/YY)
  * the AI suggestion deny-list (banner names are never a product name)

Add a new chain to STORE_PATTERNS and all three pick it up.
"""
import re
from enum import Enum
from typing import Optional


class StoreChain(str, Enum):
    SUPERSTORE = "superstore"
    LOBLAWS = "loblaws"
    NO_FRILLS = "no_frills"
    ZEHRS = "zehrs"
    FORTINOS = "fortinos"
    PROVIGO = "provigo"
    INDEPENDENT = "independent"
    WALMART = "walmart"
    COSTCO = "costco"
    SOBEYS = "sobeys"
    METRO = "metro"
    FOOD_BASICS = "food_basics"
    FRESHCO = "freshco"
    SAVE_ON_FOODS = "save_on_foods"
    SAFEWAY = "safeway"
    T_AND_T = "t_and_t"
    OTHER = "other"


# Matched case-insensitively as substrings of the store name, first match
# wins.  Order matters: "real canadian superstore" must hit SUPERSTORE before
# anything shorter could claim it.
STORE_PATTERNS: list[tuple[str, StoreChain, str]] = [
    # keyword                   chain                      display name
    ("superstore",              StoreChain.SUPERSTORE,     "Real Canadian Superstore"),
    ("real canadian",           StoreChain.SUPERSTORE,     "Real Canadian Superstore"),
    ("no frills",               StoreChain.NO_FRILLS,      "No Frills"),
    ("nofrills",                StoreChain.NO_FRILLS,      "No Frills"),
    ("loblaw",                  StoreChain.LOBLAWS,        "Loblaws"),
    ("zehrs",                   StoreChain.ZEHRS,          "Zehrs"),
    ("fortinos",                StoreChain.FORTINOS,       "Fortinos"),
    ("provigo",                 StoreChain.PROVIGO,        "Provigo"),
    ("independent grocer",      StoreChain.INDEPENDENT,    "Your Independent Grocer"),
    ("walmart",                 StoreChain.WALMART,        "Walmart"),
    ("wal-mart",                StoreChain.WALMART,        "Walmart"),
    ("wal mart",                StoreChain.WALMART,        "Walmart"),
    ("costco",                  StoreChain.COSTCO,         "Costco"),
    ("sobeys",                  StoreChain.SOBEYS,         "Sobeys"),
    ("food basics",             StoreChain.FOOD_BASICS,    "Food Basics"),
    ("freshco",                 StoreChain.FRESHCO,        "FreshCo"),
    ("save-on-foods",           StoreChain.SAVE_ON_FOODS,  "Save-On-Foods"),
    ("save on foods",           StoreChain.SAVE_ON_FOODS,  "Save-On-Foods"),
    ("safeway",                 StoreChain.SAFEWAY,        "Safeway"),
    ("t&t",                     StoreChain.T_AND_T,        "T&T Supermarket"),
    ("metro",                   StoreChain.METRO,          "Metro"),
]

LOBLAW_FAMILY = {
    StoreChain.SUPERSTORE, StoreChain.LOBLAWS, StoreChain.NO_FRILLS,
    StoreChain.ZEHRS, StoreChain.FORTINOS, StoreChain.PROVIGO,
    StoreChain.INDEPENDENT,
}
WALMART_FAMILY = {StoreChain.WALMART}

# Banner / house-brand strings.  An AI suggestion containing one of these is
# a store name, not a product name, and is rejected.
RETAILER_BRAND_DENYLIST: tuple[str, ...] = (
    "superstore",
    "real canadian",
    "loblaws",
    "no frills",
    "walmart",
    "wal-mart",
    "great value",
    "costco",
    "kirkland",
    "sobeys",
    "independent grocer",
)


def classify_store(name: Optional[str]) -> StoreChain:
    """Map a free-text store name to its canonical chain (OTHER if unknown)."""
    if not name:
        return StoreChain.OTHER
    lower = name.lower()
    for keyword, chain, _display in STORE_PATTERNS:
        if keyword in lower:
            return chain
    return StoreChain.OTHER


def chain_key(name: Optional[str]) -> str:
    """Canonical string used as half of the verified-product key.

    Known chains collapse to their enum value.  Independent stores keep their
    own (whitespace-collapsed, lowercased) name so they don't share a bucket.
    """
    chain = classify_store(name)
    if chain is not StoreChain.OTHER:
        return chain.value
    collapsed = re.sub(r"\s+", " ", (name or "").strip().lower())
    return collapsed or "unknown"


def is_loblaw_family(name: Optional[str]) -> bool:
    return classify_store(name) in LOBLAW_FAMILY


def is_walmart_family(name: Optional[str]) -> bool:
    return classify_store(name) in WALMART_FAMILY


def contains_retailer_brand(text: str) -> bool:
    lower = text.lower()
    return any(banner in lower for banner in RETAILER_BRAND_DENYLIST)


def detect_store_from_text(text: str) -> Optional[str]:
    """Scan the full OCR text for known chain keywords.  Returns display name or None."""
    lower = text.lower()
    for keyword, _chain, display in STORE_PATTERNS:
        if keyword in lower:
            return display
    return None
