"""
Date normalizer — turns a printed receipt date into ISO ``YYYY-MM-DD``.

Receipts from different chains print dates in different orders and OCR does
not disambiguate, so the result is a best-effort default the user confirms
on the review screen.  It must never drive aggregation-critical logic on its
own.

The policy is an ordered rule table.  Each rule takes the split parts and
returns a ``date`` or ``None``; the first rule to return a date wins.  A rule
that would produce an impossible calendar date (month 13, Feb 30) simply
doesn't match and evaluation continues.

  rule                 applies when                     reads as
  ───────────────────  ───────────────────────────────  ──────────
  year_first_four      p1 has 4 digits                  YYYY/MM/DD
  year_last_four       p3 has 4 digits                  DD/MM/YYYY, MM/DD/YYYY at Walmart
  loblaw_prior         all short, Loblaw-family store   YY/MM/DD
  walmart_prior        all short, Walmart store         MM/DD/YY
  year_last_near_now   all short, p3 within 1 of now    DD/MM/YY
  year_first_by_range  all short, p1 > 12, p2 <= 12     YY/MM/DD

Wherever day and month are both 12 or less the order is a guess (DD/MM,
the Canadian-locale default) and the resolution is flagged not confident.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

from services.store_service import is_loblaw_family, is_walmart_family

logger = logging.getLogger("basket.dates")

ISO_PREFIX_RE = re.compile(r'^(\d{4}-\d{2}-\d{2})')
SPLIT_RE = re.compile(r'[/\-.]')


@dataclass(frozen=True)
class DateContext:
    store_name: Optional[str]
    today: date


@dataclass(frozen=True)
class DateResolution:
    iso: str
    rule: str
    confident: bool


def expand_year(two_digit: int) -> int:
    """Two-digit years below 50 are 2000s, the rest 1900s."""
    return 2000 + two_digit if two_digit < 50 else 1900 + two_digit


def _make(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _day_month(p1: int, p2: int) -> tuple[int, int]:
    """(day, month) for the two non-year parts.

    p1 > 12 can only be a day; likewise p2 > 12.  When both are ≤ 12 the
    order is ambiguous and DD/MM wins.
    """
    if p2 > 12 and p1 <= 12:
        return p2, p1
    return p1, p2


# ── Rules ─────────────────────────────────────────────────────────────────────

def _year_first_four(parts: list[str], ctx: DateContext) -> Optional[date]:
    if len(parts[0]) != 4:
        return None
    return _make(int(parts[0]), int(parts[1]), int(parts[2]))


def _year_last_four(parts: list[str], ctx: DateContext) -> Optional[date]:
    if len(parts[2]) != 4:
        return None
    p1, p2, year = int(parts[0]), int(parts[1]), int(parts[2])
    if p1 > 12:
        return _make(year, p2, p1)
    if is_walmart_family(ctx.store_name):
        return _make(year, p1, p2)
    day, month = _day_month(p1, p2)
    return _make(year, month, day)


def _all_short(parts: list[str]) -> bool:
    return all(len(p) <= 2 for p in parts)


def _loblaw_prior(parts: list[str], ctx: DateContext) -> Optional[date]:
    if not _all_short(parts) or not is_loblaw_family(ctx.store_name):
        return None
    return _make(expand_year(int(parts[0])), int(parts[1]), int(parts[2]))


def _walmart_prior(parts: list[str], ctx: DateContext) -> Optional[date]:
    if not _all_short(parts) or not is_walmart_family(ctx.store_name):
        return None
    return _make(expand_year(int(parts[2])), int(parts[0]), int(parts[1]))


def _year_last_near_now(parts: list[str], ctx: DateContext) -> Optional[date]:
    if not _all_short(parts):
        return None
    p1, p2, p3 = (int(p) for p in parts)
    if abs(p3 - ctx.today.year % 100) > 1:
        return None
    day, month = _day_month(p1, p2)
    return _make(expand_year(p3), month, day)


def _year_first_by_range(parts: list[str], ctx: DateContext) -> Optional[date]:
    if not _all_short(parts):
        return None
    p1, p2, p3 = (int(p) for p in parts)
    if p1 > 12 and p2 <= 12:
        return _make(expand_year(p1), p2, p3)
    return None


Rule = Callable[[list[str], DateContext], Optional[date]]

# (name, rule, confident)
DATE_RULES: list[tuple[str, Rule, bool]] = [
    ("year_first_four",     _year_first_four,     True),
    ("year_last_four",      _year_last_four,      True),
    ("loblaw_prior",        _loblaw_prior,        True),
    ("walmart_prior",       _walmart_prior,       True),
    ("year_last_near_now",  _year_last_near_now,  False),
    ("year_first_by_range", _year_first_by_range, False),
]


def _split(raw: str) -> Optional[list[str]]:
    """Drop any trailing time component and split into three numeric parts."""
    token = raw.strip().split()[0] if raw.strip() else ""
    parts = SPLIT_RE.split(token)
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    if len(parts[1]) > 2 or any(len(p) == 3 or len(p) > 4 for p in parts):
        return None
    return parts


def _is_ambiguous_day_month(parts: list[str], ctx: DateContext) -> bool:
    """True when the Canadian DD/MM default was the only thing deciding."""
    if len(parts[2]) != 4 or is_walmart_family(ctx.store_name):
        return False
    p1, p2 = int(parts[0]), int(parts[1])
    return p1 <= 12 and p2 <= 12 and p1 != p2


def resolve_date(
    raw: Optional[str],
    store_name: Optional[str] = None,
    today: Optional[date] = None,
) -> DateResolution:
    today = today or date.today()
    fallback = DateResolution(today.isoformat(), "fallback", False)

    if not raw or not raw.strip():
        return fallback

    m = ISO_PREFIX_RE.match(raw.strip())
    if m:
        return DateResolution(m.group(1), "iso_prefix", True)

    parts = _split(raw)
    if parts is None:
        logger.debug("Unparseable receipt date %r — using today", raw)
        return fallback

    ctx = DateContext(store_name=store_name, today=today)
    for name, rule, confident in DATE_RULES:
        result = rule(parts, ctx)
        if result is not None:
            if name == "year_last_four" and _is_ambiguous_day_month(parts, ctx):
                confident = False
            return DateResolution(result.isoformat(), name, confident)

    logger.debug("No date rule matched %r (store=%r) — using today", raw, store_name)
    return fallback


def normalize_date(
    raw: Optional[str],
    store_name: Optional[str] = None,
    today: Optional[date] = None,
) -> str:
    """Best-effort ISO date for a printed receipt date; today when unreadable."""
    return resolve_date(raw, store_name, today).iso
