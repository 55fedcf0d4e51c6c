"""Currency detection and budget-derived daily figures.

:func:`detect_currency` maps free text ("taka", "usd", "Dollars") to an ISO
4217 code using a fixed, ordered alias table.  Substring matches are resolved
by table order, so country-qualified aliases ("pakistani rupee") are listed
before the generic words they contain ("rupee").

The daily-limit helpers take ``today`` explicitly so callers (and tests) can
pin the calendar.
"""

from __future__ import annotations

import calendar
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")

# Ordered (alias, code) pairs.  Order is the substring tie-break: first wins.
CURRENCY_ALIASES: tuple[tuple[str, str], ...] = (
    # Country-qualified names first.
    ("bangladeshi taka", "BDT"),
    ("nigerian naira", "NGN"),
    ("pakistani rupees", "PKR"),
    ("pakistani rupee", "PKR"),
    ("sri lankan rupees", "LKR"),
    ("sri lankan rupee", "LKR"),
    ("indian rupees", "INR"),
    ("indian rupee", "INR"),
    ("canadian dollars", "CAD"),
    ("canadian dollar", "CAD"),
    ("australian dollars", "AUD"),
    ("australian dollar", "AUD"),
    ("singaporean dollar", "SGD"),
    ("singapore dollar", "SGD"),
    ("hong kong dollar", "HKD"),
    ("american dollar", "USD"),
    ("us dollar", "USD"),
    ("british pound", "GBP"),
    ("japanese yen", "JPY"),
    ("chinese yuan", "CNY"),
    ("korean won", "KRW"),
    ("thai baht", "THB"),
    ("malaysian ringgit", "MYR"),
    ("philippine peso", "PHP"),
    ("indonesian rupiah", "IDR"),
    ("vietnamese dong", "VND"),
    # ISO codes.
    ("usd", "USD"),
    ("eur", "EUR"),
    ("gbp", "GBP"),
    ("inr", "INR"),
    ("bdt", "BDT"),
    ("ngn", "NGN"),
    ("pkr", "PKR"),
    ("lkr", "LKR"),
    ("cad", "CAD"),
    ("aud", "AUD"),
    ("jpy", "JPY"),
    ("cny", "CNY"),
    ("krw", "KRW"),
    ("thb", "THB"),
    ("myr", "MYR"),
    ("sgd", "SGD"),
    ("hkd", "HKD"),
    ("php", "PHP"),
    ("idr", "IDR"),
    ("vnd", "VND"),
    ("aed", "AED"),
    # Common names and colloquialisms.
    ("dollars", "USD"),
    ("dollar", "USD"),
    ("euros", "EUR"),
    ("euro", "EUR"),
    ("european", "EUR"),
    ("pounds", "GBP"),
    ("pound", "GBP"),
    ("sterling", "GBP"),
    ("rupees", "INR"),
    ("rupee", "INR"),
    ("takas", "BDT"),
    ("taka", "BDT"),
    ("tk", "BDT"),
    ("nairas", "NGN"),
    ("naira", "NGN"),
    ("yen", "JPY"),
    ("yuan", "CNY"),
    ("rmb", "CNY"),
    ("won", "KRW"),
    ("baht", "THB"),
    ("ringgit", "MYR"),
    ("pesos", "PHP"),
    ("peso", "PHP"),
    ("rupiah", "IDR"),
    ("dong", "VND"),
    ("dirham", "AED"),
)

_ALIAS_TO_CODE: dict[str, str] = {}
for _alias, _code in CURRENCY_ALIASES:
    _ALIAS_TO_CODE.setdefault(_alias, _code)

KNOWN_CODES: frozenset[str] = frozenset(code for _, code in CURRENCY_ALIASES)

_ISO_TOKEN_RE = re.compile(r"\b[A-Z]{3}\b")

_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CNY": "¥",
    "INR": "₹",
    "BDT": "৳",
    "NGN": "₦",
    "PKR": "₨",
    "LKR": "₨",
}


def detect_currency(text: str) -> str | None:
    """Resolve a currency mention in *text* to a three-letter code.

    Tries, in order: an exact alias match of the whole trimmed text, the
    first alias (in :data:`CURRENCY_ALIASES` order) appearing anywhere in
    the text, then a bare uppercase ISO token that is a known code.

    Returns:
        The ISO code, or ``None`` when nothing matches.
    """
    if not text:
        return None

    normalized = text.strip().lower()
    if not normalized:
        return None

    exact = _ALIAS_TO_CODE.get(normalized)
    if exact is not None:
        return exact

    for alias, code in CURRENCY_ALIASES:
        if alias in normalized:
            return code

    for token in _ISO_TOKEN_RE.findall(text):
        if token in KNOWN_CODES:
            return token

    return None


def to_cents(amount: Decimal | float | int | str) -> Decimal:
    """Round a monetary amount to two decimals (half-up)."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(amount: Decimal | float | int, code: str) -> str:
    """Render ``amount`` with the currency symbol when one is known.

    >>> format_currency(Decimal("5"), "USD")
    '$5.00'
    >>> format_currency(Decimal("5"), "AED")
    '5.00 AED'
    """
    rendered = f"{to_cents(amount):.2f}"
    symbol = _SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{rendered}"
    return f"{rendered} {code}"


# ── Calendar helpers ──────────────────────────────────────────────────────────


def days_in_month(day: date) -> int:
    """Number of days in *day*'s calendar month."""
    return calendar.monthrange(day.year, day.month)[1]


def days_remaining_in_month(today: date, month: date | None = None) -> int:
    """Days left in *month* counting *today*; 0 once the month is over.

    *month* is any day inside the budget month and defaults to *today*.
    """
    anchor = month or today
    if (today.year, today.month) > (anchor.year, anchor.month):
        return 0
    if (today.year, today.month) < (anchor.year, anchor.month):
        return days_in_month(anchor)
    return days_in_month(anchor) - today.day + 1


def month_key(day: date) -> str:
    """``YYYY-MM`` key for the month containing *day*."""
    return f"{day.year:04d}-{day.month:02d}"


# ── Budget-derived figures ────────────────────────────────────────────────────


def get_daily_limit(monthly_budget: Decimal, today: date | None = None) -> Decimal:
    """Static daily allowance: budget spread evenly over the whole month."""
    today = today or date.today()
    return to_cents(Decimal(monthly_budget) / days_in_month(today))


def calculate_dynamic_daily_limit(
    remaining_budget: Decimal,
    today: date | None = None,
    month: date | None = None,
) -> Decimal:
    """Remaining budget spread over the days left in the month (today included).

    Returns ``0`` when the budget month has already ended.  A negative
    remaining budget yields a negative limit; the caller reports that as
    over budget.
    """
    today = today or date.today()
    days_left = days_remaining_in_month(today, month)
    if days_left <= 0:
        return Decimal("0.00")
    return to_cents(Decimal(remaining_budget) / days_left)
