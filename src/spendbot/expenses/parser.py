"""Heuristic free-text expense parser.

The rule is deliberately simple: the *last* number in the message is the
price and the words before it name the item ("Coffee 10", "Uber to work
12.50").  When nothing precedes the number, the words after it are used
instead ("10 for coffee").  Decimal commas are accepted ("4,50").

The currency is only a hint; callers stamp the user's preferred currency.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, Field

from spendbot.expenses.currency import detect_currency, to_cents

_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")
_WHITESPACE_RE = re.compile(r"\s+")
# Currency symbols and separators left dangling around the item name.
_EDGE_CHARS = " \t-:=@$€£¥₹৳₦₨,;"


class ParsedExpense(BaseModel):
    """Candidate expense extracted from a text message."""

    item: str = Field(..., min_length=1, description="Item name, whitespace-collapsed.")
    price: Decimal = Field(..., ge=0, description="Price rounded to cents.")
    currency: str | None = Field(
        default=None,
        description="Currency mentioned in the text, if any.",
    )


def _clean_item(fragment: str) -> str:
    return _WHITESPACE_RE.sub(" ", fragment).strip(_EDGE_CHARS).strip()


def _to_decimal(token: str) -> Decimal | None:
    try:
        value = Decimal(token.replace(",", "."))
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def parse_expense_text(text: str | None) -> ParsedExpense | None:
    """Parse ``"<item> <price>"`` style text into a :class:`ParsedExpense`.

    Returns ``None`` when the text is empty, contains no number, the number
    does not parse to a finite value, or no item name is left over.
    """
    if not text or not text.strip():
        return None

    matches = list(_NUMBER_RE.finditer(text))
    if not matches:
        return None

    last = matches[-1]
    value = _to_decimal(last.group(0))
    if value is None:
        return None

    item = _clean_item(text[: last.start()])
    if not item:
        item = _clean_item(text[last.end():])
    if not item:
        return None

    return ParsedExpense(
        item=item,
        price=to_cents(value),
        currency=detect_currency(text),
    )


def parse_amount(text: str | None) -> Decimal | None:
    """Parse a free-standing amount such as ``"250"`` or ``"12,50"``.

    Returns ``None`` unless the whole message is a single non-negative number.
    """
    if not text:
        return None
    stripped = text.strip()
    if not _NUMBER_RE.fullmatch(stripped):
        return None
    value = _to_decimal(stripped)
    return to_cents(value) if value is not None else None


def render_expense_text(parsed: ParsedExpense) -> str:
    """Rebuild the canonical ``"<item> <price>"`` text for a parsed expense."""
    return f"{parsed.item} {parsed.price:.2f}"
