"""Conversation state models for the orchestrator.

Provides:

- :class:`UserState` - the per-user onboarding / session states.
- :class:`ExpenseDraft` - a not-yet-saved expense (receipt drafts).
- :data:`PendingAction` - tagged union of what a user is being asked to
  resolve: an :class:`OCRConfirmation`, an :class:`OCRAmount` or a
  :class:`CurrencyChange`.  It is persisted as JSON on the user row and
  always travels together with the matching ``awaiting_*`` state.
- :class:`RecentMessageCache` - bounded set of recently seen webhook
  message IDs used to drop duplicate deliveries.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import date
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

# ── User states ───────────────────────────────────────────────────────────────


class UserState(StrEnum):
    """States in the per-user conversation state machine."""

    NEW = "new"
    AWAITING_CURRENCY = "awaiting_currency"
    AWAITING_BUDGET = "awaiting_budget"
    ACTIVE = "active"
    AWAITING_OCR_CONFIRMATION = "awaiting_ocr_confirmation"
    AWAITING_OCR_AMOUNT = "awaiting_ocr_amount"
    AWAITING_CURRENCY_CHANGE = "awaiting_currency_change"


# ── Drafts ────────────────────────────────────────────────────────────────────


class ImageReference(BaseModel):
    """Where an uploaded receipt image lives."""

    provider: str
    ref: str
    url: str


class ExpenseDraft(BaseModel):
    """An expense waiting for the user before it is written to the ledger."""

    item: str
    price: Decimal = Decimal("0.00")
    currency: str | None = None
    confidence: float | None = None
    expense_date: date | None = None
    image: ImageReference | None = None


# ── Pending actions (tagged union) ────────────────────────────────────────────


class OCRConfirmation(BaseModel):
    """A medium-confidence receipt draft awaiting YES/NO."""

    kind: Literal["ocr_confirmation"] = "ocr_confirmation"
    draft: ExpenseDraft

    @property
    def state(self) -> UserState:
        return UserState.AWAITING_OCR_CONFIRMATION


class OCRAmount(BaseModel):
    """A low-confidence receipt draft that only has a name; needs an amount."""

    kind: Literal["ocr_amount"] = "ocr_amount"
    draft: ExpenseDraft

    @property
    def state(self) -> UserState:
        return UserState.AWAITING_OCR_AMOUNT


class CurrencyChange(BaseModel):
    """A staged preferred-currency change awaiting YES/NO."""

    kind: Literal["currency_change"] = "currency_change"
    currency: str

    @property
    def state(self) -> UserState:
        return UserState.AWAITING_CURRENCY_CHANGE


PendingAction = Annotated[
    OCRConfirmation | OCRAmount | CurrencyChange,
    Field(discriminator="kind"),
]

_pending_adapter: TypeAdapter[PendingAction] = TypeAdapter(PendingAction)


def pending_action_to_json(action: OCRConfirmation | OCRAmount | CurrencyChange) -> dict[str, Any]:
    """Serialize a pending action for the ``users.pending_action`` column."""
    return action.model_dump(mode="json")


def pending_action_from_json(
    data: dict[str, Any] | None,
) -> OCRConfirmation | OCRAmount | CurrencyChange | None:
    """Rebuild a pending action from its stored JSON (``None`` passes through)."""
    if not data:
        return None
    return _pending_adapter.validate_python(data)


# ── Duplicate delivery suppression ────────────────────────────────────────────


class RecentMessageCache:
    """Remembers the most recent *capacity* message IDs.

    Not thread-safe; the webhook runs on a single asyncio
    event loop.
    """

    def __init__(self, capacity: int = 1000) -> None:
        self._capacity = capacity
        self._seen: OrderedDict[str, None] = OrderedDict()

    def seen(self, message_id: str) -> bool:
        """Record *message_id*; return ``True`` if it was already recorded."""
        if message_id in self._seen:
            self._seen.move_to_end(message_id)
            return True
        self._seen[message_id] = None
        if len(self._seen) > self._capacity:
            self._seen.popitem(last=False)
        return False

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._seen
