"""Add, correct-last, edit-by-number and delete-by-number.

Every operation writes through :mod:`spendbot.ledger.repository`, then
recomputes the month summary from storage so the reply always shows the
same shape (see :func:`spendbot.bot.formatters.format_reconciliation`).

User-visible failures are raised as :class:`ExpenseNotFoundError` and
:class:`ExpenseFormatError`; the orchestrator turns them into replies.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from spendbot.agent.state import ImageReference
from spendbot.expenses.currency import to_cents
from spendbot.expenses.parser import parse_amount, parse_expense_text
from spendbot.ledger import repository
from spendbot.ledger.budget import BudgetSummary, build_summary
from spendbot.ledger.models import Expense

logger = logging.getLogger(__name__)

# Trailing words ("edit 150 taka") are ignored; "edit" alone is not a price.
_PRICE_EDIT_RE = re.compile(r"^edit\s+(?P<amount>\d+(?:[.,]\d+)?)\b", re.IGNORECASE)


class ExpenseNotFoundError(LookupError):
    """The referenced expense does not exist for this user."""

    def __init__(self, number: int | None = None) -> None:
        self.number = number
        super().__init__(
            f"Expense #{number} not found" if number is not None else "No expense found"
        )


class ExpenseFormatError(ValueError):
    """The command text could not be read as an expense or price edit."""


class ExpenseAction(StrEnum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ExpenseSnapshot:
    """Values of an expense at the time of the operation."""

    number: int
    item: str
    price: Decimal
    currency: str
    expense_date: date
    image_url: str | None = None

    @classmethod
    def of(cls, expense: Expense) -> ExpenseSnapshot:
        return cls(
            number=expense.number,
            item=expense.item,
            price=to_cents(expense.price),
            currency=expense.currency,
            expense_date=expense.expense_date,
            image_url=expense.image_url,
        )


@dataclass(frozen=True)
class ReconciliationOutcome:
    action: ExpenseAction
    expense: ExpenseSnapshot
    summary: BudgetSummary
    #: Hosted image no longer referenced by any row; delete it after commit.
    released_image_ref: str | None = None


# ── Add ──────────────────────────────────────────────────────────────────────


async def add_expense(
    session: AsyncSession,
    user_id: str,
    *,
    item: str,
    price: Decimal,
    currency: str,
    expense_date: date,
    today: date,
    image: ImageReference | None = None,
) -> ReconciliationOutcome:
    """Number, persist and summarize a new expense.

    *currency* must already be the user's preferred currency; the price is
    rounded to cents here.
    """
    number = await repository.next_expense_number(session, user_id)
    expense = await repository.create_expense(
        session,
        user_id=user_id,
        number=number,
        item=item,
        price=to_cents(price),
        currency=currency,
        expense_date=expense_date,
        image_provider=image.provider if image else None,
        image_ref=image.ref if image else None,
        image_url=image.url if image else None,
    )
    logger.info(
        "Saved expense #%03d for %s: %s %s %s",
        number, user_id, item, expense.price, currency,
    )
    summary = await build_summary(
        session, user_id, anchor=expense_date, today=today, currency=currency,
    )
    return ReconciliationOutcome(ExpenseAction.ADDED, ExpenseSnapshot.of(expense), summary)


# ── Correct last ─────────────────────────────────────────────────────────────


async def correct_last_expense(
    session: AsyncSession,
    user_id: str,
    correction: str,
    *,
    currency: str,
    today: date,
) -> ReconciliationOutcome:
    """Overwrite the most recently *created* expense with *correction*.

    The record gets the new item and price, the user's current currency and
    today's date.

    Raises:
        ExpenseFormatError: *correction* is not an ``"<item> <amount>"`` text.
        ExpenseNotFoundError: The user has no expenses.
    """
    parsed = parse_expense_text(correction)
    if parsed is None:
        raise ExpenseFormatError(correction)

    expense = await repository.get_last_created_expense(session, user_id)
    if expense is None:
        raise ExpenseNotFoundError()

    await repository.update_expense(
        session,
        expense,
        item=parsed.item,
        price=parsed.price,
        currency=currency,
        expense_date=today,
    )
    logger.info("Corrected expense #%03d for %s -> %s %s", expense.number, user_id, parsed.item, parsed.price)
    summary = await build_summary(
        session, user_id, anchor=expense.expense_date, today=today, currency=currency,
    )
    return ReconciliationOutcome(ExpenseAction.UPDATED, ExpenseSnapshot.of(expense), summary)


# ── Edit / delete by number ──────────────────────────────────────────────────


async def _require(session: AsyncSession, user_id: str, number: int) -> Expense:
    expense = await repository.get_expense_by_number(session, user_id, number)
    if expense is None:
        raise ExpenseNotFoundError(number)
    return expense


async def edit_expense_by_number(
    session: AsyncSession,
    user_id: str,
    number: int,
    rest: str,
    *,
    currency: str,
    today: date,
) -> ReconciliationOutcome:
    """Apply ``#<number> <rest>``.

    ``rest`` of the form ``edit <amount>`` changes only the price; anything
    else is re-parsed as ``"<item> <amount>"`` and replaces item and price
    (and stamps the user's current currency).  The expense date is kept.

    Raises:
        ExpenseNotFoundError: No expense with that number.
        ExpenseFormatError: *rest* matches neither form.
    """
    expense = await _require(session, user_id, number)

    price_edit = _PRICE_EDIT_RE.match(rest.strip())
    if price_edit:
        amount = parse_amount(price_edit.group("amount"))
        if amount is None:
            raise ExpenseFormatError(rest)
        await repository.update_expense(session, expense, price=amount)
    else:
        parsed = parse_expense_text(rest)
        if parsed is None:
            raise ExpenseFormatError(rest)
        await repository.update_expense(
            session, expense, item=parsed.item, price=parsed.price, currency=currency,
        )

    logger.info("Edited expense #%03d for %s", number, user_id)
    summary = await build_summary(
        session, user_id, anchor=expense.expense_date, today=today, currency=currency,
    )
    return ReconciliationOutcome(ExpenseAction.UPDATED, ExpenseSnapshot.of(expense), summary)


async def delete_expense_by_number(
    session: AsyncSession,
    user_id: str,
    number: int,
    *,
    currency: str,
    today: date,
) -> ReconciliationOutcome:
    """Delete expense *number* and report the post-deletion totals.

    The hosted receipt image is not touched here: its reference comes back
    as ``released_image_ref`` so the caller can delete it once the row
    deletion has been committed.

    Raises:
        ExpenseNotFoundError: No expense with that number.
    """
    expense = await _require(session, user_id, number)
    snapshot = ExpenseSnapshot.of(expense)
    image_ref = expense.image_ref

    await repository.delete_expense(session, expense)
    logger.info("Deleted expense #%03d for %s", number, user_id)

    summary = await build_summary(
        session, user_id, anchor=snapshot.expense_date, today=today, currency=currency,
    )
    return ReconciliationOutcome(
        ExpenseAction.DELETED, snapshot, summary, released_image_ref=image_ref or None,
    )
