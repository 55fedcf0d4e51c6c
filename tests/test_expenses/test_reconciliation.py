"""Tests for add / correct-last / edit / delete reconciliation operations."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from spendbot.agent.state import ImageReference
from spendbot.expenses.reconciliation import (
    ExpenseAction,
    ExpenseFormatError,
    ExpenseNotFoundError,
    add_expense,
    correct_last_expense,
    delete_expense_by_number,
    edit_expense_by_number,
)

USER = "15550001"


async def _add(session, today, item="Coffee", price="120", **kwargs):
    return await add_expense(
        session,
        USER,
        item=item,
        price=Decimal(price),
        currency=kwargs.pop("currency", "BDT"),
        expense_date=kwargs.pop("expense_date", today),
        today=today,
        **kwargs,
    )


# ── Add ──────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_add_numbers_and_summarizes(ledger, session, today) -> None:
    ledger.set_budget(USER, "2024-06", "2000", "BDT")
    outcome = await _add(session, today)

    assert outcome.action is ExpenseAction.ADDED
    assert outcome.expense.number == 1
    assert outcome.expense.price == Decimal("120.00")
    assert outcome.summary.totals.total_amount == Decimal("120.00")
    assert outcome.summary.remaining == Decimal("1880.00")


@pytest.mark.asyncio
async def test_add_rounds_to_cents(ledger, session, today) -> None:
    outcome = await _add(session, today, price="9.999")
    assert outcome.expense.price == Decimal("10.00")


@pytest.mark.asyncio
async def test_sequence_monotonic_and_not_reused(ledger, session, today) -> None:
    for _ in range(3):
        await _add(session, today)
    assert ledger.numbers(USER) == [1, 2, 3]

    await delete_expense_by_number(session, USER, 2, currency="BDT", today=today)
    outcome = await _add(session, today)
    assert outcome.expense.number == 4
    assert ledger.numbers(USER) == [1, 3, 4]


@pytest.mark.asyncio
async def test_add_attaches_image(ledger, session, today) -> None:
    image = ImageReference(provider="cloudinary", ref="r1", url="https://img/r1")
    outcome = await _add(session, today, image=image)
    assert outcome.expense.image_url == "https://img/r1"
    assert ledger.expenses[0].image_ref == "r1"


# ── Correct last ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_correct_last_targets_most_recently_created(ledger, session, today) -> None:
    await _add(session, today, item="Coffee", price="10")
    await _add(session, today, item="Tea", price="5")

    outcome = await correct_last_expense(
        session, USER, "Green tea 7", currency="BDT", today=today,
    )
    assert outcome.action is ExpenseAction.UPDATED
    assert outcome.expense.number == 2
    assert outcome.expense.item == "Green tea"
    assert outcome.summary.totals.total_amount == Decimal("17.00")


@pytest.mark.asyncio
async def test_correct_last_restamps_date_and_currency(ledger, session, today) -> None:
    await _add(session, today, expense_date=date(2024, 6, 1), currency="USD")
    outcome = await correct_last_expense(
        session, USER, "Coffee 15", currency="BDT", today=today,
    )
    assert outcome.expense.expense_date == today
    assert outcome.expense.currency == "BDT"


@pytest.mark.asyncio
async def test_correct_last_format_error(ledger, session, today) -> None:
    await _add(session, today)
    with pytest.raises(ExpenseFormatError):
        await correct_last_expense(session, USER, "something", currency="BDT", today=today)


@pytest.mark.asyncio
async def test_correct_last_without_expenses(ledger, session, today) -> None:
    with pytest.raises(ExpenseNotFoundError) as exc_info:
        await correct_last_expense(session, USER, "Coffee 15", currency="BDT", today=today)
    assert exc_info.value.number is None


# ── Edit ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_price_only_edit(ledger, session, today) -> None:
    ledger.set_budget(USER, "2024-06", "2000", "BDT")
    await _add(session, today)

    outcome = await edit_expense_by_number(
        session, USER, 1, "Edit 150", currency="BDT", today=today,
    )
    assert outcome.expense.item == "Coffee"
    assert outcome.expense.price == Decimal("150.00")
    assert outcome.summary.remaining == Decimal("1850.00")


@pytest.mark.asyncio
async def test_price_only_edit_keeps_currency(ledger, session, today) -> None:
    await _add(session, today, currency="USD")
    outcome = await edit_expense_by_number(
        session, USER, 1, "edit 3", currency="BDT", today=today,
    )
    assert outcome.expense.currency == "USD"


@pytest.mark.asyncio
@pytest.mark.parametrize("rest", ["Edit 150 taka", "edit 150 BDT please"])
async def test_price_edit_ignores_trailing_words(ledger, session, today, rest: str) -> None:
    await _add(session, today, item="Coffee", price="120")
    outcome = await edit_expense_by_number(
        session, USER, 1, rest, currency="BDT", today=today,
    )
    assert outcome.expense.item == "Coffee"
    assert outcome.expense.price == Decimal("150.00")
    assert ledger.expenses[0].item == "Coffee"


@pytest.mark.asyncio
async def test_freeform_edit_replaces_item_and_price(ledger, session, today) -> None:
    await _add(session, today, expense_date=date(2024, 6, 2), currency="USD")
    outcome = await edit_expense_by_number(
        session, USER, 1, "Latte 80", currency="BDT", today=today,
    )
    assert outcome.expense.item == "Latte"
    assert outcome.expense.price == Decimal("80.00")
    assert outcome.expense.currency == "BDT"
    assert outcome.expense.expense_date == date(2024, 6, 2)


@pytest.mark.asyncio
async def test_edit_not_found(ledger, session, today) -> None:
    with pytest.raises(ExpenseNotFoundError) as exc_info:
        await edit_expense_by_number(session, USER, 7, "edit 5", currency="BDT", today=today)
    assert exc_info.value.number == 7


@pytest.mark.asyncio
@pytest.mark.parametrize("rest", ["edit abc", "nonsense", ""])
async def test_edit_format_error(ledger, session, today, rest: str) -> None:
    await _add(session, today)
    with pytest.raises(ExpenseFormatError):
        await edit_expense_by_number(session, USER, 1, rest, currency="BDT", today=today)


# ── Delete ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_delete_reports_post_deletion_totals(ledger, session, today) -> None:
    await _add(session, today, price="100")
    await _add(session, today, price="50")

    outcome = await delete_expense_by_number(session, USER, 1, currency="BDT", today=today)
    assert outcome.action is ExpenseAction.DELETED
    assert outcome.expense.number == 1
    assert outcome.summary.totals.total_amount == Decimal("50.00")
    assert outcome.summary.totals.expense_count == 1


@pytest.mark.asyncio
async def test_delete_not_found(ledger, session, today) -> None:
    with pytest.raises(ExpenseNotFoundError):
        await delete_expense_by_number(session, USER, 3, currency="BDT", today=today)


@pytest.mark.asyncio
async def test_delete_releases_hosted_image_without_deleting_it(ledger, session, today) -> None:
    image = ImageReference(provider="cloudinary", ref="r1", url="https://img/r1")
    await _add(session, today, image=image)

    outcome = await delete_expense_by_number(session, USER, 1, currency="BDT", today=today)
    assert outcome.action is ExpenseAction.DELETED
    assert outcome.released_image_ref == "r1"
    assert ledger.expenses == []


@pytest.mark.asyncio
async def test_delete_without_image_releases_nothing(ledger, session, today) -> None:
    await _add(session, today)
    outcome = await delete_expense_by_number(session, USER, 1, currency="BDT", today=today)
    assert outcome.released_image_ref is None
