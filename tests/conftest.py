"""Shared fixtures.

``ledger`` swaps every function in :mod:`spendbot.ledger.repository` for an
in-memory :class:`FakeLedger`, so orchestrator, budget and reconciliation
tests run without PostgreSQL.  Callers always go through the module
(``repository.func(...)``), so patching module attributes is enough.
"""

from __future__ import annotations

import itertools
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest

from spendbot.expenses.currency import to_cents
from spendbot.ledger import repository
from spendbot.ledger.models import Expense, MonthlyBudget, UserProfile


class FakeLedger:
    """Dict-backed stand-in for the repository module."""

    def __init__(self, default_currency: str = "USD") -> None:
        self.default_currency = default_currency
        self.users: dict[str, UserProfile] = {}
        self.expenses: list[Expense] = []
        self.counters: dict[str, int] = {}
        self.budgets: dict[tuple[str, str], MonthlyBudget] = {}
        self.conversation: list[tuple[str, str]] = []
        self.llm_calls: list[dict[str, Any]] = []
        self.failures: list[dict[str, Any]] = []
        self._clock = itertools.count()

    def _now(self) -> datetime:
        return datetime(2024, 1, 1) + timedelta(seconds=next(self._clock))

    # ── Seeding helpers ───────────────────────────────────────────────────

    def add_user(
        self,
        user_id: str,
        *,
        state: str = "active",
        currency: str = "USD",
        pending_action: dict[str, Any] | None = None,
    ) -> UserProfile:
        user = UserProfile(
            user_id=user_id, state=state, currency=currency, pending_action=pending_action,
        )
        self.users[user_id] = user
        return user

    def user(self, user_id: str) -> UserProfile:
        return self.users[user_id]

    def numbers(self, user_id: str) -> list[int]:
        return [e.number for e in self.expenses if e.user_id == user_id]

    # ── Conversation log ──────────────────────────────────────────────────

    async def save_conversation_message(self, session, user_id, message):
        self.conversation.append((user_id, message))

    # ── Users ─────────────────────────────────────────────────────────────

    async def get_or_create_user(self, session, user_id):
        if user_id not in self.users:
            self.add_user(user_id, state="new", currency=self.default_currency)
        return self.users[user_id]

    async def _upsert(self, user_id: str, **values: Any) -> None:
        user = await self.get_or_create_user(None, user_id)
        for name, value in values.items():
            setattr(user, name, str(value) if name == "state" else value)

    async def set_user_state(self, session, user_id, state):
        await self._upsert(user_id, state=state)

    async def set_user_currency(self, session, user_id, currency, *, state=None):
        values: dict[str, Any] = {"currency": currency}
        if state is not None:
            values["state"] = state
        await self._upsert(user_id, **values)

    async def set_pending_action(self, session, user_id, payload, state):
        await self._upsert(user_id, pending_action=payload, state=state)

    async def clear_pending_action(self, session, user_id):
        await self._upsert(user_id, pending_action=None, state="active")

    async def confirm_currency_change(self, session, user_id, currency):
        await self._upsert(user_id, currency=currency, pending_action=None, state="active")

    # ── Expenses ──────────────────────────────────────────────────────────

    async def next_expense_number(self, session, user_id):
        self.counters[user_id] = self.counters.get(user_id, 0) + 1
        return self.counters[user_id]

    async def create_expense(self, session, **fields):
        expense = Expense(**fields)
        expense.created_at = self._now()
        self.expenses.append(expense)
        return expense

    async def get_expense_by_number(self, session, user_id, number):
        for expense in self.expenses:
            if expense.user_id == user_id and expense.number == number:
                return expense
        return None

    async def get_last_created_expense(self, session, user_id):
        owned = [e for e in self.expenses if e.user_id == user_id]
        if not owned:
            return None
        return max(owned, key=lambda e: (e.created_at, e.number))

    async def update_expense(self, session, expense, **fields):
        for name, value in fields.items():
            setattr(expense, name, value)
        return expense

    async def delete_expense(self, session, expense):
        self.expenses.remove(expense)

    async def list_expenses(self, session, user_id, *, date_from=None, date_to=None):
        rows = [
            e for e in self.expenses
            if e.user_id == user_id
            and (date_from is None or e.expense_date >= date_from)
            and (date_to is None or e.expense_date <= date_to)
        ]
        return sorted(rows, key=lambda e: e.number)

    async def get_expenses_on(self, session, user_id, day):
        return await self.list_expenses(session, user_id, date_from=day, date_to=day)

    async def list_expenses_with_expired_images(self, session, before, *, limit=None):
        rows = sorted(
            (
                e for e in self.expenses
                if e.image_url and e.image_deleted_at is None and e.expense_date < before
            ),
            key=lambda e: (e.expense_date, e.user_id, e.number),
        )
        return rows if limit is None else rows[:limit]

    async def clear_expense_image(self, session, expense, deleted_at):
        expense.image_provider = None
        expense.image_ref = None
        expense.image_url = None
        expense.image_deleted_at = deleted_at
        return expense

    # ── Budgets ───────────────────────────────────────────────────────────

    async def get_monthly_budget(self, session, user_id, month):
        return self.budgets.get((user_id, month))

    async def upsert_monthly_budget(self, session, user_id, month, amount, currency):
        self.budgets[(user_id, month)] = MonthlyBudget(
            user_id=user_id, month=month, amount=to_cents(amount), currency=currency,
        )

    def set_budget(self, user_id: str, month: str, amount: str | Decimal, currency: str = "USD") -> None:
        self.budgets[(user_id, month)] = MonthlyBudget(
            user_id=user_id, month=month, amount=to_cents(amount), currency=currency,
        )

    # ── Observability ─────────────────────────────────────────────────────

    async def save_llm_call(self, session, **fields):
        self.llm_calls.append(fields)

    async def save_failure(self, session, **fields):
        self.failures.append(fields)


_PATCHED = (
    "save_conversation_message",
    "get_or_create_user",
    "set_user_state",
    "set_user_currency",
    "set_pending_action",
    "clear_pending_action",
    "confirm_currency_change",
    "next_expense_number",
    "create_expense",
    "get_expense_by_number",
    "get_last_created_expense",
    "update_expense",
    "delete_expense",
    "list_expenses",
    "get_expenses_on",
    "list_expenses_with_expired_images",
    "clear_expense_image",
    "get_monthly_budget",
    "upsert_monthly_budget",
    "save_llm_call",
    "save_failure",
)


@pytest.fixture
def ledger(monkeypatch: pytest.MonkeyPatch) -> FakeLedger:
    fake = FakeLedger()
    for name in _PATCHED:
        monkeypatch.setattr(repository, name, getattr(fake, name))
    return fake


@pytest.fixture
def session() -> MagicMock:
    """Placeholder session; the fake ledger never touches it."""
    return MagicMock(name="session")


@pytest.fixture
def today() -> date:
    return date(2024, 6, 10)
