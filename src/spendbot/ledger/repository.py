"""Database repository for users, expenses, budgets and logs.

Provides async functions for persisting and querying SpendBot data.  Every
function takes the caller's :class:`AsyncSession`; the caller owns the
transaction (see :func:`spendbot.db.session.get_session`).

Writes that read-then-modify per-user state are done as single statements:
the expense counter is an ``INSERT … ON CONFLICT DO UPDATE … RETURNING`` and
user rows and monthly budgets are upserted by key.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from spendbot.config import settings
from spendbot.ledger.models import (
    ConversationLogEntry,
    Expense,
    ExpenseCounter,
    FailureLog,
    LLMCall,
    MonthlyBudget,
    UserProfile,
)

# ── Conversation log ─────────────────────────────────────────────────────────


async def save_conversation_message(
    session: AsyncSession,
    user_id: str,
    message: str,
) -> ConversationLogEntry:
    """Append an inbound message to the conversation log.

    Args:
        session: Active async database session (caller manages commit).
        user_id: WhatsApp sender ID.
        message: The message text exactly as received.

    Returns:
        The newly created :class:`ConversationLogEntry`.
    """
    entry = ConversationLogEntry(user_id=user_id, message=message)
    session.add(entry)
    await session.flush()
    return entry


# ── Users ────────────────────────────────────────────────────────────────────


async def get_or_create_user(session: AsyncSession, user_id: str) -> UserProfile:
    """Return the user's profile, creating it in state ``new`` on first contact."""
    stmt = (
        pg_insert(UserProfile)
        .values(user_id=user_id, state="new", currency=settings.default_currency)
        .on_conflict_do_nothing(index_elements=[UserProfile.user_id])
    )
    await session.execute(stmt)
    result = await session.execute(
        select(UserProfile).where(UserProfile.user_id == user_id)
    )
    return result.scalar_one()


async def _upsert_user(session: AsyncSession, user_id: str, **values: Any) -> None:
    stmt = pg_insert(UserProfile).values(user_id=user_id, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserProfile.user_id],
        set_={**values, "updated_at": func.now()},
    )
    await session.execute(stmt)


async def set_user_state(session: AsyncSession, user_id: str, state: str) -> None:
    """Move the user to *state* (upsert)."""
    await _upsert_user(session, user_id, state=state)


async def set_user_currency(
    session: AsyncSession,
    user_id: str,
    currency: str,
    *,
    state: str | None = None,
) -> None:
    """Persist the user's preferred currency, optionally moving state too."""
    values: dict[str, Any] = {"currency": currency}
    if state is not None:
        values["state"] = state
    await _upsert_user(session, user_id, **values)


async def set_pending_action(
    session: AsyncSession,
    user_id: str,
    payload: dict[str, Any],
    state: str,
) -> None:
    """Store a pending action together with its ``awaiting_*`` state."""
    await _upsert_user(session, user_id, pending_action=payload, state=state)


async def clear_pending_action(session: AsyncSession, user_id: str) -> None:
    """Drop any pending action and return the user to ``active``."""
    await _upsert_user(session, user_id, pending_action=None, state="active")


async def confirm_currency_change(
    session: AsyncSession,
    user_id: str,
    currency: str,
) -> None:
    """Commit a staged currency change: new currency, no pending action, ``active``."""
    await _upsert_user(
        session, user_id, currency=currency, pending_action=None, state="active",
    )


# ── Expense numbers ──────────────────────────────────────────────────────────


async def next_expense_number(session: AsyncSession, user_id: str) -> int:
    """Atomically increment and return the user's expense counter.

    The first call for a user returns ``1``.  Numbers are never handed out
    twice, even after deletions.
    """
    stmt = (
        pg_insert(ExpenseCounter)
        .values(user_id=user_id, seq=1)
        .on_conflict_do_update(
            index_elements=[ExpenseCounter.user_id],
            set_={"seq": ExpenseCounter.seq + 1},
        )
        .returning(ExpenseCounter.seq)
    )
    result = await session.execute(stmt)
    return int(result.scalar_one())


# ── Expenses ─────────────────────────────────────────────────────────────────


async def create_expense(
    session: AsyncSession,
    *,
    user_id: str,
    number: int,
    item: str,
    price: Decimal,
    currency: str,
    expense_date: date,
    image_provider: str | None = None,
    image_ref: str | None = None,
    image_url: str | None = None,
) -> Expense:
    """Insert a new expense record.

    Args:
        session: Active async database session (caller manages commit).
        user_id: Owner of the expense.
        number: Reference number from :func:`next_expense_number`.
        item: Item name.
        price: Price, already rounded to cents.
        currency: Three-letter currency code.
        expense_date: Calendar day of the expense.
        image_provider: Image host tag, when a receipt was uploaded.
        image_ref: Provider-specific locator for the uploaded image.
        image_url: Public URL of the uploaded image.

    Returns:
        The new :class:`Expense` (with ``id`` populated after flush).
    """
    expense = Expense(
        user_id=user_id,
        number=number,
        item=item,
        price=price,
        currency=currency,
        expense_date=expense_date,
        image_provider=image_provider,
        image_ref=image_ref,
        image_url=image_url,
    )
    session.add(expense)
    await session.flush()
    return expense


async def get_expense_by_number(
    session: AsyncSession,
    user_id: str,
    number: int,
) -> Expense | None:
    """Look up an expense by its per-user reference number."""
    stmt = select(Expense).where(Expense.user_id == user_id, Expense.number == number)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_last_created_expense(session: AsyncSession, user_id: str) -> Expense | None:
    """Return the user's most recently *created* expense (not highest number)."""
    stmt = (
        select(Expense)
        .where(Expense.user_id == user_id)
        .order_by(Expense.created_at.desc(), Expense.number.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def update_expense(
    session: AsyncSession,
    expense: Expense,
    **fields: Any,
) -> Expense:
    """Apply *fields* (item / price / currency / expense_date) to *expense*."""
    allowed = {"item", "price", "currency", "expense_date"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Cannot update expense fields: {sorted(unknown)}")
    for name, value in fields.items():
        setattr(expense, name, value)
    await session.flush()
    return expense


async def delete_expense(session: AsyncSession, expense: Expense) -> None:
    """Permanently remove *expense*.  Its number is never reused."""
    await session.execute(delete(Expense).where(Expense.id == expense.id))
    await session.flush()


async def list_expenses(
    session: AsyncSession,
    user_id: str,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[Expense]:
    """Return the user's expenses in the date range, ordered by number."""
    stmt = select(Expense).where(Expense.user_id == user_id)
    if date_from is not None:
        stmt = stmt.where(Expense.expense_date >= date_from)
    if date_to is not None:
        stmt = stmt.where(Expense.expense_date <= date_to)
    stmt = stmt.order_by(Expense.number)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_expenses_on(
    session: AsyncSession,
    user_id: str,
    day: date,
) -> list[Expense]:
    """Return the user's expenses dated exactly *day*."""
    return await list_expenses(session, user_id, date_from=day, date_to=day)


# ── Receipt image retention ──────────────────────────────────────────────────


async def list_expenses_with_expired_images(
    session: AsyncSession,
    before: date,
    *,
    limit: int | None = None,
) -> list[Expense]:
    """Expenses of every user dated before *before* that still reference a hosted image."""
    stmt = (
        select(Expense)
        .where(
            Expense.image_url.is_not(None),
            Expense.image_url != "",
            Expense.image_deleted_at.is_(None),
            Expense.expense_date < before,
        )
        .order_by(Expense.expense_date, Expense.user_id, Expense.number)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def clear_expense_image(
    session: AsyncSession,
    expense: Expense,
    deleted_at: datetime,
) -> Expense:
    """Drop the image reference from *expense* and stamp ``image_deleted_at``."""
    expense.image_provider = None
    expense.image_ref = None
    expense.image_url = None
    expense.image_deleted_at = deleted_at
    await session.flush()
    return expense


# ── Monthly budgets ──────────────────────────────────────────────────────────


async def get_monthly_budget(
    session: AsyncSession,
    user_id: str,
    month: str,
) -> MonthlyBudget | None:
    """Return the budget for ``YYYY-MM`` *month*, if one was set."""
    stmt = select(MonthlyBudget).where(
        MonthlyBudget.user_id == user_id,
        MonthlyBudget.month == month,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def upsert_monthly_budget(
    session: AsyncSession,
    user_id: str,
    month: str,
    amount: Decimal,
    currency: str,
) -> None:
    """Create or replace the user's budget for *month* (one row per month)."""
    stmt = pg_insert(MonthlyBudget).values(
        user_id=user_id, month=month, amount=amount, currency=currency,
    )
    stmt = stmt.on_conflict_do_update(
        constraint="uq_monthly_budgets_user_month",
        set_={"amount": amount, "currency": currency, "updated_at": func.now()},
    )
    await session.execute(stmt)


# ── Observability ────────────────────────────────────────────────────────────


async def save_llm_call(
    session: AsyncSession,
    *,
    provider: str,
    model: str,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
    latency_ms: int | None = None,
    is_fallback: bool = False,
    cost_usd: Decimal | None = None,
) -> LLMCall:
    """Log an LLM invocation to the ``llm_calls`` table."""
    llm_call = LLMCall(
        provider=provider,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        latency_ms=latency_ms,
        is_fallback=is_fallback,
        cost_usd=cost_usd,
    )
    session.add(llm_call)
    await session.flush()
    return llm_call


async def save_failure(
    session: AsyncSession,
    *,
    user_id: str,
    user_input: str,
    error_reply: str,
    traceback_str: str,
    failure_source: str,
) -> FailureLog:
    """Persist a failure record for later debugging.

    Args:
        session: Active async database session (caller manages commit).
        user_id: Sender whose message triggered the failure.
        user_input: The raw message text that caused the failure.
        error_reply: The error message sent back to the user.
        traceback_str: Full Python traceback as a string.
        failure_source: Short label for the failure site (e.g. ``"storage"``).

    Returns:
        The newly created :class:`FailureLog` instance.
    """
    row = FailureLog(
        user_id=user_id,
        user_input=user_input,
        error_reply=error_reply,
        traceback=traceback_str,
        failure_source=failure_source,
    )
    session.add(row)
    await session.flush()
    return row
