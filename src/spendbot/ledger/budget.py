"""Monthly totals, remaining budget and the dynamic daily limit.

All figures are derived from persisted expense records on every call; no
running totals are cached, so add / edit / delete / correct all see the
same arithmetic.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from spendbot.expenses.currency import (
    calculate_dynamic_daily_limit,
    month_key,
    to_cents,
)
from spendbot.ledger import repository

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")


@dataclass(frozen=True)
class MonthlyTotal:
    """Aggregate spend for one calendar month."""

    month: str
    year: int
    month_key: str
    total_amount: Decimal
    currency: str
    expense_count: int
    #: True when some records in the month use a different currency than
    #: the reported one (currency changes are not retroactive).
    mixed_currency: bool = False


@dataclass(frozen=True)
class BudgetSummary:
    """Everything the summary block of a reply needs."""

    totals: MonthlyTotal
    budget: Decimal | None
    remaining: Decimal | None
    daily_limit: Decimal | None
    today_spent: Decimal

    @property
    def on_track(self) -> bool | None:
        """``today_spent <= daily_limit``; ``None`` when no budget is set."""
        if self.daily_limit is None:
            return None
        return self.today_spent <= self.daily_limit

    @property
    def over_budget(self) -> bool:
        return self.remaining is not None and self.remaining < 0


async def monthly_total(
    session: AsyncSession,
    user_id: str,
    anchor: date,
    currency: str,
) -> MonthlyTotal:
    """Sum the user's expenses dated in *anchor*'s month.

    Args:
        session: Active async database session.
        user_id: Owner of the expenses.
        anchor: Any day in the month to total.
        currency: Label to report (the user's current preferred currency).

    Returns:
        A :class:`MonthlyTotal`.  ``mixed_currency`` is set when any record
        was stored in another currency.
    """
    first = anchor.replace(day=1)
    last = anchor.replace(day=calendar.monthrange(anchor.year, anchor.month)[1])
    records = await repository.list_expenses(
        session, user_id, date_from=first, date_to=last,
    )

    total = sum((Decimal(r.price) for r in records), _ZERO)
    mixed = any(r.currency != currency for r in records)
    if mixed:
        logger.info(
            "User %s has mixed currencies in %s; reporting in %s",
            user_id, month_key(anchor), currency,
        )

    return MonthlyTotal(
        month=calendar.month_name[anchor.month],
        year=anchor.year,
        month_key=month_key(anchor),
        total_amount=to_cents(total),
        currency=currency,
        expense_count=len(records),
        mixed_currency=mixed,
    )


async def todays_spending(session: AsyncSession, user_id: str, today: date) -> Decimal:
    """Sum of prices of the user's expenses dated exactly *today*."""
    records = await repository.get_expenses_on(session, user_id, today)
    return to_cents(sum((Decimal(r.price) for r in records), _ZERO))


async def build_summary(
    session: AsyncSession,
    user_id: str,
    *,
    anchor: date,
    today: date,
    currency: str,
) -> BudgetSummary:
    """Compute the month summary shown after every expense change.

    ``remaining = budget - total`` and is never clamped; the dynamic daily
    limit spreads it over the days left in *anchor*'s month counting
    *today*.  Without a budget for the month, the budget-derived fields
    are ``None``.
    """
    totals = await monthly_total(session, user_id, anchor, currency)
    today_spent = await todays_spending(session, user_id, today)

    budget_row = await repository.get_monthly_budget(session, user_id, totals.month_key)
    if budget_row is None:
        return BudgetSummary(
            totals=totals,
            budget=None,
            remaining=None,
            daily_limit=None,
            today_spent=today_spent,
        )

    budget = to_cents(budget_row.amount)
    remaining = to_cents(budget - totals.total_amount)
    daily_limit = calculate_dynamic_daily_limit(remaining, today=today, month=anchor)
    return BudgetSummary(
        totals=totals,
        budget=budget,
        remaining=remaining,
        daily_limit=daily_limit,
        today_spent=today_spent,
    )
