"""Reply texts for WhatsApp.

WhatsApp renders ``*bold*`` and ``_italic_``; everything here is plain text
with those markers.  Every expense change (add / correct / edit / delete)
is rendered by :func:`format_reconciliation` so the summary block always
has the same shape.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING

from spendbot.expenses.currency import (
    days_remaining_in_month,
    format_currency,
    get_daily_limit,
)
from spendbot.expenses.export import format_number

if TYPE_CHECKING:
    from spendbot.agent.state import ExpenseDraft
    from spendbot.expenses.reconciliation import ReconciliationOutcome
    from spendbot.ledger.budget import BudgetSummary

CURRENCY_EXAMPLES = "USD, EUR, INR, BDT, Taka, Rupee, Dollar"

HELP_TEXT = (
    "*Quick Commands:*\n\n"
    "📝 *Add:* Grocery 100\n"
    "🔁 *Fix last:* No it will be Grocery 120\n"
    "✏️ *Edit:* #001 Edit 80\n"
    "✏️ *Replace:* #001 Coffee 80\n"
    "🗑️ *Delete:* #001 Delete\n"
    "💰 *Budget:* Budget 30000\n"
    "💱 *Currency:* Currency BDT\n"
    "📊 *Report:* Report (Excel file), or \"this month\" / \"this year\"\n"
    "📷 *Scan:* Send a receipt photo (optional caption like Food)\n"
    "🙋 *Help:* Help"
)

NOT_UNDERSTOOD_TEXT = "Didn't get that. Try: Grocery 100.\nWant quick commands? Reply: Help"

PARSE_FAILURE_TEXT = (
    "❌ Could not extract expense information. "
    'Please use format like "Potato 10 usd" or "Coffee 5.50"'
)

CORRECTION_FORMAT_TEXT = (
    "❌ Could not parse the correction. "
    "Please use format like 'no it will be Coffee 15'"
)

NO_EXPENSE_TO_CORRECT_TEXT = "❌ No recent expense found to correct."

EDIT_FORMAT_TEXT = (
    "❌ Couldn't read that edit.\n"
    "👉 #001 Edit 80 changes the price\n"
    "👉 #001 Coffee 80 replaces the entry\n"
    "👉 #001 Delete removes it"
)

INVALID_CURRENCY_TEXT = f"❌ Invalid currency. Examples: {CURRENCY_EXAMPLES}"

ONBOARDING_INVALID_CURRENCY_TEXT = f"Please enter a valid currency. Examples: {CURRENCY_EXAMPLES}"

CURRENCY_CHANGE_CANCELLED_TEXT = "Okay, cancelled the currency change."

CURRENCY_CHANGE_REPROMPT_TEXT = (
    "Please reply with YES to confirm or NO to cancel the currency change."
)

OCR_CONFIRM_REPROMPT_TEXT = "Please reply YES to save the receipt expense or NO to discard it."

OCR_DISCARDED_TEXT = (
    "Okay, discarded. Please send a clearer photo or type the expense, e.g. Grocery 100."
)

OCR_CLARIFY_TEXT = (
    "❌ I couldn't read that receipt. Please send a clearer photo, add a caption "
    'like "Groceries 25", or type the expense, e.g. Grocery 100.'
)

ONLY_IMAGES_TEXT = (
    "❌ Sorry, only images are supported for expense tracking. "
    "Please send an image of a receipt."
)

MEDIA_DOWNLOAD_FAILED_TEXT = "❌ I couldn't download that image. Please try sending it again."

UNSUPPORTED_MESSAGE_TEXT = (
    'Unsupported message type. Please send text like "Grocery 100" '
    "or an image of a receipt."
)

EXPORT_EMPTY_TEXT = "❌ No expenses found for the requested period."

GENERIC_ERROR_TEXT = "Sorry, there was an error processing your message. Please try again."

_TITLES = {
    "added": "*✅ Expense Added*",
    "updated": "*✅ Expense Updated*",
    "deleted": "*🗑️ Expense Deleted*",
}


# ── Onboarding ────────────────────────────────────────────────────────────────


def format_welcome(today: date) -> str:
    return (
        f"👋 Welcome to the {today:%B} Budget Challenge!\n"
        "First, tell me your preferred currency.\n"
        "👉 Example: AED, USD, INR"
    )


def format_currency_accepted(currency: str) -> str:
    return (
        f"Great! We'll use {currency} for your budget.\n"
        "Your monthly budget?\n"
        f"👉 Example: If your budget is 2000 {currency}, type 2000"
    )


def format_budget_reprompt(currency: str) -> str:
    return (
        "Please enter a valid number only.\n"
        f"👉 Example: If your budget is 2000 {currency}, type 2000"
    )


def format_budget_set(amount: Decimal, currency: str, today: date, *, first_time: bool) -> str:
    """Confirmation for a new or updated monthly budget, with the static daily limit."""
    text = (
        f"Budget set to {amount:.2f} {currency} for {today:%B %Y} ✅\n"
        f"Daily limit: {format_currency(get_daily_limit(amount, today), currency)}"
    )
    if first_time:
        text += "\n\nNow add your first expense. Example: Grocery 100"
    return text


# ── Currency change ───────────────────────────────────────────────────────────


def format_currency_change_prompt(new_currency: str, current_currency: str) -> str:
    return (
        f"Change currency to {new_currency}? Existing entries stay in {current_currency}.\n"
        "Reply YES to confirm or NO to cancel."
    )


def format_currency_changed(currency: str) -> str:
    return f"Done. New entries will use {currency}."


# ── Receipts ──────────────────────────────────────────────────────────────────


def format_ocr_confirmation(draft: ExpenseDraft, currency: str) -> str:
    """Ask the user to confirm a medium-confidence receipt reading."""
    return (
        "🧾 I read this receipt as:\n"
        f"*Item:* {draft.item}\n"
        f"*Price:* {format_currency(draft.price, currency)}\n\n"
        "Save it? Reply YES or NO."
    )


def format_ocr_amount_prompt(draft: ExpenseDraft) -> str:
    """Ask for the amount of a low-confidence receipt named by its caption."""
    return (
        f"🧾 I couldn't read the amount for *{draft.item}*.\n"
        f"Reply with just the amount (e.g. 250) or the full expense (e.g. {draft.item} 250).\n"
        "Reply NO to cancel."
    )


def format_ocr_amount_reprompt(draft: ExpenseDraft) -> str:
    return (
        f"Please reply with the amount for *{draft.item}* (e.g. 250), "
        "or NO to cancel."
    )


# ── Export ────────────────────────────────────────────────────────────────────


def format_export_sent(filename: str, count: int) -> str:
    return f"✅ Sent expense data as *{filename}* ({count} expenses)"


# ── Summary ───────────────────────────────────────────────────────────────────


def format_summary(summary: BudgetSummary, today: date) -> str:
    """Month block: total, count, budget, remaining and the daily verdict."""
    totals = summary.totals
    code = totals.currency
    lines = [
        f"*{totals.month} {totals.year} Summary*",
        f"*Total:* {format_currency(totals.total_amount, code)}",
        f"*Expenses:* {totals.expense_count} items",
    ]
    if totals.mixed_currency:
        lines.append("_Includes entries in other currencies (not converted)._")

    if summary.budget is None or summary.remaining is None:
        lines.append("_No budget set for this month. Reply: Budget 30000_")
        return "\n".join(lines)

    lines.append(f"*Budget:* {format_currency(summary.budget, code)}")
    lines.append(f"*Remaining:* {_signed(summary.remaining, code)}")

    if summary.over_budget:
        lines.append(f"⚠️ Over budget by {format_currency(-summary.remaining, code)}")
        return "\n".join(lines)

    days_left = days_remaining_in_month(today, _month_anchor(totals.month_key))
    if days_left <= 0 or summary.daily_limit is None:
        return "\n".join(lines)

    lines.append(
        f"*Daily limit:* {format_currency(summary.daily_limit, code)} "
        f"({days_left} day{'s' if days_left != 1 else ''} left)"
    )
    spent = format_currency(summary.today_spent, code)
    if summary.on_track:
        lines.append(f"✅ On track: spent {spent} today")
    else:
        lines.append(f"⚠️ Over today's limit: spent {spent} today")
    return "\n".join(lines)


def format_reconciliation(outcome: ReconciliationOutcome, today: date) -> str:
    """Uniform reply for add / correct / edit / delete."""
    expense = outcome.expense
    header = [
        _TITLES[str(outcome.action)],
        f"*{format_number(expense.number)}*",
        f"*Item:* {expense.item}",
        f"*Price:* {format_currency(expense.price, expense.currency)}",
        f"*Date:* {expense.expense_date.isoformat()}",
    ]
    return "\n".join(header) + "\n\n" + format_summary(outcome.summary, today)


def format_not_found(number: int) -> str:
    return f"❌ Expense {format_number(number)} not found."


def _signed(amount: Decimal, code: str) -> str:
    if amount < 0:
        return f"-{format_currency(-amount, code)}"
    return format_currency(amount, code)


def _month_anchor(key: str) -> date:
    year, month = key.split("-")
    return date(int(year), int(month), 1)
