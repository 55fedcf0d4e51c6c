"""Spreadsheet export of a user's expenses.

:func:`resolve_export_period` reads the period from the request text
("this month", "this year", otherwise everything) and
:func:`render_expenses_xlsx` renders the rows with openpyxl.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from openpyxl import Workbook
from openpyxl.styles import Font

from spendbot.expenses.currency import days_in_month, month_key, to_cents
from spendbot.ledger.models import Expense

logger = logging.getLogger(__name__)

XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

COLUMNS = ("Number", "Date", "Item", "Price", "Currency")

# Substrings that ask for the spreadsheet (common misspellings included).
EXPORT_PHRASES: tuple[str, ...] = (
    "send expense info",
    "give excel file",
    "give my expense data",
    "expense in excel",
    "expnese in excel",
    "expense in sheet",
    "expnese in sheet",
    "excel sheet",
    "google sheets",
    "monthly spend data",
    "full expense data",
    "all expense",
    "export",
    "this month",
    "this year",
)


@dataclass(frozen=True)
class ExportPeriod:
    """Date range and attachment name for an export request."""

    label: str
    filename: str
    date_from: date | None = None
    date_to: date | None = None


def is_export_request(text: str) -> bool:
    """True if *text* contains one of :data:`EXPORT_PHRASES`."""
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in EXPORT_PHRASES)


def resolve_export_period(text: str, today: date) -> ExportPeriod:
    """Pick the export range from the request text."""
    lowered = (text or "").lower()
    if "this month" in lowered:
        key = month_key(today)
        first = today.replace(day=1)
        last = today.replace(day=days_in_month(today))
        return ExportPeriod(
            label=f"{today:%B %Y}",
            filename=f"expenses_{key}.xlsx",
            date_from=first,
            date_to=last,
        )
    if "this year" in lowered:
        return ExportPeriod(
            label=str(today.year),
            filename=f"expenses_{today.year}.xlsx",
            date_from=date(today.year, 1, 1),
            date_to=date(today.year, 12, 31),
        )
    return ExportPeriod(label="all time", filename="expenses_all.xlsx")


def format_number(number: int) -> str:
    """Reference number as shown to users: ``#001``, ``#1234``."""
    return f"#{number:03d}"


def render_expenses_xlsx(records: Iterable[Expense]) -> bytes:
    """Render *records* as a one-sheet ``.xlsx`` workbook.

    Columns: Number (``#001``), Date (``YYYY-MM-DD``), Item, Price (two
    decimals), Currency.
    """
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Expenses"
    sheet.append(list(COLUMNS))
    for cell in sheet[1]:
        cell.font = Font(bold=True)

    count = 0
    for record in records:
        sheet.append(
            [
                format_number(record.number),
                record.expense_date.isoformat(),
                record.item,
                f"{to_cents(record.price):.2f}",
                record.currency,
            ]
        )
        count += 1

    for column, width in zip("ABCDE", (10, 12, 32, 12, 10)):
        sheet.column_dimensions[column].width = width

    buffer = io.BytesIO()
    workbook.save(buffer)
    logger.debug("Rendered %d expenses to xlsx (%d bytes)", count, buffer.tell())
    return buffer.getvalue()
