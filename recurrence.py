"""Due-date arithmetic for recurring fixed expenses."""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from enum import Enum


class ExpenseFrequency(str, Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    biannual = "biannual"
    annual = "annual"


FREQUENCY_MONTHS: dict[ExpenseFrequency, int] = {
    ExpenseFrequency.monthly: 1,
    ExpenseFrequency.quarterly: 3,
    ExpenseFrequency.biannual: 6,
    ExpenseFrequency.annual: 12,
}

LOOKAHEAD_DAYS = 7

_MONTH_NAMES_ES = [
    "enero",
    "febrero",
    "marzo",
    "abril",
    "mayo",
    "junio",
    "julio",
    "agosto",
    "septiembre",
    "octubre",
    "noviembre",
    "diciembre",
]


def add_months(anchor: date, months: int) -> date:
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance_due_date(due: date, frequency: ExpenseFrequency | str) -> date:
    """Return the next due date after ``due`` for the given frequency."""

    return add_months(due, FREQUENCY_MONTHS[ExpenseFrequency(frequency)])


def due_window(today: date, days: int = LOOKAHEAD_DAYS) -> date:
    """Latest due date that is generated ahead of time."""

    return today + timedelta(days=days)


def month_bounds(anchor: date) -> tuple[date, date]:
    last_day = calendar.monthrange(anchor.year, anchor.month)[1]
    return anchor.replace(day=1), anchor.replace(day=last_day)


def spanish_month_label(anchor: date) -> str:
    return f"{_MONTH_NAMES_ES[anchor.month - 1]} {anchor.year}"


def generated_description(description: str, due: date) -> str:
    return f"{description} - {spanish_month_label(due)}"
