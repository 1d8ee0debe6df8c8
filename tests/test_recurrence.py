from datetime import date

import pytest

from recurrence import (
    ExpenseFrequency,
    add_months,
    advance_due_date,
    due_window,
    generated_description,
    month_bounds,
    spanish_month_label,
)


@pytest.mark.parametrize(
    "frequency,expected",
    [
        ("monthly", date(2024, 2, 15)),
        ("quarterly", date(2024, 4, 15)),
        ("biannual", date(2024, 7, 15)),
        ("annual", date(2025, 1, 15)),
        (ExpenseFrequency.monthly, date(2024, 2, 15)),
    ],
)
def test_advance_due_date_by_frequency(frequency, expected):
    assert advance_due_date(date(2024, 1, 15), frequency) == expected


def test_add_months_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)


def test_unknown_frequency_is_rejected():
    with pytest.raises(ValueError):
        advance_due_date(date(2024, 1, 1), "weekly")


def test_due_window_looks_a_week_ahead():
    assert due_window(date(2024, 3, 28)) == date(2024, 4, 4)


def test_month_bounds():
    assert month_bounds(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))


def test_generated_description_uses_spanish_month():
    assert spanish_month_label(date(2024, 9, 1)) == "septiembre 2024"
    assert generated_description("Cuota autónomo", date(2024, 3, 5)) == "Cuota autónomo - marzo 2024"
