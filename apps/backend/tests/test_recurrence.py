from __future__ import annotations

from datetime import date, timedelta

import pytest

from cashflow.models import Recurrence
from cashflow.services.recurrence import add_months, iter_occurrences, next_occurrence


def test_monthly_clamps_to_leap_day():
    assert next_occurrence(date(2024, 1, 31), Recurrence.MONTHLY) == date(2024, 2, 29)


def test_monthly_clamps_to_last_day_in_common_year():
    assert next_occurrence(date(2023, 1, 31), Recurrence.MONTHLY) == date(2023, 2, 28)


@pytest.mark.parametrize("ref", [date(2024, 1, 1), date(2024, 2, 29), date(1999, 12, 31)])
def test_none_never_has_next(ref):
    assert next_occurrence(ref, Recurrence.NONE) is None


def test_fixed_cadences():
    ref = date(2024, 11, 30)
    assert next_occurrence(ref, Recurrence.DAILY) == date(2024, 12, 1)
    assert next_occurrence(ref, Recurrence.WEEKLY) == date(2024, 12, 7)
    assert next_occurrence(ref, Recurrence.QUARTERLY) == date(2025, 2, 28)
    assert next_occurrence(ref, Recurrence.YEARLY) == date(2025, 11, 30)


def test_yearly_from_leap_day():
    assert next_occurrence(date(2024, 2, 29), Recurrence.YEARLY) == date(2025, 2, 28)


def test_accepts_plain_string_values():
    assert next_occurrence(date(2024, 3, 10), "WEEKLY") == date(2024, 3, 17)


@pytest.mark.parametrize(
    "recurrence",
    [Recurrence.DAILY, Recurrence.WEEKLY, Recurrence.MONTHLY, Recurrence.QUARTERLY, Recurrence.YEARLY],
)
def test_result_is_strictly_after_reference(recurrence):
    ref = date(2023, 1, 1)
    for _ in range(400):
        nxt = next_occurrence(ref, recurrence)
        assert nxt is not None and nxt > ref
        ref = ref + timedelta(days=1)


def test_add_months_across_year_boundary():
    assert add_months(date(2023, 11, 30), 3) == date(2024, 2, 29)
    assert add_months(date(2024, 12, 15), 1) == date(2025, 1, 15)


def test_iter_occurrences_is_chained_and_inclusive():
    dates = list(iter_occurrences(date(2024, 1, 31), Recurrence.MONTHLY, date(2024, 4, 29)))
    # 각 회차는 직전 회차 기준으로 계산됨
    assert dates == [date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 29), date(2024, 4, 29)]


def test_iter_occurrences_respects_end_date():
    dates = list(
        iter_occurrences(date(2024, 1, 1), Recurrence.WEEKLY, date(2024, 12, 31), end_date=date(2024, 1, 20))
    )
    assert dates == [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15)]


def test_iter_occurrences_none_yields_start_once():
    assert list(iter_occurrences(date(2024, 5, 1), Recurrence.NONE, date(2030, 1, 1))) == [date(2024, 5, 1)]
