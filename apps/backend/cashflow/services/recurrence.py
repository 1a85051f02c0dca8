from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Iterator

from cashflow.models import Recurrence


_MONTH_STEPS: dict[Recurrence, int] = {
    Recurrence.MONTHLY: 1,
    Recurrence.QUARTERLY: 3,
    Recurrence.YEARLY: 12,
}

_DAY_STEPS: dict[Recurrence, int] = {
    Recurrence.DAILY: 1,
    Recurrence.WEEKLY: 7,
}


def add_months(reference: date, months: int) -> date:
    """Calendar-aware month shift; clamps to the last valid day of the target month."""
    month_index = reference.month - 1 + months
    year = reference.year + month_index // 12
    month = month_index % 12 + 1
    days_in_month = calendar.monthrange(year, month)[1]
    return date(year, month, min(reference.day, days_in_month))


def next_occurrence(reference: date, recurrence: Recurrence | str) -> date | None:
    """Next candidate date after ``reference``, or ``None`` for non-recurring templates."""
    recurrence = Recurrence(recurrence)
    if recurrence is Recurrence.NONE:
        return None

    if recurrence in _DAY_STEPS:
        candidate = reference + timedelta(days=_DAY_STEPS[recurrence])
    else:
        candidate = add_months(reference, _MONTH_STEPS[recurrence])

    if candidate <= reference:
        raise RuntimeError(f"recurrence {recurrence.value} did not advance past {reference.isoformat()}")
    return candidate


def iter_occurrences(
    start: date,
    recurrence: Recurrence | str,
    until: date,
    *,
    end_date: date | None = None,
) -> Iterator[date]:
    """Yield ``start`` and each following occurrence up to ``until`` and ``end_date`` (both inclusive).

    Each step advances from the previous occurrence, so month-end clamping carries
    forward (Jan 31 -> Feb 29 -> Mar 29).
    """
    candidate: date | None = start
    while candidate is not None:
        if end_date is not None and candidate > end_date:
            return
        if candidate > until:
            return
        yield candidate
        candidate = next_occurrence(candidate, recurrence)
