"""Rolling-window date projection.

Visit dates are always computed from the subscription's start date
(``anchor + k * step``) rather than from the previous visit, so a monthly
subscription starting on Jan 31 lands on Feb 29, Mar 31, Apr 30 instead of
drifting to the 29th forever.
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta

from app.domain.subscriptions import statuses


def add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(value.day, last_day))


def window_end(today: date, months_ahead: int) -> date:
    return add_months(today, months_ahead)


def nth_date(frequency: str, anchor: date, index: int) -> date:
    step, months = statuses.step_for(frequency)
    if months:
        return add_months(anchor, months * index)
    return anchor + step * index


def _first_index_after(frequency: str, anchor: date, last_date: date) -> int:
    step, months = statuses.step_for(frequency)
    if last_date < anchor:
        return 0
    if months:
        elapsed = (last_date.year - anchor.year) * 12 + last_date.month - anchor.month
        index = max(elapsed // months, 0)
    else:
        index = (last_date - anchor).days // step.days
    while nth_date(frequency, anchor, index) <= last_date:
        index += 1
    return index


def project_dates(
    frequency: str,
    anchor: date,
    last_date: date | None,
    end: date,
) -> list[date]:
    """Return the visit dates after ``last_date`` up to and including ``end``.

    ``anchor`` is the first possible visit. When ``last_date`` is None the
    projection starts at the anchor itself.
    """

    index = 0 if last_date is None else _first_index_after(frequency, anchor, last_date)
    dates: list[date] = []
    while True:
        candidate = nth_date(frequency, anchor, index)
        if candidate > end:
            return dates
        dates.append(candidate)
        index += 1


def period_end(frequency: str, period_start: date) -> date:
    """Last day of the billing period that starts on ``period_start``."""

    return nth_date(frequency, period_start, 1) - timedelta(days=1)
