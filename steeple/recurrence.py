"""Expand recurring event series into concrete occurrences.

Everything here is pure: no clock reads, no I/O. Expansion walks the
series in its own wall-clock zone, so an event at 19:00 stays at 19:00
across daylight-saving changes while occurrence ids stay stable.
"""

from __future__ import annotations

import calendar
import logging
from collections.abc import Iterator
from datetime import date, datetime, timedelta
from typing import Optional

from dateutil import tz
from dateutil.relativedelta import relativedelta

from steeple.config import LOOKAHEAD_DAYS
from steeple.models import (
    PERIODIC_RULES,
    EventOccurrence,
    EventSeries,
    MonthlyByDate,
    MonthlyByWeekday,
    NoRecurrence,
)

logger = logging.getLogger(__name__)

# How far ahead next_occurrence() looks when the series has no horizon.
NEXT_SEARCH_DAYS = 366


def _aware(value: datetime) -> datetime:
    """Treat naive window bounds as UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=tz.UTC)
    return value


def _to_sunday_based(py_weekday: int) -> int:
    """Python Monday=0 -> Sunday=0."""
    return (py_weekday + 1) % 7


def nth_weekday_of_month(year: int, month: int, week: int, weekday: int) -> date:
    """Return the ``week``-th ``weekday`` (0=Sunday) of a month.

    ``week = 5`` falls back to the last such weekday when the month has
    only four of them. Weeks 1-4 always exist.
    """
    first = date(year, month, 1)
    offset = (weekday - _to_sunday_based(first.weekday())) % 7
    day = 1 + offset + (week - 1) * 7
    days_in_month = calendar.monthrange(year, month)[1]
    if day > days_in_month:
        day -= 7
    return date(year, month, day)


def clamped_day_of_month(year: int, month: int, day_of_month: int) -> date:
    """Return ``day_of_month`` in the given month, clamped to its last day."""
    return date(year, month, min(day_of_month, calendar.monthrange(year, month)[1]))


def _make_occurrence(series: EventSeries, start: datetime) -> EventOccurrence:
    return EventOccurrence(
        series_id=series.id,
        title=series.title,
        start=start,
        end=start + series.duration,
        location=series.location,
        description=series.description,
    )


def _upper_bound(series: EventSeries, window_end: datetime) -> datetime:
    if series.horizon_end is not None and series.horizon_end < window_end:
        return series.horizon_end
    return window_end


def _expand_periodic(
    series: EventSeries, step_days: int, window_start: datetime, bound: datetime
) -> Iterator[EventOccurrence]:
    # Skip whole steps before the window; the -1 absorbs DST offsets.
    skip = max(0, (window_start - series.start).days // step_days - 1)
    k = skip
    while True:
        start = series.start + timedelta(days=step_days * k)
        if start > bound:
            return
        if start >= window_start:
            yield _make_occurrence(series, start)
        k += 1


def _month_date(rule, year: int, month: int) -> date:
    if isinstance(rule, MonthlyByWeekday):
        return nth_weekday_of_month(year, month, rule.week, rule.weekday)
    return clamped_day_of_month(year, month, rule.day_of_month)


def _expand_monthly(
    series: EventSeries, window_start: datetime, bound: datetime
) -> Iterator[EventOccurrence]:
    zone = series.start.tzinfo
    lower = max(series.start, window_start)
    cursor = lower.astimezone(zone).date().replace(day=1)
    # Start one month early so an occurrence late in the previous local
    # month that lands in the window after zone conversion is not missed.
    cursor -= relativedelta(months=1)
    wall_time = series.start.time()

    while True:
        day = _month_date(series.rule, cursor.year, cursor.month)
        start = datetime.combine(day, wall_time, tzinfo=zone)
        if start > bound:
            return
        if start >= lower:
            yield _make_occurrence(series, start)
        cursor += relativedelta(months=1)


def expand(
    series: EventSeries, window_start: datetime, window_end: datetime
) -> Iterator[EventOccurrence]:
    """Lazily yield the occurrences of ``series`` inside the inclusive window.

    Generation also stops at ``series.horizon_end``. The generator holds
    no state beyond its arguments, so calling it again with the same
    inputs yields identical occurrences and ids.
    """
    window_start = _aware(window_start)
    window_end = _aware(window_end)
    bound = _upper_bound(series, window_end)
    if bound < window_start:
        return

    rule = series.rule
    if isinstance(rule, NoRecurrence):
        if window_start <= series.start <= bound:
            yield _make_occurrence(series, series.start)
        return
    if isinstance(rule, PERIODIC_RULES):
        yield from _expand_periodic(series, rule.step_days, window_start, bound)
        return
    if isinstance(rule, (MonthlyByWeekday, MonthlyByDate)):
        yield from _expand_monthly(series, window_start, bound)
        return
    raise TypeError(f"Unsupported recurrence rule: {rule!r}")


def occurrences_for(
    series: EventSeries, now: datetime, lookahead_days: int = LOOKAHEAD_DAYS
) -> list[EventOccurrence]:
    """Materialize occurrences from ``now`` through the lookahead window."""
    now = _aware(now)
    return list(expand(series, now, now + timedelta(days=lookahead_days)))


def next_occurrence(series: EventSeries, now: datetime) -> Optional[EventOccurrence]:
    """Return the first occurrence starting at or after ``now``, if any."""
    now = _aware(now)
    search_end = max(series.start, now) + timedelta(days=NEXT_SEARCH_DAYS)
    return next(expand(series, now, search_end), None)
