"""
InspectOS Recurrence Evaluator — turns a template's frequency + selector into dates.

Rules are small frozen dataclasses, one per frequency. ``occurrences()`` is
pure: no clock, no database, same input → same output. It is safe to call
again for an overlapping window; deduplication against existing tasks is
the generation engine's job.

Usage:
    from inspectos.scheduling.recurrence import build_rule, occurrences

    rule = build_rule("weekly", weekly_day=0)          # Mondays
    occurrences(rule, date(2025, 1, 1), date(2025, 1, 31))
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, List, Optional, Union

from inspectos.engine.errors import InvalidRecurrenceSpec


@dataclass(frozen=True)
class DailyRule:
    pass


@dataclass(frozen=True)
class WeeklyRule:
    weekday: int  # 0 = Monday … 6 = Sunday


@dataclass(frozen=True)
class MonthlyRule:
    day: int


@dataclass(frozen=True)
class YearlyRule:
    month: int
    day: int


RecurrenceRule = Union[DailyRule, WeeklyRule, MonthlyRule, YearlyRule]

# Longest length each month can have (February counted as leap)
_MAX_MONTH_DAYS = (31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31)


def _require(value: Optional[int], field: str, low: int, high: int, frequency: str) -> int:
    if value is None:
        raise InvalidRecurrenceSpec(
            f"{frequency} recurrence requires '{field}'",
            frequency=frequency,
            validation_errors=[f"{field}: required"],
        )
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise InvalidRecurrenceSpec(
            f"{field}={value!r} out of range [{low}, {high}] for {frequency} recurrence",
            frequency=frequency,
            validation_errors=[f"{field}: must be between {low} and {high}"],
        )
    return value


def build_rule(
    frequency: str,
    weekly_day: Optional[int] = None,
    monthly_day: Optional[int] = None,
    yearly_month: Optional[int] = None,
    yearly_day: Optional[int] = None,
) -> RecurrenceRule:
    """
    Validate a frequency + selectors and return the matching rule.
    Selectors that do not belong to the frequency are ignored.

    Raises:
        InvalidRecurrenceSpec: unknown frequency, or its selector is missing / out of range.
    """
    if frequency == "daily":
        return DailyRule()
    if frequency == "weekly":
        return WeeklyRule(_require(weekly_day, "weekly_day", 0, 6, frequency))
    if frequency == "monthly":
        return MonthlyRule(_require(monthly_day, "monthly_day", 1, 31, frequency))
    if frequency == "yearly":
        month = _require(yearly_month, "yearly_month", 1, 12, frequency)
        day = _require(yearly_day, "yearly_day", 1, _MAX_MONTH_DAYS[month - 1], frequency)
        return YearlyRule(month, day)
    raise InvalidRecurrenceSpec(
        f"Unknown frequency '{frequency}'",
        frequency=frequency,
        validation_errors=["frequency: must be daily, weekly, monthly or yearly"],
    )


def rule_from_template(template: Any) -> RecurrenceRule:
    """Build the rule for a CheckTemplate (or anything with the same attributes)."""
    return build_rule(
        template.frequency,
        weekly_day=getattr(template, "weekly_day", None),
        monthly_day=getattr(template, "monthly_day", None),
        yearly_month=getattr(template, "yearly_month", None),
        yearly_day=getattr(template, "yearly_day", None),
    )


def occurrences(rule: Any, window_start: date, window_end: date) -> List[date]:
    """
    All dates in [window_start, window_end] on which ``rule`` fires, ascending.

    ``rule`` may be a RecurrenceRule or a template-like object, in which case
    its selectors are validated first.

    - monthly: a day beyond the month's length falls on the month's last day
    - yearly: Feb 29 is skipped in non-leap years
    """
    if not isinstance(rule, (DailyRule, WeeklyRule, MonthlyRule, YearlyRule)):
        rule = rule_from_template(rule)

    if window_start > window_end:
        return []

    if isinstance(rule, DailyRule):
        span = (window_end - window_start).days
        return [window_start + timedelta(days=i) for i in range(span + 1)]

    if isinstance(rule, WeeklyRule):
        first = window_start + timedelta(days=(rule.weekday - window_start.weekday()) % 7)
        result = []
        current = first
        while current <= window_end:
            result.append(current)
            current += timedelta(days=7)
        return result

    if isinstance(rule, MonthlyRule):
        result = []
        year, month = window_start.year, window_start.month
        while (year, month) <= (window_end.year, window_end.month):
            last_day = calendar.monthrange(year, month)[1]
            candidate = date(year, month, min(rule.day, last_day))
            if window_start <= candidate <= window_end:
                result.append(candidate)
            month += 1
            if month > 12:
                year, month = year + 1, 1
        return result

    result = []
    for year in range(window_start.year, window_end.year + 1):
        if rule.month == 2 and rule.day == 29 and not calendar.isleap(year):
            continue
        candidate = date(year, rule.month, rule.day)
        if window_start <= candidate <= window_end:
            result.append(candidate)
    return result
