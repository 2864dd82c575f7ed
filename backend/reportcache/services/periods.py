"""Reporting period helpers.

WHAT:
    Parses period ids, resolves them to date ranges, and maps a period to the
    same calendar period one year earlier.

WHY:
    Cache keys, platform fetch ranges and year-over-year lookups all need to
    agree on what "2025-10" or "2025-W42" means.

Period id formats:
    - Month: "YYYY-MM"      e.g. "2025-10"
    - ISO week: "YYYY-Www"  e.g. "2025-W42" (Monday to Sunday)
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from reportcache.errors import UnknownPeriodError
from reportcache.models import PeriodKindEnum

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")
_WEEK_RE = re.compile(r"^(\d{4})-W(\d{2})$")


@dataclass(frozen=True)
class Period:
    """A parsed, calendar-aligned reporting period."""
    period_id: str
    kind: PeriodKindEnum
    year: int
    number: int  # month (1-12) or ISO week (1-53)

    @property
    def start(self) -> date:
        if self.kind == PeriodKindEnum.monthly:
            return date(self.year, self.number, 1)
        return date.fromisocalendar(self.year, self.number, 1)

    @property
    def end(self) -> date:
        if self.kind == PeriodKindEnum.monthly:
            return date(self.year, self.number, calendar.monthrange(self.year, self.number)[1])
        return date.fromisocalendar(self.year, self.number, 7)


def _iso_weeks_in_year(year: int) -> int:
    # Dec 28th is always in the last ISO week of its year
    return date(year, 12, 28).isocalendar()[1]


def parse_period_id(period_id: str) -> Period:
    """Parse a period id.

    Raises:
        UnknownPeriodError: for custom ranges or malformed ids
    """
    match = _MONTH_RE.match(period_id or "")
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise UnknownPeriodError(f"Invalid month in period id: {period_id}")
        return Period(period_id=period_id, kind=PeriodKindEnum.monthly, year=year, number=month)

    match = _WEEK_RE.match(period_id or "")
    if match:
        year, week = int(match.group(1)), int(match.group(2))
        if not 1 <= week <= _iso_weeks_in_year(year):
            raise UnknownPeriodError(f"Invalid ISO week in period id: {period_id}")
        return Period(period_id=period_id, kind=PeriodKindEnum.weekly, year=year, number=week)

    raise UnknownPeriodError(f"Unrecognised period id: {period_id!r}")


def is_calendar_aligned(period_id: str) -> bool:
    """True for month and ISO-week period ids, False for anything else."""
    try:
        parse_period_id(period_id)
    except UnknownPeriodError:
        return False
    return True


def period_kind(period_id: str) -> PeriodKindEnum:
    return parse_period_id(period_id).kind


def month_period_id(day: date) -> str:
    return f"{day.year}-{day.month:02d}"


def week_period_id(day: date) -> str:
    iso_year, iso_week, _ = day.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def current_period_ids(today: Optional[date] = None) -> dict:
    """Return {"monthly": "YYYY-MM", "weekly": "YYYY-Www"} for today."""
    today = today or date.today()
    return {
        PeriodKindEnum.monthly.value: month_period_id(today),
        PeriodKindEnum.weekly.value: week_period_id(today),
    }


def fetch_date_range(period_id: str, today: Optional[date] = None) -> tuple[date, date]:
    """Date range to request from the platforms for a period.

    The end date is capped at today so an in-progress period never asks for
    future days.
    """
    period = parse_period_id(period_id)
    today = today or date.today()
    end = min(period.end, today)
    if end < period.start:
        end = period.start
    return period.start, end


def prior_year_period_id(period_id: str) -> Optional[str]:
    """Same calendar period one year earlier.

    "2025-10" -> "2024-10", "2025-W42" -> "2024-W42".
    Returns None when the prior year has no matching ISO week (week 53).

    Raises:
        UnknownPeriodError: for non calendar-aligned ids
    """
    period = parse_period_id(period_id)
    prior_year = period.year - 1
    if period.kind == PeriodKindEnum.monthly:
        return f"{prior_year}-{period.number:02d}"
    if period.number > _iso_weeks_in_year(prior_year):
        return None
    return f"{prior_year}-W{period.number:02d}"

