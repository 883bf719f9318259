"""
Reporting period resolution.

Turns FY / TERM / QTR into the concrete date range containing today. The
clock is injected so that aggregates are reproducible in tests.
"""

import calendar
import logging
from datetime import date
from typing import Any, Callable, Optional

from models import DateRange, ReportingPeriod


logger = logging.getLogger(__name__)

# School terms: Jan-Apr, May-Aug, Sep-Dec
TERM_LENGTH_MONTHS = 4


def parse_period(value: Any) -> ReportingPeriod:
    """Read a period code; missing or unknown values fall back to FY."""
    if isinstance(value, ReportingPeriod):
        return value
    if value is None or (isinstance(value, str) and not value.strip()):
        return ReportingPeriod.FY
    try:
        return ReportingPeriod(str(value).strip().upper())
    except ValueError:
        logger.warning(f"Unknown reporting period {value!r}, using FY")
        return ReportingPeriod.FY


def _month_start(year: int, month: int, offset: int = 0) -> date:
    """First day of the month ``offset`` months after (year, month)."""
    index = year * 12 + (month - 1) + offset
    return date(index // 12, index % 12 + 1, 1)


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _span(start: date, months: int) -> DateRange:
    last = _month_start(start.year, start.month, months - 1)
    return DateRange(start=start, end=_month_end(last.year, last.month))


class PeriodResolver:
    """Callable mapping a ReportingPeriod to the DateRange containing today."""

    def __init__(self, fiscal_year_start_month: int = 7, today: Optional[Callable[[], date]] = None):
        self.fiscal_year_start_month = fiscal_year_start_month
        self._today = today or date.today

    def fiscal_year(self, day: date) -> DateRange:
        start_month = self.fiscal_year_start_month
        year = day.year if day.month >= start_month else day.year - 1
        return _span(date(year, start_month, 1), 12)

    def term(self, day: date) -> DateRange:
        first_month = (day.month - 1) // TERM_LENGTH_MONTHS * TERM_LENGTH_MONTHS + 1
        return _span(date(day.year, first_month, 1), TERM_LENGTH_MONTHS)

    def fiscal_quarter(self, day: date) -> DateRange:
        offset = (day.month - self.fiscal_year_start_month) % 12
        fy_start = self.fiscal_year(day).start
        return _span(_month_start(fy_start.year, fy_start.month, offset // 3 * 3), 3)

    def resolve(self, period: Any, day: Optional[date] = None) -> DateRange:
        day = day or self._today()
        period = parse_period(period)
        if period == ReportingPeriod.TERM:
            return self.term(day)
        if period == ReportingPeriod.QTR:
            return self.fiscal_quarter(day)
        return self.fiscal_year(day)

    def __call__(self, period: Any) -> DateRange:
        return self.resolve(period)
