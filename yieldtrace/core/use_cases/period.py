"""
Calendar arithmetic for the selectable periods.
"""
from datetime import date, datetime, timedelta, tzinfo
from typing import Optional

from yieldtrace.core.entities.queries import PeriodType

# Earliest date the protocol has any history for
ALL_TIME_START = date(2020, 1, 1)


def today_in(tz: tzinfo) -> date:
    return datetime.now(tz).date()


def period_start_date(period: PeriodType, today: date) -> date:
    if period == PeriodType.ONE_WEEK:
        return today - timedelta(days=7)
    if period == PeriodType.ONE_MONTH:
        return today - timedelta(days=30)
    if period == PeriodType.ONE_YEAR:
        try:
            return today.replace(year=today.year - 1)
        except ValueError:
            # Feb 29 -> Feb 28 of the previous year
            return today.replace(year=today.year - 1, day=28)
    if period == PeriodType.ALL:
        return ALL_TIME_START
    raise ValueError(f"Unknown period: {period}")


def effective_start_date(period_start: date, earliest_deposit: Optional[date]) -> date:
    """Positions opened inside the period start counting from their first deposit."""
    if earliest_deposit is not None and earliest_deposit > period_start:
        return earliest_deposit
    return period_start


def period_days(period_start: date, today: date, earliest_deposit: Optional[date] = None) -> int:
    start = effective_start_date(period_start, earliest_deposit)
    return max(1, (today - start).days)
