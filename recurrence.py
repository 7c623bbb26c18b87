import logging
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from config import get_settings
from models import IntervalUnit, MonthDayPolicy, Outflow

logger = logging.getLogger(__name__)

MAX_OCCURRENCE_SCAN = 10_000


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(
    base: date,
    months: int,
    *,
    desired_day: int,
    policy: MonthDayPolicy,
) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1

    dim = days_in_month(year, month)
    if policy == MonthDayPolicy.skip and desired_day > dim:
        max_skips = 24  # at most two years of short months
        skips = 0
        while desired_day > dim and skips < max_skips:
            total_months += 1
            year = base.year + total_months // 12
            month = total_months % 12 + 1
            dim = days_in_month(year, month)
            skips += 1

        if skips >= max_skips:
            raise ValueError(
                f"Cannot find suitable month for day {desired_day} after {max_skips} attempts"
            )

    return date(year, month, min(desired_day, dim))


def calculate_next_date(outflow: Outflow, from_date: date) -> date:
    """Next scheduled (unadjusted) due date after ``from_date``."""
    if outflow.interval_unit == IntervalUnit.day:
        return from_date + timedelta(days=outflow.interval_count)
    if outflow.interval_unit == IntervalUnit.week:
        return from_date + timedelta(weeks=outflow.interval_count)
    if outflow.interval_unit == IntervalUnit.month:
        anchor_day = (
            from_date.day
            if outflow.month_day_policy == MonthDayPolicy.carry_forward
            else outflow.anchor_date.day
        )
        return _add_months(
            from_date,
            outflow.interval_count,
            desired_day=anchor_day,
            policy=outflow.month_day_policy,
        )
    return _add_months(
        from_date,
        12 * outflow.interval_count,
        desired_day=outflow.anchor_date.day,
        policy=outflow.month_day_policy,
    )


def skip_weekend(day: date) -> date:
    while day.weekday() >= 5:
        day += timedelta(days=1)
    return day


def due_dates_between(outflow: Outflow, start: date, end: date) -> list[date]:
    """Due dates in ``[start, end)``; weekend shifting never moves the schedule itself."""
    due_dates: list[date] = []
    scheduled = outflow.anchor_date
    for _ in range(MAX_OCCURRENCE_SCAN):
        if outflow.end_date and scheduled > outflow.end_date:
            break
        due = skip_weekend(scheduled) if outflow.skip_weekends else scheduled
        if due >= end:
            break
        if due >= start:
            due_dates.append(due)
        following = calculate_next_date(outflow, scheduled)
        if following <= scheduled:
            break
        scheduled = following
    else:
        logger.warning(
            f"due_date_scan_limit: outflow_id={outflow.id} start={start} end={end}"
        )
    return due_dates
