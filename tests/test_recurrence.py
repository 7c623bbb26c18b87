from datetime import date

from models import IntervalUnit, MonthDayPolicy, Outflow
from recurrence import calculate_next_date, due_dates_between, skip_weekend


def _outflow(
    policy: MonthDayPolicy = MonthDayPolicy.snap_to_end,
    *,
    anchor: date = date(2024, 1, 31),
    unit: IntervalUnit = IntervalUnit.month,
    count: int = 1,
    skip_weekends: bool = False,
    end_date=None,
) -> Outflow:
    return Outflow(
        id=1,
        user_id=1,
        description="Rent",
        amount_cents=100_000,
        anchor_date=anchor,
        interval_unit=unit,
        interval_count=count,
        month_day_policy=policy,
        skip_weekends=skip_weekends,
        end_date=end_date,
        is_active=True,
    )


def test_calculate_next_date_snap_to_end():
    outflow = _outflow(MonthDayPolicy.snap_to_end)
    assert calculate_next_date(outflow, date(2024, 1, 31)) == date(2024, 2, 29)


def test_calculate_next_date_skip_policy():
    outflow = _outflow(MonthDayPolicy.skip)
    assert calculate_next_date(outflow, date(2024, 1, 31)) == date(2024, 3, 31)


def test_snap_to_end_returns_to_anchor_day():
    outflow = _outflow(MonthDayPolicy.snap_to_end)
    assert calculate_next_date(outflow, date(2024, 2, 29)) == date(2024, 3, 31)


def test_skip_weekend_moves_to_monday():
    assert skip_weekend(date(2024, 3, 30)) == date(2024, 4, 1)
    assert skip_weekend(date(2024, 4, 2)) == date(2024, 4, 2)


def test_weekend_shift_does_not_move_schedule():
    outflow = _outflow(anchor=date(2024, 3, 30), skip_weekends=True)
    # 2024-03-30 is a Saturday and 2024-06-30 a Sunday
    assert due_dates_between(outflow, date(2024, 3, 1), date(2024, 7, 1)) == [
        date(2024, 4, 1),
        date(2024, 4, 30),
        date(2024, 5, 30),
    ]


def test_due_dates_respect_end_date():
    outflow = _outflow(anchor=date(2024, 1, 15), end_date=date(2024, 3, 15))
    assert due_dates_between(outflow, date(2024, 1, 1), date(2025, 1, 1)) == [
        date(2024, 1, 15),
        date(2024, 2, 15),
        date(2024, 3, 15),
    ]


def test_due_dates_window_is_half_open():
    outflow = _outflow(anchor=date(2025, 1, 6), unit=IntervalUnit.week, count=2)
    assert due_dates_between(outflow, date(2025, 1, 6), date(2025, 2, 3)) == [
        date(2025, 1, 6),
        date(2025, 1, 20),
    ]
