"""Source period catalog.

Every period type partitions the calendar into half-open UTC windows
``[start_at, end_at)`` identified by deterministic ids:

* monthly    ``2025M01``
* bi-monthly ``2025BM01A`` (day 1 up to the split day) / ``2025BM01B``
* weekly     ``2025W01`` (a week belongs to the year its start falls in)
* annual     ``2025A``
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import PeriodType, SourcePeriod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodSpan:
    id: str
    type: PeriodType
    year: int
    index: int
    start_at: datetime
    end_at: datetime
    month: Optional[int] = None
    half: Optional[int] = None
    week_number: Optional[int] = None

    def contains(self, instant: datetime) -> bool:
        return self.start_at <= instant < self.end_at


@dataclass(frozen=True)
class BoundaryIssue:
    period_id: str
    problem: str


def to_utc(value: datetime) -> datetime:
    """Normalize to a naive UTC datetime, the storage form for all instants."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _next_month(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1)
    return date(year, month + 1, 1)


def _first_week_start(year: int, week_start_day: int) -> date:
    jan1 = date(year, 1, 1)
    return jan1 + timedelta(days=(week_start_day - jan1.weekday()) % 7)


def _monthly(year: int, month: int) -> PeriodSpan:
    return PeriodSpan(
        id=f"{year}M{month:02d}",
        type=PeriodType.monthly,
        year=year,
        index=month,
        start_at=_midnight(date(year, month, 1)),
        end_at=_midnight(_next_month(year, month)),
        month=month,
    )


def _bi_monthly(year: int, month: int, half: int, split_day: int) -> PeriodSpan:
    if half == 1:
        start = date(year, month, 1)
        end = date(year, month, split_day)
    else:
        start = date(year, month, split_day)
        end = _next_month(year, month)
    return PeriodSpan(
        id=f"{year}BM{month:02d}{'A' if half == 1 else 'B'}",
        type=PeriodType.bi_monthly,
        year=year,
        index=(month - 1) * 2 + half,
        start_at=_midnight(start),
        end_at=_midnight(end),
        month=month,
        half=half,
    )


def _weekly(year: int, week_number: int, week_start_day: int) -> PeriodSpan:
    start = _first_week_start(year, week_start_day) + timedelta(
        weeks=week_number - 1
    )
    return PeriodSpan(
        id=f"{year}W{week_number:02d}",
        type=PeriodType.weekly,
        year=year,
        index=week_number,
        start_at=_midnight(start),
        end_at=_midnight(start + timedelta(days=7)),
        month=start.month,
        week_number=week_number,
    )


def _annual(year: int) -> PeriodSpan:
    return PeriodSpan(
        id=f"{year}A",
        type=PeriodType.annual,
        year=year,
        index=1,
        start_at=_midnight(date(year, 1, 1)),
        end_at=_midnight(date(year + 1, 1, 1)),
    )


def generate_year(
    year: int,
    period_type: PeriodType,
    *,
    week_start_day: Optional[int] = None,
    split_day: Optional[int] = None,
) -> list[PeriodSpan]:
    settings = get_settings()
    week_start_day = (
        settings.week_start_day if week_start_day is None else week_start_day
    )
    split_day = settings.bi_monthly_split_day if split_day is None else split_day

    if period_type == PeriodType.monthly:
        return [_monthly(year, m) for m in range(1, 13)]
    if period_type == PeriodType.bi_monthly:
        return [
            _bi_monthly(year, m, half, split_day)
            for m in range(1, 13)
            for half in (1, 2)
        ]
    if period_type == PeriodType.weekly:
        spans: list[PeriodSpan] = []
        next_year_start = _midnight(date(year + 1, 1, 1))
        week = 1
        while True:
            span = _weekly(year, week, week_start_day)
            if span.start_at >= next_year_start:
                break
            spans.append(span)
            week += 1
        return spans
    return [_annual(year)]


def generate_source_periods(
    start_year: int,
    end_year: int,
    *,
    types: Optional[list[PeriodType]] = None,
    week_start_day: Optional[int] = None,
    split_day: Optional[int] = None,
) -> list[PeriodSpan]:
    spans: list[PeriodSpan] = []
    for period_type in types or list(PeriodType):
        for year in range(start_year, end_year + 1):
            spans.extend(
                generate_year(
                    year,
                    period_type,
                    week_start_day=week_start_day,
                    split_day=split_day,
                )
            )
    return spans


def span_for(
    period_type: PeriodType,
    instant: datetime,
    *,
    week_start_day: Optional[int] = None,
    split_day: Optional[int] = None,
) -> PeriodSpan:
    """The span of ``period_type`` containing ``instant``, computed without a store."""
    settings = get_settings()
    week_start_day = (
        settings.week_start_day if week_start_day is None else week_start_day
    )
    split_day = settings.bi_monthly_split_day if split_day is None else split_day
    day = to_utc(instant).date()

    if period_type == PeriodType.monthly:
        return _monthly(day.year, day.month)
    if period_type == PeriodType.bi_monthly:
        half = 1 if day.day < split_day else 2
        return _bi_monthly(day.year, day.month, half, split_day)
    if period_type == PeriodType.weekly:
        start = day - timedelta(days=(day.weekday() - week_start_day) % 7)
        first = _first_week_start(start.year, week_start_day)
        week_number = (start - first).days // 7 + 1
        return _weekly(start.year, week_number, week_start_day)
    return _annual(day.year)


def period_keys(instant: datetime, types: tuple[PeriodType, ...]) -> tuple[str, ...]:
    return tuple(span_for(t, instant).id for t in types)


def periods_covering(
    session: Session, start: datetime, end: datetime, period_type: PeriodType
) -> list[SourcePeriod]:
    stmt = (
        select(SourcePeriod)
        .where(
            SourcePeriod.type == period_type,
            SourcePeriod.start_at < to_utc(end),
            SourcePeriod.end_at > to_utc(start),
        )
        .order_by(SourcePeriod.start_at)
    )
    return list(session.scalars(stmt).all())


def current_period(
    session: Session, period_type: PeriodType, as_of: Optional[datetime] = None
) -> SourcePeriod:
    as_of = to_utc(as_of) if as_of else datetime.utcnow()
    period = session.scalar(
        select(SourcePeriod).where(
            SourcePeriod.type == period_type,
            SourcePeriod.start_at <= as_of,
            SourcePeriod.end_at > as_of,
        )
    )
    if not period:
        raise ValueError("Source period not found")
    return period


def _add_months(day: date, months: int) -> date:
    total = day.month - 1 + months
    return date(day.year + total // 12, total % 12 + 1, 1)


def horizon_end(months: Optional[int] = None, *, today: Optional[date] = None) -> datetime:
    """First instant past the generation horizon (start of the month ``months`` ahead)."""
    months = get_settings().period_horizon_months if months is None else months
    today = today or datetime.utcnow().date()
    return _midnight(_add_months(today, months + 1))


class SourcePeriodService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_or_create(self, span: PeriodSpan) -> SourcePeriod:
        existing = self.session.get(SourcePeriod, span.id)
        if existing:
            return existing
        period = self._build(span, datetime.utcnow())
        self.session.add(period)
        self.session.flush()
        return period

    @staticmethod
    def _build(span: PeriodSpan, now: datetime) -> SourcePeriod:
        return SourcePeriod(
            id=span.id,
            type=span.type,
            year=span.year,
            index=span.index,
            start_at=span.start_at,
            end_at=span.end_at,
            is_current=span.contains(now),
            month=span.month,
            half=span.half,
            week_number=span.week_number,
        )

    def ensure_span(self, span: PeriodSpan) -> SourcePeriod:
        """Return the stored period for ``span``, generating its whole year if missing."""
        existing = self.session.get(SourcePeriod, span.id)
        if existing:
            return existing
        self.ensure_years(span.year, span.year)
        return self.session.get(SourcePeriod, span.id)

    def ensure_years(self, start_year: int, end_year: int) -> int:
        now = datetime.utcnow()
        existing = set(
            self.session.scalars(
                select(SourcePeriod.id).where(
                    SourcePeriod.year.between(start_year, end_year)
                )
            ).all()
        )
        created = 0
        for span in generate_source_periods(start_year, end_year):
            if span.id in existing:
                continue
            self.session.add(self._build(span, now))
            created += 1
        if created:
            self.session.flush()
        return created

    def ensure_range(self, start: datetime, end: datetime) -> int:
        # weekly spans may start in the previous year
        return self.ensure_years(to_utc(start).year - 1, to_utc(end).year)

    def ensure_horizon(
        self, months: Optional[int] = None, *, today: Optional[date] = None
    ) -> int:
        months = get_settings().period_horizon_months if months is None else months
        today = today or datetime.utcnow().date()
        through = horizon_end(months, today=today)
        created = self.ensure_years(today.year - 1, through.year)
        self.session.commit()
        logger.info(
            f"source_periods_ensured: through={through.date().isoformat()} created={created}"
        )
        return created

    def refresh_current_flags(self, as_of: Optional[datetime] = None) -> int:
        as_of = to_utc(as_of) if as_of else datetime.utcnow()
        changed = 0
        flagged = self.session.scalars(
            select(SourcePeriod).where(SourcePeriod.is_current.is_(True))
        ).all()
        for period in flagged:
            if not (period.start_at <= as_of < period.end_at):
                period.is_current = False
                changed += 1
        containing = self.session.scalars(
            select(SourcePeriod).where(
                SourcePeriod.start_at <= as_of,
                SourcePeriod.end_at > as_of,
                SourcePeriod.is_current.is_(False),
            )
        ).all()
        for period in containing:
            period.is_current = True
            changed += 1
        self.session.commit()
        return changed

    def verify_boundaries(self) -> list[BoundaryIssue]:
        """Report periods whose stored boundaries drifted from the canonical calendar."""
        issues: list[BoundaryIssue] = []
        for period_type in PeriodType:
            periods = self.session.scalars(
                select(SourcePeriod)
                .where(SourcePeriod.type == period_type)
                .order_by(SourcePeriod.start_at)
            ).all()
            previous: Optional[SourcePeriod] = None
            for period in periods:
                if period.start_at.time() != time.min or period.end_at.time() != time.min:
                    issues.append(BoundaryIssue(period.id, "boundary not at UTC midnight"))
                expected = span_for(period_type, period.start_at)
                if expected.id != period.id or expected.start_at != period.start_at:
                    issues.append(BoundaryIssue(period.id, f"expected {expected.id}"))
                elif expected.end_at != period.end_at:
                    issues.append(BoundaryIssue(period.id, "unexpected end"))
                if previous is not None:
                    if previous.end_at > period.start_at:
                        issues.append(
                            BoundaryIssue(period.id, f"overlaps {previous.id}")
                        )
                    elif (
                        previous.end_at < period.start_at
                        and period.year - previous.year <= 1
                    ):
                        issues.append(
                            BoundaryIssue(period.id, f"gap after {previous.id}")
                        )
                previous = period
        if issues:
            logger.warning(f"source_period_drift: issues={len(issues)}")
        return issues
