from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import PeriodType, SourcePeriod
from periods import (
    SourcePeriodService,
    current_period,
    generate_source_periods,
    generate_year,
    horizon_end,
    period_keys,
    span_for,
)


def test_monthly_ids_and_bounds() -> None:
    span = span_for(PeriodType.monthly, datetime(2025, 3, 31, 23, 59))
    assert span.id == "2025M03"
    assert span.start_at == datetime(2025, 3, 1)
    assert span.end_at == datetime(2025, 4, 1)


def test_aware_instants_are_normalized_to_utc() -> None:
    instant = datetime(2025, 4, 1, 1, 0, tzinfo=timezone(timedelta(hours=2)))
    assert span_for(PeriodType.monthly, instant).id == "2025M03"


def test_bi_monthly_splits_on_the_sixteenth() -> None:
    first = span_for(PeriodType.bi_monthly, datetime(2025, 2, 15, 12))
    second = span_for(PeriodType.bi_monthly, datetime(2025, 2, 16))
    assert first.id == "2025BM02A"
    assert first.end_at == datetime(2025, 2, 16)
    assert second.id == "2025BM02B"
    assert second.end_at == datetime(2025, 3, 1)

    halves = generate_year(2025, PeriodType.bi_monthly)
    assert len(halves) == 24
    assert halves[0].index == 1 and halves[-1].id == "2025BM12B"


def test_week_belongs_to_year_of_its_start() -> None:
    span = span_for(PeriodType.weekly, datetime(2025, 1, 2))
    assert span.id == "2024W52"
    assert span.start_at == datetime(2024, 12, 29)
    assert span.end_at == datetime(2025, 1, 5)
    assert span_for(PeriodType.weekly, datetime(2025, 1, 5)).id == "2025W01"


def test_every_type_partitions_the_calendar() -> None:
    for period_type in PeriodType:
        spans = sorted(
            generate_source_periods(2023, 2026, types=[period_type]),
            key=lambda s: s.start_at,
        )
        for previous, current in zip(spans, spans[1:]):
            assert previous.end_at == current.start_at
        ids = [s.id for s in spans]
        assert len(ids) == len(set(ids))

    months = generate_year(2025, PeriodType.monthly)
    assert months[0].start_at == datetime(2025, 1, 1)
    assert months[-1].end_at == datetime(2026, 1, 1)


def test_instant_maps_to_exactly_one_span_per_type() -> None:
    instant = datetime(2025, 6, 15, 8, 30)
    for period_type in PeriodType:
        containing = [
            s
            for s in generate_source_periods(2024, 2026, types=[period_type])
            if s.contains(instant)
        ]
        assert len(containing) == 1
        assert containing[0].id == span_for(period_type, instant).id


def test_period_keys_follow_requested_types() -> None:
    keys = period_keys(
        datetime(2025, 6, 15), (PeriodType.monthly, PeriodType.bi_monthly)
    )
    assert keys == ("2025M06", "2025BM06A")


def test_horizon_end_is_start_of_month_past_horizon() -> None:
    assert horizon_end(12, today=date(2025, 3, 10)) == datetime(2026, 4, 1)
    assert horizon_end(0, today=date(2025, 12, 31)) == datetime(2026, 1, 1)


def test_ensure_years_is_idempotent_and_verifies_clean() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = SourcePeriodService(session)
        created = service.ensure_years(2024, 2025)
        assert created > 0
        assert service.ensure_years(2024, 2025) == 0
        session.commit()

        assert service.verify_boundaries() == []
        assert current_period(session, PeriodType.monthly, datetime(2025, 6, 15)).id == (
            "2025M06"
        )
        with pytest.raises(ValueError):
            current_period(session, PeriodType.monthly, datetime(2030, 1, 1))


def test_verify_boundaries_reports_drift() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = SourcePeriodService(session)
        service.ensure_years(2025, 2025)
        february = session.get(SourcePeriod, "2025M02")
        february.end_at = datetime(2025, 3, 2)
        session.commit()

        issues = {(i.period_id, i.problem) for i in service.verify_boundaries()}
        assert ("2025M02", "unexpected end") in issues
        assert ("2025M03", "overlaps 2025M02") in issues


def test_refresh_current_flags_marks_one_period_per_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = SourcePeriodService(session)
        service.ensure_years(2025, 2025)
        service.refresh_current_flags(datetime(2025, 6, 15))

        current = session.scalars(
            select(SourcePeriod).where(SourcePeriod.is_current.is_(True))
        ).all()
        assert sorted(p.id for p in current) == sorted(
            ["2025M06", "2025BM06A", "2025A", span_for(PeriodType.weekly, datetime(2025, 6, 15)).id]
        )
