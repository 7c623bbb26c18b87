import logging
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from config import get_settings
from models import Budget, BudgetPeriod, PeriodType, SourcePeriod
from periods import SourcePeriodService, periods_covering
from recurrence import days_in_month

logger = logging.getLogger(__name__)

BUDGET_PERIOD_TYPES = (PeriodType.monthly, PeriodType.bi_monthly, PeriodType.weekly)


def budget_period_id(budget_id: int, source_period_id: str) -> str:
    return f"{budget_id}_{source_period_id}"


def _daily_rate(budget: Budget, day: date, split_day: int) -> Decimal:
    amount = Decimal(budget.amount_cents)
    if budget.period_type == PeriodType.weekly:
        return amount / 7
    if budget.period_type == PeriodType.bi_monthly:
        dim = days_in_month(day.year, day.month)
        half_days = split_day - 1 if day.day < split_day else dim - split_day + 1
        return amount / half_days
    if budget.period_type == PeriodType.annual:
        year_days = (date(day.year + 1, 1, 1) - date(day.year, 1, 1)).days
        return amount / year_days
    return amount / days_in_month(day.year, day.month)


def allocate_amount(budget: Budget, start_at: datetime, end_at: datetime) -> int:
    """Prorate the budget amount over ``[start_at, end_at)`` day by day.

    The amount is expressed per ``budget.period_type``; each day contributes
    that period's daily rate, so a monthly budget allocates its exact amount to
    its own month and a per-day share to weeks spanning two months.
    """
    if budget.amount_cents == 0:
        return 0
    split_day = get_settings().bi_monthly_split_day
    start = max(start_at, budget.start_at).date()
    end = end_at.date()
    if budget.end_at is not None:
        end = min(end, budget.end_at.date())
    total = Decimal(0)
    day = start
    while day < end:
        total += _daily_rate(budget, day, split_day)
        day += timedelta(days=1)
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def ensure_budget_period(
    session: Session, budget: Budget, source_period: SourcePeriod
) -> BudgetPeriod:
    period_id = budget_period_id(budget.id, source_period.id)
    existing = session.get(BudgetPeriod, period_id)
    if existing:
        return existing
    allocated = allocate_amount(budget, source_period.start_at, source_period.end_at)
    period = BudgetPeriod(
        id=period_id,
        budget_id=budget.id,
        source_period_id=source_period.id,
        period_type=source_period.type,
        user_id=budget.user_id,
        group_id=budget.group_id,
        start_at=source_period.start_at,
        end_at=source_period.end_at,
        allocated_cents=allocated,
        spent_cents=0,
        remaining_cents=allocated,
        is_active=budget.is_active,
    )
    session.add(period)
    session.flush()
    return period


class BudgetPeriodGenerator:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_periods(
        self, budget: Budget, start: datetime, end: datetime
    ) -> list[BudgetPeriod]:
        """Create missing budget periods for every tracked period type in range."""
        start = max(start, budget.start_at)
        if budget.end_at is not None:
            end = min(end, budget.end_at)
        if end <= start:
            return []
        SourcePeriodService(self.session).ensure_range(start, end)
        created: list[BudgetPeriod] = []
        for period_type in BUDGET_PERIOD_TYPES:
            for source in periods_covering(self.session, start, end, period_type):
                if self.session.get(BudgetPeriod, budget_period_id(budget.id, source.id)):
                    continue
                created.append(ensure_budget_period(self.session, budget, source))
        if created:
            logger.info(
                f"budget_periods_created: budget_id={budget.id} count={len(created)}"
            )
        return created

    def reallocate(self, budget: Budget) -> int:
        """Recompute allocation after an amount or range change; spending is kept."""
        periods = self.session.scalars(
            select(BudgetPeriod).where(BudgetPeriod.budget_id == budget.id)
        ).all()
        for period in periods:
            period.allocated_cents = allocate_amount(
                budget, period.start_at, period.end_at
            )
            period.remaining_cents = period.allocated_cents - period.spent_cents
            period.is_active = budget.is_active
        self.session.flush()
        return len(periods)

    def remove_periods(self, budget_id: int, source_period_ids: Optional[list[str]] = None) -> int:
        stmt = delete(BudgetPeriod).where(BudgetPeriod.budget_id == budget_id)
        if source_period_ids is not None:
            stmt = stmt.where(BudgetPeriod.source_period_id.in_(source_period_ids))
        result = self.session.execute(stmt)
        return int(result.rowcount or 0)
