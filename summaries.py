import logging
from datetime import date, datetime
from typing import Iterable, Optional

from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from models import (
    Budget,
    BudgetPeriod,
    GroupPeriodSummary,
    Outflow,
    OutflowPeriod,
    OutflowStatus,
    PeriodType,
    SourcePeriod,
    Transaction,
    UserSummary,
)

logger = logging.getLogger(__name__)


class BudgetSummaryEntry(BaseModel):
    budget_id: int
    budget_name: str
    period_type: str
    allocated_cents: int
    spent_cents: int
    remaining_cents: int
    is_over_budget: bool


class BudgetSummary(BaseModel):
    total_allocated_cents: int = 0
    total_spent_cents: int = 0
    total_remaining_cents: int = 0
    over_budget_count: int = 0
    under_budget_count: int = 0
    entries: list[BudgetSummaryEntry] = Field(default_factory=list)


class OutflowSummaryEntry(BaseModel):
    outflow_id: int
    description: str
    period_type: str
    due_date: Optional[date] = None
    amount_due_cents: int
    amount_paid_cents: int
    amount_unpaid_cents: int
    extra_principal_cents: int
    status: OutflowStatus
    is_due_period: bool
    is_overdue: bool


class OutflowSummary(BaseModel):
    total_due_cents: int = 0
    total_paid_cents: int = 0
    total_unpaid_cents: int = 0
    total_extra_principal_cents: int = 0
    due_period_count: int = 0
    fully_paid_count: int = 0
    unpaid_count: int = 0
    overdue_count: int = 0
    status_counts: dict[str, int] = Field(default_factory=dict)
    entries: list[OutflowSummaryEntry] = Field(default_factory=list)


class SummaryDocument(BaseModel):
    source_period_id: str
    period_type: str
    start_at: datetime
    end_at: datetime
    budgets: BudgetSummary
    outflows: OutflowSummary
    computed_at: datetime


def aggregate_budget_periods(
    periods: Iterable[BudgetPeriod], budget_names: dict[int, str]
) -> BudgetSummary:
    summary = BudgetSummary()
    for period in periods:
        over = period.spent_cents > period.allocated_cents
        summary.total_allocated_cents += period.allocated_cents
        summary.total_spent_cents += period.spent_cents
        summary.total_remaining_cents += period.remaining_cents
        if over:
            summary.over_budget_count += 1
        else:
            summary.under_budget_count += 1
        summary.entries.append(
            BudgetSummaryEntry(
                budget_id=period.budget_id,
                budget_name=budget_names.get(period.budget_id, ""),
                period_type=period.period_type.value,
                allocated_cents=period.allocated_cents,
                spent_cents=period.spent_cents,
                remaining_cents=period.remaining_cents,
                is_over_budget=over,
            )
        )
    return summary


def aggregate_outflow_periods(
    periods: Iterable[OutflowPeriod],
    descriptions: dict[int, str],
    *,
    today: Optional[date] = None,
) -> OutflowSummary:
    today = today or datetime.utcnow().date()
    summary = OutflowSummary(status_counts={s.value: 0 for s in OutflowStatus})
    for period in periods:
        # overdue is derived from the clock at read time, never stored
        overdue = (
            period.is_due_period
            and period.amount_unpaid_cents > 0
            and period.due_date is not None
            and period.due_date < today
        )
        summary.total_due_cents += period.amount_due_cents
        summary.total_paid_cents += period.amount_paid_cents
        summary.total_unpaid_cents += period.amount_unpaid_cents
        summary.total_extra_principal_cents += period.extra_principal_cents
        summary.status_counts[period.status.value] += 1
        if period.is_due_period:
            summary.due_period_count += 1
            if period.status == OutflowStatus.paid:
                summary.fully_paid_count += 1
            else:
                summary.unpaid_count += 1
        if overdue:
            summary.overdue_count += 1
        summary.entries.append(
            OutflowSummaryEntry(
                outflow_id=period.outflow_id,
                description=descriptions.get(period.outflow_id, ""),
                period_type=period.period_type.value,
                due_date=period.due_date,
                amount_due_cents=period.amount_due_cents,
                amount_paid_cents=period.amount_paid_cents,
                amount_unpaid_cents=period.amount_unpaid_cents,
                extra_principal_cents=period.extra_principal_cents,
                status=period.status,
                is_due_period=period.is_due_period,
                is_overdue=overdue,
            )
        )
    return summary


def aggregate(
    source_period: SourcePeriod,
    budget_periods: Iterable[BudgetPeriod],
    outflow_periods: Iterable[OutflowPeriod],
    *,
    budget_names: Optional[dict[int, str]] = None,
    outflow_descriptions: Optional[dict[int, str]] = None,
    today: Optional[date] = None,
    computed_at: Optional[datetime] = None,
) -> SummaryDocument:
    return SummaryDocument(
        source_period_id=source_period.id,
        period_type=source_period.type.value,
        start_at=source_period.start_at,
        end_at=source_period.end_at,
        budgets=aggregate_budget_periods(budget_periods, budget_names or {}),
        outflows=aggregate_outflow_periods(
            outflow_periods, outflow_descriptions or {}, today=today
        ),
        computed_at=computed_at or datetime.utcnow(),
    )


class SummaryService:
    """Derived per-period rollups; rows can be dropped and rebuilt at any time."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _document(
        self,
        source_period_id: str,
        *,
        user_id: Optional[int] = None,
        group_id: Optional[int] = None,
    ) -> Optional[SummaryDocument]:
        source = self.session.get(SourcePeriod, source_period_id)
        if not source:
            return None
        budget_stmt = (
            select(BudgetPeriod, Budget.name)
            .join(Budget, BudgetPeriod.budget_id == Budget.id)
            .where(
                BudgetPeriod.source_period_id == source_period_id,
                Budget.is_active.is_(True),
            )
            .order_by(Budget.name, BudgetPeriod.budget_id)
        )
        outflow_stmt = (
            select(OutflowPeriod, Outflow.description)
            .join(Outflow, OutflowPeriod.outflow_id == Outflow.id)
            .where(
                OutflowPeriod.source_period_id == source_period_id,
                Outflow.is_active.is_(True),
            )
            .order_by(OutflowPeriod.due_date, OutflowPeriod.outflow_id)
        )
        if user_id is not None:
            budget_stmt = budget_stmt.where(BudgetPeriod.user_id == user_id)
            outflow_stmt = outflow_stmt.where(OutflowPeriod.user_id == user_id)
        if group_id is not None:
            budget_stmt = budget_stmt.where(BudgetPeriod.group_id == group_id)
            outflow_stmt = outflow_stmt.where(OutflowPeriod.group_id == group_id)

        budget_rows = self.session.execute(budget_stmt).all()
        outflow_rows = self.session.execute(outflow_stmt).all()
        if not budget_rows and not outflow_rows:
            return None
        return aggregate(
            source,
            [row[0] for row in budget_rows],
            [row[0] for row in outflow_rows],
            budget_names={row[0].budget_id: row[1] for row in budget_rows},
            outflow_descriptions={row[0].outflow_id: row[1] for row in outflow_rows},
        )

    def rebuild_user_summary(
        self, user_id: int, source_period_id: str
    ) -> Optional[SummaryDocument]:
        self.session.execute(
            delete(UserSummary).where(
                UserSummary.user_id == user_id,
                UserSummary.source_period_id == source_period_id,
            )
        )
        document = self._document(source_period_id, user_id=user_id)
        if document is not None:
            self.session.add(
                UserSummary(
                    user_id=user_id,
                    source_period_id=source_period_id,
                    period_type=PeriodType(document.period_type),
                    payload_json=document.model_dump_json(),
                    computed_at=document.computed_at,
                )
            )
        self.session.flush()
        return document

    def rebuild_group_summary(
        self, group_id: int, source_period_id: str
    ) -> Optional[SummaryDocument]:
        self.session.execute(
            delete(GroupPeriodSummary).where(
                GroupPeriodSummary.group_id == group_id,
                GroupPeriodSummary.source_period_id == source_period_id,
            )
        )
        document = self._document(source_period_id, group_id=group_id)
        if document is not None:
            self.session.add(
                GroupPeriodSummary(
                    group_id=group_id,
                    source_period_id=source_period_id,
                    period_type=PeriodType(document.period_type),
                    payload_json=document.model_dump_json(),
                    computed_at=document.computed_at,
                )
            )
        self.session.flush()
        return document

    def refresh_for_periods(
        self, user_id: int, group_id: Optional[int], source_period_ids: Iterable[str]
    ) -> int:
        count = 0
        for source_period_id in sorted(set(source_period_ids)):
            self.rebuild_user_summary(user_id, source_period_id)
            if group_id is not None:
                self.rebuild_group_summary(group_id, source_period_id)
            count += 1
        self.session.commit()
        return count

    def _group_ids(self, user_id: int) -> set[int]:
        ids: set[int] = set()
        for column, owner in (
            (Budget.group_id, Budget.user_id),
            (Outflow.group_id, Outflow.user_id),
            (Transaction.group_id, Transaction.user_id),
            (BudgetPeriod.group_id, BudgetPeriod.user_id),
            (OutflowPeriod.group_id, OutflowPeriod.user_id),
        ):
            ids.update(
                self.session.scalars(
                    select(column).where(owner == user_id, column.is_not(None)).distinct()
                ).all()
            )
        return ids

    def rebuild_all(self, user_id: int) -> int:
        group_ids = self._group_ids(user_id)
        self.session.execute(delete(UserSummary).where(UserSummary.user_id == user_id))
        if group_ids:
            self.session.execute(
                delete(GroupPeriodSummary).where(GroupPeriodSummary.group_id.in_(group_ids))
            )
        source_ids = set(
            self.session.scalars(
                select(BudgetPeriod.source_period_id)
                .where(BudgetPeriod.user_id == user_id)
                .distinct()
            ).all()
        ) | set(
            self.session.scalars(
                select(OutflowPeriod.source_period_id)
                .where(OutflowPeriod.user_id == user_id)
                .distinct()
            ).all()
        )
        # group rollups cover every member, not only this user
        group_keys: set[tuple[int, str]] = set()
        if group_ids:
            for model in (BudgetPeriod, OutflowPeriod):
                group_keys.update(
                    (row[0], row[1])
                    for row in self.session.execute(
                        select(model.group_id, model.source_period_id)
                        .where(model.group_id.in_(group_ids))
                        .distinct()
                    ).all()
                )
        for source_period_id in sorted(source_ids):
            self.rebuild_user_summary(user_id, source_period_id)
        for group_id, source_period_id in sorted(group_keys):
            self.rebuild_group_summary(group_id, source_period_id)
        self.session.commit()
        logger.info(
            f"summaries_rebuilt: user_id={user_id} periods={len(source_ids)} "
            f"group_periods={len(group_keys)}"
        )
        return len(source_ids)

    def get_user_summary(
        self, user_id: int, source_period_id: str
    ) -> Optional[SummaryDocument]:
        row = self.session.scalar(
            select(UserSummary).where(
                UserSummary.user_id == user_id,
                UserSummary.source_period_id == source_period_id,
            )
        )
        if not row:
            return None
        return SummaryDocument.model_validate_json(row.payload_json)

    def get_group_summary(
        self, group_id: int, source_period_id: str
    ) -> Optional[SummaryDocument]:
        row = self.session.scalar(
            select(GroupPeriodSummary).where(
                GroupPeriodSummary.group_id == group_id,
                GroupPeriodSummary.source_period_id == source_period_id,
            )
        )
        if not row:
            return None
        return SummaryDocument.model_validate_json(row.payload_json)
