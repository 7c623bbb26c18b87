from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import (
    BudgetPeriod,
    GroupPeriodSummary,
    OutflowPeriod,
    OutflowStatus,
    PeriodType,
    SourcePeriod,
)
from periods import SourcePeriodService, span_for
from schemas import BudgetIn, CategoryIn, TransactionIn
from services import BudgetService, CategoryService, TransactionService
from summaries import SummaryService, aggregate, aggregate_outflow_periods


def _budget_period(budget_id, allocated, spent):
    return BudgetPeriod(
        budget_id=budget_id,
        period_type=PeriodType.monthly,
        allocated_cents=allocated,
        spent_cents=spent,
        remaining_cents=allocated - spent,
    )


def _outflow_period(outflow_id, due, paid, status, due_date=None, is_due=True):
    return OutflowPeriod(
        outflow_id=outflow_id,
        period_type=PeriodType.monthly,
        due_date=due_date,
        amount_due_cents=due,
        amount_paid_cents=paid,
        amount_unpaid_cents=max(due - paid, 0),
        extra_principal_cents=0,
        status=status,
        is_due_period=is_due,
    )


def test_aggregate_totals_and_counts() -> None:
    source = SourcePeriod(
        id="2025M03",
        type=PeriodType.monthly,
        start_at=datetime(2025, 3, 1),
        end_at=datetime(2025, 4, 1),
    )
    document = aggregate(
        source,
        [_budget_period(1, 50_000, 12_500), _budget_period(2, 10_000, 15_000)],
        [
            _outflow_period(7, 10_000, 10_000, OutflowStatus.paid, date(2025, 3, 5)),
            _outflow_period(8, 5_000, 1_000, OutflowStatus.partially_paid, date(2025, 3, 20)),
            _outflow_period(9, 0, 0, OutflowStatus.pending, is_due=False),
        ],
        budget_names={1: "Food", 2: "Fun"},
        outflow_descriptions={7: "Loan", 8: "Phone"},
        today=date(2025, 3, 25),
    )

    assert document.source_period_id == "2025M03"
    assert document.period_type == "monthly"
    assert document.budgets.total_allocated_cents == 60_000
    assert document.budgets.total_spent_cents == 27_500
    assert document.budgets.total_remaining_cents == 32_500
    assert document.budgets.over_budget_count == 1
    assert document.budgets.under_budget_count == 1
    assert [e.budget_name for e in document.budgets.entries] == ["Food", "Fun"]

    outflows = document.outflows
    assert outflows.total_due_cents == 15_000
    assert outflows.total_unpaid_cents == 4_000
    assert outflows.due_period_count == 2
    assert outflows.fully_paid_count == 1
    assert outflows.unpaid_count == 1
    assert outflows.overdue_count == 1
    assert outflows.status_counts == {"pending": 1, "partially_paid": 1, "paid": 1}


def test_overdue_depends_on_read_date() -> None:
    periods = [_outflow_period(8, 5_000, 0, OutflowStatus.pending, date(2025, 3, 20))]
    assert aggregate_outflow_periods(periods, {}, today=date(2025, 3, 20)).overdue_count == 0
    assert aggregate_outflow_periods(periods, {}, today=date(2025, 3, 21)).overdue_count == 1


def test_summaries_follow_transactions() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(CategoryIn(name="Food"))
        budget = BudgetService(session).create(
            BudgetIn(
                name="Food",
                amount_cents=50_000,
                category_ids=[food.id],
                start_at=datetime(2025, 1, 1),
            )
        )
        TransactionService(session).create(
            TransactionIn(
                transaction_date=datetime(2025, 3, 10),
                amount_cents=1250,
                category_id=food.id,
            )
        )

        summaries = SummaryService(session)
        march = summaries.get_user_summary(1, "2025M03")
        assert march is not None
        assert march.budgets.total_spent_cents == 1250
        assert march.budgets.entries[0].budget_id == budget.id

        assert summaries.rebuild_all(1) > 0
        rebuilt = summaries.get_user_summary(1, "2025M03")
        assert rebuilt.budgets.total_spent_cents == 1250
        assert summaries.get_user_summary(1, "1999M01") is None


def test_group_summary_only_counts_group_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(CategoryIn(name="Food"))
        BudgetService(session).create(
            BudgetIn(
                name="Household food",
                amount_cents=80_000,
                category_ids=[food.id],
                start_at=datetime(2025, 1, 1),
                group_id=5,
            )
        )
        TransactionService(session).create(
            TransactionIn(
                transaction_date=datetime(2025, 3, 10),
                amount_cents=3000,
                category_id=food.id,
                group_id=5,
            )
        )

        group = SummaryService(session).get_group_summary(5, "2025M03")
        assert group is not None
        assert group.budgets.total_spent_cents == 3000
        assert SummaryService(session).get_group_summary(6, "2025M03") is None


def test_rebuild_all_drops_group_summaries_without_data() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = CategoryService(session).create(CategoryIn(name="Food"))
        BudgetService(session).create(
            BudgetIn(
                name="Household food",
                amount_cents=80_000,
                category_ids=[food.id],
                start_at=datetime(2025, 1, 1),
                group_id=5,
            )
        )
        TransactionService(session).create(
            TransactionIn(
                transaction_date=datetime(2025, 3, 10),
                amount_cents=3000,
                category_id=food.id,
                group_id=5,
            )
        )
        december = SourcePeriodService(session).ensure_span(
            span_for(PeriodType.monthly, datetime(2024, 12, 5))
        )
        session.add(
            GroupPeriodSummary(
                group_id=5,
                source_period_id=december.id,
                period_type=PeriodType.monthly,
                payload_json="{}",
            )
        )
        session.commit()

        summaries = SummaryService(session)
        summaries.rebuild_all(1)

        assert summaries.get_group_summary(5, december.id) is None
        assert summaries.get_group_summary(5, "2025M03").budgets.total_spent_cents == 3000
