from datetime import date, datetime

from sqlalchemy import create_engine, update
from sqlalchemy.orm import Session

from database import Base
from models import BudgetPeriod, OutflowPeriod
from outflows import outflow_period_id
from schemas import AssignSplitIn, BudgetIn, CategoryIn, OutflowIn, TransactionIn
from services import (
    BudgetService,
    CategoryService,
    OutflowService,
    TransactionService,
    VerificationService,
    create_missing_everything_else_budgets,
)


def _seed(session: Session):
    food = CategoryService(session).create(CategoryIn(name="Food"))
    budget = BudgetService(session).create(
        BudgetIn(
            name="Food",
            amount_cents=50_000,
            category_ids=[food.id],
            start_at=datetime(2025, 1, 1),
        )
    )
    transactions = TransactionService(session)
    for day, amount in ((3, 1000), (12, 2500), (20, 400)):
        transactions.create(
            TransactionIn(
                transaction_date=datetime(2025, 3, day),
                amount_cents=amount,
                category_id=food.id,
            )
        )
    return budget


def test_clean_state_verifies() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        report = VerificationService(session).verify()
        assert report.ok, report


def test_budget_drift_is_detected_and_repaired() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget = _seed(session)
        period_id = f"{budget.id}_2025M03"
        session.execute(
            update(BudgetPeriod).where(BudgetPeriod.id == period_id).values(spent_cents=1)
        )
        session.commit()

        service = VerificationService(session)
        drift = service.verify().budget_drift
        assert any(line.startswith(period_id) for line in drift)

        assert service.repair_budget_spending() == 3
        session.expire_all()
        period = session.get(BudgetPeriod, period_id)
        assert period.spent_cents == 3900
        assert period.remaining_cents == period.allocated_cents - 3900
        assert service.verify().ok


def test_outflow_mismatch_is_detected_and_repaired() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        loan = OutflowService(session).create(
            OutflowIn(description="Loan", amount_cents=10_000, anchor_date=date(2025, 3, 5))
        )
        txn = TransactionService(session).create(
            TransactionIn(transaction_date=datetime(2025, 3, 5), amount_cents=10_000)
        )
        OutflowService(session).assign_split(
            AssignSplitIn(transaction_id=txn.id, split_id=txn.splits[0].id, outflow_id=loan.id)
        )
        period_id = outflow_period_id(loan.id, "2025M03")
        session.execute(
            update(OutflowPeriod)
            .where(OutflowPeriod.id == period_id)
            .values(amount_paid_cents=0)
        )
        session.commit()

        service = VerificationService(session)
        assert any(m.startswith(period_id) for m in service.verify().outflow_mismatches)
        service.repair_outflow_periods()
        assert service.verify().outflow_mismatches == []


def test_missing_everything_else_budgets_are_created() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        TransactionService(session, user_id=3).create(
            TransactionIn(transaction_date=datetime(2025, 3, 5), amount_cents=500)
        )
        assert create_missing_everything_else_budgets(session) == 1
        assert create_missing_everything_else_budgets(session) == 0
        system = BudgetService(session, user_id=3).list_active()
        assert [b.is_system_everything_else for b in system] == [True]
