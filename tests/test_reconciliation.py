from dataclasses import replace
from datetime import datetime

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    Budget,
    BudgetContribution,
    BudgetPeriod,
    Category,
    PeriodType,
    ReconciledVersion,
    Transaction,
    TransactionSplit,
    TransactionStatus,
    TransactionType,
)
from periods import span_for
import reconciliation
from reconciliation import (
    SpendingReconciler,
    TransactionSnapshot,
    spending_relevant_changed,
)


def _seed(session: Session, amounts=(1250,)):
    food = Category(user_id=1, name="Food")
    session.add(food)
    session.flush()
    budget = Budget(
        user_id=1,
        name="Food",
        amount_cents=50_000,
        period_type=PeriodType.monthly,
        start_at=datetime(2025, 1, 1),
        is_active=True,
        is_system_everything_else=False,
    )
    budget.categories = [food]
    txn = Transaction(
        user_id=1,
        transaction_date=datetime(2025, 3, 10, 14, 0),
        type=TransactionType.expense,
        status=TransactionStatus.approved,
        amount_cents=sum(amounts),
        version=1,
    )
    for position, amount in enumerate(amounts):
        txn.splits.append(
            TransactionSplit(position=position, amount_cents=amount, category_id=food.id)
        )
    session.add_all([budget, txn])
    session.commit()
    return budget, txn


def _spent(session: Session, budget_id: int, source_period_id: str) -> int:
    session.expire_all()
    period = session.get(BudgetPeriod, f"{budget_id}_{source_period_id}")
    return period.spent_cents if period else 0


def test_new_transaction_updates_every_tracked_period() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session, amounts=(1000, 250))
        result = SpendingReconciler(session, 1).reconcile(
            None, TransactionSnapshot.from_model(txn)
        )

        assert result.success
        assert result.budgets_affected == [budget.id]
        assert result.period_types_updated == ["bi_monthly", "monthly", "weekly"]
        weekly_id = span_for(PeriodType.weekly, txn.transaction_date).id
        assert set(result.source_period_ids) == {"2025M03", "2025BM03A", weekly_id}

        for source_id in ("2025M03", "2025BM03A", weekly_id):
            assert _spent(session, budget.id, source_id) == 1250
        monthly = session.get(BudgetPeriod, f"{budget.id}_2025M03")
        assert monthly.allocated_cents == 50_000
        assert monthly.remaining_cents == 48_750

        session.expire_all()
        assert {s.budget_id for s in session.get(Transaction, txn.id).splits} == {budget.id}


def test_redelivery_is_a_no_op() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session)
        snapshot = TransactionSnapshot.from_model(txn)
        reconciler = SpendingReconciler(session, 1)
        reconciler.reconcile(None, snapshot)
        again = reconciler.reconcile(None, snapshot)

        assert again.budget_periods_updated == 0
        assert _spent(session, budget.id, "2025M03") == 1250
        ledger = session.scalar(select(func.count(BudgetContribution.id)))
        assert ledger == 3


def test_date_edit_moves_spending_across_month_boundary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session)
        old = TransactionSnapshot.from_model(txn)
        reconciler = SpendingReconciler(session, 1)
        reconciler.reconcile(None, old)

        new = replace(old, transaction_date=datetime(2025, 4, 2), version=2)
        result = reconciler.reconcile(old, new)

        assert result.success
        assert _spent(session, budget.id, "2025M03") == 0
        assert _spent(session, budget.id, "2025M04") == 1250
        assert "2025M03" in result.source_period_ids
        assert "2025M04" in result.source_period_ids
        march = session.get(BudgetPeriod, f"{budget.id}_2025M03")
        assert march.remaining_cents == march.allocated_cents


def test_amount_edit_applies_only_the_difference() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session)
        old = TransactionSnapshot.from_model(txn)
        reconciler = SpendingReconciler(session, 1)
        reconciler.reconcile(None, old)

        split = replace(old.splits[0], amount_cents=2000)
        new = replace(old, amount_cents=2000, splits=(split,), version=2)
        reconciler.reconcile(old, new)
        assert _spent(session, budget.id, "2025M03") == 2000


def test_unrelated_edit_is_skipped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, txn = _seed(session)
        old = TransactionSnapshot.from_model(txn)
        # same periods, same splits
        new = replace(old, transaction_date=datetime(2025, 3, 10, 18, 0), version=2)

        assert not spending_relevant_changed(old, new)
        result = SpendingReconciler(session, 1).reconcile(old, new)
        assert result.skipped


def test_delete_removes_all_spending() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session)
        old = TransactionSnapshot.from_model(txn)
        reconciler = SpendingReconciler(session, 1)
        reconciler.reconcile(None, old)

        reconciler.reconcile(old, replace(old, deleted=True, version=2))
        assert _spent(session, budget.id, "2025M03") == 0
        assert session.scalar(select(func.count(BudgetContribution.id))) == 0


def test_stale_version_is_ignored() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session)
        v1 = TransactionSnapshot.from_model(txn)
        reconciler = SpendingReconciler(session, 1)
        reconciler.reconcile(None, v1)
        v2 = replace(v1, transaction_date=datetime(2025, 4, 2), version=2)
        reconciler.reconcile(v1, v2)

        late = reconciler.reconcile(None, v1)
        assert late.skipped
        assert _spent(session, budget.id, "2025M03") == 0
        assert _spent(session, budget.id, "2025M04") == 1250


def test_pending_transaction_contributes_nothing_until_approved() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session)
        approved = TransactionSnapshot.from_model(txn)
        pending = replace(approved, status=TransactionStatus.pending)
        reconciler = SpendingReconciler(session, 1)

        reconciler.reconcile(None, pending)
        assert _spent(session, budget.id, "2025M03") == 0

        reconciler.reconcile(pending, replace(approved, version=2))
        assert _spent(session, budget.id, "2025M03") == 1250


def test_late_events_after_delete_are_ignored() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session)
        created = TransactionSnapshot.from_model(txn)
        deleted = replace(created, deleted=True, version=2)
        reconciler = SpendingReconciler(session, 1)
        reconciler.reconcile(None, created)
        reconciler.reconcile(created, deleted)

        assert reconciler.reconcile(None, created).skipped
        moved = replace(created, transaction_date=datetime(2025, 4, 2))
        assert reconciler.reconcile(created, moved).skipped
        assert _spent(session, budget.id, "2025M03") == 0
        assert _spent(session, budget.id, "2025M04") == 0
        marker = session.get(ReconciledVersion, txn.id)
        assert (marker.version, marker.deleted) == (2, True)


def test_create_delivered_after_its_delete_is_ignored() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        budget, txn = _seed(session)
        created = TransactionSnapshot.from_model(txn)
        reconciler = SpendingReconciler(session, 1)

        reconciler.reconcile(created, replace(created, deleted=True, version=2))
        late = reconciler.reconcile(None, created)

        assert late.skipped
        assert _spent(session, budget.id, "2025M03") == 0
        assert session.scalar(select(func.count(BudgetContribution.id))) == 0


def test_failing_budget_pair_leaves_other_budgets_applied(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food = Category(user_id=1, name="Food")
        rent = Category(user_id=1, name="Rent")
        session.add_all([food, rent])
        session.flush()
        budgets = {}
        for category in (food, rent):
            budget = Budget(
                user_id=1,
                name=category.name,
                amount_cents=100_000,
                period_type=PeriodType.monthly,
                start_at=datetime(2025, 1, 1),
                is_active=True,
                is_system_everything_else=False,
            )
            budget.categories = [category]
            budgets[category.name] = budget
        txn = Transaction(
            user_id=1,
            transaction_date=datetime(2025, 3, 10, 14, 0),
            type=TransactionType.expense,
            status=TransactionStatus.approved,
            amount_cents=300,
            version=1,
        )
        txn.splits.append(TransactionSplit(position=0, amount_cents=100, category_id=food.id))
        txn.splits.append(TransactionSplit(position=1, amount_cents=200, category_id=rent.id))
        session.add_all([*budgets.values(), txn])
        session.commit()
        food_id, rent_id = budgets["Food"].id, budgets["Rent"].id
        snapshot = TransactionSnapshot.from_model(txn)

        real_ensure = reconciliation.ensure_budget_period

        def failing_for_rent(session, budget, source):
            if budget.id == rent_id:
                raise ValueError("budget period store unavailable")
            return real_ensure(session, budget, source)

        monkeypatch.setattr(reconciliation, "ensure_budget_period", failing_for_rent)
        result = SpendingReconciler(session, 1).reconcile(None, snapshot)

        assert len(result.errors) == 3
        assert all(f"{rent_id}_" in error for error in result.errors)
        assert result.budgets_affected == [food_id]
        assert _spent(session, food_id, "2025M03") == 100
        assert _spent(session, rent_id, "2025M03") == 0

        monkeypatch.setattr(reconciliation, "ensure_budget_period", real_ensure)
        retry = SpendingReconciler(session, 1).reconcile(None, snapshot)

        assert retry.success
        assert retry.budgets_affected == [rent_id]
        assert _spent(session, food_id, "2025M03") == 100
        assert _spent(session, rent_id, "2025M03") == 200
