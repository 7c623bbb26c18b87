from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from assignment import BudgetAssignmentResolver
from database import Base
from models import Budget, Category, PeriodType, TransactionStatus, TransactionType
from reconciliation import SplitSnapshot


def _budget(name, categories=(), *, created_at, system=False, start=None, end=None):
    budget = Budget(
        user_id=1,
        name=name,
        amount_cents=0 if system else 10_000,
        period_type=PeriodType.monthly,
        start_at=start or datetime(2025, 1, 1),
        end_at=end,
        is_active=True,
        is_system_everything_else=system,
        created_at=created_at,
    )
    budget.categories = list(categories)
    return budget


def _seed(session: Session):
    food = Category(user_id=1, name="Food")
    session.add(food)
    session.flush()
    groceries = Category(user_id=1, name="Groceries", parent_id=food.id)
    rent = Category(user_id=1, name="Rent")
    session.add_all([groceries, rent])
    session.flush()
    return food, groceries, rent


def test_specific_budget_matches_through_category_parent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, groceries, rent = _seed(session)
        food_budget = _budget("Food", [food], created_at=datetime(2025, 1, 1))
        misc = _budget("Misc", created_at=datetime(2025, 2, 1))
        session.add_all([food_budget, misc])
        session.commit()

        resolver = BudgetAssignmentResolver(session, 1)
        assert resolver.resolve_budget_id(groceries.id, datetime(2025, 3, 1)) == food_budget.id
        # catch-all claims what no specific budget does, even though it is newer
        assert resolver.resolve_budget_id(rent.id, datetime(2025, 3, 1)) == misc.id


def test_most_recent_specific_budget_wins() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, groceries, _ = _seed(session)
        older = _budget("Food", [food], created_at=datetime(2025, 1, 1))
        newer = _budget("Groceries", [groceries], created_at=datetime(2025, 2, 1))
        session.add_all([older, newer])
        session.commit()

        resolver = BudgetAssignmentResolver(session, 1)
        assert resolver.resolve_budget_id(groceries.id, datetime(2025, 3, 1)) == newer.id


def test_out_of_range_budgets_fall_back_to_everything_else() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _, _ = _seed(session)
        food_budget = _budget(
            "Food",
            [food],
            created_at=datetime(2025, 1, 1),
            start=datetime(2025, 3, 1),
            end=datetime(2025, 4, 1),
        )
        system = _budget(
            "Everything else",
            created_at=datetime(2024, 1, 1),
            system=True,
            start=datetime(1970, 1, 1),
        )
        session.add_all([food_budget, system])
        session.commit()

        resolver = BudgetAssignmentResolver(session, 1)
        assert resolver.resolve_budget_id(food.id, datetime(2025, 3, 31, 23)) == food_budget.id
        assert resolver.resolve_budget_id(food.id, datetime(2025, 4, 1)) == system.id
        assert resolver.resolve_budget_id(food.id, datetime(2025, 2, 28)) == system.id


def test_unassigned_without_any_matching_budget() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _, rent = _seed(session)
        session.add(_budget("Food", [food], created_at=datetime(2025, 1, 1)))
        session.commit()

        resolver = BudgetAssignmentResolver(session, 1)
        split = SplitSnapshot(id=1, amount_cents=500, category_id=rent.id)
        assert resolver.resolve(split, datetime(2025, 3, 1)) is None


def test_only_approved_expense_budget_splits_resolve() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _, _ = _seed(session)
        budget = _budget("Food", [food], created_at=datetime(2025, 1, 1))
        session.add(budget)
        session.commit()

        resolver = BudgetAssignmentResolver(session, 1)
        split = SplitSnapshot(id=1, amount_cents=500, category_id=food.id)
        when = datetime(2025, 3, 10)

        assignment = resolver.resolve(split, when)
        assert assignment.budget_id == budget.id
        assert assignment.period_id == "2025M03"
        assert assignment.period_ids[PeriodType.bi_monthly] == "2025BM03A"

        assert resolver.resolve(split, when, transaction_type=TransactionType.income) is None
        assert resolver.resolve(split, when, status=TransactionStatus.pending) is None
        bill = SplitSnapshot(id=2, amount_cents=500, category_id=food.id, outflow_id=9)
        assert resolver.resolve(bill, when) is None


def test_inactive_budgets_are_ignored() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        food, _, _ = _seed(session)
        budget = _budget("Food", [food], created_at=datetime(2025, 1, 1))
        budget.is_active = False
        session.add(budget)
        session.commit()

        resolver = BudgetAssignmentResolver(session, 1)
        assert resolver.resolve_budget_id(food.id, datetime(2025, 3, 1)) is None
