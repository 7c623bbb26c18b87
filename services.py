from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, selectinload

from batching import BatchWriter, WriteOp
from budget_periods import BudgetPeriodGenerator
from category_cache import CategoryCache
from events import (
    BudgetSnapshot,
    DomainEvent,
    EventDispatcher,
    EventType,
    OutflowSnapshot,
    build_dispatcher,
)
from models import (
    Budget,
    BudgetContribution,
    BudgetPeriod,
    Category,
    Outflow,
    OutflowPeriod,
    PeriodType,
    Transaction,
    TransactionSplit,
)
from outflows import OutflowPeriodGenerator, OutflowPeriodMatcher, compute_totals, recompute_period
from periods import SourcePeriodService, horizon_end, span_for, to_utc
from reconciliation import SpendingReconciler, TransactionSnapshot
from schemas import (
    AssignSplitIn,
    AssignSplitOut,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    OutflowIn,
    SplitIn,
    TransactionIn,
    TransactionUpdate,
    UnassignSplitIn,
    VerificationOut,
)
from summaries import SummaryService

logger = logging.getLogger(__name__)

EVERYTHING_ELSE_NAME = "Everything else"
EVERYTHING_ELSE_START = datetime(1970, 1, 1)


def get_current_user_id() -> int:
    return 1


def _current_month_start() -> datetime:
    return span_for(PeriodType.monthly, datetime.utcnow()).start_at


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.parent_id.is_not(None), Category.name)
        )
        if not include_archived:
            stmt = stmt.where(Category.archived_at.is_(None))
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        if data.parent_id is not None:
            parent = self.session.get(Category, data.parent_id)
            if not parent or parent.user_id != self.user_id:
                raise ValueError("Parent category not found")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            parent_id=data.parent_id,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        category.name = name.strip()
        self.session.commit()
        return category

    def archive(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        category.archived_at = datetime.utcnow()
        self.session.commit()


class TransactionService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.dispatcher = dispatcher or build_dispatcher()
        self._categories: Optional[CategoryCache] = None

    @property
    def categories(self) -> CategoryCache:
        if self._categories is None:
            self._categories = CategoryCache.for_session(self.session, self.user_id)
        return self._categories

    @staticmethod
    def _validate_amounts(amount_cents: int, amounts: list[int]) -> None:
        if not amounts:
            raise ValueError("A transaction needs at least one split")
        if sum(amounts) != amount_cents:
            raise ValueError("Split amounts must sum to the transaction amount")

    def _category_id(self, data: SplitIn) -> Optional[int]:
        if data.category_id is not None:
            if self.categories.get(data.category_id) is None:
                raise ValueError("Category not found")
            return data.category_id
        if data.category_name:
            entry = self.categories.find_by_name(data.category_name)
            if entry is None:
                raise ValueError("Category not found")
            return entry.id
        return None

    def _check_outflow(self, outflow_id: Optional[int]) -> None:
        if outflow_id is None:
            return
        outflow = self.session.get(Outflow, outflow_id)
        if not outflow or outflow.user_id != self.user_id:
            raise ValueError("Outflow not found")

    def _publish(self, event_type: EventType, before=None, after=None) -> None:
        self.dispatcher.publish(
            self.session,
            DomainEvent(type=event_type, user_id=self.user_id, before=before, after=after),
        )

    def create(self, data: TransactionIn) -> Transaction:
        splits_in = data.splits or [
            SplitIn(amount_cents=data.amount_cents, category_id=data.category_id)
        ]
        self._validate_amounts(data.amount_cents, [s.amount_cents for s in splits_in])
        txn = Transaction(
            user_id=self.user_id,
            group_id=data.group_id,
            transaction_date=to_utc(data.transaction_date),
            type=data.type,
            status=data.status,
            amount_cents=data.amount_cents,
            description=data.description,
            version=1,
        )
        for position, split_in in enumerate(splits_in):
            self._check_outflow(split_in.outflow_id)
            txn.splits.append(
                TransactionSplit(
                    position=position,
                    amount_cents=split_in.amount_cents,
                    category_id=self._category_id(split_in),
                    outflow_id=split_in.outflow_id,
                )
            )
        self.session.add(txn)
        self.session.commit()
        logger.info(
            f"transaction_created: id={txn.id} user_id={self.user_id} splits={len(txn.splits)}"
        )

        self._publish(EventType.transaction_created, after=TransactionSnapshot.from_model(txn))
        self._match_tagged_outflows(txn.id)
        return self.get(txn.id)

    def _match_tagged_outflows(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        matcher = OutflowPeriodMatcher(self.session, self.user_id)
        for split in list(txn.splits):
            if split.outflow_id is None or split.monthly_period_id is not None:
                continue
            try:
                matcher.assign_split(
                    txn.id, split.id, split.outflow_id, auto_matched=True
                )
            except ValueError as exc:
                logger.warning(
                    f"outflow_auto_match_failed: transaction_id={txn.id} "
                    f"split_id={split.id} error={exc}"
                )

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.splits))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        before = TransactionSnapshot.from_model(txn)
        amount = data.amount_cents if data.amount_cents is not None else txn.amount_cents

        if data.splits is not None:
            self._validate_amounts(amount, [s.amount_cents for s in data.splits])
            existing = {s.id: s for s in txn.splits}
            updated: list[TransactionSplit] = []
            for position, split_in in enumerate(data.splits):
                if split_in.id is not None:
                    split = existing.get(split_in.id)
                    if split is None:
                        raise ValueError("Split not found")
                    if split_in.outflow_id != split.outflow_id:
                        raise ValueError(
                            "Outflow assignment changes go through the outflow endpoints"
                        )
                    split.position = position
                    split.amount_cents = split_in.amount_cents
                    split.category_id = self._category_id(split_in)
                else:
                    self._check_outflow(split_in.outflow_id)
                    split = TransactionSplit(
                        position=position,
                        amount_cents=split_in.amount_cents,
                        category_id=self._category_id(split_in),
                        outflow_id=split_in.outflow_id,
                    )
                updated.append(split)
            txn.splits = updated
        elif data.amount_cents is not None:
            self._validate_amounts(amount, [s.amount_cents for s in txn.splits])

        if data.transaction_date is not None:
            txn.transaction_date = to_utc(data.transaction_date)
        if data.type is not None:
            txn.type = data.type
        if data.status is not None:
            txn.status = data.status
        if data.description is not None:
            txn.description = data.description
        txn.amount_cents = amount
        txn.version += 1
        self.session.flush()
        OutflowPeriodMatcher(self.session, self.user_id).sync_transaction(txn)
        self.session.commit()

        self._publish(
            EventType.transaction_updated,
            before=before,
            after=TransactionSnapshot.from_model(txn),
        )
        self._match_tagged_outflows(txn.id)
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        before = TransactionSnapshot.from_model(txn)
        txn.deleted_at = datetime.utcnow()
        txn.version += 1
        self.session.flush()
        OutflowPeriodMatcher(self.session, self.user_id).sync_transaction(txn)
        self.session.commit()
        self._publish(
            EventType.transaction_deleted,
            before=before,
            after=TransactionSnapshot.from_model(txn),
        )


class BudgetService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.dispatcher = dispatcher or build_dispatcher()

    def _publish(self, event_type: EventType, before=None, after=None) -> None:
        self.dispatcher.publish(
            self.session,
            DomainEvent(type=event_type, user_id=self.user_id, before=before, after=after),
        )

    def _categories(self, category_ids: list[int]) -> list[Category]:
        if not category_ids:
            return []
        categories = self.session.scalars(
            select(Category).where(
                Category.user_id == self.user_id, Category.id.in_(set(category_ids))
            )
        ).all()
        if len(categories) != len(set(category_ids)):
            raise ValueError("Category not found")
        return list(categories)

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def list_active(self) -> list[Budget]:
        return self.session.scalars(
            select(Budget)
            .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            .order_by(Budget.is_system_everything_else, Budget.name)
        ).all()

    def create(self, data: BudgetIn) -> Budget:
        start_at = to_utc(data.start_at)
        end_at = to_utc(data.end_at) if data.end_at else None
        if end_at is not None and end_at <= start_at:
            raise ValueError("Budget end must be after its start")
        budget = Budget(
            user_id=self.user_id,
            group_id=data.group_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            period_type=data.period_type,
            start_at=start_at,
            end_at=end_at,
            is_active=True,
            is_system_everything_else=False,
        )
        budget.categories = self._categories(data.category_ids)
        self.session.add(budget)
        self.session.commit()
        logger.info(f"budget_created: id={budget.id} user_id={self.user_id}")
        self._publish(EventType.budget_created, after=BudgetSnapshot.from_model(budget))
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        if budget.is_system_everything_else and (
            data.category_ids
            or (data.amount_cents or 0) != 0
            or data.is_active is False
            or data.end_at is not None
        ):
            raise ValueError("The everything else budget can only be renamed")
        before = BudgetSnapshot.from_model(budget)
        if data.name is not None:
            budget.name = data.name.strip()
        if data.amount_cents is not None:
            budget.amount_cents = data.amount_cents
        if data.category_ids is not None:
            budget.categories = self._categories(data.category_ids)
        if data.end_at is not None:
            end_at = to_utc(data.end_at)
            if end_at <= budget.start_at:
                raise ValueError("Budget end must be after its start")
            budget.end_at = end_at
        if data.is_active is not None:
            budget.is_active = data.is_active
        self.session.commit()
        self._publish(
            EventType.budget_updated,
            before=before,
            after=BudgetSnapshot.from_model(budget),
        )
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        if budget.is_system_everything_else:
            raise ValueError("The everything else budget cannot be deleted")
        if not budget.is_active:
            return
        before = BudgetSnapshot.from_model(budget)
        budget.is_active = False
        self.session.execute(
            update(BudgetPeriod)
            .where(BudgetPeriod.budget_id == budget.id)
            .values(is_active=False)
        )
        self.session.commit()
        logger.info(f"budget_deleted: id={budget.id} user_id={self.user_id}")
        self._publish(EventType.budget_deleted, before=before)

    def ensure_everything_else_budget(self) -> Budget:
        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.is_system_everything_else.is_(True),
            )
        )
        if existing:
            return existing
        budget = Budget(
            user_id=self.user_id,
            name=EVERYTHING_ELSE_NAME,
            amount_cents=0,
            period_type=PeriodType.monthly,
            start_at=EVERYTHING_ELSE_START,
            is_active=True,
            is_system_everything_else=True,
        )
        self.session.add(budget)
        self.session.commit()
        logger.info(f"everything_else_budget_created: user_id={self.user_id} id={budget.id}")
        self._publish(EventType.budget_created, after=BudgetSnapshot.from_model(budget))
        return budget

    def extend_periods(self, months: Optional[int] = None) -> int:
        generator = BudgetPeriodGenerator(self.session)
        end = horizon_end(months)
        created = 0
        for budget in self.list_active():
            created += len(
                generator.create_periods(
                    budget, max(budget.start_at, _current_month_start()), end
                )
            )
        self.session.commit()
        return created


def create_missing_everything_else_budgets(
    session: Session, dispatcher: Optional[EventDispatcher] = None
) -> int:
    user_ids = set(session.scalars(select(Budget.user_id).distinct()).all())
    user_ids.update(session.scalars(select(Transaction.user_id).distinct()).all())
    covered = set(
        session.scalars(
            select(Budget.user_id).where(Budget.is_system_everything_else.is_(True))
        ).all()
    )
    created = 0
    for user_id in sorted(user_ids - covered):
        BudgetService(session, user_id, dispatcher).ensure_everything_else_budget()
        created += 1
    return created


class OutflowService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        dispatcher: Optional[EventDispatcher] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.dispatcher = dispatcher or build_dispatcher()

    def get(self, outflow_id: int) -> Outflow:
        outflow = self.session.get(Outflow, outflow_id)
        if not outflow or outflow.user_id != self.user_id:
            raise ValueError("Outflow not found")
        return outflow

    def list_active(self) -> list[Outflow]:
        return self.session.scalars(
            select(Outflow)
            .where(Outflow.user_id == self.user_id, Outflow.is_active.is_(True))
            .order_by(Outflow.description)
        ).all()

    def create(self, data: OutflowIn) -> Outflow:
        if data.end_date and data.end_date < data.anchor_date:
            raise ValueError("Outflow end date must not be before its first due date")
        outflow = Outflow(
            user_id=self.user_id,
            group_id=data.group_id,
            description=data.description.strip(),
            amount_cents=data.amount_cents,
            anchor_date=data.anchor_date,
            interval_unit=data.interval_unit,
            interval_count=data.interval_count,
            month_day_policy=data.month_day_policy,
            skip_weekends=data.skip_weekends,
            end_date=data.end_date,
            is_active=True,
        )
        self.session.add(outflow)
        self.session.flush()
        first = span_for(PeriodType.monthly, datetime.combine(data.anchor_date, datetime.min.time()))
        OutflowPeriodGenerator(self.session).create_periods(
            outflow, first.start_at, horizon_end()
        )
        self.session.commit()
        logger.info(f"outflow_created: id={outflow.id} user_id={self.user_id}")
        self.dispatcher.publish(
            self.session,
            DomainEvent(
                type=EventType.outflow_created,
                user_id=self.user_id,
                after=OutflowSnapshot(id=outflow.id, user_id=self.user_id),
            ),
        )
        return outflow

    def extend_periods(self, months: Optional[int] = None) -> int:
        generator = OutflowPeriodGenerator(self.session)
        end = horizon_end(months)
        created = 0
        for outflow in self.list_active():
            created += len(generator.create_periods(outflow, _current_month_start(), end))
        self.session.commit()
        return created

    def assign_split(self, data: AssignSplitIn) -> AssignSplitOut:
        result = OutflowPeriodMatcher(self.session, self.user_id).assign_split(
            data.transaction_id,
            data.split_id,
            data.outflow_id,
            data.payment_type,
            target_period_id=data.target_period_id,
            clear_budget_assignment=data.clear_budget_assignment,
        )
        periods = [result.monthly_period, result.weekly_period, result.bi_monthly_period]
        self._refresh_summaries(
            [p.source_period_id for p in periods if p is not None]
            + result.reconciled.source_period_ids
        )
        return AssignSplitOut(
            success=not result.errors,
            errors=result.errors,
            split_id=result.split.id,
            outflow_id=result.split.outflow_id,
            payment_type=result.split.payment_type,
            monthly_period_id=result.monthly_period.id if result.monthly_period else None,
            weekly_period_id=result.weekly_period.id if result.weekly_period else None,
            bi_monthly_period_id=(
                result.bi_monthly_period.id if result.bi_monthly_period else None
            ),
            periods_updated=result.periods_updated,
            message=result.message,
        )

    def unassign_split(self, data: UnassignSplitIn) -> AssignSplitOut:
        txn = TransactionService(self.session, self.user_id, self.dispatcher).get(
            data.transaction_id
        )
        previous = [
            s for s in txn.splits if s.id == data.split_id and s.outflow_id is not None
        ]
        source_ids = []
        if previous:
            for period_id in (
                previous[0].monthly_period_id,
                previous[0].weekly_period_id,
                previous[0].bi_monthly_period_id,
            ):
                period = self.session.get(OutflowPeriod, period_id) if period_id else None
                if period is not None:
                    source_ids.append(period.source_period_id)
        result = OutflowPeriodMatcher(self.session, self.user_id).unassign_split(
            data.transaction_id, data.split_id
        )
        self._refresh_summaries(source_ids + result.reconciled.source_period_ids)
        return AssignSplitOut(
            success=not result.errors,
            errors=result.errors,
            split_id=result.split.id,
            message=result.message,
        )

    def _refresh_summaries(self, source_period_ids: list[str]) -> None:
        SummaryService(self.session).refresh_for_periods(
            self.user_id, None, source_period_ids
        )


class VerificationService:
    """Detect drift in derived data and repair it by idempotent rebuilds."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def verify(self) -> VerificationOut:
        return VerificationOut(
            boundary_issues=[
                f"{issue.period_id}: {issue.problem}"
                for issue in SourcePeriodService(self.session).verify_boundaries()
            ],
            outflow_mismatches=self.verify_outflow_periods(),
            budget_drift=self.verify_budget_spending(),
        )

    def verify_outflow_periods(self) -> list[str]:
        mismatches: list[str] = []
        periods = self.session.scalars(
            select(OutflowPeriod)
            .options(selectinload(OutflowPeriod.splits))
            .where(OutflowPeriod.user_id == self.user_id)
            .order_by(OutflowPeriod.id)
        ).all()
        for period in periods:
            totals = compute_totals(period)
            if (
                totals.amount_paid_cents != period.amount_paid_cents
                or totals.extra_principal_cents != period.extra_principal_cents
                or totals.amount_unpaid_cents != period.amount_unpaid_cents
                or totals.status != period.status
            ):
                mismatches.append(
                    f"{period.id}: paid={period.amount_paid_cents} "
                    f"expected={totals.amount_paid_cents} status={period.status.value} "
                    f"expected_status={totals.status.value}"
                )
        return mismatches

    def verify_budget_spending(self) -> list[str]:
        drift: list[str] = []
        applied: dict[tuple[int, str], int] = defaultdict(int)
        rows = self.session.execute(
            select(
                BudgetContribution.budget_id,
                BudgetContribution.source_period_id,
                func.sum(BudgetContribution.amount_cents),
            )
            .where(BudgetContribution.user_id == self.user_id)
            .group_by(BudgetContribution.budget_id, BudgetContribution.source_period_id)
        ).all()
        for budget_id, source_period_id, total in rows:
            applied[(budget_id, source_period_id)] = int(total or 0)

        periods = self.session.scalars(
            select(BudgetPeriod)
            .where(BudgetPeriod.user_id == self.user_id)
            .order_by(BudgetPeriod.id)
        ).all()
        for period in periods:
            expected = applied.pop((period.budget_id, period.source_period_id), 0)
            if period.spent_cents != expected:
                drift.append(f"{period.id}: spent={period.spent_cents} applied={expected}")
            if period.remaining_cents != period.allocated_cents - period.spent_cents:
                drift.append(f"{period.id}: remaining out of step with spent")
        for (budget_id, source_period_id), total in sorted(applied.items()):
            if total:
                drift.append(f"{budget_id}_{source_period_id}: missing period for {total}")

        stale = self.session.execute(
            select(BudgetContribution.split_id, BudgetContribution.budget_id)
            .join(TransactionSplit, TransactionSplit.id == BudgetContribution.split_id)
            .where(
                BudgetContribution.user_id == self.user_id,
                (TransactionSplit.budget_id.is_(None))
                | (TransactionSplit.budget_id != BudgetContribution.budget_id),
            )
            .distinct()
        ).all()
        for split_id, budget_id in stale:
            drift.append(f"split {split_id}: applied to budget {budget_id} but assigned elsewhere")
        return drift

    def repair_budget_spending(self) -> int:
        """Rebuild every budget period total from scratch via reconciliation."""
        self.session.execute(
            update(BudgetPeriod)
            .where(BudgetPeriod.user_id == self.user_id)
            .values(spent_cents=0, remaining_cents=BudgetPeriod.allocated_cents)
        )
        self.session.execute(
            delete(BudgetContribution).where(BudgetContribution.user_id == self.user_id)
        )
        self.session.commit()

        reconciler = SpendingReconciler(self.session, self.user_id)
        transactions = self.session.scalars(
            select(Transaction)
            .options(selectinload(Transaction.splits))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.id)
        ).all()
        for txn in transactions:
            reconciler.reconcile(None, TransactionSnapshot.from_model(txn), force=True)
        SummaryService(self.session).rebuild_all(self.user_id)
        logger.info(
            f"budget_spending_repaired: user_id={self.user_id} transactions={len(transactions)}"
        )
        return len(transactions)

    def repair_outflow_periods(self) -> int:
        periods = self.session.scalars(
            select(OutflowPeriod)
            .options(selectinload(OutflowPeriod.splits))
            .where(OutflowPeriod.user_id == self.user_id)
        ).all()
        result = BatchWriter(self.session).commit_in_chunks(
            WriteOp(key=period.id, apply=_recompute_op(period)) for period in periods
        )
        failed = result.failed_keys()
        if failed:
            logger.warning(
                f"outflow_periods_repair_failed: user_id={self.user_id} periods={len(failed)}"
            )
        return len(periods) - len(failed)


def _recompute_op(period: OutflowPeriod):
    def apply(session: Session) -> None:
        recompute_period(period)

    return apply
