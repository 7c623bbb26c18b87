import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session, selectinload

from budget_periods import BudgetPeriodGenerator
from config import get_settings
from models import (
    Budget,
    BudgetContribution,
    Transaction,
    TransactionSplit,
    TransactionType,
)
from periods import to_utc
from reconciliation import ReconcileResult, SpendingReconciler, TransactionSnapshot
from schemas import ReassignForBudgetOut, ReassignFromDeletedOut, RecalculateOut
from summaries import SummaryService

logger = logging.getLogger(__name__)


def _changed_splits(
    snapshot: TransactionSnapshot, result: ReconcileResult
) -> dict[int, Optional[int]]:
    current = {s.id: s.budget_id for s in snapshot.splits}
    return {
        split_id: budget_id
        for split_id, budget_id in result.assignments.items()
        if current.get(split_id) != budget_id
    }


class BudgetReassignmentService:
    """Move splits between budgets after budget definitions change."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _budget(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        return budget

    def _transactions(self, transaction_ids: Iterable[int]) -> list[Transaction]:
        ids = sorted(set(transaction_ids))
        if not ids:
            return []
        return list(
            self.session.scalars(
                select(Transaction)
                .options(selectinload(Transaction.splits))
                .where(Transaction.id.in_(ids), Transaction.user_id == self.user_id)
                .order_by(Transaction.id)
            ).all()
        )

    def _refresh_summaries(self, touched: dict[Optional[int], set[str]]) -> None:
        summaries = SummaryService(self.session)
        for group_id, source_ids in touched.items():
            summaries.refresh_for_periods(self.user_id, group_id, source_ids)

    def _rereconcile(
        self, reconciler: SpendingReconciler, txn: Transaction
    ) -> tuple[TransactionSnapshot, ReconcileResult]:
        snapshot = TransactionSnapshot.from_model(txn)
        return snapshot, reconciler.reconcile(snapshot, snapshot, force=True)

    def reassign_transactions_for_budget(
        self,
        budget_id: int,
        categories_added: Iterable[int] = (),
        categories_removed: Iterable[int] = (),
    ) -> ReassignForBudgetOut:
        """Re-resolve splits affected by a change to the budget's category set.

        Removing categories re-resolves every transaction with a split on the
        budget. Adding categories picks up unassigned or catch-all splits whose
        category lineage includes an added category.
        """
        budget = self._budget(budget_id)
        added = set(categories_added)
        removed = set(categories_removed)
        reconciler = SpendingReconciler(self.session, self.user_id)
        cache = reconciler.resolver.category_cache

        transaction_ids: set[int] = set()
        if removed:
            transaction_ids.update(
                self.session.scalars(
                    select(TransactionSplit.transaction_id)
                    .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
                    .where(
                        Transaction.user_id == self.user_id,
                        Transaction.deleted_at.is_(None),
                        TransactionSplit.budget_id == budget.id,
                    )
                ).all()
            )
        if added:
            budgets = self.session.scalars(
                select(Budget)
                .options(selectinload(Budget.categories))
                .where(Budget.user_id == self.user_id)
            ).all()
            catch_all_ids = [b.id for b in budgets if not b.categories and b.id != budget.id]
            rows = self.session.execute(
                select(TransactionSplit.transaction_id, TransactionSplit.category_id)
                .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.deleted_at.is_(None),
                    TransactionSplit.outflow_id.is_(None),
                    or_(
                        TransactionSplit.budget_id.is_(None),
                        TransactionSplit.budget_id.in_(catch_all_ids),
                    ),
                )
            ).all()
            for transaction_id, category_id in rows:
                if added & set(cache.lineage(category_id)):
                    transaction_ids.add(transaction_id)

        out = ReassignForBudgetOut()
        touched: dict[Optional[int], set[str]] = {}
        for txn in self._transactions(transaction_ids):
            snapshot, result = self._rereconcile(reconciler, txn)
            changed = _changed_splits(snapshot, result)
            if changed:
                out.transactions_reassigned += 1
                out.splits_reassigned += len(changed)
            out.errors.extend(result.errors)
            touched.setdefault(txn.group_id, set()).update(result.source_period_ids)
        self._refresh_summaries(touched)
        out.success = not out.errors
        logger.info(
            f"budget_reassigned: budget_id={budget.id} added={sorted(added)} "
            f"removed={sorted(removed)} transactions={out.transactions_reassigned} "
            f"splits={out.splits_reassigned} errors={len(out.errors)}"
        )
        return out

    def reassign_transactions_from_deleted_budget(
        self, budget_id: int
    ) -> ReassignFromDeletedOut:
        budget = self._budget(budget_id)
        if budget.is_active:
            raise ValueError("Budget must be deleted before reassigning its transactions")

        split_ids = set(
            self.session.scalars(
                select(TransactionSplit.id)
                .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.deleted_at.is_(None),
                    TransactionSplit.budget_id == budget.id,
                )
            ).all()
        )
        ledger = self.session.execute(
            select(BudgetContribution.transaction_id, BudgetContribution.split_id).where(
                BudgetContribution.budget_id == budget.id
            )
        ).all()
        split_ids.update(row.split_id for row in ledger)
        transaction_ids = set(row.transaction_id for row in ledger)
        if split_ids:
            transaction_ids.update(
                self.session.scalars(
                    select(TransactionSplit.transaction_id).where(
                        TransactionSplit.id.in_(split_ids)
                    )
                ).all()
            )

        out = ReassignFromDeletedOut()
        reconciler = SpendingReconciler(self.session, self.user_id)
        batch_size = get_settings().batch_max_ops
        ordered = sorted(transaction_ids)
        touched: dict[Optional[int], set[str]] = {}
        for start in range(0, len(ordered), batch_size):
            out.batch_count += 1
            for txn in self._transactions(ordered[start : start + batch_size]):
                snapshot, result = self._rereconcile(reconciler, txn)
                out.errors.extend(result.errors)
                moved = False
                for split in snapshot.splits:
                    if split.id not in split_ids:
                        continue
                    new_budget = result.assignments.get(split.id)
                    key = str(new_budget) if new_budget is not None else "unassigned"
                    out.budget_assignments[key] = out.budget_assignments.get(key, 0) + 1
                    moved = True
                if moved:
                    out.transactions_reassigned += 1
                touched.setdefault(txn.group_id, set()).update(result.source_period_ids)

        if not out.errors:
            removed = BudgetPeriodGenerator(self.session).remove_periods(budget.id)
            self.session.execute(
                delete(BudgetContribution).where(BudgetContribution.budget_id == budget.id)
            )
            self.session.commit()
            logger.info(f"budget_periods_removed: budget_id={budget.id} count={removed}")
        else:
            out.error = out.errors[0]
        self._refresh_summaries(touched)
        out.success = not out.errors
        logger.info(
            f"deleted_budget_reassigned: budget_id={budget.id} "
            f"transactions={out.transactions_reassigned} batches={out.batch_count} "
            f"errors={len(out.errors)}"
        )
        return out

    def recalculate_historical_transactions(
        self,
        budget_id: int,
        category_ids: Optional[Iterable[int]] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
    ) -> RecalculateOut:
        """Re-resolve past transactions a new or widened budget may now claim.

        An empty category list means every category is considered.
        """
        budget = self._budget(budget_id)
        categories = set(category_ids) if category_ids is not None else set(budget.category_ids)
        start = to_utc(start_at) if start_at else budget.start_at
        end = to_utc(end_at) if end_at else budget.end_at

        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.splits))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.type == TransactionType.expense,
                Transaction.transaction_date >= start,
            )
            .order_by(Transaction.transaction_date, Transaction.id)
        )
        if end is not None:
            stmt = stmt.where(Transaction.transaction_date < end)
        reconciler = SpendingReconciler(self.session, self.user_id)
        cache = reconciler.resolver.category_cache

        out = RecalculateOut()
        touched: dict[Optional[int], set[str]] = {}
        for txn in self.session.scalars(stmt).all():
            if categories and not any(
                categories & set(cache.lineage(split.category_id)) for split in txn.splits
            ):
                continue
            snapshot, result = self._rereconcile(reconciler, txn)
            if _changed_splits(snapshot, result):
                out.transactions_updated += 1
            out.spending_updated += result.budget_periods_updated
            out.errors.extend(result.errors)
            touched.setdefault(txn.group_id, set()).update(result.source_period_ids)
        self._refresh_summaries(touched)
        out.success = not out.errors
        logger.info(
            f"historical_recalculated: budget_id={budget.id} "
            f"transactions={out.transactions_updated} periods={out.spending_updated}"
        )
        return out
