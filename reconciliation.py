"""Delta-based reconciliation of budget spending.

For one transaction change the engine computes, per
``(budget_id, source_period_id)`` pair, the difference between what is
currently applied (the contribution ledger) and what the new transaction
state should contribute, and applies that difference as a SQL-side
increment. Each pair commits on its own together with its ledger rows, so
replaying the same change is a no-op and one failing pair leaves the others
applied. The last reconciled version of every transaction is kept even after
a delete, so late or redelivered events for it are recognised as stale.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from assignment import BudgetAssignmentResolver
from batching import BatchWriter, WriteOp
from budget_periods import BUDGET_PERIOD_TYPES, budget_period_id, ensure_budget_period
from models import (
    Budget,
    BudgetContribution,
    BudgetPeriod,
    PeriodType,
    ReconciledVersion,
    Transaction,
    TransactionSplit,
    TransactionStatus,
    TransactionType,
)
from periods import PeriodSpan, SourcePeriodService, period_keys, to_utc

logger = logging.getLogger(__name__)

PairKey = tuple[int, str]


@dataclass(frozen=True)
class SplitSnapshot:
    id: int
    amount_cents: int
    category_id: Optional[int] = None
    budget_id: Optional[int] = None
    outflow_id: Optional[int] = None


@dataclass(frozen=True)
class TransactionSnapshot:
    id: int
    user_id: int
    transaction_date: datetime
    type: TransactionType
    status: TransactionStatus
    amount_cents: int
    version: int = 1
    group_id: Optional[int] = None
    deleted: bool = False
    splits: tuple[SplitSnapshot, ...] = ()

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionSnapshot":
        return cls(
            id=txn.id,
            user_id=txn.user_id,
            group_id=txn.group_id,
            transaction_date=to_utc(txn.transaction_date),
            type=txn.type,
            status=txn.status,
            amount_cents=txn.amount_cents,
            version=txn.version,
            deleted=txn.deleted_at is not None,
            splits=tuple(
                SplitSnapshot(
                    id=s.id,
                    amount_cents=s.amount_cents,
                    category_id=s.category_id,
                    budget_id=s.budget_id,
                    outflow_id=s.outflow_id,
                )
                for s in txn.splits
            ),
        )


@dataclass
class ReconcileResult:
    budget_periods_updated: int = 0
    budgets_affected: list[int] = field(default_factory=list)
    period_types_updated: list[str] = field(default_factory=list)
    source_period_ids: list[str] = field(default_factory=list)
    assignments: dict[int, Optional[int]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def success(self) -> bool:
        return not self.errors


def _spending_view(snapshot: Optional[TransactionSnapshot]):
    if snapshot is None or snapshot.deleted:
        return None
    return (
        snapshot.type,
        snapshot.status,
        period_keys(snapshot.transaction_date, BUDGET_PERIOD_TYPES),
        tuple(
            (s.id, s.amount_cents, s.category_id, s.budget_id, s.outflow_id)
            for s in snapshot.splits
        ),
    )


def spending_relevant_changed(
    old: Optional[TransactionSnapshot], new: Optional[TransactionSnapshot]
) -> bool:
    """False when only fields that never affect budget spending changed."""
    return _spending_view(old) != _spending_view(new)


@dataclass
class _Contribution:
    split_id: int
    budget_id: int
    source_period_id: str
    period_type: PeriodType
    amount_cents: int


class SpendingReconciler:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        resolver: Optional[BudgetAssignmentResolver] = None,
        writer: Optional[BatchWriter] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.resolver = resolver or BudgetAssignmentResolver(session, user_id)
        self.writer = writer or BatchWriter(session)

    def _applied(self, transaction_id: int) -> list[BudgetContribution]:
        return list(
            self.session.scalars(
                select(BudgetContribution).where(
                    BudgetContribution.transaction_id == transaction_id
                )
            ).all()
        )

    def _applied_version(
        self, transaction_id: int, applied: list[BudgetContribution]
    ) -> Optional[int]:
        versions = [c.transaction_version for c in applied]
        recorded = self.session.scalar(
            select(ReconciledVersion.version).where(
                ReconciledVersion.transaction_id == transaction_id
            )
        )
        if recorded is not None:
            versions.append(recorded)
        return max(versions, default=None)

    def _target(
        self, new: TransactionSnapshot
    ) -> tuple[list[_Contribution], dict[int, Optional[int]], dict[str, PeriodSpan]]:
        contributions: list[_Contribution] = []
        assignments: dict[int, Optional[int]] = {}
        spans: dict[str, PeriodSpan] = {}
        for split in new.splits:
            assignment = self.resolver.resolve(
                split,
                new.transaction_date,
                transaction_type=new.type,
                status=new.status,
            )
            if split.outflow_id is None:
                assignments[split.id] = assignment.budget_id if assignment else None
            if assignment is None or split.amount_cents == 0:
                continue
            for period_type, span in assignment.spans.items():
                spans[span.id] = span
                contributions.append(
                    _Contribution(
                        split_id=split.id,
                        budget_id=assignment.budget_id,
                        source_period_id=span.id,
                        period_type=period_type,
                        amount_cents=split.amount_cents,
                    )
                )
        return contributions, assignments, spans

    def reconcile(
        self,
        old: Optional[TransactionSnapshot],
        new: Optional[TransactionSnapshot],
        *,
        force: bool = False,
    ) -> ReconcileResult:
        """Bring budget periods in line with ``new``; never raises for store errors."""
        subject = new or old
        if subject is None:
            return ReconcileResult(skipped=True)
        if not force and old is not None and not spending_relevant_changed(old, new):
            return ReconcileResult(skipped=True)

        applied = self._applied(subject.id)
        applied_version = self._applied_version(subject.id, applied)
        if new is not None and applied_version is not None:
            if new.version < applied_version:
                logger.info(
                    f"reconcile_stale: transaction_id={subject.id} "
                    f"version={new.version} applied_version={applied_version}"
                )
                return ReconcileResult(skipped=True)

        if new is not None and not new.deleted:
            target, assignments, spans = self._target(new)
        else:
            target, assignments, spans = [], {}, {}
        version = new.version if new is not None else subject.version

        before: dict[PairKey, int] = defaultdict(int)
        for row in applied:
            before[(row.budget_id, row.source_period_id)] += row.amount_cents
        after: dict[PairKey, int] = defaultdict(int)
        rows_by_pair: dict[PairKey, list[_Contribution]] = defaultdict(list)
        for contribution in target:
            pair = (contribution.budget_id, contribution.source_period_id)
            after[pair] += contribution.amount_cents
            rows_by_pair[pair].append(contribution)

        pair_types: dict[PairKey, PeriodType] = {}
        for row in applied:
            pair_types[(row.budget_id, row.source_period_id)] = row.period_type
        for pair, rows in rows_by_pair.items():
            pair_types[pair] = rows[0].period_type

        ops: list[WriteOp] = []
        deltas: dict[PairKey, int] = {}
        for pair in sorted(set(before) | set(after)):
            delta = after.get(pair, 0) - before.get(pair, 0)
            deltas[pair] = delta
            ops.append(
                WriteOp(
                    key=f"{pair[0]}:{pair[1]}",
                    apply=self._pair_op(
                        subject, version, pair, delta, rows_by_pair.get(pair, []), spans
                    ),
                )
            )

        changed_splits = {
            split_id: budget_id
            for split_id, budget_id in assignments.items()
            if budget_id != _current_budget(new, split_id)
        }
        if changed_splits:
            ops.append(
                WriteOp(
                    key=f"splits:{subject.id}",
                    apply=self._assignment_op(changed_splits),
                )
            )
        deleted = new is None or new.deleted
        ops.append(
            WriteOp(
                key=f"version:{subject.id}",
                apply=self._version_op(subject, version, deleted),
            )
        )

        batch = self.writer.commit_each(ops)
        failed = batch.failed_keys()
        result = ReconcileResult(assignments=assignments)
        budgets: set[int] = set()
        types: set[str] = set()
        source_ids: set[str] = set()
        for pair, delta in deltas.items():
            if f"{pair[0]}:{pair[1]}" in failed:
                result.errors.append(
                    f"Failed to update budget period {budget_period_id(*pair)}"
                )
                continue
            if delta == 0:
                continue
            result.budget_periods_updated += 1
            budgets.add(pair[0])
            types.add(pair_types[pair].value)
            source_ids.add(pair[1])
        if f"splits:{subject.id}" in failed:
            result.errors.append(
                f"Failed to write budget assignments for transaction {subject.id}"
            )
        if f"version:{subject.id}" in failed:
            result.errors.append(
                f"Failed to record reconciled version for transaction {subject.id}"
            )
        result.budgets_affected = sorted(budgets)
        result.period_types_updated = sorted(types)
        result.source_period_ids = sorted(source_ids)
        logger.info(
            f"reconcile: transaction_id={subject.id} version={version} "
            f"periods_updated={result.budget_periods_updated} errors={len(result.errors)}"
        )
        return result

    def _pair_op(
        self,
        subject: TransactionSnapshot,
        version: int,
        pair: PairKey,
        delta: int,
        rows: list[_Contribution],
        spans: dict[str, PeriodSpan],
    ):
        budget_id, source_period_id = pair

        def apply(session: Session) -> None:
            if delta != 0:
                period_id = budget_period_id(budget_id, source_period_id)
                if session.get(BudgetPeriod, period_id) is None:
                    budget = session.get(Budget, budget_id)
                    span = spans.get(source_period_id)
                    if budget is None or span is None:
                        raise ValueError(f"Budget period {period_id} not found")
                    source = SourcePeriodService(session).ensure_span(span)
                    ensure_budget_period(session, budget, source)
                session.execute(
                    update(BudgetPeriod)
                    .where(BudgetPeriod.id == period_id)
                    .values(spent_cents=BudgetPeriod.spent_cents + delta)
                )
                session.execute(
                    update(BudgetPeriod)
                    .where(BudgetPeriod.id == period_id)
                    .values(
                        remaining_cents=BudgetPeriod.allocated_cents
                        - BudgetPeriod.spent_cents
                    )
                )
            session.execute(
                delete(BudgetContribution).where(
                    BudgetContribution.transaction_id == subject.id,
                    BudgetContribution.budget_id == budget_id,
                    BudgetContribution.source_period_id == source_period_id,
                )
            )
            for row in rows:
                session.add(
                    BudgetContribution(
                        user_id=subject.user_id,
                        transaction_id=subject.id,
                        split_id=row.split_id,
                        budget_id=row.budget_id,
                        source_period_id=row.source_period_id,
                        period_type=row.period_type,
                        amount_cents=row.amount_cents,
                        transaction_version=version,
                    )
                )

        return apply

    @staticmethod
    def _version_op(subject: TransactionSnapshot, version: int, deleted: bool):
        def apply(session: Session) -> None:
            marker = session.get(ReconciledVersion, subject.id, populate_existing=True)
            if marker is None:
                session.add(
                    ReconciledVersion(
                        transaction_id=subject.id,
                        user_id=subject.user_id,
                        version=version,
                        deleted=deleted,
                    )
                )
            elif version >= marker.version:
                marker.version = version
                marker.deleted = deleted

        return apply

    @staticmethod
    def _assignment_op(changed: dict[int, Optional[int]]):
        def apply(session: Session) -> None:
            for split_id, budget_id in changed.items():
                session.execute(
                    update(TransactionSplit)
                    .where(
                        TransactionSplit.id == split_id,
                        TransactionSplit.outflow_id.is_(None),
                    )
                    .values(budget_id=budget_id)
                )

        return apply


def _current_budget(
    snapshot: Optional[TransactionSnapshot], split_id: int
) -> Optional[int]:
    if snapshot is None:
        return None
    for split in snapshot.splits:
        if split.id == split_id:
            return split.budget_id
    return None
