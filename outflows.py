import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from batching import with_retries
from models import (
    Outflow,
    OutflowPeriod,
    OutflowPeriodSplit,
    OutflowStatus,
    PaymentType,
    PeriodType,
    SourcePeriod,
    Transaction,
    TransactionSplit,
)
from periods import SourcePeriodService, periods_covering, span_for, to_utc
from reconciliation import ReconcileResult, SpendingReconciler, TransactionSnapshot
from recurrence import due_dates_between

logger = logging.getLogger(__name__)

OUTFLOW_PERIOD_TYPES = (PeriodType.monthly, PeriodType.weekly, PeriodType.bi_monthly)
ADVANCE_WINDOW_DAYS = 7

_SPLIT_PERIOD_FIELDS = {
    PeriodType.monthly: "monthly_period_id",
    PeriodType.weekly: "weekly_period_id",
    PeriodType.bi_monthly: "bi_monthly_period_id",
}


class SplitAlreadyAssignedError(ValueError):
    pass


class PeriodsNotFoundError(ValueError):
    pass


def outflow_period_id(outflow_id: int, source_period_id: str) -> str:
    return f"{outflow_id}_{source_period_id}"


def classify_payment_type(paid_on: date, due_date: Optional[date]) -> PaymentType:
    if due_date is None:
        return PaymentType.regular
    if paid_on > due_date:
        return PaymentType.catch_up
    if paid_on < due_date - timedelta(days=ADVANCE_WINDOW_DAYS):
        return PaymentType.advance
    return PaymentType.regular


def derive_status(
    paid_cents: int, due_cents: int, *, is_due_period: bool, has_payments: bool
) -> OutflowStatus:
    if not is_due_period:
        return OutflowStatus.paid if has_payments else OutflowStatus.pending
    if due_cents <= 0 or paid_cents >= due_cents:
        return OutflowStatus.paid
    if paid_cents > 0:
        return OutflowStatus.partially_paid
    return OutflowStatus.pending


@dataclass(frozen=True)
class PeriodTotals:
    amount_paid_cents: int
    amount_unpaid_cents: int
    extra_principal_cents: int
    status: OutflowStatus


def compute_totals(period: OutflowPeriod) -> PeriodTotals:
    """Paid is capped at the amount due; anything above it counts as extra principal."""
    regular_total = sum(
        ref.amount_cents
        for ref in period.splits
        if ref.payment_type != PaymentType.extra_principal
    )
    explicit_extra = sum(
        ref.amount_cents
        for ref in period.splits
        if ref.payment_type == PaymentType.extra_principal
    )
    due = period.amount_due_cents
    if period.is_due_period:
        paid = min(regular_total, due)
        overflow = regular_total - paid
        unpaid = max(due - paid, 0)
    else:
        paid, overflow, unpaid = regular_total, 0, 0
    return PeriodTotals(
        amount_paid_cents=paid,
        amount_unpaid_cents=unpaid,
        extra_principal_cents=explicit_extra + overflow,
        status=derive_status(
            paid,
            due,
            is_due_period=period.is_due_period,
            has_payments=bool(period.splits),
        ),
    )


def recompute_period(period: OutflowPeriod) -> OutflowPeriod:
    totals = compute_totals(period)
    period.amount_paid_cents = totals.amount_paid_cents
    period.amount_unpaid_cents = totals.amount_unpaid_cents
    period.extra_principal_cents = totals.extra_principal_cents
    period.status = totals.status
    return period


class OutflowPeriodGenerator:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_periods(
        self, outflow: Outflow, start: datetime, end: datetime
    ) -> list[OutflowPeriod]:
        """Create missing outflow periods of every tracked type overlapping ``[start, end)``."""
        start, end = to_utc(start), to_utc(end)
        SourcePeriodService(self.session).ensure_range(start, end)
        now = datetime.utcnow()
        created: list[OutflowPeriod] = []
        for period_type in OUTFLOW_PERIOD_TYPES:
            for source in periods_covering(self.session, start, end, period_type):
                period_id = outflow_period_id(outflow.id, source.id)
                if self.session.get(OutflowPeriod, period_id):
                    continue
                due_dates = due_dates_between(
                    outflow, source.start_at.date(), source.end_at.date()
                )
                period = OutflowPeriod(
                    id=period_id,
                    outflow_id=outflow.id,
                    source_period_id=source.id,
                    period_type=period_type,
                    user_id=outflow.user_id,
                    group_id=outflow.group_id,
                    start_at=source.start_at,
                    end_at=source.end_at,
                    number_of_occurrences=len(due_dates),
                    due_date=due_dates[0] if due_dates else None,
                    amount_due_cents=outflow.amount_cents * len(due_dates),
                    amount_paid_cents=0,
                    amount_unpaid_cents=outflow.amount_cents * len(due_dates),
                    extra_principal_cents=0,
                    status=OutflowStatus.pending,
                    is_due_period=bool(due_dates),
                    is_current=source.start_at <= now < source.end_at,
                )
                self.session.add(period)
                created.append(period)
        if created:
            self.session.flush()
            logger.info(
                f"outflow_periods_created: outflow_id={outflow.id} count={len(created)}"
            )
        return created


@dataclass
class OutflowAssignmentResult:
    split: TransactionSplit
    monthly_period: Optional[OutflowPeriod]
    weekly_period: Optional[OutflowPeriod]
    bi_monthly_period: Optional[OutflowPeriod]
    periods_updated: int
    message: str
    reconciled: ReconcileResult

    @property
    def errors(self) -> list[str]:
        return self.reconciled.errors


class OutflowPeriodMatcher:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _transaction(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(selectinload(Transaction.splits))
            .where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
            )
        )
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    @staticmethod
    def _split(txn: Transaction, split_id: int) -> TransactionSplit:
        for split in txn.splits:
            if split.id == split_id:
                return split
        raise ValueError("Split not found")

    def _outflow(self, outflow_id: int) -> Outflow:
        outflow = self.session.get(Outflow, outflow_id)
        if not outflow or outflow.user_id != self.user_id:
            raise ValueError("Outflow not found")
        if not outflow.is_active:
            raise ValueError("Outflow is inactive")
        return outflow

    def _period_containing(
        self, outflow: Outflow, period_type: PeriodType, instant: datetime
    ) -> Optional[OutflowPeriod]:
        return self.session.get(
            OutflowPeriod, outflow_period_id(outflow.id, span_for(period_type, instant).id)
        )

    def _find_periods(
        self,
        outflow: Outflow,
        instant: datetime,
        target_period_id: Optional[str],
    ) -> dict[PeriodType, OutflowPeriod]:
        found: dict[PeriodType, OutflowPeriod] = {}
        if target_period_id:
            source = self.session.get(SourcePeriod, target_period_id)
            if not source:
                raise ValueError("Source period not found")
            for period_type in OUTFLOW_PERIOD_TYPES:
                overlapping = self.session.scalars(
                    select(OutflowPeriod)
                    .where(
                        OutflowPeriod.outflow_id == outflow.id,
                        OutflowPeriod.period_type == period_type,
                        OutflowPeriod.start_at < source.end_at,
                        OutflowPeriod.end_at > source.start_at,
                    )
                    .order_by(OutflowPeriod.start_at)
                ).all()
                exact = [p for p in overlapping if p.source_period_id == source.id]
                if exact:
                    found[period_type] = exact[0]
                elif overlapping:
                    found[period_type] = overlapping[0]
            return found

        for period_type in OUTFLOW_PERIOD_TYPES:
            period = self._period_containing(outflow, period_type, instant)
            if period is None:
                span = span_for(PeriodType.monthly, instant)
                OutflowPeriodGenerator(self.session).create_periods(
                    outflow, span.start_at, span.end_at
                )
                period = self._period_containing(outflow, period_type, instant)
            if period is not None:
                found[period_type] = period
        return found

    def assign_split(
        self,
        transaction_id: int,
        split_id: int,
        outflow_id: int,
        payment_type: Optional[PaymentType] = None,
        *,
        target_period_id: Optional[str] = None,
        clear_budget_assignment: bool = True,
        auto_matched: bool = False,
    ) -> OutflowAssignmentResult:
        """Attach a split to every mirrored period of one outflow in a single commit."""
        txn = self._transaction(transaction_id)
        split = self._split(txn, split_id)
        outflow = self._outflow(outflow_id)
        if split.outflow_id is not None and split.outflow_id != outflow.id:
            raise SplitAlreadyAssignedError(
                f"Split is already assigned to outflow {split.outflow_id}"
            )
        if split.budget_id is not None and not clear_budget_assignment:
            raise ValueError("Split is assigned to a budget")

        before = TransactionSnapshot.from_model(txn)
        instant = to_utc(txn.transaction_date)
        periods = self._find_periods(outflow, instant, target_period_id)
        if not periods:
            raise PeriodsNotFoundError("No outflow periods found for this split")

        monthly = periods.get(PeriodType.monthly)
        resolved_type = payment_type or classify_payment_type(
            instant.date(), monthly.due_date if monthly else None
        )
        target_ids = {p.id for p in periods.values()}

        def apply() -> None:
            try:
                touched = self._detach(split.id, keep=target_ids)
                for period in periods.values():
                    ref = next((r for r in period.splits if r.split_id == split.id), None)
                    if ref is None:
                        ref = OutflowPeriodSplit(
                            transaction_id=txn.id,
                            split_id=split.id,
                            amount_cents=split.amount_cents,
                            payment_type=resolved_type,
                            transaction_date=instant,
                            is_auto_matched=auto_matched,
                            matched_at=datetime.utcnow(),
                        )
                        period.splits.append(ref)
                    else:
                        ref.amount_cents = split.amount_cents
                        ref.payment_type = resolved_type
                        ref.transaction_date = instant
                    recompute_period(period)
                for period in touched:
                    recompute_period(period)
                split.outflow_id = outflow.id
                split.payment_type = resolved_type
                if clear_budget_assignment:
                    split.budget_id = None
                for period_type, attr in _SPLIT_PERIOD_FIELDS.items():
                    period = periods.get(period_type)
                    setattr(split, attr, period.id if period else None)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        with_retries(apply)
        logger.info(
            f"outflow_split_assigned: transaction_id={txn.id} split_id={split.id} "
            f"outflow_id={outflow.id} periods={len(periods)} payment_type={resolved_type.value}"
        )

        after = TransactionSnapshot.from_model(self._transaction(transaction_id))
        reconciled = SpendingReconciler(self.session, self.user_id).reconcile(
            before, after, force=True
        )
        return OutflowAssignmentResult(
            split=split,
            monthly_period=periods.get(PeriodType.monthly),
            weekly_period=periods.get(PeriodType.weekly),
            bi_monthly_period=periods.get(PeriodType.bi_monthly),
            periods_updated=len(periods),
            message=f"Split assigned to {len(periods)} outflow periods",
            reconciled=reconciled,
        )

    def _detach(self, split_id: int, keep: set[str] = frozenset()) -> list[OutflowPeriod]:
        refs = self.session.scalars(
            select(OutflowPeriodSplit).where(OutflowPeriodSplit.split_id == split_id)
        ).all()
        touched: list[OutflowPeriod] = []
        for ref in refs:
            if ref.outflow_period_id in keep:
                continue
            period = ref.period
            period.splits.remove(ref)
            touched.append(period)
        return touched

    def unassign_split(
        self, transaction_id: int, split_id: int
    ) -> OutflowAssignmentResult:
        txn = self._transaction(transaction_id)
        split = self._split(txn, split_id)
        if split.outflow_id is None:
            raise ValueError("Split is not assigned to an outflow")
        before = TransactionSnapshot.from_model(txn)

        def apply() -> None:
            try:
                for period in self._detach(split.id):
                    recompute_period(period)
                split.outflow_id = None
                split.payment_type = None
                for attr in _SPLIT_PERIOD_FIELDS.values():
                    setattr(split, attr, None)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        with_retries(apply)
        logger.info(
            f"outflow_split_unassigned: transaction_id={txn.id} split_id={split.id}"
        )
        # the split is back in budget tracking
        after = TransactionSnapshot.from_model(self._transaction(transaction_id))
        reconciled = SpendingReconciler(self.session, self.user_id).reconcile(
            before, after, force=True
        )
        return OutflowAssignmentResult(
            split=split,
            monthly_period=None,
            weekly_period=None,
            bi_monthly_period=None,
            periods_updated=0,
            message="Split removed from outflow periods",
            reconciled=reconciled,
        )

    def sync_transaction(self, txn: Transaction) -> int:
        """Mirror split amount, date and removal changes into outflow periods."""
        live = {
            s.id: s
            for s in txn.splits
            if s.outflow_id is not None and txn.deleted_at is None
        }
        refs = self.session.scalars(
            select(OutflowPeriodSplit).where(
                OutflowPeriodSplit.transaction_id == txn.id
            )
        ).all()
        touched: dict[str, OutflowPeriod] = {}
        instant = to_utc(txn.transaction_date)
        for ref in refs:
            period = ref.period
            split = live.get(ref.split_id)
            if split is None:
                period.splits.remove(ref)
            else:
                ref.amount_cents = split.amount_cents
                ref.transaction_date = instant
            touched[period.id] = period
        for period in touched.values():
            recompute_period(period)
        return len(touched)

    def auto_match_outflow(self, outflow_id: int) -> int:
        """Match splits pre-tagged with the outflow that have no period references yet."""
        splits = self.session.scalars(
            select(TransactionSplit)
            .join(Transaction, TransactionSplit.transaction_id == Transaction.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                TransactionSplit.outflow_id == outflow_id,
                TransactionSplit.monthly_period_id.is_(None),
            )
        ).all()
        matched = 0
        for split in splits:
            try:
                self.assign_split(
                    split.transaction_id, split.id, outflow_id, auto_matched=True
                )
            except ValueError as exc:
                logger.warning(
                    f"outflow_auto_match_failed: outflow_id={outflow_id} "
                    f"split_id={split.id} error={exc}"
                )
                continue
            matched += 1
        logger.info(f"outflow_auto_match: outflow_id={outflow_id} matched={matched}")
        return matched
