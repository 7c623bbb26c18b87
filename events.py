"""Change handlers for transactions, budgets and outflows.

Each handler receives before/after snapshots of the changed record. The
primary mutation has already been committed when a handler runs, so handler
failures are logged and never propagate to the caller that made the change.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from budget_periods import BudgetPeriodGenerator
from models import Budget, PeriodType
from outflows import OutflowPeriodMatcher
from periods import horizon_end, span_for
from reassignment import BudgetReassignmentService
from reconciliation import ReconcileResult, SpendingReconciler, TransactionSnapshot
from summaries import SummaryService

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    transaction_created = "transaction.created"
    transaction_updated = "transaction.updated"
    transaction_deleted = "transaction.deleted"
    budget_created = "budget.created"
    budget_updated = "budget.updated"
    budget_deleted = "budget.deleted"
    outflow_created = "outflow.created"


@dataclass(frozen=True)
class BudgetSnapshot:
    id: int
    user_id: int
    amount_cents: int
    period_type: PeriodType
    category_ids: frozenset[int]
    start_at: datetime
    end_at: Optional[datetime]
    is_active: bool
    group_id: Optional[int] = None

    @classmethod
    def from_model(cls, budget: Budget) -> "BudgetSnapshot":
        return cls(
            id=budget.id,
            user_id=budget.user_id,
            amount_cents=budget.amount_cents,
            period_type=budget.period_type,
            category_ids=budget.category_ids,
            start_at=budget.start_at,
            end_at=budget.end_at,
            is_active=budget.is_active,
            group_id=budget.group_id,
        )


@dataclass(frozen=True)
class OutflowSnapshot:
    id: int
    user_id: int


@dataclass(frozen=True)
class DomainEvent:
    type: EventType
    user_id: int
    before: Any = None
    after: Any = None


Handler = Callable[[Session, DomainEvent], Any]


def _reconcile_transaction(
    session: Session,
    before: Optional[TransactionSnapshot],
    after: Optional[TransactionSnapshot],
) -> ReconcileResult:
    subject = after or before
    result = SpendingReconciler(session, subject.user_id).reconcile(before, after)
    if result.source_period_ids:
        SummaryService(session).refresh_for_periods(
            subject.user_id, subject.group_id, result.source_period_ids
        )
    return result


def on_transaction_created(session: Session, event: DomainEvent) -> ReconcileResult:
    return _reconcile_transaction(session, None, event.after)


def on_transaction_updated(session: Session, event: DomainEvent) -> ReconcileResult:
    return _reconcile_transaction(session, event.before, event.after)


def on_transaction_deleted(session: Session, event: DomainEvent) -> ReconcileResult:
    after = event.after or replace(
        event.before, deleted=True, version=event.before.version + 1
    )
    return _reconcile_transaction(session, event.before, after)


def _activate_budget(session: Session, user_id: int, budget_id: int):
    budget = session.get(Budget, budget_id)
    if budget is None:
        raise ValueError("Budget not found")
    # earlier periods are created on demand when spending lands in them
    first = max(budget.start_at, span_for(PeriodType.monthly, datetime.utcnow()).start_at)
    generator = BudgetPeriodGenerator(session)
    # periods left behind by an earlier deactivation come back active
    generator.reallocate(budget)
    generator.create_periods(budget, first, horizon_end())
    session.commit()
    return BudgetReassignmentService(
        session, user_id
    ).recalculate_historical_transactions(budget.id)


def on_budget_created(session: Session, event: DomainEvent):
    return _activate_budget(session, event.user_id, event.after.id)


def on_budget_updated(session: Session, event: DomainEvent):
    before: BudgetSnapshot = event.before
    after: BudgetSnapshot = event.after
    service = BudgetReassignmentService(session, event.user_id)
    if before.is_active and not after.is_active:
        return service.reassign_transactions_from_deleted_budget(after.id)
    if not before.is_active and after.is_active:
        return _activate_budget(session, event.user_id, after.id)

    results = []
    budget = session.get(Budget, after.id)
    if (
        before.amount_cents != after.amount_cents
        or before.period_type != after.period_type
        or before.end_at != after.end_at
    ):
        BudgetPeriodGenerator(session).reallocate(budget)
        session.commit()
    added = after.category_ids - before.category_ids
    removed = before.category_ids - after.category_ids
    if added or removed:
        results.append(
            service.reassign_transactions_for_budget(after.id, added, removed)
        )
    widened = before.category_ids and not after.category_ids
    if widened or before.start_at != after.start_at or before.end_at != after.end_at:
        results.append(
            service.recalculate_historical_transactions(
                after.id,
                category_ids=[],
                start_at=min(before.start_at, after.start_at),
            )
        )
    return results


def on_budget_deleted(session: Session, event: DomainEvent):
    return BudgetReassignmentService(
        session, event.user_id
    ).reassign_transactions_from_deleted_budget(event.before.id)


def on_outflow_created(session: Session, event: DomainEvent) -> int:
    return OutflowPeriodMatcher(session, event.user_id).auto_match_outflow(
        event.after.id
    )


class EventDispatcher:
    """Register handlers per event type and run them synchronously in-process."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[Handler]] = defaultdict(list)

    def register(self, event_type: EventType, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, session: Session, event: DomainEvent) -> list[Any]:
        results: list[Any] = []
        for handler in self._handlers.get(event.type, []):
            try:
                results.append(handler(session, event))
            except Exception:
                session.rollback()
                logger.exception(
                    f"event_handler_failed: event={event.type.value} "
                    f"handler={handler.__name__} user_id={event.user_id}"
                )
        return results


def build_dispatcher() -> EventDispatcher:
    dispatcher = EventDispatcher()
    dispatcher.register(EventType.transaction_created, on_transaction_created)
    dispatcher.register(EventType.transaction_updated, on_transaction_updated)
    dispatcher.register(EventType.transaction_deleted, on_transaction_deleted)
    dispatcher.register(EventType.budget_created, on_budget_created)
    dispatcher.register(EventType.budget_updated, on_budget_updated)
    dispatcher.register(EventType.budget_deleted, on_budget_deleted)
    dispatcher.register(EventType.outflow_created, on_outflow_created)
    return dispatcher
