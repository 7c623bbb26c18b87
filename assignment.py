import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from budget_periods import BUDGET_PERIOD_TYPES
from category_cache import CategoryCache
from models import Budget, PeriodType, TransactionStatus, TransactionType
from periods import PeriodSpan, span_for, to_utc

logger = logging.getLogger(__name__)


class SplitLike(Protocol):
    id: int
    amount_cents: int
    category_id: Optional[int]
    outflow_id: Optional[int]


@dataclass(frozen=True)
class BudgetAssignment:
    budget_id: int
    spans: dict[PeriodType, PeriodSpan] = field(default_factory=dict)

    @property
    def period_id(self) -> Optional[str]:
        span = self.spans.get(PeriodType.monthly)
        return span.id if span else None

    @property
    def period_ids(self) -> dict[PeriodType, str]:
        return {t: s.id for t, s in self.spans.items()}


@dataclass(frozen=True)
class _Candidate:
    id: int
    category_ids: frozenset[int]
    start_at: datetime
    end_at: Optional[datetime]
    created_at: datetime
    is_system: bool


class BudgetAssignmentResolver:
    """Pick at most one budget for a split.

    Specific budgets (with categories) beat catch-all budgets; among equals the
    most recently created wins. Splits nothing claims fall back to the user's
    "everything else" budget, and without one they stay unassigned. Returning
    ``None`` means unassigned; resolving never raises for a missing budget.
    """

    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        category_cache: Optional[CategoryCache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.category_cache = category_cache or CategoryCache.for_session(
            session, user_id
        )
        self._candidates: Optional[list[_Candidate]] = None

    def _load(self) -> list[_Candidate]:
        if self._candidates is None:
            budgets = self.session.scalars(
                select(Budget)
                .options(selectinload(Budget.categories))
                .where(Budget.user_id == self.user_id, Budget.is_active.is_(True))
            ).all()
            self._candidates = [
                _Candidate(
                    id=b.id,
                    category_ids=b.category_ids,
                    start_at=b.start_at,
                    end_at=b.end_at,
                    created_at=b.created_at,
                    is_system=b.is_system_everything_else,
                )
                for b in budgets
            ]
        return self._candidates

    def reload(self) -> None:
        self._candidates = None

    def resolve_budget_id(
        self, category_id: Optional[int], transaction_date: datetime
    ) -> Optional[int]:
        instant = to_utc(transaction_date)
        lineage = set(self.category_cache.lineage(category_id))
        best: Optional[_Candidate] = None
        best_key = None
        fallback: Optional[_Candidate] = None
        for candidate in self._load():
            if candidate.is_system:
                fallback = candidate
                continue
            if instant < candidate.start_at:
                continue
            if candidate.end_at is not None and instant >= candidate.end_at:
                continue
            specific = bool(candidate.category_ids)
            if specific and not (candidate.category_ids & lineage):
                continue
            key = (specific, candidate.created_at, candidate.id)
            if best_key is None or key > best_key:
                best, best_key = candidate, key
        if best is not None:
            return best.id
        return fallback.id if fallback else None

    def resolve(
        self,
        split: SplitLike,
        transaction_date: datetime,
        *,
        transaction_type: TransactionType = TransactionType.expense,
        status: TransactionStatus = TransactionStatus.approved,
    ) -> Optional[BudgetAssignment]:
        if split.outflow_id is not None:
            return None
        if transaction_type != TransactionType.expense:
            return None
        if status != TransactionStatus.approved:
            return None
        budget_id = self.resolve_budget_id(split.category_id, transaction_date)
        if budget_id is None:
            return None
        return BudgetAssignment(
            budget_id=budget_id,
            spans={t: span_for(t, transaction_date) for t in BUDGET_PERIOD_TYPES},
        )
