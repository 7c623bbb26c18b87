from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    IntervalUnit,
    MonthDayPolicy,
    PaymentType,
    PeriodType,
    TransactionStatus,
    TransactionType,
)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    parent_id: Optional[int] = None


class SplitIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[int] = None
    amount_cents: int = Field(..., ge=0)
    category_id: Optional[int] = None
    category_name: Optional[str] = Field(default=None, max_length=100)
    outflow_id: Optional[int] = None


class TransactionIn(BaseModel):
    transaction_date: datetime
    type: TransactionType = TransactionType.expense
    status: TransactionStatus = TransactionStatus.approved
    amount_cents: int = Field(..., ge=0)
    description: Optional[str] = Field(default=None, max_length=200)
    group_id: Optional[int] = None
    category_id: Optional[int] = None
    splits: list[SplitIn] = Field(default_factory=list)


class TransactionUpdate(BaseModel):
    transaction_date: Optional[datetime] = None
    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=200)
    splits: Optional[list[SplitIn]] = None


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    period_type: PeriodType = PeriodType.monthly
    category_ids: list[int] = Field(default_factory=list)
    start_at: datetime
    end_at: Optional[datetime] = None
    group_id: Optional[int] = None


class BudgetUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount_cents: Optional[int] = Field(default=None, ge=0)
    category_ids: Optional[list[int]] = None
    end_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class OutflowIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    anchor_date: date
    interval_unit: IntervalUnit = IntervalUnit.month
    interval_count: int = Field(default=1, gt=0)
    month_day_policy: MonthDayPolicy = MonthDayPolicy.snap_to_end
    skip_weekends: bool = False
    end_date: Optional[date] = None
    group_id: Optional[int] = None


class AssignSplitIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_id: int
    split_id: int
    outflow_id: int
    payment_type: Optional[PaymentType] = PaymentType.regular
    target_period_id: Optional[str] = Field(default=None, max_length=16)
    clear_budget_assignment: bool = True


class UnassignSplitIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_id: int
    split_id: int


class CategoryChangesIn(BaseModel):
    categories_added: list[int] = Field(default_factory=list)
    categories_removed: list[int] = Field(default_factory=list)


class RecalculateIn(BaseModel):
    category_ids: Optional[list[int]] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None


class OperationResult(BaseModel):
    success: bool = True
    errors: list[str] = Field(default_factory=list)


class AssignSplitOut(OperationResult):
    split_id: int
    outflow_id: Optional[int] = None
    payment_type: Optional[PaymentType] = None
    monthly_period_id: Optional[str] = None
    weekly_period_id: Optional[str] = None
    bi_monthly_period_id: Optional[str] = None
    periods_updated: int = 0
    message: str = ""


class ReassignForBudgetOut(OperationResult):
    transactions_reassigned: int = 0
    splits_reassigned: int = 0


class ReassignFromDeletedOut(OperationResult):
    transactions_reassigned: int = 0
    budget_assignments: dict[str, int] = Field(default_factory=dict)
    batch_count: int = 0
    error: Optional[str] = None


class RecalculateOut(OperationResult):
    transactions_updated: int = 0
    spending_updated: int = 0


class ReconcileOut(OperationResult):
    budget_periods_updated: int = 0
    budgets_affected: list[int] = Field(default_factory=list)
    period_types_updated: list[str] = Field(default_factory=list)


class VerificationOut(BaseModel):
    boundary_issues: list[str] = Field(default_factory=list)
    outflow_mismatches: list[str] = Field(default_factory=list)
    budget_drift: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.boundary_issues or self.outflow_mismatches or self.budget_drift)
