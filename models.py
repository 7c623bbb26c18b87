from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionStatus(str, Enum):
    pending = "pending"
    approved = "approved"


class PeriodType(str, Enum):
    weekly = "weekly"
    bi_monthly = "bi_monthly"
    monthly = "monthly"
    annual = "annual"


class PaymentType(str, Enum):
    regular = "regular"
    catch_up = "catch_up"
    advance = "advance"
    extra_principal = "extra_principal"


class OutflowStatus(str, Enum):
    pending = "pending"
    partially_paid = "partially_paid"
    paid = "paid"


class IntervalUnit(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


class MonthDayPolicy(str, Enum):
    snap_to_end = "snap_to_end"
    skip = "skip"
    carry_forward = "carry_forward"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class SourcePeriod(Base, TimestampMixin):
    """Canonical calendar window. Ranges are half-open and stored as naive UTC."""

    __tablename__ = "source_periods"

    id: Mapped[str] = mapped_column(String(16), primary_key=True)
    type: Mapped[PeriodType] = mapped_column(SAEnum(PeriodType), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    month: Mapped[Optional[int]] = mapped_column(Integer)
    half: Mapped[Optional[int]] = mapped_column(Integer)
    week_number: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        UniqueConstraint("type", "start_at", name="uq_source_period_type_start"),
        Index("ix_source_periods_type_range", "type", "start_at", "end_at"),
        CheckConstraint("end_at > start_at", name="ck_source_period_range"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )


budget_categories = Table(
    "budget_categories",
    Base.metadata,
    Column("budget_id", Integer, ForeignKey("budgets.id"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id"), primary_key=True),
)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    group_id: Mapped[Optional[int]] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(
        SAEnum(PeriodType), nullable=False, default=PeriodType.monthly
    )
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_system_everything_else: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    categories: Mapped[list["Category"]] = relationship(
        "Category", secondary="budget_categories"
    )
    periods: Mapped[list["BudgetPeriod"]] = relationship(
        "BudgetPeriod", back_populates="budget", cascade="all, delete-orphan"
    )

    @property
    def category_ids(self) -> frozenset[int]:
        return frozenset(c.id for c in self.categories)

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint(
            "is_system_everything_else = 0 OR amount_cents = 0",
            name="ck_budget_system_amount_zero",
        ),
        Index("ix_budgets_user_active", "user_id", "is_active"),
        Index(
            "uq_budget_user_everything_else",
            "user_id",
            unique=True,
            sqlite_where=text("is_system_everything_else = 1"),
            postgresql_where=text("is_system_everything_else"),
        ),
    )


class BudgetPeriod(Base, TimestampMixin):
    __tablename__ = "budget_periods"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    source_period_id: Mapped[str] = mapped_column(
        ForeignKey("source_periods.id"), nullable=False
    )
    period_type: Mapped[PeriodType] = mapped_column(
        SAEnum(PeriodType), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(Integer)
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="periods")

    __table_args__ = (
        UniqueConstraint(
            "budget_id", "source_period_id", name="uq_budget_period_source"
        ),
        Index("ix_budget_periods_user_source", "user_id", "source_period_id"),
        Index("ix_budget_periods_group_source", "group_id", "source_period_id"),
    )


class BudgetContribution(Base):
    """What reconciliation has applied to a budget period for one split."""

    __tablename__ = "budget_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_id: Mapped[int] = mapped_column(Integer, nullable=False)
    split_id: Mapped[int] = mapped_column(Integer, nullable=False)
    budget_id: Mapped[int] = mapped_column(Integer, nullable=False)
    source_period_id: Mapped[str] = mapped_column(String(16), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(
        SAEnum(PeriodType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_version: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "split_id",
            "budget_id",
            "source_period_id",
            name="uq_contribution_split_budget_period",
        ),
        Index("ix_contributions_transaction", "transaction_id"),
        Index("ix_contributions_budget_period", "budget_id", "source_period_id"),
    )


class ReconciledVersion(Base):
    """Highest transaction version reconciliation has applied, kept after deletes."""

    __tablename__ = "reconciled_versions"

    transaction_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconciled_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    group_id: Mapped[Optional[int]] = mapped_column(Integer)
    transaction_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.approved
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    splits: Mapped[list["TransactionSplit"]] = relationship(
        "TransactionSplit",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionSplit.position",
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "transaction_date"),
        Index("ix_transactions_group_date", "group_id", "transaction_date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class TransactionSplit(Base):
    __tablename__ = "transaction_splits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    budget_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budgets.id"))
    outflow_id: Mapped[Optional[int]] = mapped_column(ForeignKey("outflows.id"))
    monthly_period_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("outflow_periods.id")
    )
    weekly_period_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("outflow_periods.id")
    )
    bi_monthly_period_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("outflow_periods.id")
    )
    payment_type: Mapped[Optional[PaymentType]] = mapped_column(SAEnum(PaymentType))

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="splits"
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_split_amount_positive"),
        CheckConstraint(
            "budget_id IS NULL OR outflow_id IS NULL",
            name="ck_split_budget_or_outflow",
        ),
        Index("ix_splits_budget", "budget_id"),
        Index("ix_splits_outflow", "outflow_id"),
    )


class Outflow(Base, TimestampMixin):
    """A recurring bill."""

    __tablename__ = "outflows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    group_id: Mapped[Optional[int]] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    interval_unit: Mapped[IntervalUnit] = mapped_column(
        SAEnum(IntervalUnit), nullable=False
    )
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    month_day_policy: Mapped[MonthDayPolicy] = mapped_column(
        SAEnum(MonthDayPolicy),
        default=MonthDayPolicy.snap_to_end,
        nullable=False,
    )
    skip_weekends: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    periods: Mapped[list["OutflowPeriod"]] = relationship(
        "OutflowPeriod", back_populates="outflow", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("interval_count > 0", name="ck_outflow_interval_positive"),
        CheckConstraint("amount_cents >= 0", name="ck_outflow_amount_positive"),
    )


class OutflowPeriod(Base, TimestampMixin):
    __tablename__ = "outflow_periods"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    outflow_id: Mapped[int] = mapped_column(ForeignKey("outflows.id"), nullable=False)
    source_period_id: Mapped[str] = mapped_column(
        ForeignKey("source_periods.id"), nullable=False
    )
    period_type: Mapped[PeriodType] = mapped_column(
        SAEnum(PeriodType), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(Integer)
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    number_of_occurrences: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    amount_due_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_unpaid_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    extra_principal_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    status: Mapped[OutflowStatus] = mapped_column(
        SAEnum(OutflowStatus), nullable=False, default=OutflowStatus.pending
    )
    is_due_period: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_current: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    outflow: Mapped["Outflow"] = relationship("Outflow", back_populates="periods")
    splits: Mapped[list["OutflowPeriodSplit"]] = relationship(
        "OutflowPeriodSplit",
        back_populates="period",
        cascade="all, delete-orphan",
        order_by="OutflowPeriodSplit.id",
    )

    __table_args__ = (
        UniqueConstraint(
            "outflow_id", "source_period_id", name="uq_outflow_period_source"
        ),
        Index("ix_outflow_periods_user_source", "user_id", "source_period_id"),
        Index(
            "ix_outflow_periods_outflow_range",
            "outflow_id",
            "period_type",
            "start_at",
        ),
    )


class OutflowPeriodSplit(Base):
    __tablename__ = "outflow_period_splits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    outflow_period_id: Mapped[str] = mapped_column(
        ForeignKey("outflow_periods.id"), nullable=False
    )
    transaction_id: Mapped[int] = mapped_column(Integer, nullable=False)
    split_id: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(
        SAEnum(PaymentType), nullable=False, default=PaymentType.regular
    )
    transaction_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_auto_matched: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    matched_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    period: Mapped["OutflowPeriod"] = relationship(
        "OutflowPeriod", back_populates="splits"
    )

    __table_args__ = (
        UniqueConstraint(
            "outflow_period_id", "split_id", name="uq_outflow_period_split"
        ),
        Index("ix_outflow_period_splits_split", "split_id"),
    )


class UserSummary(Base):
    __tablename__ = "user_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    source_period_id: Mapped[str] = mapped_column(
        ForeignKey("source_periods.id"), nullable=False
    )
    period_type: Mapped[PeriodType] = mapped_column(
        SAEnum(PeriodType), nullable=False
    )
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "source_period_id", name="uq_user_summary_period"
        ),
    )


class GroupPeriodSummary(Base):
    __tablename__ = "group_period_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(Integer, nullable=False)
    source_period_id: Mapped[str] = mapped_column(
        ForeignKey("source_periods.id"), nullable=False
    )
    period_type: Mapped[PeriodType] = mapped_column(
        SAEnum(PeriodType), nullable=False
    )
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "group_id", "source_period_id", name="uq_group_summary_period"
        ),
    )
