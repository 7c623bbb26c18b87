"""initial period aggregation schema

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None


PERIOD_TYPE = sa.Enum("weekly", "bi_monthly", "monthly", "annual", name="periodtype")
PAYMENT_TYPE = sa.Enum(
    "regular", "catch_up", "advance", "extra_principal", name="paymenttype"
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "source_periods",
        sa.Column("id", sa.String(16), primary_key=True),
        sa.Column("type", PERIOD_TYPE, nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("index", sa.Integer(), nullable=False),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("end_at", sa.DateTime(), nullable=False),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("month", sa.Integer(), nullable=True),
        sa.Column("half", sa.Integer(), nullable=True),
        sa.Column("week_number", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("type", "start_at", name="uq_source_period_type_start"),
        sa.CheckConstraint("end_at > start_at", name="ck_source_period_range"),
    )
    op.create_index(
        "ix_source_periods_type_range", "source_periods", ["type", "start_at", "end_at"]
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "parent_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("archived_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("group_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("period_type", PERIOD_TYPE, nullable=False),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("end_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "is_system_everything_else",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        sa.CheckConstraint(
            "is_system_everything_else = 0 OR amount_cents = 0",
            name="ck_budget_system_amount_zero",
        ),
    )
    op.create_index("ix_budgets_user_active", "budgets", ["user_id", "is_active"])
    # One system budget per user.
    op.execute(
        "CREATE UNIQUE INDEX uq_budget_user_everything_else "
        "ON budgets(user_id) WHERE is_system_everything_else = 1"
    )

    op.create_table(
        "budget_categories",
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), primary_key=True
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), primary_key=True
        ),
    )

    op.create_table(
        "budget_periods",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "source_period_id",
            sa.String(16),
            sa.ForeignKey("source_periods.id"),
            nullable=False,
        ),
        sa.Column("period_type", PERIOD_TYPE, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=True),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("end_at", sa.DateTime(), nullable=False),
        sa.Column("allocated_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("remaining_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "source_period_id", name="uq_budget_period_source"
        ),
    )
    op.create_index(
        "ix_budget_periods_user_source",
        "budget_periods",
        ["user_id", "source_period_id"],
    )
    op.create_index(
        "ix_budget_periods_group_source",
        "budget_periods",
        ["group_id", "source_period_id"],
    )

    op.create_table(
        "budget_contributions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("split_id", sa.Integer(), nullable=False),
        sa.Column("budget_id", sa.Integer(), nullable=False),
        sa.Column("source_period_id", sa.String(16), nullable=False),
        sa.Column("period_type", PERIOD_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("transaction_version", sa.Integer(), nullable=False),
        sa.Column("applied_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "split_id",
            "budget_id",
            "source_period_id",
            name="uq_contribution_split_budget_period",
        ),
    )
    op.create_index(
        "ix_contributions_transaction", "budget_contributions", ["transaction_id"]
    )
    op.create_index(
        "ix_contributions_budget_period",
        "budget_contributions",
        ["budget_id", "source_period_id"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("group_id", sa.Integer(), nullable=True),
        sa.Column("transaction_date", sa.DateTime(), nullable=False),
        sa.Column("type", sa.Enum("income", "expense", name="transactiontype"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "approved", name="transactionstatus"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "transaction_date"]
    )
    op.create_index(
        "ix_transactions_group_date", "transactions", ["group_id", "transaction_date"]
    )

    op.create_table(
        "outflows",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("group_id", sa.Integer(), nullable=True),
        sa.Column("description", sa.String(200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("anchor_date", sa.Date(), nullable=False),
        sa.Column(
            "interval_unit",
            sa.Enum("day", "week", "month", "year", name="intervalunit"),
            nullable=False,
        ),
        sa.Column("interval_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "month_day_policy",
            sa.Enum("snap_to_end", "skip", "carry_forward", name="monthdaypolicy"),
            nullable=False,
        ),
        sa.Column("skip_weekends", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("interval_count > 0", name="ck_outflow_interval_positive"),
        sa.CheckConstraint("amount_cents >= 0", name="ck_outflow_amount_positive"),
    )

    op.create_table(
        "outflow_periods",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("outflow_id", sa.Integer(), sa.ForeignKey("outflows.id"), nullable=False),
        sa.Column(
            "source_period_id",
            sa.String(16),
            sa.ForeignKey("source_periods.id"),
            nullable=False,
        ),
        sa.Column("period_type", PERIOD_TYPE, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=True),
        sa.Column("start_at", sa.DateTime(), nullable=False),
        sa.Column("end_at", sa.DateTime(), nullable=False),
        sa.Column("number_of_occurrences", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("amount_due_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_paid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_unpaid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("extra_principal_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("pending", "partially_paid", "paid", name="outflowstatus"),
            nullable=False,
        ),
        sa.Column("is_due_period", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_current", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint(
            "outflow_id", "source_period_id", name="uq_outflow_period_source"
        ),
    )
    op.create_index(
        "ix_outflow_periods_user_source",
        "outflow_periods",
        ["user_id", "source_period_id"],
    )
    op.create_index(
        "ix_outflow_periods_outflow_range",
        "outflow_periods",
        ["outflow_id", "period_type", "start_at"],
    )

    op.create_table(
        "transaction_splits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=True),
        sa.Column("outflow_id", sa.Integer(), sa.ForeignKey("outflows.id"), nullable=True),
        sa.Column(
            "monthly_period_id",
            sa.String(64),
            sa.ForeignKey("outflow_periods.id"),
            nullable=True,
        ),
        sa.Column(
            "weekly_period_id",
            sa.String(64),
            sa.ForeignKey("outflow_periods.id"),
            nullable=True,
        ),
        sa.Column(
            "bi_monthly_period_id",
            sa.String(64),
            sa.ForeignKey("outflow_periods.id"),
            nullable=True,
        ),
        sa.Column("payment_type", PAYMENT_TYPE, nullable=True),
        sa.CheckConstraint("amount_cents >= 0", name="ck_split_amount_positive"),
        sa.CheckConstraint(
            "budget_id IS NULL OR outflow_id IS NULL",
            name="ck_split_budget_or_outflow",
        ),
    )
    op.create_index("ix_splits_budget", "transaction_splits", ["budget_id"])
    op.create_index("ix_splits_outflow", "transaction_splits", ["outflow_id"])

    op.create_table(
        "outflow_period_splits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "outflow_period_id",
            sa.String(64),
            sa.ForeignKey("outflow_periods.id"),
            nullable=False,
        ),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("split_id", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payment_type", PAYMENT_TYPE, nullable=False),
        sa.Column("transaction_date", sa.DateTime(), nullable=False),
        sa.Column("is_auto_matched", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("matched_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "outflow_period_id", "split_id", name="uq_outflow_period_split"
        ),
    )
    op.create_index(
        "ix_outflow_period_splits_split", "outflow_period_splits", ["split_id"]
    )

    for table, owner, constraint in (
        ("user_summaries", "user_id", "uq_user_summary_period"),
        ("group_period_summaries", "group_id", "uq_group_summary_period"),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(owner, sa.Integer(), nullable=False),
            sa.Column(
                "source_period_id",
                sa.String(16),
                sa.ForeignKey("source_periods.id"),
                nullable=False,
            ),
            sa.Column("period_type", PERIOD_TYPE, nullable=False),
            sa.Column("payload_json", sa.Text(), nullable=False),
            sa.Column("computed_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint(owner, "source_period_id", name=constraint),
        )


def downgrade() -> None:
    op.drop_table("group_period_summaries")
    op.drop_table("user_summaries")
    op.drop_index("ix_outflow_period_splits_split", table_name="outflow_period_splits")
    op.drop_table("outflow_period_splits")
    op.drop_index("ix_splits_outflow", table_name="transaction_splits")
    op.drop_index("ix_splits_budget", table_name="transaction_splits")
    op.drop_table("transaction_splits")
    op.drop_index("ix_outflow_periods_outflow_range", table_name="outflow_periods")
    op.drop_index("ix_outflow_periods_user_source", table_name="outflow_periods")
    op.drop_table("outflow_periods")
    op.drop_table("outflows")
    op.drop_index("ix_transactions_group_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_contributions_budget_period", table_name="budget_contributions")
    op.drop_index("ix_contributions_transaction", table_name="budget_contributions")
    op.drop_table("budget_contributions")
    op.drop_index("ix_budget_periods_group_source", table_name="budget_periods")
    op.drop_index("ix_budget_periods_user_source", table_name="budget_periods")
    op.drop_table("budget_periods")
    op.drop_table("budget_categories")
    op.execute("DROP INDEX IF EXISTS uq_budget_user_everything_else")
    op.drop_index("ix_budgets_user_active", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("categories")
    op.drop_index("ix_source_periods_type_range", table_name="source_periods")
    op.drop_table("source_periods")
