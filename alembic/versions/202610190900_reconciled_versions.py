"""track the last reconciled version per transaction

Revision ID: 202610190900
Revises: 202601050900
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = "202601050900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "reconciled_versions",
        sa.Column("transaction_id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reconciled_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("reconciled_versions")
