"""initial rebalance schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("account", sa.String(length=100), nullable=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_account_type_date",
        "transactions",
        ["account", "type", "date"],
    )
    op.create_index(
        "ix_transactions_category_date", "transactions", ["category", "date"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account", sa.String(length=100), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "target_amount_cents >= 0", name="ck_budget_target_amount_positive"
        ),
        sa.UniqueConstraint(
            "account", "year", "month", name="uq_budget_account_month"
        ),
    )
    op.create_index("ix_budget_month", "budgets", ["year", "month"])

    op.create_table(
        "rebalance_overrides",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("pattern_key", sa.String(length=100), nullable=False),
        sa.Column("expected_account", sa.String(length=100), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint(
            "category", "pattern_key", name="uq_rebalance_override_category_pattern"
        ),
        sa.CheckConstraint("confidence > 0", name="ck_rebalance_override_confidence"),
    )

    op.create_table(
        "rebalance_feedback",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("original_account", sa.String(length=100), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("suggested_account", sa.String(length=100), nullable=True),
        sa.Column(
            "decision",
            sa.Enum("APPLY", "DEFER", "WRONG", name="rebalancedecision"),
            nullable=False,
        ),
        sa.Column("corrected_account", sa.String(length=100), nullable=True),
        sa.Column(
            "is_settled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_rebalance_feedback_month_decision",
        "rebalance_feedback",
        ["month", "decision"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_rebalance_feedback_month_decision", table_name="rebalance_feedback"
    )
    op.drop_table("rebalance_feedback")
    op.drop_table("rebalance_overrides")
    op.drop_index("ix_budget_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_category_date", table_name="transactions")
    op.drop_index("ix_transactions_account_type_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("accounts")
