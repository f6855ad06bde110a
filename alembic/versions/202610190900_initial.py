"""initial schema: users, categories, budget overrides, transactions

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


USER_IDS = ("owner", "partner")


def _user_id_enum(create_type: bool = True) -> sa.types.TypeEngine:
    # the type is shared by users.id and transactions.payer_id; create it once
    enum = sa.Enum(*USER_IDS, name="userid")
    if create_type:
        return enum
    return enum.with_variant(
        postgresql.ENUM(*USER_IDS, name="userid", create_type=False), "postgresql"
    )


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", _user_id_enum(), primary_key=True),
        sa.Column("display_name", sa.String(length=100), nullable=False),
        sa.Column("is_owner", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("name_key", sa.String(length=100), nullable=False),
        sa.Column("default_budget_cents", sa.Integer(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.UniqueConstraint("name_key", name="uq_category_name_key"),
        sa.CheckConstraint(
            "default_budget_cents IS NULL OR default_budget_cents >= 0",
            name="ck_category_default_budget_positive",
        ),
    )

    op.create_table(
        "budget_overrides",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_budget_override_amount_positive"
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_override_month"),
        sa.UniqueConstraint(
            "category_id",
            "year",
            "month",
            name="uq_budget_override_category_month",
        ),
    )
    op.create_index(
        "ix_budget_override_month", "budget_overrides", ["year", "month"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column(
            "payer_id",
            _user_id_enum(create_type=False),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_occurred_at", "transactions", ["occurred_at"])
    op.create_index(
        "ix_transactions_category_occurred",
        "transactions",
        ["category_id", "occurred_at"],
    )
    op.create_index(
        "ix_transactions_payer_occurred", "transactions", ["payer_id", "occurred_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_transactions_payer_occurred", table_name="transactions")
    op.drop_index("ix_transactions_category_occurred", table_name="transactions")
    op.drop_index("ix_transactions_occurred_at", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_budget_override_month", table_name="budget_overrides")
    op.drop_table("budget_overrides")
    op.drop_table("categories")
    op.drop_table("users")
    sa.Enum(name="userid").drop(op.get_bind(), checkfirst=True)
