"""Initial schema: users, expenses, budgets, counters, logs.

Revision ID: 001
Revises: None
Create Date: 2026-09-01

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("user_id", sa.Text, primary_key=True),
        sa.Column("state", sa.Text, nullable=False, server_default="new"),
        sa.Column("currency", sa.Text, nullable=False, server_default="USD"),
        sa.Column("pending_action", postgresql.JSONB, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    # ── expenses ──────────────────────────────────────────────────────
    op.create_table(
        "expenses",
        _uuid_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("number", sa.Integer, nullable=False),
        sa.Column("item", sa.Text, nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.Text, nullable=False, server_default="USD"),
        sa.Column("expense_date", sa.Date, nullable=False),
        sa.Column("image_provider", sa.Text, nullable=True),
        sa.Column("image_ref", sa.Text, nullable=True),
        sa.Column("image_url", sa.Text, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("user_id", "number", name="uq_expenses_user_number"),
        sa.CheckConstraint("price >= 0", name="ck_expenses_price_non_negative"),
    )
    op.create_index("ix_expenses_user_id", "expenses", ["user_id"])
    op.create_index("ix_expenses_user_date", "expenses", ["user_id", "expense_date"])

    # ── monthly_budgets ───────────────────────────────────────────────
    op.create_table(
        "monthly_budgets",
        _uuid_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("month", sa.Text, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.Text, nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("user_id", "month", name="uq_monthly_budgets_user_month"),
    )

    # ── expense_counters ──────────────────────────────────────────────
    op.create_table(
        "expense_counters",
        sa.Column("user_id", sa.Text, primary_key=True),
        sa.Column("seq", sa.Integer, nullable=False, server_default="0"),
    )

    # ── conversation_log ──────────────────────────────────────────────
    op.create_table(
        "conversation_log",
        _uuid_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_conversation_log_user_id", "conversation_log", ["user_id"])

    # ── llm_calls (observability) ─────────────────────────────────────
    op.create_table(
        "llm_calls",
        _uuid_pk(),
        sa.Column("provider", sa.Text, nullable=False),
        sa.Column("model", sa.Text, nullable=False),
        sa.Column("input_tokens", sa.Integer, nullable=True),
        sa.Column("output_tokens", sa.Integer, nullable=True),
        sa.Column("latency_ms", sa.Integer, nullable=True),
        sa.Column(
            "is_fallback",
            sa.Boolean,
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("cost_usd", sa.Numeric(8, 6), nullable=True),
        _timestamp("created_at"),
    )

    # ── failure_log (observability) ───────────────────────────────────
    op.create_table(
        "failure_log",
        _uuid_pk(),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("user_input", sa.Text, nullable=False),
        sa.Column("error_reply", sa.Text, nullable=False),
        sa.Column("traceback", sa.Text, nullable=False),
        sa.Column("failure_source", sa.Text, nullable=False),
        _timestamp("created_at"),
    )


def downgrade() -> None:
    op.drop_table("failure_log")
    op.drop_table("llm_calls")
    op.drop_index("ix_conversation_log_user_id", table_name="conversation_log")
    op.drop_table("conversation_log")
    op.drop_table("expense_counters")
    op.drop_table("monthly_budgets")
    op.drop_index("ix_expenses_user_date", table_name="expenses")
    op.drop_index("ix_expenses_user_id", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("users")
