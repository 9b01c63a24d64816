"""credit ledger tables

Revision ID: 001_ledger
Revises: None
Create Date: 2026-09-28
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- ledger_accounts ---
    op.create_table(
        "ledger_accounts",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("id_hash", sa.String(66), nullable=False),
        sa.Column("credits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("deleted_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_ledger_accounts_id_hash", "ledger_accounts", ["id_hash"], unique=True)

    # --- credit_transactions ---
    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("description", sa.String(512), nullable=False, server_default=""),
        sa.Column("idempotency_key", sa.String(255), nullable=True, unique=True),
        sa.Column("payment_ref", sa.String(255), nullable=True),
        sa.Column("avatar_id", sa.String(128), nullable=True),
        sa.Column("session_id", sa.String(36), nullable=True),
        sa.Column("meta", sa.Text, nullable=True, server_default="{}"),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index("ix_credit_transactions_payment_ref", "credit_transactions", ["payment_ref"])
    op.create_index("ix_credit_transactions_session_id", "credit_transactions", ["session_id"])
    op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"])

    # --- call_sessions ---
    op.create_table(
        "call_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("avatar_id", sa.String(128), nullable=False),
        sa.Column("per_minute_rate", sa.Integer, nullable=False),
        sa.Column("started_at", sa.DateTime, nullable=False),
        sa.Column("ended_at", sa.DateTime, nullable=True),
        sa.Column("credits_spent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("end_reason", sa.String(32), nullable=True),
    )
    op.create_index("ix_call_sessions_user_id", "call_sessions", ["user_id"])

    # --- ledger_settings ---
    op.create_table(
        "ledger_settings",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("value", sa.Text, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("ledger_settings")
    op.drop_index("ix_call_sessions_user_id", table_name="call_sessions")
    op.drop_table("call_sessions")
    op.drop_index("ix_credit_transactions_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_session_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_payment_ref", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_index("ix_ledger_accounts_id_hash", table_name="ledger_accounts")
    op.drop_table("ledger_accounts")
