"""create credit ledger tables

Revision ID: a3c5e7f9b1d2
Revises:
Create Date: 2026-10-19 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "a3c5e7f9b1d2"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _get_inspector():
    conn = op.get_bind()
    return conn, sa.inspect(conn)


def _table_exists(inspector, table_name: str) -> bool:
    try:
        return table_name in inspector.get_table_names()
    except Exception:
        return False


def upgrade() -> None:
    _, inspector = _get_inspector()

    if not _table_exists(inspector, "user_credits"):
        op.create_table(
            "user_credits",
            sa.Column("user_id", sa.String(length=64), primary_key=True),
            sa.Column("credits", sa.Integer(), nullable=False),
            sa.Column("used_credits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.func.now()),
            sa.CheckConstraint("credits >= 0", name="ck_user_credits_credits_non_negative"),
            sa.CheckConstraint("used_credits >= 0", name="ck_user_credits_used_non_negative"),
        )

    if not _table_exists(inspector, "credit_transactions"):
        op.create_table(
            "credit_transactions",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("service_type", sa.String(length=32), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.String(length=128), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("user_id", "request_id", name="uq_credit_transactions_user_request"),
        )
        op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
        op.create_index("ix_credit_transactions_service_type", "credit_transactions", ["service_type"])
        op.create_index("ix_credit_transactions_created_at", "credit_transactions", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_credit_transactions_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_service_type", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("user_credits")
