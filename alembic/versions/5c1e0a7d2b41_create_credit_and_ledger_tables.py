"""create credit and ledger tables

Revision ID: 5c1e0a7d2b41
Revises:
Create Date: 2026-10-17 09:12:44.318201

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5c1e0a7d2b41"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "credit_balances",
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("balance", sa.Integer(), server_default="0", nullable=False),
    sa.Column("version", sa.Integer(), server_default="0", nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
    sa.PrimaryKeyConstraint("user_id"),
  )

  op.create_table(
    "credit_reservations",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("request_id", sa.String(), nullable=False),
    sa.Column("amount", sa.Integer(), nullable=False),
    sa.Column("status", sa.String(), server_default="reserved", nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint("amount >= 0", name="ck_credit_reservation_amount"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_credit_reservations_user_id", "credit_reservations", ["user_id"])
  op.create_index("ix_credit_reservations_request_id", "credit_reservations", ["request_id"], unique=True)
  op.create_index("ix_credit_reservations_status", "credit_reservations", ["status"])

  op.create_table(
    "credit_transactions",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("entry_type", sa.String(), nullable=False),
    sa.Column("delta", sa.Integer(), nullable=False),
    sa.Column("balance_after", sa.Integer(), nullable=True),
    sa.Column("reservation_id", sa.String(), nullable=True),
    sa.Column("request_id", sa.String(), nullable=True),
    sa.Column("note", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
  op.create_index("ix_credit_transactions_reservation_id", "credit_transactions", ["reservation_id"])
  op.create_index("ix_credit_transactions_request_id", "credit_transactions", ["request_id"])

  op.create_table(
    "generation_ledger",
    sa.Column("id", sa.String(), nullable=False),
    sa.Column("request_id", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=False),
    sa.Column("job_kind", sa.String(), nullable=False),
    sa.Column("parameters", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("credits_charged", sa.Integer(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("outcome_kind", sa.String(), nullable=True),
    sa.Column("failure_reason", sa.Text(), nullable=True),
    sa.Column("provider_job_id", sa.String(), nullable=True),
    sa.Column("artifact_url", sa.Text(), nullable=True),
    sa.Column("storage_key", sa.String(), nullable=True),
    sa.Column("content_type", sa.String(), nullable=True),
    sa.Column("size_bytes", sa.Integer(), nullable=True),
    sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
    sa.UniqueConstraint("request_id"),
  )
  op.create_index("ix_generation_ledger_user_id", "generation_ledger", ["user_id"])


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index("ix_generation_ledger_user_id", table_name="generation_ledger")
  op.drop_table("generation_ledger")
  op.drop_index("ix_credit_transactions_request_id", table_name="credit_transactions")
  op.drop_index("ix_credit_transactions_reservation_id", table_name="credit_transactions")
  op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
  op.drop_table("credit_transactions")
  op.drop_index("ix_credit_reservations_status", table_name="credit_reservations")
  op.drop_index("ix_credit_reservations_request_id", table_name="credit_reservations")
  op.drop_index("ix_credit_reservations_user_id", table_name="credit_reservations")
  op.drop_table("credit_reservations")
  op.drop_table("credit_balances")
