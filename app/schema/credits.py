"""SQLAlchemy models for credit balances, reservations and the generation ledger."""

from __future__ import annotations

import datetime
import uuid

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base

# JSONB on Postgres; plain JSON keeps the models usable on sqlite test databases.
JSONVariant = JSON().with_variant(JSONB(), "postgresql")


def _uuid_str() -> str:
  return str(uuid.uuid4())


class CreditBalance(Base):
  """Spendable credits per user. Reserved amounts are already subtracted."""

  __tablename__ = "credit_balances"
  __table_args__ = (CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),)

  user_id: Mapped[str] = mapped_column(String, primary_key=True)
  balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class CreditReservation(Base):
  """Credits held for one generation request until it settles or refunds."""

  __tablename__ = "credit_reservations"
  __table_args__ = (CheckConstraint("amount >= 0", name="ck_credit_reservation_amount"),)

  id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
  user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
  # One reservation per request id; a reused id is rejected before any debit.
  request_id: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
  amount: Mapped[int] = mapped_column(Integer, nullable=False)
  # reserved -> settled | refunded; the transition happens at most once.
  status: Mapped[str] = mapped_column(String, nullable=False, default="reserved", server_default="reserved", index=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
  resolved_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CreditTransaction(Base):
  """Append-only history of every balance movement."""

  __tablename__ = "credit_transactions"

  id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
  user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
  entry_type: Mapped[str] = mapped_column(String, nullable=False)
  delta: Mapped[int] = mapped_column(Integer, nullable=False)
  balance_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
  reservation_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
  request_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
  note: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class GenerationLedgerEntry(Base):
  """One durable record per completed generation attempt."""

  __tablename__ = "generation_ledger"

  id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
  request_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
  user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
  job_kind: Mapped[str] = mapped_column(String, nullable=False)
  parameters: Mapped[dict | None] = mapped_column(JSONVariant, nullable=True)
  credits_charged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  status: Mapped[str] = mapped_column(String, nullable=False)
  outcome_kind: Mapped[str | None] = mapped_column(String, nullable=True)
  failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
  provider_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
  artifact_url: Mapped[str | None] = mapped_column(Text, nullable=True)
  storage_key: Mapped[str | None] = mapped_column(String, nullable=True)
  content_type: Mapped[str | None] = mapped_column(String, nullable=True)
  size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
  submitted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
