"""Storage interfaces for credit balances, reservations and the generation ledger."""

from __future__ import annotations

import datetime
from typing import Protocol

import msgspec

from app.generation.models import CreditBalance, LedgerEntry, ReservationToken


class LedgerEntryRecord(msgspec.Struct):
  """Ledger row for API responses."""

  id: str
  request_id: str
  user_id: str
  job_kind: str
  parameters: dict | None
  credits_charged: int
  status: str
  outcome_kind: str | None
  failure_reason: str | None
  provider_job_id: str | None
  artifact_url: str | None
  storage_key: str | None
  content_type: str | None
  size_bytes: int | None
  submitted_at: str | None
  completed_at: str | None
  created_at: str | None


class CreditTransactionRecord(msgspec.Struct):
  """Balance movement row for API responses."""

  id: str
  user_id: str
  entry_type: str
  delta: int
  balance_after: int | None
  reservation_id: str | None
  request_id: str | None
  note: str | None
  created_at: str | None


class CreditStore(Protocol):
  """Repository contract for the credit and ledger tables."""

  async def reserve(self, *, user_id: str, amount: int, request_id: str) -> ReservationToken | None:
    """Atomically debit amount when the balance covers it; None when it does not.

    Raises DuplicateRequestError when request_id already has a reservation.
    """

  async def settle(self, reservation_id: str) -> bool:
    """Mark an open reservation consumed; False when it was already resolved."""

  async def refund(self, reservation_id: str) -> bool:
    """Re-credit an open reservation; False when it was already resolved."""

  async def grant(self, *, user_id: str, amount: int, note: str | None = None) -> CreditBalance:
    """Add credits to a balance, creating it on first grant."""

  async def get_balance(self, user_id: str) -> CreditBalance:
    """Return the current balance; users without a row have zero."""

  async def append_ledger_entry(self, entry: LedgerEntry) -> bool:
    """Insert the audit row; False when a row for the request already exists."""

  async def get_ledger_entries(self, request_id: str) -> list[LedgerEntryRecord]:
    """Return ledger rows for a request id."""

  async def list_ledger_entries(self, user_id: str, *, limit: int = 50) -> list[LedgerEntryRecord]:
    """Return a user's most recent ledger rows."""

  async def list_transactions(self, user_id: str, *, limit: int = 50) -> list[CreditTransactionRecord]:
    """Return a user's most recent balance movements."""

  async def find_stale_reservations(self, *, older_than: datetime.datetime) -> list[ReservationToken]:
    """Return reservations still open that were created before the cutoff."""
