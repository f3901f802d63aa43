"""Credit reservation, settlement and audit logging for generation requests."""

from __future__ import annotations

import datetime
import logging
import warnings
from dataclasses import dataclass

from app.config import Settings
from app.generation.errors import InsufficientCreditError, LedgerWriteWarning
from app.generation.models import CreditBalance, LedgerEntry, LedgerStatus, ReservationToken
from app.storage.credits_repo import CreditStore, LedgerEntryRecord
from app.utils.retry import FailureClassification, retry_async

logger = logging.getLogger(__name__)


def _ledger_write_failure(exc: BaseException) -> FailureClassification:
  # Any failure of the append is worth another attempt; duplicates never raise.
  return FailureClassification(retryable=True, category=type(exc).__name__, reason=str(exc) or type(exc).__name__)


@dataclass(frozen=True)
class SweepResult:
  settled: int
  refunded: int


class QuotaLedger:
  """Per-user prepaid credits with reserve-then-settle-or-refund semantics.

  How/Why:
    - reserve debits up front so an in-flight job can never be paid for twice.
    - settle and refund are idempotent so retried cleanup paths are safe.
    - record_ledger_entry is best effort; a failed append never undoes a settle or refund.
  """

  def __init__(self, store: CreditStore, *, settings: Settings) -> None:
    self._store = store
    self._ledger_write_attempts = max(2, settings.ledger_write_attempts)
    self._stale_after = datetime.timedelta(seconds=settings.stale_reservation_seconds)

  async def reserve(self, user_id: str, amount: int, *, request_id: str) -> ReservationToken:
    """Debit amount from the user's balance or raise InsufficientCreditError."""
    if amount <= 0:
      raise ValueError("amount must be positive")
    token = await self._store.reserve(user_id=user_id, amount=amount, request_id=request_id)
    if token is None:
      logger.info("Reservation rejected user_id=%s amount=%d request_id=%s", user_id, amount, request_id)
      raise InsufficientCreditError("Not enough credits for this generation.", user_id=user_id, requested=amount, request_id=request_id)
    logger.info("Reservation opened user_id=%s amount=%d reservation_id=%s request_id=%s", user_id, amount, token.reservation_id, request_id)
    return token

  async def settle(self, token: ReservationToken) -> None:
    """Mark the reservation consumed; the balance already reflects the debit."""
    changed = await retry_async(operation_name="credit_settle", func=lambda: self._store.settle(token.reservation_id), max_attempts=3)
    if not changed:
      logger.info("Settle was a no-op reservation_id=%s", token.reservation_id)

  async def refund(self, token: ReservationToken) -> None:
    """Return the reserved amount; a second refund or a refund after settle does nothing."""
    changed = await retry_async(operation_name="credit_refund", func=lambda: self._store.refund(token.reservation_id), max_attempts=3)
    if changed:
      logger.info("Reservation refunded user_id=%s amount=%d reservation_id=%s", token.user_id, token.amount, token.reservation_id)
    else:
      logger.info("Refund was a no-op reservation_id=%s", token.reservation_id)

  async def record_ledger_entry(self, entry: LedgerEntry) -> bool:
    """Append the audit row, retrying before downgrading to a LedgerWriteWarning."""
    try:
      await retry_async(operation_name="ledger_append", func=lambda: self._store.append_ledger_entry(entry), classify=_ledger_write_failure, max_attempts=self._ledger_write_attempts, initial_backoff=0.05, max_backoff=1.0)
    except Exception as exc:
      message = f"Ledger entry for request {entry.request_id} was not written: {exc}"
      logger.warning("Ledger write failed after %d attempts request_id=%s status=%s", self._ledger_write_attempts, entry.request_id, entry.status.value, exc_info=True)
      warnings.warn(message, LedgerWriteWarning, stacklevel=2)
      return False
    return True

  async def get_balance(self, user_id: str) -> CreditBalance:
    return await self._store.get_balance(user_id)

  async def grant_credits(self, user_id: str, amount: int, *, reason: str | None = None) -> CreditBalance:
    """Top up a balance, creating it when the user has none yet."""
    if amount <= 0:
      raise ValueError("amount must be positive")
    balance = await self._store.grant(user_id=user_id, amount=amount, note=reason)
    logger.info("Credits granted user_id=%s amount=%d balance=%d", user_id, amount, balance.balance)
    return balance

  async def get_ledger_entries(self, request_id: str) -> list[LedgerEntryRecord]:
    return await self._store.get_ledger_entries(request_id)

  async def list_ledger_entries(self, user_id: str, *, limit: int = 50) -> list[LedgerEntryRecord]:
    return await self._store.list_ledger_entries(user_id, limit=limit)

  async def sweep_stale_reservations(self, *, max_age: datetime.timedelta | None = None, now: datetime.datetime | None = None) -> SweepResult:
    """Resolve reservations orphaned by a crash mid-generation.

    A reservation whose request has a succeeded ledger row is settled;
    anything else is refunded since no artifact reached the caller.
    """
    horizon = max_age if max_age is not None else self._stale_after
    current = now or datetime.datetime.now(datetime.UTC)
    stale = await self._store.find_stale_reservations(older_than=current - horizon)
    settled = 0
    refunded = 0
    for token in stale:
      entries = await self._store.get_ledger_entries(token.request_id)
      if any(entry.status == LedgerStatus.SUCCEEDED.value for entry in entries):
        if await self._store.settle(token.reservation_id):
          settled += 1
      elif await self._store.refund(token.reservation_id):
        refunded += 1
    if stale:
      logger.warning("Stale reservations swept found=%d settled=%d refunded=%d", len(stale), settled, refunded)
    return SweepResult(settled=settled, refunded=refunded)
