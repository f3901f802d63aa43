"""Repository for credit balances and the generation ledger using SQLAlchemy."""

from __future__ import annotations

import datetime
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_session_factory
from app.generation.errors import DuplicateRequestError
from app.generation.models import CreditBalance, LedgerEntry, ReservationToken
from app.schema.credits import CreditBalance as CreditBalanceRow
from app.schema.credits import CreditReservation, CreditTransaction, GenerationLedgerEntry
from app.storage.credits_repo import CreditTransactionRecord, LedgerEntryRecord
from app.utils.ids import generate_reservation_id

logger = logging.getLogger(__name__)

RESERVED = "reserved"
SETTLED = "settled"
REFUNDED = "refunded"


def _utc_now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


def _iso(value: datetime.datetime | None) -> str | None:
  return value.isoformat() if value is not None else None


def _ledger_record(row: GenerationLedgerEntry) -> LedgerEntryRecord:
  return LedgerEntryRecord(
    id=row.id,
    request_id=row.request_id,
    user_id=row.user_id,
    job_kind=row.job_kind,
    parameters=row.parameters,
    credits_charged=row.credits_charged,
    status=row.status,
    outcome_kind=row.outcome_kind,
    failure_reason=row.failure_reason,
    provider_job_id=row.provider_job_id,
    artifact_url=row.artifact_url,
    storage_key=row.storage_key,
    content_type=row.content_type,
    size_bytes=row.size_bytes,
    submitted_at=_iso(row.submitted_at),
    completed_at=_iso(row.completed_at),
    created_at=_iso(row.created_at),
  )


class PostgresCreditStore:
  """Persist balances, reservations and ledger rows.

  Every balance mutation is a single conditional UPDATE so concurrent
  requests for one user never read-then-write the balance.
  """

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def reserve(self, *, user_id: str, amount: int, request_id: str) -> ReservationToken | None:
    """Debit the balance and open a reservation in one transaction."""
    reservation_id = generate_reservation_id()
    now = _utc_now()
    try:
      balance_after = await self._reserve(reservation_id=reservation_id, user_id=user_id, amount=amount, request_id=request_id, now=now)
    except IntegrityError as exc:
      # A concurrent reserve won the unique request_id; the debit rolled back with it.
      raise DuplicateRequestError(f"Request id {request_id} was already used.", request_id=request_id) from exc
    if balance_after is None:
      return None

    logger.debug("Reserved credits user_id=%s amount=%d reservation_id=%s balance_after=%d", user_id, amount, reservation_id, balance_after)
    return ReservationToken(reservation_id=reservation_id, user_id=user_id, amount=amount, request_id=request_id)

  async def _reserve(self, *, reservation_id: str, user_id: str, amount: int, request_id: str, now: datetime.datetime) -> int | None:
    async with self._session_factory() as session:
      async with session.begin():
        existing = await session.execute(select(CreditReservation.id).where(CreditReservation.request_id == request_id))
        if existing.first() is not None:
          raise DuplicateRequestError(f"Request id {request_id} was already used.", request_id=request_id)

        # The balance guard lives in the WHERE clause, so check and decrement are one statement.
        stmt = (
          update(CreditBalanceRow)
          .where(CreditBalanceRow.user_id == user_id, CreditBalanceRow.balance >= amount)
          .values(balance=CreditBalanceRow.balance - amount, version=CreditBalanceRow.version + 1, updated_at=now)
          .returning(CreditBalanceRow.balance)
          .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        balance_after = result.scalar_one_or_none()
        if balance_after is None:
          return None

        session.add(CreditReservation(id=reservation_id, user_id=user_id, request_id=request_id, amount=amount, status=RESERVED, created_at=now))
        session.add(CreditTransaction(user_id=user_id, entry_type="reserve", delta=-amount, balance_after=balance_after, reservation_id=reservation_id, request_id=request_id, created_at=now))
    return balance_after

  async def settle(self, reservation_id: str) -> bool:
    now = _utc_now()
    async with self._session_factory() as session:
      async with session.begin():
        resolved = await self._resolve(session, reservation_id, SETTLED, now)
        if resolved is None:
          return False
        user_id, _amount, request_id = resolved
        session.add(CreditTransaction(user_id=user_id, entry_type="settle", delta=0, balance_after=None, reservation_id=reservation_id, request_id=request_id, created_at=now))
    return True

  async def refund(self, reservation_id: str) -> bool:
    now = _utc_now()
    async with self._session_factory() as session:
      async with session.begin():
        resolved = await self._resolve(session, reservation_id, REFUNDED, now)
        if resolved is None:
          return False
        user_id, amount, request_id = resolved
        stmt = (
          update(CreditBalanceRow)
          .where(CreditBalanceRow.user_id == user_id)
          .values(balance=CreditBalanceRow.balance + amount, version=CreditBalanceRow.version + 1, updated_at=now)
          .returning(CreditBalanceRow.balance)
          .execution_options(synchronize_session=False)
        )
        balance_after = (await session.execute(stmt)).scalar_one()
        session.add(CreditTransaction(user_id=user_id, entry_type="refund", delta=amount, balance_after=balance_after, reservation_id=reservation_id, request_id=request_id, created_at=now))
    return True

  async def _resolve(self, session: AsyncSession, reservation_id: str, status: str, now: datetime.datetime) -> tuple[str, int, str] | None:
    """Move a reservation out of reserved; None when another caller already did."""
    stmt = (
      update(CreditReservation)
      .where(CreditReservation.id == reservation_id, CreditReservation.status == RESERVED)
      .values(status=status, resolved_at=now)
      .returning(CreditReservation.user_id, CreditReservation.amount, CreditReservation.request_id)
      .execution_options(synchronize_session=False)
    )
    row = (await session.execute(stmt)).first()
    if row is None:
      return None
    return row[0], row[1], row[2]

  async def grant(self, *, user_id: str, amount: int, note: str | None = None) -> CreditBalance:
    now = _utc_now()
    # Two passes cover a concurrent first grant racing us to insert the row.
    for _ in range(2):
      try:
        async with self._session_factory() as session:
          async with session.begin():
            stmt = (
              update(CreditBalanceRow)
              .where(CreditBalanceRow.user_id == user_id)
              .values(balance=CreditBalanceRow.balance + amount, version=CreditBalanceRow.version + 1, updated_at=now)
              .returning(CreditBalanceRow.balance, CreditBalanceRow.version)
              .execution_options(synchronize_session=False)
            )
            row = (await session.execute(stmt)).first()
            if row is None:
              await session.execute(insert(CreditBalanceRow).values(user_id=user_id, balance=amount, version=1, updated_at=now))
              balance, version = amount, 1
            else:
              balance, version = row[0], row[1]
            session.add(CreditTransaction(user_id=user_id, entry_type="grant", delta=amount, balance_after=balance, note=note, created_at=now))
        return CreditBalance(user_id=user_id, balance=balance, version=version)
      except IntegrityError:
        logger.info("Concurrent first grant detected; retrying as update user_id=%s", user_id)
    raise RuntimeError(f"Failed to grant credits for user {user_id}")

  async def get_balance(self, user_id: str) -> CreditBalance:
    async with self._session_factory() as session:
      row = await session.get(CreditBalanceRow, user_id)
      if row is None:
        return CreditBalance(user_id=user_id, balance=0, version=0)
      return CreditBalance(user_id=user_id, balance=row.balance, version=row.version)

  async def append_ledger_entry(self, entry: LedgerEntry) -> bool:
    row = GenerationLedgerEntry(
      request_id=entry.request_id,
      user_id=entry.user_id,
      job_kind=entry.job_kind.value,
      parameters=entry.parameters,
      credits_charged=entry.credits_charged,
      status=entry.status.value,
      outcome_kind=entry.outcome_kind,
      failure_reason=entry.failure_reason,
      provider_job_id=entry.provider_job_id,
      artifact_url=entry.artifact_url,
      storage_key=entry.storage_key,
      content_type=entry.content_type,
      size_bytes=entry.size_bytes,
      submitted_at=entry.submitted_at,
      completed_at=entry.completed_at,
      created_at=_utc_now(),
    )
    try:
      async with self._session_factory() as session:
        async with session.begin():
          session.add(row)
    except IntegrityError:
      # request_id is unique; a retried append after a lost ack lands here.
      logger.info("Ledger entry already present request_id=%s", entry.request_id)
      return False
    return True

  async def get_ledger_entries(self, request_id: str) -> list[LedgerEntryRecord]:
    async with self._session_factory() as session:
      result = await session.execute(select(GenerationLedgerEntry).where(GenerationLedgerEntry.request_id == request_id))
      return [_ledger_record(row) for row in result.scalars().all()]

  async def list_ledger_entries(self, user_id: str, *, limit: int = 50) -> list[LedgerEntryRecord]:
    async with self._session_factory() as session:
      stmt = select(GenerationLedgerEntry).where(GenerationLedgerEntry.user_id == user_id).order_by(GenerationLedgerEntry.created_at.desc()).limit(limit)
      result = await session.execute(stmt)
      return [_ledger_record(row) for row in result.scalars().all()]

  async def list_transactions(self, user_id: str, *, limit: int = 50) -> list[CreditTransactionRecord]:
    async with self._session_factory() as session:
      stmt = select(CreditTransaction).where(CreditTransaction.user_id == user_id).order_by(CreditTransaction.created_at.desc()).limit(limit)
      result = await session.execute(stmt)
      return [
        CreditTransactionRecord(
          id=row.id,
          user_id=row.user_id,
          entry_type=row.entry_type,
          delta=row.delta,
          balance_after=row.balance_after,
          reservation_id=row.reservation_id,
          request_id=row.request_id,
          note=row.note,
          created_at=_iso(row.created_at),
        )
        for row in result.scalars().all()
      ]

  async def find_stale_reservations(self, *, older_than: datetime.datetime) -> list[ReservationToken]:
    async with self._session_factory() as session:
      stmt = select(CreditReservation).where(CreditReservation.status == RESERVED, CreditReservation.created_at < older_than).order_by(CreditReservation.created_at.asc())
      result = await session.execute(stmt)
      return [ReservationToken(reservation_id=row.id, user_id=row.user_id, amount=row.amount, request_id=row.request_id) for row in result.scalars().all()]
