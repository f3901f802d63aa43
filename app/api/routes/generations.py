"""Internal endpoints that run generations and expose credits and ledger rows."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Annotated, Any

import msgspec
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from starlette.responses import Response

from app.api.deps import get_orchestrator, get_quota_ledger, require_task_secret
from app.api.msgspec_utils import encode_msgspec_response
from app.config import Settings, get_settings
from app.generation.models import GenerationRequest, JobKind
from app.generation.orchestrator import GenerationOrchestrator
from app.services.quota_ledger import QuotaLedger
from app.storage.credits_repo import LedgerEntryRecord

router = APIRouter(dependencies=[Depends(require_task_secret)])
logger = logging.getLogger(__name__)

_DISCONNECT_POLL_SECONDS = 0.5


class GenerationPayload(BaseModel):
  user_id: str = Field(min_length=1, max_length=128)
  kind: JobKind
  params: dict[str, Any] = Field(default_factory=dict)
  request_id: str | None = Field(default=None, min_length=1, max_length=128)


class GrantPayload(BaseModel):
  amount: int = Field(gt=0)
  reason: str | None = Field(default=None, max_length=500)


class BalanceResponse(msgspec.Struct):
  user_id: str
  balance: int
  version: int


class LedgerResponse(msgspec.Struct):
  request_id: str
  entries: list[LedgerEntryRecord]


async def _cancel_on_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
  """Fire the cancel signal when the caller goes away."""
  while not cancel_event.is_set():
    if await request.is_disconnected():
      logger.info("Client disconnected; cancelling generation path=%s", request.url.path)
      cancel_event.set()
      return
    await asyncio.sleep(_DISCONNECT_POLL_SECONDS)


@router.post("/generations", status_code=status.HTTP_201_CREATED)
async def create_generation(
  payload: GenerationPayload, request: Request, settings: Annotated[Settings, Depends(get_settings)], orchestrator: Annotated[GenerationOrchestrator, Depends(get_orchestrator)]
) -> dict[str, Any]:
  """Run one generation to completion and return the stored artifact."""
  generation_request = GenerationRequest.build(settings=settings, user_id=payload.user_id, kind=payload.kind, params=payload.params, request_id=payload.request_id)
  cancel_event = asyncio.Event()
  watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel_event))
  try:
    artifact = await orchestrator.generate(generation_request, cancel_event=cancel_event)
  finally:
    watcher.cancel()
    with contextlib.suppress(asyncio.CancelledError):
      await watcher
  return artifact.to_dict()


@router.get("/credits/{user_id}")
async def get_credit_balance(user_id: str, ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)]) -> Response:
  balance = await ledger.get_balance(user_id)
  return encode_msgspec_response(BalanceResponse(user_id=balance.user_id, balance=balance.balance, version=balance.version))


@router.post("/credits/{user_id}/grants", status_code=status.HTTP_201_CREATED)
async def grant_credits(user_id: str, payload: GrantPayload, ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)]) -> Response:
  balance = await ledger.grant_credits(user_id, payload.amount, reason=payload.reason)
  return encode_msgspec_response(BalanceResponse(user_id=balance.user_id, balance=balance.balance, version=balance.version), status_code=status.HTTP_201_CREATED)


@router.get("/generations/{request_id}/ledger")
async def get_generation_ledger(request_id: str, ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)]) -> Response:
  entries = await ledger.get_ledger_entries(request_id)
  return encode_msgspec_response(LedgerResponse(request_id=request_id, entries=entries))
