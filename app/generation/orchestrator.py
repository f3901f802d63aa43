"""Compose reservation, submission, polling and materialization into one call."""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from app.generation.errors import GenerationError, InternalGenerationError, InvalidRequestError, JobCancelledError, JobFailedError, JobTimedOutError
from app.generation.materializer import ArtifactMaterializer
from app.generation.models import Artifact, GenerationRequest, JobHandle, JobState, LedgerEntry, LedgerStatus, ReservationToken
from app.generation.poller import PollLoop
from app.generation.submitter import JobSubmitter
from app.services.quota_ledger import QuotaLedger
from app.telemetry.redaction import summarize_parameters

logger = logging.getLogger(__name__)


def _utc_now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


@dataclass
class _AttemptState:
  """What one request got as far as; fills the ledger row on any exit."""

  handle: JobHandle | None = None
  submitted_at: datetime.datetime | None = None


class GenerationOrchestrator:
  """Run one generation request end to end.

  How/Why:
    - Credits are reserved before any provider call and refunded on every failure exit.
    - Each request produces exactly one ledger row, success or failure.
    - Stages run strictly in order: reserve, submit, poll, materialize, settle, record.
  """

  def __init__(self, *, ledger: QuotaLedger, submitter: JobSubmitter, poller: PollLoop, materializer: ArtifactMaterializer) -> None:
    self._ledger = ledger
    self._submitter = submitter
    self._poller = poller
    self._materializer = materializer
    self._cleanups: set[asyncio.Task] = set()

  async def generate(self, request: GenerationRequest, cancel_event: asyncio.Event | None = None) -> Artifact:
    """Return the stored artifact or raise a GenerationError subclass."""
    if request.cost <= 0:
      raise InvalidRequestError("Credit cost must be positive.", request_id=request.request_id)
    try:
      self._submitter.validate(request.kind, request.params)
    except InvalidRequestError as exc:
      exc.request_id = request.request_id
      raise

    # Insufficient credit or a reused request id propagates with nothing to undo and no ledger row.
    token = await self._ledger.reserve(request.user_id, request.cost, request_id=request.request_id)
    logger.info("Generation started request_id=%s user_id=%s kind=%s cost=%d", request.request_id, request.user_id, request.kind.value, request.cost)

    attempt = _AttemptState()
    try:
      artifact = await self._run(request, attempt, cancel_event)
    except GenerationError as exc:
      exc.request_id = exc.request_id or request.request_id
      await self._cleanup(self._fail(request, token, attempt, exc))
      raise
    except asyncio.CancelledError:
      error = JobCancelledError("Generation was cancelled before it finished.", request_id=request.request_id)
      await self._cleanup(self._fail(request, token, attempt, error))
      raise
    except Exception as exc:
      logger.error("Unexpected generation failure request_id=%s", request.request_id, exc_info=True)
      error = InternalGenerationError("Generation failed unexpectedly.", request_id=request.request_id)
      await self._cleanup(self._fail(request, token, attempt, error))
      raise error from exc

    await self._cleanup(self._succeed(request, token, attempt, artifact))
    return artifact

  async def drain(self) -> None:
    """Wait for settle, refund and ledger writes still running after their caller was cancelled."""
    if self._cleanups:
      await asyncio.gather(*self._cleanups, return_exceptions=True)

  async def _cleanup(self, work: Coroutine[Any, Any, None]) -> None:
    # Shielded so a cancelled caller cannot roll back a refund or drop the ledger row.
    task = asyncio.ensure_future(work)
    self._cleanups.add(task)
    task.add_done_callback(self._cleanups.discard)
    await asyncio.shield(task)

  async def _run(self, request: GenerationRequest, attempt: _AttemptState, cancel_event: asyncio.Event | None) -> Artifact:
    handle = await self._submitter.submit(request.kind, request.params)
    attempt.handle = handle
    attempt.submitted_at = _utc_now()
    logger.info("Job submitted request_id=%s kind=%s provider=%s job_id=%s", request.request_id, request.kind.value, handle.provider, handle.job_id)

    provider = self._submitter.provider_for(request.kind)
    outcome = await self._poller.run(provider, handle, cancel_event)
    status = outcome.status
    if status.state == JobState.FAILED:
      reason = status.reason_code or "unknown"
      raise JobFailedError(f"Provider reported failure: {reason}", reason_code=reason, job_id=handle.job_id, request_id=request.request_id)
    if status.state == JobState.TIMED_OUT:
      raise JobTimedOutError(f"Job did not finish within {self._poller.policy.max_wait:.0f}s.", waited_seconds=outcome.elapsed, job_id=handle.job_id, request_id=request.request_id)

    logger.info("Job succeeded request_id=%s job_id=%s polls=%d elapsed=%.1fs locators=%d", request.request_id, handle.job_id, outcome.polls, outcome.elapsed, len(status.result_locators))
    return await self._materializer.materialize(status.result_locators[0], request=request, handle=handle)

  async def _fail(self, request: GenerationRequest, token: ReservationToken, attempt: _AttemptState, error: GenerationError) -> None:
    try:
      await self._ledger.refund(token)
    except Exception:
      # The stale reservation sweep refunds it later since no succeeded ledger row will exist.
      logger.error("Refund failed; reservation left for sweep request_id=%s reservation_id=%s", request.request_id, token.reservation_id, exc_info=True)

    reason = error.message
    if isinstance(error, JobFailedError):
      reason = error.reason_code
    logger.warning("Generation failed request_id=%s kind=%s outcome=%s reason=%s", request.request_id, request.kind.value, error.kind, reason)
    entry = LedgerEntry(
      request_id=request.request_id,
      user_id=request.user_id,
      job_kind=request.kind,
      parameters=summarize_parameters(request.params),
      credits_charged=0,
      status=LedgerStatus.FAILED,
      outcome_kind=error.kind,
      failure_reason=reason,
      provider_job_id=attempt.handle.job_id if attempt.handle else None,
      submitted_at=attempt.submitted_at,
      completed_at=_utc_now(),
    )
    await self._ledger.record_ledger_entry(entry)

  async def _succeed(self, request: GenerationRequest, token: ReservationToken, attempt: _AttemptState, artifact: Artifact) -> None:
    try:
      await self._ledger.settle(token)
    except Exception:
      # The debit already happened at reserve time; the sweep settles it once the ledger row exists.
      logger.error("Settle failed; reservation left for sweep request_id=%s reservation_id=%s", request.request_id, token.reservation_id, exc_info=True)

    entry = LedgerEntry(
      request_id=request.request_id,
      user_id=request.user_id,
      job_kind=request.kind,
      parameters=summarize_parameters(request.params),
      credits_charged=request.cost,
      status=LedgerStatus.SUCCEEDED,
      outcome_kind="succeeded",
      provider_job_id=artifact.provider_job_id,
      artifact_url=artifact.url,
      storage_key=artifact.storage_key,
      content_type=artifact.content_type,
      size_bytes=artifact.size_bytes,
      submitted_at=attempt.submitted_at,
      completed_at=_utc_now(),
    )
    await self._ledger.record_ledger_entry(entry)
    logger.info("Generation finished request_id=%s url=%s charged=%d", request.request_id, artifact.url, request.cost)
