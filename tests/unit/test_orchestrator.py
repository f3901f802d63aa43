from __future__ import annotations

import asyncio

import pytest

from app.generation.errors import DuplicateRequestError, InsufficientCreditError, InternalGenerationError, InvalidRequestError, JobCancelledError, JobFailedError, JobTimedOutError, LedgerWriteWarning, MaterializationError, SubmissionError
from app.generation.models import GenerationRequest, JobKind, JobState, JobStatus
from app.generation.providers.base import ProviderError

RUNNING = JobStatus(state=JobState.RUNNING)
DONE = JobStatus.succeeded(["https://cdn.provider.test/results/output.png"])


def _request(settings, user_id: str = "user-1", **params) -> GenerationRequest:
  return GenerationRequest.build(settings=settings, user_id=user_id, kind=JobKind.IMAGE, params=params or {"prompt": "a red fox in snow"})


@pytest.mark.anyio
async def test_scenario_a_success_debits_cost_and_records_entry(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  orchestrator = build_orchestrator(scripted_provider(JobKind.IMAGE, [RUNNING, DONE]))
  request = _request(settings)

  artifact = await orchestrator.generate(request)

  assert artifact.request is request
  assert artifact.url.startswith("https://storage.test/image/user-1/")
  assert (await quota_ledger.get_balance("user-1")).balance == 0
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert len(rows) == 1
  assert rows[0].status == "succeeded"
  assert rows[0].credits_charged == 10
  assert rows[0].artifact_url == artifact.url
  assert rows[0].submitted_at is not None and rows[0].completed_at is not None


@pytest.mark.anyio
async def test_scenario_b_insufficient_credit_has_no_side_effects(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 5)
  provider = scripted_provider(JobKind.IMAGE)
  request = _request(settings)

  with pytest.raises(InsufficientCreditError):
    await build_orchestrator(provider).generate(request)

  assert (await quota_ledger.get_balance("user-1")).balance == 5
  assert await quota_ledger.get_ledger_entries(request.request_id) == []
  assert provider.submitted == []


@pytest.mark.anyio
async def test_scenario_c_provider_failure_refunds_and_keeps_reason(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  provider = scripted_provider(JobKind.IMAGE, [RUNNING, RUNNING, JobStatus.failed("content_policy_violation")])
  request = _request(settings)

  with pytest.raises(JobFailedError) as exc_info:
    await build_orchestrator(provider).generate(request)

  assert exc_info.value.reason_code == "content_policy_violation"
  assert exc_info.value.request_id == request.request_id
  assert provider.status_calls == 3
  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert len(rows) == 1
  assert rows[0].status == "failed"
  assert rows[0].credits_charged == 0
  assert rows[0].failure_reason == "content_policy_violation"
  assert rows[0].provider_job_id == "job-1"


@pytest.mark.anyio
async def test_scenario_d_upload_failure_refunds(settings, quota_ledger, build_orchestrator, scripted_provider, fake_storage) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  request = _request(settings)

  with pytest.raises(MaterializationError):
    await build_orchestrator(scripted_provider(JobKind.IMAGE, [DONE]), storage=fake_storage(fail=True)).generate(request)

  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert len(rows) == 1
  assert rows[0].outcome_kind == "materialization_failed"


@pytest.mark.anyio
async def test_submission_failure_refunds(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  provider = scripted_provider(JobKind.IMAGE, submit_error=ProviderError("upstream down", status_code=503, retryable=True))
  request = _request(settings)

  with pytest.raises(SubmissionError) as exc_info:
    await build_orchestrator(provider).generate(request)

  assert exc_info.value.retryable is True
  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert [row.outcome_kind for row in rows] == ["submission_failed"]
  assert rows[0].provider_job_id is None


@pytest.mark.anyio
async def test_timeout_refunds(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  request = _request(settings)

  with pytest.raises(JobTimedOutError):
    await build_orchestrator(scripted_provider(JobKind.IMAGE, [RUNNING])).generate(request)

  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert [row.outcome_kind for row in rows] == ["job_timed_out"]


@pytest.mark.anyio
async def test_cancel_event_refunds(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  cancel_event = asyncio.Event()
  request = _request(settings)

  async def _cancel_soon() -> None:
    await asyncio.sleep(0.05)
    cancel_event.set()

  canceller = asyncio.create_task(_cancel_soon())
  with pytest.raises(JobCancelledError):
    await build_orchestrator(scripted_provider(JobKind.IMAGE, [RUNNING])).generate(request, cancel_event=cancel_event)
  await canceller

  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert [row.outcome_kind for row in rows] == ["job_cancelled"]


@pytest.mark.anyio
async def test_task_cancellation_refunds_before_propagating(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  request = _request(settings)
  task = asyncio.create_task(build_orchestrator(scripted_provider(JobKind.IMAGE, [RUNNING])).generate(request))

  await asyncio.sleep(0.05)
  task.cancel()
  with pytest.raises(asyncio.CancelledError):
    await task

  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert [row.outcome_kind for row in rows] == ["job_cancelled"]


@pytest.mark.anyio
async def test_unexpected_errors_refund_and_surface_as_internal(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  request = _request(settings)

  with pytest.raises(InternalGenerationError):
    await build_orchestrator(scripted_provider(JobKind.IMAGE, [RuntimeError("bug")])).generate(request)

  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert [row.outcome_kind for row in rows] == ["internal_error"]


@pytest.mark.anyio
async def test_invalid_request_touches_nothing(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  request = GenerationRequest.build(settings=settings, user_id="user-1", kind=JobKind.IMAGE, params={"size": "big"})

  with pytest.raises(InvalidRequestError) as exc_info:
    await build_orchestrator(scripted_provider(JobKind.IMAGE)).generate(request)

  assert exc_info.value.request_id == request.request_id
  assert (await quota_ledger.get_balance("user-1")).balance == 10
  assert await quota_ledger.get_ledger_entries(request.request_id) == []


@pytest.mark.anyio
async def test_credit_conservation_over_mixed_outcomes(settings, quota_ledger, build_orchestrator, scripted_provider, fake_storage) -> None:
  await quota_ledger.grant_credits("user-1", 100)
  outcomes = [
    build_orchestrator(scripted_provider(JobKind.IMAGE, [DONE])),
    build_orchestrator(scripted_provider(JobKind.IMAGE, [JobStatus.failed("nsfw")])),
    build_orchestrator(scripted_provider(JobKind.IMAGE, [DONE]), storage=fake_storage(fail=True)),
    build_orchestrator(scripted_provider(JobKind.IMAGE, [RUNNING, DONE])),
    build_orchestrator(scripted_provider(JobKind.IMAGE, submit_error=ProviderError("bad key", status_code=401))),
  ]

  successes = 0
  for orchestrator in outcomes:
    try:
      await orchestrator.generate(_request(settings))
      successes += 1
    except Exception:  # noqa: BLE001
      pass

  assert successes == 2
  assert (await quota_ledger.get_balance("user-1")).balance == 100 - 10 * successes
  rows = await quota_ledger.list_ledger_entries("user-1")
  assert len(rows) == len(outcomes)


@pytest.mark.anyio
async def test_concurrent_generations_succeed_only_up_to_balance(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 30)
  orchestrator = build_orchestrator(scripted_provider(JobKind.IMAGE, [DONE]))

  results = await asyncio.gather(*(orchestrator.generate(_request(settings)) for _ in range(6)), return_exceptions=True)

  insufficient = [result for result in results if isinstance(result, InsufficientCreditError)]
  delivered = [result for result in results if not isinstance(result, BaseException)]
  assert len(delivered) == 3
  assert len(insufficient) == 3
  assert (await quota_ledger.get_balance("user-1")).balance == 0
  assert len(await quota_ledger.list_ledger_entries("user-1")) == 3


@pytest.mark.anyio
async def test_reused_request_id_is_rejected_before_any_work(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  first = GenerationRequest.build(settings=settings, user_id="user-1", kind=JobKind.IMAGE, params={"prompt": "a fox"}, request_id="req-dup")
  with pytest.raises(JobFailedError):
    await build_orchestrator(scripted_provider(JobKind.IMAGE, [JobStatus.failed("nsfw")])).generate(first)

  provider = scripted_provider(JobKind.IMAGE, [DONE])
  second = GenerationRequest.build(settings=settings, user_id="user-1", kind=JobKind.IMAGE, params={"prompt": "a fox"}, request_id="req-dup")
  with pytest.raises(DuplicateRequestError):
    await build_orchestrator(provider).generate(second)

  assert provider.submitted == []
  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries("req-dup")
  assert [(row.status, row.credits_charged) for row in rows] == [("failed", 0)]


@pytest.mark.anyio
async def test_cancellation_during_refund_still_refunds_and_records(settings, quota_ledger, credit_store, build_orchestrator, scripted_provider, monkeypatch) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  refund_started = asyncio.Event()
  original_refund = credit_store.refund

  async def slow_refund(reservation_id: str) -> bool:
    refund_started.set()
    await asyncio.sleep(0.2)
    return await original_refund(reservation_id)

  monkeypatch.setattr(credit_store, "refund", slow_refund)
  orchestrator = build_orchestrator(scripted_provider(JobKind.IMAGE, [JobStatus.failed("nsfw")]))
  request = _request(settings)
  task = asyncio.create_task(orchestrator.generate(request))

  await refund_started.wait()
  task.cancel()
  with pytest.raises(asyncio.CancelledError):
    await task
  await orchestrator.drain()

  assert (await quota_ledger.get_balance("user-1")).balance == 10
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert [(row.status, row.failure_reason) for row in rows] == [("failed", "nsfw")]


@pytest.mark.anyio
async def test_cancellation_during_settle_still_records_success(settings, quota_ledger, credit_store, build_orchestrator, scripted_provider, monkeypatch) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  settle_started = asyncio.Event()
  original_settle = credit_store.settle

  async def slow_settle(reservation_id: str) -> bool:
    settle_started.set()
    await asyncio.sleep(0.2)
    return await original_settle(reservation_id)

  monkeypatch.setattr(credit_store, "settle", slow_settle)
  orchestrator = build_orchestrator(scripted_provider(JobKind.IMAGE, [DONE]))
  request = _request(settings)
  task = asyncio.create_task(orchestrator.generate(request))

  await settle_started.wait()
  task.cancel()
  with pytest.raises(asyncio.CancelledError):
    await task
  await orchestrator.drain()

  assert (await quota_ledger.get_balance("user-1")).balance == 0
  rows = await quota_ledger.get_ledger_entries(request.request_id)
  assert [(row.status, row.credits_charged) for row in rows] == [("succeeded", 10)]


@pytest.mark.anyio
async def test_ledger_write_failure_still_returns_the_artifact(settings, quota_ledger, credit_store, build_orchestrator, scripted_provider, monkeypatch) -> None:
  await quota_ledger.grant_credits("user-1", 10)

  async def offline_append(entry) -> bool:
    raise ConnectionError("ledger store offline")

  monkeypatch.setattr(credit_store, "append_ledger_entry", offline_append)
  request = _request(settings)

  with pytest.warns(LedgerWriteWarning):
    artifact = await build_orchestrator(scripted_provider(JobKind.IMAGE, [DONE])).generate(request)

  assert artifact.url.startswith("https://storage.test/image/user-1/")
  assert (await quota_ledger.get_balance("user-1")).balance == 0


@pytest.mark.anyio
async def test_malformed_optional_parameter_is_invalid_before_reserving(settings, quota_ledger, build_orchestrator, scripted_provider) -> None:
  await quota_ledger.grant_credits("user-1", 10)
  provider = scripted_provider(JobKind.VIDEO)
  request = GenerationRequest.build(settings=settings, user_id="user-1", kind=JobKind.VIDEO, params={"prompt": "waves", "image_url": "https://cdn.test/a.png", "duration": "five"})

  with pytest.raises(InvalidRequestError):
    await build_orchestrator(provider).generate(request)

  assert provider.submitted == []
  assert (await quota_ledger.get_balance("user-1")).balance == 10
  assert await quota_ledger.get_ledger_entries(request.request_id) == []
