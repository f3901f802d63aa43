"""Shared fixtures: sqlite-backed credit store, fake providers and fake storage."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import app.schema.credits  # noqa: F401
from app.config import Settings, get_settings
from app.core.database import Base
from app.generation.materializer import ArtifactMaterializer
from app.generation.models import JobKind, JobStatus
from app.generation.orchestrator import GenerationOrchestrator
from app.generation.poller import PollLoop, PollPolicy
from app.generation.submitter import JobSubmitter
from app.services.quota_ledger import QuotaLedger
from app.storage.postgres_credits_repo import PostgresCreditStore

ARTIFACT_URL = "https://cdn.provider.test/results/output.png"
ARTIFACT_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 256


class ScriptedProvider:
  """Provider stub that replays a list of statuses; exceptions in the list are raised."""

  name = "scripted"

  def __init__(self, kind: JobKind = JobKind.IMAGE, statuses: list[Any] | None = None, *, submit_error: Exception | None = None, status_delay: float = 0.0) -> None:
    self.kind = kind
    self._statuses = list(statuses or [JobStatus.succeeded([ARTIFACT_URL])])
    self._submit_error = submit_error
    self._status_delay = status_delay
    self.submitted: list[dict[str, Any]] = []
    self.status_calls = 0

  async def submit_job(self, params: dict[str, Any]) -> str:
    if self._submit_error is not None:
      raise self._submit_error
    self.submitted.append(params)
    return f"job-{len(self.submitted)}"

  async def get_job_status(self, job_id: str) -> JobStatus:
    self.status_calls += 1
    if self._status_delay:
      await asyncio.sleep(self._status_delay)
    # Repeat the final entry forever once the script runs out.
    item = self._statuses.pop(0) if len(self._statuses) > 1 else self._statuses[0]
    if isinstance(item, Exception):
      raise item
    return item


class FakeStorage:
  """In-memory object storage; set fail to make every upload raise."""

  def __init__(self, *, fail: bool = False) -> None:
    self.fail = fail
    self.objects: dict[str, tuple[bytes, str]] = {}

  async def put(self, key: str, data: Any, content_type: str) -> str:
    if self.fail:
      raise ConnectionError("storage unavailable")
    payload = data if isinstance(data, bytes) else data.read()
    self.objects[key] = (payload, content_type)
    return f"https://storage.test/{key}"


def artifact_transport(body: bytes = ARTIFACT_BYTES, content_type: str = "image/png") -> httpx.MockTransport:
  def handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=body, headers={"content-type": content_type})

  return httpx.MockTransport(handler)


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
  base = get_settings.__wrapped__()
  return replace(
    base,
    log_dir=str(tmp_path / "logs"),
    task_secret="test-secret",
    fal_api_key="fal-test-key",
    runway_api_secret="runway-test-secret",
    cost_image=10,
    cost_video=10,
    cost_speech=10,
    poll_initial_seconds=0.01,
    poll_max_interval_seconds=0.05,
    poll_multiplier=1.5,
    poll_throttle_multiplier=2.0,
    poll_max_wait_seconds=1.0,
    poll_jitter_ratio=0.0,
    poll_max_status_errors=3,
    download_attempts=2,
    ledger_write_attempts=2,
    stale_reservation_seconds=5.0,
    image_webp=False,
  )


@pytest.fixture
async def session_factory(tmp_path):
  engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'credits.db'}", connect_args={"timeout": 30})
  async with engine.begin() as connection:
    await connection.run_sync(Base.metadata.create_all)
  yield async_sessionmaker(bind=engine, expire_on_commit=False)
  await engine.dispose()


@pytest.fixture
def credit_store(session_factory) -> PostgresCreditStore:
  return PostgresCreditStore(session_factory)


@pytest.fixture
def quota_ledger(credit_store, settings) -> QuotaLedger:
  return QuotaLedger(credit_store, settings=settings)


@pytest.fixture
def scripted_provider():
  return ScriptedProvider


@pytest.fixture
def fake_storage():
  return FakeStorage


@pytest.fixture
async def build_orchestrator(quota_ledger, settings):
  clients: list[httpx.AsyncClient] = []

  def _build(provider: ScriptedProvider, *, storage: FakeStorage | None = None, transport: httpx.MockTransport | None = None, policy: PollPolicy | None = None) -> GenerationOrchestrator:
    client = httpx.AsyncClient(transport=transport or artifact_transport())
    clients.append(client)
    materializer = ArtifactMaterializer(client, storage if storage is not None else FakeStorage(), settings=settings)
    return GenerationOrchestrator(ledger=quota_ledger, submitter=JobSubmitter({provider.kind: provider}), poller=PollLoop(policy or PollPolicy.from_settings(settings)), materializer=materializer)

  yield _build
  for client in clients:
    await client.aclose()


@pytest.fixture
def download_transport():
  return artifact_transport
