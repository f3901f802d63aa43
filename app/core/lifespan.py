import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import httpx
from fastapi import FastAPI

from app.core.database import dispose_engine, get_session_factory
from app.core.logging import _initialize_logging
from app.generation.materializer import ArtifactMaterializer
from app.generation.orchestrator import GenerationOrchestrator
from app.generation.poller import PollLoop, PollPolicy
from app.generation.providers.factory import build_providers
from app.generation.submitter import JobSubmitter
from app.services.quota_ledger import QuotaLedger
from app.services.storage_client import build_storage_client
from app.storage.postgres_credits_repo import PostgresCreditStore


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Wire the generation pipeline once per process and tear it down on shutdown."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")
  _initialize_logging(settings)
  logger.info("Starting genflow environment=%s database=%s", settings.environment, _redact_dsn(settings.pg_dsn))

  storage_client = build_storage_client(settings)
  # Ensure the artifact bucket exists before jobs begin.
  try:
    await storage_client.ensure_bucket()
    logger.info("Artifact bucket ensured: %s", storage_client.bucket_name)
  except Exception as exc:  # noqa: BLE001
    logger.warning("Failed to ensure artifact bucket at startup: %s", exc)

  # One pooled client serves every provider call and artifact download.
  http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds, trust_env=False)
  try:
    session_factory = get_session_factory()
    if session_factory is None:
      raise RuntimeError("Database connection is not configured (GENFLOW_PG_DSN is missing).")
    ledger = QuotaLedger(PostgresCreditStore(session_factory), settings=settings)
    submitter = JobSubmitter(build_providers(settings, http_client))
    materializer = ArtifactMaterializer(http_client, storage_client, settings=settings)
    app.state.quota_ledger = ledger
    app.state.orchestrator = GenerationOrchestrator(ledger=ledger, submitter=submitter, poller=PollLoop(PollPolicy.from_settings(settings)), materializer=materializer)

    # Reservations left open by a previous crash would otherwise hold credits forever.
    try:
      result = await ledger.sweep_stale_reservations()
      logger.info("Stale reservation sweep complete settled=%d refunded=%d", result.settled, result.refunded)
    except Exception:  # noqa: BLE001
      logger.warning("Stale reservation sweep failed at startup.", exc_info=True)

    yield
  finally:
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
      # Refunds and ledger rows from requests cut off by shutdown land before the pool closes.
      await orchestrator.drain()
    await http_client.aclose()
    await dispose_engine()


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"
  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  user = f"{parsed.username}@" if parsed.username else ""
  return f"{parsed.scheme}://{user}{host}{port}{path}"
