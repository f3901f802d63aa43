"""Shared FastAPI dependencies for internal auth and service wiring."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from app.config import Settings, get_settings
from app.generation.orchestrator import GenerationOrchestrator
from app.services.quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)


async def require_task_secret(
  request: Request, settings: Annotated[Settings, Depends(get_settings)], authorization: str | None = Header(default=None), x_genflow_task_secret: str | None = Header(default=None)
) -> None:
  """Deny internal routes unless the caller presents the shared secret."""
  # Secure-by-default: an unset secret disables the internal surface entirely.
  if not settings.task_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task authentication is not configured.")
  expected_auth = f"Bearer {settings.task_secret}"
  shared_secret_valid = secrets.compare_digest((x_genflow_task_secret or ""), settings.task_secret)
  bearer_valid = secrets.compare_digest((authorization or ""), expected_auth)
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized access attempt to %s", request.url.path)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid task secret.")


def get_orchestrator(request: Request) -> GenerationOrchestrator:
  orchestrator = getattr(request.app.state, "orchestrator", None)
  if orchestrator is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Generation service is not ready.")
  return orchestrator


def get_quota_ledger(request: Request) -> QuotaLedger:
  ledger = getattr(request.app.state, "quota_ledger", None)
  if ledger is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Credit ledger is not ready.")
  return ledger
