"""Turn a validated request into exactly one provider submission."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from app.generation.errors import InvalidRequestError, SubmissionError
from app.generation.models import JobHandle, JobKind
from app.generation.providers.base import GenerationProvider, ProviderError

logger = logging.getLogger(__name__)

REQUIRED_PARAMS: dict[JobKind, tuple[str, ...]] = {JobKind.IMAGE: ("prompt",), JobKind.VIDEO: ("prompt", "image_url"), JobKind.SPEECH: ("text",)}

# Optional params that providers coerce; checked here so a bad value never reaches a reservation.
INTEGER_PARAMS: dict[JobKind, tuple[str, ...]] = {JobKind.IMAGE: ("num_images", "num_inference_steps"), JobKind.VIDEO: ("duration",), JobKind.SPEECH: ()}
TEXT_PARAMS: dict[JobKind, tuple[str, ...]] = {JobKind.IMAGE: ("image_size",), JobKind.VIDEO: ("ratio", "model"), JobKind.SPEECH: ("voice",)}


def _is_image_reference(value: str) -> bool:
  lowered = value.lower()
  return lowered.startswith(("http://", "https://")) or lowered.startswith("data:image/")


def _is_positive_int(value: Any) -> bool:
  if isinstance(value, bool):
    return False
  if isinstance(value, str):
    return value.strip().isdigit() and int(value) > 0
  return isinstance(value, int) and value > 0


class JobSubmitter:
  """Validate parameters per job kind and start the provider job.

  Submissions are not idempotent at the provider, so there is no retry here.
  """

  def __init__(self, providers: Mapping[JobKind, GenerationProvider]) -> None:
    self._providers = dict(providers)

  def validate(self, kind: JobKind, params: Mapping[str, Any]) -> None:
    """Raise InvalidRequestError for a caller mistake; no side effects."""
    if kind not in self._providers:
      raise InvalidRequestError(f"Job kind '{kind.value}' is not available.")
    for name in REQUIRED_PARAMS[kind]:
      value = params.get(name)
      if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"Parameter '{name}' is required for {kind.value} jobs.")
    if kind == JobKind.VIDEO and not _is_image_reference(str(params["image_url"]).strip()):
      raise InvalidRequestError("Parameter 'image_url' must be an http(s) URL or a data:image URI.")
    for name in INTEGER_PARAMS[kind]:
      value = params.get(name)
      if value is not None and not _is_positive_int(value):
        raise InvalidRequestError(f"Parameter '{name}' must be a positive integer.")
    for name in TEXT_PARAMS[kind]:
      value = params.get(name)
      if value is not None and not isinstance(value, str):
        raise InvalidRequestError(f"Parameter '{name}' must be a string.")

  async def submit(self, kind: JobKind, params: Mapping[str, Any]) -> JobHandle:
    """Validate then perform one outbound call; provider failures become SubmissionError."""
    self.validate(kind, params)
    provider = self._providers[kind]
    try:
      job_id = await provider.submit_job(dict(params))
    except ProviderError as exc:
      logger.warning("Submission failed kind=%s provider=%s status=%s retryable=%s", kind.value, provider.name, exc.status_code, exc.retryable)
      raise SubmissionError(str(exc), retryable=exc.retryable, status_code=exc.status_code) from exc
    return JobHandle(job_id=job_id, kind=kind, provider=provider.name)

  def provider_for(self, kind: JobKind) -> GenerationProvider:
    return self._providers[kind]
