"""Provider contract and shared HTTP plumbing for asynchronous inference services."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from app.generation.models import JobKind, JobStatus
from app.utils.retry import classify_http_failure

logger = logging.getLogger(__name__)


class ProviderError(Exception):
  """A provider call failed; retryable marks transport faults and 408/429/5xx."""

  def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False, category: str | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code
    self.retryable = retryable
    self.category = category


class GenerationProvider(Protocol):
  """Opaque job-accepting service bound to one job kind."""

  name: str
  kind: JobKind

  async def submit_job(self, params: dict[str, Any]) -> str:
    """Start a job and return the provider's job id."""

  async def get_job_status(self, job_id: str) -> JobStatus:
    """Return the job's current state mapped into JobStatus."""


class HttpProviderClient:
  """JSON-over-HTTP helper shared by concrete providers.

  The httpx client is injected so one connection pool serves every provider
  and tests can swap in a MockTransport.
  """

  name = "http"

  def __init__(self, client: httpx.AsyncClient, *, timeout: float = 30.0) -> None:
    self._client = client
    self._timeout = timeout

  def _headers(self) -> dict[str, str]:
    return {}

  async def _request_json(self, method: str, url: str, *, json: dict[str, Any] | None = None) -> dict[str, Any]:
    """Issue one request and return the decoded JSON object, raising ProviderError on any failure."""
    try:
      response = await self._client.request(method, url, json=json, headers=self._headers(), timeout=self._timeout)
      response.raise_for_status()
    except httpx.HTTPError as exc:
      classification = classify_http_failure(exc)
      status_code = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
      detail = _error_detail(exc.response) if isinstance(exc, httpx.HTTPStatusError) else str(exc) or type(exc).__name__
      logger.warning("Provider call failed provider=%s method=%s url=%s category=%s retryable=%s", self.name, method, url, classification.category, classification.retryable)
      raise ProviderError(f"{self.name} {method} failed: {detail}", status_code=status_code, retryable=classification.retryable, category=classification.category) from exc

    try:
      payload = response.json()
    except ValueError as exc:
      raise ProviderError(f"{self.name} returned a non-JSON body", status_code=response.status_code, category="malformed_payload") from exc
    if not isinstance(payload, dict):
      raise ProviderError(f"{self.name} returned an unexpected payload shape", status_code=response.status_code, category="malformed_payload")
    return payload


def _error_detail(response: httpx.Response) -> str:
  """Pull a short error message out of a provider error body."""
  try:
    body = response.json()
  except ValueError:
    return f"HTTP {response.status_code}"
  if isinstance(body, dict):
    for key in ("error", "detail", "message"):
      value = body.get(key)
      if isinstance(value, str) and value:
        return f"HTTP {response.status_code}: {value[:200]}"
  return f"HTTP {response.status_code}"
