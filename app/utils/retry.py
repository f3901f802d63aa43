"""Retry helpers shared by the credit store, provider calls and artifact downloads."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

T = TypeVar("T")
logger = logging.getLogger(__name__)

_RETRYABLE_SQLSTATES = {"40001": "serialization_conflict", "40P01": "deadlock"}
_CONNECTIVITY_MARKERS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection", "database is locked")


@dataclass(frozen=True)
class FailureClassification:
  """Whether a failure is worth another attempt, and why."""

  retryable: bool
  category: str
  reason: str


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract the Postgres SQLSTATE from a SQLAlchemy exception."""
  orig = getattr(exc, "orig", None) if isinstance(exc, DBAPIError) else None
  if orig is None:
    return None
  for attr in ("sqlstate", "pgcode"):
    value = getattr(orig, attr, None)
    if value:
      return str(value)
  return None


def classify_store_failure(exc: BaseException) -> FailureClassification:
  """Classify a credit store failure as transient or permanent.

  Serialization conflicts, deadlocks and dropped connections are retried.
  Integrity violations, schema errors and programming errors fail fast.
  """
  sqlstate = _extract_sqlstate(exc) if isinstance(exc, Exception) else None
  if sqlstate in _RETRYABLE_SQLSTATES:
    return FailureClassification(retryable=True, category=_RETRYABLE_SQLSTATES[sqlstate], reason=f"sqlstate={sqlstate}")
  if sqlstate and sqlstate[:2] in {"23", "42", "28"}:
    return FailureClassification(retryable=False, category="permanent_sql_error", reason=f"sqlstate={sqlstate}")
  if isinstance(exc, IntegrityError):
    return FailureClassification(retryable=False, category="integrity_error", reason="Integrity constraint violation")
  if isinstance(exc, OperationalError):
    message = str(exc).lower()
    if any(marker in message for marker in _CONNECTIVITY_MARKERS):
      return FailureClassification(retryable=True, category="connectivity_error", reason="Transient connection error")
    return FailureClassification(retryable=False, category="operational_error_unknown", reason="Operational error (unknown cause)")
  if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
    return FailureClassification(retryable=True, category="connectivity_error", reason=type(exc).__name__)
  return FailureClassification(retryable=False, category="unknown_error", reason=f"Unknown error type: {type(exc).__name__}")


def is_retryable_status(status_code: int) -> bool:
  """Timeouts, rate limits and server errors are transient."""
  return status_code in {408, 425, 429} or status_code >= 500


def classify_http_failure(exc: BaseException) -> FailureClassification:
  """Classify an httpx failure raised while talking to a provider or CDN."""
  if isinstance(exc, httpx.TimeoutException):
    return FailureClassification(retryable=True, category="timeout", reason=type(exc).__name__)
  if isinstance(exc, httpx.HTTPStatusError):
    status_code = exc.response.status_code
    return FailureClassification(retryable=is_retryable_status(status_code), category=f"http_{status_code}", reason=f"HTTP {status_code}")
  if isinstance(exc, httpx.TransportError):
    return FailureClassification(retryable=True, category="transport_error", reason=type(exc).__name__)
  retryable = getattr(exc, "retryable", None)
  if isinstance(retryable, bool):
    return FailureClassification(retryable=retryable, category=getattr(exc, "category", None) or type(exc).__name__, reason=str(exc))
  return FailureClassification(retryable=False, category="unknown_error", reason=f"Unknown error type: {type(exc).__name__}")


def backoff_delay(attempt: int, *, initial: float, maximum: float, jitter: bool = True) -> float:
  """Exponential delay for the given 1-based attempt, with +/-25% jitter."""
  delay = min(initial * (2 ** (attempt - 1)), maximum)
  if jitter:
    spread = delay * 0.25
    delay += random.uniform(-spread, spread)
  return max(delay, 0.0)


async def retry_async(
  *,
  operation_name: str,
  func: Callable[[], Awaitable[T]],
  classify: Callable[[BaseException], FailureClassification] = classify_store_failure,
  max_attempts: int = 2,
  initial_backoff: float = 0.1,
  max_backoff: float = 2.0,
  jitter: bool = True,
) -> T:
  """Run an idempotent async operation, retrying transient failures.

  Non-retryable failures raise immediately; retryable ones raise after max_attempts.
  """
  attempt = 0
  while True:
    attempt += 1
    try:
      result = await func()
    except Exception as exc:
      classification = classify(exc)
      logger.warning(
        "Operation failed: operation=%s, attempt=%d/%d, category=%s, retryable=%s, reason=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.retryable,
        classification.reason,
        exc_info=not classification.retryable,
      )
      if not classification.retryable or attempt >= max_attempts:
        raise
      delay = backoff_delay(attempt, initial=initial_backoff, maximum=max_backoff, jitter=jitter)
      logger.info("Retrying operation after backoff: operation=%s, attempt=%d/%d, backoff_s=%.2f", operation_name, attempt, max_attempts, delay)
      await asyncio.sleep(delay)
      continue
    if attempt > 1:
      logger.info("Operation succeeded after retry: operation=%s, attempt=%d/%d", operation_name, attempt, max_attempts)
    return result
