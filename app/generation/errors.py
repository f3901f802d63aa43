"""Failure taxonomy for generation requests."""

from __future__ import annotations

from typing import Any


class GenerationError(Exception):
  """Terminal failure of one generation request.

  Every kind except insufficient_credit, invalid_request and duplicate_request means credits
  were reserved and then refunded before the error reached the caller.
  """

  kind = "generation_error"

  def __init__(self, message: str, *, request_id: str | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.request_id = request_id

  def to_dict(self) -> dict[str, Any]:
    return {"kind": self.kind, "message": self.message, "request_id": self.request_id}


class InvalidRequestError(GenerationError):
  kind = "invalid_request"


class DuplicateRequestError(InvalidRequestError):
  """The request id already belongs to an earlier generation."""

  kind = "duplicate_request"


class InsufficientCreditError(GenerationError):
  kind = "insufficient_credit"

  def __init__(self, message: str, *, user_id: str, requested: int, request_id: str | None = None) -> None:
    super().__init__(message, request_id=request_id)
    self.user_id = user_id
    self.requested = requested


class SubmissionError(GenerationError):
  """The provider rejected the submission or the transport failed."""

  kind = "submission_failed"

  def __init__(self, message: str, *, retryable: bool, status_code: int | None = None, request_id: str | None = None) -> None:
    super().__init__(message, request_id=request_id)
    self.retryable = retryable
    self.status_code = status_code


class JobFailedError(GenerationError):
  kind = "job_failed"

  def __init__(self, message: str, *, reason_code: str, job_id: str | None = None, request_id: str | None = None) -> None:
    super().__init__(message, request_id=request_id)
    self.reason_code = reason_code
    self.job_id = job_id


class JobTimedOutError(GenerationError):
  kind = "job_timed_out"

  def __init__(self, message: str, *, waited_seconds: float, job_id: str | None = None, request_id: str | None = None) -> None:
    super().__init__(message, request_id=request_id)
    self.waited_seconds = waited_seconds
    self.job_id = job_id


class JobCancelledError(GenerationError):
  """The caller withdrew before the job reached a terminal state."""

  kind = "job_cancelled"


class MaterializationError(GenerationError):
  kind = "materialization_failed"


class InternalGenerationError(GenerationError):
  kind = "internal_error"


class LedgerWriteWarning(UserWarning):
  """The audit row could not be written; the generation outcome stands."""
