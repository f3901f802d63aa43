"""Domain types for generation requests, provider jobs, reservations and artifacts."""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from app.config import Settings
from app.utils.ids import generate_request_id


class JobKind(str, enum.Enum):
  """Category of generation work; each kind maps to one provider and one cost."""

  IMAGE = "image"
  VIDEO = "video"
  SPEECH = "speech"


class JobState(str, enum.Enum):
  """Provider job lifecycle as seen by the poll loop."""

  QUEUED = "queued"
  RUNNING = "running"
  THROTTLED = "throttled"
  SUCCEEDED = "succeeded"
  FAILED = "failed"
  TIMED_OUT = "timed_out"

  @property
  def is_terminal(self) -> bool:
    return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT})


@dataclass(frozen=True)
class JobStatus:
  """One status observation. Succeeded carries locators, failed carries a reason code."""

  state: JobState
  result_locators: tuple[str, ...] = ()
  reason_code: str | None = None
  progress: float | None = None

  @classmethod
  def succeeded(cls, locators: list[str] | tuple[str, ...]) -> JobStatus:
    return cls(state=JobState.SUCCEEDED, result_locators=tuple(locators))

  @classmethod
  def failed(cls, reason_code: str) -> JobStatus:
    return cls(state=JobState.FAILED, reason_code=reason_code)


@dataclass(frozen=True)
class JobHandle:
  job_id: str
  kind: JobKind
  provider: str


def cost_for_kind(settings: Settings, kind: JobKind) -> int:
  """Return the fixed credit cost configured for a job kind."""
  costs = {JobKind.IMAGE: settings.cost_image, JobKind.VIDEO: settings.cost_video, JobKind.SPEECH: settings.cost_speech}
  return costs[kind]


@dataclass(frozen=True)
class GenerationRequest:
  """Immutable input to the orchestrator."""

  user_id: str
  kind: JobKind
  params: MappingProxyType
  cost: int
  request_id: str = field(default_factory=generate_request_id)

  def __post_init__(self) -> None:
    # Freeze the parameter bag so later stages cannot mutate what the ledger records.
    if not isinstance(self.params, MappingProxyType):
      object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

  @classmethod
  def build(cls, *, settings: Settings, user_id: str, kind: JobKind | str, params: dict[str, Any], request_id: str | None = None) -> GenerationRequest:
    """Build a request with the cost configured for its kind."""
    job_kind = JobKind(kind)
    cost = cost_for_kind(settings, job_kind)
    if request_id:
      return cls(user_id=user_id, kind=job_kind, params=params, cost=cost, request_id=request_id)
    return cls(user_id=user_id, kind=job_kind, params=params, cost=cost)


@dataclass(frozen=True)
class ReservationToken:
  """Proof of a provisional debit; settle or refund it exactly once."""

  reservation_id: str
  user_id: str
  amount: int
  request_id: str


@dataclass(frozen=True)
class CreditBalance:
  user_id: str
  balance: int
  version: int


@dataclass(frozen=True)
class Artifact:
  """A provider result copied into durable storage."""

  storage_key: str
  url: str
  content_type: str
  size_bytes: int
  request: GenerationRequest
  provider_job_id: str | None = None

  def to_dict(self) -> dict[str, Any]:
    return {
      "request_id": self.request.request_id,
      "kind": self.request.kind.value,
      "storage_key": self.storage_key,
      "url": self.url,
      "content_type": self.content_type,
      "size_bytes": self.size_bytes,
      "provider_job_id": self.provider_job_id,
      "credits_charged": self.request.cost,
    }


class LedgerStatus(str, enum.Enum):
  SUCCEEDED = "succeeded"
  FAILED = "failed"


@dataclass(frozen=True)
class LedgerEntry:
  """Audit record for one generation attempt, written once per request."""

  request_id: str
  user_id: str
  job_kind: JobKind
  parameters: dict[str, Any]
  credits_charged: int
  status: LedgerStatus
  outcome_kind: str | None = None
  failure_reason: str | None = None
  provider_job_id: str | None = None
  artifact_url: str | None = None
  storage_key: str | None = None
  content_type: str | None = None
  size_bytes: int | None = None
  submitted_at: datetime.datetime | None = None
  completed_at: datetime.datetime | None = None
