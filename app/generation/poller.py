"""Poll a provider job to a terminal state with backoff, a hard ceiling and cancellation."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass

from app.config import Settings
from app.generation.errors import JobCancelledError
from app.generation.models import JobHandle, JobState, JobStatus
from app.generation.providers.base import GenerationProvider, ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollPolicy:
  """Exponential backoff capped at max_interval; throttled reports stretch the pause."""

  initial_interval: float = 2.0
  max_interval: float = 15.0
  multiplier: float = 1.5
  throttle_multiplier: float = 2.0
  max_wait: float = 300.0
  jitter_ratio: float = 0.0
  max_status_errors: int = 5

  @classmethod
  def from_settings(cls, settings: Settings) -> PollPolicy:
    return cls(
      initial_interval=settings.poll_initial_seconds,
      max_interval=settings.poll_max_interval_seconds,
      multiplier=settings.poll_multiplier,
      throttle_multiplier=settings.poll_throttle_multiplier,
      max_wait=settings.poll_max_wait_seconds,
      jitter_ratio=settings.poll_jitter_ratio,
      max_status_errors=settings.poll_max_status_errors,
    )

  def delay_for(self, attempt: int, *, throttled: bool = False) -> float:
    """Pause before the poll following the given 0-based attempt."""
    delay = min(self.initial_interval * (self.multiplier**attempt), self.max_interval)
    if throttled:
      delay *= self.throttle_multiplier
    if self.jitter_ratio:
      delay *= 1 + random.uniform(-self.jitter_ratio, self.jitter_ratio)
    return max(delay, 0.0)


def advance(current: JobState, reported: JobState) -> JobState:
  """Apply one provider report to the loop state.

  Throttled keeps the job alive as running. A queued report after running
  does not move the job backwards.
  """
  if current.is_terminal:
    raise ValueError(f"Job already terminal in state {current.value}")
  if reported in {JobState.SUCCEEDED, JobState.FAILED}:
    return reported
  if reported in {JobState.RUNNING, JobState.THROTTLED}:
    return JobState.RUNNING
  if reported == JobState.QUEUED:
    return current
  raise ValueError(f"Providers cannot report {reported.value}")


@dataclass(frozen=True)
class PollOutcome:
  status: JobStatus
  polls: int
  elapsed: float


class PollLoop:
  """Drive one job's state machine.

  Waits run on the event loop timer and wake early when the cancel event
  fires. No lock or session is held across a wait.
  """

  def __init__(self, policy: PollPolicy) -> None:
    self._policy = policy

  @property
  def policy(self) -> PollPolicy:
    return self._policy

  async def run(self, provider: GenerationProvider, handle: JobHandle, cancel_event: asyncio.Event | None = None) -> PollOutcome:
    loop = asyncio.get_running_loop()
    started = loop.time()
    deadline = started + self._policy.max_wait
    state = JobState.QUEUED
    attempt = 0
    polls = 0
    consecutive_errors = 0

    def _outcome(status: JobStatus) -> PollOutcome:
      return PollOutcome(status=status, polls=polls, elapsed=loop.time() - started)

    def _timed_out() -> PollOutcome:
      logger.warning("Poll ceiling reached job_id=%s kind=%s polls=%d max_wait=%.1fs", handle.job_id, handle.kind.value, polls, self._policy.max_wait)
      return _outcome(JobStatus(state=JobState.TIMED_OUT, reason_code="poll_ceiling_exceeded"))

    while True:
      if cancel_event is not None and cancel_event.is_set():
        raise JobCancelledError(f"Polling cancelled for job {handle.job_id}.")
      remaining = deadline - loop.time()
      if remaining <= 0:
        return _timed_out()

      throttled = False
      try:
        # A hung status call must not outlive the ceiling.
        reported = await asyncio.wait_for(provider.get_job_status(handle.job_id), timeout=remaining)
      except TimeoutError:
        return _timed_out()
      except ProviderError as exc:
        consecutive_errors += 1
        if not exc.retryable:
          logger.warning("Status poll failed permanently job_id=%s category=%s", handle.job_id, exc.category)
          return _outcome(JobStatus.failed(exc.category or "status_error"))
        if consecutive_errors > self._policy.max_status_errors:
          logger.warning("Status poll error budget exhausted job_id=%s errors=%d", handle.job_id, consecutive_errors)
          return _outcome(JobStatus.failed("status_unavailable"))
        logger.info("Transient status poll error job_id=%s errors=%d/%d", handle.job_id, consecutive_errors, self._policy.max_status_errors)
      else:
        polls += 1
        consecutive_errors = 0
        next_state = advance(state, reported.state)
        if next_state != state:
          logger.info("Job transition job_id=%s %s -> %s", handle.job_id, state.value, next_state.value)
        if next_state.is_terminal:
          return _outcome(reported)
        state = next_state
        throttled = reported.state == JobState.THROTTLED

      delay = min(self._policy.delay_for(attempt, throttled=throttled), max(deadline - loop.time(), 0.0))
      attempt += 1
      if await _wait_or_cancel(cancel_event, delay):
        raise JobCancelledError(f"Polling cancelled for job {handle.job_id}.")


async def _wait_or_cancel(cancel_event: asyncio.Event | None, delay: float) -> bool:
  """Sleep for delay; True when the cancel event fired first."""
  if cancel_event is None:
    await asyncio.sleep(delay)
    return False
  try:
    await asyncio.wait_for(cancel_event.wait(), timeout=delay)
  except TimeoutError:
    return False
  return True
