"""Runway image-to-video client."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.generation.models import JobKind, JobState, JobStatus
from app.generation.providers.base import HttpProviderClient, ProviderError

logger = logging.getLogger(__name__)

_STATUS_MAP = {"PENDING": JobState.QUEUED, "RUNNING": JobState.RUNNING, "THROTTLED": JobState.THROTTLED}


class RunwayProvider(HttpProviderClient):
  name = "runway"
  kind = JobKind.VIDEO

  def __init__(self, client: httpx.AsyncClient, *, api_secret: str, base_url: str, api_version: str, model: str, timeout: float = 30.0) -> None:
    super().__init__(client, timeout=timeout)
    self._api_secret = api_secret
    self._base_url = base_url.rstrip("/")
    self._api_version = api_version
    self._model = model

  def _headers(self) -> dict[str, str]:
    return {"Authorization": f"Bearer {self._api_secret}", "X-Runway-Version": self._api_version}

  def build_input(self, params: dict[str, Any]) -> dict[str, Any]:
    return {
      "model": params.get("model") or self._model,
      "promptImage": params["image_url"],
      "promptText": params["prompt"],
      "duration": int(params.get("duration") or 5),
      "ratio": params.get("ratio") or "1280:768",
      "watermark": bool(params.get("watermark", False)),
    }

  async def submit_job(self, params: dict[str, Any]) -> str:
    payload = await self._request_json("POST", f"{self._base_url}/v1/image_to_video", json=self.build_input(params))
    task_id = payload.get("id")
    if not isinstance(task_id, str) or not task_id:
      raise ProviderError("Runway submission response did not include a task id", category="malformed_payload")
    logger.info("Runway task submitted model=%s task_id=%s", self._model, task_id)
    return task_id

  async def get_job_status(self, job_id: str) -> JobStatus:
    payload = await self._request_json("GET", f"{self._base_url}/v1/tasks/{job_id}")
    status = str(payload.get("status") or "").upper()
    progress = payload.get("progress")
    progress_value = float(progress) if isinstance(progress, int | float) else None
    if status in _STATUS_MAP:
      return JobStatus(state=_STATUS_MAP[status], progress=progress_value)
    if status == "SUCCEEDED":
      output = payload.get("output")
      locators = [item for item in output if isinstance(item, str) and item] if isinstance(output, list) else []
      if not locators:
        return JobStatus.failed("no_output")
      return JobStatus.succeeded(locators)
    if status in {"FAILED", "CANCELLED"}:
      reason = payload.get("failureCode") or payload.get("failure") or status.lower()
      return JobStatus.failed(str(reason)[:200])
    raise ProviderError(f"Runway reported unknown status {status or '<missing>'}", category="malformed_payload")
