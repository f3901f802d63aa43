"""fal.ai queue client used for image and speech synthesis."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.generation.models import JobKind, JobState, JobStatus
from app.generation.providers.base import HttpProviderClient, ProviderError

logger = logging.getLogger(__name__)

IMAGE_DEFAULTS: dict[str, Any] = {"image_size": "landscape_16_9", "num_inference_steps": 4, "num_images": 1, "enable_safety_checker": True}

_STATUS_MAP = {"IN_QUEUE": JobState.QUEUED, "IN_PROGRESS": JobState.RUNNING}


def app_root(model: str) -> str:
  """Queue status routes hang off owner/app, not the full model path."""
  parts = [part for part in model.split("/") if part]
  return "/".join(parts[:2])


def extract_locators(payload: dict[str, Any]) -> list[str]:
  """Collect result URLs from the shapes fal models return."""
  locators: list[str] = []
  images = payload.get("images")
  if isinstance(images, list):
    locators.extend(item["url"] for item in images if isinstance(item, dict) and isinstance(item.get("url"), str))
  for key in ("image", "video", "audio"):
    item = payload.get(key)
    if isinstance(item, dict) and isinstance(item.get("url"), str):
      locators.append(item["url"])
  audio_url = payload.get("audio_url")
  if isinstance(audio_url, str):
    locators.append(audio_url)
  return locators


class FalQueueProvider(HttpProviderClient):
  """Submit to the fal queue and poll request status.

  COMPLETED only means the queue is done; the result payload decides
  between succeeded and failed.
  """

  name = "fal"

  def __init__(self, client: httpx.AsyncClient, *, api_key: str, queue_url: str, model: str, kind: JobKind, timeout: float = 30.0) -> None:
    super().__init__(client, timeout=timeout)
    self.kind = kind
    self._api_key = api_key
    self._queue_url = queue_url.rstrip("/")
    self._model = model.strip("/")
    self._app_root = app_root(self._model)

  def _headers(self) -> dict[str, str]:
    return {"Authorization": f"Key {self._api_key}"}

  def build_input(self, params: dict[str, Any]) -> dict[str, Any]:
    if self.kind == JobKind.SPEECH:
      body: dict[str, Any] = {"text": params["text"]}
      if params.get("voice"):
        body["voice"] = params["voice"]
      return body
    body = dict(IMAGE_DEFAULTS)
    body.update({key: value for key, value in params.items() if value is not None})
    return body

  async def submit_job(self, params: dict[str, Any]) -> str:
    payload = await self._request_json("POST", f"{self._queue_url}/{self._model}", json=self.build_input(params))
    request_id = payload.get("request_id")
    if not isinstance(request_id, str) or not request_id:
      raise ProviderError("fal submission response did not include a request_id", category="malformed_payload")
    logger.info("fal job submitted model=%s request_id=%s", self._model, request_id)
    return request_id

  async def get_job_status(self, job_id: str) -> JobStatus:
    base = f"{self._queue_url}/{self._app_root}/requests/{job_id}"
    payload = await self._request_json("GET", f"{base}/status")
    status = str(payload.get("status") or "").upper()
    if status in _STATUS_MAP:
      return JobStatus(state=_STATUS_MAP[status])
    if status != "COMPLETED":
      raise ProviderError(f"fal reported unknown status {status or '<missing>'}", category="malformed_payload")

    if payload.get("error"):
      return JobStatus.failed(str(payload.get("error_type") or payload["error"])[:200])
    result = await self._request_json("GET", base)
    if result.get("detail") or result.get("error"):
      return JobStatus.failed(str(result.get("detail") or result.get("error"))[:200])
    locators = extract_locators(result)
    if not locators:
      return JobStatus.failed("no_output")
    return JobStatus.succeeded(locators)
