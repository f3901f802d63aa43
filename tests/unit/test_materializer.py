from __future__ import annotations

import io
import re
from dataclasses import replace

import httpx
import pytest
from PIL import Image

from app.generation.errors import MaterializationError
from app.generation.materializer import ArtifactMaterializer, build_storage_key
from app.generation.models import GenerationRequest, JobHandle, JobKind

LOCATOR = "https://fal.media/files/out.png"


def _request(settings, kind: JobKind = JobKind.IMAGE) -> GenerationRequest:
  params = {"prompt": "a fox"} if kind != JobKind.SPEECH else {"text": "hi"}
  return GenerationRequest.build(settings=settings, user_id="user-1", kind=kind, params=params)


def _handle(kind: JobKind = JobKind.IMAGE) -> JobHandle:
  return JobHandle(job_id="job-42", kind=kind, provider="scripted")


def test_storage_key_is_namespaced_and_unique() -> None:
  first = build_storage_key(kind=JobKind.VIDEO, user_id="user/1", job_id="task-9", content_type="video/mp4")
  second = build_storage_key(kind=JobKind.VIDEO, user_id="user/1", job_id="task-9", content_type="video/mp4")

  assert re.fullmatch(r"video/user_1/\d{8}T\d{12}Z-task-9-[A-Za-z0-9]{8}\.mp4", first)
  assert first != second


@pytest.mark.anyio
async def test_materialize_uploads_downloaded_bytes(settings, fake_storage, download_transport) -> None:
  storage = fake_storage()
  async with httpx.AsyncClient(transport=download_transport(b"png-bytes", "image/png")) as client:
    artifact = await ArtifactMaterializer(client, storage, settings=settings).materialize(LOCATOR, request=_request(settings), handle=_handle())

  assert artifact.content_type == "image/png"
  assert artifact.size_bytes == len(b"png-bytes")
  assert artifact.url == f"https://storage.test/{artifact.storage_key}"
  assert artifact.provider_job_id == "job-42"
  assert storage.objects[artifact.storage_key] == (b"png-bytes", "image/png")


@pytest.mark.anyio
async def test_content_type_falls_back_to_url_extension(settings, fake_storage, download_transport) -> None:
  storage = fake_storage()
  async with httpx.AsyncClient(transport=download_transport(b"mp3", "application/octet-stream")) as client:
    artifact = await ArtifactMaterializer(client, storage, settings=settings).materialize("https://fal.media/files/speech.mp3", request=_request(settings, JobKind.SPEECH), handle=_handle(JobKind.SPEECH))

  assert artifact.content_type == "audio/mpeg"
  assert artifact.storage_key.endswith(".mp3")


@pytest.mark.anyio
async def test_upload_failure_returns_no_artifact(settings, fake_storage, download_transport) -> None:
  async with httpx.AsyncClient(transport=download_transport()) as client:
    materializer = ArtifactMaterializer(client, fake_storage(fail=True), settings=settings)
    with pytest.raises(MaterializationError):
      await materializer.materialize(LOCATOR, request=_request(settings), handle=_handle())


@pytest.mark.anyio
async def test_transient_download_errors_are_retried(settings, fake_storage) -> None:
  calls = {"count": 0}

  def handler(request: httpx.Request) -> httpx.Response:
    calls["count"] += 1
    if calls["count"] == 1:
      return httpx.Response(503)
    return httpx.Response(200, content=b"data", headers={"content-type": "image/png"})

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    artifact = await ArtifactMaterializer(client, fake_storage(), settings=settings).materialize(LOCATOR, request=_request(settings), handle=_handle())

  assert calls["count"] == 2
  assert artifact.size_bytes == 4


@pytest.mark.anyio
async def test_missing_result_is_not_retried(settings, fake_storage) -> None:
  calls = {"count": 0}

  def handler(request: httpx.Request) -> httpx.Response:
    calls["count"] += 1
    return httpx.Response(404)

  async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
    with pytest.raises(MaterializationError):
      await ArtifactMaterializer(client, fake_storage(), settings=settings).materialize(LOCATOR, request=_request(settings), handle=_handle())

  assert calls["count"] == 1


@pytest.mark.anyio
async def test_oversized_results_are_rejected(settings, fake_storage, download_transport) -> None:
  storage = fake_storage()
  async with httpx.AsyncClient(transport=download_transport(b"x" * 2048)) as client:
    materializer = ArtifactMaterializer(client, storage, settings=replace(settings, max_artifact_bytes=1024))
    with pytest.raises(MaterializationError):
      await materializer.materialize(LOCATOR, request=_request(settings), handle=_handle())

  assert storage.objects == {}


@pytest.mark.anyio
async def test_non_http_locators_are_rejected(settings, fake_storage, download_transport) -> None:
  async with httpx.AsyncClient(transport=download_transport()) as client:
    with pytest.raises(MaterializationError):
      await ArtifactMaterializer(client, fake_storage(), settings=settings).materialize("file:///etc/passwd", request=_request(settings), handle=_handle())


@pytest.mark.anyio
async def test_images_are_reencoded_to_webp_when_enabled(settings, fake_storage, download_transport) -> None:
  buffer = io.BytesIO()
  Image.new("RGB", (8, 8), color=(200, 40, 40)).save(buffer, format="PNG")
  storage = fake_storage()

  async with httpx.AsyncClient(transport=download_transport(buffer.getvalue(), "image/png")) as client:
    materializer = ArtifactMaterializer(client, storage, settings=replace(settings, image_webp=True))
    artifact = await materializer.materialize(LOCATOR, request=_request(settings), handle=_handle())

  assert artifact.content_type == "image/webp"
  assert artifact.storage_key.endswith(".webp")
  stored, _ = storage.objects[artifact.storage_key]
  assert Image.open(io.BytesIO(stored)).format == "WEBP"
