"""Copy a provider-hosted result into durable storage."""

from __future__ import annotations

import datetime
import io
import logging
import mimetypes
import tempfile
from typing import BinaryIO, Protocol
from urllib.parse import urlparse

import httpx
from PIL import Image, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from app.config import Settings
from app.generation.errors import MaterializationError
from app.generation.models import Artifact, GenerationRequest, JobHandle, JobKind
from app.utils.ids import generate_nanoid
from app.utils.retry import classify_http_failure, retry_async

logger = logging.getLogger(__name__)

_SPOOL_MEMORY_BYTES = 8 * 1024 * 1024
_DEFAULT_CONTENT_TYPES = {JobKind.IMAGE: "image/png", JobKind.VIDEO: "video/mp4", JobKind.SPEECH: "audio/mpeg"}
_EXTENSION_OVERRIDES = {"image/jpeg": "jpg", "audio/mpeg": "mp3", "image/webp": "webp", "video/mp4": "mp4", "audio/wav": "wav", "audio/x-wav": "wav"}


class ObjectStorage(Protocol):
  async def put(self, key: str, data: bytes | BinaryIO, content_type: str) -> str:
    """Store the object and return its public URL."""


class UnusableArtifactError(ValueError):
  """Result body is empty or over the size cap; retrying will not help."""


def extension_for(content_type: str) -> str:
  if content_type in _EXTENSION_OVERRIDES:
    return _EXTENSION_OVERRIDES[content_type]
  guessed = mimetypes.guess_extension(content_type) or ".bin"
  return guessed.lstrip(".")


def build_storage_key(*, kind: JobKind, user_id: str, job_id: str, content_type: str, now: datetime.datetime | None = None) -> str:
  """Name objects so concurrent jobs can never collide."""
  stamp = (now or datetime.datetime.now(datetime.UTC)).strftime("%Y%m%dT%H%M%S%fZ")
  safe_user = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in user_id) or "anonymous"
  safe_job = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in job_id)[:64]
  return f"{kind.value}/{safe_user}/{stamp}-{safe_job}-{generate_nanoid(8)}.{extension_for(content_type)}"


def _convert_to_webp(image_bytes: bytes) -> bytes:
  """Convert provider image bytes into a WebP payload."""
  image = Image.open(io.BytesIO(image_bytes))
  converted = image.convert("RGBA") if image.mode not in {"RGB", "RGBA"} else image
  output = io.BytesIO()
  converted.save(output, format="WEBP", quality=88, method=6)
  return output.getvalue()


def _content_type_from(response: httpx.Response, url: str, kind: JobKind) -> str:
  header = response.headers.get("content-type", "").split(";")[0].strip().lower()
  if header and header != "application/octet-stream":
    return header
  guessed, _ = mimetypes.guess_type(urlparse(url).path)
  return guessed or _DEFAULT_CONTENT_TYPES[kind]


class ArtifactMaterializer:
  """Download by URL, then upload under a fresh key.

  Nothing is returned unless the upload succeeded. A blob orphaned by a
  failed URL lookup is left for out-of-band cleanup.
  """

  def __init__(self, client: httpx.AsyncClient, storage: ObjectStorage, *, settings: Settings) -> None:
    self._client = client
    self._storage = storage
    self._max_bytes = settings.max_artifact_bytes
    self._timeout = settings.download_timeout_seconds
    self._attempts = settings.download_attempts
    self._image_webp = settings.image_webp

  async def materialize(self, locator: str, *, request: GenerationRequest, handle: JobHandle) -> Artifact:
    if not locator.lower().startswith(("http://", "https://")):
      raise MaterializationError(f"Unsupported result locator scheme for job {handle.job_id}.", request_id=request.request_id)

    try:
      spool, content_type, size = await retry_async(operation_name="artifact_download", func=lambda: self._download(locator, request.kind), classify=classify_http_failure, max_attempts=self._attempts, initial_backoff=0.5, max_backoff=5.0)
    except UnusableArtifactError as exc:
      raise MaterializationError(str(exc), request_id=request.request_id) from exc
    except httpx.HTTPError as exc:
      raise MaterializationError(f"Failed to download result for job {handle.job_id}: {type(exc).__name__}", request_id=request.request_id) from exc

    with spool:
      payload: bytes | BinaryIO = spool
      if request.kind == JobKind.IMAGE and self._image_webp and content_type != "image/webp":
        spool.seek(0)
        try:
          payload = await run_in_threadpool(_convert_to_webp, spool.read())
          content_type = "image/webp"
          size = len(payload)
        except (UnidentifiedImageError, OSError) as exc:
          raise MaterializationError(f"Result for job {handle.job_id} is not a decodable image.", request_id=request.request_id) from exc

      key = build_storage_key(kind=request.kind, user_id=request.user_id, job_id=handle.job_id, content_type=content_type)
      try:
        url = await self._storage.put(key, payload, content_type)
      except Exception as exc:
        logger.warning("Artifact upload failed request_id=%s key=%s", request.request_id, key, exc_info=True)
        raise MaterializationError(f"Failed to store result for job {handle.job_id}.", request_id=request.request_id) from exc

    if not url:
      raise MaterializationError(f"Storage returned no public URL for {key}.", request_id=request.request_id)
    logger.info("Artifact stored request_id=%s key=%s content_type=%s size=%d", request.request_id, key, content_type, size)
    return Artifact(storage_key=key, url=url, content_type=content_type, size_bytes=size, request=request, provider_job_id=handle.job_id)

  async def _download(self, url: str, kind: JobKind) -> tuple[tempfile.SpooledTemporaryFile, str, int]:
    """Stream the body into a spooled temp file, enforcing the size cap."""
    spool = tempfile.SpooledTemporaryFile(max_size=_SPOOL_MEMORY_BYTES)
    try:
      async with self._client.stream("GET", url, timeout=self._timeout, follow_redirects=True) as response:
        response.raise_for_status()
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self._max_bytes:
          raise UnusableArtifactError(f"Result is {declared} bytes; limit is {self._max_bytes}.")
        size = 0
        async for chunk in response.aiter_bytes():
          size += len(chunk)
          if size > self._max_bytes:
            raise UnusableArtifactError(f"Result exceeds the {self._max_bytes} byte limit.")
          spool.write(chunk)
        content_type = _content_type_from(response, url, kind)
    except BaseException:
      spool.close()
      raise
    if size == 0:
      spool.close()
      raise UnusableArtifactError("Result body was empty.")
    spool.seek(0)
    return spool, content_type, size
