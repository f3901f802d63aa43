"""Object storage helper for generated artifacts."""

from __future__ import annotations

import os
from typing import BinaryIO
from urllib.parse import quote, urlparse, urlunparse

from app.config import Settings
from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from starlette.concurrency import run_in_threadpool


class StorageClient:
  """Thin wrapper over GCS and emulator access for artifact uploads."""

  def __init__(self, settings: Settings) -> None:
    self._bucket_name = settings.artifact_bucket
    self._storage_host = settings.gcs_storage_host
    self._public_base_url = settings.artifact_public_base_url.rstrip("/") if settings.artifact_public_base_url else None
    self._cache_control = settings.artifact_cache_control
    # Ensure emulator endpoint is visible to the SDK in local development.
    if self._storage_host:
      emulator_endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["GCS_STORAGE_EMULATOR_HOST"] = emulator_endpoint
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": emulator_endpoint})
    else:
      self._client = storage.Client(project=settings.gcp_project_id)

  @property
  def bucket_name(self) -> str:
    return self._bucket_name

  async def ensure_bucket(self) -> None:
    """Create the artifact bucket when missing in local/dev flows."""
    # Keep production startup side-effect free; only auto-create in emulator mode.
    if not self._storage_host:
      return
    bucket = self._client.bucket(self._bucket_name)

    def _create_if_missing() -> None:
      if not bucket.exists(client=self._client):
        self._client.create_bucket(bucket)

    await run_in_threadpool(_create_if_missing)

  async def put(self, key: str, data: bytes | BinaryIO, content_type: str) -> str:
    """Upload an object and return its public URL."""
    bucket = self._client.bucket(self._bucket_name)
    blob = bucket.blob(key)
    blob.cache_control = self._cache_control
    blob.content_type = content_type
    if isinstance(data, bytes):
      await run_in_threadpool(blob.upload_from_string, data, content_type)
    else:
      data.seek(0)
      await run_in_threadpool(blob.upload_from_file, data, content_type=content_type, rewind=True)
    return self.public_url(key, blob)

  def public_url(self, key: str, blob: storage.Blob | None = None) -> str:
    """Prefer the configured CDN prefix over the bucket URL."""
    if self._public_base_url:
      return f"{self._public_base_url}/{quote(key)}"
    if blob is None:
      blob = self._client.bucket(self._bucket_name).blob(key)
    return blob.public_url


def build_storage_client(settings: Settings) -> StorageClient:
  """Create a storage client instance with environment-aware credentials."""
  return StorageClient(settings)


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
  """Normalize emulator endpoint so the SDK receives scheme+host+port only."""
  parsed = urlparse(raw_endpoint)
  if not parsed.scheme or not parsed.netloc:
    return raw_endpoint.rstrip("/")
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")
