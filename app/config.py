"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
  """Typed settings for the generation service."""

  environment: str
  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  task_secret: str | None
  artifact_bucket: str
  artifact_public_base_url: str | None
  artifact_cache_control: str
  gcs_storage_host: str | None
  gcp_project_id: str | None
  fal_api_key: str | None
  fal_queue_url: str
  image_model: str
  speech_model: str
  runway_api_secret: str | None
  runway_base_url: str
  runway_api_version: str
  video_model: str
  cost_image: int
  cost_video: int
  cost_speech: int
  poll_initial_seconds: float
  poll_max_interval_seconds: float
  poll_multiplier: float
  poll_throttle_multiplier: float
  poll_max_wait_seconds: float
  poll_jitter_ratio: float
  poll_max_status_errors: int
  provider_timeout_seconds: float
  download_timeout_seconds: float
  download_attempts: int
  max_artifact_bytes: int
  image_webp: bool
  ledger_write_attempts: int
  stale_reservation_seconds: float


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value



def request_lifetime_seconds(*, provider_timeout_seconds: float, poll_max_wait_seconds: float, download_timeout_seconds: float, download_attempts: int) -> float:
  """Upper bound on how long one request can hold a reservation.

  Counts the submit call, the poll ceiling, every download attempt with its
  backoff, one upload bounded like a download, and a minute for settle and
  ledger writes.
  """
  download_backoff = 5.0 * download_attempts
  return provider_timeout_seconds + poll_max_wait_seconds + download_timeout_seconds * (download_attempts + 1) + download_backoff + 60.0

@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("GENFLOW_ENV", "development").lower()
  debug = _parse_bool(os.getenv("GENFLOW_DEBUG"))

  log_backup_count = int(os.getenv("GENFLOW_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("GENFLOW_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Growth factors below 1 would shrink the interval and hammer the provider.
  poll_multiplier = _positive_float("GENFLOW_POLL_MULTIPLIER", "1.5")
  if poll_multiplier < 1:
    raise ValueError("GENFLOW_POLL_MULTIPLIER must be >= 1.")
  poll_throttle_multiplier = _positive_float("GENFLOW_POLL_THROTTLE_MULTIPLIER", "2")
  if poll_throttle_multiplier < 1:
    raise ValueError("GENFLOW_POLL_THROTTLE_MULTIPLIER must be >= 1.")

  poll_initial_seconds = _positive_float("GENFLOW_POLL_INITIAL_SECONDS", "2")
  poll_max_interval_seconds = _positive_float("GENFLOW_POLL_MAX_INTERVAL_SECONDS", "15")
  if poll_max_interval_seconds < poll_initial_seconds:
    raise ValueError("GENFLOW_POLL_MAX_INTERVAL_SECONDS must be >= GENFLOW_POLL_INITIAL_SECONDS.")
  poll_max_wait_seconds = _positive_float("GENFLOW_POLL_MAX_WAIT_SECONDS", "300")

  poll_jitter_ratio = float(os.getenv("GENFLOW_POLL_JITTER_RATIO", "0.1"))
  if not 0 <= poll_jitter_ratio < 1:
    raise ValueError("GENFLOW_POLL_JITTER_RATIO must be in [0, 1).")

  # The ledger append must be attempted at least twice before warning.
  ledger_write_attempts = _positive_int("GENFLOW_LEDGER_WRITE_ATTEMPTS", "3")
  if ledger_write_attempts < 2:
    raise ValueError("GENFLOW_LEDGER_WRITE_ATTEMPTS must be at least 2.")

  provider_timeout_seconds = _positive_float("GENFLOW_PROVIDER_TIMEOUT_SECONDS", "30")
  download_timeout_seconds = _positive_float("GENFLOW_DOWNLOAD_TIMEOUT_SECONDS", "120")
  download_attempts = _positive_int("GENFLOW_DOWNLOAD_ATTEMPTS", "3")

  # The sweep must never see a reservation whose request could still be running on another replica.
  lifetime = request_lifetime_seconds(provider_timeout_seconds=provider_timeout_seconds, poll_max_wait_seconds=poll_max_wait_seconds, download_timeout_seconds=download_timeout_seconds, download_attempts=download_attempts)
  stale_reservation_seconds = _positive_float("GENFLOW_STALE_RESERVATION_SECONDS", str(lifetime * 2))
  if stale_reservation_seconds <= lifetime:
    raise ValueError(f"GENFLOW_STALE_RESERVATION_SECONDS must exceed the worst-case request lifetime of {lifetime:.0f}s.")

  return Settings(
    environment=environment,
    debug=debug,
    pg_dsn=os.getenv("GENFLOW_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=_positive_int("GENFLOW_PG_CONNECT_TIMEOUT", "5"),
    log_dir=(os.getenv("GENFLOW_LOG_DIR") or "./logs").strip(),
    log_max_bytes=_positive_int("GENFLOW_LOG_MAX_BYTES", "5242880"),
    log_backup_count=log_backup_count,
    task_secret=_optional_str(os.getenv("GENFLOW_TASK_SECRET")),
    artifact_bucket=os.getenv("GENFLOW_ARTIFACT_BUCKET", "genflow-artifacts"),
    artifact_public_base_url=_optional_str(os.getenv("GENFLOW_ARTIFACT_PUBLIC_BASE_URL")),
    artifact_cache_control=os.getenv("GENFLOW_ARTIFACT_CACHE_CONTROL", "public, max-age=3600"),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    fal_api_key=_optional_str(os.getenv("FAL_KEY")),
    fal_queue_url=(os.getenv("GENFLOW_FAL_QUEUE_URL") or "https://queue.fal.run").strip().rstrip("/"),
    image_model=os.getenv("GENFLOW_IMAGE_MODEL", "fal-ai/flux/schnell"),
    speech_model=os.getenv("GENFLOW_SPEECH_MODEL", "fal-ai/elevenlabs/tts/multilingual-v2"),
    runway_api_secret=_optional_str(os.getenv("RUNWAYML_API_SECRET")),
    runway_base_url=(os.getenv("GENFLOW_RUNWAY_BASE_URL") or "https://api.dev.runwayml.com").strip().rstrip("/"),
    runway_api_version=os.getenv("GENFLOW_RUNWAY_API_VERSION", "2024-11-06"),
    video_model=os.getenv("GENFLOW_VIDEO_MODEL", "gen3a_turbo"),
    cost_image=_positive_int("GENFLOW_COST_IMAGE", "1"),
    cost_video=_positive_int("GENFLOW_COST_VIDEO", "5"),
    cost_speech=_positive_int("GENFLOW_COST_SPEECH", "1"),
    poll_initial_seconds=poll_initial_seconds,
    poll_max_interval_seconds=poll_max_interval_seconds,
    poll_multiplier=poll_multiplier,
    poll_throttle_multiplier=poll_throttle_multiplier,
    poll_max_wait_seconds=poll_max_wait_seconds,
    poll_jitter_ratio=poll_jitter_ratio,
    poll_max_status_errors=_positive_int("GENFLOW_POLL_MAX_STATUS_ERRORS", "5"),
    provider_timeout_seconds=provider_timeout_seconds,
    download_timeout_seconds=download_timeout_seconds,
    download_attempts=download_attempts,
    max_artifact_bytes=_positive_int("GENFLOW_MAX_ARTIFACT_BYTES", str(200 * 1024 * 1024)),
    image_webp=_parse_bool(os.getenv("GENFLOW_IMAGE_WEBP")),
    ledger_write_attempts=ledger_write_attempts,
    stale_reservation_seconds=stale_reservation_seconds,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring provider or storage configuration."""
  debug = _parse_bool(os.getenv("GENFLOW_DEBUG"))
  pg_connect_timeout = _positive_int("GENFLOW_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = os.getenv("GENFLOW_PG_DSN") or os.getenv("DATABASE_URL")
  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
