"""Build the provider registry from settings."""

from __future__ import annotations

import logging

import httpx

from app.config import Settings
from app.generation.models import JobKind
from app.generation.providers.base import GenerationProvider
from app.generation.providers.fal import FalQueueProvider
from app.generation.providers.runway import RunwayProvider

logger = logging.getLogger(__name__)


def build_providers(settings: Settings, client: httpx.AsyncClient) -> dict[JobKind, GenerationProvider]:
  """Return one provider per job kind whose credentials are configured."""
  providers: dict[JobKind, GenerationProvider] = {}
  timeout = settings.provider_timeout_seconds
  if settings.fal_api_key:
    providers[JobKind.IMAGE] = FalQueueProvider(client, api_key=settings.fal_api_key, queue_url=settings.fal_queue_url, model=settings.image_model, kind=JobKind.IMAGE, timeout=timeout)
    providers[JobKind.SPEECH] = FalQueueProvider(client, api_key=settings.fal_api_key, queue_url=settings.fal_queue_url, model=settings.speech_model, kind=JobKind.SPEECH, timeout=timeout)
  else:
    logger.warning("FAL_KEY not set; image and speech generation are disabled.")
  if settings.runway_api_secret:
    providers[JobKind.VIDEO] = RunwayProvider(client, api_secret=settings.runway_api_secret, base_url=settings.runway_base_url, api_version=settings.runway_api_version, model=settings.video_model, timeout=timeout)
  else:
    logger.warning("RUNWAYML_API_SECRET not set; video generation is disabled.")
  return providers
