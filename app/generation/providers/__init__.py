"""Provider implementations."""

from app.generation.providers.base import GenerationProvider, HttpProviderClient, ProviderError
from app.generation.providers.fal import FalQueueProvider
from app.generation.providers.runway import RunwayProvider

__all__ = ["GenerationProvider", "HttpProviderClient", "ProviderError", "FalQueueProvider", "RunwayProvider"]
