"""
Provider registry: one VisionProvider instance per (provider, credential).

A registry is owned by a single batch run and closed when the batch ends,
so clients are shared across the files of a batch and never leak between
batches.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Callable, Mapping, Optional

from fidelocr.core.exceptions import MissingCredentialsError
from fidelocr.models.dto import Provider
from fidelocr.ports.vision_port import VisionProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[str], VisionProvider]


def _gemini_factory(api_key: str) -> VisionProvider:
    from fidelocr.clients.gemini_client import GeminiVisionProvider

    return GeminiVisionProvider(api_key)


def _openrouter_factory(api_key: str) -> VisionProvider:
    from fidelocr.clients.openrouter_client import OpenRouterVisionProvider

    return OpenRouterVisionProvider(api_key)


DEFAULT_FACTORIES: Mapping[Provider, ProviderFactory] = {
    Provider.GEMINI: _gemini_factory,
    Provider.OPENROUTER: _openrouter_factory,
}


def _fingerprint(credential: str) -> str:
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]


class ProviderRegistry:
    def __init__(
        self, factories: Optional[Mapping[Provider, ProviderFactory]] = None
    ) -> None:
        self._factories = dict(factories or DEFAULT_FACTORIES)
        self._instances: dict[tuple[Provider, str], VisionProvider] = {}

    def get(self, provider: Provider, credential: Optional[str]) -> VisionProvider:
        if not credential:
            raise MissingCredentialsError(f"No credential for {provider.value}")
        key = (provider, _fingerprint(credential))
        instance = self._instances.get(key)
        if instance is None:
            instance = self._factories[provider](credential)
            self._instances[key] = instance
            logger.debug(
                "Created vision provider client", extra={"provider": provider.value}
            )
        return instance

    async def aclose(self) -> None:
        instances = list(self._instances.values())
        self._instances.clear()
        for instance in instances:
            await instance.aclose()

    async def __aenter__(self) -> "ProviderRegistry":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
