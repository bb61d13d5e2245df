"""Cloud vision adapter: image normalisation plus provider dispatch."""

from __future__ import annotations

from typing import Optional

from fidelocr.clients.registry import ProviderRegistry
from fidelocr.models.dto import ProcessingSettings, Provider
from fidelocr.ports.vision_port import GenerationOptions, ImagePart
from fidelocr.processors.prompts import SYSTEM_INSTRUCTION_V1
from fidelocr.utils.image_utils import to_vision_image


class CloudVisionAdapter:
    def __init__(
        self,
        registry: ProviderRegistry,
        settings: ProcessingSettings,
        system_instruction: str = SYSTEM_INSTRUCTION_V1,
    ) -> None:
        self._registry = registry
        self._options = GenerationOptions(
            system_instruction=system_instruction,
            max_output_tokens=settings.max_tokens,
            low_temperature=settings.low_temperature,
        )
        self._credentials = {
            Provider.GEMINI: settings.gemini_key(),
            Provider.OPENROUTER: settings.openrouter_key(),
        }

    @staticmethod
    def prepare_image(data: bytes, mime_type: Optional[str]) -> ImagePart:
        return to_vision_image(data, mime_type)

    def credential_for(self, provider: Provider) -> Optional[str]:
        return self._credentials.get(provider)

    async def generate(
        self,
        prompt: str,
        image: ImagePart,
        model: str,
        provider: Provider,
        credential: Optional[str] = None,
    ) -> str:
        """Send one prompt and image to ``provider`` and return its raw text.

        Raises:
            MissingCredentialsError: no key for the provider
            RateLimitedError / EmptyResponseError / ExternalServiceError
        """
        client = self._registry.get(provider, credential or self.credential_for(provider))
        return await client.generate(prompt, image, model, self._options)
