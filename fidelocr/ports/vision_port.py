"""VisionProvider protocol for cloud vision-language models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from fidelocr.models.dto import Provider


@dataclass(frozen=True)
class ImagePart:
    """Inline image payload in a format every provider accepts."""

    data: bytes
    mime_type: str


@dataclass(frozen=True)
class GenerationOptions:
    system_instruction: str
    max_output_tokens: int
    low_temperature: bool = True


class VisionProvider(Protocol):
    """One cloud vendor able to turn (prompt, image) into raw model text.

    Implementations raise RateLimitedError on quota exhaustion,
    EmptyResponseError on blank output and ExternalServiceError otherwise.
    """

    provider: Provider

    async def generate(
        self,
        prompt: str,
        image: ImagePart,
        model: str,
        options: GenerationOptions,
    ) -> str: ...

    async def aclose(self) -> None: ...
