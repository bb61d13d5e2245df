"""Gemini vision provider using the google-genai async client."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from fidelocr.core.config import DEFAULT_TEMPERATURE, ERROR_BODY_MAX_CHARS, LOW_TEMPERATURE
from fidelocr.core.exceptions import (
    EmptyResponseError,
    ExternalServiceError,
    RateLimitedError,
)
from fidelocr.models.dto import Provider
from fidelocr.ports.vision_port import GenerationOptions, ImagePart

logger = logging.getLogger(__name__)

SERVICE_NAME = "gemini"


def build_generation_config(options: GenerationOptions) -> types.GenerateContentConfig:
    if options.low_temperature:
        return types.GenerateContentConfig(
            system_instruction=options.system_instruction,
            temperature=LOW_TEMPERATURE,
            top_p=0.0,
            top_k=1,
            max_output_tokens=options.max_output_tokens,
            response_mime_type="application/json",
        )
    return types.GenerateContentConfig(
        system_instruction=options.system_instruction,
        temperature=DEFAULT_TEMPERATURE,
        max_output_tokens=options.max_output_tokens,
        response_mime_type="application/json",
    )


def _is_rate_limit(exc: genai_errors.APIError) -> bool:
    status = str(getattr(exc, "status", "") or "").upper()
    return exc.code == 429 or status == "RESOURCE_EXHAUSTED"


class GeminiVisionProvider:
    """Direct vision call against the Gemini API with inline image bytes."""

    provider = Provider.GEMINI

    def __init__(self, api_key: str, client: Optional[Any] = None) -> None:
        self._client = client or genai.Client(api_key=api_key)

    async def generate(
        self,
        prompt: str,
        image: ImagePart,
        model: str,
        options: GenerationOptions,
    ) -> str:
        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part.from_text(text=prompt),
                    types.Part.from_bytes(data=image.data, mime_type=image.mime_type),
                ],
            )
        ]
        try:
            resp = await self._client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=build_generation_config(options),
            )
        except genai_errors.APIError as exc:
            detail = str(exc)[:ERROR_BODY_MAX_CHARS]
            if _is_rate_limit(exc):
                logger.warning(
                    "Gemini rate limit",
                    extra={"provider": SERVICE_NAME, "model": model, "http_status": exc.code},
                )
                raise RateLimitedError(SERVICE_NAME, details={"model": model, "detail": detail}) from exc
            raise ExternalServiceError(
                SERVICE_NAME,
                "error",
                details={"model": model, "status_code": exc.code, "detail": detail},
            ) from exc
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(
                SERVICE_NAME, "timeout", details={"model": model}
            ) from exc
        except httpx.RequestError as exc:
            raise ExternalServiceError(
                SERVICE_NAME, "unavailable", details={"model": model, "detail": str(exc)}
            ) from exc

        text = resp.text or ""
        if not text.strip():
            raise EmptyResponseError(SERVICE_NAME, details={"model": model})
        return text

    async def aclose(self) -> None:
        await self._client.aio.aclose()
