"""OpenRouter vision provider over the chat-completions HTTP API."""

from __future__ import annotations

import base64
import html
import logging
from http import HTTPStatus
from typing import Any, Dict, Optional

import httpx

from fidelocr.core.config import (
    DEFAULT_OPENROUTER_MODEL,
    DEFAULT_TEMPERATURE,
    ERROR_BODY_MAX_CHARS,
    LOW_TEMPERATURE,
)
from fidelocr.core.exceptions import (
    EmptyResponseError,
    ExternalServiceError,
    RateLimitedError,
)
from fidelocr.core.settings import get_provider_settings
from fidelocr.models.dto import Provider
from fidelocr.ports.vision_port import GenerationOptions, ImagePart

logger = logging.getLogger(__name__)

SERVICE_NAME = "openrouter"


def decode_model_identifier(model: str, default: str = DEFAULT_OPENROUTER_MODEL) -> str:
    """Undo HTML entity escaping in a stored model id and require vendor/model form."""
    decoded = html.unescape((model or "").strip()).replace("\u2044", "/")
    return decoded if "/" in decoded else default


def _raise_openrouter_error(
    error_type: str,
    details: Dict[str, Any],
    exc: Exception,
) -> None:
    if error_type == "rate_limit":
        raise RateLimitedError(SERVICE_NAME, details=details) from exc
    raise ExternalServiceError(
        service_name=SERVICE_NAME,
        error_type=error_type,
        details=details,
    ) from exc


def build_payload(
    prompt: str, image: ImagePart, model: str, options: GenerationOptions
) -> dict[str, Any]:
    encoded = base64.b64encode(image.data).decode("ascii")
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": options.system_instruction},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:{image.mime_type};base64,{encoded}",
                            "detail": "high",
                        },
                    },
                ],
            },
        ],
        "temperature": LOW_TEMPERATURE if options.low_temperature else DEFAULT_TEMPERATURE,
        "max_tokens": options.max_output_tokens,
    }


def extract_message_content(data: Any) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    if isinstance(content, list):
        # Some upstream models return content parts instead of a string
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return content if isinstance(content, str) else ""


class OpenRouterVisionProvider:
    """Chat-completions call with a text part and a base64 image part."""

    provider = Provider.OPENROUTER

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_provider_settings()
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.OPENROUTER_BASE_URL,
            timeout=timeout_seconds or settings.VISION_REQUEST_TIMEOUT_SECONDS,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "HTTP-Referer": settings.OPENROUTER_REFERER,
                "X-Title": settings.OPENROUTER_TITLE,
            },
        )

    async def generate(
        self,
        prompt: str,
        image: ImagePart,
        model: str,
        options: GenerationOptions,
    ) -> str:
        model_id = decode_model_identifier(model)
        payload = build_payload(prompt, image, model_id, options)

        try:
            resp = await self._client.post("/chat/completions", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            _raise_openrouter_error(
                "rate_limit" if status == HTTPStatus.TOO_MANY_REQUESTS else "error",
                {
                    "model": model_id,
                    "http_code": status,
                    "body": e.response.text[:ERROR_BODY_MAX_CHARS],
                },
                e,
            )
        except httpx.TimeoutException as e:
            _raise_openrouter_error("timeout", {"model": model_id}, e)
        except httpx.RequestError as e:
            _raise_openrouter_error("unavailable", {"model": model_id, "reason": str(e)}, e)
        except ValueError as e:
            _raise_openrouter_error(
                "error", {"model": model_id, "reason": "Response is not JSON"}, e
            )

        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            # Upstream failures can arrive as 200 with an error object
            code = error.get("code")
            logger.warning(
                f"OpenRouter returned error object: {code}",
                extra={"provider": SERVICE_NAME, "model": model_id, "http_status": code},
            )
            if code == HTTPStatus.TOO_MANY_REQUESTS:
                raise RateLimitedError(SERVICE_NAME, details={"model": model_id})
            raise ExternalServiceError(
                SERVICE_NAME,
                "error",
                details={
                    "model": model_id,
                    "detail": str(error.get("message", ""))[:ERROR_BODY_MAX_CHARS],
                },
            )

        text = extract_message_content(data)
        if not text.strip():
            raise EmptyResponseError(SERVICE_NAME, details={"model": model_id})
        return text

    async def aclose(self) -> None:
        await self._client.aclose()
