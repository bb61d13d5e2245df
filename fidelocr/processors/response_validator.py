"""
Validation and repair of raw vision-model output.

Raw text is reduced to a JSON candidate, checked against ``OCRPayload`` and,
when that fails, repaired with at most two corrective re-prompts: one
restating the schema, one insisting on Ethiopic output when the script is
pinned. The validator never raises for bad model output; it returns either
a ParsedPayload or a ValidationFailure carrying best-effort cleaned text.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from fidelocr.core.exceptions import BaseError, SchemaValidationError, ScriptMismatchError
from fidelocr.processors.prompts import SCRIPT_FOCUS_PROMPT_V1, STRICT_SCHEMA_PROMPT_V1
from fidelocr.processors.script_analyzer import INVOICE_TEMPLATE, TemplatePolicy
from fidelocr.processors.text_cleanup import contains_ethiopic, strip_fences

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class LayoutPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    textBlocks: float = Field(strict=True)
    tables: float = Field(strict=True)
    images: float = Field(strict=True)
    columns: float = Field(strict=True)
    complexity: StrictStr

    @field_validator("complexity")
    @classmethod
    def _known_complexity(cls, value: str) -> str:
        lowered = value.strip().lower()
        if lowered not in ("low", "medium", "high"):
            raise ValueError("complexity must be low, medium or high")
        return lowered


class MetadataPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    wordCount: Optional[float] = Field(default=None, strict=True)
    characterCount: Optional[float] = Field(default=None, strict=True)


class OCRPayload(BaseModel):
    """Schema every accepted model response must satisfy."""

    model_config = ConfigDict(extra="ignore")

    extractedText: StrictStr
    layoutPreserved: Optional[StrictStr] = None
    detectedLanguage: StrictStr
    confidence: float
    documentType: Optional[StrictStr] = None
    layoutAnalysis: LayoutPayload
    metadata: Optional[MetadataPayload] = None


class RepromptPurpose(str, Enum):
    SCHEMA = "schema"
    SCRIPT = "script"


class PayloadOrigin(str, Enum):
    INITIAL = "initial"
    SCHEMA = "schema"
    SCRIPT = "script"


@dataclass
class ParsedPayload:
    payload: OCRPayload
    origin: PayloadOrigin = PayloadOrigin.INITIAL
    reprompts: int = 0
    mismatch: Optional[ScriptMismatchError] = None
    notes: list[str] = field(default_factory=list)

    @property
    def script_mismatch(self) -> bool:
        return self.mismatch is not None


@dataclass
class ValidationFailure:
    cleaned_text: str
    error: SchemaValidationError
    reprompts: int = 0
    notes: list[str] = field(default_factory=list)


Reprompt = Callable[[str, RepromptPurpose], Awaitable[str]]


def extract_json_text(text: str) -> str:
    """Pull the JSON document out of a model response.

    Tries a fenced code block, then the outermost brace span, then the
    trimmed text itself.

    Raises:
        ValueError: no JSON-looking content found
    """
    text = text or ""
    match = _FENCE_RE.search(text)
    if match and match.group(1):
        return match.group(1).strip()

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return text[first : last + 1].strip()

    cleaned = re.sub(r"^json\s*", "", text.replace("```", "").strip(), flags=re.IGNORECASE).strip()
    if (cleaned.startswith("{") and cleaned.endswith("}")) or (
        cleaned.startswith("[") and cleaned.endswith("]")
    ):
        return cleaned
    raise ValueError("Failed to extract JSON from model response")


def try_parse_payload(text: Optional[str]) -> Optional[OCRPayload]:
    if not text:
        return None
    try:
        obj = json.loads(extract_json_text(text))
        return OCRPayload.model_validate(obj)
    except (ValueError, PydanticValidationError) as exc:
        # json.JSONDecodeError is a ValueError
        logger.debug(f"Model output rejected: {str(exc)[:200]}")
        return None


class ResponseValidator:
    """Parse model output, repairing it through the supplied re-prompt callable."""

    def __init__(
        self,
        reprompt: Reprompt,
        *,
        script_pinned: bool,
        template_policy: TemplatePolicy = INVOICE_TEMPLATE,
    ) -> None:
        self._reprompt = reprompt
        self._script_pinned = script_pinned
        self._template_policy = template_policy

    def _lacks_script(self, payload: OCRPayload) -> bool:
        text = payload.extractedText
        return not contains_ethiopic(text) or self._template_policy.matches(text)

    async def _ask(self, prompt: str, purpose: RepromptPurpose) -> Optional[str]:
        try:
            return await self._reprompt(prompt, purpose)
        except BaseError as exc:
            logger.warning(
                f"Corrective re-prompt failed: {exc.message}",
                extra={"error_code": exc.error_code, "stage": "parsing"},
            )
            return None

    async def parse(self, raw_text: str) -> Union[ParsedPayload, ValidationFailure]:
        reprompts = 0
        notes: list[str] = []

        payload = try_parse_payload(raw_text)
        origin = PayloadOrigin.INITIAL
        if payload is None:
            reprompts += 1
            payload = try_parse_payload(
                await self._ask(STRICT_SCHEMA_PROMPT_V1, RepromptPurpose.SCHEMA)
            )
            if payload is None:
                notes.append("schema_validation_failed")
                return ValidationFailure(
                    cleaned_text=strip_fences(raw_text),
                    error=SchemaValidationError("No valid payload after strict re-prompt"),
                    reprompts=reprompts,
                    notes=notes,
                )
            origin = PayloadOrigin.SCHEMA
            notes.append("schema_reprompt_accepted")

        mismatch = None
        if self._script_pinned and self._lacks_script(payload):
            reprompts += 1
            candidate = try_parse_payload(
                await self._ask(SCRIPT_FOCUS_PROMPT_V1, RepromptPurpose.SCRIPT)
            )
            if candidate is not None and not self._lacks_script(candidate):
                payload = candidate
                origin = PayloadOrigin.SCRIPT
                notes.append("script_reprompt_accepted")
            else:
                mismatch = ScriptMismatchError("No Ethiopic text after script-focus re-prompt")
                notes.append("script_mismatch")

        return ParsedPayload(
            payload=payload,
            origin=origin,
            reprompts=reprompts,
            mismatch=mismatch,
            notes=notes,
        )
