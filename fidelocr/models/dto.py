"""
Typed contracts shared across the pipeline.

Inputs (SourceFile, ProcessingSettings) are frozen and never mutated by the
pipeline. OCRResult is frozen too; the orchestrator builds exactly one per
successfully processed file from a mutable RecognitionDraft.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from fidelocr.core.config import (
    DEFAULT_GEMINI_FALLBACK_MODEL,
    DEFAULT_GEMINI_MODEL,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_OPENROUTER_MODEL,
    TARGET_LANGUAGE_HINTS,
)


class RoutingMode(str, Enum):
    AUTO = "auto"
    LOCAL_ONLY = "local-only"
    CLOUD_ONLY = "cloud-only"


class RouterStrategy(str, Enum):
    HEURISTIC = "heuristic"
    LEARNED = "learned"


class RouteDecision(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"


class Provider(str, Enum):
    GEMINI = "gemini"
    OPENROUTER = "openrouter"


class Stage(str, Enum):
    PREPARING = "preparing"
    ROUTED = "routed"
    RECOGNIZING = "recognizing"
    PARSING = "parsing"
    ASSESSING = "assessing"
    DONE = "done"
    FAILED = "failed"


class FailureReason(str, Enum):
    SOURCE_UNAVAILABLE = "SOURCE_UNAVAILABLE"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    RATE_LIMITED = "RATE_LIMITED"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    SCHEMA_VALIDATION_FAILURE = "SCHEMA_VALIDATION_FAILURE"
    SCRIPT_MISMATCH = "SCRIPT_MISMATCH"
    ALL_ROUTES_FAILED = "ALL_ROUTES_FAILED"
    LOCAL_ENGINE_ERROR = "LOCAL_ENGINE_ERROR"
    CANCELLED = "CANCELLED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class SourceFile(BaseModel):
    """A document submitted for recognition.

    Exactly one of ``content`` (raw bytes) or ``data_url`` (base64 data URL)
    is expected; a file carrying neither fails in the preparing stage.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    mime_type: str = "application/octet-stream"
    content: bytes | None = None
    data_url: str | None = None
    language_hint: str | None = None

    @property
    def extension(self) -> str:
        dot = self.name.rfind(".")
        return self.name[dot:].lower() if dot != -1 else ""


class ProcessingSettings(BaseModel):
    """Per-batch processing options."""

    model_config = ConfigDict(frozen=True)

    routing_mode: RoutingMode = RoutingMode.AUTO
    router_strategy: RouterStrategy = RouterStrategy.HEURISTIC
    force_script: bool = False
    strict_script: bool = False
    model: str = DEFAULT_GEMINI_MODEL
    fallback_model: str = DEFAULT_GEMINI_FALLBACK_MODEL
    openrouter_model: str = DEFAULT_OPENROUTER_MODEL
    gemini_api_key: SecretStr | None = None
    openrouter_api_key: SecretStr | None = None
    low_temperature: bool = True
    max_tokens: int = Field(default=DEFAULT_MAX_OUTPUT_TOKENS, gt=0)
    enhance_image: bool = False

    def gemini_key(self) -> str | None:
        return _usable_secret(self.gemini_api_key)

    def openrouter_key(self) -> str | None:
        return _usable_secret(self.openrouter_api_key)

    def has_cloud_credentials(self) -> bool:
        return bool(self.gemini_key() or self.openrouter_key())

    def script_pinned(self, file: SourceFile | None = None) -> bool:
        """True when output must be in the target script for this file."""
        if self.force_script:
            return True
        hint = (file.language_hint or "").strip().lower() if file else ""
        return hint in TARGET_LANGUAGE_HINTS


def _usable_secret(value: SecretStr | None) -> str | None:
    if value is None:
        return None
    secret = value.get_secret_value().strip()
    return secret or None


class LayoutAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    text_blocks: int = 1
    tables: int = 0
    images: int = 0
    columns: int = 1
    complexity: str = "medium"


class ResultMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    engine: str
    provider: str | None = None
    model: str | None = None
    route: RouteDecision
    word_count: int = 0
    character_count: int = 0
    page_count: int = 1
    notes: tuple[str, ...] = ()
    quality: dict[str, Any] | None = None
    stage_timings_ms: dict[str, float] = Field(default_factory=dict)


class OCRResult(BaseModel):
    """Final, immutable recognition result for one file."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    file_id: str
    extracted_text: str
    layout_preserved: str
    detected_language: str
    confidence: float = Field(ge=0.0, le=1.0)
    document_type: str | None = None
    processing_time_ms: float = 0.0
    layout_analysis: LayoutAnalysis = Field(default_factory=LayoutAnalysis)
    metadata: ResultMetadata


class QualityAssessment(BaseModel):
    """Heuristic script-quality verdict for a piece of recognised text."""

    overall_quality: str
    quality_score: float
    corruption_level: str
    corruption_score: float
    is_corrupted: bool
    word_count: int = 0
    script_word_count: int = 0
    well_formed_word_count: int = 0
    problematic_word_count: int = 0
    signatures: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    religious_content: bool = False


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    file_id: str
    file_index: int
    stage: Stage
    progress: float
    provider: str | None = None
    message: str | None = None


class FileFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: FailureReason
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class FileOutcome(BaseModel):
    file_id: str
    status: Stage
    result: OCRResult | None = None
    failure: FileFailure | None = None


class BatchResult(BaseModel):
    """Outcomes index-aligned with the submitted files."""

    batch_id: str
    outcomes: list[FileOutcome]

    @property
    def results(self) -> list[OCRResult]:
        return [o.result for o in self.outcomes if o.result is not None]

    @property
    def failures(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.failure is not None]


@dataclass
class RecognitionDraft:
    """Intermediate recognition output produced by the local or cloud path."""

    text: str
    layout_text: str
    language: str
    confidence: float
    engine: str
    route: RouteDecision
    provider: str | None = None
    model: str | None = None
    document_type: str | None = None
    layout: LayoutAnalysis = field(default_factory=LayoutAnalysis)
    page_count: int = 1
    notes: list[str] = field(default_factory=list)
    quality: dict[str, Any] | None = None
