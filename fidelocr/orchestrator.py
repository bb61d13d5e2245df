from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from fidelocr.clients.registry import ProviderFactory, ProviderRegistry
from fidelocr.clients.tesseract_client import LocalOCRAdapter
from fidelocr.clients.vision_adapter import CloudVisionAdapter
from fidelocr.core.config import FALLBACK_RESULT_CONFIDENCE, STAGE_PROGRESS, TARGET_LANGUAGE
from fidelocr.core.exceptions import (
    BaseError,
    EmptyResponseError,
    MissingCredentialsError,
    ProcessingCancelledError,
    SourceUnavailableError,
)
from fidelocr.core.settings import get_provider_settings
from fidelocr.models.dto import (
    BatchResult,
    FailureReason,
    FileFailure,
    FileOutcome,
    LayoutAnalysis,
    OCRResult,
    ProcessingSettings,
    ProgressEvent,
    Provider,
    RecognitionDraft,
    ResultMetadata,
    RouteDecision,
    RoutingMode,
    SourceFile,
    Stage,
)
from fidelocr.processors.prompts import build_recognition_prompt
from fidelocr.processors.response_validator import (
    ParsedPayload,
    PayloadOrigin,
    RepromptPurpose,
    ResponseValidator,
    ValidationFailure,
)
from fidelocr.processors.script_analyzer import (
    INVOICE_TEMPLATE,
    TemplatePolicy,
    adjust_confidence,
    assess,
    build_quality_report,
)
from fidelocr.processors.text_cleanup import (
    clamp01,
    contains_ethiopic,
    enforce_ethiopic_punctuation,
    normalize_lang_code,
)
from fidelocr.resilience.fallback import (
    FallbackChain,
    FallbackController,
    FallbackOutcome,
    FallbackStep,
    build_fallback_chain,
)
from fidelocr.routing.router import RouteClassifier, decide
from fidelocr.utils.file_detection import resolve_mime_type
from fidelocr.utils.image_utils import decode_data_url
from fidelocr.utils.timing import StageTimers

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]

ALLOWED_TRANSITIONS: dict[Optional[Stage], frozenset[Stage]] = {
    None: frozenset({Stage.PREPARING, Stage.FAILED}),
    Stage.PREPARING: frozenset({Stage.ROUTED, Stage.FAILED}),
    Stage.ROUTED: frozenset({Stage.RECOGNIZING, Stage.FAILED}),
    Stage.RECOGNIZING: frozenset({Stage.PARSING, Stage.FAILED}),
    Stage.PARSING: frozenset({Stage.ASSESSING, Stage.FAILED}),
    Stage.ASSESSING: frozenset({Stage.DONE, Stage.FAILED}),
    Stage.DONE: frozenset(),
    Stage.FAILED: frozenset(),
}

# Cloud failures the local engine may still rescue in auto mode
_LOCAL_RESCUE_REASONS = frozenset(
    {
        FailureReason.ALL_ROUTES_FAILED,
        FailureReason.UNSUPPORTED_FORMAT,
        FailureReason.MISSING_CREDENTIALS,
    }
)


def _reason_for(exc: BaseError) -> FailureReason:
    try:
        return FailureReason(exc.error_code)
    except ValueError:
        if exc.error_code.endswith("_RATE_LIMIT"):
            return FailureReason.RATE_LIMITED
        if exc.error_code.endswith("_EMPTY_RESPONSE"):
            return FailureReason.EMPTY_RESPONSE
        return FailureReason.UNKNOWN_ERROR


def _detail_for(exc: BaseError) -> str:
    return exc.details.get("detail") or exc.message


@dataclass
class CloudSession:
    """Cloud call state for one file: the controller plus which step answered what."""

    controller: FallbackController
    first: FallbackOutcome
    steps: dict[PayloadOrigin, FallbackStep] = field(default_factory=dict)


@dataclass
class FileContext:
    file: SourceFile
    index: int
    batch_id: str
    settings: ProcessingSettings

    # populated during run
    state: Optional[Stage] = None
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    route: Optional[RouteDecision] = None
    draft: Optional[RecognitionDraft] = None
    cloud: Optional[CloudSession] = None
    notes: list[str] = field(default_factory=list)
    timers: StageTimers = field(default_factory=StageTimers)

    @property
    def pinned(self) -> bool:
        return self.settings.script_pinned(self.file)

    def log_extra(self, **kwargs: Any) -> dict[str, Any]:
        extra: dict[str, Any] = {"batch_id": self.batch_id, "file_id": self.file.id}
        if self.state is not None:
            extra["stage"] = self.state.value
        extra.update(kwargs)
        return extra


@dataclass
class BatchContext:
    settings: ProcessingSettings
    cloud: CloudVisionAdapter
    chain: Optional[FallbackChain]
    on_progress: Optional[ProgressCallback]
    cancel_event: Optional[asyncio.Event]


class PipelineRunner:
    """Sequential per-file state machine over the local and cloud recognition paths.

    Every submitted file yields exactly one outcome, in submission order.
    Failures are isolated per file; ``run_batch`` never raises for them.

    Args:
        local_adapter: Tesseract-backed adapter (default: real workers)
        provider_factories: Override of how vision clients are built, per provider
        route_classifier: Model consulted when the learned router strategy is selected
        timeout_seconds: Deadline per cloud call (default from ProviderSettings)
        template_policy: Stock-template heuristic used by script validation
    """

    def __init__(
        self,
        local_adapter: Optional[LocalOCRAdapter] = None,
        provider_factories: Optional[Mapping[Provider, ProviderFactory]] = None,
        route_classifier: Optional[RouteClassifier] = None,
        timeout_seconds: Optional[float] = None,
        template_policy: TemplatePolicy = INVOICE_TEMPLATE,
    ) -> None:
        self.local_adapter = local_adapter or LocalOCRAdapter()
        self.provider_factories = provider_factories
        self.route_classifier = route_classifier
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else get_provider_settings().VISION_REQUEST_TIMEOUT_SECONDS
        )
        self.template_policy = template_policy
        self.logger = logger

    # ------------------------------------------------------------------ events

    async def _emit(self, batch: BatchContext, event: ProgressEvent) -> None:
        if batch.on_progress is None:
            return
        try:
            result = batch.on_progress(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.warning(
                "Progress callback failed",
                extra={"file_id": event.file_id, "stage": event.stage.value},
                exc_info=True,
            )

    async def _transition(
        self,
        batch: BatchContext,
        ctx: FileContext,
        stage: Stage,
        provider: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        if stage not in ALLOWED_TRANSITIONS[ctx.state]:
            raise RuntimeError(
                f"Illegal transition {ctx.state} -> {stage.value} for file {ctx.file.id}"
            )
        ctx.state = stage
        await self._announce(batch, ctx, provider=provider, message=message)

    async def _announce(
        self,
        batch: BatchContext,
        ctx: FileContext,
        provider: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        """Emit a progress event for the current stage, e.g. when the active provider changes."""
        await self._emit(
            batch,
            ProgressEvent(
                file_id=ctx.file.id,
                file_index=ctx.index,
                stage=ctx.state,
                progress=STAGE_PROGRESS[ctx.state.value],
                provider=provider,
                message=message,
            ),
        )

    @staticmethod
    def _active_provider(ctx: FileContext) -> Optional[str]:
        if ctx.draft is not None:
            return ctx.draft.provider or ctx.draft.engine
        if ctx.cloud is not None:
            return ctx.cloud.first.step.provider.value
        return None

    def _check_cancelled(self, batch: BatchContext, ctx: FileContext) -> None:
        if batch.cancel_event is not None and batch.cancel_event.is_set():
            raise ProcessingCancelledError(ctx.file.id)

    # ------------------------------------------------------------------ stages

    async def _stage_prepare(self, batch: BatchContext, ctx: FileContext) -> None:
        await self._transition(batch, ctx, Stage.PREPARING)
        file = ctx.file
        declared = file.mime_type
        if file.content:
            data = file.content
        elif file.data_url:
            try:
                data, declared = decode_data_url(file.data_url)
            except ValueError as exc:
                raise SourceUnavailableError(file.id, str(exc)) from exc
        else:
            raise SourceUnavailableError(file.id, "File has no content")

        if not data:
            raise SourceUnavailableError(file.id, "File is empty")
        ctx.data = data
        ctx.mime_type = resolve_mime_type(data, declared)

    async def _stage_route(self, batch: BatchContext, ctx: FileContext) -> None:
        # route on the content-detected type, not the declared one
        routed_file = ctx.file.model_copy(update={"mime_type": ctx.mime_type})
        ctx.route = decide(batch.settings, routed_file, self.route_classifier)
        self.logger.info(
            f"Routed file to {ctx.route.value}", extra=ctx.log_extra(route=ctx.route.value)
        )
        await self._transition(batch, ctx, Stage.ROUTED, message=ctx.route.value)

    async def _try_local(
        self, ctx: FileContext
    ) -> tuple[Optional[RecognitionDraft], Optional[BaseError]]:
        try:
            draft = await self.local_adapter.recognize(ctx.data, ctx.file, ctx.settings)
        except BaseError as exc:
            self.logger.warning(
                f"Local recognition failed: {exc.message}",
                extra=ctx.log_extra(error_code=exc.error_code, provider="tesseract"),
            )
            return None, exc
        return draft, None

    async def _recognize_cloud(self, batch: BatchContext, ctx: FileContext) -> None:
        if batch.chain is None:
            raise MissingCredentialsError("Cloud route requires a Gemini or OpenRouter key")
        image = batch.cloud.prepare_image(ctx.data, ctx.mime_type)

        async def call(step: FallbackStep, prompt: str) -> str:
            return await batch.cloud.generate(prompt, image, step.model, step.provider)

        controller = FallbackController(batch.chain, call, self.timeout_seconds)
        outcome = await controller.run(build_recognition_prompt(ctx.pinned))

        ctx.cloud = CloudSession(
            controller=controller,
            first=outcome,
            steps={PayloadOrigin.INITIAL: outcome.step},
        )
        if outcome.attempts:
            ctx.notes.append(f"fallback_attempts:{len(outcome.attempts)}")

    async def _stage_recognize(self, batch: BatchContext, ctx: FileContext) -> None:
        settings = batch.settings
        if ctx.route == RouteDecision.LOCAL:
            await self._transition(batch, ctx, Stage.RECOGNIZING, provider="tesseract")
            draft, local_error = await self._try_local(ctx)
            if draft is not None:
                ctx.draft = draft
                return
            if settings.routing_mode == RoutingMode.AUTO and batch.chain is not None:
                self.logger.info(
                    "Local engine produced no text; trying cloud", extra=ctx.log_extra()
                )
                ctx.notes.append("local_empty_cloud_fallback")
                await self._announce(
                    batch,
                    ctx,
                    provider=batch.chain.primary.provider.value,
                    message="local_empty_cloud_fallback",
                )
                await self._recognize_cloud(batch, ctx)
                return
            if local_error is not None:
                raise local_error
            raise EmptyResponseError("tesseract")

        provider = batch.chain.primary.provider.value if batch.chain else None
        await self._transition(batch, ctx, Stage.RECOGNIZING, provider=provider)
        try:
            await self._recognize_cloud(batch, ctx)
        except BaseError as exc:
            reason = _reason_for(exc)
            if settings.routing_mode != RoutingMode.AUTO or reason not in _LOCAL_RESCUE_REASONS:
                raise
            self.logger.info(
                f"Cloud recognition failed ({reason.value}); trying local engine",
                extra=ctx.log_extra(error_code=exc.error_code),
            )
            await self._announce(
                batch, ctx, provider="tesseract", message="cloud_failed_local_fallback"
            )
            draft, _ = await self._try_local(ctx)
            if draft is None:
                raise
            ctx.notes.append(f"cloud_failed_local_fallback:{reason.value}")
            ctx.draft = draft

    def _draft_from_payload(self, ctx: FileContext, parsed: ParsedPayload) -> RecognitionDraft:
        payload = parsed.payload
        step = ctx.cloud.steps.get(parsed.origin, ctx.cloud.first.step)
        extracted = payload.extractedText
        layout_text = payload.layoutPreserved or extracted
        if ctx.pinned:
            extracted = enforce_ethiopic_punctuation(extracted)
            layout_text = enforce_ethiopic_punctuation(layout_text)

        language = normalize_lang_code(payload.detectedLanguage)
        if ctx.pinned and contains_ethiopic(extracted):
            language = TARGET_LANGUAGE

        layout = payload.layoutAnalysis
        return RecognitionDraft(
            text=extracted,
            layout_text=layout_text,
            language=language,
            confidence=clamp01(payload.confidence),
            engine=step.provider.value,
            route=RouteDecision.CLOUD,
            provider=step.provider.value,
            model=step.model,
            document_type=payload.documentType,
            layout=LayoutAnalysis(
                text_blocks=int(layout.textBlocks),
                tables=int(layout.tables),
                images=int(layout.images),
                columns=int(layout.columns),
                complexity=layout.complexity,
            ),
            notes=list(parsed.notes),
        )

    def _draft_from_failure(self, ctx: FileContext, failure: ValidationFailure) -> RecognitionDraft:
        step = ctx.cloud.first.step
        cleaned = failure.cleaned_text
        if ctx.pinned:
            cleaned = enforce_ethiopic_punctuation(cleaned)
        return RecognitionDraft(
            text=cleaned,
            layout_text=cleaned,
            language=TARGET_LANGUAGE if ctx.pinned and contains_ethiopic(cleaned) else "unknown",
            confidence=FALLBACK_RESULT_CONFIDENCE,
            engine=step.provider.value,
            route=RouteDecision.CLOUD,
            provider=step.provider.value,
            model=step.model,
            layout=LayoutAnalysis(
                text_blocks=1, tables=0, images=0, columns=1, complexity="medium"
            ),
            notes=list(failure.notes),
        )

    async def _stage_parse(self, batch: BatchContext, ctx: FileContext) -> None:
        await self._transition(batch, ctx, Stage.PARSING, provider=self._active_provider(ctx))
        if ctx.draft is not None:
            return

        session = ctx.cloud

        async def reprompt(prompt: str, purpose: RepromptPurpose) -> str:
            outcome = await session.controller.run(prompt, start_at=session.first.step)
            session.steps[PayloadOrigin(purpose.value)] = outcome.step
            return outcome.text

        validator = ResponseValidator(
            reprompt,
            script_pinned=ctx.pinned,
            template_policy=self.template_policy,
        )
        parsed = await validator.parse(session.first.text)
        if isinstance(parsed, ParsedPayload):
            ctx.draft = self._draft_from_payload(ctx, parsed)
            if parsed.mismatch is not None:
                self.logger.warning(
                    parsed.mismatch.message,
                    extra=ctx.log_extra(error_code=parsed.mismatch.error_code),
                )
        else:
            self.logger.warning(
                f"{parsed.error.message}; keeping best-effort text",
                extra=ctx.log_extra(error_code=parsed.error.error_code),
            )
            ctx.draft = self._draft_from_failure(ctx, parsed)

    async def _stage_assess(self, batch: BatchContext, ctx: FileContext) -> None:
        await self._transition(batch, ctx, Stage.ASSESSING, provider=self._active_provider(ctx))
        draft = ctx.draft
        if not (ctx.pinned or contains_ethiopic(draft.text)):
            return

        assessment = assess(draft.text)
        draft.confidence = adjust_confidence(draft.confidence, assessment)
        if draft.route == RouteDecision.CLOUD:
            draft.quality = build_quality_report(draft.text, assessment)
        else:
            draft.quality = {
                "overall_quality": assessment.overall_quality,
                "corruption_level": assessment.corruption_level,
                "is_corrupted": assessment.is_corrupted,
            }

    def _build_result(self, ctx: FileContext) -> OCRResult:
        draft = ctx.draft
        notes = list(ctx.notes) + list(draft.notes)
        return OCRResult(
            file_id=ctx.file.id,
            extracted_text=draft.text,
            layout_preserved=draft.layout_text,
            detected_language=draft.language,
            confidence=clamp01(draft.confidence),
            document_type=draft.document_type,
            processing_time_ms=ctx.timers.elapsed_ms(),
            layout_analysis=draft.layout,
            metadata=ResultMetadata(
                engine=draft.engine,
                provider=draft.provider,
                model=draft.model,
                route=draft.route,
                word_count=len(draft.text.split()),
                character_count=len(draft.text),
                page_count=draft.page_count,
                notes=tuple(notes),
                quality=draft.quality,
                stage_timings_ms=ctx.timers.as_ms(),
            ),
        )

    # ------------------------------------------------------------------ driver

    async def _fail(
        self,
        batch: BatchContext,
        ctx: FileContext,
        reason: FailureReason,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> FileOutcome:
        failure = FileFailure(reason=reason, message=message, details=details or {})
        await self._transition(batch, ctx, Stage.FAILED, message=reason.value)
        return FileOutcome(file_id=ctx.file.id, status=Stage.FAILED, failure=failure)

    async def _run_file(self, batch: BatchContext, ctx: FileContext) -> FileOutcome:
        try:
            self._check_cancelled(batch, ctx)
            with ctx.timers.timer("preparing"):
                await self._stage_prepare(batch, ctx)
            self._check_cancelled(batch, ctx)
            await self._stage_route(batch, ctx)
            self._check_cancelled(batch, ctx)
            with ctx.timers.timer("recognizing"):
                await self._stage_recognize(batch, ctx)
            self._check_cancelled(batch, ctx)
            with ctx.timers.timer("parsing"):
                await self._stage_parse(batch, ctx)
            self._check_cancelled(batch, ctx)
            with ctx.timers.timer("assessing"):
                await self._stage_assess(batch, ctx)
            result = self._build_result(ctx)
            await self._transition(batch, ctx, Stage.DONE, provider=self._active_provider(ctx))
        except BaseError as exc:
            reason = _reason_for(exc)
            self.logger.error(
                f"Pipeline stage failed: {reason.value} - {_detail_for(exc)}",
                extra=ctx.log_extra(error_code=exc.error_code),
            )
            return await self._fail(batch, ctx, reason, _detail_for(exc), exc.details)
        except Exception as exc:
            self.logger.error(
                f"Unexpected pipeline error: {exc}", extra=ctx.log_extra(), exc_info=True
            )
            return await self._fail(batch, ctx, FailureReason.UNKNOWN_ERROR, str(exc))

        self.logger.info(
            "File processed",
            extra=ctx.log_extra(
                provider=result.metadata.provider,
                model=result.metadata.model,
                duration_ms=result.processing_time_ms,
            ),
        )
        return FileOutcome(file_id=ctx.file.id, status=Stage.DONE, result=result)

    async def run_batch(
        self,
        files: Sequence[SourceFile],
        settings: ProcessingSettings,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """Process ``files`` one after another and return their outcomes in order."""
        batch_id = uuid.uuid4().hex
        chain = build_fallback_chain(settings) if settings.has_cloud_credentials() else None
        self.logger.info(
            f"Batch started with {len(files)} file(s)",
            extra={
                "batch_id": batch_id,
                "route": settings.routing_mode.value,
                "provider": chain.primary.provider.value if chain else None,
            },
        )

        outcomes: list[FileOutcome] = []
        async with ProviderRegistry(self.provider_factories) as registry:
            batch = BatchContext(
                settings=settings,
                cloud=CloudVisionAdapter(registry, settings),
                chain=chain,
                on_progress=on_progress,
                cancel_event=cancel_event,
            )
            for index, file in enumerate(files):
                ctx = FileContext(file=file, index=index, batch_id=batch_id, settings=settings)
                outcomes.append(await self._run_file(batch, ctx))

        done = sum(1 for outcome in outcomes if outcome.status == Stage.DONE)
        self.logger.info(
            f"Batch finished: {done}/{len(outcomes)} succeeded", extra={"batch_id": batch_id}
        )
        return BatchResult(batch_id=batch_id, outcomes=outcomes)
