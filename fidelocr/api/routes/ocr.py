"""Batch OCR endpoint."""

import logging
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from fidelocr.api.dependencies import get_pipeline_runner, get_providers
from fidelocr.api.file_validation import validate_upload_size
from fidelocr.api.middleware import ensure_trace_id
from fidelocr.api.schemas import OCRBatchResponse, ProblemDetail
from fidelocr.core.config import (
    DEFAULT_GEMINI_FALLBACK_MODEL,
    DEFAULT_GEMINI_MODEL,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_OPENROUTER_MODEL,
)
from fidelocr.core.settings import ProviderSettings
from fidelocr.models.dto import (
    ProcessingSettings,
    RouterStrategy,
    RoutingMode,
    SourceFile,
    Stage,
)
from fidelocr.orchestrator import PipelineRunner

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/v1/ocr",
    response_model=OCRBatchResponse,
    tags=["ocr"],
    responses={
        413: {"description": "File too large", "model": ProblemDetail},
        422: {"description": "Validation Error", "model": ProblemDetail},
    },
)
async def recognize_documents(
    request: Request,
    files: List[UploadFile] = File(..., description="Images or PDFs to recognise"),
    routing_mode: RoutingMode = Form(RoutingMode.AUTO),
    router_strategy: RouterStrategy = Form(RouterStrategy.HEURISTIC),
    force_script: bool = Form(False, description="Pin output to Ethiopic script"),
    strict_script: bool = Form(False, description="Blacklist Latin glyphs in the local engine"),
    language_hint: Optional[str] = Form(None, description="Language hint applied to every file"),
    model: str = Form(DEFAULT_GEMINI_MODEL),
    fallback_model: str = Form(DEFAULT_GEMINI_FALLBACK_MODEL),
    openrouter_model: str = Form(DEFAULT_OPENROUTER_MODEL),
    low_temperature: bool = Form(True),
    max_tokens: int = Form(DEFAULT_MAX_OUTPUT_TOKENS, gt=0),
    enhance_image: bool = Form(False),
    runner: PipelineRunner = Depends(get_pipeline_runner),
    providers: ProviderSettings = Depends(get_providers),
):
    start_time = time.time()
    trace_id = ensure_trace_id(request)

    sources = []
    for upload in files:
        validate_upload_size(upload)
        sources.append(
            SourceFile(
                name=upload.filename or "upload",
                mime_type=upload.content_type or "application/octet-stream",
                content=await upload.read(),
                language_hint=language_hint,
            )
        )

    settings = ProcessingSettings(
        routing_mode=routing_mode,
        router_strategy=router_strategy,
        force_script=force_script,
        strict_script=strict_script,
        model=model,
        fallback_model=fallback_model,
        openrouter_model=openrouter_model,
        gemini_api_key=providers.GEMINI_API_KEY,
        openrouter_api_key=providers.OPENROUTER_API_KEY,
        low_temperature=low_temperature,
        max_tokens=max_tokens,
        enhance_image=enhance_image,
    )

    logger.info(
        f"[NEW REQUEST] files={len(sources)} mode={routing_mode.value}",
        extra={"trace_id": trace_id},
    )

    batch = await runner.run_batch(sources, settings)
    succeeded = sum(1 for o in batch.outcomes if o.status == Stage.DONE)

    response = OCRBatchResponse(
        batch_id=batch.batch_id,
        trace_id=trace_id,
        processing_time_seconds=round(time.time() - start_time, 3),
        succeeded=succeeded,
        failed=len(batch.outcomes) - succeeded,
        outcomes=batch.outcomes,
    )

    logger.info(
        f"[RESPONSE] batch_id={response.batch_id} succeeded={succeeded} failed={response.failed}",
        extra={"trace_id": trace_id, "batch_id": batch.batch_id},
    )
    return response
