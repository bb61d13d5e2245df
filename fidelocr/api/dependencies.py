"""FastAPI dependency injection functions."""

from fastapi import HTTPException, Request, status

from fidelocr.core.settings import ProviderSettings, get_provider_settings
from fidelocr.orchestrator import PipelineRunner


async def get_pipeline_runner(request: Request) -> PipelineRunner:
    """Get the pipeline runner from app state.

    Raises:
        HTTPException: 503 if the runner was not initialised
    """
    runner = getattr(request.app.state, "pipeline_runner", None)

    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="OCR pipeline unavailable",
        )

    return runner


def get_providers() -> ProviderSettings:
    return get_provider_settings()
