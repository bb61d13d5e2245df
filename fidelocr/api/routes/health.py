from fastapi import APIRouter, Depends

from fidelocr.api.dependencies import get_pipeline_runner, get_providers
from fidelocr.api.schemas import HealthResponse
from fidelocr.core.settings import ProviderSettings, get_app_settings
from fidelocr.models.dto import Provider
from fidelocr.orchestrator import PipelineRunner

router = APIRouter()

SERVICE_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(
    runner: PipelineRunner = Depends(get_pipeline_runner),
    providers: ProviderSettings = Depends(get_providers),
):
    local_ready = await runner.local_adapter.is_ready()
    cloud = []
    if providers.GEMINI_API_KEY is not None:
        cloud.append(Provider.GEMINI.value)
    if providers.OPENROUTER_API_KEY is not None:
        cloud.append(Provider.OPENROUTER.value)

    return HealthResponse(
        status="healthy" if local_ready or cloud else "degraded",
        service=get_app_settings().APP_NAME,
        version=SERVICE_VERSION,
        local_engine=local_ready,
        cloud_providers=cloud,
    )
