"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from fidelocr.api.error_handlers import (
    handle_app_error,
    handle_http_error,
    handle_unknown_error,
    handle_validation_error,
)
from fidelocr.api.middleware import trace_id_middleware
from fidelocr.api.routes import health, ocr
from fidelocr.core.exceptions import BaseError
from fidelocr.core.logging_config import configure_structured_logging
from fidelocr.core.settings import get_app_settings
from fidelocr.orchestrator import PipelineRunner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline runner once per process."""
    if getattr(app.state, "pipeline_runner", None) is None:
        app.state.pipeline_runner = PipelineRunner()
        logger.info("Pipeline runner ready")
    yield


def create_app(runner: PipelineRunner | None = None) -> FastAPI:
    settings = get_app_settings()
    configure_structured_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

    app = FastAPI(
        title="Fidel OCR API",
        version="0.1.0",
        description="Amharic/Ethiopic document recognition",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.pipeline_runner = runner

    # 1. Register Middleware
    app.middleware("http")(trace_id_middleware)

    # 2. Register Exception Handlers
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(BaseError, handle_app_error)
    app.add_exception_handler(Exception, handle_unknown_error)

    # Routes
    app.include_router(health.router)
    app.include_router(ocr.router)
    return app


app = create_app()
