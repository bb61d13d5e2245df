"""Pydantic request/response schemas for API endpoints."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fidelocr.models.dto import FileOutcome


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details for HTTP APIs.

    See: https://www.rfc-editor.org/rfc/rfc7807
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary of the problem")
    status: int = Field(..., description="HTTP status code for this problem")
    detail: Optional[str] = Field(
        None, description="Human-readable explanation specific to this occurrence"
    )
    instance: Optional[str] = Field(None, description="Request path of this occurrence")

    # Extension members (allowed by RFC 7807)
    code: str = Field(..., description="Application-specific error code")
    category: str = Field(..., description="Error category (client_error, server_error, etc.)")
    retryable: bool = Field(default=False, description="Whether the request can be retried")
    trace_id: Optional[str] = Field(None, description="Trace ID for log correlation")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "type": "/errors/PAYLOAD_TOO_LARGE",
                "title": "File size exceeds maximum of 25MB",
                "status": 413,
                "detail": "Received 31.40MB",
                "instance": "/v1/ocr",
                "code": "PAYLOAD_TOO_LARGE",
                "category": "client_error",
                "retryable": False,
                "trace_id": "a1b2c3d4-e5f6-7890-abcd-ef1234567890",
            }
        }
    )


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    local_engine: bool = Field(..., description="Tesseract with Amharic data is available")
    cloud_providers: List[str] = Field(default_factory=list)


class OCRBatchResponse(BaseModel):
    """Outcome of one OCR request, index-aligned with the uploaded files."""

    batch_id: str
    trace_id: Optional[str] = None
    processing_time_seconds: float
    succeeded: int
    failed: int
    outcomes: List[FileOutcome]
