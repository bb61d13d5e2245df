"""Exception hierarchy for Fidel OCR.

Every failure the pipeline can attribute to a file derives from BaseError and
carries a stable error code, a category and an RFC 7807 representation. The
orchestrator maps these onto per-file failure reasons; the HTTP layer maps
them onto problem responses.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Error categories for classification and monitoring."""

    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    EXTERNAL_SERVICE = "external_service"
    VALIDATION = "validation"


class BaseError(Exception):
    """Base exception for all Fidel OCR errors.

    Attributes:
        message: Human-readable error message
        error_code: Application-specific error code
        category: Error category for classification
        http_status: HTTP status code to return
        details: Additional context (dict)
        retryable: Whether the operation can be retried
    """

    def __init__(
        self,
        message: str,
        error_code: str,
        category: ErrorCategory,
        http_status: int,
        details: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.category = category
        self.http_status = http_status
        self.details = details or {}
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Convert to RFC 7807 Problem Details format."""
        return {
            "type": f"/errors/{self.error_code}",
            "title": self.message,
            "status": self.http_status,
            "code": self.error_code,
            "detail": self.details.get("detail"),
            "category": self.category.value,
            "retryable": self.retryable,
        }


class ClientError(BaseError):
    """Base for errors caused by the submitted input (4xx). Not retryable."""

    def __init__(self, message: str, error_code: str, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            category=kwargs.pop("category", ErrorCategory.CLIENT_ERROR),
            http_status=kwargs.pop("http_status", 400),
            retryable=False,
            **kwargs,
        )


class SourceUnavailableError(ClientError):
    """File bytes could not be materialised (missing, empty or undecodable)."""

    def __init__(self, file_id: str, detail: Optional[str] = None):
        super().__init__(
            message="Source file is unavailable",
            error_code="SOURCE_UNAVAILABLE",
            http_status=422,
            details={"file_id": file_id, "detail": detail},
        )


class UnsupportedFormatError(ClientError):
    """The file encoding cannot be normalised for the cloud vision path.

    Args:
        mime_type: Declared or detected MIME type
        detail: Why the conversion was impossible
    """

    def __init__(self, mime_type: str, detail: Optional[str] = None):
        super().__init__(
            message=f"Unsupported format for vision processing: {mime_type}",
            error_code="UNSUPPORTED_FORMAT",
            http_status=415,
            details={"mime_type": mime_type, "detail": detail},
        )


class MissingCredentialsError(ClientError):
    """Cloud route required but no usable provider credential was supplied."""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(
            message="No cloud provider credential configured",
            error_code="MISSING_CREDENTIALS",
            http_status=401,
            details={"detail": detail},
        )


class SchemaValidationError(ClientError):
    """Model output could not be coerced into the result schema."""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(
            message="Model output failed schema validation",
            error_code="SCHEMA_VALIDATION_FAILURE",
            category=ErrorCategory.VALIDATION,
            http_status=422,
            details={"detail": detail},
        )


class ScriptMismatchError(ClientError):
    """Output lacks target-script characters although the script was pinned."""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(
            message="Output does not contain the expected script",
            error_code="SCRIPT_MISMATCH",
            category=ErrorCategory.VALIDATION,
            http_status=422,
            details={"detail": detail},
        )


class ProcessingCancelledError(ClientError):
    """The batch was cancelled before this file finished."""

    def __init__(self, file_id: Optional[str] = None):
        super().__init__(
            message="Processing cancelled",
            error_code="CANCELLED",
            http_status=499,
            details={"file_id": file_id},
        )


class PayloadTooLargeError(ClientError):
    """Uploaded file exceeds the configured size limit."""

    def __init__(self, max_size_mb: int, actual_size_mb: float):
        super().__init__(
            message=f"File size exceeds maximum of {max_size_mb}MB",
            error_code="PAYLOAD_TOO_LARGE",
            http_status=413,
            details={
                "max_size_mb": max_size_mb,
                "actual_size_mb": round(actual_size_mb, 2),
                "detail": f"Received {actual_size_mb:.2f}MB",
            },
        )


class ServerError(BaseError):
    """Base for server errors (5xx)."""

    def __init__(self, message: str, error_code: str, **kwargs):
        super().__init__(
            message=message,
            error_code=error_code,
            category=kwargs.pop("category", ErrorCategory.SERVER_ERROR),
            http_status=kwargs.pop("http_status", 500),
            retryable=kwargs.pop("retryable", False),
            **kwargs,
        )


class ExternalServiceError(ServerError):
    """External provider failure (502 Bad Gateway / 504 Gateway Timeout).

    Raised when a vision provider or the local engine fails or times out.

    Args:
        service_name: Name of the external service
        error_type: Type of error ("timeout", "unavailable", "error",
            "rate_limit", "empty_response")
        details: Additional error context
    """

    def __init__(self, service_name: str, error_type: str, **kwargs):
        if error_type == "timeout":
            http_status = 504
        elif error_type == "rate_limit":
            http_status = 429
        else:
            http_status = 502

        additional_details = kwargs.pop("details", {})
        additional_details.update(
            {
                "service": service_name,
                "error_type": error_type,
            }
        )

        super().__init__(
            message=f"{service_name} service {error_type}",
            error_code=f"{service_name.upper()}_{error_type.upper()}",
            category=ErrorCategory.EXTERNAL_SERVICE,
            http_status=http_status,
            retryable=True,
            details=additional_details,
            **kwargs,
        )
        self.service_name = service_name
        self.error_type = error_type


class RateLimitedError(ExternalServiceError):
    """Provider signalled quota exhaustion (HTTP 429 or equivalent)."""

    def __init__(self, service_name: str, **kwargs):
        super().__init__(service_name, "rate_limit", **kwargs)


class EmptyResponseError(ExternalServiceError):
    """Provider answered but returned no usable text."""

    def __init__(self, service_name: str, **kwargs):
        super().__init__(service_name, "empty_response", **kwargs)


class LocalEngineError(ServerError):
    """The on-device OCR engine could not be started or crashed."""

    def __init__(self, detail: str):
        super().__init__(
            message="Local OCR engine failure",
            error_code="LOCAL_ENGINE_ERROR",
            details={"detail": detail},
        )


class AllRoutesFailedError(ServerError):
    """Every step of the fallback chain failed.

    Args:
        attempts: One entry per attempted step with provider, model and the
            error code that ended it
    """

    def __init__(self, attempts: list[dict[str, Any]]):
        super().__init__(
            message="All vision routes failed",
            error_code="ALL_ROUTES_FAILED",
            http_status=502,
            details={
                "attempts": attempts,
                "detail": "; ".join(
                    f"{a['provider']}/{a['model']}: {a['error_code']}" for a in attempts
                ),
            },
        )
        self.attempts = attempts
