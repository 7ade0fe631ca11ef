"""Response envelopes shared by every endpoint."""

from datetime import datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field

from tastegraph.config.settings import settings

T = TypeVar("T")


class ResponseMetadata(BaseModel):
    """Metadata included in all API responses."""

    app_name: str = Field(default=settings.APP_NAME)
    app_version: str = Field(default=settings.APP_VERSION)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SuccessResponse(BaseModel, Generic[T]):
    """Generic success response with data and metadata."""

    success: bool = Field(default=True)
    message: str = Field(default="Operation completed successfully")
    data: T
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


class ErrorResponse(BaseModel):
    """Standard error response structure."""

    success: bool = Field(default=False)
    error: str
    detail: Optional[str] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list, description="Per-field validation problems")
    retry_after: Optional[int] = Field(default=None, description="Seconds to wait before retrying (429 only)")
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": False,
                "error": "Invalid recommendation request",
                "detail": "At least one entity is required",
                "errors": [{"field": "entities", "message": "At least one entity is required"}],
                "retry_after": None,
                "metadata": {
                    "app_name": "TasteGraph API",
                    "app_version": "1.0.0",
                    "timestamp": "2026-01-03T15:58:36Z",
                },
            }
        }
    }


def success_response(data: T, message: str = "Operation completed successfully") -> SuccessResponse[T]:
    """Create a success response."""
    return SuccessResponse(success=True, message=message, data=data)


def error_response(
    error: str,
    detail: Optional[str] = None,
    errors: Optional[List[Dict[str, Any]]] = None,
    retry_after: Optional[int] = None,
) -> ErrorResponse:
    """Create an error response."""
    return ErrorResponse(
        success=False,
        error=error,
        detail=detail,
        errors=errors or [],
        retry_after=retry_after,
    )
