"""Schemas shared by the workflow, enrollment and event endpoints."""

from typing import Optional

from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    """Query parameters of the paginated list endpoints."""

    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    per_page: int = Field(default=20, ge=1, le=100, description="Items per page (max 100)")


class ErrorResponse(BaseModel):
    """Body of every engine error response (404, 409, 422)."""

    detail: str = Field(description="Human-readable error message")
    error_code: str = Field(description="Exception class, e.g. InvalidTransitionError")
    request_id: Optional[str] = Field(default=None, description="X-Request-ID of the failed request")
