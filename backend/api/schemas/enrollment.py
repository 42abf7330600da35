"""Enrollment and execution log schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EnrollmentResponse(BaseModel):
    """One client's run through one workflow."""

    id: str
    organization_id: str
    workflow_id: str
    client_id: str
    reason: str
    status: str
    current_step: Optional[str] = None
    next_execution_at: Optional[int] = None
    enrolled_at: int
    completed_at: Optional[int] = None
    paused_at: Optional[int] = None
    resumed_at: Optional[int] = None
    cancelled_at: Optional[int] = None
    failed_at: Optional[int] = None
    attempt_count: int = 0
    metadata: Dict[str, Any] = Field(default={}, validation_alias="meta")

    class Config:
        from_attributes = True
        populate_by_name = True


class EnrollmentListResponse(BaseModel):
    enrollments: List[EnrollmentResponse]
    total: int
    page: int
    per_page: int


class ExecutionLogResponse(BaseModel):
    """One recorded step attempt."""

    id: str
    enrollment_id: str
    workflow_id: str
    client_id: str
    step_id: Optional[str] = None
    action: str
    status: str
    executed_at: int
    duration_ms: int
    attempt: int
    message: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")

    class Config:
        from_attributes = True
        populate_by_name = True


class ExecutionLogListResponse(BaseModel):
    logs: List[ExecutionLogResponse]
    total: int
