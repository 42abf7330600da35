"""Workflow schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.constants import WorkflowStatus, WorkflowTrigger


class WorkflowCreate(BaseModel):
    """Request to create a workflow."""

    name: str = Field(min_length=1, description="Workflow name")
    description: Optional[str] = Field(default="", description="Workflow description")
    directory_id: Optional[str] = Field(default=None, description="Optional grouping folder")
    trigger: WorkflowTrigger = Field(description="Business event kind that starts the workflow")
    conditions: List[Dict[str, Any]] = Field(default=[], description="Enrollment conditions (all must hold)")
    actions: List[Dict[str, Any]] = Field(default=[], description="Ordered workflow actions")
    prevent_duplicates: bool = Field(default=True, description="Refuse re-enrollment inside the window")
    duplicate_prevention_days: Optional[int] = Field(default=None, ge=0, description="Duplicate window in days")
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT, description="Initial lifecycle status")


class WorkflowUpdate(BaseModel):
    """Request to update a workflow definition."""

    name: Optional[str] = Field(default=None, min_length=1, description="Workflow name")
    description: Optional[str] = Field(default=None, description="Workflow description")
    directory_id: Optional[str] = Field(default=None, description="Optional grouping folder")
    trigger: Optional[WorkflowTrigger] = Field(default=None, description="Trigger kind")
    conditions: Optional[List[Dict[str, Any]]] = Field(default=None, description="Enrollment conditions")
    actions: Optional[List[Dict[str, Any]]] = Field(default=None, description="Ordered workflow actions")
    prevent_duplicates: Optional[bool] = Field(default=None)
    duplicate_prevention_days: Optional[int] = Field(default=None, ge=0)


class WorkflowStatusUpdate(BaseModel):
    """Request to change a workflow's lifecycle status."""

    status: WorkflowStatus


class WorkflowResponse(BaseModel):
    """Workflow information response."""

    id: str = Field(description="Workflow ID")
    organization_id: str
    directory_id: Optional[str] = None
    name: str = Field(description="Workflow name")
    description: str = Field(description="Workflow description")
    status: str = Field(description="Lifecycle status (draft, active, inactive, archived)")
    trigger: str
    conditions: List[Dict[str, Any]]
    actions: List[Dict[str, Any]]
    prevent_duplicates: bool
    duplicate_prevention_days: int
    total_runs: int
    successful_runs: int
    failed_runs: int
    average_execution_time: float
    last_run: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkflowListResponse(BaseModel):
    """Paginated list of workflows."""

    workflows: List[WorkflowResponse] = Field(description="List of workflows")
    total: int = Field(description="Total number of workflows")
    page: int = Field(description="Current page number")
    per_page: int = Field(description="Items per page")


class WorkflowStatsResponse(BaseModel):
    """Rollup counters and enrollment counts by status."""

    workflow_id: str
    total_runs: int
    successful_runs: int
    failed_runs: int
    average_execution_time: float
    last_run: Optional[int] = None
    enrollments: Dict[str, int]


class ManualEnrollRequest(BaseModel):
    """Request to enroll a client by hand."""

    client_id: str = Field(min_length=1)
    facts: Dict[str, Any] = Field(default={}, description="Client facts snapshot for merge tags")


class WorkflowTestRequest(BaseModel):
    """Dry run input: event facts and, optionally, a real client to check against."""

    client_id: Optional[str] = Field(default=None, description="Merge the client's current facts and check the duplicate guard")
    facts: Dict[str, Any] = Field(default={}, description="Event facts, e.g. appointmentType")


class ConditionResult(BaseModel):
    field: Optional[str] = None
    operator: Optional[str] = None
    value: Optional[str] = None
    met: bool


class WorkflowTestResponse(BaseModel):
    """What the workflow would do. Nothing was sent or written."""

    workflow_id: str
    active: bool
    conditions_met: bool
    conditions: List[ConditionResult]
    duplicate_allowed: Optional[bool] = None
    would_enroll: bool
    steps: List[Dict[str, Any]]
