"""Workflow endpoints: CRUD, status changes, stats, logs, dry runs, manual enrollment."""

import logging

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.common import PaginationParams
from api.schemas.enrollment import EnrollmentResponse, ExecutionLogListResponse, ExecutionLogResponse
from api.schemas.workflow import (
    ManualEnrollRequest,
    WorkflowCreate,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowStatsResponse,
    WorkflowStatusUpdate,
    WorkflowTestRequest,
    WorkflowTestResponse,
    WorkflowUpdate,
)
from app.dependencies import get_db, get_organization_id
from core.utils import calculate_offset
from services.workflow_service import WorkflowService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["workflows"])


@router.get("/", response_model=WorkflowListResponse)
async def list_workflows(
    pagination: PaginationParams = Depends(),
    status_filter: str = None,
    trigger: str = None,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> WorkflowListResponse:
    """
    List workflows in the current organization (paginated).
    """
    svc = WorkflowService(db)
    offset = calculate_offset(pagination.page, pagination.per_page)

    workflows, total = await svc.list(
        organization_id=organization_id,
        offset=offset,
        limit=pagination.per_page,
        filters={"status": status_filter, "trigger": trigger},
    )

    return WorkflowListResponse(
        workflows=[WorkflowResponse.model_validate(wf) for wf in workflows],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreate,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Create a new workflow in the current organization.

    The definition is validated; invalid actions or conditions return 422.
    """
    svc = WorkflowService(db)
    wf = await svc.create_workflow(
        organization_id=organization_id,
        name=request.name,
        trigger=request.trigger.value,
        conditions=request.conditions,
        actions=request.actions,
        description=request.description or "",
        directory_id=request.directory_id,
        prevent_duplicates=request.prevent_duplicates,
        duplicate_prevention_days=request.duplicate_prevention_days,
        status=request.status.value,
    )
    return WorkflowResponse.model_validate(wf)


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Get workflow details by ID (org-scoped).
    """
    wf = await WorkflowService(db).get_or_404(workflow_id, organization_id)
    return WorkflowResponse.model_validate(wf)


@router.put("/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdate,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Update workflow fields. Use PUT /{workflow_id}/status for lifecycle changes.
    """
    update_data = request.model_dump(exclude_unset=True, mode="json")
    wf = await WorkflowService(db).update_workflow(workflow_id, organization_id, update_data)
    return WorkflowResponse.model_validate(wf)


@router.put("/{workflow_id}/status", response_model=WorkflowResponse)
async def set_workflow_status(
    workflow_id: str,
    request: WorkflowStatusUpdate,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> WorkflowResponse:
    """
    Change the lifecycle status.

    Deactivating pauses the workflow's enrollments; reactivating resumes them.
    """
    wf = await WorkflowService(db).set_status(workflow_id, organization_id, request.status.value)
    return WorkflowResponse.model_validate(wf)


@router.get("/{workflow_id}/stats", response_model=WorkflowStatsResponse)
async def get_workflow_stats(
    workflow_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> WorkflowStatsResponse:
    stats = await WorkflowService(db).get_stats(workflow_id, organization_id)
    return WorkflowStatsResponse(**stats)


@router.get("/{workflow_id}/logs", response_model=ExecutionLogListResponse)
async def get_workflow_logs(
    workflow_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> ExecutionLogListResponse:
    """
    Execution history across all enrollments of the workflow, newest first.
    """
    logs, total = await WorkflowService(db).get_logs(
        workflow_id, organization_id, offset=offset, limit=limit
    )
    return ExecutionLogListResponse(
        logs=[ExecutionLogResponse.model_validate(row) for row in logs],
        total=total,
    )


@router.post("/{workflow_id}/test", response_model=WorkflowTestResponse)
async def test_workflow(
    workflow_id: str,
    request: WorkflowTestRequest,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> WorkflowTestResponse:
    """
    Dry run: evaluate conditions and the duplicate guard, and preview the
    steps with rendered messages. Nothing is sent and nothing is stored.
    """
    result = await WorkflowService(db).test_workflow(
        workflow_id,
        organization_id,
        client_id=request.client_id,
        facts=request.facts,
    )
    return WorkflowTestResponse(**result)


@router.post(
    "/{workflow_id}/enrollments",
    response_model=EnrollmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def enroll_client(
    workflow_id: str,
    request: ManualEnrollRequest,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> EnrollmentResponse:
    """
    Enroll a client by hand. Returns 409 if the duplicate guard refuses.
    """
    enrollment = await WorkflowService(db).enroll_client(
        workflow_id,
        organization_id,
        request.client_id,
        facts=request.facts,
    )
    return EnrollmentResponse.model_validate(enrollment)
