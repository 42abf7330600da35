"""Enrollment endpoints: list, get, execution logs, pause/resume/cancel."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.common import PaginationParams
from api.schemas.enrollment import (
    EnrollmentListResponse,
    EnrollmentResponse,
    ExecutionLogListResponse,
    ExecutionLogResponse,
)
from app.dependencies import get_db, get_organization_id
from core.utils import calculate_offset
from services.enrollment_service import EnrollmentService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["enrollments"])


@router.get("/", response_model=EnrollmentListResponse)
async def list_enrollments(
    pagination: PaginationParams = Depends(),
    workflow_id: Optional[str] = None,
    client_id: Optional[str] = None,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> EnrollmentListResponse:
    enrollments, total = await EnrollmentService(db).list_enrollments(
        organization_id,
        workflow_id=workflow_id,
        client_id=client_id,
        status=status_filter,
        offset=calculate_offset(pagination.page, pagination.per_page),
        limit=pagination.per_page,
    )
    return EnrollmentListResponse(
        enrollments=[EnrollmentResponse.model_validate(e) for e in enrollments],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )


@router.get("/{enrollment_id}", response_model=EnrollmentResponse)
async def get_enrollment(
    enrollment_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> EnrollmentResponse:
    enrollment = await EnrollmentService(db).get_or_404(enrollment_id, organization_id)
    return EnrollmentResponse.model_validate(enrollment)


@router.get("/{enrollment_id}/logs", response_model=ExecutionLogListResponse)
async def get_enrollment_logs(
    enrollment_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> ExecutionLogListResponse:
    """
    Execution history of the enrollment, oldest attempt first.
    """
    logs, total = await EnrollmentService(db).get_logs(enrollment_id, organization_id)
    return ExecutionLogListResponse(
        logs=[ExecutionLogResponse.model_validate(row) for row in logs],
        total=total,
    )


@router.post("/{enrollment_id}/pause", response_model=EnrollmentResponse)
async def pause_enrollment(
    enrollment_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> EnrollmentResponse:
    """
    Pause an active enrollment. Returns 409 while a step is executing
    or when the enrollment already ended.
    """
    enrollment = await EnrollmentService(db).pause(enrollment_id, organization_id)
    return EnrollmentResponse.model_validate(enrollment)


@router.post("/{enrollment_id}/resume", response_model=EnrollmentResponse)
async def resume_enrollment(
    enrollment_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> EnrollmentResponse:
    enrollment = await EnrollmentService(db).resume(enrollment_id, organization_id)
    return EnrollmentResponse.model_validate(enrollment)


@router.post("/{enrollment_id}/cancel", response_model=EnrollmentResponse)
async def cancel_enrollment(
    enrollment_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> EnrollmentResponse:
    enrollment = await EnrollmentService(db).cancel(enrollment_id, organization_id)
    return EnrollmentResponse.model_validate(enrollment)
