"""Appointment trigger endpoints: recent routed events, lookup by appointment, stats."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.schemas.appointment_trigger import (
    AppointmentTriggerListResponse,
    AppointmentTriggerResponse,
    AppointmentTriggerStatsResponse,
)
from app.dependencies import get_db, get_organization_id
from services.appointment_trigger_service import AppointmentTriggerService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["appointment-triggers"])


@router.get("/", response_model=AppointmentTriggerListResponse)
async def list_recent_triggers(
    limit: int = Query(default=50, ge=1, le=500),
    client_id: Optional[str] = None,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> AppointmentTriggerListResponse:
    """
    Most recently routed appointment events, newest first.
    """
    triggers, total = await AppointmentTriggerService(db).get_recent(
        organization_id, limit=limit, client_id=client_id
    )
    return AppointmentTriggerListResponse(
        triggers=[AppointmentTriggerResponse.model_validate(t) for t in triggers],
        total=total,
    )


@router.get("/stats", response_model=AppointmentTriggerStatsResponse)
async def get_trigger_stats(
    days: int = Query(default=7, ge=1, le=365),
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> AppointmentTriggerStatsResponse:
    stats = await AppointmentTriggerService(db).get_stats(organization_id, recent_days=days)
    return AppointmentTriggerStatsResponse(**stats)


@router.get("/appointments/{appointment_id}", response_model=AppointmentTriggerListResponse)
async def get_appointment_triggers(
    appointment_id: str,
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> AppointmentTriggerListResponse:
    """
    Routed events of one appointment. 404 if the appointment was never routed.
    """
    triggers = await AppointmentTriggerService(db).get_by_appointment(organization_id, appointment_id)
    return AppointmentTriggerListResponse(
        triggers=[AppointmentTriggerResponse.model_validate(t) for t in triggers],
        total=len(triggers),
    )
