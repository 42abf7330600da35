"""Business event intake: the CRM posts events here to trigger workflows."""

import logging

from fastapi import APIRouter, Depends, status

from api.schemas.event import EventRequest, RoutingResponse
from app.dependencies import get_organization_id, get_trigger_router
from triggers.events import BusinessEvent
from triggers.router import TriggerRouter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


@router.post("/", response_model=RoutingResponse, status_code=status.HTTP_202_ACCEPTED)
async def publish_event(
    request: EventRequest,
    organization_id: str = Depends(get_organization_id),
    router_: TriggerRouter = Depends(get_trigger_router),
) -> RoutingResponse:
    """
    Route one business event to the organization's matching workflows.

    Replaying an appointment event is harmless: the response has
    duplicate_event=true and nothing is enrolled.
    """
    event = BusinessEvent(
        kind=request.kind.value,
        organization_id=organization_id,
        client_id=request.client_id,
        payload=request.payload,
        appointment_id=request.appointment_id,
        appointment_type=request.appointment_type,
        appointment_end_time=request.appointment_end_time,
    )
    result = await router_.on_event(event)
    return RoutingResponse(**result.to_dict())
