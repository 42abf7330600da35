"""Business event schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.constants import EventKind


class EventRequest(BaseModel):
    """A business event published by the CRM."""

    kind: EventKind = Field(description="Event kind")
    client_id: str = Field(min_length=1)
    appointment_id: Optional[str] = None
    appointment_type: Optional[str] = Field(default=None, description="Appointment title or type as booked")
    appointment_end_time: Optional[int] = Field(default=None, description="Epoch ms")
    payload: Dict[str, Any] = Field(default={}, description="Client/appointment snapshot")


class RoutingResponse(BaseModel):
    """What routing the event did."""

    kind: str
    organization_id: str
    client_id: str
    matched_workflows: List[str]
    enrollment_ids: List[str]
    skipped: Dict[str, str]
    duplicate_event: bool
