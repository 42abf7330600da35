"""Appointment trigger audit schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AppointmentTriggerResponse(BaseModel):
    """One routed appointment event and what it started."""

    id: str
    appointment_id: str
    client_id: str
    trigger: str
    appointment_type: Optional[str] = None
    matched_workflows: List[str]
    enrollment_ids: List[str]
    triggered_at: int
    appointment_end_time: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="meta")

    class Config:
        from_attributes = True
        populate_by_name = True


class AppointmentTriggerListResponse(BaseModel):
    triggers: List[AppointmentTriggerResponse]
    total: int


class AppointmentTriggerStatsResponse(BaseModel):
    total_triggers: int
    triggers_by_type: Dict[str, int]
    total_enrollments: int
    recent_triggers: int = Field(description="Events routed in the last `days` days")
