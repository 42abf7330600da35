"""Business events delivered to the trigger router.

Events come from the CRM's client and appointment subsystems, either
through ``POST /api/v1/events``, the Redis event bus, or a direct call.

Event payload:
{
    "kind": "appointment_completed",
    "organization_id": "org_1",
    "client_id": "client_42",
    "appointment_id": "appt_9",            # appointment events only
    "appointment_type": "Botox follow-up", # title or type as booked
    "appointment_end_time": 1718000000000,
    "payload": { "firstName": "Ana", "tags": ["vip"], ... }
}
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from core.constants import EventKind, WorkflowTrigger
from workflow.facts import FactSheet

APPOINTMENT_EVENTS = frozenset({
    EventKind.APPOINTMENT_COMPLETED.value,
    EventKind.APPOINTMENT_SCHEDULED.value,
})

# Appointment title keywords -> service trigger, first match wins
SERVICE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    (WorkflowTrigger.MORPHEUS8.value, ("morpheus8", "morpheus")),
    (WorkflowTrigger.TOXINS.value, ("botox", "toxin", "neurotoxin", "wrinkle treatment")),
    (WorkflowTrigger.FILLER.value, ("filler", "dermal", "juvederm", "restylane")),
    (WorkflowTrigger.CONSULTATION.value, ("consultation", "consult", "initial")),
]


def service_trigger_for(text: Optional[str]) -> Optional[str]:
    """Map an appointment title/type to a service trigger, e.g. "Botox follow-up" -> "toxins"."""
    if not text:
        return None
    lowered = str(text).lower()
    for trigger, keywords in SERVICE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return trigger
    return None


@dataclass
class BusinessEvent:
    """One business fact the router evaluates workflows against."""
    kind: str
    organization_id: str
    client_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    appointment_id: Optional[str] = None
    appointment_type: Optional[str] = None
    appointment_end_time: Optional[int] = None
    occurred_at: Optional[int] = None

    @property
    def is_appointment_event(self) -> bool:
        return self.kind in APPOINTMENT_EVENTS

    @property
    def service_trigger(self) -> Optional[str]:
        """Service trigger derived from the appointment title, if any."""
        if not self.is_appointment_event:
            return None
        text = self.appointment_type
        if not text:
            facts = self.facts()
            text = facts.get("appointment_type") or facts.get("appointment_title")
        return service_trigger_for(text)

    def facts(self) -> FactSheet:
        """FactSheet over the payload, including nested client/appointment snapshots."""
        payload = self.payload or {}
        client = payload.get("client") if isinstance(payload.get("client"), dict) else None
        appointment = payload.get("appointment") if isinstance(payload.get("appointment"), dict) else None
        sheet = FactSheet.from_payload(payload, client=client, appointment=appointment)
        values = sheet.to_dict()
        values.setdefault("client_id", self.client_id)
        if self.appointment_id:
            values.setdefault("appointment_id", self.appointment_id)
        if self.appointment_type:
            values.setdefault("appointment_type", self.appointment_type)
        if self.appointment_end_time is not None:
            values.setdefault("appointment_end_time", self.appointment_end_time)
        return FactSheet(values)

    @classmethod
    def from_dict(cls, data: dict) -> "BusinessEvent":
        """Build from a wire dict. camelCase keys are accepted."""
        def pick(*keys):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        kind = pick("kind", "type", "event")
        organization_id = pick("organization_id", "organizationId", "org_id")
        client_id = pick("client_id", "clientId")
        if not kind or not organization_id or not client_id:
            raise ValueError("Event requires kind, organization_id and client_id")

        return cls(
            kind=str(kind),
            organization_id=str(organization_id),
            client_id=str(client_id),
            payload=dict(pick("payload", "data") or {}),
            appointment_id=pick("appointment_id", "appointmentId"),
            appointment_type=pick("appointment_type", "appointmentType", "appointment_title"),
            appointment_end_time=pick("appointment_end_time", "appointmentEndTime"),
            occurred_at=pick("occurred_at", "occurredAt"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def triggers_for_event(event: BusinessEvent) -> list[str]:
    """Workflow triggers an event matches.

    Completed appointments also fire the service trigger of their type.
    """
    triggers = [event.kind]
    if event.kind == EventKind.APPOINTMENT_COMPLETED.value:
        service = event.service_trigger
        if service:
            triggers.append(service)
    return triggers
