"""AppointmentTrigger model for the clinic workflow engine."""

from typing import Optional

from sqlalchemy import JSON, BigInteger, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class AppointmentTrigger(BaseModel):
    """Audit record tying one appointment event to its downstream effects.

    The unique constraint on (organization, appointment, trigger) is
    what makes appointment events exactly-once: a replayed event finds
    the existing row and is ignored.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning organization
        appointment_id: CRM appointment id
        client_id: CRM client id
        trigger: Event kind (appointment_completed, appointment_scheduled)
        appointment_type: Service trigger derived from the appointment title
        matched_workflows: Ids of workflows whose trigger matched
        enrollment_ids: Ids of enrollments created for this event
        triggered_at: Epoch ms the event was routed
        appointment_end_time: Epoch ms the appointment ended, if known
        meta: Event payload snapshot
    """

    __tablename__ = "appointment_triggers"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "appointment_id", "trigger",
            name="uq_appointment_triggers_event",
        ),
    )

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    appointment_id: Mapped[str] = mapped_column(nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(nullable=False, index=True)
    trigger: Mapped[str] = mapped_column(nullable=False)
    appointment_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    matched_workflows: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    enrollment_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    triggered_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    appointment_end_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
