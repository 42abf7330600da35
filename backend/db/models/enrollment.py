"""Enrollment model for the clinic workflow engine."""

from typing import Optional

from sqlalchemy import JSON, BigInteger, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import EnrollmentStatus
from db.base import BaseModel


class Enrollment(BaseModel):
    """One client's participation in one workflow run.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning organization
        workflow_id: Foreign key to Workflow
        client_id: CRM client id
        reason: Why the client was enrolled (e.g. "appointment_completed_toxins")
        status: active, paused, completed, cancelled or failed
        current_step: Id of the pending action, None once no step remains
        next_execution_at: Epoch ms the enrollment is due; None unless active
        suspended_execution_at: Due time parked while the enrollment is paused
        enrolled_at / completed_at / paused_at / resumed_at /
        cancelled_at / failed_at: Lifecycle times (epoch ms)
        attempt_count: Failed attempts of the current step
        lease_token / lease_expires_at: Exclusive dispatcher claim
        last_dispatched_at: Tick time of the most recent claim; one step per tick
        meta: Event snapshot (facts, appointment id, trigger kind)
    """

    __tablename__ = "enrollments"
    __table_args__ = (
        Index("ix_enrollments_due", "status", "next_execution_at"),
        Index("ix_enrollments_workflow_client", "workflow_id", "client_id", "enrolled_at"),
    )

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[str] = mapped_column(nullable=False, index=True)
    reason: Mapped[str] = mapped_column(nullable=False, default="")
    status: Mapped[str] = mapped_column(
        default=EnrollmentStatus.ACTIVE.value, index=True
    )
    current_step: Mapped[Optional[str]] = mapped_column(nullable=True)
    next_execution_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True, index=True
    )
    suspended_execution_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    enrolled_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    completed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    paused_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    resumed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    cancelled_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    failed_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    attempt_count: Mapped[int] = mapped_column(default=0)
    lease_token: Mapped[Optional[str]] = mapped_column(nullable=True)
    lease_expires_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    last_dispatched_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
