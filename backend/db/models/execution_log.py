"""ExecutionLog model for the clinic workflow engine."""

from typing import Optional

from sqlalchemy import JSON, BigInteger, ForeignKey, Index, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class ExecutionLog(BaseModel):
    """One row per step attempt. Rows are append-only.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning organization
        workflow_id: Workflow the step belongs to
        enrollment_id: Foreign key to Enrollment
        client_id: CRM client id
        step_id: Action id, None for engine-level failures with no step
        action: Action type (send_sms, delay, ...)
        status: executed, failed, skipped or retrying
        executed_at: Epoch ms of the attempt
        duration_ms: Wall time spent in the step
        attempt: 1-based attempt number of this step
        message: Human readable summary
        error: Error detail when the attempt did not succeed
        meta: Step-specific details (provider ids, branch taken, ...)
    """

    __tablename__ = "execution_logs"
    __table_args__ = (
        Index("ix_execution_logs_enrollment_time", "enrollment_id", "executed_at"),
    )

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    workflow_id: Mapped[str] = mapped_column(nullable=False, index=True)
    enrollment_id: Mapped[str] = mapped_column(
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id: Mapped[str] = mapped_column(nullable=False, index=True)
    step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    action: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(nullable=False, index=True)
    executed_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    duration_ms: Mapped[int] = mapped_column(default=0)
    attempt: Mapped[int] = mapped_column(default=1)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)


@event.listens_for(ExecutionLog, "before_update")
def _reject_log_update(mapper, connection, target):
    raise ValueError(f"ExecutionLog {target.id} is append-only and cannot be updated")


@event.listens_for(ExecutionLog, "before_delete")
def _reject_log_delete(mapper, connection, target):
    raise ValueError(f"ExecutionLog {target.id} is append-only and cannot be deleted")
