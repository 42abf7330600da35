"""Workflow model for the clinic workflow engine."""

from typing import Optional

from sqlalchemy import JSON, BigInteger, Index
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import WorkflowStatus
from db.base import BaseModel


class Workflow(BaseModel):
    """Workflow model: a trigger, AND-ed conditions and ordered actions.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Owning organization (tenant)
        directory_id: Optional grouping folder
        name: Workflow name
        description: Workflow description
        status: draft, active, inactive or archived
        trigger: Event kind the workflow listens for
        conditions: JSON list of {field, operator, value} clauses
        actions: JSON list of {id, type, order, config, post_delay} steps
        prevent_duplicates: Whether the duplicate-enrollment guard applies
        duplicate_prevention_days: Guard lookback window in days
        total_runs: Enrollments created
        successful_runs: Enrollments completed
        failed_runs: Enrollments failed
        average_execution_time: Mean enrollment duration (ms) of completed runs
        last_run: Epoch ms of the most recent enrollment end
    """

    __tablename__ = "workflows"
    __table_args__ = (
        Index("ix_workflows_org_status_trigger", "organization_id", "status", "trigger"),
    )

    organization_id: Mapped[str] = mapped_column(nullable=False, index=True)
    directory_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    status: Mapped[str] = mapped_column(
        default=WorkflowStatus.DRAFT.value, index=True
    )
    trigger: Mapped[str] = mapped_column(nullable=False, index=True)
    conditions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    prevent_duplicates: Mapped[bool] = mapped_column(default=True)
    duplicate_prevention_days: Mapped[int] = mapped_column(default=30)

    # Rollups
    total_runs: Mapped[int] = mapped_column(default=0)
    successful_runs: Mapped[int] = mapped_column(default=0)
    failed_runs: Mapped[int] = mapped_column(default=0)
    average_execution_time: Mapped[float] = mapped_column(default=0.0)
    last_run: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
