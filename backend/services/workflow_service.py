"""Workflow service: definitions, lifecycle status, manual enrollment, history and dry runs."""

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from core.constants import EnrollmentStatus, WorkflowStatus, WorkflowTrigger
from core.exceptions import ConflictError, ValidationError
from core.utils import now_ms
from db.models.enrollment import Enrollment
from db.models.execution_log import ExecutionLog
from db.models.workflow import Workflow
from integrations.capabilities import get_capabilities
from services.base import BaseService
from triggers.router import enroll
from workflow.conditions import evaluate
from workflow.definitions import WorkflowPlan, validate_definition
from workflow.facts import FactSheet
from workflow.guard import DuplicateEnrollmentGuard
from workflow.preview import explain_conditions, preview_steps
from workflow.rollups import WorkflowRollups
from workflow.state_machine import EnrollmentStateMachine

logger = logging.getLogger(__name__)

_STATUSES = {s.value for s in WorkflowStatus}
_TRIGGERS = {t.value for t in WorkflowTrigger}
_NULLABLE_FIELDS = {"directory_id"}


class WorkflowService(BaseService[Workflow]):
    """Service for workflow management."""

    def __init__(self, db: AsyncSession):
        super().__init__(Workflow, db)

    async def create_workflow(
        self,
        organization_id: str,
        name: str,
        trigger: str,
        conditions: Optional[list] = None,
        actions: Optional[list] = None,
        description: str = "",
        directory_id: Optional[str] = None,
        prevent_duplicates: bool = True,
        duplicate_prevention_days: Optional[int] = None,
        status: str = WorkflowStatus.DRAFT.value,
    ) -> Workflow:
        """Create a workflow after validating its definition.

        Raises:
            DefinitionError: invalid actions or conditions
            ValidationError: unknown trigger or status
        """
        self._check_trigger(trigger)
        self._check_status(status)
        validate_definition(actions, conditions)

        if duplicate_prevention_days is None:
            duplicate_prevention_days = get_settings().DEFAULT_DUPLICATE_PREVENTION_DAYS

        workflow = await self.create({
            "organization_id": organization_id,
            "name": name,
            "description": description,
            "directory_id": directory_id,
            "trigger": trigger,
            "conditions": list(conditions or []),
            "actions": list(actions or []),
            "prevent_duplicates": prevent_duplicates,
            "duplicate_prevention_days": duplicate_prevention_days,
            "status": status,
        })
        logger.info("Workflow %s created (%s, trigger=%s)", workflow.id, status, trigger)
        return workflow

    async def update_workflow(
        self,
        workflow_id: str,
        organization_id: str,
        data: dict[str, Any],
    ) -> Workflow:
        """Update the given definition fields. Status changes go through ``set_status``.

        Keys absent from `data` are left alone. ``None`` clears a nullable
        field (``directory_id``) and is ignored for required ones.
        """
        workflow = await self.get_or_404(workflow_id, organization_id)
        data = {
            k: v for k, v in data.items()
            if k != "status" and (v is not None or k in _NULLABLE_FIELDS)
        }

        if "trigger" in data:
            self._check_trigger(data["trigger"])
        if "actions" in data or "conditions" in data:
            validate_definition(
                data.get("actions", workflow.actions),
                data.get("conditions", workflow.conditions),
            )
        return await self.update(workflow.id, data, organization_id)

    async def set_status(self, workflow_id: str, organization_id: str, status: str) -> Workflow:
        """Change the lifecycle status.

        Leaving ``active`` pauses the workflow's enrollments; returning to
        ``active`` resumes the paused ones with their remaining wait.
        """
        self._check_status(status)
        workflow = await self.get_or_404(workflow_id, organization_id)
        previous = workflow.status
        if previous == status:
            return workflow

        workflow.status = status
        await self.db.flush()

        machine = EnrollmentStateMachine(self.db)
        if previous == WorkflowStatus.ACTIVE.value:
            paused = await machine.pause_workflow(workflow.id)
            logger.info("Workflow %s %s: paused %d enrollment(s)", workflow.id, status, paused)
        elif status == WorkflowStatus.ACTIVE.value:
            resumed = await machine.resume_workflow(workflow.id)
            logger.info("Workflow %s activated: resumed %d enrollment(s)", workflow.id, resumed)

        await self.db.refresh(workflow)
        return workflow

    async def enroll_client(
        self,
        workflow_id: str,
        organization_id: str,
        client_id: str,
        facts: Optional[dict] = None,
        reason: str = WorkflowTrigger.MANUAL.value,
    ) -> Enrollment:
        """Enroll a client by hand. Conditions are not evaluated; the duplicate guard is.

        Raises:
            ConflictError: workflow not active, or the guard refused
        """
        workflow = await self.get_or_404(workflow_id, organization_id)
        if workflow.status != WorkflowStatus.ACTIVE.value:
            raise ConflictError(f"Workflow {workflow.id} is {workflow.status}, not active")

        now = now_ms()
        enrollment = await enroll(
            self.db,
            workflow,
            client_id,
            reason,
            now,
            metadata={
                "trigger_type": WorkflowTrigger.MANUAL.value,
                "facts": FactSheet(dict(facts or {})).to_dict(),
            },
        )
        if enrollment is None:
            raise ConflictError(
                f"Client {client_id} is already enrolled in workflow {workflow.id}"
            )
        await WorkflowRollups(self.db).enrollment_started(workflow.id)
        await self.db.flush()
        await self.db.refresh(enrollment)
        logger.info("Client %s manually enrolled in workflow %s", client_id, workflow.id)
        return enrollment

    async def get_stats(self, workflow_id: str, organization_id: str) -> dict:
        """Rollup counters plus enrollment counts by status."""
        workflow = await self.get_or_404(workflow_id, organization_id)
        # Rollups are written with bulk UPDATEs that bypass the identity map
        await self.db.refresh(workflow)
        rows = await self.db.execute(
            select(Enrollment.status, func.count())
            .where(Enrollment.workflow_id == workflow.id)
            .group_by(Enrollment.status)
        )
        by_status = {s.value: 0 for s in EnrollmentStatus}
        by_status.update({status: count for status, count in rows.all()})
        return {
            "workflow_id": workflow.id,
            "total_runs": workflow.total_runs,
            "successful_runs": workflow.successful_runs,
            "failed_runs": workflow.failed_runs,
            "average_execution_time": workflow.average_execution_time,
            "last_run": workflow.last_run,
            "enrollments": by_status,
        }

    async def get_logs(
        self,
        workflow_id: str,
        organization_id: str,
        offset: int = 0,
        limit: int = 100,
    ) -> tuple[Sequence[ExecutionLog], int]:
        """Execution history across every enrollment of a workflow, newest first."""
        workflow = await self.get_or_404(workflow_id, organization_id)
        rows = await self.db.execute(
            select(ExecutionLog)
            .where(ExecutionLog.workflow_id == workflow.id)
            .order_by(ExecutionLog.executed_at.desc(), ExecutionLog.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        total = await self.db.execute(
            select(func.count())
            .select_from(ExecutionLog)
            .where(ExecutionLog.workflow_id == workflow.id)
        )
        return rows.scalars().all(), total.scalar() or 0

    async def test_workflow(
        self,
        workflow_id: str,
        organization_id: str,
        client_id: Optional[str] = None,
        facts: Optional[dict] = None,
        now: Optional[int] = None,
    ) -> dict:
        """Dry run: what an event with `facts` would do to this workflow.

        With a `client_id`, the client's current facts are fetched and
        the duplicate guard is consulted. Nothing is written and no
        message is sent.
        """
        workflow = await self.get_or_404(workflow_id, organization_id)
        now = now if now is not None else now_ms()

        sheet = FactSheet(dict(facts or {}))
        duplicate_allowed = None
        if client_id:
            fresh = await get_capabilities().clients.get_facts(organization_id, client_id)
            sheet = sheet.merged(fresh)
            if workflow.prevent_duplicates:
                duplicate_allowed = await DuplicateEnrollmentGuard(self.db).can_enroll(
                    organization_id,
                    workflow.id,
                    client_id,
                    workflow.duplicate_prevention_days,
                    now,
                )
            else:
                duplicate_allowed = True

        clauses = explain_conditions(workflow.conditions, sheet, now)
        conditions_met = evaluate(workflow.conditions or [], sheet, now)
        active = workflow.status == WorkflowStatus.ACTIVE.value

        return {
            "workflow_id": workflow.id,
            "active": active,
            "conditions_met": conditions_met,
            "conditions": clauses,
            "duplicate_allowed": duplicate_allowed,
            "would_enroll": active and conditions_met and duplicate_allowed is not False,
            "steps": preview_steps(WorkflowPlan.from_workflow(workflow), sheet, now),
        }

    @staticmethod
    def _check_trigger(trigger: str) -> None:
        if trigger not in _TRIGGERS:
            raise ValidationError(f"Unknown trigger '{trigger}'")

    @staticmethod
    def _check_status(status: str) -> None:
        if status not in _STATUSES:
            raise ValidationError(f"Unknown workflow status '{status}'")
