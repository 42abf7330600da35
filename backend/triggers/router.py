"""Trigger router: turns business events into enrollments.

For each active workflow of the event's organization whose trigger
matches the event (see ``triggers_for_event``), the router evaluates the
workflow conditions against the event's FactSheet, applies the
duplicate-enrollment guard, and starts an enrollment. Everything for
one event commits in a single transaction.

Workflows are isolated from each other: each one is routed inside its
own SAVEPOINT, so an error on one workflow (database errors included)
rolls back only that workflow's work and the remaining ones are still
routed. The duplicate guard holds the workflow's enrollment lock until
the routing transaction commits, so concurrent events for the same
client cannot both pass it.

Appointment events are exactly-once. The AppointmentTrigger row is
unique per (organization, appointment, event kind); a replay either
finds it up front or hits the unique constraint at commit, in which
case the whole routing transaction rolls back.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import WorkflowStatus
from core.utils import now_ms
from db.database import begin_immediate
from db.models.appointment_trigger import AppointmentTrigger
from db.models.enrollment import Enrollment
from db.models.workflow import Workflow
from triggers.events import BusinessEvent, triggers_for_event
from workflow.conditions import evaluate
from workflow.facts import FactSheet, normalize_key
from workflow.guard import DuplicateEnrollmentGuard
from workflow.rollups import WorkflowRollups
from workflow.state_machine import EnrollmentStateMachine

logger = logging.getLogger(__name__)


@dataclass
class RoutingResult:
    """What routing one event did."""
    kind: str
    organization_id: str
    client_id: str
    matched_workflows: list[str] = field(default_factory=list)
    enrollment_ids: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    duplicate_event: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


async def enroll(
    session: AsyncSession,
    workflow: Workflow,
    client_id: str,
    reason: str,
    now: int,
    metadata: Optional[dict] = None,
    clock: Callable[[], int] = now_ms,
) -> Optional[Enrollment]:
    """Guard, then stage a new enrollment in the session.

    Shared by the router and manual enrollment. Returns None when the
    duplicate guard refuses. The caller bumps ``total_runs`` and commits.
    """
    if not await DuplicateEnrollmentGuard(session).permits(workflow, client_id, now):
        return None
    return EnrollmentStateMachine(session, clock).start(
        workflow, client_id, reason, now=now, metadata=metadata
    )


class TriggerRouter:
    """Routes business events to matching workflows."""

    def __init__(self, session_factory: async_sessionmaker, clock: Callable[[], int] = now_ms):
        self.session_factory = session_factory
        self.clock = clock

    async def on_event(self, event: BusinessEvent) -> RoutingResult:
        """Evaluate every matching workflow for `event` and create enrollments."""
        now = self.clock()
        result = RoutingResult(
            kind=event.kind,
            organization_id=event.organization_id,
            client_id=event.client_id,
        )
        triggers = triggers_for_event(event)
        facts = event.facts()

        async with self.session_factory() as session:
            await begin_immediate(session)
            if event.is_appointment_event and event.appointment_id:
                if await self._already_routed(session, event):
                    logger.info(
                        "Appointment %s (%s) already routed, ignoring replay",
                        event.appointment_id, event.kind,
                    )
                    result.duplicate_event = True
                    return result

            workflows = await self._candidate_workflows(session, event.organization_id, triggers)
            logger.info(
                "Routing %s for client %s: %d candidate workflow(s) for triggers %s",
                event.kind, event.client_id, len(workflows), triggers,
            )

            created: list[Enrollment] = []
            for workflow in workflows:
                try:
                    async with session.begin_nested():
                        enrollment = await self._route_workflow(
                            session, workflow, event, facts, now, result
                        )
                except Exception as exc:
                    logger.error(
                        "Routing %s to workflow %s failed: %s",
                        event.kind, workflow.id, exc, exc_info=True,
                    )
                    result.skipped[workflow.id] = "error"
                    continue
                if enrollment is not None:
                    result.enrollment_ids.append(enrollment.id)
                    created.append(enrollment)

            rollups = WorkflowRollups(session)
            for enrollment in created:
                await rollups.enrollment_started(enrollment.workflow_id)

            if event.is_appointment_event and event.appointment_id:
                session.add(
                    AppointmentTrigger(
                        organization_id=event.organization_id,
                        appointment_id=str(event.appointment_id),
                        client_id=event.client_id,
                        trigger=event.kind,
                        appointment_type=event.service_trigger,
                        matched_workflows=list(result.matched_workflows),
                        enrollment_ids=list(result.enrollment_ids),
                        triggered_at=now,
                        appointment_end_time=event.appointment_end_time,
                        meta=event.payload or None,
                    )
                )

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "Appointment %s (%s) routed concurrently elsewhere, discarding",
                    event.appointment_id, event.kind,
                )
                return RoutingResult(
                    kind=event.kind,
                    organization_id=event.organization_id,
                    client_id=event.client_id,
                    duplicate_event=True,
                )

        if result.enrollment_ids:
            logger.info(
                "Event %s for client %s created %d enrollment(s)",
                event.kind, event.client_id, len(result.enrollment_ids),
            )
        return result

    async def _route_workflow(
        self,
        session: AsyncSession,
        workflow: Workflow,
        event: BusinessEvent,
        facts: FactSheet,
        now: int,
        result: RoutingResult,
    ) -> Optional[Enrollment]:
        if not evaluate(workflow.conditions or [], facts, now):
            logger.debug("Workflow %s conditions not met for client %s", workflow.id, event.client_id)
            result.skipped[workflow.id] = "conditions"
            return None

        result.matched_workflows.append(workflow.id)

        reason = workflow.trigger
        if event.appointment_type:
            reason = f"{workflow.trigger}_{normalize_key(event.appointment_type)}"

        metadata = {
            "event": event.kind,
            "trigger_type": workflow.trigger,
            "facts": facts.to_dict(),
        }
        if event.appointment_id:
            metadata["appointment_id"] = event.appointment_id
            metadata["appointment_type"] = event.appointment_type

        enrollment = await enroll(
            session, workflow, event.client_id, reason, now,
            metadata=metadata, clock=self.clock,
        )
        if enrollment is None:
            result.skipped[workflow.id] = "duplicate"
            return None
        await session.flush()

        logger.info(
            "Enrolled client %s in workflow %s (enrollment %s)",
            event.client_id, workflow.id, enrollment.id,
        )
        return enrollment

    async def _candidate_workflows(
        self, session: AsyncSession, organization_id: str, triggers: list[str]
    ) -> list[Workflow]:
        # Locked in creation order so concurrent routers queue instead of deadlocking
        rows = await session.execute(
            select(Workflow)
            .where(
                Workflow.organization_id == organization_id,
                Workflow.status == WorkflowStatus.ACTIVE.value,
                Workflow.trigger.in_(triggers),
            )
            .order_by(Workflow.created_at)
            .with_for_update()
        )
        return list(rows.scalars().all())

    async def _already_routed(self, session: AsyncSession, event: BusinessEvent) -> bool:
        existing = await session.execute(
            select(AppointmentTrigger.id).where(
                AppointmentTrigger.organization_id == event.organization_id,
                AppointmentTrigger.appointment_id == str(event.appointment_id),
                AppointmentTrigger.trigger == event.kind,
            )
        )
        return existing.first() is not None


# ─── Singleton ─────────────────────────────────────────────────

_router: Optional[TriggerRouter] = None


def get_trigger_router() -> TriggerRouter:
    global _router
    if _router is None:
        from db.database import AsyncSessionLocal

        _router = TriggerRouter(AsyncSessionLocal)
    return _router
