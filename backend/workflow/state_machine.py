"""Enrollment lifecycle.

    active --(all steps done)--------> completed
    active --(unrecoverable failure)-> failed
    active --(pause)-----------------> paused --(resume)--> active
    active | paused --(cancel)-------> cancelled

completed, failed and cancelled are terminal.

Every write here is a compare-and-swap UPDATE: the WHERE clause
restates the state the change was decided on, and a zero rowcount means
another actor got there first. The dispatcher claims an enrollment with
a lease before running a step and applies the outcome only while it
still holds that lease and the enrollment is still active; operator
pauses wait for the lease to be free. That is how overlapping ticks,
operator actions and the trigger path stay out of each other's way.
"""

import logging
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import EnrollmentStatus, TERMINAL_ENROLLMENT_STATUSES
from core.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from core.utils import now_ms
from db.models.enrollment import Enrollment
from workflow.definitions import DelayAction, WorkflowPlan

logger = logging.getLogger(__name__)

ACTIVE = EnrollmentStatus.ACTIVE.value
PAUSED = EnrollmentStatus.PAUSED.value
COMPLETED = EnrollmentStatus.COMPLETED.value
CANCELLED = EnrollmentStatus.CANCELLED.value
FAILED = EnrollmentStatus.FAILED.value

ALLOWED_TRANSITIONS: dict[str, frozenset] = {
    ACTIVE: frozenset({COMPLETED, FAILED, PAUSED, CANCELLED}),
    PAUSED: frozenset({ACTIVE, CANCELLED}),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
    CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_ENROLLMENT_STATUSES


def initial_schedule(plan: WorkflowPlan, now: int) -> tuple[Optional[str], int]:
    """(current_step, next_execution_at) for a new enrollment.

    A leading delay is consumed at enrollment time: the enrollment
    starts on the action after it, due once the delay has elapsed.
    With no actions the enrollment is due immediately and completes on
    the first dispatcher pass.
    """
    first = plan.first()
    if first is None:
        return None, now
    if isinstance(first, DelayAction):
        following = plan.next_after(first.id)
        return (following.id if following else None), now + first.config.to_ms()
    return first.id, now


def lease_free(now: int):
    return or_(Enrollment.lease_token.is_(None), Enrollment.lease_expires_at < now)


def not_dispatched_at(now: int):
    return or_(Enrollment.last_dispatched_at.is_(None), Enrollment.last_dispatched_at < now)


class EnrollmentStateMachine:
    """Persisted state transitions for enrollments."""

    def __init__(self, session: AsyncSession, clock: Callable[[], int] = now_ms):
        self.session = session
        self.clock = clock

    # ─── Creation ──────────────────────────────────────────

    def start(
        self,
        workflow,
        client_id: str,
        reason: str,
        now: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Enrollment:
        """Add a new active enrollment for `client_id` to the session."""
        now = now if now is not None else self.clock()
        current_step, next_execution_at = initial_schedule(
            WorkflowPlan.from_workflow(workflow), now
        )
        enrollment = Enrollment(
            id=str(uuid4()),
            organization_id=workflow.organization_id,
            workflow_id=workflow.id,
            client_id=client_id,
            reason=reason,
            status=ACTIVE,
            current_step=current_step,
            next_execution_at=next_execution_at,
            enrolled_at=now,
            attempt_count=0,
            meta=metadata or {},
        )
        self.session.add(enrollment)
        return enrollment

    # ─── Dispatcher claim ──────────────────────────────────

    async def claim(
        self,
        enrollment_id: str,
        now: int,
        lease_ms: int,
        expected_next: Optional[int] = None,
    ) -> Optional[str]:
        """Take the exclusive lease on a due enrollment.

        `expected_next` is the ``next_execution_at`` the caller saw when
        it found the enrollment due; the claim fails if a step has run
        since. A claim also stamps ``last_dispatched_at`` with `now`, and
        an enrollment already claimed at `now` cannot be claimed again at
        the same tick time, so one tick runs at most one step of it.

        Returns the lease token, or None when the enrollment is no
        longer active, no longer due, already dispatched this tick, or
        leased by another worker.
        """
        token = uuid4().hex
        conditions = [
            Enrollment.id == enrollment_id,
            Enrollment.status == ACTIVE,
            Enrollment.next_execution_at.is_not(None),
            Enrollment.next_execution_at <= now,
            not_dispatched_at(now),
            lease_free(now),
        ]
        if expected_next is not None:
            conditions.append(Enrollment.next_execution_at == expected_next)
        result = await self.session.execute(
            update(Enrollment)
            .where(*conditions)
            .values(lease_token=token, lease_expires_at=now + lease_ms, last_dispatched_at=now)
            .execution_options(synchronize_session=False)
        )
        return token if result.rowcount == 1 else None

    async def release(self, enrollment_id: str, lease_token: str) -> None:
        await self.session.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment_id, Enrollment.lease_token == lease_token)
            .values(lease_token=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )

    async def apply_outcome(self, enrollment_id: str, lease_token: str, values: dict) -> bool:
        """Write a step outcome if the lease is still held and the enrollment still active.

        The lease is released in the same statement. Returns False when an
        operator paused or cancelled the enrollment meanwhile.
        """
        target = values.get("status", ACTIVE)
        if target != ACTIVE and not can_transition(ACTIVE, target):
            raise InvalidTransitionError(ACTIVE, target)
        result = await self.session.execute(
            update(Enrollment)
            .where(
                Enrollment.id == enrollment_id,
                Enrollment.lease_token == lease_token,
                Enrollment.status == ACTIVE,
            )
            .values(**values, lease_token=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ─── Operator actions ──────────────────────────────────

    async def pause(self, enrollment_id: str, organization_id: Optional[str] = None) -> Enrollment:
        """Pause an active enrollment. Pausing a paused one is a no-op."""
        enrollment = await self._load(enrollment_id, organization_id)
        if enrollment.status == PAUSED:
            return enrollment
        self._check(enrollment.status, PAUSED)

        now = self.clock()
        result = await self.session.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment.id, Enrollment.status == ACTIVE, lease_free(now))
            .values(
                status=PAUSED,
                paused_at=now,
                suspended_execution_at=Enrollment.next_execution_at,
                next_execution_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return await self._after_lost_race(enrollment, PAUSED, now)

        await self.session.refresh(enrollment)
        logger.info("Enrollment %s paused", enrollment.id)
        return enrollment

    async def resume(self, enrollment_id: str, organization_id: Optional[str] = None) -> Enrollment:
        """Resume a paused enrollment. Resuming an active one is a no-op.

        The parked due time is shifted by the time spent paused and
        never lands in the past.
        """
        enrollment = await self._load(enrollment_id, organization_id)
        if enrollment.status == ACTIVE:
            return enrollment
        self._check(enrollment.status, ACTIVE)

        now = self.clock()
        next_execution_at = self.resumed_due_time(enrollment, now)
        result = await self.session.execute(
            update(Enrollment)
            .where(
                Enrollment.id == enrollment.id,
                Enrollment.status == PAUSED,
                Enrollment.paused_at == enrollment.paused_at,
            )
            .values(
                status=ACTIVE,
                resumed_at=now,
                next_execution_at=next_execution_at,
                suspended_execution_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return await self._after_lost_race(enrollment, ACTIVE, now)

        await self.session.refresh(enrollment)
        logger.info("Enrollment %s resumed, next execution at %s", enrollment.id, next_execution_at)
        return enrollment

    async def cancel(self, enrollment_id: str, organization_id: Optional[str] = None) -> Enrollment:
        """Cancel an active or paused enrollment. Cancelling twice is a no-op.

        Cancellation does not wait for a held lease; a worker that is
        mid-step finds the enrollment no longer active and drops its
        outcome (the step's log row is kept).
        """
        enrollment = await self._load(enrollment_id, organization_id)
        if enrollment.status == CANCELLED:
            return enrollment
        self._check(enrollment.status, CANCELLED)

        now = self.clock()
        result = await self.session.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment.id, Enrollment.status.in_((ACTIVE, PAUSED)))
            .values(
                status=CANCELLED,
                cancelled_at=now,
                next_execution_at=None,
                suspended_execution_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return await self._after_lost_race(enrollment, CANCELLED, now)

        await self.session.refresh(enrollment)
        logger.info("Enrollment %s cancelled", enrollment.id)
        return enrollment

    # ─── Workflow-wide ─────────────────────────────────────

    async def pause_workflow(self, workflow_id: str) -> int:
        """Pause every idle active enrollment of a workflow.

        Enrollments leased by a worker at this moment are paused by the
        dispatcher on their next pass, once it sees the workflow inactive.
        """
        now = self.clock()
        result = await self.session.execute(
            update(Enrollment)
            .where(
                Enrollment.workflow_id == workflow_id,
                Enrollment.status == ACTIVE,
                lease_free(now),
            )
            .values(
                status=PAUSED,
                paused_at=now,
                suspended_execution_at=Enrollment.next_execution_at,
                next_execution_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def resume_workflow(self, workflow_id: str) -> int:
        """Resume every paused enrollment of a workflow."""
        rows = await self.session.execute(
            select(Enrollment)
            .where(
                Enrollment.workflow_id == workflow_id,
                Enrollment.status == PAUSED,
            )
            .execution_options(populate_existing=True)
        )
        resumed = 0
        for enrollment in rows.scalars().all():
            now = self.clock()
            result = await self.session.execute(
                update(Enrollment)
                .where(
                    Enrollment.id == enrollment.id,
                    Enrollment.status == PAUSED,
                    Enrollment.paused_at == enrollment.paused_at,
                )
                .values(
                    status=ACTIVE,
                    resumed_at=now,
                    next_execution_at=self.resumed_due_time(enrollment, now),
                    suspended_execution_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            resumed += result.rowcount
        return resumed

    # ─── Helpers ───────────────────────────────────────────

    @staticmethod
    def pause_values(now: int, next_execution_at: Optional[int]) -> dict:
        """Column values that park an active enrollment as paused."""
        return {
            "status": PAUSED,
            "paused_at": now,
            "suspended_execution_at": next_execution_at,
            "next_execution_at": None,
        }

    @staticmethod
    def resumed_due_time(enrollment: Enrollment, now: int) -> int:
        suspended = enrollment.suspended_execution_at
        if suspended is None:
            return now
        paused_for = max(0, now - (enrollment.paused_at or now))
        return max(now, suspended + paused_for)

    def _check(self, current: str, target: str) -> None:
        if not can_transition(current, target):
            raise InvalidTransitionError(current, target)

    async def _load(self, enrollment_id: str, organization_id: Optional[str]) -> Enrollment:
        query = select(Enrollment).where(Enrollment.id == enrollment_id).execution_options(
            populate_existing=True
        )
        if organization_id is not None:
            query = query.where(Enrollment.organization_id == organization_id)
        enrollment = (await self.session.execute(query)).scalar_one_or_none()
        if enrollment is None:
            raise NotFoundError(f"Enrollment {enrollment_id} not found")
        return enrollment

    async def _after_lost_race(self, enrollment: Enrollment, target: str, now: int) -> Enrollment:
        await self.session.refresh(enrollment)
        if enrollment.status == target:
            return enrollment
        if enrollment.status == ACTIVE and target == PAUSED and enrollment.lease_token and (
            enrollment.lease_expires_at or 0
        ) >= now:
            raise ConflictError(
                f"Enrollment {enrollment.id} is executing a step; retry the pause shortly"
            )
        raise InvalidTransitionError(enrollment.status, target)
