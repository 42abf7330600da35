"""Scheduler / dispatcher.

Each tick finds active enrollments whose ``next_execution_at`` has
passed and runs one step for each, with at most ``max_workers`` steps
in flight. Per enrollment the unit of work is:

    claim lease (own transaction)
    -> load enrollment + workflow
    -> run step through the executor (external calls, no writes)
    -> write execution log row
    -> apply outcome under the lease (CAS) + workflow rollups
    -> commit

The claim is a compare-and-swap on status, lease and the due time the
tick observed, and it stamps the enrollment with the tick time. So
overlapping ticks (several processes, or a slow tick still running
when the next starts) never run the same step twice, and one tick never
runs two steps of the same enrollment even when the first step leaves
it due again right away. A worker that
dies mid-step loses its lease after ``lease_seconds`` and the step is
picked up again.

A failure of one enrollment never aborts the batch.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import EnrollmentStatus, StepLogStatus, WorkflowStatus
from core.exceptions import LogWriteError, WorkflowEngineException
from core.logging_config import bind_enrollment_context, clear_enrollment_context
from core.utils import now_ms
from db.models.enrollment import Enrollment
from db.models.workflow import Workflow
from integrations.capabilities import Capabilities
from workflow.executor import StepExecutor
from workflow.log_writer import ExecutionLogEntry, ExecutionLogWriter
from workflow.retry_strategies import RetryStrategy
from workflow.rollups import WorkflowRollups
from workflow.state_machine import EnrollmentStateMachine, lease_free, not_dispatched_at

logger = logging.getLogger(__name__)

ACTIVE = EnrollmentStatus.ACTIVE.value
COMPLETED = EnrollmentStatus.COMPLETED.value
FAILED = EnrollmentStatus.FAILED.value


@dataclass
class TickResult:
    """Counters for one dispatcher pass."""
    due: int = 0
    claimed: int = 0
    advanced: int = 0
    completed: int = 0
    retrying: int = 0
    failed: int = 0
    paused: int = 0
    deferred: int = 0
    dropped: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class Dispatcher:
    """Runs due enrollment steps with bounded concurrency."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        capabilities: Capabilities,
        max_workers: int = 8,
        batch_size: int = 200,
        lease_seconds: float = 300,
        step_timeout: float = 30.0,
        retry_strategy: Optional[RetryStrategy] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.session_factory = session_factory
        self.max_workers = max(1, max_workers)
        self.batch_size = batch_size
        self.lease_ms = int(lease_seconds * 1000)
        self.clock = clock
        self.executor = StepExecutor(
            capabilities,
            step_timeout=step_timeout,
            retry_strategy=retry_strategy,
            clock=clock,
        )
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # ─── Tick ──────────────────────────────────────────────

    async def tick(self, now: Optional[int] = None) -> TickResult:
        """Run one step for every enrollment due at `now`."""
        now = now if now is not None else self.clock()
        result = TickResult()

        async with self.session_factory() as session:
            rows = await session.execute(
                select(Enrollment.id, Enrollment.next_execution_at)
                .where(
                    Enrollment.status == ACTIVE,
                    Enrollment.next_execution_at.is_not(None),
                    Enrollment.next_execution_at <= now,
                    not_dispatched_at(now),
                    lease_free(now),
                )
                .order_by(Enrollment.next_execution_at)
                .limit(self.batch_size)
            )
            due = [(row.id, row.next_execution_at) for row in rows.all()]

        result.due = len(due)
        if not due:
            return result

        semaphore = asyncio.Semaphore(self.max_workers)

        async def bounded(enrollment_id: str, due_at: int) -> Optional[str]:
            async with semaphore:
                return await self._process(enrollment_id, due_at, now)

        labels = await asyncio.gather(*(bounded(eid, due_at) for eid, due_at in due))

        for label in labels:
            if label is None:
                continue
            result.claimed += 1
            setattr(result, label, getattr(result, label) + 1)

        logger.info(
            "Dispatcher tick: %d due, %d claimed, %d completed, %d failed",
            result.due, result.claimed, result.completed, result.failed,
        )
        return result

    async def _process(self, enrollment_id: str, due_at: int, now: int) -> Optional[str]:
        """Claim and run one enrollment. Returns the TickResult counter to bump."""
        bind_enrollment_context(enrollment_id)
        try:
            try:
                async with self.session_factory() as session:
                    token = await EnrollmentStateMachine(session, self.clock).claim(
                        enrollment_id, now, self.lease_ms, expected_next=due_at
                    )
                    await session.commit()
            except SQLAlchemyError as exc:
                logger.error("Could not claim enrollment %s: %s", enrollment_id, exc)
                return "errors"

            if token is None:
                logger.debug("Enrollment %s claimed elsewhere or no longer due", enrollment_id)
                return None

            try:
                return await self._run_unit(enrollment_id, token, now)
            except LogWriteError as exc:
                # The step stays pending; it is retried on a later tick
                logger.warning("Deferring enrollment %s: %s", enrollment_id, exc)
                await self._release(enrollment_id, token)
                return "deferred"
            except Exception as exc:
                logger.error(
                    "Engine error on enrollment %s: %s", enrollment_id, exc, exc_info=True
                )
                await self._fail(enrollment_id, token, now, exc)
                return "errors"
        finally:
            clear_enrollment_context()

    async def _run_unit(self, enrollment_id: str, token: str, now: int) -> str:
        async with self.session_factory() as session:
            machine = EnrollmentStateMachine(session, self.clock)
            enrollment = await session.get(Enrollment, enrollment_id)
            if enrollment is None:
                return "dropped"
            if enrollment.status != ACTIVE or enrollment.lease_token != token:
                # Cancelled or paused between the claim and this load
                await machine.release(enrollment_id, token)
                await session.commit()
                logger.info("Enrollment %s is %s, step not run", enrollment_id, enrollment.status)
                return "dropped"
            workflow = await session.get(Workflow, enrollment.workflow_id)

            if workflow is None or workflow.status != WorkflowStatus.ACTIVE.value:
                applied = await machine.apply_outcome(
                    enrollment_id,
                    token,
                    machine.pause_values(now, enrollment.next_execution_at),
                )
                await session.commit()
                logger.info(
                    "Enrollment %s paused: workflow %s is not active",
                    enrollment_id, enrollment.workflow_id,
                )
                return "paused" if applied else "dropped"

            outcome = await self.executor.execute(enrollment, workflow, now)

            if outcome.writes_log:
                await ExecutionLogWriter(session).record(outcome.log_entry(enrollment, now))

            applied = await machine.apply_outcome(
                enrollment_id, token, outcome.enrollment_values(now)
            )
            if not applied:
                # Paused or cancelled while the step ran; the log row stays
                await machine.release(enrollment_id, token)
                await session.commit()
                logger.info(
                    "Outcome for enrollment %s dropped: status changed during step %s",
                    enrollment_id, outcome.step_id,
                )
                return "dropped"

            rollups = WorkflowRollups(session)
            if outcome.status == COMPLETED:
                await rollups.enrollment_completed(
                    workflow.id, max(0, now - enrollment.enrolled_at), now
                )
            elif outcome.status == FAILED:
                await rollups.enrollment_failed(workflow.id, now)
            await session.commit()

        if outcome.status == COMPLETED:
            return "completed"
        if outcome.status == FAILED:
            return "failed"
        if outcome.log_status == StepLogStatus.RETRYING:
            return "retrying"
        return "advanced"

    async def _release(self, enrollment_id: str, token: str) -> None:
        try:
            async with self.session_factory() as session:
                await EnrollmentStateMachine(session, self.clock).release(enrollment_id, token)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "Could not release lease on enrollment %s (expires on its own): %s",
                enrollment_id, exc,
            )

    async def _fail(self, enrollment_id: str, token: str, now: int, error: Exception) -> None:
        """Record an engine error and mark the enrollment failed."""
        try:
            async with self.session_factory() as session:
                enrollment = await session.get(Enrollment, enrollment_id)
                if enrollment is None:
                    return
                machine = EnrollmentStateMachine(session, self.clock)
                await ExecutionLogWriter(session).record(
                    ExecutionLogEntry(
                        organization_id=enrollment.organization_id,
                        workflow_id=enrollment.workflow_id,
                        enrollment_id=enrollment.id,
                        client_id=enrollment.client_id,
                        step_id=enrollment.current_step,
                        action="engine",
                        status=StepLogStatus.FAILED,
                        executed_at=now,
                        attempt=(enrollment.attempt_count or 0) + 1,
                        message="Engine error while running step",
                        error=f"{type(error).__name__}: {error}",
                    )
                )
                applied = await machine.apply_outcome(
                    enrollment_id,
                    token,
                    {"status": FAILED, "failed_at": now, "next_execution_at": None},
                )
                if applied:
                    await WorkflowRollups(session).enrollment_failed(enrollment.workflow_id, now)
                else:
                    await machine.release(enrollment_id, token)
                await session.commit()
        except (SQLAlchemyError, WorkflowEngineException) as exc:
            logger.error(
                "Could not mark enrollment %s failed (lease expires on its own): %s",
                enrollment_id, exc,
            )

    # ─── Loop ──────────────────────────────────────────────

    async def run_forever(self, interval: float, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick every `interval` seconds until `stop_event` is set."""
        stop_event = stop_event or asyncio.Event()
        self._stop_event = stop_event
        logger.info(
            "Dispatcher loop started (interval=%ss, max_workers=%d)",
            interval, self.max_workers,
        )
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Dispatcher tick failed: %s", exc, exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Dispatcher loop stopped")

    def start(self, interval: float) -> asyncio.Task:
        """Run the loop as a background task on the current event loop."""
        if self._task is None or self._task.done():
            self._stop_event = asyncio.Event()
            self._task = asyncio.create_task(self.run_forever(interval, self._stop_event))
        return self._task

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


# ─── Singleton ─────────────────────────────────────────────────

_dispatcher: Optional[Dispatcher] = None


def get_dispatcher() -> Dispatcher:
    """Get or create the process-wide dispatcher from settings."""
    global _dispatcher
    if _dispatcher is None:
        from app.config import get_settings
        from db.database import AsyncSessionLocal
        from integrations.capabilities import get_capabilities

        settings = get_settings()
        _dispatcher = Dispatcher(
            AsyncSessionLocal,
            get_capabilities(),
            max_workers=settings.SCHEDULER_MAX_WORKERS,
            batch_size=settings.SCHEDULER_BATCH_SIZE,
            lease_seconds=settings.CLAIM_LEASE_SECONDS,
            step_timeout=settings.STEP_TIMEOUT_SECONDS,
            retry_strategy=RetryStrategy.fixed(
                max_attempts=settings.STEP_MAX_ATTEMPTS,
                delay=settings.STEP_RETRY_DELAY_SECONDS,
            ),
        )
    return _dispatcher
