"""Tests for the scheduler / dispatcher."""

import asyncio

import pytest
from sqlalchemy import select, update

from core.constants import MS_PER_DAY, MS_PER_MINUTE
from core.exceptions import TransientProviderError
from db.models.enrollment import Enrollment
from db.models.execution_log import ExecutionLog
from db.models.workflow import Workflow
from triggers.events import BusinessEvent
from triggers.router import TriggerRouter
from workflow.dispatcher import Dispatcher
from workflow.retry_strategies import RetryStrategy
from workflow.state_machine import EnrollmentStateMachine

ORG_ID = "org-test"

SMS = {"id": "sms", "type": "send_sms", "order": 2, "config": {"message": "Hi {{first_name}}, how are you feeling?"}}
TAG = {"id": "tag", "type": "tag", "order": 1, "config": {"tag": "treated"}}
NOTE = {"id": "note", "type": "add_note", "order": 3, "config": {"content": "Follow-up sent"}}


@pytest.fixture
def dispatcher(session_factory, capabilities, clock):
    return Dispatcher(
        session_factory,
        capabilities,
        max_workers=4,
        lease_seconds=60,
        step_timeout=1.0,
        retry_strategy=RetryStrategy.fixed(max_attempts=3, delay=300),
        clock=clock,
    )


async def enroll(session_factory, workflow, clock, client_id="client-1"):
    async with session_factory() as session:
        enrollment = EnrollmentStateMachine(session, clock).start(workflow, client_id, "test")
        await session.commit()
    return enrollment


async def load(session_factory, model, id):
    async with session_factory() as session:
        return await session.get(model, id)


async def logs_for(session_factory, enrollment_id):
    async with session_factory() as session:
        rows = await session.execute(
            select(ExecutionLog)
            .where(ExecutionLog.enrollment_id == enrollment_id)
            .order_by(ExecutionLog.executed_at, ExecutionLog.created_at)
        )
        return list(rows.scalars().all())


@pytest.mark.integration
class TestRoundTrip:

    async def test_toxins_follow_up_after_one_day(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        wf = await make_workflow(
            trigger="toxins",
            actions=[
                {"id": "wait", "type": "delay", "order": 1, "config": {"value": 1440, "unit": "minutes"}},
                SMS,
            ],
        )
        router = TriggerRouter(session_factory, clock=clock)
        routed = await router.on_event(BusinessEvent(
            kind="appointment_completed",
            organization_id=ORG_ID,
            client_id="client-1",
            appointment_id="appt-1",
            appointment_type="Botox Touch-up",
        ))
        assert len(routed.enrollment_ids) == 1
        enrollment_id = routed.enrollment_ids[0]

        # Nothing is due before the delay elapses
        early = await dispatcher.tick()
        assert early.due == 0
        assert capabilities.messaging.sent == []

        clock.advance(ms=1440 * MS_PER_MINUTE)
        result = await dispatcher.tick()
        assert result.completed == 1

        assert capabilities.messaging.sent[0]["content"] == "Hi Ana, how are you feeling?"
        logs = await logs_for(session_factory, enrollment_id)
        assert [(log.step_id, log.status) for log in logs] == [("sms", "executed")]

        enrollment = await load(session_factory, Enrollment, enrollment_id)
        assert enrollment.status == "completed"
        assert enrollment.completed_at == clock()
        assert enrollment.next_execution_at is None

        workflow = await load(session_factory, Workflow, wf.id)
        assert workflow.total_runs == 1
        assert workflow.successful_runs == 1
        assert workflow.average_execution_time == float(MS_PER_DAY)
        assert workflow.last_run == clock()

    async def test_steps_run_in_order_one_per_tick(self, session_factory, make_workflow, dispatcher, clock):
        wf = await make_workflow(actions=[NOTE, SMS, TAG])
        enrollment = await enroll(session_factory, wf, clock)

        labels = []
        for _ in range(3):
            clock.advance(ms=1)
            result = await dispatcher.tick()
            labels.append("completed" if result.completed else "advanced")
        assert labels == ["advanced", "advanced", "completed"]

        logs = await logs_for(session_factory, enrollment.id)
        assert [log.step_id for log in logs] == ["tag", "sms", "note"]
        assert all(log.status == "executed" for log in logs)

        # Completed enrollments are never picked up again
        assert (await dispatcher.tick()).due == 0

    async def test_zero_actions_completes_without_logs(self, session_factory, make_workflow, dispatcher, clock):
        wf = await make_workflow(actions=[])
        enrollment = await enroll(session_factory, wf, clock)

        result = await dispatcher.tick()

        assert result.completed == 1
        assert await logs_for(session_factory, enrollment.id) == []
        assert (await load(session_factory, Enrollment, enrollment.id)).status == "completed"


@pytest.mark.integration
class TestConcurrency:

    async def test_overlapping_ticks_never_double_dispatch(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        wf = await make_workflow(actions=[SMS], prevent_duplicates=False)
        enrollment_ids = []
        for n in range(5):
            client_id = f"client-{n + 10}"
            capabilities.clients.add_client(client_id, first_name=f"C{n}", phone=f"+1555000{n}")
            enrollment_ids.append((await enroll(session_factory, wf, clock, client_id)).id)

        first, second = await asyncio.gather(dispatcher.tick(), dispatcher.tick())

        assert first.claimed + second.claimed == 5
        assert len(capabilities.messaging.sent) == 5
        for enrollment_id in enrollment_ids:
            assert len(await logs_for(session_factory, enrollment_id)) == 1

    async def test_chained_steps_run_once_per_tick(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        # TAG leaves the enrollment due again at the same instant
        wf = await make_workflow(actions=[TAG, SMS])
        enrollment = await enroll(session_factory, wf, clock)

        first = await dispatcher.tick()
        again = await dispatcher.tick()

        assert first.advanced == 1
        assert again.due == 0
        assert again.claimed == 0
        assert capabilities.messaging.sent == []
        assert [log.step_id for log in await logs_for(session_factory, enrollment.id)] == ["tag"]

        clock.advance(ms=1)
        assert (await dispatcher.tick()).completed == 1
        assert len(capabilities.messaging.sent) == 1

    async def test_overlapping_ticks_on_a_multi_step_workflow(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        wf = await make_workflow(actions=[TAG, SMS, NOTE])
        enrollment = await enroll(session_factory, wf, clock)

        first, second = await asyncio.gather(dispatcher.tick(), dispatcher.tick())

        assert first.claimed + second.claimed == 1
        assert [log.step_id for log in await logs_for(session_factory, enrollment.id)] == ["tag"]
        assert capabilities.messaging.sent == []
        assert (await load(session_factory, Enrollment, enrollment.id)).current_step == "sms"

    async def test_leased_enrollment_is_skipped(self, session_factory, make_workflow, dispatcher, clock):
        wf = await make_workflow(actions=[SMS])
        enrollment = await enroll(session_factory, wf, clock)
        async with session_factory() as session:
            await EnrollmentStateMachine(session, clock).claim(enrollment.id, clock(), 60_000)
            await session.commit()

        assert (await dispatcher.tick()).due == 0
        # Expired lease: a crashed worker's step is picked up again
        clock.advance(ms=60_001)
        assert (await dispatcher.tick()).completed == 1


@pytest.mark.integration
class TestFailures:

    async def test_transient_failures_exhaust_retries(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        wf = await make_workflow(actions=[SMS | {"order": 1}])
        enrollment = await enroll(session_factory, wf, clock)
        capabilities.messaging.failures.extend(TransientProviderError("gateway 503") for _ in range(3))

        assert (await dispatcher.tick()).retrying == 1
        retry = await load(session_factory, Enrollment, enrollment.id)
        assert retry.status == "active"
        assert retry.attempt_count == 1
        assert retry.next_execution_at == clock() + 300_000

        # Not due again until the retry delay passes
        assert (await dispatcher.tick()).due == 0
        clock.advance(ms=300_000)
        assert (await dispatcher.tick()).retrying == 1
        clock.advance(ms=300_000)
        assert (await dispatcher.tick()).failed == 1

        logs = await logs_for(session_factory, enrollment.id)
        assert [log.status for log in logs] == ["retrying", "retrying", "failed"]
        assert [log.attempt for log in logs] == [1, 2, 3]

        failed = await load(session_factory, Enrollment, enrollment.id)
        assert failed.status == "failed"
        assert failed.failed_at == clock()
        workflow = await load(session_factory, Workflow, wf.id)
        assert workflow.failed_runs == 1
        assert workflow.successful_runs == 0

    async def test_retry_then_success_resets_attempts(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        wf = await make_workflow(actions=[SMS | {"order": 1}, NOTE])
        enrollment = await enroll(session_factory, wf, clock)
        capabilities.messaging.failures.append(TransientProviderError("timeout"))

        await dispatcher.tick()
        clock.advance(ms=300_000)
        assert (await dispatcher.tick()).advanced == 1

        current = await load(session_factory, Enrollment, enrollment.id)
        assert current.current_step == "note"
        assert current.attempt_count == 0

    async def test_engine_error_fails_enrollment(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        async def broken(*args, **kwargs):
            raise KeyError("tags")

        capabilities.clients.apply_tag = broken
        wf = await make_workflow(actions=[TAG])
        enrollment = await enroll(session_factory, wf, clock)

        assert (await dispatcher.tick()).errors == 1

        failed = await load(session_factory, Enrollment, enrollment.id)
        assert failed.status == "failed"
        assert failed.lease_token is None
        logs = await logs_for(session_factory, enrollment.id)
        assert logs[0].action == "engine"
        assert logs[0].status == "failed"
        assert "KeyError" in logs[0].error

    async def test_one_failure_does_not_abort_the_batch(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        wf = await make_workflow(actions=[SMS | {"order": 1}], prevent_duplicates=False)
        capabilities.clients.add_client("no-phone", first_name="Bo")
        bad = await enroll(session_factory, wf, clock, "no-phone")
        good = await enroll(session_factory, wf, clock, "client-1")

        result = await dispatcher.tick()

        assert result.failed == 1
        assert result.completed == 1
        assert (await load(session_factory, Enrollment, bad.id)).status == "failed"
        assert (await load(session_factory, Enrollment, good.id)).status == "completed"


@pytest.mark.integration
class TestStatusChanges:

    async def test_inactive_workflow_pauses_enrollment(self, session_factory, make_workflow, dispatcher, clock):
        wf = await make_workflow(actions=[SMS])
        enrollment = await enroll(session_factory, wf, clock)
        async with session_factory() as session:
            await session.execute(update(Workflow).where(Workflow.id == wf.id).values(status="inactive"))
            await session.commit()

        result = await dispatcher.tick()

        assert result.paused == 1
        paused = await load(session_factory, Enrollment, enrollment.id)
        assert paused.status == "paused"
        assert paused.suspended_execution_at == clock()
        assert await logs_for(session_factory, enrollment.id) == []

    async def test_cancel_during_step_drops_outcome(
        self, session_factory, make_workflow, dispatcher, capabilities, clock
    ):
        wf = await make_workflow(actions=[TAG, SMS])
        enrollment = await enroll(session_factory, wf, clock)

        async def cancel_then_tag(organization_id, client_id, tag):
            async with session_factory() as session:
                await EnrollmentStateMachine(session, clock).cancel(enrollment.id)
                await session.commit()

        capabilities.clients.apply_tag = cancel_then_tag

        result = await dispatcher.tick()

        assert result.dropped == 1
        cancelled = await load(session_factory, Enrollment, enrollment.id)
        assert cancelled.status == "cancelled"
        assert cancelled.current_step == "tag"
        assert cancelled.lease_token is None
        # The attempt is still on record
        assert [log.step_id for log in await logs_for(session_factory, enrollment.id)] == ["tag"]

    async def test_cancel_after_claim_skips_step(
        self, session_factory, make_workflow, dispatcher, capabilities, clock, monkeypatch
    ):
        wf = await make_workflow(actions=[SMS])
        enrollment = await enroll(session_factory, wf, clock)
        run_unit = dispatcher._run_unit

        async def cancel_then_run(enrollment_id, token, now):
            async with session_factory() as session:
                await EnrollmentStateMachine(session, clock).cancel(enrollment_id)
                await session.commit()
            return await run_unit(enrollment_id, token, now)

        monkeypatch.setattr(dispatcher, "_run_unit", cancel_then_run)

        result = await dispatcher.tick()

        assert result.dropped == 1
        assert capabilities.messaging.sent == []
        assert await logs_for(session_factory, enrollment.id) == []
        cancelled = await load(session_factory, Enrollment, enrollment.id)
        assert cancelled.status == "cancelled"
        assert cancelled.lease_token is None


@pytest.mark.integration
class TestLoop:

    async def test_start_and_stop(self, dispatcher):
        dispatcher.start(interval=0.01)
        assert dispatcher.is_running
        await asyncio.sleep(0.03)
        await dispatcher.stop()
        assert not dispatcher.is_running
