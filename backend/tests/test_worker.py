"""Tests for the Celery tasks that drive the engine.

Tasks are called through ``.run`` so no broker is involved; each test
points the worker session factory at its own SQLite file.
"""

import asyncio
from uuid import uuid4

import pytest

import db.worker_session as worker_session
from app.config import get_settings
from db.base import Base
from db.database import create_db_engine, create_session_factory
from db.models.workflow import Workflow
from integrations.capabilities import set_capabilities
from worker.celery_app import celery_app
from worker.tasks.dispatcher import dispatch_due_enrollments, route_business_event
from workflow.state_machine import EnrollmentStateMachine

ORG_ID = "org-test"
SMS = {"id": "sms", "type": "send_sms", "order": 1, "config": {"message": "Hi {{first_name}}"}}


async def prepare(url: str, enroll_client: bool = True) -> None:
    engine = create_db_engine(url, echo=False)
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with create_session_factory(engine)() as session:
        workflow = Workflow(
            id=str(uuid4()),
            organization_id=ORG_ID,
            name="Welcome",
            description="",
            status="active",
            trigger="new_client",
            conditions=[],
            actions=[SMS],
        )
        session.add(workflow)
        if enroll_client:
            EnrollmentStateMachine(session).start(workflow, "client-1", "test")
        await session.commit()
    await engine.dispose()


@pytest.fixture
def worker_db(tmp_path, monkeypatch, capabilities):
    url = f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}"
    monkeypatch.setattr(worker_session, "create_db_engine", lambda: create_db_engine(url, echo=False))
    set_capabilities(capabilities)
    yield url
    set_capabilities(None)


@pytest.mark.unit
class TestCeleryConfig:

    def test_beat_drives_the_dispatcher(self):
        entry = celery_app.conf.beat_schedule["dispatch-due-enrollments"]
        assert entry["task"] == dispatch_due_enrollments.name
        assert entry["schedule"] == get_settings().SCHEDULER_INTERVAL_SECONDS

    def test_malformed_event_is_dropped(self):
        result = route_business_event.run({"kind": "new_client"})
        assert result["routed"] is False


@pytest.mark.integration
class TestWorkerTasks:

    def test_dispatch_tick(self, worker_db, capabilities):
        asyncio.run(prepare(worker_db))

        result = dispatch_due_enrollments.run()

        assert result["due"] == 1
        assert result["completed"] == 1
        assert capabilities.messaging.sent[0]["content"] == "Hi Ana"

    def test_route_event(self, worker_db):
        asyncio.run(prepare(worker_db, enroll_client=False))

        result = route_business_event.run(
            {"kind": "new_client", "organization_id": ORG_ID, "client_id": "client-2"}
        )

        assert result["routed"] is True
        assert len(result["enrollment_ids"]) == 1
