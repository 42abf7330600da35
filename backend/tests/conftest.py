"""Shared pytest fixtures for the Clinic Workflow Engine test suite.

Provides:
- Async SQLite database in a per-test file (no PostgreSQL needed for tests)
- Session factory / AsyncSession
- Controllable clock (epoch ms)
- In-memory fakes for the messaging, client and appointment capabilities
- FastAPI test client (httpx.AsyncClient)
- Workflow factory
"""

import os
from typing import Any, AsyncGenerator, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_workflow_engine.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("EVENT_BUS_ENABLED", "false")

from core.constants import MS_PER_DAY, MessageKind  # noqa: E402
from db.base import Base  # noqa: E402
from db.database import create_db_engine, create_session_factory  # noqa: E402
from integrations.capabilities import (  # noqa: E402
    AppointmentCapability,
    Capabilities,
    ClientCapability,
    CreatedAppointment,
    DeliveryResult,
    MessagingCapability,
)

ORG_ID = "org-test"
T0 = 1_700_000_000_000


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 0, days: float = 0) -> int:
        self.now += int(ms + days * MS_PER_DAY)
        return self.now


# ---------------------------------------------------------------------------
# Capability fakes
# ---------------------------------------------------------------------------

class FakeMessaging(MessagingCapability):
    """Records sent messages. Queue entries in ``failures`` to make sends fail.

    A failure entry is either an exception (raised) or a DeliveryResult
    (returned).
    """

    def __init__(self):
        self.sent: list[dict] = []
        self.failures: list[Any] = []

    async def send(self, kind, target, content, subject=None, organization_id=None) -> DeliveryResult:
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, BaseException):
                raise failure
            return failure
        self.sent.append({
            "kind": MessageKind(kind).value,
            "target": target,
            "content": content,
            "subject": subject,
            "organization_id": organization_id,
        })
        return DeliveryResult.delivered(kind, target, provider_message_id=f"msg-{len(self.sent)}")


class FakeClients(ClientCapability):
    """Client facts, tags and notes held in memory."""

    def __init__(self):
        self.facts: dict[str, dict] = {}
        self.notes: list[tuple[str, str]] = []
        self.failures: list[BaseException] = []

    def add_client(self, client_id: str, **facts) -> None:
        facts.setdefault("tags", [])
        self.facts[client_id] = facts

    async def get_facts(self, organization_id: str, client_id: str) -> dict:
        if self.failures:
            raise self.failures.pop(0)
        return dict(self.facts.get(client_id, {}))

    async def apply_tag(self, organization_id: str, client_id: str, tag: str) -> None:
        tags = self.facts.setdefault(client_id, {"tags": []}).setdefault("tags", [])
        if tag not in tags:
            tags.append(tag)

    async def remove_tag(self, organization_id, client_id, tag=None, remove_all=False) -> None:
        client = self.facts.setdefault(client_id, {"tags": []})
        if remove_all:
            client["tags"] = []
        else:
            client["tags"] = [t for t in client.get("tags", []) if t != tag]

    async def add_note(self, organization_id: str, client_id: str, content: str) -> None:
        self.notes.append((client_id, content))


class FakeAppointments(AppointmentCapability):
    """Appointment creation deduplicated on the idempotency key."""

    def __init__(self):
        self.created: dict[str, CreatedAppointment] = {}
        self.calls = 0

    async def create_appointment(
        self,
        organization_id,
        client_id,
        appointment_type,
        start_at,
        duration_minutes,
        idempotency_key,
        title=None,
        notes=None,
    ) -> CreatedAppointment:
        self.calls += 1
        if idempotency_key not in self.created:
            self.created[idempotency_key] = CreatedAppointment(
                appointment_id=f"appt-{len(self.created) + 1}",
                start_at=start_at,
                appointment_type=appointment_type,
            )
        return self.created[idempotency_key]


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Engine on a per-test SQLite file.

    A file (not :memory:) so concurrent sessions see each other's commits.
    """
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", echo=False)
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a DB session that commits at the end of the test."""
    async with session_factory() as session:
        yield session
        await session.commit()


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def capabilities() -> Capabilities:
    clients = FakeClients()
    clients.add_client(
        "client-1",
        first_name="Ana",
        last_name="Silva",
        phone="+15550001",
        email="ana@example.com",
        tags=["vip"],
    )
    return Capabilities(
        messaging=FakeMessaging(),
        clients=clients,
        appointments=FakeAppointments(),
    )


@pytest.fixture
def make_workflow(session_factory):
    """Factory inserting a committed workflow.

    Usage:
        wf = await make_workflow(actions=[...], trigger="appointment_completed")
    """

    async def _make(
        actions: Optional[list] = None,
        conditions: Optional[list] = None,
        trigger: str = "appointment_completed",
        status: str = "active",
        organization_id: str = ORG_ID,
        **fields,
    ):
        from db.models.workflow import Workflow

        workflow = Workflow(
            id=str(uuid4()),
            organization_id=organization_id,
            name=fields.pop("name", "Test Workflow"),
            description="A workflow for testing",
            status=status,
            trigger=trigger,
            conditions=conditions or [],
            actions=actions or [],
            **fields,
        )
        async with session_factory() as session:
            session.add(workflow)
            await session.commit()
        return workflow

    return _make


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(db_engine, session_factory, capabilities):
    """Create a FastAPI app instance wired to the test database and fakes."""
    import db.database as db_mod
    from app.dependencies import get_session_factory
    from integrations.capabilities import set_capabilities

    original_engine = db_mod.engine
    original_session = db_mod.AsyncSessionLocal
    db_mod.engine = db_engine
    db_mod.AsyncSessionLocal = session_factory
    set_capabilities(capabilities)

    from app.main import create_app
    test_app = create_app()
    test_app.dependency_overrides[get_session_factory] = lambda: session_factory

    yield test_app

    # Restore originals
    db_mod.engine = original_engine
    db_mod.AsyncSessionLocal = original_session
    set_capabilities(None)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


@pytest.fixture
def org_headers() -> dict:
    return {"X-Organization-ID": ORG_ID}
