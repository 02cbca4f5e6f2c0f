"""
Shared fixtures.

Settings are read when ``signoff.config`` is first imported, so the test
environment is pinned here before anything from ``signoff`` is loaded: a
throwaway SQLite database, the in-process cache and a shared-secret JWT key.
"""

import os
import tempfile
import uuid
from types import SimpleNamespace

_TEST_DIR = tempfile.mkdtemp(prefix="signoff-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/signoff.db"
os.environ["CACHE_BACKEND"] = "memory"
os.environ["JWT_ALGORITHM"] = "HS256"
os.environ["JWT_SECRET"] = "test-secret-not-for-production"
os.environ["INTERNAL_JOB_SECRET"] = "test-internal-secret"
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ.pop("BREVO_API_KEY", None)

import pytest

from signoff.database import AsyncSessionLocal, Base, engine
from signoff.dependencies import approval_cache, notifications
from signoff.domain.actor import Actor
from signoff.domain.enums import Role
from signoff.domain.events import DomainEvent, EventBus
from signoff.models.branch import Branch
from signoff.models.organisation import Organisation
from signoff.models.user import User
from signoff.services.approval_service import ApprovalWorkflow

import signoff.models  # noqa: F401


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    approval_cache.backend.clear()
    yield
    await notifications.drain()
    # pooled aiosqlite connections are bound to this test's event loop
    await engine.dispose()


@pytest.fixture
async def db_session(database):
    async with AsyncSessionLocal() as session:
        yield session


def actor_for(user: User) -> Actor:
    return Actor(
        user_id=user.id,
        organisation_id=user.organisation_id,
        role=Role(user.role),
        branch_id=user.branch_id,
        email=user.email,
    )


@pytest.fixture
async def seed(database):
    """
    Two organisations. Acme has branches North and South:

        owner, admin          organisation-wide
        manager               North
        south_manager         South
        requester, colleague  North (role user)

    Globex has a single admin, used to prove tenant isolation.
    """
    acme = Organisation(id=uuid.uuid4(), name="Acme", ref="acme", base_currency="USD")
    globex = Organisation(id=uuid.uuid4(), name="Globex", ref="globex", base_currency="USD")
    north = Branch(id=uuid.uuid4(), organisation_id=acme.id, name="North")
    south = Branch(id=uuid.uuid4(), organisation_id=acme.id, name="South")

    def user(org, email, role, branch=None, first="Test"):
        return User(
            id=uuid.uuid4(),
            organisation_id=org.id,
            branch_id=branch.id if branch else None,
            email=email,
            first_name=first,
            last_name=role.value.title(),
            role=role,
            is_active=True,
        )

    users = SimpleNamespace(
        owner=user(acme, "owner@acme.test", Role.OWNER, first="Olive"),
        admin=user(acme, "admin@acme.test", Role.ADMIN, first="Ada"),
        manager=user(acme, "manager@acme.test", Role.MANAGER, north, first="Nora"),
        south_manager=user(acme, "south@acme.test", Role.MANAGER, south, first="Sol"),
        requester=user(acme, "requester@acme.test", Role.USER, north, first="Remy"),
        colleague=user(acme, "colleague@acme.test", Role.USER, north, first="Cole"),
        outsider=user(globex, "admin@globex.test", Role.ADMIN, first="Gus"),
    )

    async with AsyncSessionLocal() as session:
        session.add_all([acme, globex])
        await session.flush()
        session.add_all([north, south])
        await session.flush()
        session.add_all(list(vars(users).values()))
        await session.commit()

    return SimpleNamespace(
        organisation=acme,
        other_organisation=globex,
        north=north,
        south=south,
        users=users,
        actors=SimpleNamespace(**{name: actor_for(u) for name, u in vars(users).items()}),
    )


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class RecordingBus(EventBus):
    """EventBus that keeps every published event for assertions."""

    def __init__(self):
        super().__init__()
        self.events: list[DomainEvent] = []

        async def record(event):
            self.events.append(event)

        self.subscribe(DomainEvent, record)

    def of_type(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
async def workflow(db_session, seed, bus):
    return ApprovalWorkflow(db_session, approval_cache, bus)

