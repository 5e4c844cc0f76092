"""Pytest fixtures: per-test SQLite database, seeded school, HTTP client."""

import os

os.environ.setdefault("RATE_LIMIT_ENABLED", "0")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from app.core.database.engine import build_engine, build_session_factory, get_db, init_db
from app.features.organizations.models import Organization, organization_memberships
from app.features.people.dependencies import CurrentCaller, get_current_caller
from app.features.people.models import Person
from app.features.permissions.models import (
    ActionType,
    PermissionScope,
    PositionPermission,
    RiskLevel,
)
from app.features.teams.models import MemberRole, Team, TeamMember, TeamPosition
from app.main import app


# --- Seeded world ---


@dataclass
class School:
    """Everything the seed creates, by role in the scenario."""

    org: Organization
    other_org: Organization
    admin: Person
    alice: Person  # coordinator, may delegate wiki.create and kaizen.approve
    bob: Person  # teacher, may delegate nothing
    carol: Person  # org member without a team
    outsider: Person  # member of other_org only
    coordinator: TeamPosition
    teacher: TeamPosition
    foreign_position: TeamPosition
    team: Team
    foreign_team: Team
    alice_membership: TeamMember
    bob_membership: TeamMember
    outsider_membership: TeamMember
    actions: dict[str, ActionType] = field(default_factory=dict)
    foreign_actions: dict[str, ActionType] = field(default_factory=dict)  # same codes, other_org's registry


ACTIONS = [
    ("wiki.create", "Create wiki articles", "wiki", RiskLevel.LOW),
    ("kaizen.approve", "Approve improvements", "kaizen", RiskLevel.MEDIUM),
    ("finance.invoices.read", "View invoices", "finance", RiskLevel.MEDIUM),
    ("finance.payroll.approve", "Approve payroll", "finance", RiskLevel.CRITICAL),
    ("permissions.audit", "View the audit log", "permissions", RiskLevel.HIGH),
    ("members.manage", "Manage team members", "people", RiskLevel.HIGH),
    ("teams.manage", "Manage teams", "people", RiskLevel.HIGH),
]


def _person(slug: str, first_name: str) -> Person:
    return Person(appwrite_id=f"aw-{slug}", primary_email=f"{slug}@school.test", first_name=first_name)


async def _join(session, person: Person, org: Organization, role: str = "member") -> None:
    await session.execute(
        organization_memberships.insert().values(person_id=person.id, organization_id=org.id, role=role)
    )


async def seed_school(session) -> School:
    org = Organization(name="Colégio Aurora", slug="aurora")
    other_org = Organization(name="Escola Horizonte", slug="horizonte")
    session.add_all([org, other_org])
    await session.flush()

    admin = _person("admin", "Ada")
    alice = _person("alice", "Alice")
    bob = _person("bob", "Bob")
    carol = _person("carol", "Carol")
    outsider = _person("outsider", "Otto")
    session.add_all([admin, alice, bob, carol, outsider])
    await session.flush()

    await _join(session, admin, org, "owner")
    for person in (alice, bob, carol):
        await _join(session, person, org)
    await _join(session, outsider, other_org, "owner")

    actions = {}
    foreign_actions = {}
    for code, name, category, risk in ACTIONS:
        actions[code] = ActionType(
            organization_id=org.id, code=code, name=name, category=category, risk_level=risk
        )
        foreign_actions[code] = ActionType(
            organization_id=other_org.id, code=code, name=name, category=category, risk_level=risk
        )
    session.add_all([*actions.values(), *foreign_actions.values()])

    coordinator = TeamPosition(organization_id=org.id, name="Coordinator", level=7)
    teacher = TeamPosition(organization_id=org.id, name="Teacher", level=4)
    foreign_position = TeamPosition(organization_id=other_org.id, name="Principal", level=9)
    team = Team(organization_id=org.id, name="Fundamental I", slug="fundamental-i")
    foreign_team = Team(organization_id=other_org.id, name="Secretaria", slug="secretaria")
    session.add_all([coordinator, teacher, foreign_position, team, foreign_team])
    await session.flush()

    session.add_all([
        PositionPermission(
            position_id=coordinator.id,
            action_type_id=actions["wiki.create"].id,
            scope=PermissionScope.TEAM,
            can_delegate=True,
        ),
        PositionPermission(
            position_id=coordinator.id,
            action_type_id=actions["kaizen.approve"].id,
            scope=PermissionScope.DEPARTMENT,
            can_delegate=True,
        ),
        PositionPermission(
            position_id=coordinator.id,
            action_type_id=actions["finance.invoices.read"].id,
            scope=PermissionScope.ORGANIZATION,
            can_delegate=False,
        ),
        PositionPermission(
            position_id=teacher.id,
            action_type_id=actions["wiki.create"].id,
            scope=PermissionScope.OWN,
            can_delegate=False,
        ),
        PositionPermission(
            position_id=foreign_position.id,
            action_type_id=foreign_actions["wiki.create"].id,
            scope=PermissionScope.ORGANIZATION,
            can_delegate=True,
        ),
    ])

    alice_membership = TeamMember(team_id=team.id, person_id=alice.id, position_id=coordinator.id)
    bob_membership = TeamMember(team_id=team.id, person_id=bob.id, position_id=teacher.id)
    outsider_membership = TeamMember(
        team_id=foreign_team.id,
        person_id=outsider.id,
        position_id=foreign_position.id,
        member_role=MemberRole.OWNER,
    )
    session.add_all([alice_membership, bob_membership, outsider_membership])
    await session.commit()

    return School(
        org=org,
        other_org=other_org,
        admin=admin,
        alice=alice,
        bob=bob,
        carol=carol,
        outsider=outsider,
        coordinator=coordinator,
        teacher=teacher,
        foreign_position=foreign_position,
        team=team,
        foreign_team=foreign_team,
        alice_membership=alice_membership,
        bob_membership=bob_membership,
        outsider_membership=outsider_membership,
        actions=actions,
        foreign_actions=foreign_actions,
    )


# --- Caller switching ---


class Caller:
    """Mutable identity returned by the overridden get_current_caller."""

    def __init__(self) -> None:
        self.current: CurrentCaller | None = None

    def login(self, person: Person, org: Organization, role: str = "member") -> None:
        self.current = CurrentCaller(person_id=person.id, organization_id=org.id, organization_role=role)


# --- Fixtures ---


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def school(session_factory) -> School:
    async with session_factory() as session:
        return await seed_school(session)


@pytest.fixture
def caller() -> Caller:
    return Caller()


@pytest_asyncio.fixture
async def client(session_factory, caller) -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client with the database and authenticated caller overridden."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_caller] = lambda: caller.current
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def anonymous_client(session_factory) -> AsyncIterator[httpx.AsyncClient]:
    """HTTP client with only the database overridden; real authentication runs."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


# --- Query helpers ---


async def count_rows(session_factory, model: Any, *criteria: Any) -> int:
    async with session_factory() as session:
        stmt = select(func.count()).select_from(model)
        for criterion in criteria:
            stmt = stmt.where(criterion)
        result = await session.execute(stmt)
        return result.scalar_one()


async def fetch_all(session_factory, model: Any, *criteria: Any) -> list:
    async with session_factory() as session:
        stmt = select(model)
        for criterion in criteria:
            stmt = stmt.where(criterion)
        result = await session.execute(stmt)
        return list(result.scalars().all())
