"""
Seed script to populate one organization's action type registry and default
school positions.

Run this script after database initialization to create, for the organization
with the given slug:
- The default action types (wiki, kaizen, finance, people and permission actions)
- Default positions with their position permissions

Usage:
    python -m scripts.seed_permissions <organization-slug>
"""
import asyncio
import sys
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.organizations.models import Organization
from app.features.teams.models import TeamPosition
from app.features.permissions.models import ActionType, PermissionScope, PositionPermission, RiskLevel
from app.utils import get_logger


log = get_logger(__name__)


DEFAULT_ACTION_TYPES = [
    # Wiki
    ("wiki.read", "Read wiki articles", "wiki", RiskLevel.LOW),
    ("wiki.create", "Create wiki articles", "wiki", RiskLevel.LOW),
    ("wiki.publish", "Publish wiki articles", "wiki", RiskLevel.MEDIUM),

    # Kaizen board
    ("kaizen.create", "Submit improvement suggestions", "kaizen", RiskLevel.LOW),
    ("kaizen.approve", "Approve improvement suggestions", "kaizen", RiskLevel.MEDIUM),

    # Finance
    ("finance.invoices.read", "View invoices", "finance", RiskLevel.MEDIUM),
    ("finance.invoices.create", "Issue invoices", "finance", RiskLevel.HIGH),
    ("finance.payroll.approve", "Approve payroll", "finance", RiskLevel.CRITICAL),

    # Academic
    ("students.read", "View student records", "academic", RiskLevel.MEDIUM),
    ("grades.update", "Update grades", "academic", RiskLevel.HIGH),

    # People
    ("teams.manage", "Create, edit and archive teams", "people", RiskLevel.HIGH),
    ("members.manage", "Add, move and remove team members", "people", RiskLevel.HIGH),

    # Permission management
    ("permissions.delegate", "Delegate permissions", "permissions", RiskLevel.HIGH),
    ("permissions.audit", "View the permission audit log", "permissions", RiskLevel.HIGH),
]


DEFAULT_POSITIONS = {
    "Director": {
        "level": 10,
        "position_type": "leadership",
        "permissions": "ALL",  # Special case - every action, organization scope, delegable
    },
    "Coordinator": {
        "level": 7,
        "position_type": "leadership",
        "permissions": [
            ("wiki.read", PermissionScope.ORGANIZATION, False),
            ("wiki.create", PermissionScope.DEPARTMENT, True),
            ("wiki.publish", PermissionScope.DEPARTMENT, True),
            ("kaizen.create", PermissionScope.TEAM, True),
            ("kaizen.approve", PermissionScope.DEPARTMENT, True),
            ("students.read", PermissionScope.DEPARTMENT, True),
            ("grades.update", PermissionScope.DEPARTMENT, False),
            ("members.manage", PermissionScope.TEAM, False),
        ],
    },
    "Teacher": {
        "level": 4,
        "position_type": "staff",
        "permissions": [
            ("wiki.read", PermissionScope.ORGANIZATION, False),
            ("wiki.create", PermissionScope.TEAM, False),
            ("kaizen.create", PermissionScope.OWN, False),
            ("students.read", PermissionScope.TEAM, False),
            ("grades.update", PermissionScope.TEAM, False),
        ],
    },
    "Secretary": {
        "level": 3,
        "position_type": "staff",
        "permissions": [
            ("wiki.read", PermissionScope.ORGANIZATION, False),
            ("kaizen.create", PermissionScope.OWN, False),
            ("students.read", PermissionScope.ORGANIZATION, False),
            ("finance.invoices.read", PermissionScope.ORGANIZATION, False),
        ],
    },
}


async def seed_action_types(db: AsyncSession, organization: Organization) -> dict[str, ActionType]:
    """
    Create default action types for an organization.

    Returns:
        Dictionary mapping action codes to ActionType objects
    """
    log.info("Creating default action types for %s...", organization.slug)
    action_types = {}

    for code, name, category, risk_level in DEFAULT_ACTION_TYPES:
        result = await db.execute(
            select(ActionType).where(
                and_(ActionType.organization_id == organization.id, ActionType.code == code)
            )
        )
        existing = result.scalars().first()

        if existing:
            log.debug("Action type '%s' already exists, skipping", code)
            action_types[code] = existing
            continue

        action_type = ActionType(
            organization_id=organization.id,
            code=code,
            name=name,
            category=category,
            risk_level=risk_level,
        )
        db.add(action_type)
        action_types[code] = action_type
        log.info("Created action type: %s", code)

    await db.commit()

    log.info("%d action types available", len(action_types))
    return action_types


async def seed_positions(db: AsyncSession, organization: Organization, action_types: dict[str, ActionType]):
    """
    Create default positions for an organization and grant their permissions.

    Args:
        db: Database session
        organization: Organization receiving the positions
        action_types: Dictionary of action code -> ActionType object
    """
    log.info("Creating default positions for %s...", organization.slug)

    for position_name, position_config in DEFAULT_POSITIONS.items():
        result = await db.execute(
            select(TeamPosition).where(
                and_(TeamPosition.organization_id == organization.id, TeamPosition.name == position_name)
            )
        )
        if result.scalars().first():
            log.debug("Position '%s' already exists, skipping", position_name)
            continue

        position = TeamPosition(
            organization_id=organization.id,
            name=position_name,
            level=position_config["level"],
            position_type=position_config["position_type"],
        )
        db.add(position)
        await db.flush()

        if position_config["permissions"] == "ALL":
            grants = [(code, PermissionScope.ORGANIZATION, True) for code in action_types]
        else:
            grants = position_config["permissions"]

        for code, scope, can_delegate in grants:
            if code not in action_types:
                log.warning("Action type '%s' not found for position '%s'", code, position_name)
                continue
            db.add(PositionPermission(
                position_id=position.id,
                action_type_id=action_types[code].id,
                scope=scope,
                can_delegate=can_delegate,
            ))

        log.info("Created position '%s' with %d permissions", position_name, len(grants))

    await db.commit()


async def main(organization_slug: str):
    """Main function to seed an organization's action types and positions."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    # Get database session
    async for db in get_db():
        result = await db.execute(select(Organization).where(Organization.slug == organization_slug))
        organization = result.scalar_one_or_none()
        if organization is None:
            log.error("Organization '%s' not found, nothing seeded", organization_slug)
            break

        action_types = await seed_action_types(db, organization)
        await seed_positions(db, organization, action_types)

        log.info("Permission seeding completed successfully!")
        break  # Only use first session


if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit("Usage: python -m scripts.seed_permissions <organization-slug>")
    asyncio.run(main(sys.argv[1]))
