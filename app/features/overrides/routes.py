"""
User permission override routes.

Overrides are never deleted. Replacing or revoking one stamps revoked_at on
the old row, so the table doubles as a history of every exception granted.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.people.dependencies import (
    CurrentCaller,
    get_current_caller,
    get_current_org_admin,
    get_org_person,
    org_person_ids,
)
from app.features.teams.models import Team
from app.features.permissions.models import ActionType, AuditAction, UserPermissionOverride
from app.features.permissions.dependencies import create_audit_log, get_unrevoked_override
from app.features.permissions.snapshots import GrantSnapshot, OverrideSnapshot
from app.features.overrides.schemas import (
    OverrideCreate,
    OverrideCreateResponse,
    OverrideListResponse,
    OverrideResponse,
    OverrideRevokeResponse,
)
from app.utils import get_logger, utcnow


log = get_logger(__name__)
router = APIRouter()


@router.get("", response_model=OverrideListResponse)
async def list_overrides(
    person_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """
    List active overrides of the organization, optionally for one person.

    Organization admins see everyone; other callers only their own rows.
    Expired rows are dropped after the query rather than in it.
    """
    if not caller.is_org_admin:
        person_id = caller.person_id

    stmt = select(UserPermissionOverride).where(UserPermissionOverride.revoked_at.is_(None))

    if person_id:
        if await get_org_person(db, person_id, caller.organization_id) is None:
            raise HTTPException(status_code=404, detail="Person not found")
        stmt = stmt.where(UserPermissionOverride.person_id == person_id)
    else:
        stmt = stmt.where(UserPermissionOverride.person_id.in_(org_person_ids(caller.organization_id)))

    result = await db.execute(stmt.order_by(UserPermissionOverride.granted_at.desc()))

    now = utcnow()
    data = [
        OverrideResponse.of(override)
        for override in result.scalars().all()
        if override.is_active(now)
    ]
    return OverrideListResponse(data=data, count=len(data))


@router.post("", response_model=OverrideCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_override(
    override_data: OverrideCreate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Set a person's override for an action, replacing any active one."""
    person = await get_org_person(db, override_data.person_id, caller.organization_id)
    if person is None:
        raise HTTPException(status_code=404, detail="Person not found")

    result = await db.execute(
        select(ActionType).where(
            and_(
                ActionType.id == override_data.action_type_id,
                ActionType.organization_id == caller.organization_id,
            )
        )
    )
    action_type = result.scalar_one_or_none()
    if action_type is None:
        raise HTTPException(status_code=404, detail="Action type not found")

    if override_data.team_id:
        result = await db.execute(
            select(Team.id).where(
                and_(Team.id == override_data.team_id, Team.organization_id == caller.organization_id)
            )
        )
        if result.first() is None:
            raise HTTPException(status_code=404, detail="Team not found")

    now = utcnow()
    existing = await get_unrevoked_override(db, person.id, action_type.id)
    previous = None
    if existing:
        previous = OverrideSnapshot.of(existing)
        existing.revoke(by=caller.person_id, reason="Updated with new override", at=now)
        # The old row must be tombstoned before the new one hits the unique index
        await db.flush()

    override = UserPermissionOverride(
        person_id=person.id,
        action_type_id=action_type.id,
        is_granted=override_data.is_granted,
        scope=override_data.scope,
        team_id=override_data.team_id,
        expires_at=override_data.expires_at,
        reason=override_data.reason,
        granted_by=caller.person_id,
        granted_at=now,
        person=person,
        action_type=action_type,
    )
    db.add(override)
    await db.flush()

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.GRANT if override_data.is_granted else AuditAction.REVOKE,
        target_user_id=person.id,
        action_type_id=action_type.id,
        previous_value=previous,
        new_value=GrantSnapshot(is_granted=override_data.is_granted, scope=override_data.scope),
        reason=override_data.reason,
    )
    await db.commit()

    return OverrideCreateResponse(
        data=OverrideResponse.of(override),
        replaced_override_id=existing.id if existing else None,
    )


@router.delete("", response_model=OverrideRevokeResponse)
async def revoke_override(
    id: Optional[str] = None,
    person_id: Optional[str] = None,
    action_type_id: Optional[str] = None,
    reason: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Revoke an override by id, or by (person_id, action_type_id)."""
    if id:
        override_filter = UserPermissionOverride.id == id
    elif person_id and action_type_id:
        override_filter = and_(
            UserPermissionOverride.person_id == person_id,
            UserPermissionOverride.action_type_id == action_type_id,
        )
    else:
        raise HTTPException(
            status_code=400,
            detail="Either id or person_id and action_type_id are required"
        )

    result = await db.execute(
        select(UserPermissionOverride).where(
            and_(
                override_filter,
                UserPermissionOverride.revoked_at.is_(None),
                UserPermissionOverride.person_id.in_(org_person_ids(caller.organization_id)),
            )
        )
    )
    override = result.scalars().first()
    if override is None:
        raise HTTPException(status_code=404, detail="Override not found")

    previous = OverrideSnapshot.of(override)
    override.revoke(by=caller.person_id, reason=reason)

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.REVOKE,
        target_user_id=override.person_id,
        action_type_id=override.action_type_id,
        previous_value=previous,
        reason=reason,
    )
    await db.commit()

    return OverrideRevokeResponse(id=override.id)
