"""
Permission group routes.

A group bundles actions under one name so they can be handed to people who
hold no position granting them. Writes are limited to organization admins
and every change lands in the permission audit log.
"""
from typing import Dict, List
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.people.dependencies import (
    CurrentCaller,
    get_current_caller,
    get_current_org_admin,
    get_org_person,
)
from app.features.teams.models import Team
from app.features.teams.routes import slugify
from app.features.permissions.models import (
    ActionType,
    AuditAction,
    PermissionGroup,
    PermissionGroupAction,
    PermissionScope,
    UserGroupAssignment,
)
from app.features.permissions.dependencies import create_audit_log
from app.features.permissions.snapshots import GroupAssignmentSnapshot, GroupSnapshot
from app.features.groups.schemas import (
    GroupActionResponse,
    GroupAssign,
    GroupAssignmentResponse,
    GroupAssignResponse,
    GroupCreate,
    GroupDeleteResponse,
    GroupDetail,
    GroupListItem,
    GroupListResponse,
    GroupSingleResponse,
    GroupUnassignResponse,
    GroupUpdate,
)
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)
router = APIRouter()


async def get_org_group(db: AsyncSession, group_id: str, organization_id: str) -> PermissionGroup:
    result = await db.execute(
        select(PermissionGroup).where(
            and_(PermissionGroup.id == group_id, PermissionGroup.organization_id == organization_id)
        )
    )
    group = result.scalar_one_or_none()
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


async def load_org_actions(db: AsyncSession, action_type_ids: List[str], organization_id: str) -> Dict[str, ActionType]:
    """Action types by id; any id outside the organization fails the request."""
    requested = list(dict.fromkeys(action_type_ids))
    if not requested:
        return {}

    result = await db.execute(
        select(ActionType).where(
            and_(ActionType.id.in_(requested), ActionType.organization_id == organization_id)
        )
    )
    found = {action.id: action for action in result.scalars().all()}
    missing = [action_type_id for action_type_id in requested if action_type_id not in found]
    if missing:
        raise HTTPException(
            status_code=404,
            detail={"error": "Action type not found", "missing_action_types": missing}
        )
    return {action_type_id: found[action_type_id] for action_type_id in requested}


async def ensure_slug_free(db: AsyncSession, slug: str, organization_id: str, group_id: str | None = None) -> None:
    if not slug:
        raise HTTPException(status_code=400, detail="Group name must contain letters or digits")

    stmt = select(PermissionGroup.id).where(
        and_(PermissionGroup.organization_id == organization_id, PermissionGroup.slug == slug)
    )
    if group_id:
        stmt = stmt.where(PermissionGroup.id != group_id)
    result = await db.execute(stmt)
    if result.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Group with this slug already exists"
        )


def snapshot_of(group: PermissionGroup) -> GroupSnapshot:
    scopes = {granted.scope for granted in group.actions}
    return GroupSnapshot(
        name=group.name,
        action_type_ids=[granted.action_type_id for granted in group.actions],
        scope=scopes.pop() if len(scopes) == 1 else None,
    )


def list_item_of(group: PermissionGroup) -> GroupListItem:
    return GroupListItem(
        id=group.id,
        organization_id=group.organization_id,
        name=group.name,
        slug=group.slug,
        description=group.description,
        is_system=group.is_system,
        action_count=len(group.actions),
        user_count=len(group.assignments),
        created_at=as_utc(group.created_at),
        updated_at=as_utc(group.updated_at),
    )


def detail_of(group: PermissionGroup) -> GroupDetail:
    return GroupDetail(
        **list_item_of(group).model_dump(),
        actions=[GroupActionResponse.model_validate(granted) for granted in group.actions],
        users=[GroupAssignmentResponse.of(assignment) for assignment in group.assignments],
    )


# ============================================================================
# Group Routes
# ============================================================================

@router.get("", response_model=GroupListResponse)
async def list_groups(
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """List the organization's permission groups with action and user counts."""
    result = await db.execute(
        select(PermissionGroup)
        .where(PermissionGroup.organization_id == caller.organization_id)
        .order_by(PermissionGroup.name)
    )
    data = [list_item_of(group) for group in result.scalars().all()]
    return GroupListResponse(data=data, count=len(data))


@router.get("/{group_id}", response_model=GroupSingleResponse)
async def get_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    group = await get_org_group(db, group_id, caller.organization_id)
    return GroupSingleResponse(data=detail_of(group))


@router.post("", response_model=GroupSingleResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    group_data: GroupCreate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Create a group, optionally with its actions."""
    slug = slugify(group_data.name)
    await ensure_slug_free(db, slug, caller.organization_id)
    actions = await load_org_actions(db, group_data.action_type_ids, caller.organization_id)

    group = PermissionGroup(
        organization_id=caller.organization_id,
        name=group_data.name,
        slug=slug,
        description=group_data.description,
        created_by=caller.person_id,
        actions=[
            PermissionGroupAction(action_type_id=action.id, action_type=action, scope=group_data.scope)
            for action in actions.values()
        ],
        assignments=[],
    )
    db.add(group)
    await db.flush()

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.GRANT,
        target_group_id=group.id,
        new_value=snapshot_of(group),
        reason="Permission group created",
    )
    await db.commit()
    await db.refresh(group)

    log.info("Permission group %s created by %s with %d action(s)", group.slug, caller.person_id, len(actions))
    return GroupSingleResponse(data=detail_of(group))


@router.put("/{group_id}", response_model=GroupSingleResponse)
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Rename a group, or replace its actions and their scope."""
    group = await get_org_group(db, group_id, caller.organization_id)
    previous = snapshot_of(group)
    update_data = group_update.model_dump(exclude_unset=True)

    if update_data.get("name"):
        slug = slugify(update_data["name"])
        await ensure_slug_free(db, slug, caller.organization_id, group.id)
        group.name = update_data["name"]
        group.slug = slug
    if "description" in update_data:
        group.description = update_data["description"]

    scope = update_data.get("scope")
    if update_data.get("action_type_ids") is not None:
        actions = await load_org_actions(db, update_data["action_type_ids"], caller.organization_id)
        # Kept rows are reused so the (group, action) unique key never sees a duplicate
        current = {granted.action_type_id: granted for granted in group.actions}
        group.actions = [
            current.get(action.id)
            or PermissionGroupAction(
                action_type_id=action.id,
                action_type=action,
                scope=scope or PermissionScope.ORGANIZATION,
            )
            for action in actions.values()
        ]
    if scope is not None:
        for granted in group.actions:
            granted.scope = scope

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.MODIFY,
        target_group_id=group.id,
        previous_value=previous,
        new_value=snapshot_of(group),
    )
    await db.commit()
    await db.refresh(group)

    return GroupSingleResponse(data=detail_of(group))


@router.delete("/{group_id}", response_model=GroupDeleteResponse)
async def delete_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Delete a group together with its actions and assignments."""
    group = await get_org_group(db, group_id, caller.organization_id)
    if group.is_system:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot delete system group")

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.REVOKE,
        target_group_id=group.id,
        previous_value=snapshot_of(group),
        reason=f"Permission group deleted with {len(group.assignments)} assignment(s)",
    )
    await db.delete(group)
    await db.commit()

    log.info("Permission group %s deleted by %s", group.slug, caller.person_id)
    return GroupDeleteResponse()


# ============================================================================
# Assignment Routes
# ============================================================================

@router.post("/{group_id}/members", response_model=GroupAssignResponse)
async def assign_group(
    group_id: str,
    assignment_data: GroupAssign,
    response: Response,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """
    Put a person in a group, or refresh an existing assignment.

    A repeated assignment replaces the team and expiry of the existing one
    and answers 200 instead of 201.
    """
    group = await get_org_group(db, group_id, caller.organization_id)
    person = await get_org_person(db, assignment_data.person_id, caller.organization_id)
    if person is None:
        raise HTTPException(status_code=404, detail="Person not found")

    if assignment_data.team_id:
        result = await db.execute(
            select(Team.id).where(
                and_(Team.id == assignment_data.team_id, Team.organization_id == caller.organization_id)
            )
        )
        if result.first() is None:
            raise HTTPException(status_code=404, detail="Team not found")

    existing = next((a for a in group.assignments if a.person_id == person.id), None)
    previous = None
    if existing:
        previous = GroupAssignmentSnapshot(
            group_id=group.id,
            group_name=group.name,
            team_id=existing.team_id,
            expires_at=as_utc(existing.expires_at),
        )
        existing.team_id = assignment_data.team_id
        existing.expires_at = assignment_data.expires_at
        existing.granted_by = caller.person_id
        existing.granted_at = utcnow()
        assignment = existing
    else:
        assignment = UserGroupAssignment(
            group_id=group.id,
            person_id=person.id,
            team_id=assignment_data.team_id,
            expires_at=assignment_data.expires_at,
            granted_by=caller.person_id,
            granted_at=utcnow(),
            person=person,
        )
        group.assignments.append(assignment)
        response.status_code = status.HTTP_201_CREATED

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.GRANT,
        target_user_id=person.id,
        target_group_id=group.id,
        previous_value=previous,
        new_value=GroupAssignmentSnapshot(
            group_id=group.id,
            group_name=group.name,
            team_id=assignment_data.team_id,
            expires_at=assignment_data.expires_at,
        ),
        reason=f"Assigned to group {group.name}",
    )
    await db.commit()

    return GroupAssignResponse(data=GroupAssignmentResponse.of(assignment), created=existing is None)


@router.delete("/{group_id}/members/{person_id}", response_model=GroupUnassignResponse)
async def unassign_group(
    group_id: str,
    person_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Take a person out of a group."""
    group = await get_org_group(db, group_id, caller.organization_id)
    assignment = next((a for a in group.assignments if a.person_id == person_id), None)
    if assignment is None:
        raise HTTPException(status_code=404, detail="Assignment not found")

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.REVOKE,
        target_user_id=person_id,
        target_group_id=group.id,
        previous_value=GroupAssignmentSnapshot(
            group_id=group.id,
            group_name=group.name,
            team_id=assignment.team_id,
            expires_at=as_utc(assignment.expires_at),
        ),
        reason=f"Removed from group {group.name}",
    )
    group.assignments.remove(assignment)
    await db.commit()

    return GroupUnassignResponse()
