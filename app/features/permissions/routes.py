"""
Permission management API routes.

Provides endpoints for the action type registry, position permissions,
effective permission checks, override expiry and the audit log.
"""
import math
from datetime import timedelta
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.people.dependencies import (
    CurrentCaller,
    get_current_caller,
    get_current_org_admin,
    get_org_person,
    org_person_ids,
)
from app.features.teams.models import TeamPosition
from app.features.permissions.models import (
    ActionType,
    AuditAction,
    PermissionAuditLog,
    PermissionGroup,
    PermissionScope,
    PositionPermission,
    UserGroupAssignment,
    UserPermissionOverride,
)
from app.features.permissions.schemas import (
    ActionTypeCreate,
    ActionTypeUpdate,
    ActionTypeResponse,
    PositionPermissionCreate,
    PositionPermissionBulkUpdate,
    PositionPermissionBulkResult,
    PositionPermissionResponse,
    PermissionCheckResult,
    PermissionCheckResponse,
    PermissionSummary,
    MyPermissionsResponse,
    ExpiringOverride,
    ExpiringOverridesResponse,
    ExpirySummary,
    ExtendExpiryRequest,
    ExtendExpiryResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.snapshots import (
    ExpirySnapshot,
    PositionPermissionBulkSnapshot,
    PositionPermissionSnapshot,
)
from app.features.permissions.dependencies import (
    ResourceContext,
    create_audit_log,
    require_action,
    resolve_permission,
)
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)
router = APIRouter()


async def _get_org_position(db: AsyncSession, position_id: str, organization_id: str) -> TeamPosition:
    result = await db.execute(
        select(TeamPosition).where(
            and_(TeamPosition.id == position_id, TeamPosition.organization_id == organization_id)
        )
    )
    position = result.scalar_one_or_none()
    if position is None:
        raise HTTPException(status_code=404, detail="Position not found")
    return position


async def _get_action_type(db: AsyncSession, action_type_id: str, organization_id: str) -> ActionType:
    result = await db.execute(
        select(ActionType).where(
            and_(ActionType.id == action_type_id, ActionType.organization_id == organization_id)
        )
    )
    action_type = result.scalar_one_or_none()
    if action_type is None:
        raise HTTPException(status_code=404, detail="Action type not found")
    return action_type


# ============================================================================
# Action Type Routes
# ============================================================================

@router.get("/action-types", response_model=List[ActionTypeResponse])
async def list_action_types(
    category: Optional[str] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """List the organization's action types, grouped by category then code."""
    stmt = select(ActionType).where(ActionType.organization_id == caller.organization_id)
    if category:
        stmt = stmt.where(ActionType.category == category)
    if not include_inactive:
        stmt = stmt.where(ActionType.is_active == True)  # noqa: E712

    result = await db.execute(stmt.order_by(ActionType.category, ActionType.code))
    return result.scalars().all()


@router.post("/action-types", response_model=ActionTypeResponse, status_code=status.HTTP_201_CREATED)
async def create_action_type(
    action_type: ActionTypeCreate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Register a new action type (organization admins only)."""
    existing = await db.execute(
        select(ActionType.id).where(
            and_(
                ActionType.organization_id == caller.organization_id,
                ActionType.code == action_type.code,
            )
        )
    )
    if existing.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Action type with this code already exists"
        )

    db_action_type = ActionType(**action_type.model_dump(), organization_id=caller.organization_id)
    db.add(db_action_type)
    await db.commit()
    await db.refresh(db_action_type)

    log.info("Action type %s registered by %s", db_action_type.code, caller.person_id)
    return db_action_type


@router.put("/action-types/{action_type_id}", response_model=ActionTypeResponse)
async def update_action_type(
    action_type_id: str,
    action_type_update: ActionTypeUpdate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Update an action type's display fields, risk level or active flag."""
    action_type = await _get_action_type(db, action_type_id, caller.organization_id)

    for field, value in action_type_update.model_dump(exclude_unset=True).items():
        setattr(action_type, field, value)

    await db.commit()
    await db.refresh(action_type)
    return action_type


# ============================================================================
# Position Permission Routes
# ============================================================================

@router.get("/position-permissions", response_model=List[PositionPermissionResponse])
async def list_position_permissions(
    position_id: Optional[str] = None,
    action_type_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """List position permissions of the caller's organization."""
    stmt = (
        select(PositionPermission)
        .join(TeamPosition, TeamPosition.id == PositionPermission.position_id)
        .where(TeamPosition.organization_id == caller.organization_id)
    )
    if position_id:
        stmt = stmt.where(PositionPermission.position_id == position_id)
    if action_type_id:
        stmt = stmt.where(PositionPermission.action_type_id == action_type_id)

    result = await db.execute(stmt.order_by(PositionPermission.position_id, PositionPermission.granted_at))
    return result.scalars().all()


@router.post("/position-permissions", response_model=PositionPermissionResponse)
async def upsert_position_permission(
    permission: PositionPermissionCreate,
    response: Response,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Grant an action to a position, or update the existing grant."""
    await _get_org_position(db, permission.position_id, caller.organization_id)
    action_type = await _get_action_type(db, permission.action_type_id, caller.organization_id)
    if not action_type.is_active:
        raise HTTPException(status_code=404, detail="Action type not found")

    result = await db.execute(
        select(PositionPermission).where(
            and_(
                PositionPermission.position_id == permission.position_id,
                PositionPermission.action_type_id == permission.action_type_id,
            )
        )
    )
    existing = result.scalar_one_or_none()

    if existing is None:
        db_permission = PositionPermission(**permission.model_dump(), granted_by=caller.person_id)
        db.add(db_permission)
        previous = None
        audit_action = AuditAction.GRANT
        response.status_code = status.HTTP_201_CREATED
    else:
        previous = PositionPermissionSnapshot(scope=existing.scope, can_delegate=existing.can_delegate)
        existing.scope = permission.scope
        existing.can_delegate = permission.can_delegate
        existing.conditions = permission.conditions
        existing.granted_by = caller.person_id
        existing.granted_at = utcnow()
        db_permission = existing
        audit_action = AuditAction.MODIFY

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=audit_action,
        target_position_id=permission.position_id,
        action_type_id=permission.action_type_id,
        previous_value=previous,
        new_value=PositionPermissionSnapshot(scope=permission.scope, can_delegate=permission.can_delegate),
    )
    await db.commit()
    await db.refresh(db_permission)
    return db_permission


@router.put("/position-permissions", response_model=PositionPermissionBulkResult)
async def bulk_update_position_permissions(
    bulk: PositionPermissionBulkUpdate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """
    Enable or disable many actions on one position.

    Enabling creates missing grants and updates existing ones; disabling
    deletes the grant. Unknown action types fail the whole request.
    """
    await _get_org_position(db, bulk.position_id, caller.organization_id)

    requested_ids = {toggle.action_type_id for toggle in bulk.permissions}
    found = await db.execute(
        select(ActionType.id).where(
            and_(
                ActionType.id.in_(requested_ids),
                ActionType.organization_id == caller.organization_id,
            )
        )
    )
    missing = requested_ids - set(found.scalars().all())
    if missing:
        raise HTTPException(
            status_code=404,
            detail={"error": "Action type not found", "missing_action_types": sorted(missing)}
        )

    result = await db.execute(
        select(PositionPermission).where(PositionPermission.position_id == bulk.position_id)
    )
    current = {p.action_type_id: p for p in result.scalars().all()}

    created = updated = deleted = 0
    for toggle in bulk.permissions:
        existing = current.get(toggle.action_type_id)
        if toggle.enabled and existing is None:
            db.add(PositionPermission(
                position_id=bulk.position_id,
                action_type_id=toggle.action_type_id,
                scope=toggle.scope or PermissionScope.TEAM,
                can_delegate=bool(toggle.can_delegate),
                granted_by=caller.person_id,
            ))
            created += 1
        elif toggle.enabled:
            if toggle.scope is not None:
                existing.scope = toggle.scope
            if toggle.can_delegate is not None:
                existing.can_delegate = toggle.can_delegate
            updated += 1
        elif existing is not None:
            await db.delete(existing)
            current.pop(toggle.action_type_id)
            deleted += 1

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.MODIFY,
        target_position_id=bulk.position_id,
        new_value=PositionPermissionBulkSnapshot(created=created, updated=updated, deleted=deleted),
        reason="Bulk position permission update",
    )
    await db.commit()

    return PositionPermissionBulkResult(created=created, updated=updated, deleted=deleted)


@router.delete("/position-permissions", status_code=status.HTTP_200_OK)
async def delete_position_permission(
    position_id: str,
    action_type_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    """Remove an action from a position."""
    await _get_org_position(db, position_id, caller.organization_id)

    result = await db.execute(
        select(PositionPermission).where(
            and_(
                PositionPermission.position_id == position_id,
                PositionPermission.action_type_id == action_type_id,
            )
        )
    )
    permission = result.scalar_one_or_none()
    if permission is None:
        raise HTTPException(status_code=404, detail="Position permission not found")

    previous = PositionPermissionSnapshot(scope=permission.scope, can_delegate=permission.can_delegate)
    await db.delete(permission)
    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.REVOKE,
        target_position_id=position_id,
        action_type_id=action_type_id,
        previous_value=previous,
    )
    await db.commit()

    return {"success": True}


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.get("/permissions/check", response_model=PermissionCheckResponse)
async def check_permissions(
    action: Optional[str] = None,
    actions: Optional[str] = None,
    resource_owner_id: Optional[str] = None,
    resource_team_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """
    Check the caller's effective permission for one or more actions.

    Use ?action=wiki.create for a single action or ?actions=a,b for several.
    Unknown codes are reported as denied.
    """
    codes = [action] if action else [c.strip() for c in (actions or "").split(",") if c.strip()]
    if not codes:
        raise HTTPException(status_code=400, detail="action or actions parameter is required")

    result = await db.execute(
        select(ActionType).where(
            and_(
                ActionType.organization_id == caller.organization_id,
                ActionType.code.in_(codes),
                ActionType.is_active == True,  # noqa: E712
            )
        )
    )
    by_code = {a.code: a for a in result.scalars().all()}
    resource = ResourceContext(owner_id=resource_owner_id, team_id=resource_team_id)

    results = {}
    for code in codes:
        action_type = by_code.get(code)
        if action_type is None:
            results[code] = PermissionCheckResult(action_code=code, allowed=False, source="none")
            continue
        results[code] = await resolve_permission(
            db, caller.person_id, caller.organization_id, action_type, resource
        )

    return PermissionCheckResponse(results=results)


@router.get("/permissions/me", response_model=MyPermissionsResponse)
async def get_my_permissions(
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """Resolve every active action type for the caller."""
    result = await db.execute(
        select(ActionType)
        .where(
            and_(
                ActionType.organization_id == caller.organization_id,
                ActionType.is_active == True,  # noqa: E712
            )
        )
        .order_by(ActionType.category, ActionType.code)
    )

    permissions = [
        await resolve_permission(db, caller.person_id, caller.organization_id, action_type)
        for action_type in result.scalars().all()
    ]
    allowed = [p for p in permissions if p.allowed]

    return MyPermissionsResponse(
        person_id=caller.person_id,
        organization_id=caller.organization_id,
        permissions=permissions,
        summary=PermissionSummary(
            total=len(permissions),
            allowed=len(allowed),
            from_overrides=sum(1 for p in allowed if p.source == "override"),
            from_positions=sum(1 for p in allowed if p.source == "position"),
            from_groups=sum(1 for p in allowed if p.source == "group"),
            delegable=sum(1 for p in allowed if p.can_delegate),
        ),
    )


# ============================================================================
# Expiry Routes
# ============================================================================

def _urgency(days_remaining: int) -> str:
    if days_remaining <= 1:
        return "critical"
    if days_remaining <= 3:
        return "warning"
    return "notice"


@router.get("/permission-expiry", response_model=ExpiringOverridesResponse)
async def list_expiring_overrides(
    days: int = Query(7, ge=1, le=90),
    person_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """
    List granted overrides and group assignments expiring within the next
    `days` days.

    Organization admins see the whole organization; everyone else only sees
    their own entries.
    """
    if not caller.is_org_admin:
        person_id = caller.person_id

    stmt = select(UserPermissionOverride).where(
        and_(
            UserPermissionOverride.person_id.in_(org_person_ids(caller.organization_id)),
            UserPermissionOverride.is_granted == True,  # noqa: E712
            UserPermissionOverride.revoked_at.is_(None),
            UserPermissionOverride.expires_at.is_not(None),
        )
    )
    if person_id:
        stmt = stmt.where(UserPermissionOverride.person_id == person_id)
    result = await db.execute(stmt)

    now = utcnow()
    horizon = now + timedelta(days=days)
    expiring = []
    for override in result.scalars().all():
        expires_at = as_utc(override.expires_at)
        if not now < expires_at <= horizon:
            continue
        days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)
        expiring.append(ExpiringOverride(
            id=override.id,
            person_id=override.person_id,
            person_name=override.person.display_name,
            person_email=override.person.primary_email,
            action_type_id=override.action_type_id,
            action_code=override.action_type.code,
            action_name=override.action_type.name,
            scope=override.scope,
            expires_at=expires_at,
            days_remaining=days_remaining,
            urgency=_urgency(days_remaining),
            granted_by=override.granted_by,
        ))

    stmt = (
        select(UserGroupAssignment)
        .join(PermissionGroup, PermissionGroup.id == UserGroupAssignment.group_id)
        .where(
            and_(
                PermissionGroup.organization_id == caller.organization_id,
                UserGroupAssignment.expires_at.is_not(None),
            )
        )
    )
    if person_id:
        stmt = stmt.where(UserGroupAssignment.person_id == person_id)
    result = await db.execute(stmt)

    for assignment in result.scalars().all():
        expires_at = as_utc(assignment.expires_at)
        if not now < expires_at <= horizon:
            continue
        days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)
        expiring.append(ExpiringOverride(
            kind="group",
            id=assignment.id,
            person_id=assignment.person_id,
            person_name=assignment.person.display_name,
            person_email=assignment.person.primary_email,
            group_id=assignment.group_id,
            group_name=assignment.group.name,
            expires_at=expires_at,
            days_remaining=days_remaining,
            urgency=_urgency(days_remaining),
            granted_by=assignment.granted_by,
        ))
    expiring.sort(key=lambda item: item.expires_at)

    return ExpiringOverridesResponse(
        data=expiring,
        summary=ExpirySummary(
            total=len(expiring),
            critical=sum(1 for item in expiring if item.urgency == "critical"),
            warning=sum(1 for item in expiring if item.urgency == "warning"),
            notice=sum(1 for item in expiring if item.urgency == "notice"),
        ),
    )


@router.post("/permission-expiry", response_model=ExtendExpiryResponse)
async def extend_override_expiry(
    request: ExtendExpiryRequest,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """Push an override's expiry out by `extend_days` (admins or the original grantor)."""
    result = await db.execute(
        select(UserPermissionOverride).where(
            and_(
                UserPermissionOverride.id == request.id,
                UserPermissionOverride.revoked_at.is_(None),
            )
        )
    )
    override = result.scalar_one_or_none()
    if (
        override is None
        or await get_org_person(db, override.person_id, caller.organization_id) is None
        or not (caller.is_org_admin or override.granted_by == caller.person_id)
    ):
        raise HTTPException(status_code=404, detail="Override not found")

    now = utcnow()
    previous = as_utc(override.expires_at)
    override.expires_at = max(previous or now, now) + timedelta(days=request.extend_days)

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.MODIFY,
        target_user_id=override.person_id,
        action_type_id=override.action_type_id,
        previous_value=ExpirySnapshot(expires_at=previous),
        new_value=ExpirySnapshot(expires_at=override.expires_at),
        reason=f"Expiry extended by {request.extend_days} days",
    )
    await db.commit()

    return ExtendExpiryResponse(id=override.id, previous_expires_at=previous, expires_at=override.expires_at)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    action: Optional[AuditAction] = None,
    target_user_id: Optional[str] = None,
    target_group_id: Optional[str] = None,
    action_type_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(require_action("permissions.audit"))
):
    """List the organization's permission audit log, newest first."""
    stmt = select(PermissionAuditLog).where(PermissionAuditLog.organization_id == caller.organization_id)

    if action:
        stmt = stmt.where(PermissionAuditLog.action == action)
    if target_user_id:
        stmt = stmt.where(PermissionAuditLog.target_user_id == target_user_id)
    if target_group_id:
        stmt = stmt.where(PermissionAuditLog.target_group_id == target_group_id)
    if action_type_id:
        stmt = stmt.where(PermissionAuditLog.action_type_id == action_type_id)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(PermissionAuditLog.performed_at.desc(), PermissionAuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit
    page = (skip // limit) + 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
