"""
Delegation routes.

A person whose position grants an action with can_delegate may hand that
action to a colleague as a granted override. Delegations are revocable only
by the person who granted them.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.people.dependencies import (
    CurrentCaller,
    get_current_caller,
    get_org_person,
    org_person_ids,
)
from app.features.permissions.models import (
    AuditAction,
    PermissionScope,
    UserPermissionOverride,
)
from app.features.permissions.dependencies import (
    broadest_by_action,
    create_audit_log,
    get_active_memberships,
    get_delegable_permissions,
    get_unrevoked_override,
    position_ids_of,
)
from app.features.permissions.snapshots import DelegationSnapshot, OverrideSnapshot
from app.features.delegation.schemas import (
    ActiveDelegation,
    DelegablePermission,
    DelegationOverview,
    DelegationOverviewResponse,
    DelegationRequest,
    DelegationResponse,
    DelegationResult,
    RevokeDelegationResponse,
)
from app.utils import as_utc, get_logger, utcnow


log = get_logger(__name__)
router = APIRouter()


@router.get("", response_model=DelegationOverviewResponse)
async def list_delegations(
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """List what the caller may delegate and the delegations they currently hold out."""
    memberships = await get_active_memberships(db, caller.person_id, caller.organization_id)
    position_ids = position_ids_of(memberships)

    if not position_ids:
        return DelegationOverviewResponse(
            data=DelegationOverview(),
            message="No delegable permissions - no positions assigned",
        )

    delegable = [
        DelegablePermission(
            permission_id=permission.id,
            position_id=permission.position_id,
            action_type_id=permission.action_type_id,
            scope=permission.scope,
            can_delegate=permission.can_delegate,
            action_name=permission.action_type.name,
            action_code=permission.action_type.code,
            action_category=permission.action_type.category,
            action_risk_level=permission.action_type.risk_level,
        )
        for permission in await get_delegable_permissions(db, position_ids)
    ]

    result = await db.execute(
        select(UserPermissionOverride).where(
            and_(
                UserPermissionOverride.granted_by == caller.person_id,
                UserPermissionOverride.person_id.in_(org_person_ids(caller.organization_id)),
                UserPermissionOverride.is_granted == True,  # noqa: E712
                UserPermissionOverride.revoked_at.is_(None),
            )
        )
    )
    now = utcnow()
    active = [
        ActiveDelegation(
            id=override.id,
            target_user_id=override.person_id,
            target_user_name=override.person.display_name,
            target_user_email=override.person.primary_email,
            action_type_id=override.action_type_id,
            scope=override.scope,
            is_granted=override.is_granted,
            expires_at=as_utc(override.expires_at),
            granted_by=override.granted_by,
        )
        for override in result.scalars().all()
        if override.is_active(now)
    ]

    return DelegationOverviewResponse(
        data=DelegationOverview(delegable_permissions=delegable, active_delegations=active)
    )


@router.post("", response_model=DelegationResponse)
async def delegate_permissions(
    request: DelegationRequest,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """
    Delegate one or more actions to another member of the organization.

    Every requested action is checked before anything is written: if any of
    them is not delegable by the caller the whole request fails with 403 and
    the offending ids in unauthorized_actions.
    """
    target = await get_org_person(db, request.target_user_id, caller.organization_id)
    if target is None:
        raise HTTPException(status_code=404, detail="Target user not found")

    memberships = await get_active_memberships(db, caller.person_id, caller.organization_id)
    position_ids = position_ids_of(memberships)
    if not position_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You have no positions with delegation rights"
        )

    action_type_ids = request.requested_action_ids
    delegable = broadest_by_action(
        await get_delegable_permissions(db, position_ids, action_type_ids)
    )
    unauthorized = [action_type_id for action_type_id in action_type_ids if action_type_id not in delegable]
    if unauthorized:
        log.info("Person %s denied delegation of %s", caller.person_id, unauthorized)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "Cannot delegate actions you do not have delegation rights for",
                "unauthorized_actions": unauthorized,
            }
        )

    now = utcnow()
    results = []
    for action_type_id in action_type_ids:
        scope = request.scope or delegable[action_type_id].scope or PermissionScope.TEAM

        existing = await get_unrevoked_override(db, target.id, action_type_id)
        previous = OverrideSnapshot.of(existing) if existing else None

        if existing:
            existing.scope = scope
            existing.is_granted = True
            existing.expires_at = request.expires_at
            existing.granted_by = caller.person_id
            existing.granted_at = now
            existing.reason = request.reason
            override = existing
        else:
            override = UserPermissionOverride(
                person_id=target.id,
                action_type_id=action_type_id,
                is_granted=True,
                scope=scope,
                expires_at=request.expires_at,
                reason=request.reason,
                granted_by=caller.person_id,
                granted_at=now,
            )
            db.add(override)
            await db.flush()

        await create_audit_log(
            db,
            organization_id=caller.organization_id,
            performed_by=caller.person_id,
            action=AuditAction.DELEGATE,
            target_user_id=target.id,
            action_type_id=action_type_id,
            previous_value=previous,
            new_value=DelegationSnapshot(scope=scope, expires_at=request.expires_at),
            reason=request.reason or f"Delegated by {caller.person_id}",
        )

        results.append(DelegationResult(
            action_type_id=action_type_id,
            override_id=override.id,
            status="updated" if existing else "created",
        ))

    await db.commit()
    log.info("Person %s delegated %d action(s) to %s", caller.person_id, len(results), target.id)

    return DelegationResponse(delegated_to=target.display_name, results=results)


@router.delete("", response_model=RevokeDelegationResponse)
async def revoke_delegation(
    id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """Revoke a delegation the caller granted."""
    if not id:
        raise HTTPException(status_code=400, detail="Override ID required")

    result = await db.execute(
        select(UserPermissionOverride).where(
            and_(
                UserPermissionOverride.id == id,
                UserPermissionOverride.granted_by == caller.person_id,
                UserPermissionOverride.revoked_at.is_(None),
            )
        )
    )
    override = result.scalar_one_or_none()

    # Someone else's override looks exactly like a missing one
    if override is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delegation not found or you cannot revoke this delegation"
        )

    previous = OverrideSnapshot.of(override)
    override.revoke(by=caller.person_id, reason="Delegation revoked by grantor")

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.REVOKE,
        target_user_id=override.person_id,
        action_type_id=override.action_type_id,
        previous_value=previous,
        reason="Delegation revoked by grantor",
    )
    await db.commit()

    return RevokeDelegationResponse()
