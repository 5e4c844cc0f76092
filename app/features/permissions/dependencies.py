"""
Permission resolution utilities and dependencies.

Implements:
- Membership → position → position permission lookups
- Effective permission checking (override, position, leadership, inheritance, groups)
- FastAPI dependency for route protection
- Audit logging helper
"""
from dataclasses import dataclass
from typing import Optional, List, Dict, Iterable, Sequence
from fastapi import Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.people.dependencies import CurrentCaller, get_current_caller
from app.features.teams.models import Team, TeamMember, MemberRole
from app.features.permissions.models import (
    ActionType,
    AuditAction,
    PermissionAuditLog,
    PermissionGroup,
    PermissionGroupAction,
    PermissionScope,
    PositionPermission,
    RiskLevel,
    UserGroupAssignment,
    UserPermissionOverride,
)
from app.features.permissions.schemas import PermissionCheckResult
from app.features.permissions.snapshots import dump_snapshot
from app.utils import get_logger, utcnow


log = get_logger(__name__)

# Guard against parent_team_id cycles
MAX_TEAM_DEPTH = 10

INHERITABLE_SCOPES = (PermissionScope.DEPARTMENT, PermissionScope.ORGANIZATION, PermissionScope.GLOBAL)


# ============================================================================
# Membership and position lookups
# ============================================================================

async def get_active_memberships(
    db: AsyncSession,
    person_id: str,
    organization_id: str
) -> List[TeamMember]:
    """Active memberships of a person in non-archived teams of one organization."""
    stmt = (
        select(TeamMember)
        .join(Team, Team.id == TeamMember.team_id)
        .where(
            and_(
                TeamMember.person_id == person_id,
                TeamMember.is_active == True,  # noqa: E712
                Team.organization_id == organization_id,
                Team.archived_at.is_(None),
            )
        )
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


def position_ids_of(memberships: Iterable[TeamMember]) -> List[str]:
    """Distinct, non-null position ids in membership order."""
    seen: Dict[str, None] = {}
    for membership in memberships:
        if membership.position_id:
            seen.setdefault(membership.position_id, None)
    return list(seen)


async def get_delegable_permissions(
    db: AsyncSession,
    position_ids: Sequence[str],
    action_type_ids: Optional[Sequence[str]] = None
) -> List[PositionPermission]:
    """Position permissions flagged can_delegate for the given positions."""
    if not position_ids:
        return []

    stmt = select(PositionPermission).where(
        and_(
            PositionPermission.position_id.in_(position_ids),
            PositionPermission.can_delegate == True,  # noqa: E712
        )
    )
    if action_type_ids is not None:
        stmt = stmt.where(PositionPermission.action_type_id.in_(action_type_ids))

    result = await db.execute(stmt)
    return list(result.scalars().all())


def broadest_by_action(permissions: Iterable[PositionPermission]) -> Dict[str, PositionPermission]:
    """Pick the broadest-scope grant per action when several positions grant it."""
    best: Dict[str, PositionPermission] = {}
    for permission in permissions:
        current = best.get(permission.action_type_id)
        if current is None or permission.scope.rank > current.scope.rank:
            best[permission.action_type_id] = permission
    return best


async def count_position_permissions(db: AsyncSession, position_id: Optional[str]) -> int:
    if position_id is None:
        return 0
    result = await db.execute(
        select(PositionPermission.id).where(PositionPermission.position_id == position_id)
    )
    return len(result.all())


async def get_unrevoked_override(
    db: AsyncSession,
    person_id: str,
    action_type_id: str
) -> Optional[UserPermissionOverride]:
    """The single non-revoked override for (person, action), expired or not."""
    result = await db.execute(
        select(UserPermissionOverride).where(
            and_(
                UserPermissionOverride.person_id == person_id,
                UserPermissionOverride.action_type_id == action_type_id,
                UserPermissionOverride.revoked_at.is_(None),
            )
        )
    )
    return result.scalars().first()


# ============================================================================
# Effective permission resolution
# ============================================================================

@dataclass(frozen=True)
class ResourceContext:
    """Who owns the resource being acted on, and which team it belongs to."""
    owner_id: Optional[str] = None
    team_id: Optional[str] = None


def check_scope_allows(
    scope: PermissionScope,
    person_id: str,
    member_team_id: Optional[str],
    resource: ResourceContext
) -> bool:
    """Check if a grant of this scope reaches the given resource."""
    if scope == PermissionScope.OWN:
        return resource.owner_id == person_id
    if scope in (PermissionScope.TEAM, PermissionScope.DEPARTMENT):
        # Department is treated as team-level until departments are modelled
        return resource.team_id is None or resource.team_id == member_team_id
    return True


async def get_team_hierarchy(db: AsyncSession, team_id: str) -> List[str]:
    """Team id followed by its ancestors, nearest first."""
    hierarchy = [team_id]
    current = team_id
    for _ in range(MAX_TEAM_DEPTH):
        result = await db.execute(select(Team.parent_team_id).where(Team.id == current))
        parent_id = result.scalar_one_or_none()
        if not parent_id or parent_id in hierarchy:
            break
        hierarchy.append(parent_id)
        current = parent_id
    return hierarchy


async def _check_inherited(
    db: AsyncSession,
    action: ActionType,
    memberships: List[TeamMember],
    resource: ResourceContext
) -> Optional[PermissionCheckResult]:
    """
    Positions held in an ancestor team pass department-or-broader grants down
    to its sub-teams. The walk starts at the resource's team when one is given,
    otherwise at each team the person belongs to.
    """
    start_ids = [resource.team_id] if resource.team_id else list(dict.fromkeys(m.team_id for m in memberships))
    for team_id in start_ids:
        hierarchy = await get_team_hierarchy(db, team_id)
        for ancestor_id in hierarchy[1:]:
            positions = [
                m.position_id for m in memberships
                if m.team_id == ancestor_id and m.position_id
            ]
            if not positions:
                continue
            result = await db.execute(
                select(PositionPermission).where(
                    and_(
                        PositionPermission.position_id.in_(positions),
                        PositionPermission.action_type_id == action.id,
                        PositionPermission.scope.in_(INHERITABLE_SCOPES),
                    )
                )
            )
            inherited = result.scalars().first()
            if inherited:
                return PermissionCheckResult(
                    action_code=action.code,
                    allowed=True,
                    scope=inherited.scope,
                    source="position",
                    position_id=inherited.position_id,
                    team_id=ancestor_id,
                    can_delegate=inherited.can_delegate,
                )
    return None


async def _check_groups(
    db: AsyncSession,
    person_id: str,
    organization_id: str,
    action: ActionType,
    resource: ResourceContext
) -> Optional[PermissionCheckResult]:
    """Broadest reaching grant among the person's unexpired group assignments."""
    result = await db.execute(
        select(UserGroupAssignment, PermissionGroupAction)
        .join(PermissionGroup, PermissionGroup.id == UserGroupAssignment.group_id)
        .join(PermissionGroupAction, PermissionGroupAction.group_id == PermissionGroup.id)
        .where(
            and_(
                UserGroupAssignment.person_id == person_id,
                PermissionGroup.organization_id == organization_id,
                PermissionGroupAction.action_type_id == action.id,
            )
        )
    )
    now = utcnow()
    grants = sorted(
        ((assignment, granted) for assignment, granted in result.all() if assignment.is_active(now)),
        key=lambda pair: pair[1].scope.rank,
        reverse=True
    )
    for assignment, granted in grants:
        if check_scope_allows(granted.scope, person_id, assignment.team_id, resource):
            return PermissionCheckResult(
                action_code=action.code,
                allowed=True,
                scope=granted.scope,
                source="group",
                group_id=assignment.group_id,
                team_id=assignment.team_id,
                can_delegate=False,
            )
    return None


async def resolve_permission(
    db: AsyncSession,
    person_id: str,
    organization_id: str,
    action: ActionType,
    resource: Optional[ResourceContext] = None
) -> PermissionCheckResult:
    """
    Decide whether a person may perform an action.

    Order:
    1. Active override (explicit grant or explicit deny) wins outright
    2. Broadest position permission whose scope reaches the resource
    3. Team owners/leads get implicit team scope on non-critical actions
    4. Department-or-broader grants from positions held in ancestor teams
    5. Unexpired permission group assignments
    6. Otherwise denied
    """
    resource = resource or ResourceContext()
    denied = PermissionCheckResult(action_code=action.code, allowed=False, scope=None, source="none")

    override = await get_unrevoked_override(db, person_id, action.id)
    if override and override.is_active():
        if not override.is_granted:
            return PermissionCheckResult(action_code=action.code, allowed=False, scope=None, source="override")
        return PermissionCheckResult(
            action_code=action.code,
            allowed=True,
            scope=override.scope,
            source="override",
            team_id=override.team_id,
            can_delegate=False,
        )

    memberships = await get_active_memberships(db, person_id, organization_id)
    position_ids = position_ids_of(memberships)
    if position_ids:
        result = await db.execute(
            select(PositionPermission).where(
                and_(
                    PositionPermission.position_id.in_(position_ids),
                    PositionPermission.action_type_id == action.id,
                )
            )
        )
        permissions = sorted(result.scalars().all(), key=lambda p: p.scope.rank, reverse=True)
        for permission in permissions:
            for membership in memberships:
                if membership.position_id != permission.position_id:
                    continue
                if check_scope_allows(permission.scope, person_id, membership.team_id, resource):
                    return PermissionCheckResult(
                        action_code=action.code,
                        allowed=True,
                        scope=permission.scope,
                        source="position",
                        position_id=permission.position_id,
                        team_id=membership.team_id,
                        can_delegate=permission.can_delegate,
                    )

    if memberships and action.risk_level != RiskLevel.CRITICAL:
        leader = next(
            (
                m for m in memberships
                if m.member_role in (MemberRole.OWNER, MemberRole.LEAD)
                and (resource.team_id is None or m.team_id == resource.team_id)
            ),
            None
        )
        if leader:
            return PermissionCheckResult(
                action_code=action.code,
                allowed=True,
                scope=PermissionScope.TEAM,
                source="position",
                team_id=leader.team_id,
                can_delegate=True,
            )

    if memberships:
        inherited = await _check_inherited(db, action, memberships, resource)
        if inherited:
            return inherited

    grouped = await _check_groups(db, person_id, organization_id, action, resource)
    if grouped:
        return grouped

    log.debug("Person %s denied %s in org %s", person_id, action.code, organization_id)
    return denied


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def require_action(action_code: str):
    """
    FastAPI dependency to require a specific action.

    Organization owners and admins always pass.

    Usage:
        @router.get("/audit-logs")
        async def list_audit_logs(
            caller: CurrentCaller = Depends(require_action("permissions.audit"))
        ):
            ...

    Raises:
        HTTPException: 403 if the caller may not perform the action
    """
    async def action_dependency(
        db: AsyncSession = Depends(get_db),
        caller: CurrentCaller = Depends(get_current_caller)
    ) -> CurrentCaller:
        if caller.is_org_admin:
            return caller

        result = await db.execute(
            select(ActionType).where(
                and_(
                    ActionType.organization_id == caller.organization_id,
                    ActionType.code == action_code,
                    ActionType.is_active == True,  # noqa: E712
                )
            )
        )
        action = result.scalar_one_or_none()
        if action is None:
            log.warning("Action type not found: %s", action_code)
        elif (await resolve_permission(db, caller.person_id, caller.organization_id, action)).allowed:
            return caller

        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: {action_code}"
        )

    return action_dependency


# ============================================================================
# Audit Logging
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    *,
    organization_id: str,
    performed_by: str,
    action: AuditAction,
    target_user_id: Optional[str] = None,
    target_position_id: Optional[str] = None,
    target_group_id: Optional[str] = None,
    action_type_id: Optional[str] = None,
    previous_value: Optional[BaseModel] = None,
    new_value: Optional[BaseModel] = None,
    reason: Optional[str] = None
) -> PermissionAuditLog:
    """
    Stage an audit log entry in the caller's transaction.

    The row is committed together with the change it describes, so an audit
    entry never exists for a write that was rolled back.
    """
    audit_log = PermissionAuditLog(
        organization_id=organization_id,
        action=action,
        target_user_id=target_user_id,
        target_position_id=target_position_id,
        target_group_id=target_group_id,
        action_type_id=action_type_id,
        previous_value=dump_snapshot(previous_value),
        new_value=dump_snapshot(new_value),
        performed_by=performed_by,
        performed_at=utcnow(),
        reason=reason,
    )
    db.add(audit_log)

    log.info(
        "Audit: by=%s action=%s target=%s position=%s group=%s action_type=%s org=%s",
        performed_by, action.value, target_user_id, target_position_id, target_group_id, action_type_id,
        organization_id
    )

    return audit_log
