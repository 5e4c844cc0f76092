"""
Team, membership and position routes.

Three routers live here and are mounted under /teams, /members and
/positions. Every lookup is scoped to the caller's organization, and a row
from another organization is reported as missing.
"""
import re
import unicodedata
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.people.dependencies import (
    CurrentCaller,
    get_current_caller,
    get_current_org_admin,
    get_org_person,
)
from app.features.teams.models import Team, TeamMember, TeamPosition, TeamType
from app.features.teams.schemas import (
    ChildTeam,
    MemberAdd,
    MemberCreate,
    MemberCreateResponse,
    MemberDetail,
    MemberDetailResponse,
    MemberRemoveResponse,
    MemberResponse,
    MemberUpdate,
    MemberUpdateResponse,
    PositionCreate,
    PositionDetail,
    PositionResponse,
    PositionUpdate,
    TeamCreate,
    TeamDetail,
    TeamDetailResponse,
    TeamListItem,
    TeamListResponse,
    TeamResponse,
    TeamSingleResponse,
    TeamUpdate,
)
from app.features.permissions.models import AuditAction, PositionPermission
from app.features.permissions.schemas import PositionPermissionResponse
from app.features.permissions.snapshots import MembershipSnapshot, PositionChangeSnapshot
from app.features.permissions.dependencies import (
    count_position_permissions,
    create_audit_log,
    require_action,
)
from app.utils import get_logger, utcnow


log = get_logger(__name__)
router = APIRouter()
member_router = APIRouter()
position_router = APIRouter()


def slugify(value: str) -> str:
    """ASCII-fold, lowercase and dash-separate: "Coordenação Pedagógica" -> "coordenacao-pedagogica"."""
    folded = unicodedata.normalize("NFD", value)
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", "-", folded.lower()).strip("-")


# ============================================================================
# Scoped loaders
# ============================================================================

async def get_org_team(
    db: AsyncSession,
    team_id: str,
    organization_id: str,
    include_archived: bool = False
) -> Team:
    stmt = select(Team).where(and_(Team.id == team_id, Team.organization_id == organization_id))
    if not include_archived:
        stmt = stmt.where(Team.archived_at.is_(None))
    result = await db.execute(stmt)
    team = result.scalar_one_or_none()
    if team is None:
        raise HTTPException(status_code=404, detail="Team not found")
    return team


async def get_org_member(db: AsyncSession, member_id: str, organization_id: str) -> TeamMember:
    result = await db.execute(
        select(TeamMember)
        .join(Team, Team.id == TeamMember.team_id)
        .where(and_(TeamMember.id == member_id, Team.organization_id == organization_id))
    )
    member = result.scalar_one_or_none()
    if member is None:
        raise HTTPException(status_code=404, detail="Member not found")
    return member


async def get_org_position(db: AsyncSession, position_id: str, organization_id: str) -> TeamPosition:
    result = await db.execute(
        select(TeamPosition).where(
            and_(TeamPosition.id == position_id, TeamPosition.organization_id == organization_id)
        )
    )
    position = result.scalar_one_or_none()
    if position is None:
        raise HTTPException(status_code=404, detail="Position not found")
    return position


async def list_position_permissions(db: AsyncSession, position_id: Optional[str]) -> List[PositionPermissionResponse]:
    if position_id is None:
        return []
    result = await db.execute(
        select(PositionPermission).where(PositionPermission.position_id == position_id)
    )
    return [PositionPermissionResponse.model_validate(p) for p in result.scalars().all()]


async def add_member_to_team(
    db: AsyncSession,
    caller: CurrentCaller,
    team_id: str,
    member_data: MemberAdd
) -> TeamMember:
    """Shared by POST /members and POST /teams/{id}."""
    team = await get_org_team(db, team_id, caller.organization_id)

    person = await get_org_person(db, member_data.person_id, caller.organization_id)
    if person is None:
        raise HTTPException(status_code=404, detail="Person not found")

    position = None
    if member_data.position_id:
        position = await get_org_position(db, member_data.position_id, caller.organization_id)

    if member_data.reports_to_member_id:
        await get_org_member(db, member_data.reports_to_member_id, caller.organization_id)

    result = await db.execute(
        select(TeamMember.id).where(
            and_(
                TeamMember.team_id == team.id,
                TeamMember.person_id == person.id,
                TeamMember.is_active == True,  # noqa: E712
            )
        )
    )
    if result.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Person is already an active member of this team"
        )

    member = TeamMember(
        **member_data.model_dump(),
        team_id=team.id,
        team=team,
        person=person,
        position=position,
    )
    db.add(member)
    await db.flush()

    await create_audit_log(
        db,
        organization_id=caller.organization_id,
        performed_by=caller.person_id,
        action=AuditAction.GRANT,
        target_user_id=person.id,
        target_position_id=member.position_id,
        new_value=MembershipSnapshot(team_id=team.id, position_id=member.position_id),
        reason="Added to team",
    )
    await db.commit()

    log.info("Person %s added to team %s by %s", person.id, team.id, caller.person_id)
    return member


# ============================================================================
# Team Routes
# ============================================================================

@router.get("", response_model=TeamListResponse)
async def list_teams(
    include_members: bool = False,
    parent_id: Optional[str] = None,
    type: Optional[TeamType] = None,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """List non-archived teams of the organization with active member counts."""
    stmt = select(Team).where(
        and_(Team.organization_id == caller.organization_id, Team.archived_at.is_(None))
    )
    if parent_id:
        stmt = stmt.where(Team.parent_team_id == parent_id)
    if type:
        stmt = stmt.where(Team.team_type == type)

    result = await db.execute(stmt.order_by(Team.name))
    teams = result.scalars().all()
    team_ids = [team.id for team in teams]

    counts = {}
    members_by_team = {}
    if team_ids:
        count_result = await db.execute(
            select(TeamMember.team_id, func.count(TeamMember.id))
            .where(and_(TeamMember.team_id.in_(team_ids), TeamMember.is_active == True))  # noqa: E712
            .group_by(TeamMember.team_id)
        )
        counts = dict(count_result.all())

        if include_members:
            member_result = await db.execute(
                select(TeamMember).where(
                    and_(TeamMember.team_id.in_(team_ids), TeamMember.is_active == True)  # noqa: E712
                )
            )
            for member in member_result.scalars().all():
                members_by_team.setdefault(member.team_id, []).append(MemberResponse.of(member))

    data = []
    for team in teams:
        item = TeamListItem.model_validate(team)
        item.member_count = counts.get(team.id, 0)
        if include_members:
            item.members = members_by_team.get(team.id, [])
        data.append(item)

    return TeamListResponse(data=data)


@router.post("", response_model=TeamSingleResponse, status_code=status.HTTP_201_CREATED)
async def create_team(
    team_data: TeamCreate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(require_action("teams.manage"))
):
    """Create a team in the caller's organization."""
    slug = team_data.slug or slugify(team_data.name)
    if not slug:
        raise HTTPException(status_code=400, detail="Could not derive a slug from the team name")

    existing = await db.execute(
        select(Team.id).where(and_(Team.organization_id == caller.organization_id, Team.slug == slug))
    )
    if existing.first() is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Team with this slug already exists"
        )

    if team_data.parent_team_id:
        try:
            await get_org_team(db, team_data.parent_team_id, caller.organization_id)
        except HTTPException:
            raise HTTPException(status_code=404, detail="Parent team not found")

    team = Team(
        organization_id=caller.organization_id,
        name=team_data.name,
        slug=slug,
        description=team_data.description,
        team_type=team_data.team_type,
        parent_team_id=team_data.parent_team_id,
        icon=team_data.icon or "IconUsers",
        color=team_data.color or "blue",
        settings=team_data.settings or {},
        created_by=caller.person_id,
    )
    db.add(team)
    await db.commit()
    await db.refresh(team)

    log.info("Team %s (%s) created by %s", team.id, team.slug, caller.person_id)
    return TeamSingleResponse(data=TeamResponse.model_validate(team))


@router.get("/{team_id}", response_model=TeamDetailResponse)
async def get_team(
    team_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """Get a team with all of its members and its child teams."""
    team = await get_org_team(db, team_id, caller.organization_id)

    member_result = await db.execute(
        select(TeamMember).where(TeamMember.team_id == team.id).order_by(TeamMember.start_date)
    )
    child_result = await db.execute(
        select(Team).where(
            and_(
                Team.parent_team_id == team.id,
                Team.organization_id == caller.organization_id,
                Team.archived_at.is_(None),
            )
        )
    )

    detail = TeamDetail(
        **TeamResponse.model_validate(team).model_dump(),
        members=[MemberResponse.of(m) for m in member_result.scalars().all()],
        child_teams=[ChildTeam.model_validate(c) for c in child_result.scalars().all()],
    )
    return TeamDetailResponse(data=detail)


@router.put("/{team_id}", response_model=TeamSingleResponse)
async def update_team(
    team_id: str,
    team_update: TeamUpdate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(require_action("teams.manage"))
):
    """Partially update a team."""
    team = await get_org_team(db, team_id, caller.organization_id, include_archived=True)
    update_data = team_update.model_dump(exclude_unset=True)

    parent_id = update_data.get("parent_team_id")
    if parent_id == team.id:
        raise HTTPException(status_code=400, detail="Team cannot be its own parent")
    if parent_id:
        try:
            await get_org_team(db, parent_id, caller.organization_id)
        except HTTPException:
            raise HTTPException(status_code=404, detail="Parent team not found")

    for field, value in update_data.items():
        if field in ("name", "team_type", "icon", "color", "is_active", "settings") and value is None:
            continue
        setattr(team, field, value)

    await db.commit()
    await db.refresh(team)
    return TeamSingleResponse(data=TeamResponse.model_validate(team))


@router.delete("/{team_id}")
async def archive_team(
    team_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(require_action("teams.manage"))
):
    """Archive a team and end its active memberships."""
    team = await get_org_team(db, team_id, caller.organization_id)

    children = await db.execute(
        select(Team.id).where(and_(Team.parent_team_id == team.id, Team.archived_at.is_(None)))
    )
    if children.first() is not None:
        raise HTTPException(status_code=400, detail="Cannot archive team with child teams")

    now = utcnow()
    team.archived_at = now
    team.is_active = False

    result = await db.execute(
        select(TeamMember).where(
            and_(TeamMember.team_id == team.id, TeamMember.is_active == True)  # noqa: E712
        )
    )
    ended = 0
    for member in result.scalars().all():
        member.end(at=now)
        ended += 1

    await db.commit()
    log.info("Team %s archived by %s, %d membership(s) ended", team.id, caller.person_id, ended)

    return {"success": True}


@router.post("/{team_id}", response_model=MemberCreateResponse, status_code=status.HTTP_201_CREATED)
async def add_team_member(
    team_id: str,
    member_data: MemberAdd,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(require_action("members.manage"))
):
    """Add a member to this team."""
    member = await add_member_to_team(db, caller, team_id, member_data)
    return MemberCreateResponse(data=MemberResponse.of(member))


# ============================================================================
# Member Routes
# ============================================================================

@member_router.post("", response_model=MemberCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_member(
    member_data: MemberCreate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(require_action("members.manage"))
):
    """Add a member to the team named in the body."""
    member = await add_member_to_team(
        db, caller, member_data.team_id, MemberAdd(**member_data.model_dump(exclude={"team_id"}))
    )
    return MemberCreateResponse(data=MemberResponse.of(member))


@member_router.get("/{member_id}", response_model=MemberDetailResponse)
async def get_member(
    member_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """Get a member with person and position details plus the position's permissions."""
    member = await get_org_member(db, member_id, caller.organization_id)

    detail = MemberDetail(
        **MemberResponse.of(member).model_dump(),
        permissions=await list_position_permissions(db, member.position_id),
    )
    return MemberDetailResponse(data=detail)


@member_router.put("/{member_id}", response_model=MemberUpdateResponse)
async def update_member(
    member_id: str,
    member_update: MemberUpdate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(require_action("members.manage"))
):
    """
    Partially update a member.

    A position change is written to the audit log as a single modify entry
    with the old and new position ids and their permission counts. Nothing
    is recomputed; permissions are always derived from the current position.
    Setting is_active false ends the membership exactly as DELETE does.
    """
    member = await get_org_member(db, member_id, caller.organization_id)
    update_data = member_update.model_dump(exclude_unset=True)

    old_position_id = member.position_id
    position_changed = "position_id" in update_data and update_data["position_id"] != old_position_id

    if update_data.get("position_id"):
        await get_org_position(db, update_data["position_id"], caller.organization_id)

    reports_to = update_data.get("reports_to_member_id")
    if reports_to:
        if reports_to == member.id:
            raise HTTPException(status_code=400, detail="Member cannot report to themselves")
        try:
            await get_org_member(db, reports_to, caller.organization_id)
        except HTTPException:
            raise HTTPException(status_code=404, detail="Reporting member not found")

    is_active = update_data.pop("is_active", None)
    for field, value in update_data.items():
        if field in ("member_role", "employment_type", "allocation") and value is None:
            continue
        setattr(member, field, value)

    # Activation changes are membership grants and revocations, audited like add/remove
    if is_active is False and member.is_active:
        member.end()
        await create_audit_log(
            db,
            organization_id=caller.organization_id,
            performed_by=caller.person_id,
            action=AuditAction.REVOKE,
            target_user_id=member.person_id,
            target_position_id=member.position_id,
            previous_value=MembershipSnapshot(team_id=member.team_id, position_id=member.position_id),
            reason="Removed from team",
        )
    elif is_active is True and not member.is_active:
        result = await db.execute(
            select(TeamMember.id).where(
                and_(
                    TeamMember.team_id == member.team_id,
                    TeamMember.person_id == member.person_id,
                    TeamMember.is_active == True,  # noqa: E712
                )
            )
        )
        if result.first() is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Person is already an active member of this team"
            )
        member.is_active = True
        member.end_date = None
        await create_audit_log(
            db,
            organization_id=caller.organization_id,
            performed_by=caller.person_id,
            action=AuditAction.GRANT,
            target_user_id=member.person_id,
            target_position_id=member.position_id,
            new_value=MembershipSnapshot(team_id=member.team_id, position_id=member.position_id),
            reason="Returned to team",
        )

    if position_changed:
        new_position_id = update_data["position_id"]
        await create_audit_log(
            db,
            organization_id=caller.organization_id,
            performed_by=caller.person_id,
            action=AuditAction.MODIFY,
            target_user_id=member.person_id,
            target_position_id=new_position_id,
            previous_value=PositionChangeSnapshot(
                position_id=old_position_id,
                permission_count=await count_position_permissions(db, old_position_id),
            ),
            new_value=PositionChangeSnapshot(
                position_id=new_position_id,
                permission_count=await count_position_permissions(db, new_position_id),
            ),
            reason="Position changed - permissions follow the new position",
        )

    await db.commit()
    await db.refresh(member)

    if position_changed:
        log.info("Member %s moved from position %s to %s", member.id, old_position_id, member.position_id)

    return MemberUpdateResponse(data=MemberResponse.of(member), position_changed=position_changed)


@member_router.delete("/{member_id}", response_model=MemberRemoveResponse)
async def remove_member(
    member_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(require_action("members.manage"))
):
    """
    Remove a member from their team.

    The row is kept with is_active false and an end date. Overrides the
    person holds are left alone.
    """
    member = await get_org_member(db, member_id, caller.organization_id)

    if member.is_active:
        member.end()
        await create_audit_log(
            db,
            organization_id=caller.organization_id,
            performed_by=caller.person_id,
            action=AuditAction.REVOKE,
            target_user_id=member.person_id,
            target_position_id=member.position_id,
            previous_value=MembershipSnapshot(team_id=member.team_id, position_id=member.position_id),
            reason="Removed from team",
        )
        await db.commit()

    return MemberRemoveResponse()


# ============================================================================
# Position Routes
# ============================================================================

@position_router.get("", response_model=List[PositionResponse])
async def list_positions(
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """List positions of the organization, most senior first."""
    result = await db.execute(
        select(TeamPosition)
        .where(TeamPosition.organization_id == caller.organization_id)
        .order_by(TeamPosition.level.desc(), TeamPosition.name)
    )
    return result.scalars().all()


@position_router.post("", response_model=PositionResponse, status_code=status.HTTP_201_CREATED)
async def create_position(
    position_data: PositionCreate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    position = TeamPosition(**position_data.model_dump(), organization_id=caller.organization_id)
    db.add(position)
    await db.commit()
    await db.refresh(position)
    return position


@position_router.get("/{position_id}", response_model=PositionDetail)
async def get_position(
    position_id: str,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_caller)
):
    """Get a position with its permissions."""
    position = await get_org_position(db, position_id, caller.organization_id)
    return PositionDetail(
        **PositionResponse.model_validate(position).model_dump(),
        permissions=await list_position_permissions(db, position.id),
    )


@position_router.put("/{position_id}", response_model=PositionResponse)
async def update_position(
    position_id: str,
    position_update: PositionUpdate,
    db: AsyncSession = Depends(get_db),
    caller: CurrentCaller = Depends(get_current_org_admin)
):
    position = await get_org_position(db, position_id, caller.organization_id)

    for field, value in position_update.model_dump(exclude_unset=True).items():
        if value is None and field != "description":
            continue
        setattr(position, field, value)

    await db.commit()
    await db.refresh(position)
    return position
