"""
Pydantic schemas for teams, positions and team membership.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict

from app.features.teams.models import EmploymentType, MemberRole, TeamMember, TeamType
from app.features.permissions.schemas import PositionPermissionResponse
from app.utils import as_utc


# ============================================================================
# Team Schemas
# ============================================================================

class TeamBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    team_type: TeamType = TeamType.SQUAD
    parent_team_id: Optional[str] = None


class TeamCreate(TeamBase):
    """Schema for creating a team; slug is derived from name when absent."""
    slug: Optional[str] = Field(None, min_length=1, max_length=50)
    icon: Optional[str] = Field(None, max_length=50)
    color: Optional[str] = Field(None, max_length=30)
    settings: Optional[Dict[str, Any]] = None


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    team_type: Optional[TeamType] = None
    parent_team_id: Optional[str] = None
    icon: Optional[str] = Field(None, max_length=50)
    color: Optional[str] = Field(None, max_length=30)
    is_active: Optional[bool] = None
    settings: Optional[Dict[str, Any]] = None


class TeamResponse(TeamBase):
    id: str
    organization_id: str
    slug: str
    icon: str
    color: str
    settings: Dict[str, Any]
    is_active: bool
    archived_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ChildTeam(BaseModel):
    id: str
    name: str
    slug: str
    team_type: TeamType
    icon: str
    color: str

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Position Schemas
# ============================================================================

class PositionBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    level: int = Field(1, ge=1, le=100)
    position_type: str = Field("staff", min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)


class PositionCreate(PositionBase):
    pass


class PositionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    level: Optional[int] = Field(None, ge=1, le=100)
    position_type: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)


class PositionResponse(PositionBase):
    id: str
    organization_id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PositionDetail(PositionResponse):
    permissions: List[PositionPermissionResponse] = []


# ============================================================================
# Member Schemas
# ============================================================================

class MemberAdd(BaseModel):
    """Add a person to a team (team taken from the URL)."""
    person_id: str
    position_id: Optional[str] = None
    member_role: MemberRole = MemberRole.MEMBER
    custom_title: Optional[str] = Field(None, max_length=100)
    employment_type: EmploymentType = EmploymentType.FULL_TIME
    allocation: float = Field(1.0, ge=0, le=1)
    reports_to_member_id: Optional[str] = None


class MemberCreate(MemberAdd):
    team_id: str


class MemberUpdate(BaseModel):
    """Partial update. An explicit null position_id removes the position."""
    position_id: Optional[str] = None
    member_role: Optional[MemberRole] = None
    custom_title: Optional[str] = Field(None, max_length=100)
    employment_type: Optional[EmploymentType] = None
    allocation: Optional[float] = Field(None, ge=0, le=1)
    reports_to_member_id: Optional[str] = None
    is_active: Optional[bool] = None


class MemberResponse(BaseModel):
    id: str
    team_id: str
    person_id: str
    position_id: Optional[str] = None
    member_role: MemberRole
    custom_title: Optional[str] = None
    employment_type: EmploymentType
    allocation: float
    reports_to_member_id: Optional[str] = None
    is_active: bool
    start_date: datetime
    end_date: Optional[datetime] = None
    person_name: Optional[str] = None
    person_email: Optional[str] = None
    person_avatar: Optional[str] = None
    position_name: Optional[str] = None
    position_level: Optional[int] = None
    position_type: Optional[str] = None

    @classmethod
    def of(cls, member: TeamMember) -> "MemberResponse":
        person = member.person
        position = member.position
        return cls(
            id=member.id,
            team_id=member.team_id,
            person_id=member.person_id,
            position_id=member.position_id,
            member_role=member.member_role,
            custom_title=member.custom_title,
            employment_type=member.employment_type,
            allocation=member.allocation,
            reports_to_member_id=member.reports_to_member_id,
            is_active=member.is_active,
            start_date=as_utc(member.start_date),
            end_date=as_utc(member.end_date),
            person_name=person.display_name if person else None,
            person_email=person.primary_email if person else None,
            person_avatar=person.avatar_url if person else None,
            position_name=position.name if position else None,
            position_level=position.level if position else None,
            position_type=position.position_type if position else None,
        )


class MemberDetail(MemberResponse):
    permissions: List[PositionPermissionResponse] = []


class MemberDetailResponse(BaseModel):
    success: bool = True
    data: MemberDetail


class MemberUpdateResponse(BaseModel):
    success: bool = True
    data: MemberResponse
    position_changed: bool


class MemberRemoveResponse(BaseModel):
    success: bool = True
    removed: bool = True


class MemberCreateResponse(BaseModel):
    data: MemberResponse


# ============================================================================
# Team response envelopes
# ============================================================================

class TeamListItem(TeamResponse):
    member_count: int = 0
    members: Optional[List[MemberResponse]] = None


class TeamListResponse(BaseModel):
    data: List[TeamListItem]


class TeamDetail(TeamResponse):
    members: List[MemberResponse] = []
    child_teams: List[ChildTeam] = []


class TeamDetailResponse(BaseModel):
    data: TeamDetail


class TeamSingleResponse(BaseModel):
    data: TeamResponse
