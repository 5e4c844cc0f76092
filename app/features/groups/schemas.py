"""
Pydantic schemas for permission groups and their assignments.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.models import PermissionScope, UserGroupAssignment
from app.features.permissions.schemas import ActionTypeBrief
from app.utils import as_utc, utcnow


class GroupCreate(BaseModel):
    """Create a group; every listed action is granted at `scope`."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    action_type_ids: List[str] = Field(default_factory=list)
    scope: PermissionScope = PermissionScope.ORGANIZATION


class GroupUpdate(BaseModel):
    """
    Partial update. A given action_type_ids replaces the group's action set;
    a given scope is applied to every action the group keeps.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    action_type_ids: Optional[List[str]] = None
    scope: Optional[PermissionScope] = None


class GroupAssign(BaseModel):
    person_id: str
    team_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @field_validator('expires_at')
    @classmethod
    def expires_in_future(cls, v: Optional[datetime]) -> Optional[datetime]:
        v = as_utc(v)
        if v is not None and v <= utcnow():
            raise ValueError('expires_at must be in the future')
        return v


class GroupActionResponse(BaseModel):
    action_type_id: str
    scope: PermissionScope
    action_type: ActionTypeBrief

    model_config = ConfigDict(from_attributes=True)


class GroupAssignmentResponse(BaseModel):
    id: str
    group_id: str
    person_id: str
    person_name: str
    person_email: Optional[str] = None
    team_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    granted_by: str
    granted_at: datetime

    @classmethod
    def of(cls, assignment: UserGroupAssignment) -> "GroupAssignmentResponse":
        return cls(
            id=assignment.id,
            group_id=assignment.group_id,
            person_id=assignment.person_id,
            person_name=assignment.person.display_name,
            person_email=assignment.person.primary_email,
            team_id=assignment.team_id,
            expires_at=as_utc(assignment.expires_at),
            granted_by=assignment.granted_by,
            granted_at=as_utc(assignment.granted_at),
        )


class GroupListItem(BaseModel):
    id: str
    organization_id: str
    name: str
    slug: str
    description: Optional[str] = None
    is_system: bool
    action_count: int
    user_count: int
    created_at: datetime
    updated_at: datetime


class GroupDetail(GroupListItem):
    actions: List[GroupActionResponse]
    users: List[GroupAssignmentResponse]


class GroupListResponse(BaseModel):
    success: bool = True
    data: List[GroupListItem]
    count: int


class GroupSingleResponse(BaseModel):
    success: bool = True
    data: GroupDetail


class GroupAssignResponse(BaseModel):
    success: bool = True
    data: GroupAssignmentResponse
    created: bool


class GroupDeleteResponse(BaseModel):
    success: bool = True
    deleted: bool = True


class GroupUnassignResponse(BaseModel):
    success: bool = True
    removed: bool = True
