"""
Pydantic schemas for per-person permission overrides.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from app.features.permissions.models import PermissionScope, UserPermissionOverride
from app.utils import as_utc, utcnow


class OverrideCreate(BaseModel):
    """Grant (is_granted=true) or explicitly deny an action for one person."""
    person_id: str
    action_type_id: str
    is_granted: bool
    scope: PermissionScope = PermissionScope.OWN
    team_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=1000)

    @field_validator('expires_at')
    @classmethod
    def expires_in_future(cls, v: Optional[datetime]) -> Optional[datetime]:
        v = as_utc(v)
        if v is not None and v <= utcnow():
            raise ValueError('expires_at must be in the future')
        return v


class OverrideResponse(BaseModel):
    id: str
    person_id: str
    person_name: str
    person_email: Optional[str] = None
    action_type_id: str
    action_code: str
    action_name: str
    action_category: str
    is_granted: bool
    scope: PermissionScope
    team_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    granted_by: str
    granted_at: datetime

    @classmethod
    def of(cls, override: UserPermissionOverride) -> "OverrideResponse":
        return cls(
            id=override.id,
            person_id=override.person_id,
            person_name=override.person.display_name,
            person_email=override.person.primary_email,
            action_type_id=override.action_type_id,
            action_code=override.action_type.code,
            action_name=override.action_type.name,
            action_category=override.action_type.category,
            is_granted=override.is_granted,
            scope=override.scope,
            team_id=override.team_id,
            expires_at=as_utc(override.expires_at),
            reason=override.reason,
            granted_by=override.granted_by,
            granted_at=as_utc(override.granted_at),
        )


class OverrideListResponse(BaseModel):
    success: bool = True
    data: List[OverrideResponse]
    count: int


class OverrideCreateResponse(BaseModel):
    success: bool = True
    data: OverrideResponse
    replaced_override_id: Optional[str] = None


class OverrideRevokeResponse(BaseModel):
    success: bool = True
    revoked: bool = True
    id: str
