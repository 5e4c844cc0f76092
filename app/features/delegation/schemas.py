"""
Pydantic schemas for permission delegation.
"""
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from app.features.permissions.models import PermissionScope, RiskLevel
from app.utils import as_utc, utcnow


class DelegationRequest(BaseModel):
    """
    Delegate one action (action_type_id) or several (action_type_ids).

    expires_at accepts an ISO datetime or a unix timestamp in seconds.
    """
    target_user_id: str
    action_type_id: Optional[str] = None
    action_type_ids: Optional[List[str]] = Field(None, min_length=1)
    scope: Optional[PermissionScope] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=1000)

    @field_validator('expires_at')
    @classmethod
    def expires_in_future(cls, v: Optional[datetime]) -> Optional[datetime]:
        v = as_utc(v)
        if v is not None and v <= utcnow():
            raise ValueError('expires_at must be in the future')
        return v

    @model_validator(mode='after')
    def one_action_form(self) -> "DelegationRequest":
        if (self.action_type_id is None) == (self.action_type_ids is None):
            raise ValueError('Provide exactly one of action_type_id or action_type_ids')
        return self

    @property
    def is_bulk(self) -> bool:
        return self.action_type_ids is not None

    @property
    def requested_action_ids(self) -> List[str]:
        """Requested ids, de-duplicated, in request order."""
        ids = self.action_type_ids if self.is_bulk else [self.action_type_id]
        return list(dict.fromkeys(ids))


class DelegationResult(BaseModel):
    action_type_id: str
    override_id: str
    status: Literal["created", "updated"]


class DelegationResponse(BaseModel):
    success: bool = True
    delegated_to: str
    results: List[DelegationResult]


class DelegablePermission(BaseModel):
    permission_id: str
    position_id: str
    action_type_id: str
    scope: PermissionScope
    can_delegate: bool
    action_name: str
    action_code: str
    action_category: str
    action_risk_level: RiskLevel


class ActiveDelegation(BaseModel):
    id: str
    target_user_id: str
    target_user_name: Optional[str] = None
    target_user_email: Optional[str] = None
    action_type_id: str
    scope: PermissionScope
    is_granted: bool
    expires_at: Optional[datetime] = None
    granted_by: str


class DelegationOverview(BaseModel):
    delegable_permissions: List[DelegablePermission] = []
    active_delegations: List[ActiveDelegation] = []


class DelegationOverviewResponse(BaseModel):
    success: bool = True
    data: DelegationOverview
    message: Optional[str] = None


class RevokeDelegationResponse(BaseModel):
    success: bool = True
    revoked: bool = True
