"""
Pydantic schemas for permission management.

Request and response models for action types, position permissions,
permission checks, expiry management and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.models import AuditAction, PermissionScope, RiskLevel
from app.features.permissions.snapshots import AuditSnapshot


# ============================================================================
# Action Type Schemas
# ============================================================================

class ActionTypeBase(BaseModel):
    """Base action type schema."""
    code: str = Field(..., min_length=1, max_length=100, description="Dotted action code (e.g., 'wiki.create')")
    name: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=50, description="Grouping for display (e.g., 'wiki', 'finance')")
    risk_level: RiskLevel = RiskLevel.LOW
    description: Optional[str] = Field(None, max_length=1000)


class ActionTypeCreate(ActionTypeBase):
    """Schema for registering a new action type."""

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Codes are lowercase dotted identifiers."""
        v = v.strip().lower()
        if not v.replace('.', '').replace('_', '').isalnum() or v.startswith('.') or v.endswith('.'):
            raise ValueError('Action code must contain only letters, digits, underscores and inner dots')
        return v


class ActionTypeUpdate(BaseModel):
    """Schema for updating an action type. The code is immutable."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    category: Optional[str] = Field(None, min_length=1, max_length=50)
    risk_level: Optional[RiskLevel] = None
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None


class ActionTypeResponse(ActionTypeBase):
    id: str
    organization_id: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ActionTypeBrief(BaseModel):
    """Display fields joined onto permission rows."""
    id: str
    code: str
    name: str
    category: str
    risk_level: RiskLevel

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Position Permission Schemas
# ============================================================================

class PositionPermissionCreate(BaseModel):
    """Grant (or update) one action on a position."""
    position_id: str
    action_type_id: str
    scope: PermissionScope = PermissionScope.TEAM
    can_delegate: bool = False
    conditions: Optional[Dict[str, Any]] = None


class PositionPermissionToggle(BaseModel):
    action_type_id: str
    enabled: bool
    scope: Optional[PermissionScope] = None
    can_delegate: Optional[bool] = None


class PositionPermissionBulkUpdate(BaseModel):
    """Enable/disable many actions on one position in a single request."""
    position_id: str
    permissions: List[PositionPermissionToggle] = Field(..., min_length=1)


class PositionPermissionResponse(BaseModel):
    id: str
    position_id: str
    action_type_id: str
    scope: PermissionScope
    can_delegate: bool
    conditions: Optional[Dict[str, Any]] = None
    granted_by: Optional[str] = None
    granted_at: datetime
    action_type: ActionTypeBrief

    model_config = ConfigDict(from_attributes=True)


class PositionPermissionBulkResult(BaseModel):
    success: bool = True
    created: int
    updated: int
    deleted: int


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckResult(BaseModel):
    """Effective permission of one person for one action."""
    action_code: str
    allowed: bool
    scope: Optional[PermissionScope] = None
    source: Literal["override", "position", "group", "none"]
    position_id: Optional[str] = None
    group_id: Optional[str] = None
    team_id: Optional[str] = None
    can_delegate: bool = False


class PermissionCheckResponse(BaseModel):
    results: Dict[str, PermissionCheckResult]


class PermissionSummary(BaseModel):
    total: int
    allowed: int
    from_overrides: int
    from_positions: int
    from_groups: int
    delegable: int


class MyPermissionsResponse(BaseModel):
    person_id: str
    organization_id: str
    permissions: List[PermissionCheckResult]
    summary: PermissionSummary


# ============================================================================
# Expiry Schemas
# ============================================================================

Urgency = Literal["critical", "warning", "notice"]


class ExpiringOverride(BaseModel):
    """
    A granted override or a group assignment about to expire.

    Override entries carry the action fields, group entries the group fields.
    """
    kind: Literal["override", "group"] = "override"
    id: str
    person_id: str
    person_name: str
    person_email: Optional[str] = None
    action_type_id: Optional[str] = None
    action_code: Optional[str] = None
    action_name: Optional[str] = None
    scope: Optional[PermissionScope] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    expires_at: datetime
    days_remaining: int
    urgency: Urgency
    granted_by: str


class ExpirySummary(BaseModel):
    total: int
    critical: int
    warning: int
    notice: int


class ExpiringOverridesResponse(BaseModel):
    success: bool = True
    data: List[ExpiringOverride]
    summary: ExpirySummary


class ExtendExpiryRequest(BaseModel):
    id: str
    extend_days: int = Field(..., ge=1, le=365)


class ExtendExpiryResponse(BaseModel):
    success: bool = True
    id: str
    previous_expires_at: Optional[datetime] = None
    expires_at: datetime


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Audit log entry; stored snapshots are re-validated on the way out."""
    id: str
    organization_id: str
    action: AuditAction
    target_user_id: Optional[str] = None
    target_position_id: Optional[str] = None
    target_group_id: Optional[str] = None
    action_type_id: Optional[str] = None
    previous_value: Optional[AuditSnapshot] = None
    new_value: Optional[AuditSnapshot] = None
    performed_by: str
    performed_at: datetime
    reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
