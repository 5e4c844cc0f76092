"""
Pydantic schemas for organization requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict


class OrganizationResponse(BaseModel):
    """Organization with the caller's role in it."""
    id: str
    name: str
    slug: str
    is_active: bool
    created_at: datetime
    member_count: int = 0
    role: str | None = None

    model_config = ConfigDict(from_attributes=True)


class SwitchOrganizationRequest(BaseModel):
    """Schema for switching the caller's current organization."""
    organization_id: str = Field(..., description="Organization ID to switch to")
