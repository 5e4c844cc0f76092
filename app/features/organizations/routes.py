"""
Organization feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.people.models import Person
from app.features.people.dependencies import CurrentCaller, get_current_caller, get_current_person
from app.features.organizations.models import Organization, organization_memberships
from app.features.organizations.schemas import OrganizationResponse, SwitchOrganizationRequest
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["organizations"])


@router.get("/current", response_model=OrganizationResponse)
async def get_current_organization(
    caller: Annotated[CurrentCaller, Depends(get_current_caller)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Get the caller's current organization."""
    result = await db.execute(select(Organization).where(Organization.id == caller.organization_id))
    organization = result.scalar_one()

    response = OrganizationResponse.model_validate(organization)
    response.member_count = len(organization.members)
    response.role = caller.organization_role
    return response


@router.post("/switch", response_model=dict)
async def switch_organization(
    switch_data: SwitchOrganizationRequest,
    person: Annotated[Person, Depends(get_current_person)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Switch the caller to a different organization they belong to."""
    result = await db.execute(
        select(Organization)
        .join(organization_memberships, organization_memberships.c.organization_id == Organization.id)
        .where(
            and_(
                organization_memberships.c.person_id == person.id,
                Organization.id == switch_data.organization_id,
                Organization.is_active == True,  # noqa: E712
            )
        )
    )
    organization = result.scalar_one_or_none()

    # Non-members get the same answer as a missing organization
    if organization is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found"
        )

    person.current_organization_id = organization.id
    await db.commit()
    log.info("Person %s switched to organization %s", person.id, organization.id)

    return {
        "message": "Organization switched successfully",
        "current_organization_id": organization.id,
        "current_organization_name": organization.name,
    }
