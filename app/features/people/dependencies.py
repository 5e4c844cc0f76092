"""
FastAPI dependencies for authentication and the per-request caller context.
"""
from dataclasses import dataclass
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import Select, select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.people.models import Person
from app.features.people.auth import verify_jwt_token, get_appwrite_account
from app.features.organizations.models import organization_memberships
from app.utils import utcnow


# auto_error=False so a missing header is a 401, not FastAPI's default 403
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentCaller:
    """Authenticated identity passed explicitly into every handler."""
    person_id: str
    organization_id: str
    organization_role: str

    @property
    def is_org_admin(self) -> bool:
        return self.organization_role in ("owner", "admin")


async def get_current_person(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> Person:
    """
    Get the current authenticated person from the bearer JWT.

    This dependency:
    1. Extracts JWT from Authorization header
    2. Verifies JWT
    3. Looks up or provisions the person in the local database
    4. Updates last_login_at timestamp
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_jwt_token(credentials.credentials)
    appwrite_id = payload.get("userId")

    if not appwrite_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    result = await db.execute(
        select(Person).where(Person.appwrite_id == appwrite_id)
    )
    person = result.scalar_one_or_none()

    # If the person doesn't exist locally, fetch from Appwrite and create
    if person is None:
        account = await get_appwrite_account(appwrite_id)

        person = Person(
            appwrite_id=appwrite_id,
            primary_email=account.get("email", ""),
            first_name=account.get("name", "Unknown"),
            last_login_at=utcnow(),
        )
        db.add(person)
    else:
        person.last_login_at = utcnow()
    await db.commit()
    await db.refresh(person)

    if not person.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Account is deactivated",
        )

    return person


async def get_current_caller(
    person: Annotated[Person, Depends(get_current_person)],
    db: Annotated[AsyncSession, Depends(get_db)]
) -> CurrentCaller:
    """
    Resolve the caller's organization context.

    A person without a current organization, or whose membership in it is
    gone, has no tenant to act in and is treated as unauthenticated.
    """
    if person.current_organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Organization context required",
        )

    result = await db.execute(
        select(organization_memberships.c.role).where(
            and_(
                organization_memberships.c.person_id == person.id,
                organization_memberships.c.organization_id == person.current_organization_id,
            )
        )
    )
    role = result.scalar_one_or_none()
    if role is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Organization context required",
        )

    return CurrentCaller(
        person_id=person.id,
        organization_id=person.current_organization_id,
        organization_role=role,
    )


async def get_current_org_admin(
    caller: Annotated[CurrentCaller, Depends(get_current_caller)]
) -> CurrentCaller:
    """
    Require owner/admin role in the caller's organization.

    Usage:
        @router.post("/action-types")
        async def create_action_type(
            caller: CurrentCaller = Depends(get_current_org_admin)
        ):
            ...
    """
    if not caller.is_org_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization admin privileges required",
        )
    return caller


async def get_org_person(
    db: AsyncSession,
    person_id: str,
    organization_id: str
) -> Person | None:
    """Load a person only if they belong to the given organization."""
    result = await db.execute(
        select(Person)
        .join(organization_memberships, organization_memberships.c.person_id == Person.id)
        .where(
            and_(
                Person.id == person_id,
                organization_memberships.c.organization_id == organization_id,
            )
        )
    )
    return result.scalar_one_or_none()


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"


def org_person_ids(organization_id: str) -> Select:
    """Subquery of person ids belonging to an organization."""
    return select(organization_memberships.c.person_id).where(
        organization_memberships.c.organization_id == organization_id
    )
