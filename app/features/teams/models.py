"""
Team, position and membership models.

A position is a role template inside an organization ("Coordinator",
"Teacher", "Secretary"). A team member is one person holding one position in
one team. Memberships are never deleted: ending one clears is_active and
stamps end_date.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict
import enum
from sqlalchemy import String, ForeignKey, Boolean, DateTime, Float, Integer, Text, JSON, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid
from app.utils import as_utc, utcnow


class TeamType(str, enum.Enum):
    DEPARTMENT = "department"
    SQUAD = "squad"
    CHAPTER = "chapter"
    GUILD = "guild"
    TRIBE = "tribe"
    PROJECT = "project"
    COMMITTEE = "committee"
    OTHER = "other"


class MemberRole(str, enum.Enum):
    OWNER = "owner"
    LEAD = "lead"
    MEMBER = "member"
    GUEST = "guest"
    OBSERVER = "observer"


class EmploymentType(str, enum.Enum):
    FULL_TIME = "full_time"
    PART_TIME = "part_time"
    CONTRACTOR = "contractor"
    INTERN = "intern"
    VOLUNTEER = "volunteer"


class Team(Base, TimestampMixin):
    """A department, squad or committee inside a school; teams nest via parent_team_id."""
    __tablename__ = "teams"
    __table_args__ = (
        UniqueConstraint("organization_id", "slug", name="uq_teams_organization_slug"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    team_type: Mapped[TeamType] = mapped_column(SQLEnum(TeamType), default=TeamType.SQUAD, nullable=False)
    parent_team_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    icon: Mapped[str] = mapped_column(String(50), default="IconUsers", nullable=False)
    color: Mapped[str] = mapped_column(String(30), default="blue", nullable=False)
    settings: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("persons.id"), nullable=True)

    def __repr__(self) -> str:
        return f"<Team(id={self.id}, slug={self.slug!r}, org_id={self.organization_id})>"


class TeamPosition(Base, TimestampMixin):
    """Role template carrying a default permission set (see PositionPermission)."""
    __tablename__ = "team_positions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    position_type: Mapped[str] = mapped_column(String(50), default="staff", nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<TeamPosition(id={self.id}, name={self.name!r}, level={self.level})>"


@dataclass(frozen=True)
class ActiveMembership:
    start_date: datetime


@dataclass(frozen=True)
class EndedMembership:
    start_date: datetime
    end_date: datetime


MembershipState = ActiveMembership | EndedMembership


class TeamMember(Base, TimestampMixin):
    """A person's assignment to a team with a position."""
    __tablename__ = "team_members"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    team_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    person_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    position_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("team_positions.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    member_role: Mapped[MemberRole] = mapped_column(SQLEnum(MemberRole), default=MemberRole.MEMBER, nullable=False)
    custom_title: Mapped[str | None] = mapped_column(String(100), nullable=True)
    employment_type: Mapped[EmploymentType] = mapped_column(
        SQLEnum(EmploymentType),
        default=EmploymentType.FULL_TIME,
        nullable=False
    )
    allocation: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)

    # Reporting line; non-owning, the manager row is never loaded through it
    reports_to_member_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("team_members.id", ondelete="SET NULL"),
        nullable=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    person: Mapped["Person"] = relationship("Person", lazy="selectin")  # type: ignore
    position: Mapped["TeamPosition | None"] = relationship("TeamPosition", lazy="selectin")
    team: Mapped["Team"] = relationship("Team", lazy="selectin")

    @property
    def state(self) -> MembershipState:
        start = as_utc(self.start_date)
        if self.is_active and self.end_date is None:
            return ActiveMembership(start_date=start)
        return EndedMembership(start_date=start, end_date=as_utc(self.end_date) or start)

    def end(self, at: datetime | None = None) -> None:
        """Soft-remove the membership."""
        self.is_active = False
        self.end_date = at or utcnow()

    def __repr__(self) -> str:
        return f"<TeamMember(id={self.id}, team_id={self.team_id}, person_id={self.person_id}, active={self.is_active})>"
