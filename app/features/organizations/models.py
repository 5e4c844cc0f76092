"""
Organization models.

An organization is one school (tenant). People can belong to several
organizations and act inside one of them at a time.
"""
from datetime import datetime
from sqlalchemy import String, ForeignKey, Table, Column, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid


# Association table for many-to-many relationship between people and organizations
organization_memberships = Table(
    "organization_memberships",
    Base.metadata,
    Column("person_id", String(26), ForeignKey("persons.id", ondelete="CASCADE"), primary_key=True),
    Column("organization_id", String(26), ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True),
    Column("joined_at", DateTime(timezone=True), nullable=False, default=datetime.now),
    Column("role", String(50), nullable=False, default="member"),  # member, admin, owner
)


class Organization(Base, TimestampMixin):
    """Organization model representing a school."""
    __tablename__ = "organizations"

    # Primary key using ULID
    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)

    # Organization settings
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    members: Mapped[list["Person"]] = relationship(  # type: ignore
        "Person",
        secondary=organization_memberships,
        back_populates="organizations",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name!r})>"
