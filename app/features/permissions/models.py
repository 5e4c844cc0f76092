"""
Action type, position permission, override, group and audit models.

This module implements the school permission model:
- A registry of permission-checkable actions (ActionType)
- Position-level grants with a scope and a delegation flag (PositionPermission)
- Per-person exceptions that supersede position grants (UserPermissionOverride)
- Named action bundles assigned to people directly (PermissionGroup)
- An append-only ledger of every permission change (PermissionAuditLog)
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict
import enum
from sqlalchemy import (
    String, ForeignKey, JSON, Text, DateTime, Boolean, Index, UniqueConstraint, Enum as SQLEnum, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database.base import Base, TimestampMixin, generate_ulid
from app.utils import as_utc, utcnow


class PermissionScope(str, enum.Enum):
    """Breadth of a grant, narrowest to broadest."""
    OWN = "own"
    TEAM = "team"
    DEPARTMENT = "department"
    ORGANIZATION = "organization"
    GLOBAL = "global"

    @property
    def rank(self) -> int:
        return _SCOPE_RANK[self]


_SCOPE_RANK = {
    PermissionScope.OWN: 1,
    PermissionScope.TEAM: 2,
    PermissionScope.DEPARTMENT: 3,
    PermissionScope.ORGANIZATION: 4,
    PermissionScope.GLOBAL: 5,
}


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditAction(str, enum.Enum):
    GRANT = "grant"
    REVOKE = "revoke"
    DELEGATE = "delegate"
    MODIFY = "modify"


# ============================================================================
# Registry
# ============================================================================

class ActionType(Base, TimestampMixin):
    """
    A nameable permission-checkable operation.

    Codes are dotted, e.g. "wiki.create", "kaizen.approve", "finance.invoices.read",
    and unique within an organization.
    """
    __tablename__ = "action_types"
    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_action_types_organization_code"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    code: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    risk_level: Mapped[RiskLevel] = mapped_column(SQLEnum(RiskLevel), default=RiskLevel.LOW, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<ActionType(id={self.id}, code={self.code!r}, risk={self.risk_level})>"


# ============================================================================
# Position grants
# ============================================================================

class PositionPermission(Base, TimestampMixin):
    """Action grant attached to a position."""
    __tablename__ = "position_permissions"
    __table_args__ = (
        UniqueConstraint("position_id", "action_type_id", name="uq_position_permissions_position_action"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    position_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("team_positions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    action_type_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("action_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    scope: Mapped[PermissionScope] = mapped_column(SQLEnum(PermissionScope), default=PermissionScope.TEAM, nullable=False)
    can_delegate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Free-form conditions kept for display; not evaluated
    conditions: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    granted_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("persons.id"), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    action_type: Mapped["ActionType"] = relationship("ActionType", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<PositionPermission(position_id={self.position_id}, action_type_id={self.action_type_id}, "
            f"scope={self.scope}, can_delegate={self.can_delegate})>"
        )


# ============================================================================
# Overrides
# ============================================================================

@dataclass(frozen=True)
class ActiveOverride:
    """Not revoked. May still be expired; see is_live."""
    expires_at: datetime | None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class RevokedOverride:
    revoked_at: datetime
    revoked_by: str | None
    reason: str | None

    def is_live(self, now: datetime) -> bool:
        return False


OverrideState = ActiveOverride | RevokedOverride


class UserPermissionOverride(Base, TimestampMixin):
    """
    A per-person exception to position-derived permission.

    Rows are never deleted. revoked_at marks a tombstone; at most one row per
    (person_id, action_type_id) may be un-revoked, which the partial unique
    index below enforces at the database level.
    """
    __tablename__ = "user_permission_overrides"
    __table_args__ = (
        Index(
            "uq_user_permission_overrides_active",
            "person_id",
            "action_type_id",
            unique=True,
            sqlite_where=text("revoked_at IS NULL"),
            postgresql_where=text("revoked_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    person_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    action_type_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("action_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # True = grant, False = explicit deny
    is_granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    scope: Mapped[PermissionScope] = mapped_column(SQLEnum(PermissionScope), default=PermissionScope.OWN, nullable=False)
    team_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    granted_by: Mapped[str] = mapped_column(String(26), ForeignKey("persons.id"), nullable=False, index=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("persons.id"), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    action_type: Mapped["ActionType"] = relationship("ActionType", lazy="selectin")
    person: Mapped["Person"] = relationship("Person", foreign_keys=[person_id], lazy="selectin")  # type: ignore

    @property
    def state(self) -> OverrideState:
        if self.revoked_at is not None:
            return RevokedOverride(
                revoked_at=as_utc(self.revoked_at),
                revoked_by=self.revoked_by,
                reason=self.revoke_reason,
            )
        return ActiveOverride(expires_at=as_utc(self.expires_at))

    def is_active(self, now: datetime | None = None) -> bool:
        """Not revoked and not expired."""
        return self.state.is_live(now or utcnow())

    def revoke(self, by: str, reason: str | None, at: datetime | None = None) -> None:
        self.revoked_at = at or utcnow()
        self.revoked_by = by
        self.revoke_reason = reason

    def __repr__(self) -> str:
        return (
            f"<UserPermissionOverride(id={self.id}, person_id={self.person_id}, "
            f"action_type_id={self.action_type_id}, granted={self.is_granted}, revoked={self.revoked_at is not None})>"
        )


# ============================================================================
# Permission groups
# ============================================================================

class PermissionGroup(Base, TimestampMixin):
    """
    A named bundle of actions handed to people directly, outside any position.

    Group grants are the last thing the resolver consults: they never beat
    an override or a position, and they are never delegable.
    """
    __tablename__ = "permission_groups"
    __table_args__ = (
        UniqueConstraint("organization_id", "slug", name="uq_permission_groups_organization_slug"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # System groups are managed by seeding and cannot be deleted through the API
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(26), ForeignKey("persons.id"), nullable=True)

    actions: Mapped[list["PermissionGroupAction"]] = relationship(
        "PermissionGroupAction",
        back_populates="group",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    assignments: Mapped[list["UserGroupAssignment"]] = relationship(
        "UserGroupAssignment",
        back_populates="group",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<PermissionGroup(id={self.id}, slug={self.slug!r}, org={self.organization_id})>"


class PermissionGroupAction(Base):
    """Action granted by a group, with the scope it is granted at."""
    __tablename__ = "permission_group_actions"
    __table_args__ = (
        UniqueConstraint("group_id", "action_type_id", name="uq_permission_group_actions_group_action"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permission_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    action_type_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("action_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    scope: Mapped[PermissionScope] = mapped_column(
        SQLEnum(PermissionScope), default=PermissionScope.ORGANIZATION, nullable=False
    )

    group: Mapped["PermissionGroup"] = relationship("PermissionGroup", back_populates="actions")
    action_type: Mapped["ActionType"] = relationship("ActionType", lazy="selectin")


class UserGroupAssignment(Base):
    """Membership of a person in a permission group, optionally expiring."""
    __tablename__ = "user_group_assignments"
    __table_args__ = (
        UniqueConstraint("group_id", "person_id", name="uq_user_group_assignments_group_person"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permission_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    person_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("persons.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    # Team the grant is bound to; team and department scoped group actions only reach it
    team_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    granted_by: Mapped[str] = mapped_column(String(26), ForeignKey("persons.id"), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    group: Mapped["PermissionGroup"] = relationship("PermissionGroup", back_populates="assignments", lazy="selectin")
    person: Mapped["Person"] = relationship("Person", foreign_keys=[person_id], lazy="selectin")  # type: ignore

    def is_active(self, now: datetime | None = None) -> bool:
        """Not expired."""
        expires_at = as_utc(self.expires_at)
        return expires_at is None or expires_at > (now or utcnow())

    def __repr__(self) -> str:
        return f"<UserGroupAssignment(group_id={self.group_id}, person_id={self.person_id})>"


# ============================================================================
# Audit
# ============================================================================

class PermissionAuditLog(Base):
    """
    Immutable history of permission changes.

    previous_value/new_value hold AuditSnapshot payloads (see snapshots.py).
    """
    __tablename__ = "permission_audit_log"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    organization_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    action: Mapped[AuditAction] = mapped_column(SQLEnum(AuditAction), nullable=False, index=True)
    target_user_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    target_position_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    target_group_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)
    action_type_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    previous_value: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    performed_by: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships removed to avoid circular dependencies
    # Access via target_user_id and action_type_id when needed

    def __repr__(self) -> str:
        return f"<PermissionAuditLog(id={self.id}, action={self.action}, target={self.target_user_id})>"
