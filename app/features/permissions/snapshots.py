"""
Typed payloads for PermissionAuditLog.previous_value / new_value.

Every snapshot carries a `kind` discriminator and a schema version `v`, so a
row written today can still be validated after the payload shapes evolve.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from app.features.permissions.models import PermissionScope, UserPermissionOverride
from app.utils import as_utc


class _Snapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")
    v: Literal[1] = 1


class OverrideSnapshot(_Snapshot):
    """Full state of an override row at the time of the change."""
    kind: Literal["override"] = "override"
    id: str
    person_id: str
    action_type_id: str
    is_granted: bool
    scope: PermissionScope
    team_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    granted_by: str
    granted_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revoke_reason: Optional[str] = None

    @classmethod
    def of(cls, override: UserPermissionOverride) -> "OverrideSnapshot":
        return cls(
            id=override.id,
            person_id=override.person_id,
            action_type_id=override.action_type_id,
            is_granted=override.is_granted,
            scope=override.scope,
            team_id=override.team_id,
            expires_at=as_utc(override.expires_at),
            reason=override.reason,
            granted_by=override.granted_by,
            granted_at=as_utc(override.granted_at),
            revoked_at=as_utc(override.revoked_at),
            revoked_by=override.revoked_by,
            revoke_reason=override.revoke_reason,
        )


class GrantSnapshot(_Snapshot):
    """Grant/deny value written by a direct override."""
    kind: Literal["grant"] = "grant"
    is_granted: bool
    scope: PermissionScope


class DelegationSnapshot(_Snapshot):
    kind: Literal["delegation"] = "delegation"
    scope: PermissionScope
    expires_at: Optional[datetime] = None


class PositionChangeSnapshot(_Snapshot):
    """Only counts are kept, not a permission diff."""
    kind: Literal["position_change"] = "position_change"
    position_id: Optional[str] = None
    permission_count: int


class MembershipSnapshot(_Snapshot):
    kind: Literal["membership"] = "membership"
    team_id: str
    position_id: Optional[str] = None


class PositionPermissionSnapshot(_Snapshot):
    kind: Literal["position_permission"] = "position_permission"
    scope: PermissionScope
    can_delegate: Optional[bool] = None


class PositionPermissionBulkSnapshot(_Snapshot):
    kind: Literal["position_permission_bulk"] = "position_permission_bulk"
    created: int
    updated: int
    deleted: int


class ExpirySnapshot(_Snapshot):
    kind: Literal["expiry"] = "expiry"
    expires_at: Optional[datetime] = None


class GroupSnapshot(_Snapshot):
    """Group definition: its name and the actions it grants."""
    kind: Literal["group"] = "group"
    name: str
    action_type_ids: List[str]
    scope: Optional[PermissionScope] = None


class GroupAssignmentSnapshot(_Snapshot):
    kind: Literal["group_assignment"] = "group_assignment"
    group_id: str
    group_name: str
    team_id: Optional[str] = None
    expires_at: Optional[datetime] = None


AuditSnapshot = Annotated[
    Union[
        OverrideSnapshot,
        GrantSnapshot,
        DelegationSnapshot,
        PositionChangeSnapshot,
        MembershipSnapshot,
        PositionPermissionSnapshot,
        PositionPermissionBulkSnapshot,
        ExpirySnapshot,
        GroupSnapshot,
        GroupAssignmentSnapshot,
    ],
    Field(discriminator="kind"),
]

snapshot_adapter: TypeAdapter[AuditSnapshot] = TypeAdapter(AuditSnapshot)


def dump_snapshot(snapshot: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    """Serialize a snapshot for the JSON column."""
    if snapshot is None:
        return None
    return snapshot.model_dump(mode="json")


def load_snapshot(raw: Optional[Dict[str, Any]]) -> Optional[AuditSnapshot]:
    """Validate a stored payload back into its snapshot type."""
    if raw is None:
        return None
    return snapshot_adapter.validate_python(raw)
