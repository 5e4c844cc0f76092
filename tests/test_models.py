"""Model state, snapshot and helper tests that need no database."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from app.features.delegation.schemas import DelegationRequest
from app.features.permissions.dependencies import ResourceContext, broadest_by_action, check_scope_allows
from app.features.permissions.models import (
    ActiveOverride,
    PermissionScope,
    PositionPermission,
    RevokedOverride,
    UserPermissionOverride,
)
from app.features.permissions.snapshots import (
    DelegationSnapshot,
    GrantSnapshot,
    OverrideSnapshot,
    dump_snapshot,
    load_snapshot,
)
from app.features.teams.models import ActiveMembership, EndedMembership, TeamMember
from app.utils import as_utc, utcnow


class TestPermissionScope:
    def test_ranks_narrowest_to_broadest(self) -> None:
        ordered = sorted(PermissionScope, key=lambda scope: scope.rank)
        assert ordered == [
            PermissionScope.OWN,
            PermissionScope.TEAM,
            PermissionScope.DEPARTMENT,
            PermissionScope.ORGANIZATION,
            PermissionScope.GLOBAL,
        ]

    def test_broadest_grant_wins_per_action(self) -> None:
        narrow = PositionPermission(position_id="p1", action_type_id="a1", scope=PermissionScope.OWN)
        broad = PositionPermission(position_id="p2", action_type_id="a1", scope=PermissionScope.ORGANIZATION)
        other = PositionPermission(position_id="p1", action_type_id="a2", scope=PermissionScope.TEAM)

        best = broadest_by_action([narrow, broad, other])

        assert best == {"a1": broad, "a2": other}


class TestCheckScopeAllows:
    def test_own_needs_owner(self) -> None:
        assert check_scope_allows(PermissionScope.OWN, "me", "t1", ResourceContext(owner_id="me"))
        assert not check_scope_allows(PermissionScope.OWN, "me", "t1", ResourceContext(owner_id="you"))
        assert not check_scope_allows(PermissionScope.OWN, "me", "t1", ResourceContext())

    def test_team_needs_matching_or_no_team(self) -> None:
        assert check_scope_allows(PermissionScope.TEAM, "me", "t1", ResourceContext())
        assert check_scope_allows(PermissionScope.TEAM, "me", "t1", ResourceContext(team_id="t1"))
        assert not check_scope_allows(PermissionScope.DEPARTMENT, "me", "t1", ResourceContext(team_id="t2"))

    def test_organization_reaches_everything(self) -> None:
        assert check_scope_allows(PermissionScope.ORGANIZATION, "me", "t1", ResourceContext(owner_id="x", team_id="t9"))


class TestOverrideState:
    def _override(self, **kwargs) -> UserPermissionOverride:
        return UserPermissionOverride(
            person_id="p", action_type_id="a", is_granted=True, granted_by="g", **kwargs
        )

    def test_open_ended_override_is_active(self) -> None:
        override = self._override()

        assert override.state == ActiveOverride(expires_at=None)
        assert override.is_active()

    def test_expired_override_is_not_active(self) -> None:
        override = self._override(expires_at=utcnow() - timedelta(seconds=1))

        assert isinstance(override.state, ActiveOverride)
        assert not override.is_active()

    def test_naive_expiry_is_read_as_utc(self) -> None:
        naive = (utcnow() + timedelta(hours=1)).replace(tzinfo=None)
        override = self._override(expires_at=naive)

        assert override.is_active()

    def test_revoke(self) -> None:
        override = self._override()
        at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        override.revoke(by="admin", reason="Left the school", at=at)

        assert override.state == RevokedOverride(revoked_at=at, revoked_by="admin", reason="Left the school")
        assert not override.is_active(at - timedelta(days=1))


class TestMembershipState:
    def test_end(self) -> None:
        start = datetime(2026, 2, 1, tzinfo=timezone.utc)
        member = TeamMember(team_id="t", person_id="p", is_active=True, start_date=start)
        assert member.state == ActiveMembership(start_date=start)

        end = start + timedelta(days=30)
        member.end(at=end)

        assert member.is_active is False
        assert member.state == EndedMembership(start_date=start, end_date=end)


class TestSnapshots:
    def test_dump_and_load_by_kind(self) -> None:
        expires = datetime(2026, 12, 1, tzinfo=timezone.utc)
        raw = dump_snapshot(DelegationSnapshot(scope=PermissionScope.TEAM, expires_at=expires))

        assert raw["kind"] == "delegation"
        assert raw["v"] == 1
        assert raw["scope"] == "team"
        assert load_snapshot(raw) == DelegationSnapshot(scope=PermissionScope.TEAM, expires_at=expires)

    def test_none_passes_through(self) -> None:
        assert dump_snapshot(None) is None
        assert load_snapshot(None) is None

    def test_unknown_kind_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            load_snapshot({"kind": "mystery", "v": 1})

    def test_extra_fields_are_rejected(self) -> None:
        with pytest.raises(ValidationError):
            load_snapshot({"kind": "grant", "v": 1, "is_granted": True, "scope": "own", "extra": 1})

    def test_override_snapshot_normalizes_times(self) -> None:
        granted = datetime(2026, 1, 10, 9, 30)
        override = UserPermissionOverride(
            id="o1",
            person_id="p",
            action_type_id="a",
            is_granted=False,
            scope=PermissionScope.OWN,
            granted_by="g",
            granted_at=granted,
        )

        snapshot = OverrideSnapshot.of(override)

        assert snapshot.granted_at == granted.replace(tzinfo=timezone.utc)
        assert snapshot.revoked_at is None
        assert GrantSnapshot(is_granted=False, scope=PermissionScope.OWN).kind == "grant"


class TestDelegationRequest:
    def test_single_form(self) -> None:
        request = DelegationRequest(target_user_id="p", action_type_id="a")

        assert not request.is_bulk
        assert request.requested_action_ids == ["a"]

    def test_bulk_form_deduplicates(self) -> None:
        request = DelegationRequest(target_user_id="p", action_type_ids=["a", "b", "a"])

        assert request.is_bulk
        assert request.requested_action_ids == ["a", "b"]

    def test_exactly_one_form_required(self) -> None:
        with pytest.raises(ValidationError):
            DelegationRequest(target_user_id="p")
        with pytest.raises(ValidationError):
            DelegationRequest(target_user_id="p", action_type_id="a", action_type_ids=["b"])


class TestAsUtc:
    def test_naive_is_tagged(self) -> None:
        assert as_utc(datetime(2026, 5, 1, 8, 0)) == datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)

    def test_other_zone_is_converted(self) -> None:
        sao_paulo = timezone(timedelta(hours=-3))
        assert as_utc(datetime(2026, 5, 1, 5, 0, tzinfo=sao_paulo)) == datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)
        assert as_utc(datetime(2026, 5, 1, 5, 0, tzinfo=sao_paulo)).utcoffset() == timedelta(0)
