"""Team membership endpoint tests."""

import pytest

from app.features.permissions.models import AuditAction, PermissionAuditLog
from app.features.permissions.snapshots import MembershipSnapshot, PositionChangeSnapshot, load_snapshot
from app.features.teams.models import TeamMember

from tests.conftest import count_rows, fetch_all


class TestPositionChange:
    @pytest.mark.asyncio
    async def test_position_change_writes_one_modify_entry(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.put(
            f"/api/members/{school.alice_membership.id}",
            json={"position_id": school.teacher.id},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["position_changed"] is True
        assert body["data"]["position_id"] == school.teacher.id
        assert body["data"]["position_name"] == "Teacher"

        [log] = await fetch_all(session_factory, PermissionAuditLog)
        assert log.action == AuditAction.MODIFY
        assert log.target_user_id == school.alice.id
        assert log.target_position_id == school.teacher.id
        assert log.reason == "Position changed - permissions follow the new position"

        previous = load_snapshot(log.previous_value)
        new = load_snapshot(log.new_value)
        assert isinstance(previous, PositionChangeSnapshot)
        assert (previous.position_id, previous.permission_count) == (school.coordinator.id, 3)
        assert (new.position_id, new.permission_count) == (school.teacher.id, 1)

    @pytest.mark.asyncio
    async def test_same_position_is_not_a_change(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.put(
            f"/api/members/{school.alice_membership.id}",
            json={"position_id": school.coordinator.id, "custom_title": "Coordenadora"},
        )

        assert response.status_code == 200
        assert response.json()["position_changed"] is False
        assert response.json()["data"]["custom_title"] == "Coordenadora"
        assert await count_rows(session_factory, PermissionAuditLog) == 0

    @pytest.mark.asyncio
    async def test_position_of_other_organization_is_not_found(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.put(
            f"/api/members/{school.alice_membership.id}",
            json={"position_id": school.foreign_position.id},
        )

        assert response.status_code == 404
        [member] = await fetch_all(session_factory, TeamMember, TeamMember.id == school.alice_membership.id)
        assert member.position_id == school.coordinator.id

    @pytest.mark.asyncio
    async def test_cannot_report_to_self(self, client, caller, school) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.put(
            f"/api/members/{school.bob_membership.id}",
            json={"reports_to_member_id": school.bob_membership.id},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_plain_member_cannot_update(self, client, caller, school) -> None:
        caller.login(school.carol, school.org)

        response = await client.put(
            f"/api/members/{school.bob_membership.id}",
            json={"custom_title": "Professor"},
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Permission denied: members.manage"}


class TestMemberLifecycle:
    @pytest.mark.asyncio
    async def test_add_member_is_audited(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.post(
            "/api/members",
            json={"team_id": school.team.id, "person_id": school.carol.id, "position_id": school.teacher.id},
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["person_name"] == "Carol"
        assert data["is_active"] is True

        [log] = await fetch_all(session_factory, PermissionAuditLog)
        assert log.action == AuditAction.GRANT
        assert log.reason == "Added to team"

    @pytest.mark.asyncio
    async def test_duplicate_active_membership_conflicts(self, client, caller, school) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.post(
            f"/api/teams/{school.team.id}",
            json={"person_id": school.bob.id},
        )

        assert response.status_code == 409
        assert response.json() == {"error": "Person is already an active member of this team"}

    @pytest.mark.asyncio
    async def test_person_of_other_organization_is_not_found(self, client, caller, school) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.post(
            f"/api/teams/{school.team.id}",
            json={"person_id": school.outsider.id},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_remove_is_a_soft_delete(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")

        first = await client.delete(f"/api/members/{school.bob_membership.id}")
        second = await client.delete(f"/api/members/{school.bob_membership.id}")

        assert first.status_code == 200
        assert first.json() == {"success": True, "removed": True}
        assert second.status_code == 200

        [member] = await fetch_all(session_factory, TeamMember, TeamMember.id == school.bob_membership.id)
        assert member.is_active is False
        assert member.end_date is not None
        assert await count_rows(
            session_factory, PermissionAuditLog, PermissionAuditLog.action == AuditAction.REVOKE
        ) == 1

    @pytest.mark.asyncio
    async def test_deactivating_through_update_is_audited(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.put(f"/api/members/{school.bob_membership.id}", json={"is_active": False})
        again = await client.put(f"/api/members/{school.bob_membership.id}", json={"is_active": False})

        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False
        assert again.status_code == 200
        [member] = await fetch_all(session_factory, TeamMember, TeamMember.id == school.bob_membership.id)
        assert member.end_date is not None

        [log] = await fetch_all(session_factory, PermissionAuditLog)
        assert log.action == AuditAction.REVOKE
        assert log.target_user_id == school.bob.id
        assert log.reason == "Removed from team"
        assert load_snapshot(log.previous_value) == MembershipSnapshot(
            team_id=school.team.id, position_id=school.teacher.id
        )

    @pytest.mark.asyncio
    async def test_reactivating_through_update_is_audited(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")
        await client.delete(f"/api/members/{school.bob_membership.id}")

        response = await client.put(f"/api/members/{school.bob_membership.id}", json={"is_active": True})

        assert response.status_code == 200
        [member] = await fetch_all(session_factory, TeamMember, TeamMember.id == school.bob_membership.id)
        assert member.is_active is True
        assert member.end_date is None
        actions = sorted(log.action.value for log in await fetch_all(session_factory, PermissionAuditLog))
        assert actions == ["grant", "revoke"]

    @pytest.mark.asyncio
    async def test_get_member_includes_position_permissions(self, client, caller, school) -> None:
        caller.login(school.carol, school.org)

        response = await client.get(f"/api/members/{school.alice_membership.id}")

        assert response.status_code == 200
        codes = {p["action_type"]["code"] for p in response.json()["data"]["permissions"]}
        assert codes == {"wiki.create", "kaizen.approve", "finance.invoices.read"}

    @pytest.mark.asyncio
    async def test_member_of_other_organization_is_not_found(self, client, caller, school) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.get(f"/api/members/{school.outsider_membership.id}")

        assert response.status_code == 404
        assert response.json() == {"error": "Member not found"}
