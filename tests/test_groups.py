"""Permission group endpoint and resolution tests."""

from datetime import timedelta

import pytest

from app.features.permissions.models import (
    AuditAction,
    PermissionAuditLog,
    PermissionGroup,
    PermissionGroupAction,
    PermissionScope,
    UserGroupAssignment,
    UserPermissionOverride,
)
from app.features.permissions.snapshots import GroupAssignmentSnapshot, GroupSnapshot, load_snapshot
from app.features.teams.models import Team
from app.utils import utcnow

from tests.conftest import count_rows, fetch_all


async def add_group(
    session_factory,
    org,
    actions,
    *,
    name="Quality Committee",
    scope=PermissionScope.ORGANIZATION,
    members=(),
    granted_by=None,
    is_system=False,
) -> str:
    """Insert a group directly; `members` holds (person, team_id, expires_at) triples."""
    async with session_factory() as session:
        group = PermissionGroup(
            organization_id=org.id,
            name=name,
            slug=name.lower().replace(" ", "-"),
            is_system=is_system,
            actions=[PermissionGroupAction(action_type_id=action.id, scope=scope) for action in actions],
            assignments=[
                UserGroupAssignment(
                    person_id=person.id,
                    team_id=team_id,
                    expires_at=expires_at,
                    granted_by=granted_by.id,
                )
                for person, team_id, expires_at in members
            ],
        )
        session.add(group)
        await session.commit()
        return group.id


class TestCreateGroup:
    @pytest.mark.asyncio
    async def test_admin_creates_group_with_actions(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")
        action_ids = [school.actions["kaizen.approve"].id, school.actions["wiki.create"].id]

        response = await client.post(
            "/api/permission-groups",
            json={"name": "Comissão de Qualidade", "action_type_ids": action_ids, "scope": "team"},
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["slug"] == "comissao-de-qualidade"
        assert data["action_count"] == 2
        assert data["user_count"] == 0
        assert sorted(a["action_type"]["code"] for a in data["actions"]) == ["kaizen.approve", "wiki.create"]
        assert {a["scope"] for a in data["actions"]} == {"team"}

        [log] = await fetch_all(session_factory, PermissionAuditLog)
        assert log.action == AuditAction.GRANT
        assert log.target_group_id == data["id"]
        assert load_snapshot(log.new_value) == GroupSnapshot(
            name="Comissão de Qualidade", action_type_ids=action_ids, scope=PermissionScope.TEAM
        )

    @pytest.mark.asyncio
    async def test_slug_collision_conflicts(self, client, caller, school) -> None:
        caller.login(school.admin, school.org, role="owner")

        await client.post("/api/permission-groups", json={"name": "Quality Committee"})
        response = await client.post("/api/permission-groups", json={"name": "quality committee!"})

        assert response.status_code == 409
        assert response.json() == {"error": "Group with this slug already exists"}

    @pytest.mark.asyncio
    async def test_same_name_in_other_organization_is_fine(self, client, caller, school, session_factory) -> None:
        await add_group(session_factory, school.other_org, [])
        caller.login(school.admin, school.org, role="owner")

        response = await client.post("/api/permission-groups", json={"name": "Quality Committee"})

        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_foreign_action_is_not_found(self, client, caller, school, session_factory) -> None:
        caller.login(school.admin, school.org, role="owner")
        foreign_id = school.foreign_actions["wiki.create"].id

        response = await client.post(
            "/api/permission-groups",
            json={"name": "Borrowed", "action_type_ids": [school.actions["wiki.create"].id, foreign_id]},
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Action type not found", "missing_action_types": [foreign_id]}
        assert await count_rows(session_factory, PermissionGroup) == 0
        assert await count_rows(session_factory, PermissionAuditLog) == 0

    @pytest.mark.asyncio
    async def test_name_without_letters_is_rejected(self, client, caller, school) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.post("/api/permission-groups", json={"name": "!!!"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_members_cannot_create(self, client, caller, school, session_factory) -> None:
        caller.login(school.carol, school.org)

        response = await client.post("/api/permission-groups", json={"name": "Self service"})

        assert response.status_code == 403
        assert await count_rows(session_factory, PermissionGroup) == 0


class TestManageGroups:
    @pytest.mark.asyncio
    async def test_list_counts_actions_and_users(self, client, caller, school, session_factory) -> None:
        await add_group(
            session_factory,
            school.org,
            [school.actions["kaizen.approve"]],
            members=[(school.carol, None, None), (school.bob, None, None)],
            granted_by=school.admin,
        )
        await add_group(session_factory, school.other_org, [school.foreign_actions["wiki.create"]], name="Elsewhere")
        caller.login(school.carol, school.org)

        response = await client.get("/api/permission-groups")

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        [item] = body["data"]
        assert item["name"] == "Quality Committee"
        assert item["action_count"] == 1
        assert item["user_count"] == 2

    @pytest.mark.asyncio
    async def test_group_of_other_organization_is_not_found(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(session_factory, school.other_org, [])
        caller.login(school.admin, school.org, role="owner")

        response = await client.get(f"/api/permission-groups/{group_id}")
        deleted = await client.delete(f"/api/permission-groups/{group_id}")

        assert response.status_code == 404
        assert response.json() == {"error": "Group not found"}
        assert deleted.status_code == 404
        assert await count_rows(session_factory, PermissionGroup) == 1

    @pytest.mark.asyncio
    async def test_update_replaces_actions_and_scope(self, client, caller, school, session_factory) -> None:
        kaizen = school.actions["kaizen.approve"]
        wiki = school.actions["wiki.create"]
        invoices = school.actions["finance.invoices.read"]
        group_id = await add_group(session_factory, school.org, [kaizen, wiki])
        caller.login(school.admin, school.org, role="owner")

        response = await client.put(
            f"/api/permission-groups/{group_id}",
            json={"name": "Finance Readers", "action_type_ids": [wiki.id, invoices.id], "scope": "own"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["slug"] == "finance-readers"
        assert sorted(a["action_type_id"] for a in data["actions"]) == sorted([wiki.id, invoices.id])
        assert {a["scope"] for a in data["actions"]} == {"own"}
        assert await count_rows(session_factory, PermissionGroupAction) == 2

        [log] = await fetch_all(session_factory, PermissionAuditLog)
        assert log.action == AuditAction.MODIFY
        assert load_snapshot(log.previous_value).scope == PermissionScope.ORGANIZATION
        assert load_snapshot(log.new_value).name == "Finance Readers"

    @pytest.mark.asyncio
    async def test_rename_onto_another_group_conflicts(self, client, caller, school, session_factory) -> None:
        await add_group(session_factory, school.org, [], name="Quality Committee")
        group_id = await add_group(session_factory, school.org, [], name="Finance Readers")
        caller.login(school.admin, school.org, role="owner")

        response = await client.put(f"/api/permission-groups/{group_id}", json={"name": "Quality Committee"})

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_delete_removes_actions_and_assignments(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(
            session_factory,
            school.org,
            [school.actions["kaizen.approve"]],
            members=[(school.carol, None, None)],
            granted_by=school.admin,
        )
        caller.login(school.admin, school.org, role="owner")

        response = await client.delete(f"/api/permission-groups/{group_id}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "deleted": True}
        assert await count_rows(session_factory, PermissionGroup) == 0
        assert await count_rows(session_factory, PermissionGroupAction) == 0
        assert await count_rows(session_factory, UserGroupAssignment) == 0

        [log] = await fetch_all(session_factory, PermissionAuditLog)
        assert log.action == AuditAction.REVOKE
        assert log.target_group_id == group_id
        assert log.reason == "Permission group deleted with 1 assignment(s)"

    @pytest.mark.asyncio
    async def test_system_group_cannot_be_deleted(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(session_factory, school.org, [], is_system=True)
        caller.login(school.admin, school.org, role="owner")

        response = await client.delete(f"/api/permission-groups/{group_id}")

        assert response.status_code == 403
        assert response.json() == {"error": "Cannot delete system group"}
        assert await count_rows(session_factory, PermissionGroup) == 1


class TestGroupAssignments:
    @pytest.mark.asyncio
    async def test_assign_then_refresh(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(session_factory, school.org, [school.actions["kaizen.approve"]])
        caller.login(school.admin, school.org, role="owner")
        expires_at = (utcnow() + timedelta(days=10)).isoformat()

        first = await client.post(f"/api/permission-groups/{group_id}/members", json={"person_id": school.carol.id})
        second = await client.post(
            f"/api/permission-groups/{group_id}/members",
            json={"person_id": school.carol.id, "team_id": school.team.id, "expires_at": expires_at},
        )

        assert first.status_code == 201
        assert first.json()["created"] is True
        assert first.json()["data"]["person_name"] == "Carol"
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["data"]["team_id"] == school.team.id
        assert await count_rows(session_factory, UserGroupAssignment) == 1

        logs = await fetch_all(session_factory, PermissionAuditLog)
        assert [log.action for log in logs] == [AuditAction.GRANT, AuditAction.GRANT]
        assert all(log.target_user_id == school.carol.id for log in logs)
        refreshed = [log for log in logs if log.previous_value is not None]
        assert len(refreshed) == 1
        assert load_snapshot(refreshed[0].previous_value) == GroupAssignmentSnapshot(
            group_id=group_id, group_name="Quality Committee"
        )

    @pytest.mark.asyncio
    async def test_unassign_is_audited(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(
            session_factory, school.org, [], members=[(school.carol, None, None)], granted_by=school.admin
        )
        caller.login(school.admin, school.org, role="owner")

        response = await client.delete(f"/api/permission-groups/{group_id}/members/{school.carol.id}")
        again = await client.delete(f"/api/permission-groups/{group_id}/members/{school.carol.id}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "removed": True}
        assert again.status_code == 404
        assert again.json() == {"error": "Assignment not found"}
        assert await count_rows(session_factory, UserGroupAssignment) == 0

        [log] = await fetch_all(session_factory, PermissionAuditLog)
        assert log.action == AuditAction.REVOKE
        assert log.target_user_id == school.carol.id
        assert log.target_group_id == group_id
        assert log.reason == "Removed from group Quality Committee"

    @pytest.mark.asyncio
    async def test_outsider_cannot_be_assigned(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(session_factory, school.org, [])
        caller.login(school.admin, school.org, role="owner")

        response = await client.post(
            f"/api/permission-groups/{group_id}/members", json={"person_id": school.outsider.id}
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Person not found"}
        assert await count_rows(session_factory, UserGroupAssignment) == 0

    @pytest.mark.asyncio
    async def test_team_of_other_organization_is_not_found(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(session_factory, school.org, [])
        caller.login(school.admin, school.org, role="owner")

        response = await client.post(
            f"/api/permission-groups/{group_id}/members",
            json={"person_id": school.carol.id, "team_id": school.foreign_team.id},
        )

        assert response.status_code == 404
        assert response.json() == {"error": "Team not found"}

    @pytest.mark.asyncio
    async def test_past_expiry_is_a_validation_error(self, client, caller, school) -> None:
        caller.login(school.admin, school.org, role="owner")

        response = await client.post(
            "/api/permission-groups/anything/members",
            json={"person_id": school.carol.id, "expires_at": (utcnow() - timedelta(days=1)).isoformat()},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Validation error"


class TestGroupResolution:
    @pytest.mark.asyncio
    async def test_assignment_grants_through_group(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(
            session_factory,
            school.org,
            [school.actions["kaizen.approve"]],
            members=[(school.carol, None, None)],
            granted_by=school.admin,
        )
        caller.login(school.carol, school.org)

        response = await client.get("/api/permissions/check", params={"action": "kaizen.approve"})
        mine = await client.get("/api/permissions/me")

        result = response.json()["results"]["kaizen.approve"]
        assert result["allowed"] is True
        assert result["source"] == "group"
        assert result["group_id"] == group_id
        assert result["scope"] == "organization"
        assert result["can_delegate"] is False
        assert mine.json()["summary"]["from_groups"] == 1
        assert mine.json()["summary"]["allowed"] == 1

    @pytest.mark.asyncio
    async def test_expired_assignment_grants_nothing(self, client, caller, school, session_factory) -> None:
        await add_group(
            session_factory,
            school.org,
            [school.actions["kaizen.approve"]],
            members=[(school.carol, None, utcnow() - timedelta(hours=1))],
            granted_by=school.admin,
        )
        caller.login(school.carol, school.org)

        response = await client.get("/api/permissions/check", params={"action": "kaizen.approve"})

        result = response.json()["results"]["kaizen.approve"]
        assert result["allowed"] is False
        assert result["source"] == "none"

    @pytest.mark.asyncio
    async def test_position_wins_over_group(self, client, caller, school, session_factory) -> None:
        await add_group(
            session_factory,
            school.org,
            [school.actions["finance.invoices.read"]],
            members=[(school.alice, None, None)],
            granted_by=school.admin,
        )
        caller.login(school.alice, school.org)

        response = await client.get("/api/permissions/check", params={"action": "finance.invoices.read"})

        assert response.json()["results"]["finance.invoices.read"]["source"] == "position"

    @pytest.mark.asyncio
    async def test_explicit_deny_beats_group(self, client, caller, school, session_factory) -> None:
        action = school.actions["kaizen.approve"]
        await add_group(
            session_factory, school.org, [action], members=[(school.carol, None, None)], granted_by=school.admin
        )
        async with session_factory() as session:
            session.add(UserPermissionOverride(
                person_id=school.carol.id, action_type_id=action.id, is_granted=False, granted_by=school.admin.id
            ))
            await session.commit()
        caller.login(school.carol, school.org)

        response = await client.get("/api/permissions/check", params={"action": "kaizen.approve"})

        result = response.json()["results"]["kaizen.approve"]
        assert result["allowed"] is False
        assert result["source"] == "override"

    @pytest.mark.asyncio
    async def test_team_bound_assignment_stays_in_its_team(self, client, caller, school, session_factory) -> None:
        async with session_factory() as session:
            other_team = Team(organization_id=school.org.id, name="Infantil", slug="infantil")
            session.add(other_team)
            await session.commit()
        await add_group(
            session_factory,
            school.org,
            [school.actions["kaizen.approve"]],
            scope=PermissionScope.TEAM,
            members=[(school.carol, school.team.id, None)],
            granted_by=school.admin,
        )
        caller.login(school.carol, school.org)

        inside = await client.get(
            "/api/permissions/check", params={"action": "kaizen.approve", "resource_team_id": school.team.id}
        )
        outside = await client.get(
            "/api/permissions/check", params={"action": "kaizen.approve", "resource_team_id": other_team.id}
        )

        assert inside.json()["results"]["kaizen.approve"]["allowed"] is True
        assert inside.json()["results"]["kaizen.approve"]["team_id"] == school.team.id
        assert outside.json()["results"]["kaizen.approve"]["allowed"] is False

    @pytest.mark.asyncio
    async def test_group_in_other_organization_does_not_count(self, client, caller, school, session_factory) -> None:
        await add_group(
            session_factory,
            school.other_org,
            [school.foreign_actions["kaizen.approve"]],
            members=[(school.carol, None, None)],
            granted_by=school.outsider,
        )
        caller.login(school.carol, school.org)

        response = await client.get("/api/permissions/check", params={"action": "kaizen.approve"})

        assert response.json()["results"]["kaizen.approve"]["allowed"] is False


class TestGroupExpiry:
    @pytest.mark.asyncio
    async def test_expiring_assignment_is_listed(self, client, caller, school, session_factory) -> None:
        group_id = await add_group(
            session_factory,
            school.org,
            [school.actions["kaizen.approve"]],
            members=[(school.carol, None, utcnow() + timedelta(days=2, hours=12)), (school.bob, None, None)],
            granted_by=school.admin,
        )
        caller.login(school.admin, school.org, role="owner")

        response = await client.get("/api/permission-expiry")

        assert response.status_code == 200
        [item] = response.json()["data"]
        assert item["kind"] == "group"
        assert item["person_id"] == school.carol.id
        assert item["group_id"] == group_id
        assert item["group_name"] == "Quality Committee"
        assert item["action_code"] is None
        assert item["urgency"] == "warning"
        assert response.json()["summary"]["total"] == 1

    @pytest.mark.asyncio
    async def test_members_only_see_their_own_assignments(self, client, caller, school, session_factory) -> None:
        soon = utcnow() + timedelta(days=1)
        await add_group(
            session_factory,
            school.org,
            [],
            members=[(school.carol, None, soon), (school.bob, None, soon)],
            granted_by=school.admin,
        )
        caller.login(school.bob, school.org)

        response = await client.get("/api/permission-expiry")

        assert [item["person_id"] for item in response.json()["data"]] == [school.bob.id]
