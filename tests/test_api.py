"""End-to-end tests for the HTTP API with authentication stubbed out."""

from uuid import uuid4

import pytest
from ouroboros import main, store


@pytest.fixture
async def people(make_user):
    return {
        "uncleared": await make_user("uncleared", 0),
        "initiate": await make_user("initiate", 1),
        "acolyte": await make_user("acolyte", 2),
        "adept": await make_user("adept", 3),
        "magos": await make_user("magos", 4),
        "archmagos": await make_user("archmagos", 5),
    }


async def create_project(client, caller, creator, **fields):
    caller.identity = creator
    resp = await client.post("/api/projects", json={"name": "Tideline", **fields})
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.json() == {"status": "healthy"}

    async def test_me_without_token(self, client):
        resp = await client.get("/api/auth/me")
        assert resp.json() == {"authenticated": False}

    async def test_me_lists_open_security_classes(self, client, people, monkeypatch):
        async def decode(token):
            return {"sub": "sub-acolyte"}

        async def resolve(db, payload):
            return people["acolyte"]

        monkeypatch.setattr(main, "decode_token", decode)
        monkeypatch.setattr(main, "resolve_identity", resolve)
        resp = await client.get("/api/auth/me", headers={"Authorization": "Bearer token"})
        body = resp.json()
        assert body["authenticated"] is True
        assert body["security_classes"] == ["GREEN", "AMBER"]


class TestProjectAccess:

    async def test_list_only_shows_accessible_projects(self, client, caller, people):
        await create_project(client, caller, people["archmagos"], name="Vault", security_class="BLACK")
        await create_project(client, caller, people["adept"], name="Garden", security_class="GREEN")

        caller.identity = people["initiate"]
        body = (await client.get("/api/projects")).json()
        assert body["total_in_system"] == 2
        assert [p["name"] for p in body["projects"]] == ["Garden"]
        assert body["projects"][0]["role"] == "researcher"

    async def test_creation_needs_clearance_for_class(self, client, caller, people):
        caller.identity = people["adept"]
        resp = await client.post("/api/projects", json={"name": "Deep", "security_class": "RED"})
        assert resp.status_code == 403

    async def test_denied_read_is_audited(self, client, caller, people):
        project = await create_project(client, caller, people["archmagos"], security_class="RED")

        caller.identity = people["acolyte"]
        resp = await client.get(f"/api/projects/{project['id']}")
        assert resp.status_code == 403

        caller.identity = people["archmagos"]
        denials = (await client.get("/api/audit/denials")).json()["denials"]
        assert denials[0]["action"] == "ACCESS_DENIED"
        assert denials[0]["username"] == "acolyte"
        assert denials[0]["clearance_required"] == 4

    async def test_user_rule_opens_project_below_floor(self, client, caller, people):
        project = await create_project(client, caller, people["archmagos"], security_class="BLACK")
        resp = await client.post(
            f"/api/projects/{project['id']}/access",
            json={"access_type": "user", "target_id": str(people["uncleared"].id), "role": "observer"},
        )
        assert resp.status_code == 201
        assert resp.json()["description"] == f"user:{people['uncleared'].id}"

        caller.identity = people["uncleared"]
        body = (await client.get(f"/api/projects/{project['id']}")).json()
        assert body["your_role"] == "observer"
        assert body["access_basis"] == "rule:user"

    async def test_malformed_rule_is_rejected(self, client, caller, people):
        project = await create_project(client, caller, people["adept"])
        resp = await client.post(
            f"/api/projects/{project['id']}/access",
            json={"access_type": "clearance", "target_id": str(uuid4()), "min_clearance": 3},
        )
        assert resp.status_code == 400
        assert "error" in resp.json()

    async def test_security_class_case_insensitive(self, client, caller, people):
        project = await create_project(client, caller, people["magos"], security_class="red")
        assert project["security_class"] == "RED"

        body = (await client.get("/api/projects", params={"security": "Red"})).json()
        assert [p["id"] for p in body["projects"]] == [project["id"]]

    async def test_unknown_security_class_rejected(self, client, caller, people):
        caller.identity = people["archmagos"]
        resp = await client.post("/api/projects", json={"name": "Prism", "security_class": "VIOLET"})
        assert resp.status_code == 422
        assert (await client.get("/api/projects", params={"security": "violet"})).status_code == 422

    async def test_unknown_threat_level_rejected(self, client, caller, people):
        caller.identity = people["archmagos"]
        resp = await client.post("/api/projects", json={"name": "Prism", "threat_level": "cosmic"})
        assert resp.status_code == 422

    async def test_missing_project(self, client, caller, people):
        caller.identity = people["archmagos"]
        resp = await client.get(f"/api/projects/{uuid4()}")
        assert resp.status_code == 404

    async def test_only_lead_or_admin_edits(self, client, caller, people):
        project = await create_project(client, caller, people["adept"])

        caller.identity = people["magos"]
        resp = await client.patch(f"/api/projects/{project['id']}", json={"progress": 40})
        assert resp.status_code == 403

        caller.identity = people["adept"]
        resp = await client.patch(f"/api/projects/{project['id']}", json={"progress": 40, "status": "review"})
        assert resp.status_code == 200
        assert sorted(resp.json()["changes"]) == ["progress", "status"]


class TestAssignments:

    async def test_assign_twice_updates_role(self, client, caller, people):
        project = await create_project(client, caller, people["adept"], security_class="AMBER")
        url = f"/api/projects/{project['id']}/assignments"
        member = str(people["acolyte"].id)

        first = await client.post(url, json={"user_id": member, "role": "observer"})
        second = await client.post(url, json={"user_id": member, "role": "researcher"})
        assert first.json()["created"] is True
        assert second.json()["created"] is False

        team = (await client.get(url)).json()["assignments"]
        assert len(team) == 2
        assert {a["role"] for a in team if a["user_id"] == member} == {"researcher"}

    async def test_assignee_must_meet_floor(self, client, caller, people):
        project = await create_project(client, caller, people["adept"], security_class="AMBER")
        resp = await client.post(
            f"/api/projects/{project['id']}/assignments",
            json={"user_id": str(people["initiate"].id)},
        )
        assert resp.status_code == 400

    async def test_researcher_cannot_assign(self, client, caller, people):
        project = await create_project(client, caller, people["adept"])
        caller.identity = people["acolyte"]
        resp = await client.post(
            f"/api/projects/{project['id']}/assignments",
            json={"user_id": str(people["initiate"].id)},
        )
        assert resp.status_code == 403


class TestDepartments:

    async def create_department(self, client, caller, people, name):
        caller.identity = people["archmagos"]
        resp = await client.post("/api/departments", json={"name": name})
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def test_department_rule_opens_project_after_membership(self, client, caller, people, session_factory):
        dept = await self.create_department(client, caller, people, "Containment")
        project = await create_project(client, caller, people["archmagos"], security_class="BLACK")
        resp = await client.post(
            f"/api/projects/{project['id']}/access",
            json={"access_type": "department", "target_id": dept["id"], "role": "observer"},
        )
        assert resp.status_code == 201

        acolyte = people["acolyte"]
        caller.identity = acolyte
        assert (await client.get(f"/api/projects/{project['id']}")).status_code == 403

        caller.identity = people["magos"]
        resp = await client.post(f"/api/users/{acolyte.id}/memberships", json={"department_id": dept["id"]})
        assert resp.status_code == 201
        assert resp.json()["created"] is True

        async with session_factory() as session:
            caller.identity = await store.load_identity(session, acolyte.id)
        body = (await client.get(f"/api/projects/{project['id']}")).json()
        assert body["access_basis"] == "rule:department"
        assert body["your_role"] == "observer"

    async def test_rank_from_another_department_not_found(self, client, caller, people):
        containment = await self.create_department(client, caller, people, "Containment")
        archives = await self.create_department(client, caller, people, "Archives")
        rank = (await client.post(
            "/api/ranks", json={"department_id": archives["id"], "name": "Curator"}
        )).json()
        assert rank["short_name"] == "CU"

        caller.identity = people["magos"]
        resp = await client.post(
            f"/api/users/{people['acolyte'].id}/memberships",
            json={"department_id": containment["id"], "rank_id": rank["id"]},
        )
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Rank not found in this department"

    async def test_regrant_changes_rank(self, client, caller, people):
        dept = await self.create_department(client, caller, people, "Containment")
        rank = (await client.post("/api/ranks", json={"department_id": dept["id"], "name": "Warden"})).json()
        url = f"/api/users/{people['acolyte'].id}/memberships"

        caller.identity = people["magos"]
        assert (await client.post(url, json={"department_id": dept["id"]})).status_code == 201
        resp = await client.post(url, json={"department_id": dept["id"], "rank_id": rank["id"]})
        assert resp.status_code == 200
        assert resp.json()["rank_id"] == rank["id"]

        caller.identity = people["acolyte"]
        memberships = (await client.get(url)).json()["memberships"]
        assert [m["rank_id"] for m in memberships] == [rank["id"]]

    async def test_revoke_membership(self, client, caller, people):
        dept = await self.create_department(client, caller, people, "Containment")
        url = f"/api/users/{people['acolyte'].id}/memberships"
        caller.identity = people["magos"]
        await client.post(url, json={"department_id": dept["id"]})

        assert (await client.delete(f"{url}/{dept['id']}")).status_code == 200
        assert (await client.delete(f"{url}/{dept['id']}")).status_code == 404

    async def test_membership_changes_need_level_four(self, client, caller, people):
        dept = await self.create_department(client, caller, people, "Containment")
        caller.identity = people["adept"]
        resp = await client.post(
            f"/api/users/{people['acolyte'].id}/memberships", json={"department_id": dept["id"]}
        )
        assert resp.status_code == 403

    async def test_only_level_five_creates_departments(self, client, caller, people):
        caller.identity = people["magos"]
        assert (await client.post("/api/departments", json={"name": "Annex"})).status_code == 403

    async def test_duplicate_department_conflicts(self, client, caller, people):
        await self.create_department(client, caller, people, "Containment")
        resp = await client.post("/api/departments", json={"name": "Containment"})
        assert resp.status_code == 409

    async def test_list_with_ranks(self, client, caller, people):
        dept = await self.create_department(client, caller, people, "Containment")
        await client.post("/api/ranks", json={"department_id": dept["id"], "name": "Warden", "sort_order": 2})
        await client.post("/api/ranks", json={"department_id": dept["id"], "name": "Keeper", "sort_order": 1})

        caller.identity = people["uncleared"]
        body = (await client.get("/api/departments", params={"includeRanks": "true"})).json()
        assert [r["name"] for r in body["departments"][0]["ranks"]] == ["Keeper", "Warden"]
        ranks = (await client.get("/api/ranks", params={"departmentId": dept["id"]})).json()["ranks"]
        assert len(ranks) == 2


class TestLogbook:

    async def test_entries_are_redacted_per_viewer(self, client, caller, people):
        project = await create_project(client, caller, people["archmagos"], security_class="AMBER")
        url = f"/api/projects/{project['id']}/logbook"

        resp = await client.post(url, json={
            "entry_text": "Specimen exhibited recursion",
            "attachments": {"scan": "s-114.png"},
            "min_clearance_to_view": 5,
            "is_redacted": True,
            "redacted_version": "X",
        })
        assert resp.status_code == 201
        assert resp.json()["visibility"] == "full"

        caller.identity = people["acolyte"]
        entry = (await client.get(url)).json()["entries"][0]
        assert entry["visibility"] == "redacted"
        assert entry["entry_text"] == "X"
        assert entry["attachments"] is None

        caller.identity = people["archmagos"]
        entry = (await client.get(url)).json()["entries"][0]
        assert entry["entry_text"] == "Specimen exhibited recursion"
        assert entry["attachments"] == {"scan": "s-114.png"}

    async def test_unassigned_cannot_write(self, client, caller, people):
        project = await create_project(client, caller, people["adept"])
        caller.identity = people["acolyte"]
        resp = await client.post(f"/api/projects/{project['id']}/logbook", json={"entry_text": "hello"})
        assert resp.status_code == 403


class TestReports:

    async def test_threshold_capped_and_hidden(self, client, caller, people):
        caller.identity = people["acolyte"]
        resp = await client.post("/api/reports", json={
            "title": "Rumour", "content": "Something moves in the archive",
            "min_clearance_to_view": 5,
        })
        assert resp.status_code == 201
        report = resp.json()
        assert report["min_clearance_to_view"] == 2

        caller.identity = people["initiate"]
        assert (await client.get("/api/reports")).json()["reports"] == []
        assert (await client.get(f"/api/reports/{report['id']}")).status_code == 403

    async def test_unknown_priority_rejected(self, client, caller, people):
        caller.identity = people["acolyte"]
        resp = await client.post("/api/reports", json={"title": "T", "content": "C", "priority": "urgent"})
        assert resp.status_code == 422

    async def test_status_change_needs_level_three(self, client, caller, people):
        caller.identity = people["acolyte"]
        report = (await client.post("/api/reports", json={"title": "Spill", "content": "Reagent"})).json()
        url = f"/api/reports/{report['id']}"

        resp = await client.patch(url, json={"status": "acknowledged"})
        assert resp.status_code == 403
        resp = await client.patch(url, json={"priority": "HIGH"})
        assert resp.status_code == 200
        assert resp.json()["priority"] == "high"

        caller.identity = people["adept"]
        resp = await client.patch(url, json={"status": "acknowledged"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "acknowledged"
        assert resp.json()["acknowledged_at"] is not None

    async def test_patch_needs_read_clearance(self, client, caller, people):
        caller.identity = people["adept"]
        report = (await client.post(
            "/api/reports", json={"title": "Sealed", "content": "...", "min_clearance_to_view": 3}
        )).json()

        caller.identity = people["acolyte"]
        resp = await client.patch(f"/api/reports/{report['id']}", json={"priority": "low"})
        assert resp.status_code == 403

    async def test_read_receipts_for_high_clearance(self, client, caller, people):
        caller.identity = people["acolyte"]
        report = (await client.post("/api/reports", json={"title": "Weekly", "content": "Quiet"})).json()

        caller.identity = people["magos"]
        assert (await client.get("/api/reports")).json()["reports"][0]["is_read"] is False
        body = (await client.get(f"/api/reports/{report['id']}")).json()
        assert body["content"] == "Quiet"
        assert (await client.get("/api/reports")).json()["reports"][0]["is_read"] is True


class TestProposals:

    async def submit(self, client, caller, submitter, **fields):
        caller.identity = submitter
        resp = await client.post("/api/proposals", json={
            "name": "Listening Post Delta",
            "security_class": "RED",
            "clearance_requirements": [2, 4],
            **fields,
        })
        assert resp.status_code == 201, resp.text
        return resp.json()

    async def test_approve_once(self, client, caller, people):
        proposal = await self.submit(client, caller, people["acolyte"])

        caller.identity = people["magos"]
        first = await client.post(f"/api/proposals/{proposal['id']}/approve")
        assert first.status_code == 200
        project_id = first.json()["project_id"]

        again = await client.post(f"/api/proposals/{proposal['id']}/approve")
        assert again.status_code == 409
        assert again.json()["project_id"] == project_id

        caller.identity = people["archmagos"]
        project = (await client.get(f"/api/projects/{project_id}")).json()
        assert project["lead_user_id"] == str(people["acolyte"].id)
        assert {r["min_clearance"] for r in project["access_rules"]} == {2, 4}

    async def test_clearance_requirement_rule_admits_submitter(self, client, caller, people):
        proposal = await self.submit(client, caller, people["acolyte"])
        caller.identity = people["magos"]
        project_id = (await client.post(f"/api/proposals/{proposal['id']}/approve")).json()["project_id"]

        caller.identity = people["acolyte"]
        body = (await client.get(f"/api/projects/{project_id}")).json()
        assert body["access_basis"] == "rule:clearance"

    async def test_rejected_cannot_be_approved(self, client, caller, people):
        proposal = await self.submit(client, caller, people["acolyte"])

        caller.identity = people["magos"]
        resp = await client.post(f"/api/proposals/{proposal['id']}/reject", json={"reason": "Duplicate"})
        assert resp.json()["status"] == "rejected"

        resp = await client.post(f"/api/proposals/{proposal['id']}/approve")
        assert resp.status_code == 409

    async def test_approval_needs_level_four(self, client, caller, people):
        proposal = await self.submit(client, caller, people["acolyte"])
        caller.identity = people["adept"]
        resp = await client.post(f"/api/proposals/{proposal['id']}/approve")
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Clearance Level 4+ required"

    async def test_invalid_requirement(self, client, caller, people):
        caller.identity = people["acolyte"]
        resp = await client.post("/api/proposals", json={"name": "Bad", "clearance_requirements": [7]})
        assert resp.status_code == 400

    async def test_unknown_security_class_rejected(self, client, caller, people):
        caller.identity = people["acolyte"]
        resp = await client.post("/api/proposals", json={"name": "Prism", "security_class": "VIOLET"})
        assert resp.status_code == 422

    async def test_revision_round_trip(self, client, caller, people):
        proposal = await self.submit(client, caller, people["acolyte"])
        url = f"/api/proposals/{proposal['id']}"

        caller.identity = people["magos"]
        resp = await client.patch(url, json={"status": "revision", "revision_notes": "Name the site"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "revision"
        assert resp.json()["reviewed_by"] == str(people["magos"].id)

        caller.identity = people["acolyte"]
        resp = await client.patch(url, json={"site_assignment": "Site-9", "clearance_requirements": [3]})
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "pending"
        assert body["clearance_requirements"] == [3]
        assert body["revision_notes"] == "Name the site"

    async def test_reviewer_cannot_approve_by_patch(self, client, caller, people):
        proposal = await self.submit(client, caller, people["acolyte"])
        caller.identity = people["magos"]
        resp = await client.patch(f"/api/proposals/{proposal['id']}", json={"status": "approved"})
        assert resp.status_code == 409

    async def test_only_submitter_or_reviewer_patches(self, client, caller, people):
        proposal = await self.submit(client, caller, people["acolyte"])
        caller.identity = people["adept"]
        resp = await client.patch(f"/api/proposals/{proposal['id']}", json={"name": "Mine now"})
        assert resp.status_code == 403

    async def test_submitter_cannot_edit_under_review(self, client, caller, people):
        proposal = await self.submit(client, caller, people["acolyte"])
        url = f"/api/proposals/{proposal['id']}"
        caller.identity = people["magos"]
        await client.patch(url, json={"status": "under_review"})

        caller.identity = people["acolyte"]
        resp = await client.patch(url, json={"name": "Renamed"})
        assert resp.status_code == 409

    async def test_submitters_see_only_their_own(self, client, caller, people):
        await self.submit(client, caller, people["acolyte"])
        await self.submit(client, caller, people["adept"], name="Other")

        caller.identity = people["acolyte"]
        assert len((await client.get("/api/proposals")).json()["proposals"]) == 1
        caller.identity = people["magos"]
        assert len((await client.get("/api/proposals")).json()["proposals"]) == 2


class TestAdmin:

    async def test_clearance_change(self, client, caller, people):
        caller.identity = people["archmagos"]
        target = people["initiate"].id
        resp = await client.put(f"/api/admin/users/{target}", json={"clearance_level": 3})
        assert resp.status_code == 200
        assert resp.json()["changes"]["clearance_level"] == {"old": 1, "new": 3}

    async def test_clearance_out_of_range(self, client, caller, people):
        caller.identity = people["archmagos"]
        resp = await client.put(f"/api/admin/users/{people['initiate'].id}", json={"clearance_level": 9})
        assert resp.status_code == 422

    async def test_only_level_five_changes_clearance(self, client, caller, people):
        caller.identity = people["magos"]
        resp = await client.put(f"/api/admin/users/{people['initiate'].id}", json={"clearance_level": 3})
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Clearance Level 5+ required"

    async def test_level_four_deactivates(self, client, caller, people):
        caller.identity = people["magos"]
        resp = await client.put(f"/api/admin/users/{people['initiate'].id}", json={"is_active": False})
        assert resp.status_code == 200
        assert resp.json()["changes"]["is_active"] == {"old": True, "new": False}
