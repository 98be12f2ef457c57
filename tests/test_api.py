"""HTTP tests: routing, authentication and error rendering."""

from datetime import datetime, timedelta

from tests.helpers import auth, default_sections


def window():
    now = datetime.utcnow()
    return {
        "valid_from": (now - timedelta(days=1)).isoformat(),
        "valid_to": (now + timedelta(days=30)).isoformat(),
    }


def build_directory(client, headers):
    promo = client.post("/promotions", json={"name": "BUT2 Info", "year": "2025"}, headers=headers).json()
    group = client.post("/groups", json={"name": "G1", "promotion": promo["id"]}, headers=headers).json()
    ada = client.post("/students", json={
        "first_name": "Ada", "last_name": "Lovelace", "year": "BUT2", "student_number": "22001",
        "promotions": [promo["id"]], "groups": [group["id"]],
    }, headers=headers).json()
    return promo, group, ada


def create_form(client, headers, students):
    payload = {"title": "Projet", "association_type": "student", "students": students, "sections": default_sections(), **window()}
    response = client.post("/forms", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def common_score(form, value):
    line = form["sections"][0]["lines"][0]
    return {"line_id": line["id"], "notation_type": "common", "common_score": value}


# -------------------- Meta and auth -------------------- #

class TestMeta:
    def test_root_and_health(self, client):
        """The service reports itself and its database."""
        assert client.get("/").status_code == 200
        health = client.get("/health").json()
        assert health["backend"] == "running"
        assert health["database"] == "connected"

    def test_requires_token(self, client):
        """Protected routes answer 401 without a bearer token."""
        assert client.get("/students").status_code == 401
        assert client.get("/students", headers={"Authorization": "Bearer garbage"}).status_code == 401

    def test_admin_only_writes(self, client, professor_headers):
        """Professors cannot change the directory."""
        response = client.post("/promotions", json={"name": "BUT1", "year": "2025"}, headers=professor_headers)
        assert response.status_code == 403


# -------------------- Directory -------------------- #

class TestDirectoryRoutes:
    def test_create_and_list(self, client, admin_headers):
        """Created entities come back with string ids and a pagination envelope."""
        promo, group, ada = build_directory(client, admin_headers)
        listing = client.get("/students", params={"group": group["id"]}, headers=admin_headers).json()
        assert [s["id"] for s in listing["items"]] == [ada["id"]]
        assert listing["pagination"]["total"] == 1
        assert client.get(f"/promotions/{promo['id']}/groups", headers=admin_headers).json()[0]["id"] == group["id"]

    def test_not_found(self, client, admin_headers):
        """Unknown and malformed ids render as NotFound."""
        for entity_id in ("5f0000000000000000000000", "bad-id"):
            response = client.get(f"/groups/{entity_id}", headers=admin_headers)
            assert response.status_code == 404
            assert response.json()["error"] == "NotFound"

    def test_deletion_blocked(self, client, admin_headers):
        """Deleting a group that owns subgroups answers 409."""
        _, group, ada = build_directory(client, admin_headers)
        client.post("/subgroups", json={"name": "TP A", "type": "TP", "group": group["id"], "students": [ada["id"]]}, headers=admin_headers)
        response = client.delete(f"/groups/{group['id']}", headers=admin_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "DeletionBlocked"

    def test_duplicate_student(self, client, admin_headers):
        """A second student with the same number is a conflict."""
        build_directory(client, admin_headers)
        response = client.post("/students", json={
            "first_name": "Copy", "last_name": "Cat", "year": "BUT1", "student_number": "22001",
        }, headers=admin_headers)
        assert response.status_code == 409

    def test_relations(self, client, admin_headers):
        """Students can be attached to subgroups through the relation routes."""
        _, group, ada = build_directory(client, admin_headers)
        sub = client.post("/subgroups", json={"name": "TP A", "type": "TP", "group": group["id"]}, headers=admin_headers).json()
        relation = {"parent_kind": "subgroup", "parent_id": sub["id"], "child_kind": "student", "child_id": ada["id"]}
        assert client.post("/relations/attach", json=relation, headers=admin_headers).status_code == 200
        members = client.get(f"/subgroups/{sub['id']}/students", headers=admin_headers).json()
        assert [m["id"] for m in members] == [ada["id"]]
        fixed = client.post("/relations/reconcile", headers=admin_headers).json()["fixed"]
        assert sum(fixed.values()) == 0


# -------------------- Forms and evaluations -------------------- #

class TestEvaluationRoutes:
    def test_form_defaults_professor(self, client, admin_headers, professor_headers):
        """A form created without a professor belongs to the caller."""
        _, _, ada = build_directory(client, admin_headers)
        form = create_form(client, professor_headers, [ada["id"]])
        assert form["professor"] == "prof-1"
        assert form["status"] == "active"
        assert client.get("/forms/valid", headers=professor_headers).json()["pagination"]["total"] == 1

    def test_invalid_form(self, client, admin_headers, professor_headers):
        """Form rule violations render as 400 with their kind."""
        payload = {"title": "Vide", "association_type": "student", "students": [], "sections": default_sections(), **window()}
        response = client.post("/forms", json=payload, headers=professor_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidAssociation"

    def test_evaluation_flow(self, client, admin_headers, professor_headers):
        """Create, list, score-check, report and export an evaluation."""
        _, _, ada = build_directory(client, admin_headers)
        form = create_form(client, professor_headers, [ada["id"]])
        body = {"form": form["id"], "evaluation_type": "student", "student": ada["id"], "scores": [common_score(form, 5)]}

        created = client.post("/evaluations", json=body, headers=professor_headers)
        assert created.status_code == 201, created.text
        assert created.json()["professor"] == "prof-1"

        rejected = client.post("/evaluations", json={**body, "scores": [common_score(form, 9)]}, headers=professor_headers)
        assert rejected.status_code == 400
        assert rejected.json()["error"] == "ScoreOutOfRange"

        listing = client.get("/evaluations", params={"student": ada["id"]}, headers=professor_headers).json()
        assert listing["pagination"]["total"] == 1

        check = client.post("/evaluations/validate-scores", json={"form": form["id"], "scores": [common_score(form, 9)]}, headers=professor_headers).json()
        assert check["valid"] is False

        stats = client.get(f"/evaluations/stats/{form['id']}", headers=professor_headers).json()
        assert stats["lines"][0]["average"] == 5

        export = client.get(f"/evaluations/export/{form['id']}", headers=professor_headers)
        assert export.headers["content-type"].startswith("text/csv")
        assert export.text.splitlines()[1] == "Ada Lovelace (22001),5,0,0"

        context = client.get(f"/evaluations/context/{form['id']}", headers=professor_headers).json()
        assert context["stats"]["total_evaluations"] == 1

    def test_bulk(self, client, admin_headers, professor_headers):
        """Bulk creation reports failures per item."""
        _, _, ada = build_directory(client, admin_headers)
        form = create_form(client, professor_headers, [ada["id"]])
        items = [
            {"student": ada["id"], "scores": [common_score(form, 5)]},
            {"student": ada["id"], "scores": [common_score(form, 9)]},
            {"student": ada["id"], "scores": [common_score(form, 3)]},
        ]
        response = client.post("/evaluations/bulk", json={"form": form["id"], "evaluations": items}, headers=professor_headers)
        assert response.status_code == 201
        result = response.json()
        assert len(result["created"]) == 2
        assert result["errors"][0]["index"] == 1

    def test_only_admin_deletes_evaluations(self, client, admin_headers, professor_headers):
        """Professors cannot delete evaluations; admins can."""
        _, _, ada = build_directory(client, admin_headers)
        form = create_form(client, professor_headers, [ada["id"]])
        body = {"form": form["id"], "evaluation_type": "student", "student": ada["id"], "scores": [common_score(form, 5)]}
        evaluation = client.post("/evaluations", json=body, headers=professor_headers).json()
        assert client.delete(f"/evaluations/{evaluation['id']}", headers=professor_headers).status_code == 403
        assert client.delete(f"/evaluations/{evaluation['id']}", headers=admin_headers).status_code == 200
        assert client.get(f"/evaluations/{evaluation['id']}", headers=admin_headers).status_code == 404

    def test_overview(self, client, professor_headers):
        """The overview is available to staff."""
        assert client.get("/stats/overview", headers=professor_headers).json()["evaluations"] == 0

    def test_statistics_routes(self, client, admin_headers, professor_headers):
        """Directory, form and evaluation statistics are served to staff."""
        promo, _, _ = build_directory(client, admin_headers)
        assert client.get("/stats/students", headers=professor_headers).json()["total"] == 1
        assert client.get("/stats/forms", headers=professor_headers).json()["total"] == 0
        assert client.get("/stats/evaluations", headers=professor_headers).json()["by_month"] == []
        promotion = client.get(f"/stats/promotions/{promo['id']}", headers=professor_headers).json()
        assert (promotion["students"], promotion["groups"]) == (1, 1)
        missing = client.get("/stats/promotions/5f0000000000000000000000", headers=professor_headers)
        assert missing.status_code == 404
        assert missing.json()["error"] == "NotFound"
        assert client.get("/stats/students", headers=auth("student", "s-1")).status_code == 403
