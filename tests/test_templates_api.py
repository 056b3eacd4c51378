import os
import sys
import unittest
import uuid
from unittest import mock

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"
os.environ["FORMHUB_DISABLE_AUTH"] = "1"
os.environ["SUPABASE_URL"] = "http://localhost"

import app.main as main
from app.backend import build_memory_backend


OWNER = str(uuid.uuid4())
OTHER = str(uuid.uuid4())


def _as(user_id):
    return {"X-User-Id": user_id, "X-User-Email": f"{user_id[:8]}@example.com"}


class TestTemplatesApi(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = build_memory_backend()
        main.app.state.backend = self.backend
        self.client = TestClient(main.app)
        self.topic_id = self.backend.catalog.list_topics()[0]["id"]

    def _create(self, **overrides):
        body = {
            "title": "Customer feedback",
            "description": "Tell us how we did",
            "topicId": self.topic_id,
            "templateFields": [
                {"type": "STRING", "title": "Name", "required": True},
                {"type": "INTEGER", "title": "Rating"},
            ],
        }
        body.update(overrides)
        res = self.client.post("/api/templates", json=body, headers=_as(OWNER))
        self.assertEqual(res.status_code, 201, res.text)
        return res.json()["template"]

    def test_create_returns_ordered_fields(self) -> None:
        template = self._create()
        self.assertEqual(template["ownerId"], OWNER)
        self.assertEqual([(f["title"], f["order"]) for f in template["templateFields"]], [("Name", 0), ("Rating", 1)])
        self.assertEqual(template["topic"]["id"], self.topic_id)
        self.assertEqual(template["_count"], {"likes": 0, "comments": 0, "submissions": 0})

    def test_create_rejects_bad_payload(self) -> None:
        res = self.client.post("/api/templates", json={"title": "x", "templateFields": []}, headers=_as(OWNER))
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual({e["path"] for e in body["errors"]}, {"title", "templateFields"})

    def test_create_duplicate_field_titles_conflict(self) -> None:
        res = self.client.post(
            "/api/templates",
            json={
                "title": "Dupes",
                "templateFields": [{"type": "STRING", "title": "Name"}, {"type": "TEXT", "title": "name"}],
            },
            headers=_as(OWNER),
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["errors"][0]["code"], "RECONCILIATION_CONFLICT")
        self.assertEqual(self.backend.templates.list_templates(), [])

    def test_create_unknown_tag_conflicts(self) -> None:
        res = self.client.post(
            "/api/templates",
            json={
                "title": "Tagged",
                "templateFields": [{"type": "STRING", "title": "Q"}],
                "templateTags": [str(uuid.uuid4())],
            },
            headers=_as(OWNER),
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["errors"][0]["path"], "templateTags[0]")

    def test_update_reconciles_fields(self) -> None:
        template = self._create()
        name_field, rating_field = template["templateFields"]
        res = self.client.put(
            f"/api/templates/{template['id']}",
            json={
                "title": "Customer feedback v2",
                "topicId": self.topic_id,
                "templateFields": [
                    {"id": rating_field["id"], "type": "INTEGER", "title": "Rating (1-5)", "required": True},
                    {"type": "CHECKBOX", "title": "Contact me"},
                ],
            },
            headers=_as(OWNER),
        )
        self.assertEqual(res.status_code, 200, res.text)
        updated = res.json()["template"]
        self.assertEqual(updated["title"], "Customer feedback v2")
        fields = updated["templateFields"]
        self.assertEqual([(f["title"], f["order"]) for f in fields], [("Rating (1-5)", 0), ("Contact me", 1)])
        self.assertEqual(fields[0]["id"], rating_field["id"])
        self.assertNotIn(name_field["id"], [f["id"] for f in fields])

    def test_update_conflict_keeps_everything(self) -> None:
        template = self._create()
        before = self.backend.templates.find_fields_by_template(template["id"])
        res = self.client.put(
            f"/api/templates/{template['id']}",
            json={
                "title": "Renamed",
                "templateFields": [{"type": "STRING", "title": "Email"}, {"type": "STRING", "title": "EMAIL"}],
            },
            headers=_as(OWNER),
        )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(self.backend.templates.find_fields_by_template(template["id"]), before)
        self.assertEqual(self.backend.templates.get_template(template["id"])["title"], "Customer feedback")

    def test_update_drops_values_of_deleted_fields(self) -> None:
        template = self._create()
        name_field, rating_field = template["templateFields"]
        res = self.client.post(
            "/api/submissions",
            json={"templateId": template["id"], "values": {name_field["id"]: "Ann", rating_field["id"]: "4"}},
            headers=_as(OTHER),
        )
        self.assertEqual(res.status_code, 201, res.text)
        self.client.put(
            f"/api/templates/{template['id']}",
            json={"title": "Only rating", "templateFields": [{"id": rating_field["id"], "type": "INTEGER", "title": "Rating"}]},
            headers=_as(OWNER),
        )
        submission = self.backend.submissions.list_for_template(template["id"])[0]
        self.assertEqual([v["templateFieldId"] for v in submission["fieldSubmissions"]], [rating_field["id"]])

    def test_only_owner_or_admin_can_edit(self) -> None:
        template = self._create()
        body = {"title": "Hijack", "templateFields": [{"type": "STRING", "title": "Q"}]}
        res = self.client.put(f"/api/templates/{template['id']}", json=body, headers=_as(OTHER))
        self.assertEqual(res.status_code, 403)
        res = self.client.delete(f"/api/templates/{template['id']}", headers=_as(OTHER))
        self.assertEqual(res.status_code, 403)

        self.backend.users.update(OTHER, {"isAdmin": True})
        res = self.client.delete(f"/api/templates/{template['id']}", headers=_as(OTHER))
        self.assertEqual(res.status_code, 200)
        self.assertIsNone(self.backend.templates.get_template(template["id"]))

    def test_private_template_visibility(self) -> None:
        template = self._create(isPublic=False, accessGrants=[])
        res = self.client.get(f"/api/templates/{template['id']}", headers=_as(OTHER))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(self.client.get("/api/templates", headers=_as(OTHER)).json()["templates"], [])

        res = self.client.put(
            f"/api/templates/{template['id']}",
            json={"title": "Customer feedback", "isPublic": False, "accessGrants": [OTHER], "templateFields": template["templateFields"]},
            headers=_as(OWNER),
        )
        self.assertEqual(res.status_code, 200, res.text)
        res = self.client.get(f"/api/templates/{template['id']}", headers=_as(OTHER))
        self.assertEqual(res.status_code, 200)
        self.assertNotIn("accessGrants", res.json()["template"])

    def test_missing_template(self) -> None:
        res = self.client.get(f"/api/templates/{uuid.uuid4()}", headers=_as(OWNER))
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "NOT_FOUND")
        res = self.client.get("/api/templates/not-a-uuid", headers=_as(OWNER))
        self.assertEqual(res.status_code, 404)

    def test_list_filters_and_popular_sort(self) -> None:
        first = self._create(title="First form")
        second = self._create(title="Second form")
        self.client.post(f"/api/templates/{first['id']}/likes", headers=_as(OTHER))
        res = self.client.get("/api/templates?sort=popular&limit=1", headers=_as(OTHER))
        self.assertEqual([t["id"] for t in res.json()["templates"]], [first["id"]])
        res = self.client.get(f"/api/templates?ownerId={OTHER}", headers=_as(OTHER))
        self.assertEqual(res.json()["templates"], [])
        res = self.client.get(f"/api/templates?topicId={self.topic_id}", headers=_as(OTHER))
        self.assertEqual({t["id"] for t in res.json()["templates"]}, {first["id"], second["id"]})

    def test_search(self) -> None:
        self._create(title="Yearly employee survey")
        self._create(title="Lunch order", description="Pick a sandwich")
        res = self.client.get("/api/search?q=employee%20survey", headers=_as(OTHER))
        self.assertEqual(res.status_code, 200)
        results = res.json()["templates"]
        self.assertEqual([r["title"] for r in results], ["Yearly employee survey"])
        self.assertEqual(results[0]["stats"], {"likes": 0, "submissions": 0})
        res = self.client.get("/api/search?q=a", headers=_as(OTHER))
        self.assertEqual(res.status_code, 400)

    def test_tags_create_reuses_existing(self) -> None:
        res = self.client.post("/api/tags", json={"name": "Feedback"}, headers=_as(OWNER))
        self.assertEqual(res.status_code, 201)
        tag_id = res.json()["tag"]["id"]
        res = self.client.post("/api/tags", json={"name": "feedback"}, headers=_as(OWNER))
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["tag"]["id"], tag_id)
        template = self._create(templateTags=[tag_id])
        self.assertEqual([t["name"] for t in template["templateTags"]], ["Feedback"])
        self.assertEqual(len(self.client.get("/api/tags").json()["tags"]), 1)

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"ok": True})

    def test_start_app_runs_uvicorn(self) -> None:
        with mock.patch.dict(os.environ, {"HOST": "127.0.0.1", "PORT": "9100", "RELOAD": "true"}), mock.patch.object(main.uvicorn, "run") as run:
            main.start_app()
        run.assert_called_once_with("app.main:app", host="127.0.0.1", port=9100, reload=True)


if __name__ == "__main__":
    unittest.main()
