import os
import sys
import unittest
import uuid

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"
os.environ["FORMHUB_DISABLE_AUTH"] = "1"
os.environ["SUPABASE_URL"] = "http://localhost"

import app.main as main
from app.backend import build_memory_backend


ADMIN = str(uuid.uuid4())
MEMBER = str(uuid.uuid4())


def _as(user_id, email=None):
    return {"X-User-Id": user_id, "X-User-Email": email or f"{user_id[:8]}@example.com"}


class TestAdminUsers(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = build_memory_backend()
        main.app.state.backend = self.backend
        self.client = TestClient(main.app)
        self.backend.users.ensure(ADMIN, "admin@example.com", "Admin")
        self.backend.users.update(ADMIN, {"isAdmin": True})
        self.backend.users.ensure(MEMBER, "member@example.com", "Member")

    def test_non_admin_is_forbidden(self) -> None:
        res = self.client.get("/api/admin/users", headers=_as(MEMBER))
        self.assertEqual(res.status_code, 403)
        res = self.client.put("/api/admin/users", json={"userId": ADMIN, "isAdmin": False}, headers=_as(MEMBER))
        self.assertEqual(res.status_code, 403)

    def test_list_with_counts_and_paging(self) -> None:
        self.client.post(
            "/api/templates",
            json={"title": "Member form", "templateFields": [{"type": "STRING", "title": "Q"}]},
            headers=_as(MEMBER),
        )
        res = self.client.get("/api/admin/users?limit=10&q=member", headers=_as(ADMIN))
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["totalUsers"], 1)
        self.assertEqual(body["totalPages"], 1)
        self.assertEqual(body["currentPage"], 1)
        self.assertEqual(body["users"][0]["_count"], {"templates": 1, "submissions": 0})

        res = self.client.get("/api/admin/users?limit=1&page=2", headers=_as(ADMIN))
        self.assertEqual(res.json()["totalPages"], 2)
        self.assertEqual(len(res.json()["users"]), 1)

    def test_promote_and_block(self) -> None:
        res = self.client.put("/api/admin/users", json={"userId": MEMBER, "isAdmin": True}, headers=_as(ADMIN))
        self.assertEqual(res.status_code, 200, res.text)
        self.assertTrue(res.json()["user"]["isAdmin"])

        res = self.client.put("/api/admin/users", json={"userId": MEMBER, "isActive": False}, headers=_as(ADMIN))
        self.assertEqual(res.status_code, 200)
        res = self.client.get("/api/user/profile", headers=_as(MEMBER))
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.json()["errors"][0]["code"], "USER_BLOCKED")

    def test_admin_cannot_lock_themselves_out(self) -> None:
        for change in ({"isAdmin": False}, {"isActive": False}):
            res = self.client.put("/api/admin/users", json={"userId": ADMIN, **change}, headers=_as(ADMIN))
            self.assertEqual(res.status_code, 403)
        self.assertTrue(self.backend.users.get(ADMIN)["isAdmin"])

    def test_update_validation_and_missing_user(self) -> None:
        res = self.client.put("/api/admin/users", json={"userId": MEMBER}, headers=_as(ADMIN))
        self.assertEqual(res.status_code, 400)
        res = self.client.put("/api/admin/users", json={"userId": str(uuid.uuid4()), "isActive": True}, headers=_as(ADMIN))
        self.assertEqual(res.status_code, 404)

    def test_delete_user_cascades(self) -> None:
        res = self.client.post(
            "/api/templates",
            json={"title": "Doomed form", "templateFields": [{"type": "STRING", "title": "Q"}]},
            headers=_as(MEMBER),
        )
        template_id = res.json()["template"]["id"]
        self.client.post(f"/api/templates/{template_id}/comments", json={"content": "mine"}, headers=_as(ADMIN))

        res = self.client.delete(f"/api/user/profile/delete?userId={MEMBER}", headers=_as(ADMIN))
        self.assertEqual(res.status_code, 200, res.text)
        self.assertIsNone(self.backend.users.get(MEMBER))
        self.assertIsNone(self.backend.templates.get_template(template_id))
        self.assertEqual(self.backend.comments.count(template_id), 0)
        self.assertEqual(self.backend.supabase_admin.deleted, [MEMBER])

    def test_delete_rules(self) -> None:
        res = self.client.delete(f"/api/user/profile/delete?userId={ADMIN}", headers=_as(ADMIN))
        self.assertEqual(res.status_code, 403)
        res = self.client.delete(f"/api/user/profile/delete?userId={ADMIN}", headers=_as(MEMBER))
        self.assertEqual(res.status_code, 403)
        res = self.client.delete(f"/api/user/profile/delete?userId={uuid.uuid4()}", headers=_as(ADMIN))
        self.assertEqual(res.status_code, 404)
        self.assertEqual(self.backend.supabase_admin.deleted, [])


class TestProfileAndUserSearch(unittest.TestCase):
    def setUp(self) -> None:
        self.backend = build_memory_backend()
        main.app.state.backend = self.backend
        self.client = TestClient(main.app)

    def test_first_request_creates_profile(self) -> None:
        user_id = str(uuid.uuid4())
        res = self.client.get("/api/user/profile", headers=_as(user_id, "new@example.com"))
        self.assertEqual(res.status_code, 200)
        profile = res.json()["user"]
        self.assertEqual(profile["email"], "new@example.com")
        self.assertFalse(profile["isAdmin"])

    def test_update_profile_syncs_metadata(self) -> None:
        user_id = str(uuid.uuid4())
        res = self.client.patch(
            "/api/user/profile/update",
            json={"name": "Grace", "avatarUrl": "https://img.example.com/g.png"},
            headers=_as(user_id),
        )
        self.assertEqual(res.status_code, 200, res.text)
        self.assertEqual(res.json()["user"]["name"], "Grace")
        self.assertEqual(
            self.backend.supabase_admin.metadata[user_id],
            {"name": "Grace", "avatar_url": "https://img.example.com/g.png"},
        )
        res = self.client.patch("/api/user/profile/update", json={"name": "G"}, headers=_as(user_id))
        self.assertEqual(res.status_code, 400)

    def test_search_active_users(self) -> None:
        for email in ("carol@example.com", "alice@example.com", "bob@example.com"):
            self.backend.users.ensure(str(uuid.uuid4()), email)
        blocked = str(uuid.uuid4())
        self.backend.users.ensure(blocked, "blocked@example.com")
        self.backend.users.update(blocked, {"isActive": False})
        caller = str(uuid.uuid4())
        res = self.client.get("/api/users/search?q=example&limit=2", headers=_as(caller, "zoe@test.org"))
        body = res.json()
        self.assertEqual([u["email"] for u in body["users"]], ["alice@example.com", "bob@example.com"])
        self.assertTrue(body["hasMore"])
        self.assertEqual(body["total"], 3)


if __name__ == "__main__":
    unittest.main()
