import os
import sys
import unittest
from unittest import mock

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from jose.exceptions import JWTError

from app.auth import SupabaseAuthMiddleware, is_public_read, user_from_claims


CLAIMS = {
    "sub": "6a0c1d55-0e5e-4d1e-8d8a-0f52f3a6c001",
    "email": "ada@example.com",
    "role": "authenticated",
    "user_metadata": {"full_name": "Ada Lovelace", "avatar_url": "https://img.example.com/ada.png"},
}


def _build_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(SupabaseAuthMiddleware, supabase_url="http://localhost:54321/")

    @app.get("/api/templates")
    async def templates(request: Request):
        user = getattr(request.state, "user", None)
        return {"user_id": user.get("id") if user else None}

    @app.post("/api/templates")
    async def create(request: Request):
        return {"user_id": request.state.user["id"]}

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


class TestSupabaseAuthMiddleware(unittest.TestCase):
    def setUp(self) -> None:
        patcher = mock.patch.dict(os.environ, {"FORMHUB_DISABLE_AUTH": "0"})
        patcher.start()
        self.addCleanup(patcher.stop)
        self.client = TestClient(_build_app())

    def test_missing_token_on_write(self) -> None:
        res = self.client.post("/api/templates")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json()["errors"][0]["code"], "AUTH_MISSING_TOKEN")

    def test_anonymous_public_read(self) -> None:
        res = self.client.get("/api/templates")
        self.assertEqual(res.status_code, 200)
        self.assertIsNone(res.json()["user_id"])

    def test_health_skips_auth(self) -> None:
        self.assertEqual(self.client.get("/health").status_code, 200)

    def test_valid_token(self) -> None:
        with mock.patch.object(SupabaseAuthMiddleware, "verify", return_value=CLAIMS) as verify:
            res = self.client.post("/api/templates", headers={"Authorization": "Bearer good"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["user_id"], CLAIMS["sub"])
        verify.assert_called_once_with("good")

    def test_invalid_token(self) -> None:
        with mock.patch.object(SupabaseAuthMiddleware, "verify", side_effect=JWTError("Signature verification failed")):
            res = self.client.get("/api/templates", headers={"Authorization": "Bearer bad"})
        self.assertEqual(res.status_code, 401)
        error = res.json()["errors"][0]
        self.assertEqual(error["code"], "AUTH_INVALID_TOKEN")
        self.assertIn("Signature", error["detail"]["error"])


class TestAuthHelpers(unittest.TestCase):
    def test_public_reads(self) -> None:
        self.assertTrue(is_public_read("GET", "/api/templates"))
        self.assertTrue(is_public_read("GET", "/api/templates/abc"))
        self.assertTrue(is_public_read("GET", "/api/templates/abc/comments"))
        self.assertTrue(is_public_read("GET", "/api/search"))
        self.assertFalse(is_public_read("POST", "/api/templates"))
        self.assertFalse(is_public_read("GET", "/api/submissions/user"))
        self.assertFalse(is_public_read("GET", "/api/admin/users"))

    def test_user_from_claims(self) -> None:
        user = user_from_claims(CLAIMS)
        self.assertEqual(user["id"], CLAIMS["sub"])
        self.assertEqual(user["name"], "Ada Lovelace")
        self.assertEqual(user["avatar_url"], "https://img.example.com/ada.png")


if __name__ == "__main__":
    unittest.main()
