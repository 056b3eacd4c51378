"""Supabase auth admin API client (service role)."""

from __future__ import annotations

import logging
import os

import httpx


logger = logging.getLogger("formhub.admin")


class SupabaseAdminError(RuntimeError):
    pass


class SupabaseAdminClient:
    def __init__(self, supabase_url: str, service_role_key: str, timeout: float = 20.0) -> None:
        self._base = supabase_url.rstrip("/")
        self._key = service_role_key
        self._timeout = timeout

    @classmethod
    def from_env(cls) -> "SupabaseAdminClient | NullSupabaseAdmin":
        url = (os.getenv("SUPABASE_URL") or "").strip()
        key = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
        if not url or not key:
            logger.info("supabase_admin_disabled reason=missing_service_role")
            return NullSupabaseAdmin()
        return cls(url, key)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._key}", "apikey": self._key, "Content-Type": "application/json"}

    def delete_user(self, user_id: str) -> None:
        url = f"{self._base}/auth/v1/admin/users/{user_id}"
        with httpx.Client(timeout=self._timeout) as client:
            res = client.delete(url, headers=self._headers())
        if res.status_code >= 400:
            raise SupabaseAdminError(f"delete_user_failed:{res.status_code}:{res.text}")
        logger.info("supabase_user_deleted user_id=%s", user_id)

    def update_user_metadata(self, user_id: str, metadata: dict) -> None:
        url = f"{self._base}/auth/v1/admin/users/{user_id}"
        with httpx.Client(timeout=self._timeout) as client:
            res = client.put(url, headers=self._headers(), json={"user_metadata": metadata})
        if res.status_code >= 400:
            raise SupabaseAdminError(f"update_user_failed:{res.status_code}:{res.text}")


class NullSupabaseAdmin:
    """Stand-in when no service role key is configured (local dev, tests)."""

    def __init__(self) -> None:
        self.deleted: list[str] = []
        self.metadata: dict[str, dict] = {}

    def delete_user(self, user_id: str) -> None:
        self.deleted.append(user_id)

    def update_user_metadata(self, user_id: str, metadata: dict) -> None:
        self.metadata.setdefault(user_id, {}).update(metadata)
