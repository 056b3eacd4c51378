"""User profile and admin account management."""

from __future__ import annotations

import logging
import math

from formhub.errors import AccessDenied, NotFoundError

from app.backend import Backend, with_tx
from app.templates import actor_id, is_admin


logger = logging.getLogger("formhub.admin")


def get_profile(backend: Backend, actor: dict) -> dict:
    profile = backend.users.get(actor_id(actor))
    if not profile:
        raise NotFoundError("User not found")
    return profile


def update_profile(backend: Backend, actor: dict, changes: dict) -> dict:
    user_id = actor_id(actor)
    if not backend.users.get(user_id):
        raise NotFoundError("User not found")
    metadata = {}
    if "name" in changes:
        metadata["name"] = changes["name"] or ""
    if "avatarUrl" in changes:
        metadata["avatar_url"] = changes["avatarUrl"] or ""
    if metadata:
        backend.supabase_admin.update_user_metadata(user_id, metadata)
    return backend.users.update(user_id, changes)


def require_admin(actor: dict | None) -> None:
    if not is_admin(actor):
        raise AccessDenied("Forbidden: User is not an admin")


def _admin_view(backend: Backend, user: dict) -> dict:
    return {
        **user,
        "_count": {
            "templates": backend.templates.count_by_owner(user["id"]),
            "submissions": backend.submissions.count_for_user(user["id"]),
        },
    }


def admin_list_users(backend: Backend, actor: dict, query: str = "", page: int = 1, limit: int = 10) -> dict:
    require_admin(actor)
    users, total = backend.users.search(query, offset=(page - 1) * limit, limit=limit)
    return {
        "users": [_admin_view(backend, u) for u in users],
        "totalUsers": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
        "currentPage": page,
    }


def admin_update_user(backend: Backend, actor: dict, clean: dict) -> dict:
    """Block/unblock and promote/demote; admins cannot lock themselves out."""
    require_admin(actor)
    user_id = clean["userId"]
    if user_id == actor_id(actor) and (clean.get("isAdmin") is False or clean.get("isActive") is False):
        raise AccessDenied("Admins cannot change their own admin status or active status.")
    if not backend.users.get(user_id):
        raise NotFoundError("User not found", "userId")
    changes = {key: clean[key] for key in ("isAdmin", "isActive") if key in clean}
    updated = backend.users.update(user_id, changes)
    logger.info("admin_user_updated user_id=%s by=%s changes=%s", user_id, actor_id(actor), changes)
    return _admin_view(backend, updated)


def admin_delete_user(backend: Backend, actor: dict, user_id: str | None) -> None:
    require_admin(actor)
    if not user_id:
        raise NotFoundError("User ID is required", "userId")
    if user_id == actor_id(actor):
        raise AccessDenied("Admins cannot delete themselves.")
    if not backend.users.get(user_id):
        raise NotFoundError("User not found", "userId")
    backend.supabase_admin.delete_user(user_id)

    def _delete(tx):
        # auth.users cascades in Postgres; the memory backend needs it spelled out
        for template in backend.templates.list_templates(owner_id=user_id):
            backend.submissions.delete_for_template(template["id"])
            backend.likes.delete_for_template(template["id"])
            backend.comments.delete_for_template(template["id"])
            backend.templates.delete_template(template["id"])
        backend.submissions.delete_for_user(user_id)
        backend.users.delete(user_id)

    with_tx(backend.tx_mgr, _delete)
    logger.info("admin_user_deleted user_id=%s by=%s", user_id, actor_id(actor))


def search_users(backend: Backend, query: str = "", page: int = 1, limit: int = 10) -> dict:
    offset = (page - 1) * limit
    users, total = backend.users.search(query, offset=offset, limit=limit, active_only=True, order_by="email")
    return {
        "users": [{"id": u["id"], "email": u.get("email"), "name": u.get("name")} for u in users],
        "hasMore": total > offset + len(users),
        "total": total,
    }
