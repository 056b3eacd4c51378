"""Likes and comments on templates."""

from __future__ import annotations

import math

from formhub.errors import AccessDenied

from app.backend import Backend
from app.templates import actor_id, can_view, require_template


def _visible_template(backend: Backend, actor: dict | None, template_id: str) -> dict:
    template = require_template(backend, template_id)
    if not can_view(backend, template, actor):
        raise AccessDenied("You do not have access to this template")
    return template


def like_status(backend: Backend, actor: dict, template_id: str) -> dict:
    _visible_template(backend, actor, template_id)
    return {"hasLiked": backend.likes.has_liked(template_id, actor_id(actor)), "likes": backend.likes.count(template_id)}


def toggle_like(backend: Backend, actor: dict, template_id: str) -> dict:
    _visible_template(backend, actor, template_id)
    liked = backend.likes.toggle(template_id, actor_id(actor))
    message = "Like added successfully" if liked else "Like removed successfully"
    return {"hasLiked": liked, "likes": backend.likes.count(template_id), "message": message}


def _with_author(backend: Backend, comment: dict) -> dict:
    user = backend.users.get(comment.get("userId")) or {}
    return {**comment, "user": {"id": user.get("id"), "name": user.get("name"), "avatarUrl": user.get("avatarUrl")}}


def list_comments(backend: Backend, actor: dict, template_id: str, page: int = 1, limit: int = 10) -> dict:
    _visible_template(backend, actor, template_id)
    total = backend.comments.count(template_id)
    comments = backend.comments.list_page(template_id, offset=(page - 1) * limit, limit=limit)
    return {
        "comments": [_with_author(backend, c) for c in comments],
        "totalComments": total,
        "currentPage": page,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


def add_comment(backend: Backend, actor: dict, template_id: str, content: str) -> dict:
    _visible_template(backend, actor, template_id)
    comment = backend.comments.create(template_id, actor_id(actor), content)
    return _with_author(backend, comment)
