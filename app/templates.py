"""Template services: create, read, update with field reconciliation, delete, search."""

from __future__ import annotations

import logging

from field_reconciler import field_rows_for_create, reconcile_fields
from formhub.errors import AccessDenied, NotFoundError, ReconciliationConflict

from app.backend import Backend, with_tx
from app.payload_validation import is_uuid


logger = logging.getLogger("formhub.templates")


def actor_id(actor: dict | None) -> str | None:
    return actor.get("user_id") if isinstance(actor, dict) else None


def is_admin(actor: dict | None) -> bool:
    return bool(isinstance(actor, dict) and actor.get("is_admin"))


def require_template(backend: Backend, template_id: str) -> dict:
    template = backend.templates.get_template(template_id) if is_uuid(template_id) else None
    if not template:
        raise NotFoundError("Template not found", "template_id")
    return template


def is_owner(template: dict, actor: dict | None) -> bool:
    uid = actor_id(actor)
    return bool(uid) and template.get("ownerId") == uid


def can_view(backend: Backend, template: dict, actor: dict | None) -> bool:
    if template.get("isPublic"):
        return True
    uid = actor_id(actor)
    if not uid:
        return False
    if is_owner(template, actor) or is_admin(actor):
        return True
    return backend.templates.has_access(template["id"], uid)


def can_submit(backend: Backend, template: dict, actor: dict | None) -> bool:
    if template.get("isPublic"):
        return True
    uid = actor_id(actor)
    return bool(uid) and (is_owner(template, actor) or backend.templates.has_access(template["id"], uid))


def require_editable(template: dict, actor: dict | None) -> None:
    if not (is_owner(template, actor) or is_admin(actor)):
        raise AccessDenied("You do not have permission to modify this template")


def _check_references(backend: Backend, clean: dict) -> None:
    topic_id = clean.get("topicId")
    if topic_id and not backend.catalog.topic_exists(topic_id):
        raise ReconciliationConflict("Unknown topic", "topicId")
    tag_ids = clean.get("templateTags") or []
    known_tags = {t["id"] for t in backend.catalog.tags_by_ids(tag_ids)}
    for idx, tag_id in enumerate(tag_ids):
        if tag_id not in known_tags:
            raise ReconciliationConflict("Unknown tag", f"templateTags[{idx}]")
    grants = clean.get("accessGrants") or []
    known_users = set(backend.users.exists(grants))
    for idx, user_id in enumerate(grants):
        if user_id not in known_users:
            raise ReconciliationConflict("Unknown user", f"accessGrants[{idx}]")


def _user_summary(backend: Backend, user_id: str | None, with_email: bool = False) -> dict | None:
    user = backend.users.get(user_id) if user_id else None
    if not user:
        return None
    summary = {"id": user["id"], "name": user.get("name"), "avatarUrl": user.get("avatarUrl")}
    if with_email:
        summary["email"] = user.get("email")
    return summary


def counts(backend: Backend, template_id: str) -> dict:
    return {
        "likes": backend.likes.count(template_id),
        "comments": backend.comments.count(template_id),
        "submissions": backend.submissions.count_for_template(template_id),
    }


def template_detail(backend: Backend, template: dict, actor: dict | None = None) -> dict:
    template_id = template["id"]
    detail = dict(template)
    detail["templateFields"] = backend.templates.find_fields_by_template(template_id)
    detail["topic"] = backend.catalog.get_topic(template["topicId"]) if template.get("topicId") else None
    detail["owner"] = _user_summary(backend, template.get("ownerId"))
    detail["templateTags"] = backend.catalog.tags_by_ids(backend.templates.get_tag_ids(template_id))
    if is_owner(template, actor) or is_admin(actor):
        detail["accessGrants"] = backend.templates.get_access(template_id)
    detail["_count"] = counts(backend, template_id)
    return detail


def create_template(backend: Backend, actor: dict, clean: dict) -> dict:
    _check_references(backend, clean)
    field_rows = field_rows_for_create(clean["templateFields"])
    owner_id = actor_id(actor)

    def _create(tx):
        template = backend.templates.create_template(owner_id, clean)
        for values in field_rows:
            backend.templates.create_field(template["id"], values)
        if clean.get("templateTags"):
            backend.templates.set_tags(template["id"], clean["templateTags"])
        if not clean.get("isPublic") and clean.get("accessGrants"):
            backend.templates.set_access(template["id"], clean["accessGrants"])
        return template

    template = with_tx(backend.tx_mgr, _create)
    logger.info("template_created template_id=%s owner_id=%s fields=%s", template["id"], owner_id, len(field_rows))
    return template_detail(backend, template, actor)


def update_template(backend: Backend, actor: dict, template_id: str, clean: dict) -> dict:
    """Apply metadata, tags, grants and the edited field list atomically."""
    template = require_template(backend, template_id)
    require_editable(template, actor)
    _check_references(backend, clean)
    changes = {key: clean.get(key) for key in ("title", "description", "isPublic", "topicId", "imageUrl")}

    def _update(tx):
        updated = backend.templates.update_template(template_id, changes)
        if clean.get("templateTags") is not None:
            backend.templates.set_tags(template_id, clean["templateTags"])
        if clean.get("isPublic"):
            backend.templates.set_access(template_id, [])
        elif clean.get("accessGrants") is not None:
            backend.templates.set_access(template_id, clean["accessGrants"])
        result = reconcile_fields(backend.templates, backend.tx_mgr, template_id, clean["templateFields"])
        if result.deleted:
            backend.submissions.delete_field_values(result.deleted)
        return updated

    updated = with_tx(backend.tx_mgr, _update)
    return template_detail(backend, updated, actor)


def delete_template(backend: Backend, actor: dict, template_id: str) -> None:
    template = require_template(backend, template_id)
    require_editable(template, actor)

    def _delete(tx):
        backend.submissions.delete_for_template(template_id)
        backend.likes.delete_for_template(template_id)
        backend.comments.delete_for_template(template_id)
        backend.templates.delete_template(template_id)

    with_tx(backend.tx_mgr, _delete)
    logger.info("template_deleted template_id=%s by=%s", template_id, actor_id(actor))


def list_templates(
    backend: Backend,
    actor: dict | None,
    topic_id: str | None = None,
    owner_id: str | None = None,
    is_public: bool | None = None,
    limit: int | None = None,
    sort: str | None = None,
) -> list[dict]:
    templates = [
        t
        for t in backend.templates.list_templates(topic_id=topic_id, owner_id=owner_id, is_public=is_public)
        if can_view(backend, t, actor)
    ]
    items = [template_detail(backend, t, actor) for t in templates]
    if sort == "popular":
        items.sort(key=lambda t: (t["_count"]["likes"], t["_count"]["submissions"]), reverse=True)
    if limit:
        items = items[:limit]
    return items


def search_templates(backend: Backend, actor: dict | None, terms: list[str]) -> list[dict]:
    results = []
    for template in backend.templates.search(terms):
        if not can_view(backend, template, actor):
            continue
        topic = backend.catalog.get_topic(template["topicId"]) if template.get("topicId") else None
        c = counts(backend, template["id"])
        results.append(
            {
                "id": template["id"],
                "title": template.get("title"),
                "description": template.get("description"),
                "imageUrl": template.get("imageUrl"),
                "owner": _user_summary(backend, template.get("ownerId")),
                "topic": {"id": topic["id"], "name": topic["name"]} if topic else None,
                "stats": {"likes": c["likes"], "submissions": c["submissions"]},
                "createdAt": template.get("createdAt"),
            }
        )
    return results
