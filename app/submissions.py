"""Submission services."""

from __future__ import annotations

import logging

from formhub.errors import AccessDenied, FormHubError, NotFoundError
from submission_validator import (
    field_submission_rows,
    payload_from_field_submissions,
    unknown_field_ids,
    validate_submission,
)

from app.backend import Backend, with_tx
from app.templates import actor_id, can_submit, is_admin, is_owner, require_template


logger = logging.getLogger("formhub.submissions")


def create_submission(backend: Backend, actor: dict, clean: dict) -> dict:
    template = require_template(backend, clean["templateId"])
    if not can_submit(backend, template, actor):
        raise AccessDenied("You do not have access to this template")
    fields = backend.templates.find_fields_by_template(template["id"])
    payload = clean.get("values")
    if payload is None:
        payload = payload_from_field_submissions(clean.get("fieldSubmissions") or [])
    unknown = unknown_field_ids(fields, payload)
    if unknown:
        raise FormHubError(
            "UNKNOWN_FIELD",
            "One or more field submissions reference invalid template fields",
            unknown[0],
            400,
        )
    values = validate_submission(fields, payload)
    rows = field_submission_rows(fields, values, present=list(payload.keys()))
    submission = with_tx(
        backend.tx_mgr,
        lambda tx: backend.submissions.create_submission(template["id"], actor_id(actor), rows),
    )
    logger.info(
        "submission_created submission_id=%s template_id=%s values=%s",
        submission["id"],
        template["id"],
        len(rows),
    )
    return submission


def _with_fields(submission: dict, fields_by_id: dict) -> dict:
    enriched = dict(submission)
    enriched["fieldSubmissions"] = [
        {**value, "field": fields_by_id.get(value.get("templateFieldId"))}
        for value in submission.get("fieldSubmissions") or []
    ]
    return enriched


def _user(backend: Backend, user_id: str) -> dict | None:
    user = backend.users.get(user_id)
    if not user:
        return None
    return {"id": user["id"], "name": user.get("name"), "email": user.get("email"), "avatarUrl": user.get("avatarUrl")}


def list_template_submissions(backend: Backend, actor: dict, template_id: str) -> list[dict]:
    template = require_template(backend, template_id)
    if not (is_owner(template, actor) or is_admin(actor)):
        raise AccessDenied("You do not have permission to view these submissions")
    fields_by_id = {f["id"]: f for f in backend.templates.find_fields_by_template(template_id)}
    items = []
    for submission in backend.submissions.list_for_template(template_id):
        item = _with_fields(submission, fields_by_id)
        item["user"] = _user(backend, submission.get("userId"))
        items.append(item)
    return items


def list_user_submissions(backend: Backend, actor: dict) -> list[dict]:
    items = []
    for submission in backend.submissions.list_for_user(actor_id(actor)):
        template = backend.templates.get_template(submission["templateId"]) or {}
        items.append(
            {
                "id": submission["id"],
                "templateId": submission["templateId"],
                "createdAt": submission.get("createdAt"),
                "template": {
                    "id": template.get("id"),
                    "title": template.get("title"),
                    "description": template.get("description"),
                },
            }
        )
    return items


def get_user_submission(backend: Backend, actor: dict, submission_id: str) -> dict:
    submission = backend.submissions.get_submission(submission_id)
    if not submission:
        raise NotFoundError("Submission not found", "submissionId")
    if submission.get("userId") != actor_id(actor):
        raise AccessDenied("You do not have permission to view this submission")
    result = dict(submission)
    result["user"] = _user(backend, submission["userId"])
    return result
