"""Request payload validation for the FormHub API."""

from __future__ import annotations

import re
import uuid
from typing import Any
from urllib.parse import urlparse

from formhub.field_types import FIELD_TYPES, MAX_DESCRIPTION_LENGTH, MAX_FIELDS, MAX_TITLE_LENGTH


_TAG_NAME_RE = re.compile(r"^[\w\s-]+$")


def is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (TypeError, ValueError):
        return False


def _error(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _optional_text(data: dict, key: str, max_len: int, errors: list, path: str | None = None) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    path = path or key
    if not isinstance(value, str):
        errors.append(_error("TYPE_MISMATCH", f"{key} must be a string", path))
        return None
    if len(value) > max_len:
        errors.append(_error("TOO_LONG", f"{key} must be less than {max_len} characters", path))
    return value


def _uuid_list(data: dict, key: str, label: str, errors: list) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        errors.append(_error("TYPE_MISMATCH", f"{key} must be a list", key))
        return None
    for idx, item in enumerate(value):
        if not is_uuid(item):
            errors.append(_error("INVALID_UUID", f"Invalid {label} ID", f"{key}[{idx}]"))
    return [str(item) for item in value]


def validate_field_descriptor(raw: Any, index: int) -> tuple[list[dict], dict]:
    path = f"templateFields[{index}]"
    errors: list[dict] = []
    if not isinstance(raw, dict):
        return [_error("INVALID_FIELD", "Field must be an object", path)], {}
    field_type = raw.get("type")
    if field_type not in FIELD_TYPES:
        errors.append(_error("INVALID_ENUM", f"type must be one of {list(FIELD_TYPES)}", f"{path}.type"))
    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        errors.append(_error("REQUIRED_FIELD", "Title is required", f"{path}.title"))
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(_error("TOO_LONG", f"Title must be less than {MAX_TITLE_LENGTH} characters", f"{path}.title"))
    description = _optional_text(raw, "description", MAX_DESCRIPTION_LENGTH, errors, f"{path}.description")
    clean = {
        "type": field_type,
        "title": title.strip() if isinstance(title, str) else title,
        "description": description,
        "required": False,
        "showInResults": True,
    }
    for key, default in (("required", False), ("showInResults", True)):
        value = raw.get(key, default)
        if value is None:
            value = default
        if not isinstance(value, bool):
            errors.append(_error("TYPE_MISMATCH", f"{key} must be a boolean", f"{path}.{key}"))
            continue
        clean[key] = value
    field_id = raw.get("id")
    if field_id is not None:
        if not isinstance(field_id, str):
            errors.append(_error("TYPE_MISMATCH", "id must be a string", f"{path}.id"))
        else:
            clean["id"] = field_id
    return errors, clean


def validate_template_payload(data: Any) -> tuple[list[dict], dict]:
    """Check a create/update template body.

    Title uniqueness of fields is left to the reconciler.
    """
    if not isinstance(data, dict):
        return [_error("INVALID_PAYLOAD", "Template data must be an object")], {}
    errors: list[dict] = []
    title = data.get("title")
    if not isinstance(title, str) or len(title.strip()) < 3:
        errors.append(_error("INVALID_TITLE", "Title must be at least 3 characters", "title"))
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(_error("TOO_LONG", f"Title must be less than {MAX_TITLE_LENGTH} characters", "title"))
    description = _optional_text(data, "description", MAX_DESCRIPTION_LENGTH, errors)
    is_public = data.get("isPublic", True)
    if is_public is None:
        is_public = True
    if not isinstance(is_public, bool):
        errors.append(_error("TYPE_MISMATCH", "isPublic must be a boolean", "isPublic"))
    topic_id = data.get("topicId")
    if topic_id is not None and not is_uuid(topic_id):
        errors.append(_error("INVALID_UUID", "Invalid topic ID", "topicId"))
    image_url = data.get("imageUrl")
    if image_url is not None and not isinstance(image_url, str):
        errors.append(_error("TYPE_MISMATCH", "imageUrl must be a string", "imageUrl"))

    fields_raw = data.get("templateFields")
    fields: list[dict] = []
    if not isinstance(fields_raw, list) or not fields_raw:
        errors.append(_error("REQUIRED_FIELD", "At least one field is required", "templateFields"))
    elif len(fields_raw) > MAX_FIELDS:
        errors.append(_error("TOO_MANY_FIELDS", f"Maximum of {MAX_FIELDS} fields allowed", "templateFields"))
    else:
        for idx, raw in enumerate(fields_raw):
            field_errors, clean_field = validate_field_descriptor(raw, idx)
            errors.extend(field_errors)
            fields.append(clean_field)

    tags = _uuid_list(data, "templateTags", "tag", errors)
    grants = _uuid_list(data, "accessGrants", "user", errors)
    clean = {
        "title": title.strip() if isinstance(title, str) else title,
        "description": description,
        "isPublic": is_public,
        "topicId": topic_id or None,
        "imageUrl": image_url or None,
        "templateFields": fields,
        "templateTags": tags,
        "accessGrants": grants,
    }
    return errors, clean


def validate_submission_body(data: Any) -> tuple[list[dict], dict]:
    """Accept either ``values`` keyed by field id or the ``fieldSubmissions`` list."""
    if not isinstance(data, dict):
        return [_error("INVALID_PAYLOAD", "Submission data must be an object")], {}
    errors: list[dict] = []
    template_id = data.get("templateId")
    if not template_id:
        errors.append(_error("REQUIRED_FIELD", "Template ID is required", "templateId"))
    elif not is_uuid(template_id):
        errors.append(_error("INVALID_UUID", "Invalid template ID", "templateId"))
    values = data.get("values")
    items = data.get("fieldSubmissions")
    if values is not None:
        if not isinstance(values, dict):
            errors.append(_error("TYPE_MISMATCH", "values must be an object", "values"))
    elif isinstance(items, list) and items:
        seen: set[str] = set()
        for idx, item in enumerate(items):
            field_id = item.get("templateFieldId") if isinstance(item, dict) else None
            path = f"fieldSubmissions[{idx}].templateFieldId"
            if not field_id:
                errors.append(_error("REQUIRED_FIELD", "Field ID is required", path))
            elif not isinstance(field_id, str) or not is_uuid(field_id):
                errors.append(_error("INVALID_UUID", "Invalid field ID", path))
            elif field_id in seen:
                errors.append(_error("DUPLICATE_FIELD", "Field submitted more than once", path))
            else:
                seen.add(field_id)
    else:
        errors.append(_error("REQUIRED_FIELD", "At least one field submission is required", "fieldSubmissions"))
    return errors, {"templateId": template_id, "values": values, "fieldSubmissions": items}


def validate_comment_payload(data: Any) -> tuple[list[dict], str | None]:
    content = data.get("content") if isinstance(data, dict) else None
    if not isinstance(content, str):
        return [_error("REQUIRED_FIELD", "Comment content is required", "content")], None
    if not content.strip():
        return [_error("EMPTY", "Comment cannot be empty", "content")], None
    if len(content) > 1000:
        return [_error("TOO_LONG", "Comment cannot exceed 1000 characters", "content")], None
    return [], content


def validate_tag_name(data: Any) -> tuple[list[dict], str | None]:
    name = data.get("name") if isinstance(data, dict) else None
    if not isinstance(name, str) or not name.strip():
        return [_error("REQUIRED_FIELD", "Tag name is required", "name")], None
    name = name.strip()
    if len(name) < 2:
        return [_error("TOO_SHORT", "Tag name must be at least 2 characters", "name")], None
    if len(name) > 30:
        return [_error("TOO_LONG", "Tag name cannot exceed 30 characters", "name")], None
    if not _TAG_NAME_RE.match(name):
        return [_error("INVALID_NAME", "Tag name can only contain letters, numbers, spaces, and hyphens", "name")], None
    return [], name


def validate_profile_update(data: Any) -> tuple[list[dict], dict]:
    if not isinstance(data, dict):
        return [_error("INVALID_PAYLOAD", "Profile data must be an object")], {}
    errors: list[dict] = []
    changes: dict = {}
    if "name" in data:
        name = data.get("name")
        if name is not None and (not isinstance(name, str) or not 2 <= len(name.strip()) <= 50):
            errors.append(_error("INVALID_NAME", "Name must be between 2 and 50 characters", "name"))
        else:
            changes["name"] = name.strip() if isinstance(name, str) else None
    if "avatarUrl" in data:
        url = data.get("avatarUrl")
        parsed = urlparse(url) if isinstance(url, str) else None
        if url is not None and (not parsed or parsed.scheme not in ("http", "https") or not parsed.netloc):
            errors.append(_error("INVALID_URL", "Invalid avatar URL", "avatarUrl"))
        else:
            changes["avatarUrl"] = url
    return errors, changes


def validate_admin_user_update(data: Any) -> tuple[list[dict], dict]:
    if not isinstance(data, dict):
        return [_error("INVALID_PAYLOAD", "Request body must be an object")], {}
    user_id = data.get("userId")
    if not user_id:
        return [_error("REQUIRED_FIELD", "User ID is required", "userId")], {}
    changes = {key: data[key] for key in ("isAdmin", "isActive") if isinstance(data.get(key), bool)}
    if not changes:
        return [
            _error(
                "REQUIRED_FIELD",
                "At least one status (isAdmin or isActive) must be provided and be a boolean",
                None,
            )
        ], {}
    return [], {"userId": str(user_id), **changes}


def validate_search_query(q: Any) -> tuple[list[dict], list[str]]:
    if not isinstance(q, str) or len(q.strip()) < 2:
        return [_error("INVALID_QUERY", "Search query must be at least 2 characters long", "q")], []
    return [], q.strip().split()


def parse_positive_int(value: Any, default: int, maximum: int | None = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    if parsed < 1:
        return default
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed
