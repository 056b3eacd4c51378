"""In-memory stores and transactions, used when USE_DB is off and in tests."""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Dict, List


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class MemoryTx:
    def __init__(self, manager: "MemoryTxManager") -> None:
        self._manager = manager
        self.committed = False
        self.rolled_back = False

    def commit(self) -> None:
        self.committed = True
        self._manager._end(rollback=False)

    def rollback(self) -> None:
        self.rolled_back = True
        self._manager._end(rollback=True)


class MemoryTxManager:
    """Snapshot every registered store on the outermost ``begin``.

    Nested transactions join the outer one; a rollback at any depth marks it
    failed and the outermost end restores the snapshots.
    """

    def __init__(self, stores: list | None = None) -> None:
        self._stores = list(stores or [])
        self._depth = 0
        self._failed = False
        self._snapshots: list = []

    def register(self, store) -> None:
        self._stores.append(store)

    def begin(self) -> MemoryTx:
        if self._depth == 0:
            self._snapshots = [store.snapshot() for store in self._stores]
            self._failed = False
        self._depth += 1
        return MemoryTx(self)

    def _end(self, rollback: bool) -> None:
        if rollback:
            self._failed = True
        self._depth -= 1
        if self._depth > 0:
            return
        if self._failed:
            for store, snap in zip(self._stores, self._snapshots):
                store.restore(snap)
        self._snapshots = []
        self._failed = False


class _SnapshotMixin:
    _STATE_ATTRS: tuple = ()

    def snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._STATE_ATTRS}

    def restore(self, snap: dict) -> None:
        for name, value in snap.items():
            setattr(self, name, value)


class MemoryTemplateStore(_SnapshotMixin):
    _STATE_ATTRS = ("_templates", "_fields", "_tags", "_access")

    def __init__(self) -> None:
        self._templates: Dict[str, dict] = {}
        self._fields: Dict[str, dict] = {}
        self._tags: Dict[str, List[str]] = {}
        self._access: Dict[str, List[str]] = {}

    def create_template(self, owner_id: str, values: dict) -> dict:
        now = _now()
        template_id = str(uuid.uuid4())
        record = {
            "id": template_id,
            "title": values.get("title"),
            "description": values.get("description"),
            "isPublic": bool(values.get("isPublic", True)),
            "topicId": values.get("topicId"),
            "imageUrl": values.get("imageUrl"),
            "ownerId": owner_id,
            "createdAt": now,
            "updatedAt": now,
        }
        self._templates[template_id] = record
        return copy.deepcopy(record)

    def get_template(self, template_id: str) -> dict | None:
        rec = self._templates.get(template_id)
        return copy.deepcopy(rec) if rec else None

    def list_templates(self, topic_id: str | None = None, owner_id: str | None = None, is_public: bool | None = None) -> list[dict]:
        items = []
        for rec in self._templates.values():
            if topic_id and rec.get("topicId") != topic_id:
                continue
            if owner_id and rec.get("ownerId") != owner_id:
                continue
            if is_public is not None and rec.get("isPublic") != is_public:
                continue
            items.append(copy.deepcopy(rec))
        return sorted(items, key=lambda r: r.get("createdAt") or "", reverse=True)

    def count_by_owner(self, owner_id: str) -> int:
        return sum(1 for rec in self._templates.values() if rec.get("ownerId") == owner_id)

    def update_template(self, template_id: str, changes: dict) -> dict:
        rec = self._templates.get(template_id)
        if rec is None:
            raise KeyError("template not found")
        rec.update(copy.deepcopy(changes))
        rec["updatedAt"] = _now()
        return copy.deepcopy(rec)

    def delete_template(self, template_id: str) -> bool:
        if template_id not in self._templates:
            return False
        del self._templates[template_id]
        for field_id in [fid for fid, f in self._fields.items() if f.get("templateId") == template_id]:
            del self._fields[field_id]
        self._tags.pop(template_id, None)
        self._access.pop(template_id, None)
        return True

    def find_fields_by_template(self, template_id: str) -> list[dict]:
        items = [copy.deepcopy(f) for f in self._fields.values() if f.get("templateId") == template_id]
        return sorted(items, key=lambda f: f.get("order") or 0)

    def create_field(self, template_id: str, values: dict) -> dict:
        field_id = str(uuid.uuid4())
        record = {
            "id": field_id,
            "templateId": template_id,
            "type": values.get("type"),
            "title": values.get("title"),
            "description": values.get("description"),
            "required": bool(values.get("required", False)),
            "showInResults": bool(values.get("showInResults", True)),
            "order": values.get("order", 0),
        }
        self._fields[field_id] = record
        return copy.deepcopy(record)

    def update_field(self, field_id: str, changes: dict) -> dict:
        rec = self._fields.get(field_id)
        if rec is None:
            raise KeyError("field not found")
        rec.update(copy.deepcopy(changes))
        return copy.deepcopy(rec)

    def delete_fields_not_in(self, template_id: str, keep_ids: list[str]) -> list[str]:
        keep = set(keep_ids)
        removed = [
            fid
            for fid, f in self._fields.items()
            if f.get("templateId") == template_id and fid not in keep
        ]
        for fid in removed:
            del self._fields[fid]
        return removed

    def get_tag_ids(self, template_id: str) -> list[str]:
        return list(self._tags.get(template_id, []))

    def set_tags(self, template_id: str, tag_ids: list[str]) -> None:
        self._tags[template_id] = list(dict.fromkeys(tag_ids))

    def get_access(self, template_id: str) -> list[str]:
        return list(self._access.get(template_id, []))

    def set_access(self, template_id: str, user_ids: list[str]) -> None:
        self._access[template_id] = list(dict.fromkeys(user_ids))

    def has_access(self, template_id: str, user_id: str) -> bool:
        return user_id in self._access.get(template_id, [])

    def search(self, terms: list[str]) -> list[dict]:
        needles = [t.lower() for t in terms if t]
        items = []
        for rec in self._templates.values():
            haystack = f"{rec.get('title') or ''} {rec.get('description') or ''}".lower()
            if all(n in haystack for n in needles):
                items.append(copy.deepcopy(rec))
        return sorted(items, key=lambda r: r.get("createdAt") or "", reverse=True)


class MemorySubmissionStore(_SnapshotMixin):
    _STATE_ATTRS = ("_submissions",)

    def __init__(self) -> None:
        self._submissions: Dict[str, dict] = {}

    def create_submission(self, template_id: str, user_id: str, rows: list[dict]) -> dict:
        submission_id = str(uuid.uuid4())
        record = {
            "id": submission_id,
            "templateId": template_id,
            "userId": user_id,
            "createdAt": _now(),
            "fieldSubmissions": [
                {"id": str(uuid.uuid4()), "submissionId": submission_id, **copy.deepcopy(row)} for row in rows
            ],
        }
        self._submissions[submission_id] = record
        return copy.deepcopy(record)

    def get_submission(self, submission_id: str) -> dict | None:
        rec = self._submissions.get(submission_id)
        return copy.deepcopy(rec) if rec else None

    def list_for_template(self, template_id: str) -> list[dict]:
        items = [copy.deepcopy(s) for s in self._submissions.values() if s.get("templateId") == template_id]
        return sorted(items, key=lambda s: s.get("createdAt") or "", reverse=True)

    def list_for_user(self, user_id: str) -> list[dict]:
        items = [copy.deepcopy(s) for s in self._submissions.values() if s.get("userId") == user_id]
        return sorted(items, key=lambda s: s.get("createdAt") or "", reverse=True)

    def count_for_template(self, template_id: str) -> int:
        return sum(1 for s in self._submissions.values() if s.get("templateId") == template_id)

    def count_for_user(self, user_id: str) -> int:
        return sum(1 for s in self._submissions.values() if s.get("userId") == user_id)

    def delete_field_values(self, field_ids: list[str]) -> int:
        doomed = set(field_ids)
        removed = 0
        for sub in self._submissions.values():
            before = len(sub["fieldSubmissions"])
            sub["fieldSubmissions"] = [fs for fs in sub["fieldSubmissions"] if fs.get("templateFieldId") not in doomed]
            removed += before - len(sub["fieldSubmissions"])
        return removed

    def delete_for_template(self, template_id: str) -> int:
        doomed = [sid for sid, s in self._submissions.items() if s.get("templateId") == template_id]
        for sid in doomed:
            del self._submissions[sid]
        return len(doomed)

    def delete_for_user(self, user_id: str) -> int:
        doomed = [sid for sid, s in self._submissions.items() if s.get("userId") == user_id]
        for sid in doomed:
            del self._submissions[sid]
        return len(doomed)


class MemoryLikeStore(_SnapshotMixin):
    _STATE_ATTRS = ("_likes",)

    def __init__(self) -> None:
        self._likes: Dict[tuple, str] = {}

    def has_liked(self, template_id: str, user_id: str) -> bool:
        return (template_id, user_id) in self._likes

    def toggle(self, template_id: str, user_id: str) -> bool:
        key = (template_id, user_id)
        if key in self._likes:
            del self._likes[key]
            return False
        self._likes[key] = _now()
        return True

    def count(self, template_id: str) -> int:
        return sum(1 for tid, _ in self._likes if tid == template_id)

    def delete_for_template(self, template_id: str) -> None:
        for key in [k for k in self._likes if k[0] == template_id]:
            del self._likes[key]


class MemoryCommentStore(_SnapshotMixin):
    _STATE_ATTRS = ("_comments",)

    def __init__(self) -> None:
        self._comments: List[dict] = []

    def create(self, template_id: str, user_id: str, content: str) -> dict:
        record = {
            "id": str(uuid.uuid4()),
            "templateId": template_id,
            "userId": user_id,
            "content": content,
            "createdAt": _now(),
        }
        self._comments.append(record)
        return copy.deepcopy(record)

    def list_page(self, template_id: str, offset: int = 0, limit: int = 10) -> list[dict]:
        items = [c for c in self._comments if c.get("templateId") == template_id]
        items = sorted(items, key=lambda c: c.get("createdAt") or "", reverse=True)
        return [copy.deepcopy(c) for c in items[offset : offset + limit]]

    def count(self, template_id: str) -> int:
        return sum(1 for c in self._comments if c.get("templateId") == template_id)

    def delete_for_template(self, template_id: str) -> None:
        self._comments = [c for c in self._comments if c.get("templateId") != template_id]


class MemoryUserStore(_SnapshotMixin):
    _STATE_ATTRS = ("_users",)

    def __init__(self) -> None:
        self._users: Dict[str, dict] = {}

    def get(self, user_id: str) -> dict | None:
        rec = self._users.get(user_id)
        return copy.deepcopy(rec) if rec else None

    def ensure(self, user_id: str, email: str | None, name: str | None = None, avatar_url: str | None = None) -> dict:
        rec = self._users.get(user_id)
        if rec is None:
            now = _now()
            rec = {
                "id": user_id,
                "email": email,
                "name": name,
                "avatarUrl": avatar_url,
                "isAdmin": False,
                "isActive": True,
                "createdAt": now,
                "updatedAt": now,
            }
            self._users[user_id] = rec
        return copy.deepcopy(rec)

    def update(self, user_id: str, changes: dict) -> dict:
        rec = self._users.get(user_id)
        if rec is None:
            raise KeyError("user not found")
        rec.update(copy.deepcopy(changes))
        rec["updatedAt"] = _now()
        return copy.deepcopy(rec)

    def search(self, query: str = "", offset: int = 0, limit: int = 10, active_only: bool = False, order_by: str = "createdAt") -> tuple[list[dict], int]:
        needle = (query or "").lower()
        items = []
        for rec in self._users.values():
            if active_only and not rec.get("isActive"):
                continue
            if needle and needle not in (rec.get("email") or "").lower() and needle not in (rec.get("name") or "").lower():
                continue
            items.append(rec)
        if order_by == "email":
            items = sorted(items, key=lambda r: r.get("email") or "")
        else:
            items = sorted(items, key=lambda r: r.get("createdAt") or "", reverse=True)
        return [copy.deepcopy(r) for r in items[offset : offset + limit]], len(items)

    def exists(self, user_ids: list[str]) -> list[str]:
        return [uid for uid in user_ids if uid in self._users]

    def delete(self, user_id: str) -> bool:
        return self._users.pop(user_id, None) is not None


class MemoryCatalogStore(_SnapshotMixin):
    _STATE_ATTRS = ("_topics", "_tags")

    def __init__(self, topics: list[str] | None = None) -> None:
        self._topics: Dict[str, dict] = {}
        self._tags: Dict[str, dict] = {}
        for name in topics or ["Education", "Quiz", "Other"]:
            self.create_topic(name)

    def create_topic(self, name: str) -> dict:
        record = {"id": str(uuid.uuid4()), "name": name, "createdAt": _now()}
        self._topics[record["id"]] = record
        return copy.deepcopy(record)

    def list_topics(self) -> list[dict]:
        return [copy.deepcopy(t) for t in sorted(self._topics.values(), key=lambda t: t.get("createdAt") or "")]

    def topic_exists(self, topic_id: str) -> bool:
        return topic_id in self._topics

    def get_topic(self, topic_id: str) -> dict | None:
        rec = self._topics.get(topic_id)
        return copy.deepcopy(rec) if rec else None

    def list_tags(self) -> list[dict]:
        return [copy.deepcopy(t) for t in sorted(self._tags.values(), key=lambda t: t.get("name") or "")]

    def find_tag_by_name(self, name: str) -> dict | None:
        key = name.strip().lower()
        for rec in self._tags.values():
            if (rec.get("name") or "").lower() == key:
                return copy.deepcopy(rec)
        return None

    def create_tag(self, name: str) -> dict:
        record = {"id": str(uuid.uuid4()), "name": name.strip()}
        self._tags[record["id"]] = record
        return copy.deepcopy(record)

    def tags_by_ids(self, tag_ids: list[str]) -> list[dict]:
        return [copy.deepcopy(self._tags[tid]) for tid in tag_ids if tid in self._tags]
