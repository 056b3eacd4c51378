"""DB-backed stores for FormHub persistence."""

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone

from app.db import clear_active_conn, execute, fetch_all, fetch_one, get_conn, get_pool, init_pool, set_active_conn

logger = logging.getLogger("formhub.db")

_TX_TIMEOUT_MS = int(os.getenv("FORMHUB_TX_TIMEOUT_MS", "5000"))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value):
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value


class _TxContext:
    def __init__(self, conn, pool):
        self.conn = conn
        self.pool = pool
        self.depth = 1
        self.failed = False


_TX_CONTEXT: list[_TxContext | None] = [None]


class DbTx:
    def __init__(self, ctx: _TxContext):
        self._ctx = ctx

    @property
    def conn(self):
        return self._ctx.conn

    def commit(self) -> None:
        ctx = self._ctx
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            if ctx.failed:
                ctx.conn.rollback()
            else:
                ctx.conn.commit()
        finally:
            self._release()

    def rollback(self) -> None:
        ctx = self._ctx
        ctx.failed = True
        if ctx.depth > 1:
            ctx.depth -= 1
            return
        try:
            ctx.conn.rollback()
        finally:
            self._release()

    def _release(self) -> None:
        self._ctx.pool.putconn(self._ctx.conn)
        _TX_CONTEXT[0] = None
        clear_active_conn()


class DbTxManager:
    """Transactions over one pooled connection; nested ``begin`` calls join it.

    Every outer transaction is bounded by ``statement_timeout_ms``.
    """

    def __init__(self, statement_timeout_ms: int | None = None) -> None:
        self._timeout_ms = _TX_TIMEOUT_MS if statement_timeout_ms is None else statement_timeout_ms

    def begin(self) -> DbTx:
        ctx = _TX_CONTEXT[0]
        if ctx is not None:
            ctx.depth += 1
            return DbTx(ctx)
        init_pool()
        pool = get_pool()
        conn = pool.getconn()
        if self._timeout_ms:
            try:
                execute(conn, "set local statement_timeout = %s", [int(self._timeout_ms)], query_name="tx.statement_timeout")
            except Exception:
                logger.warning("tx_begin_failed", exc_info=True)
                try:
                    conn.rollback()
                finally:
                    pool.putconn(conn)
                raise
        ctx = _TxContext(conn, pool)
        _TX_CONTEXT[0] = ctx
        set_active_conn(conn)
        return DbTx(ctx)


def _template_row(r: dict) -> dict:
    return {
        "id": str(r.get("id")),
        "title": r.get("title"),
        "description": r.get("description"),
        "isPublic": bool(r.get("is_public")),
        "topicId": str(r["topic_id"]) if r.get("topic_id") else None,
        "imageUrl": r.get("image_url"),
        "ownerId": str(r.get("owner_id")),
        "createdAt": _to_iso(r.get("created_at")),
        "updatedAt": _to_iso(r.get("updated_at")),
    }


def _field_row(r: dict) -> dict:
    return {
        "id": str(r.get("id")),
        "templateId": str(r.get("template_id")),
        "type": r.get("type"),
        "title": r.get("title"),
        "description": r.get("description"),
        "required": bool(r.get("required")),
        "showInResults": bool(r.get("show_in_results")),
        "order": r.get("order"),
    }


_TEMPLATE_COLS = "id, title, description, is_public, topic_id, image_url, owner_id, created_at, updated_at"
_FIELD_COLS = 'id, template_id, type, title, description, required, show_in_results, "order"'
_TEMPLATE_CHANGE_COLS = {
    "title": "title",
    "description": "description",
    "isPublic": "is_public",
    "topicId": "topic_id",
    "imageUrl": "image_url",
}
_FIELD_CHANGE_COLS = {
    "type": "type",
    "title": "title",
    "description": "description",
    "required": "required",
    "showInResults": "show_in_results",
    "order": '"order"',
}


class DbTemplateStore:
    def create_template(self, owner_id: str, values: dict) -> dict:
        template_id = str(uuid.uuid4())
        now = _now()
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                insert into templates (id, title, description, is_public, topic_id, image_url, owner_id, created_at, updated_at)
                values (%s,%s,%s,%s,%s,%s,%s,%s,%s)
                returning {_TEMPLATE_COLS}
                """,
                [
                    template_id,
                    values.get("title"),
                    values.get("description"),
                    bool(values.get("isPublic", True)),
                    values.get("topicId"),
                    values.get("imageUrl"),
                    owner_id,
                    now,
                    now,
                ],
                query_name="templates.insert",
            )
        return _template_row(row)

    def get_template(self, template_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select {_TEMPLATE_COLS} from templates where id=%s",
                [template_id],
                query_name="templates.get",
            )
        return _template_row(row) if row else None

    def list_templates(self, topic_id: str | None = None, owner_id: str | None = None, is_public: bool | None = None) -> list[dict]:
        clauses = []
        params: list = []
        if topic_id:
            clauses.append("topic_id=%s")
            params.append(topic_id)
        if owner_id:
            clauses.append("owner_id=%s")
            params.append(owner_id)
        if is_public is not None:
            clauses.append("is_public=%s")
            params.append(is_public)
        where = f"where {' and '.join(clauses)}" if clauses else ""
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select {_TEMPLATE_COLS} from templates {where} order by created_at desc",
                params,
                query_name="templates.list",
            )
        return [_template_row(r) for r in rows]

    def count_by_owner(self, owner_id: str) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from templates where owner_id=%s", [owner_id], query_name="templates.count_by_owner")
        return int(row["n"]) if row else 0

    def update_template(self, template_id: str, changes: dict) -> dict:
        sets = []
        params: list = []
        for key, column in _TEMPLATE_CHANGE_COLS.items():
            if key in changes:
                sets.append(f"{column}=%s")
                params.append(changes[key])
        sets.append("updated_at=%s")
        params.extend([_now(), template_id])
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update templates set {', '.join(sets)} where id=%s returning {_TEMPLATE_COLS}",
                params,
                query_name="templates.update",
            )
        if not row:
            raise KeyError("template not found")
        return _template_row(row)

    def delete_template(self, template_id: str) -> bool:
        with get_conn() as conn:
            count = execute(conn, "delete from templates where id=%s", [template_id], query_name="templates.delete")
        return count > 0

    def find_fields_by_template(self, template_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f'select {_FIELD_COLS} from template_fields where template_id=%s order by "order" asc',
                [template_id],
                query_name="template_fields.by_template",
            )
        return [_field_row(r) for r in rows]

    def create_field(self, template_id: str, values: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                insert into template_fields (id, template_id, type, title, description, required, show_in_results, "order")
                values (%s,%s,%s,%s,%s,%s,%s,%s)
                returning {_FIELD_COLS}
                """,
                [
                    str(uuid.uuid4()),
                    template_id,
                    values.get("type"),
                    values.get("title"),
                    values.get("description"),
                    bool(values.get("required", False)),
                    bool(values.get("showInResults", True)),
                    values.get("order", 0),
                ],
                query_name="template_fields.insert",
            )
        return _field_row(row)

    def update_field(self, field_id: str, changes: dict) -> dict:
        sets = []
        params: list = []
        for key, column in _FIELD_CHANGE_COLS.items():
            if key in changes:
                sets.append(f"{column}=%s")
                params.append(changes[key])
        if not sets:
            raise ValueError("no field changes")
        params.append(field_id)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update template_fields set {', '.join(sets)} where id=%s returning {_FIELD_COLS}",
                params,
                query_name="template_fields.update",
            )
        if not row:
            raise KeyError("field not found")
        return _field_row(row)

    def delete_fields_not_in(self, template_id: str, keep_ids: list[str]) -> list[str]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                delete from template_fields
                where template_id=%s and not (id::text = any(%s))
                returning id
                """,
                [template_id, list(keep_ids)],
                query_name="template_fields.delete_not_in",
            )
        return [str(r.get("id")) for r in rows]

    def get_tag_ids(self, template_id: str) -> list[str]:
        with get_conn() as conn:
            rows = fetch_all(conn, "select tag_id from template_tags where template_id=%s", [template_id], query_name="template_tags.list")
        return [str(r.get("tag_id")) for r in rows]

    def set_tags(self, template_id: str, tag_ids: list[str]) -> None:
        with get_conn() as conn:
            execute(conn, "delete from template_tags where template_id=%s", [template_id], query_name="template_tags.clear")
            for tag_id in dict.fromkeys(tag_ids):
                execute(
                    conn,
                    "insert into template_tags (template_id, tag_id) values (%s,%s)",
                    [template_id, tag_id],
                    query_name="template_tags.insert",
                )

    def get_access(self, template_id: str) -> list[str]:
        with get_conn() as conn:
            rows = fetch_all(conn, "select user_id from template_access where template_id=%s", [template_id], query_name="template_access.list")
        return [str(r.get("user_id")) for r in rows]

    def set_access(self, template_id: str, user_ids: list[str]) -> None:
        with get_conn() as conn:
            execute(conn, "delete from template_access where template_id=%s", [template_id], query_name="template_access.clear")
            for user_id in dict.fromkeys(user_ids):
                execute(
                    conn,
                    "insert into template_access (template_id, user_id) values (%s,%s)",
                    [template_id, user_id],
                    query_name="template_access.insert",
                )

    def has_access(self, template_id: str, user_id: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select 1 as ok from template_access where template_id=%s and user_id=%s",
                [template_id, user_id],
                query_name="template_access.check",
            )
        return row is not None

    def search(self, terms: list[str]) -> list[dict]:
        query = " ".join(t for t in terms if t)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"""
                select {_TEMPLATE_COLS} from templates
                where fts @@ plainto_tsquery('simple', %s)
                order by created_at desc
                """,
                [query],
                query_name="templates.search",
            )
        return [_template_row(r) for r in rows]


def _submission_row(r: dict) -> dict:
    return {
        "id": str(r.get("id")),
        "templateId": str(r.get("template_id")),
        "userId": str(r.get("user_id")),
        "createdAt": _to_iso(r.get("created_at")),
    }


def _value_row(r: dict) -> dict:
    return {
        "id": str(r.get("id")),
        "submissionId": str(r.get("submission_id")),
        "templateFieldId": str(r.get("template_field_id")),
        "valueString": r.get("value_string"),
        "valueInteger": r.get("value_integer"),
        "valueBoolean": r.get("value_boolean"),
    }


class DbSubmissionStore:
    def _attach_values(self, conn, submissions: list[dict]) -> list[dict]:
        if not submissions:
            return submissions
        rows = fetch_all(
            conn,
            """
            select fs.id, fs.submission_id, fs.template_field_id, fs.value_string, fs.value_integer, fs.value_boolean
            from field_submissions fs
            join template_fields tf on tf.id = fs.template_field_id
            where fs.submission_id::text = any(%s)
            order by tf."order" asc
            """,
            [[s["id"] for s in submissions]],
            query_name="field_submissions.by_submissions",
        )
        by_submission: dict[str, list] = {}
        for r in rows:
            value = _value_row(r)
            by_submission.setdefault(value["submissionId"], []).append(value)
        for sub in submissions:
            sub["fieldSubmissions"] = by_submission.get(sub["id"], [])
        return submissions

    def create_submission(self, template_id: str, user_id: str, rows: list[dict]) -> dict:
        submission_id = str(uuid.uuid4())
        with get_conn() as conn:
            sub = fetch_one(
                conn,
                """
                insert into submissions (id, template_id, user_id, created_at)
                values (%s,%s,%s,%s)
                returning id, template_id, user_id, created_at
                """,
                [submission_id, template_id, user_id, _now()],
                query_name="submissions.insert",
            )
            values = []
            for row in rows:
                inserted = fetch_one(
                    conn,
                    """
                    insert into field_submissions (id, submission_id, template_field_id, value_string, value_integer, value_boolean)
                    values (%s,%s,%s,%s,%s,%s)
                    returning id, submission_id, template_field_id, value_string, value_integer, value_boolean
                    """,
                    [
                        str(uuid.uuid4()),
                        submission_id,
                        row.get("templateFieldId"),
                        row.get("valueString"),
                        row.get("valueInteger"),
                        row.get("valueBoolean"),
                    ],
                    query_name="field_submissions.insert",
                )
                values.append(_value_row(inserted))
        result = _submission_row(sub)
        result["fieldSubmissions"] = values
        return result

    def get_submission(self, submission_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select id, template_id, user_id, created_at from submissions where id=%s",
                [submission_id],
                query_name="submissions.get",
            )
            if not row:
                return None
            return self._attach_values(conn, [_submission_row(row)])[0]

    def _list(self, column: str, value: str, query_name: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select id, template_id, user_id, created_at from submissions where {column}=%s order by created_at desc",
                [value],
                query_name=query_name,
            )
            return self._attach_values(conn, [_submission_row(r) for r in rows])

    def list_for_template(self, template_id: str) -> list[dict]:
        return self._list("template_id", template_id, "submissions.by_template")

    def list_for_user(self, user_id: str) -> list[dict]:
        return self._list("user_id", user_id, "submissions.by_user")

    def count_for_template(self, template_id: str) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from submissions where template_id=%s", [template_id], query_name="submissions.count_template")
        return int(row["n"]) if row else 0

    def count_for_user(self, user_id: str) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from submissions where user_id=%s", [user_id], query_name="submissions.count_user")
        return int(row["n"]) if row else 0

    def delete_field_values(self, field_ids: list[str]) -> int:
        # template_fields cascades; this covers rows written before the cascade existed
        if not field_ids:
            return 0
        with get_conn() as conn:
            return execute(
                conn,
                "delete from field_submissions where template_field_id::text = any(%s)",
                [list(field_ids)],
                query_name="field_submissions.delete_for_fields",
            )

    def delete_for_template(self, template_id: str) -> int:
        with get_conn() as conn:
            return execute(conn, "delete from submissions where template_id=%s", [template_id], query_name="submissions.delete_template")

    def delete_for_user(self, user_id: str) -> int:
        with get_conn() as conn:
            return execute(conn, "delete from submissions where user_id=%s", [user_id], query_name="submissions.delete_user")


class DbLikeStore:
    def has_liked(self, template_id: str, user_id: str) -> bool:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select 1 as ok from likes where template_id=%s and user_id=%s",
                [template_id, user_id],
                query_name="likes.get",
            )
        return row is not None

    def toggle(self, template_id: str, user_id: str) -> bool:
        with get_conn() as conn:
            removed = execute(
                conn,
                "delete from likes where template_id=%s and user_id=%s",
                [template_id, user_id],
                query_name="likes.delete",
            )
            if removed:
                return False
            execute(
                conn,
                "insert into likes (template_id, user_id, created_at) values (%s,%s,%s)",
                [template_id, user_id, _now()],
                query_name="likes.insert",
            )
        return True

    def count(self, template_id: str) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from likes where template_id=%s", [template_id], query_name="likes.count")
        return int(row["n"]) if row else 0

    def delete_for_template(self, template_id: str) -> None:
        with get_conn() as conn:
            execute(conn, "delete from likes where template_id=%s", [template_id], query_name="likes.delete_template")


def _comment_row(r: dict) -> dict:
    return {
        "id": str(r.get("id")),
        "templateId": str(r.get("template_id")),
        "userId": str(r.get("user_id")),
        "content": r.get("content"),
        "createdAt": _to_iso(r.get("created_at")),
    }


class DbCommentStore:
    def create(self, template_id: str, user_id: str, content: str) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into comments (id, template_id, user_id, content, created_at)
                values (%s,%s,%s,%s,%s)
                returning id, template_id, user_id, content, created_at
                """,
                [str(uuid.uuid4()), template_id, user_id, content, _now()],
                query_name="comments.insert",
            )
        return _comment_row(row)

    def list_page(self, template_id: str, offset: int = 0, limit: int = 10) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select id, template_id, user_id, content, created_at
                from comments
                where template_id=%s
                order by created_at desc
                offset %s limit %s
                """,
                [template_id, offset, limit],
                query_name="comments.page",
            )
        return [_comment_row(r) for r in rows]

    def count(self, template_id: str) -> int:
        with get_conn() as conn:
            row = fetch_one(conn, "select count(*) as n from comments where template_id=%s", [template_id], query_name="comments.count")
        return int(row["n"]) if row else 0

    def delete_for_template(self, template_id: str) -> None:
        with get_conn() as conn:
            execute(conn, "delete from comments where template_id=%s", [template_id], query_name="comments.delete_template")


def _user_row(r: dict) -> dict:
    return {
        "id": str(r.get("id")),
        "email": r.get("email"),
        "name": r.get("name"),
        "avatarUrl": r.get("avatar_url"),
        "isAdmin": bool(r.get("is_admin")),
        "isActive": bool(r.get("is_active")),
        "createdAt": _to_iso(r.get("created_at")),
        "updatedAt": _to_iso(r.get("updated_at")),
    }


_USER_COLS = "id, email, name, avatar_url, is_admin, is_active, created_at, updated_at"
_USER_CHANGE_COLS = {"name": "name", "avatarUrl": "avatar_url", "isAdmin": "is_admin", "isActive": "is_active", "email": "email"}


class DbUserStore:
    def get(self, user_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, f"select {_USER_COLS} from users where id=%s", [user_id], query_name="users.get")
        return _user_row(row) if row else None

    def ensure(self, user_id: str, email: str | None, name: str | None = None, avatar_url: str | None = None) -> dict:
        now = _now()
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into users (id, email, name, avatar_url, is_admin, is_active, created_at, updated_at)
                values (%s,%s,%s,%s,false,true,%s,%s)
                on conflict (id) do nothing
                """,
                [user_id, email, name, avatar_url, now, now],
                query_name="users.ensure",
            )
            row = fetch_one(conn, f"select {_USER_COLS} from users where id=%s", [user_id], query_name="users.get")
        return _user_row(row)

    def update(self, user_id: str, changes: dict) -> dict:
        sets = []
        params: list = []
        for key, column in _USER_CHANGE_COLS.items():
            if key in changes:
                sets.append(f"{column}=%s")
                params.append(changes[key])
        sets.append("updated_at=%s")
        params.extend([_now(), user_id])
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"update users set {', '.join(sets)} where id=%s returning {_USER_COLS}",
                params,
                query_name="users.update",
            )
        if not row:
            raise KeyError("user not found")
        return _user_row(row)

    def search(self, query: str = "", offset: int = 0, limit: int = 10, active_only: bool = False, order_by: str = "createdAt") -> tuple[list[dict], int]:
        pattern = f"%{query or ''}%"
        where = "(email ilike %s or coalesce(name, '') ilike %s)"
        params: list = [pattern, pattern]
        if active_only:
            where += " and is_active"
        order = "email asc" if order_by == "email" else "created_at desc"
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select {_USER_COLS} from users where {where} order by {order} offset %s limit %s",
                params + [offset, limit],
                query_name="users.search",
            )
            total = fetch_one(conn, f"select count(*) as n from users where {where}", params, query_name="users.search_count")
        return [_user_row(r) for r in rows], int(total["n"]) if total else 0

    def exists(self, user_ids: list[str]) -> list[str]:
        if not user_ids:
            return []
        with get_conn() as conn:
            rows = fetch_all(conn, "select id from users where id::text = any(%s)", [list(user_ids)], query_name="users.exists")
        return [str(r.get("id")) for r in rows]

    def delete(self, user_id: str) -> bool:
        with get_conn() as conn:
            count = execute(conn, "delete from users where id=%s", [user_id], query_name="users.delete")
        return count > 0


class DbCatalogStore:
    def list_topics(self) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(conn, "select id, name, created_at from topics order by created_at asc", query_name="topics.list")
        return [{"id": str(r["id"]), "name": r.get("name"), "createdAt": _to_iso(r.get("created_at"))} for r in rows]

    def topic_exists(self, topic_id: str) -> bool:
        return self.get_topic(topic_id) is not None

    def get_topic(self, topic_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select id, name, created_at from topics where id=%s", [topic_id], query_name="topics.get")
        if not row:
            return None
        return {"id": str(row["id"]), "name": row.get("name"), "createdAt": _to_iso(row.get("created_at"))}

    def list_tags(self) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(conn, "select id, name from tags order by name asc", query_name="tags.list")
        return [{"id": str(r["id"]), "name": r.get("name")} for r in rows]

    def find_tag_by_name(self, name: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select id, name from tags where lower(name)=lower(%s)", [name.strip()], query_name="tags.by_name")
        return {"id": str(row["id"]), "name": row.get("name")} if row else None

    def create_tag(self, name: str) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "insert into tags (id, name) values (%s,%s) returning id, name",
                [str(uuid.uuid4()), name.strip()],
                query_name="tags.insert",
            )
        return {"id": str(row["id"]), "name": row.get("name")}

    def tags_by_ids(self, tag_ids: list[str]) -> list[dict]:
        if not tag_ids:
            return []
        with get_conn() as conn:
            rows = fetch_all(conn, "select id, name from tags where id::text = any(%s)", [list(tag_ids)], query_name="tags.by_ids")
        return [{"id": str(r["id"]), "name": r.get("name")} for r in rows]
