"""FastAPI app for the FormHub API."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time

from formhub.errors import FormHubError, UnsupportedFieldType, ValidationFailure

from app import engagement, submissions, templates, users
from app.auth import SupabaseAuthMiddleware, auth_disabled, is_public_read
from app.backend import Backend, build_backend
from app.db import get_db_stats, reset_db_stats
from app.payload_validation import (
    is_uuid,
    parse_positive_int,
    validate_admin_user_update,
    validate_comment_payload,
    validate_profile_update,
    validate_search_query,
    validate_submission_body,
    validate_tag_name,
    validate_template_payload,
)


app = FastAPI(title="FormHub")
logger = logging.getLogger("formhub")
logging.basicConfig(level=logging.INFO)
_LOCAL_CORS_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}
_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_EXTRA_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("FORMHUB_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | _EXTRA_CORS_ORIGINS

SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip()
SUPABASE_AUD = os.getenv("SUPABASE_JWT_AUD", "").strip() or None
DISABLE_AUTH = auth_disabled()
USE_DB = os.getenv("USE_DB", "").strip() == "1"
APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
REQ_SLOW_MS = float(os.getenv("FORMHUB_REQ_SLOW_MS", "250"))
TEST_USER_ID = "00000000-0000-4000-8000-000000000001"
logger.info("auth_disabled=%s supabase_url=%s supabase_aud=%s use_db=%s", DISABLE_AUTH, SUPABASE_URL, SUPABASE_AUD, USE_DB)

app.state.backend = build_backend(USE_DB)


def _backend(request: Request) -> Backend:
    return request.app.state.backend


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _validation_response(errors: list[dict], status: int = 400) -> JSONResponse:
    body = {"ok": False, "errors": errors, "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


@app.middleware("http")
async def local_cors_fallback_middleware(request: Request, call_next):
    origin = request.headers.get("origin")
    if request.method == "OPTIONS":
        response = JSONResponse({}, status_code=200)
    else:
        response = await call_next(request)
    normalized_origin = origin.rstrip("/") if isinstance(origin, str) else origin
    if normalized_origin and (normalized_origin in _CORS_ORIGINS or _LOCAL_CORS_REGEX.match(normalized_origin)):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    auth_ms = getattr(request.state, "auth_ms", 0.0)
    db_stats = get_db_stats()
    db_ms = db_stats.get("total_ms", 0.0)
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s db_acquire_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        auth_ms,
        db_ms,
        db_stats.get("queries", 0),
        db_stats.get("acquire_ms", 0.0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            db_ms,
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-DB-MS"] = f"{db_ms:.1f}"
        response.headers["X-Queries"] = str(db_stats.get("queries", 0))
    return response


@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    return _validation_response(exc.to_issues(), status=exc.status)


@app.exception_handler(UnsupportedFieldType)
async def unsupported_field_type_handler(request: Request, exc: UnsupportedFieldType):
    logger.error("unsupported_field_type path=%s field=%s message=%s", request.url.path, exc.path, exc.message, exc_info=exc)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", exc.path, {"error": exc.message}, status=500)


@app.exception_handler(FormHubError)
async def formhub_error_handler(request: Request, exc: FormHubError):
    return _error_response(exc.code, exc.message, exc.path, status=exc.status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled_error method=%s path=%s", request.method, request.url.path, exc_info=exc)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _resolve_actor(request: Request) -> dict | JSONResponse | None:
    user = getattr(request.state, "user", None)
    if auth_disabled() and (not user or not user.get("id")):
        user_id = request.headers.get("X-User-Id") or TEST_USER_ID
        user = {
            "id": user_id,
            "email": request.headers.get("X-User-Email") or f"{user_id}@example.com",
            "name": request.headers.get("X-User-Name"),
        }
    if not user or not user.get("id"):
        if is_public_read(request.method, request.url.path):
            return None
        return _error_response("AUTH_REQUIRED", "Authenticated user required", status=401)
    profile = _backend(request).users.ensure(user["id"], user.get("email"), user.get("name"), user.get("avatar_url"))
    if not profile.get("isActive", True):
        return _error_response("USER_BLOCKED", "User account is blocked", status=403)
    return {
        "user_id": profile["id"],
        "email": profile.get("email"),
        "is_admin": bool(profile.get("isAdmin")),
        "claims": user.get("claims"),
    }


class ActorContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in {"/health", "/api/health"}:
            return await call_next(request)
        actor = _resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        request.state.actor = actor
        return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ActorContextMiddleware)
if not DISABLE_AUTH:
    if not SUPABASE_URL:
        raise RuntimeError("SUPABASE_URL is required for auth")
    app.add_middleware(SupabaseAuthMiddleware, supabase_url=SUPABASE_URL, audience=SUPABASE_AUD)


async def _safe_json(request: Request) -> dict:
    try:
        return await request.json()
    except Exception:
        return {}


def _parse_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    value = value.strip().lower()
    if value in ("1", "true", "yes"):
        return True
    if value in ("0", "false", "no"):
        return False
    return None


def _require_uuid(value: str | None, path: str, label: str) -> JSONResponse | None:
    if not value:
        return _error_response("REQUIRED_FIELD", f"{label} is required", path)
    if not is_uuid(value):
        return _error_response("INVALID_UUID", f"Invalid {label.lower()}", path)
    return None


@app.get("/health")
@app.get("/api/health")
async def health() -> dict:
    return {"ok": True}


# Templates


@app.get("/api/templates")
async def templates_list(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    params = request.query_params
    items = templates.list_templates(
        _backend(request),
        actor,
        topic_id=params.get("topicId") or None,
        owner_id=params.get("ownerId") or None,
        is_public=_parse_bool(params.get("isPublic")),
        limit=parse_positive_int(params.get("limit"), 0, 100) or None,
        sort=params.get("sort") or "latest",
    )
    return _ok_response({"templates": items})


@app.post("/api/templates")
async def templates_create(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    errors, clean = validate_template_payload(await _safe_json(request))
    if errors:
        return _validation_response(errors)
    template = templates.create_template(_backend(request), actor, clean)
    return _ok_response({"template": template}, status=201)


@app.get("/api/templates/{template_id}")
async def templates_get(template_id: str, request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    backend = _backend(request)
    template = templates.require_template(backend, template_id)
    if not templates.can_view(backend, template, actor):
        return _error_response("FORBIDDEN", "You do not have access to this template", status=403)
    return _ok_response({"template": templates.template_detail(backend, template, actor)})


@app.put("/api/templates/{template_id}")
async def templates_update(template_id: str, request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    errors, clean = validate_template_payload(await _safe_json(request))
    if errors:
        return _validation_response(errors)
    template = templates.update_template(_backend(request), actor, template_id, clean)
    return _ok_response({"template": template})


@app.delete("/api/templates/{template_id}")
async def templates_delete(template_id: str, request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    templates.delete_template(_backend(request), actor, template_id)
    return _ok_response({"message": "Template deleted successfully"})


@app.get("/api/templates/{template_id}/likes")
async def template_likes_status(template_id: str, request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    return _ok_response(engagement.like_status(_backend(request), actor, template_id))


@app.post("/api/templates/{template_id}/likes")
async def template_likes_toggle(template_id: str, request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    return _ok_response(engagement.toggle_like(_backend(request), actor, template_id))


@app.get("/api/templates/{template_id}/comments")
async def template_comments_list(template_id: str, request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    page = parse_positive_int(request.query_params.get("page"), 1)
    limit = parse_positive_int(request.query_params.get("limit"), 10, 100)
    return _ok_response(engagement.list_comments(_backend(request), actor, template_id, page, limit))


@app.post("/api/templates/{template_id}/comments")
async def template_comments_create(template_id: str, request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    errors, content = validate_comment_payload(await _safe_json(request))
    if errors:
        return _validation_response(errors)
    comment = engagement.add_comment(_backend(request), actor, template_id, content)
    return _ok_response({"comment": comment}, status=201)


# Submissions


@app.post("/api/submissions")
async def submissions_create(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    errors, clean = validate_submission_body(await _safe_json(request))
    if errors:
        return _validation_response(errors)
    submission = submissions.create_submission(_backend(request), actor, clean)
    return _ok_response({"submission": submission}, status=201)


@app.get("/api/submissions")
async def submissions_for_template(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    template_id = request.query_params.get("templateId")
    invalid = _require_uuid(template_id, "templateId", "Template ID")
    if invalid:
        return invalid
    items = submissions.list_template_submissions(_backend(request), actor, template_id)
    return _ok_response({"submissions": items})


@app.get("/api/submissions/user")
async def submissions_for_user(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    return _ok_response({"submissions": submissions.list_user_submissions(_backend(request), actor)})


@app.get("/api/submissions/user/single")
async def submissions_user_single(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    submission_id = request.query_params.get("submissionId")
    invalid = _require_uuid(submission_id, "submissionId", "Submission ID")
    if invalid:
        return invalid
    return _ok_response({"submission": submissions.get_user_submission(_backend(request), actor, submission_id)})


# Catalog and search


@app.get("/api/topics")
async def topics_list(request: Request) -> JSONResponse:
    return _ok_response({"topics": _backend(request).catalog.list_topics()})


@app.get("/api/tags")
async def tags_list(request: Request) -> JSONResponse:
    return _ok_response({"tags": _backend(request).catalog.list_tags()})


@app.post("/api/tags")
async def tags_create(request: Request) -> JSONResponse:
    errors, name = validate_tag_name(await _safe_json(request))
    if errors:
        return _validation_response(errors)
    catalog = _backend(request).catalog
    existing = catalog.find_tag_by_name(name)
    if existing:
        return _ok_response({"tag": existing})
    tag = catalog.create_tag(name)
    logger.info("tag_created tag_id=%s name=%s", tag["id"], tag["name"])
    return _ok_response({"tag": tag}, status=201)


@app.get("/api/search")
async def search(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    errors, terms = validate_search_query(request.query_params.get("q"))
    if errors:
        return _validation_response(errors)
    return _ok_response({"templates": templates.search_templates(_backend(request), actor, terms)})


# Users


@app.get("/api/users/search")
async def users_search(request: Request) -> JSONResponse:
    params = request.query_params
    page = parse_positive_int(params.get("page"), 1)
    limit = parse_positive_int(params.get("limit"), 10, 50)
    return _ok_response(users.search_users(_backend(request), (params.get("q") or "").strip(), page, limit))


@app.get("/api/user/profile")
async def profile_get(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    return _ok_response({"user": users.get_profile(_backend(request), actor)})


@app.patch("/api/user/profile/update")
async def profile_update(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    errors, changes = validate_profile_update(await _safe_json(request))
    if errors:
        return _validation_response(errors)
    return _ok_response({"user": users.update_profile(_backend(request), actor, changes)})


@app.delete("/api/user/profile/delete")
async def profile_delete(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    users.admin_delete_user(_backend(request), actor, request.query_params.get("userId"))
    return _ok_response({"message": "User deleted successfully"})


@app.get("/api/admin/users")
async def admin_users_list(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    params = request.query_params
    page = parse_positive_int(params.get("page"), 1)
    limit = parse_positive_int(params.get("limit"), 10, 100)
    result = users.admin_list_users(_backend(request), actor, (params.get("q") or "").strip(), page, limit)
    return _ok_response(result)


@app.put("/api/admin/users")
async def admin_users_update(request: Request) -> JSONResponse:
    actor = getattr(request.state, "actor", None)
    users.require_admin(actor)
    errors, clean = validate_admin_user_update(await _safe_json(request))
    if errors:
        return _validation_response(errors)
    return _ok_response({"user": users.admin_update_user(_backend(request), actor, clean)})


def start_app() -> None:
    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("RELOAD", "false").lower() == "true",
    )


if __name__ == "__main__":
    start_app()
