"""Supabase JWT auth middleware."""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


logger = logging.getLogger("formhub.auth")

_JWKS_CACHE: Dict[str, Any] = {"keys": None, "fetched_at": 0.0, "ttl": 600.0}
_LOCAL_ORIGIN_RE = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_PUBLIC_READ_RE = re.compile(r"^/api/(templates(/[^/]+)?(/(likes|comments))?|topics|tags|search)/?$")


def auth_disabled() -> bool:
    return os.getenv("FORMHUB_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")


def is_public_read(method: str, path: str) -> bool:
    """Anonymous visitors may browse templates, their comments and the catalog."""
    return method == "GET" and bool(_PUBLIC_READ_RE.match(path))


def _attach_local_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get("origin")
    if origin and _LOCAL_ORIGIN_RE.match(origin):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


def _auth_error(request: Request, code: str, message: str, detail: dict | None = None) -> JSONResponse:
    return _attach_local_cors(
        request,
        JSONResponse(
            {
                "ok": False,
                "errors": [{"code": code, "message": message, "path": "Authorization", "detail": detail}],
                "warnings": [],
            },
            status_code=401,
        ),
    )


def _fetch_jwks(jwks_url: str, force: bool = False) -> dict:
    now = time.time()
    if not force and _JWKS_CACHE["keys"] and now - _JWKS_CACHE["fetched_at"] < _JWKS_CACHE["ttl"]:
        return _JWKS_CACHE["keys"]
    resp = httpx.get(jwks_url, timeout=10.0)
    resp.raise_for_status()
    data = resp.json()
    _JWKS_CACHE["keys"] = data
    _JWKS_CACHE["fetched_at"] = now
    return data


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def _find_key(jwks: dict, kid: str | None) -> dict | None:
    for jwk in jwks.get("keys", []):
        if jwk.get("kid") == kid:
            return jwk
    return None


def _verify_jwt(token: str, jwks_url: str, issuer: str, audience: Optional[str]) -> dict:
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = _find_key(_fetch_jwks(jwks_url), kid)
    if key is None:
        # keys rotate; refetch once before giving up
        key = _find_key(_fetch_jwks(jwks_url, force=True), kid)
    if key is None:
        raise JWTError("Unknown kid")

    options = {"verify_aud": audience is not None}
    return jwt.decode(token, key, algorithms=[headers.get("alg", "RS256")], issuer=issuer, audience=audience, options=options)


def user_from_claims(claims: dict) -> dict:
    metadata = claims.get("user_metadata") or {}
    return {
        "id": claims.get("sub"),
        "email": claims.get("email"),
        "name": metadata.get("name") or metadata.get("full_name"),
        "avatar_url": metadata.get("avatar_url"),
        "role": claims.get("role"),
        "claims": claims,
    }


class SupabaseAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, supabase_url: str, audience: Optional[str] = None) -> None:
        super().__init__(app)
        self._supabase_url = supabase_url.rstrip("/")
        self._audience = audience
        self._jwks_url = f"{self._supabase_url}/auth/v1/.well-known/jwks.json"
        self._issuer = f"{self._supabase_url}/auth/v1"

    def verify(self, token: str) -> dict:
        return _verify_jwt(token, self._jwks_url, self._issuer, self._audience)

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        if auth_disabled():
            return await call_next(request)
        if request.method == "OPTIONS":
            return await call_next(request)
        if request.url.path in {"/health", "/api/health"}:
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            if is_public_read(request.method, request.url.path):
                request.state.user = None
                return await call_next(request)
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _auth_error(request, "AUTH_MISSING_TOKEN", "Missing bearer token")

        try:
            claims = self.verify(token)
        except Exception as exc:
            logger.warning(
                "auth_invalid_token path=%s issuer=%s audience=%s error=%s",
                request.url.path,
                self._issuer,
                self._audience,
                exc,
            )
            return _auth_error(request, "AUTH_INVALID_TOKEN", "Invalid bearer token", {"error": str(exc)})

        request.state.user = user_from_claims(claims)
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
