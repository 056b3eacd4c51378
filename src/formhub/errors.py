"""Typed failures raised by the validator, the reconciler and the services."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class FormHubError(Exception):
    code: str
    message: str
    path: str | None = None
    status: int = 400

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base

    def to_issue(self) -> dict:
        return {"code": self.code, "message": self.message, "path": self.path, "detail": None}


class ValidationFailure(FormHubError):
    """One or more field rules were violated.

    ``errors`` holds ``{"fieldId", "message"}`` entries in field order.
    """

    def __init__(self, errors: list[dict], message: str = "Validation failed") -> None:
        super().__init__("VALIDATION_FAILED", message, None, 400)
        self.errors = list(errors)

    def to_issues(self) -> list[dict]:
        return [
            {
                "code": "FIELD_INVALID",
                "message": err.get("message"),
                "path": err.get("fieldId"),
                "detail": None,
            }
            for err in self.errors
        ]


class ReconciliationConflict(FormHubError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("RECONCILIATION_CONFLICT", message, path, 409)


class NotFoundError(FormHubError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("NOT_FOUND", message, path, 404)


class AccessDenied(FormHubError):
    def __init__(self, message: str = "Forbidden", path: str | None = None) -> None:
        super().__init__("FORBIDDEN", message, path, 403)


class UnsupportedFieldType(FormHubError):
    def __init__(self, field_type: object, path: str | None = None) -> None:
        super().__init__("UNSUPPORTED_FIELD_TYPE", f"Unsupported field type: {field_type}", path, 500)
