"""Closed set of template field types and the limits shared across layers."""

from __future__ import annotations

from enum import Enum

from .errors import UnsupportedFieldType


MAX_FIELDS = 30
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 500


class FieldType(str, Enum):
    STRING = "STRING"
    TEXT = "TEXT"
    INTEGER = "INTEGER"
    CHECKBOX = "CHECKBOX"


FIELD_TYPES = tuple(t.value for t in FieldType)


def coerce_field_type(value: object, path: str | None = None) -> FieldType:
    if isinstance(value, FieldType):
        return value
    if isinstance(value, str):
        try:
            return FieldType(value.strip().upper())
        except ValueError:
            pass
    raise UnsupportedFieldType(value, path)


def title_key(title: object) -> str:
    """Key used for the case-insensitive title uniqueness check."""
    if not isinstance(title, str):
        return ""
    return title.strip().lower()
