"""FormHub core utilities."""

from .errors import (
    AccessDenied,
    FormHubError,
    NotFoundError,
    ReconciliationConflict,
    UnsupportedFieldType,
    ValidationFailure,
)
from .field_types import FIELD_TYPES, MAX_FIELDS, MAX_TITLE_LENGTH, FieldType, title_key

__all__ = [
    "AccessDenied",
    "FIELD_TYPES",
    "FieldType",
    "FormHubError",
    "MAX_FIELDS",
    "MAX_TITLE_LENGTH",
    "NotFoundError",
    "ReconciliationConflict",
    "UnsupportedFieldType",
    "ValidationFailure",
    "title_key",
]
