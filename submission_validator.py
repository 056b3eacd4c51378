"""Per-template submission validation.

Rules are built from a template's field rows at the moment the template is
loaded for filling, then applied to a payload keyed by field id.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List

from formhub.errors import ValidationFailure
from formhub.field_types import FieldType, coerce_field_type


REQUIRED = "required"
OPTIONAL = "optional"

KIND_STRING = "string"
KIND_INTEGER = "integer"
KIND_BOOLEAN = "boolean"

MSG_REQUIRED = "This field is required"
MSG_EMPTY = "This field cannot be empty"
MSG_NOT_TEXT = "Value must be text"
MSG_NOT_INTEGER = "Value must be an integer"
MSG_NOT_BOOLEAN = "Value must be true or false"
MSG_UNCHECKED = "This field must be checked"

_INT_RE = re.compile(r"^[+-]?\d+$")

# Range of the Postgres integer column answers are stored in.
INT_MIN = -(2**31)
INT_MAX = 2**31 - 1
_INT_MAX_DIGITS = len(str(INT_MAX))

_VALUE_KINDS = {
    FieldType.STRING: KIND_STRING,
    FieldType.TEXT: KIND_STRING,
    FieldType.INTEGER: KIND_INTEGER,
    FieldType.CHECKBOX: KIND_BOOLEAN,
}

_VALUE_SLOTS = {
    KIND_STRING: "valueString",
    KIND_INTEGER: "valueInteger",
    KIND_BOOLEAN: "valueBoolean",
}

_MISSING = object()


@dataclass(frozen=True)
class FieldRule:
    presence: str
    value_kind: str


Rules = Dict[str, FieldRule]


def rule_for_field(field: dict) -> FieldRule:
    field_type = coerce_field_type(field.get("type"), path=field.get("id"))
    presence = REQUIRED if field.get("required") else OPTIONAL
    return FieldRule(presence=presence, value_kind=_VALUE_KINDS[field_type])


def build_rules(fields: list[dict]) -> Rules:
    """Map each field id to its single-value rule, keeping field order."""
    rules: Rules = {}
    for field in sorted(fields, key=_field_order):
        field_id = field.get("id")
        if not field_id:
            continue
        rules[field_id] = rule_for_field(field)
    return rules


def _field_order(field: dict) -> int:
    order = field.get("order")
    return order if isinstance(order, int) else 0


def _parse_integer(value: Any) -> int | None:
    parsed = None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        parsed = int(value)
    elif isinstance(value, str) and _INT_RE.match(value.strip()):
        text = value.strip()
        digits = text.lstrip("+-").lstrip("0") or "0"
        if len(digits) > _INT_MAX_DIGITS:
            return None
        parsed = -int(digits) if text.startswith("-") else int(digits)
    if parsed is None or not INT_MIN <= parsed <= INT_MAX:
        return None
    return parsed


def _check_string(rule: FieldRule, value: Any) -> tuple[str | None, Any]:
    if value is _MISSING or value is None:
        return (MSG_REQUIRED, None) if rule.presence == REQUIRED else (None, None)
    if not isinstance(value, str):
        return MSG_NOT_TEXT, None
    if rule.presence == REQUIRED and value == "":
        return MSG_EMPTY, None
    return None, value


def _check_integer(rule: FieldRule, value: Any) -> tuple[str | None, Any]:
    if value is _MISSING or value is None or (isinstance(value, str) and value.strip() == ""):
        return (MSG_REQUIRED, None) if rule.presence == REQUIRED else (None, None)
    parsed = _parse_integer(value)
    if parsed is None:
        return MSG_NOT_INTEGER, None
    return None, parsed


def _check_boolean(rule: FieldRule, value: Any) -> tuple[str | None, Any]:
    if value is _MISSING or value is None:
        return (MSG_REQUIRED, None) if rule.presence == REQUIRED else (None, None)
    if not isinstance(value, bool):
        return MSG_NOT_BOOLEAN, None
    # a required checkbox has to be ticked
    if rule.presence == REQUIRED and value is not True:
        return MSG_UNCHECKED, None
    return None, value


_CHECKS = {
    KIND_STRING: _check_string,
    KIND_INTEGER: _check_integer,
    KIND_BOOLEAN: _check_boolean,
}


def check_value(rule: FieldRule, value: Any) -> tuple[str | None, Any]:
    return _CHECKS[rule.value_kind](rule, value)


def apply_rules(rules: Rules, payload: dict) -> tuple[list[dict], dict]:
    errors: List[dict] = []
    values: Dict[str, Any] = {}
    if not isinstance(payload, dict):
        payload = {}
    for field_id, rule in rules.items():
        message, value = check_value(rule, payload.get(field_id, _MISSING))
        if message:
            errors.append({"fieldId": field_id, "message": message})
            continue
        values[field_id] = value
    if errors:
        return errors, {}
    return errors, values


def validate_submission(fields: list[dict], payload: dict) -> dict:
    """Validate ``payload`` against ``fields`` and return normalized values.

    Raises ``ValidationFailure`` carrying every violated rule; there is no
    partial acceptance.
    """
    errors, values = apply_rules(build_rules(fields), payload)
    if errors:
        raise ValidationFailure(errors)
    return values


def unknown_field_ids(fields: list[dict], payload: dict) -> list[str]:
    known = {f.get("id") for f in fields if f.get("id")}
    return [key for key in (payload or {}) if key not in known]


def payload_from_field_submissions(items: list) -> dict:
    """Collapse ``[{templateFieldId, valueString|valueInteger|valueBoolean}]`` into a map."""
    payload: Dict[str, Any] = {}
    for item in items or []:
        if not isinstance(item, dict):
            continue
        field_id = item.get("templateFieldId")
        if not isinstance(field_id, str) or not field_id:
            continue
        value = None
        for slot in ("valueString", "valueInteger", "valueBoolean"):
            if item.get(slot) is not None:
                value = item.get(slot)
                break
        payload[field_id] = value
    return payload


def field_submission_rows(fields: list[dict], values: dict, present: list[str] | None = None) -> list[dict]:
    """Build FieldSubmission rows with the slot matching each field's type.

    Only fields listed in ``present`` (default: every key of ``values``) get a
    row, in field order.
    """
    wanted = set(values.keys() if present is None else present)
    rows = []
    for field_id, rule in build_rules(fields).items():
        if field_id not in wanted:
            continue
        row = {"templateFieldId": field_id, "valueString": None, "valueInteger": None, "valueBoolean": None}
        row[_VALUE_SLOTS[rule.value_kind]] = values.get(field_id)
        rows.append(row)
    return rows
