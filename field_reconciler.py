"""Reconcile a template's persisted fields with an edited field list."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from formhub.errors import FormHubError, ReconciliationConflict, ValidationFailure
from formhub.field_types import MAX_FIELDS, MAX_TITLE_LENGTH, coerce_field_type, title_key


logger = logging.getLogger("formhub.templates")

MUTABLE_ATTRS = ("type", "title", "description", "required", "showInResults")


@dataclass
class ReconcilePlan:
    updates: List[tuple[str, dict]] = field(default_factory=list)
    inserts: List[dict] = field(default_factory=list)
    deletes: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.updates or self.inserts or self.deletes)

    def write_count(self) -> int:
        return len(self.updates) + len(self.inserts) + len(self.deletes)


@dataclass
class ReconcileResult:
    fields: List[dict]
    created: List[str]
    updated: List[str]
    deleted: List[str]


def normalize_descriptor(raw: dict, index: int) -> dict:
    path = f"templateFields[{index}]"
    description = raw.get("description")
    return {
        "id": raw.get("id") or None,
        "type": coerce_field_type(raw.get("type"), path=f"{path}.type").value,
        "title": (raw.get("title") or "").strip(),
        "description": description or None,
        "required": bool(raw.get("required", False)),
        "showInResults": bool(raw.get("showInResults", True)),
        "order": index,
    }


def check_field_list(submitted: list[dict]) -> None:
    """Enforce the field cap, the title cap and unique titles."""
    errors = []
    if not submitted:
        errors.append({"fieldId": None, "message": "At least one field is required"})
    elif len(submitted) > MAX_FIELDS:
        errors.append({"fieldId": None, "message": f"Maximum of {MAX_FIELDS} fields allowed"})
    for idx, desc in enumerate(submitted):
        title = desc.get("title") or ""
        if not title:
            errors.append({"fieldId": desc.get("id") or f"templateFields[{idx}]", "message": "Title is required"})
        elif len(title) > MAX_TITLE_LENGTH:
            errors.append(
                {
                    "fieldId": desc.get("id") or f"templateFields[{idx}]",
                    "message": f"Title must be less than {MAX_TITLE_LENGTH} characters",
                }
            )
    if errors:
        raise ValidationFailure(errors, "Invalid field list")
    seen: Dict[str, int] = {}
    for idx, desc in enumerate(submitted):
        key = title_key(desc.get("title"))
        if key in seen:
            raise ReconciliationConflict(
                f"Field titles must be unique: '{desc.get('title')}' duplicates field {seen[key] + 1}",
                path=f"templateFields[{idx}].title",
            )
        seen[key] = idx


def plan_reconciliation(existing: list[dict], submitted: list[dict]) -> ReconcilePlan:
    """Partition submitted descriptors into updates, inserts and deletes.

    Order is always the index in ``submitted``; ids that do not belong to the
    existing set are treated as new fields.
    """
    descriptors = [normalize_descriptor(raw, idx) for idx, raw in enumerate(submitted)]
    check_field_list(descriptors)
    existing_by_id = {row.get("id"): row for row in existing if row.get("id")}
    plan = ReconcilePlan()
    kept: set[str] = set()
    for desc in descriptors:
        field_id = desc.get("id")
        if field_id and field_id in existing_by_id and field_id not in kept:
            kept.add(field_id)
            plan.kept.append(field_id)
            current = existing_by_id[field_id]
            changes = {
                attr: desc[attr]
                for attr in MUTABLE_ATTRS + ("order",)
                if current.get(attr) != desc[attr]
            }
            if changes:
                plan.updates.append((field_id, changes))
            continue
        values = {k: v for k, v in desc.items() if k != "id"}
        plan.inserts.append(values)
    plan.deletes = [fid for fid in existing_by_id if fid not in kept]
    return plan


def _is_constraint_error(exc: Exception) -> bool:
    code = getattr(exc, "pgcode", None)
    return isinstance(code, str) and code.startswith("23")


def apply_plan(fields_store, template_id: str, plan: ReconcilePlan) -> tuple[list[str], list[str]]:
    deleted = fields_store.delete_fields_not_in(template_id, plan.kept) if plan.deletes else []
    for field_id, changes in plan.updates:
        fields_store.update_field(field_id, changes)
    created = []
    for values in plan.inserts:
        row = fields_store.create_field(template_id, values)
        created.append(row["id"])
    return created, list(deleted)


def reconcile_fields(fields_store, tx_mgr, template_id: str, submitted: list[dict]) -> ReconcileResult:
    """Bring the persisted fields of ``template_id`` in line with ``submitted``.

    Every write happens inside one transaction from ``tx_mgr``; any failure
    rolls the whole set back.
    """
    tx = tx_mgr.begin()
    try:
        existing = fields_store.find_fields_by_template(template_id)
        plan = plan_reconciliation(existing, submitted)
        created, deleted = apply_plan(fields_store, template_id, plan)
        fields = fields_store.find_fields_by_template(template_id)
        tx.commit()
    except FormHubError:
        tx.rollback()
        raise
    except Exception as exc:
        tx.rollback()
        if _is_constraint_error(exc):
            raise ReconciliationConflict(f"Field update violates a constraint: {exc}") from exc
        raise
    logger.info(
        "template_fields_reconciled template_id=%s created=%s updated=%s deleted=%s",
        template_id,
        len(created),
        len(plan.updates),
        len(deleted),
    )
    return ReconcileResult(
        fields=sorted(fields, key=lambda f: f.get("order") or 0),
        created=created,
        updated=[fid for fid, _ in plan.updates],
        deleted=deleted,
    )


def field_rows_for_create(submitted: list[dict]) -> list[dict]:
    """Descriptors for a brand new template: everything is an insert."""
    plan = plan_reconciliation([], submitted)
    return plan.inserts

