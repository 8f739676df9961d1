"""Entity payload validation against the synced fields and schema rules."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, List, Tuple

from valora.attribute_value import AttributeCoercionError, AttributeValue, coerce
from valora.results import VALIDATION, issue

from module_schema import KIND_SELECT, ModuleSchema

logger = logging.getLogger("valora.entities")

RESERVED_KEYS = ("Id", "TenantId", "CreatedAt", "CreatedBy", "UpdatedAt", "UpdatedBy")


def is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except (TypeError, ValueError):
        return False


def is_reserved(key: str) -> bool:
    return key.lower() in {k.lower() for k in RESERVED_KEYS}


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def fields_by_name(fields: list[dict]) -> dict:
    """ObjectField rows keyed by lower-cased field name."""
    return {f["field_name"].lower(): f for f in fields}


def validate_entity_payload(
    schema: ModuleSchema | None,
    fields: dict,
    data: Any,
    for_create: bool,
) -> Tuple[List[dict], List[Tuple[str, AttributeValue]]]:
    """Check ``data`` and build the typed attributes to store.

    ``fields`` maps lower-cased field names to ObjectField rows. Keys that
    match no field are ignored, as are reserved record keys.
    """
    errors: List[dict] = []
    attributes: List[Tuple[str, AttributeValue]] = []
    if not isinstance(data, dict):
        return [issue(VALIDATION, "Entity data must be an object")], []

    provided = {k.lower(): (k, v) for k, v in data.items() if isinstance(k, str) and not is_reserved(k)}

    if for_create:
        for name, field in fields.items():
            rule = schema.get_field(field["field_name"]) if schema else None
            required = field.get("is_required") or (rule is not None and rule.required)
            if required and _blank(provided.get(name, (None, None))[1]):
                errors.append(issue(VALIDATION, f"Missing required field: {field['field_name']}", field=field["field_name"]))

    for name, (key, value) in provided.items():
        field = fields.get(name)
        if field is None:
            continue
        if value is None:
            continue
        rule = schema.get_field(field["field_name"]) if schema else None
        if rule is not None:
            if rule.required and not for_create and _blank(value):
                errors.append(issue(VALIDATION, f"Missing required field: {field['field_name']}", field=key))
                continue
            if isinstance(value, str) and rule.max_length and len(value) > rule.max_length:
                errors.append(issue(VALIDATION, f"{key} must be at most {rule.max_length} characters", field=key))
                continue
            if isinstance(value, str) and rule.pattern and value:
                try:
                    matched = re.fullmatch(rule.pattern, value) is not None
                except re.error:
                    logger.warning("invalid_field_pattern field=%s pattern=%s", field["field_name"], rule.pattern)
                    matched = True
                if not matched:
                    errors.append(issue(VALIDATION, f"{key} does not match the required pattern", field=key))
                    continue
            if rule.kind == KIND_SELECT:
                allowed = rule.option_values()
                if allowed and value not in allowed:
                    errors.append(issue(VALIDATION, f"{key} must be one of {allowed}", field=key))
                    continue
        try:
            attributes.append((field["id"], coerce(field["data_type"], value)))
        except AttributeCoercionError as exc:
            errors.append(issue(VALIDATION, f"{key} must be a {exc.data_type.lower()}", field=key))

    return errors, attributes
