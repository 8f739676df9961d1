"""Generic CRUD and queries over tenant-defined records."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any

from valora import ci_tree
from valora.attribute_value import TEXT, AttributeCoercionError, coerce, from_columns, normalize_data_type, to_columns, to_json
from valora.results import CONFIG, NOT_FOUND, UNIQUE_VIOLATION, VALIDATION, fail, fail_many, issue, ok

from app.records_validation import fields_by_name, is_uuid, validate_entity_payload
from app.stores import UniqueViolation
from module_schema import parse_module_schema

logger = logging.getLogger("valora.entities")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = int(os.getenv("VALORA_MAX_PAGE_SIZE", "200"))

MSG_NOT_SYNCED = "Object definition not synced. Please publish the schema first."
MSG_INVALID_ID = "Invalid ID format"
MSG_NOT_FOUND = "Entity not found"

_RECORD_SORTS = {"createdat": "created_at", "updatedat": "updated_at"}


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return value


def _page_number(value: Any, default: int) -> int | None:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _has_glob(pattern: str) -> bool:
    return "*" in pattern or "?" in pattern


def _as_desc(value: Any) -> bool:
    if value is None or value == "":
        return True
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "desc")
    return bool(value)


class EntityService:
    def __init__(self, store) -> None:
        self.store = store

    def _definition(self, tenant_id: str, module: str) -> tuple[dict | None, dict | None]:
        if not module or not str(module).strip():
            return None, fail(VALIDATION, "Module is required", field="module")
        definition = self.store.get_definition(tenant_id, module)
        if not definition:
            return None, fail(CONFIG, MSG_NOT_SYNCED)
        return definition, None

    def _schema(self, definition: dict):
        raw = definition.get("schema_json")
        if not isinstance(raw, dict):
            return None
        return parse_module_schema(raw, definition.get("object_code"))

    def _pivot(self, records: list[dict], fields: list[dict]) -> list[dict]:
        by_id = {f["id"]: f for f in fields}
        attributes = self.store.list_attributes([r["id"] for r in records])
        items = []
        for record in records:
            item = {
                "Id": record["id"],
                "TenantId": record["tenant_id"],
                "CreatedAt": _iso(record.get("created_at")),
                "CreatedBy": record.get("created_by"),
                "UpdatedAt": _iso(record.get("updated_at")),
                "UpdatedBy": record.get("updated_by"),
            }
            for attr in attributes.get(record["id"], []):
                field = by_id.get(attr["field_id"])
                if field is None:
                    continue
                item[field["field_name"]] = to_json(from_columns(field["data_type"], attr))
            items.append(item)
        return items

    def create_entity(self, tenant_id: str, module: str, payload: Any, actor_id: str | None = None) -> dict:
        definition, error = self._definition(tenant_id, module)
        if error:
            return error
        fields = self.store.list_fields(definition["id"])
        errors, attributes = validate_entity_payload(self._schema(definition), fields_by_name(fields), payload, for_create=True)
        if errors:
            return fail_many(errors)
        try:
            record = self.store.create_record(tenant_id, definition["id"], actor_id, attributes)
        except UniqueViolation as exc:
            logger.warning("entity_unique_violation tenant=%s module=%s error=%s", tenant_id, module, exc)
            return fail(UNIQUE_VIOLATION, "Attribute already exists for this record")
        logger.info("entity_created tenant=%s module=%s id=%s attributes=%s", tenant_id, module, record["id"], len(attributes))
        return ok({"id": record["id"]})

    def update_entity(self, tenant_id: str, module: str, entity_id: str, payload: Any, actor_id: str | None = None) -> dict:
        if not is_uuid(entity_id):
            return fail(VALIDATION, MSG_INVALID_ID, field="id")
        definition, error = self._definition(tenant_id, module)
        if error:
            return error
        if not self._owned(tenant_id, definition, entity_id):
            return fail(NOT_FOUND, MSG_NOT_FOUND)
        fields = self.store.list_fields(definition["id"])
        errors, attributes = validate_entity_payload(self._schema(definition), fields_by_name(fields), payload, for_create=False)
        if errors:
            return fail_many(errors)
        try:
            record = self.store.update_record(tenant_id, entity_id, actor_id, attributes)
        except UniqueViolation as exc:
            logger.warning("entity_unique_violation tenant=%s module=%s id=%s error=%s", tenant_id, module, entity_id, exc)
            return fail(UNIQUE_VIOLATION, "Attribute already exists for this record")
        if record is None:
            return fail(NOT_FOUND, MSG_NOT_FOUND)
        logger.info("entity_updated tenant=%s module=%s id=%s attributes=%s", tenant_id, module, entity_id, len(attributes))
        return ok({"id": entity_id})

    def delete_entity(self, tenant_id: str, module: str, entity_id: str) -> dict:
        if not is_uuid(entity_id):
            return fail(VALIDATION, MSG_INVALID_ID, field="id")
        definition, error = self._definition(tenant_id, module)
        if error:
            return error
        if not self._owned(tenant_id, definition, entity_id) or not self.store.delete_record(tenant_id, entity_id):
            return fail(NOT_FOUND, MSG_NOT_FOUND)
        logger.info("entity_deleted tenant=%s module=%s id=%s", tenant_id, module, entity_id)
        return ok({"id": entity_id})

    def get_entity(self, tenant_id: str, module: str, entity_id: str) -> dict:
        if not is_uuid(entity_id):
            return fail(VALIDATION, MSG_INVALID_ID, field="id")
        definition, error = self._definition(tenant_id, module)
        if error:
            return error
        record = self.store.get_record(tenant_id, entity_id)
        if not record or record["object_definition_id"] != definition["id"]:
            return fail(NOT_FOUND, MSG_NOT_FOUND)
        return ok(self._pivot([record], self.store.list_fields(definition["id"]))[0])

    def _owned(self, tenant_id: str, definition: dict, entity_id: str) -> bool:
        record = self.store.get_record(tenant_id, entity_id)
        return bool(record) and record["object_definition_id"] == definition["id"]

    def _filters(self, raw: Any, fields: dict) -> tuple[list[dict], list[dict]]:
        filters: list[dict] = []
        errors: list[dict] = []
        if not isinstance(raw, dict):
            return filters, errors
        for key, value in raw.items():
            if value is None or not isinstance(key, str):
                continue
            if key.lower() == "id":
                filters.append({"kind": "id", "value": str(value)})
                continue
            field = fields.get(key.lower())
            if field is None:
                continue
            data_type = normalize_data_type(field["data_type"])
            if isinstance(value, str) and data_type == TEXT:
                kind = "glob" if _has_glob(value) else "prefix"
                filters.append({"kind": kind, "field_id": field["id"], "column": "value_text", "value": value})
                continue
            try:
                typed = coerce(data_type, value)
            except AttributeCoercionError:
                errors.append(issue(VALIDATION, f"Filter {key} must be a {data_type.lower()}", field=key))
                continue
            column, column_value = next((c, v) for c, v in to_columns(typed).items() if v is not None)
            filters.append({"kind": "eq", "field_id": field["id"], "column": column, "value": column_value})
        return filters, errors

    def _sort(self, sort_by: Any, sort_desc: Any, fields: dict) -> dict | None:
        desc = _as_desc(sort_desc)
        if not sort_by:
            return {"column": "created_at", "desc": desc}
        name = str(sort_by).strip().lower()
        if name in _RECORD_SORTS:
            return {"column": _RECORD_SORTS[name], "desc": desc}
        field = fields.get(name)
        if field is None:
            return None
        typed_column = {
            "Number": "value_number",
            "Date": "value_date",
            "Boolean": "value_boolean",
        }.get(normalize_data_type(field["data_type"]), "value_text")
        return {"column": typed_column, "field_id": field["id"], "desc": desc}

    def list_entities(
        self,
        tenant_id: str,
        module: str,
        page: Any = 1,
        page_size: Any = DEFAULT_PAGE_SIZE,
        filters: Any = None,
        sort_by: Any = None,
        sort_desc: Any = None,
    ) -> dict:
        definition, error = self._definition(tenant_id, module)
        if error:
            return error
        page_num = _page_number(page, 1)
        size = _page_number(page_size, DEFAULT_PAGE_SIZE)
        if page_num is None:
            return fail(VALIDATION, "Page must be an integer", field="page")
        if size is None:
            return fail(VALIDATION, "PageSize must be an integer", field="pageSize")
        page_num = max(page_num, 1)
        size = DEFAULT_PAGE_SIZE if size < 1 else min(size, MAX_PAGE_SIZE)

        fields = self.store.list_fields(definition["id"])
        by_name = fields_by_name(fields)
        query_filters, errors = self._filters(filters, by_name)
        if errors:
            return fail_many(errors)
        sort = self._sort(sort_by, sort_desc, by_name)
        if sort is None:
            return fail(VALIDATION, f"Unknown sort field: {sort_by}", field="sortBy")

        records, total = self.store.query_records(
            tenant_id,
            definition["id"],
            query_filters,
            sort,
            (page_num - 1) * size,
            size,
        )
        return ok(
            {
                "items": self._pivot(records, fields),
                "page": page_num,
                "pageSize": size,
                "totalCount": total,
            }
        )


def query_options(body: dict) -> dict:
    """Read ExecuteQuery options with case-insensitive keys."""
    options = ci_tree.child(body, "Options") or {}
    return {
        "page": ci_tree.walk(options, "Page"),
        "page_size": ci_tree.walk(options, "PageSize"),
        "filters": ci_tree.walk(options, "Filters"),
        "sort_by": ci_tree.walk(options, "SortBy"),
        "sort_desc": ci_tree.walk(options, "SortDesc"),
    }
