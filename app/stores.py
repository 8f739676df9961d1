"""In-memory EAV store used when USE_DB is off."""

from __future__ import annotations

import contextvars
import copy
import re
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Tuple

from valora.attribute_value import AttributeValue, to_columns

_TENANT_ID: contextvars.ContextVar[str | None] = contextvars.ContextVar("valora_tenant_id", default=None)


def set_tenant_id(value: str | None):
    return _TENANT_ID.set(value)


def reset_tenant_id(token) -> None:
    _TENANT_ID.reset(token)


def get_tenant_id() -> str | None:
    return _TENANT_ID.get()


class UniqueViolation(Exception):
    """A row with the same unique key already exists."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def glob_to_regex(pattern: str) -> re.Pattern:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def _matches(attr: dict | None, flt: dict) -> bool:
    if attr is None:
        return False
    value = attr.get(flt["column"])
    if value is None:
        return False
    kind = flt["kind"]
    if kind == "prefix":
        return str(value).lower().startswith(str(flt["value"]).lower())
    if kind == "glob":
        return glob_to_regex(str(flt["value"])).fullmatch(str(value)) is not None
    return value == flt["value"]


class MemoryEntityStore:
    """Tables for definitions, fields, records and attributes, held in dicts.

    Cascades and the ``(record_id, field_id)`` unique key behave as the
    relational schema declares them.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, dict] = {}
        self._fields: Dict[str, dict] = {}
        self._records: Dict[str, dict] = {}
        self._attributes: Dict[Tuple[str, str], dict] = {}
        self._seq = 0
        self._lock = threading.RLock()

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    # definitions

    def get_definition(self, tenant_id: str, object_code: str) -> dict | None:
        wanted = (object_code or "").lower()
        for row in self._definitions.values():
            if row["tenant_id"] == tenant_id and row["object_code"].lower() == wanted and row["is_active"]:
                return copy.deepcopy(row)
        return None

    def upsert_definition(self, tenant_id: str, object_code: str, version: int, schema_json: dict, actor: str) -> dict:
        with self._lock:
            wanted = object_code.lower()
            for row in self._definitions.values():
                if row["tenant_id"] == tenant_id and row["object_code"].lower() == wanted:
                    row.update(
                        {
                            "version": version,
                            "schema_json": copy.deepcopy(schema_json),
                            "is_active": True,
                            "updated_at": _now(),
                            "updated_by": actor,
                        }
                    )
                    return copy.deepcopy(row)
            row = {
                "id": str(uuid.uuid4()),
                "tenant_id": tenant_id,
                "object_code": object_code,
                "version": version,
                "is_active": True,
                "schema_json": copy.deepcopy(schema_json),
                "created_at": _now(),
                "created_by": actor,
                "updated_at": None,
                "updated_by": None,
            }
            self._definitions[row["id"]] = row
            return copy.deepcopy(row)

    def delete_definition(self, definition_id: str) -> bool:
        with self._lock:
            if self._definitions.pop(definition_id, None) is None:
                return False
            for field_id in [fid for fid, f in self._fields.items() if f["object_definition_id"] == definition_id]:
                self._delete_field(field_id)
            for record_id in [rid for rid, r in self._records.items() if r["object_definition_id"] == definition_id]:
                self._delete_record(record_id)
            return True

    # fields

    def list_fields(self, definition_id: str) -> list[dict]:
        rows = [f for f in self._fields.values() if f["object_definition_id"] == definition_id]
        return [copy.deepcopy(f) for f in sorted(rows, key=lambda f: f["seq"])]

    def upsert_field(
        self,
        definition_id: str,
        tenant_id: str,
        field_name: str,
        data_type: str,
        is_required: bool,
        actor: str,
    ) -> dict:
        with self._lock:
            for row in self._fields.values():
                if row["object_definition_id"] == definition_id and row["field_name"] == field_name:
                    row.update({"data_type": data_type, "is_required": is_required, "updated_at": _now(), "updated_by": actor})
                    return copy.deepcopy(row)
            row = {
                "id": str(uuid.uuid4()),
                "object_definition_id": definition_id,
                "tenant_id": tenant_id,
                "field_name": field_name,
                "data_type": data_type,
                "is_required": is_required,
                "created_at": _now(),
                "created_by": actor,
                "updated_at": None,
                "updated_by": None,
                "seq": self._next_seq(),
            }
            self._fields[row["id"]] = row
            return copy.deepcopy(row)

    def delete_field(self, field_id: str) -> bool:
        with self._lock:
            return self._delete_field(field_id)

    def _delete_field(self, field_id: str) -> bool:
        if self._fields.pop(field_id, None) is None:
            return False
        for key in [k for k in self._attributes if k[1] == field_id]:
            del self._attributes[key]
        return True

    # records

    def _insert_attribute(self, record_id: str, field_id: str, value: AttributeValue) -> None:
        key = (record_id, field_id)
        if key in self._attributes:
            raise UniqueViolation(f"attribute exists for record={record_id} field={field_id}")
        self._attributes[key] = {"id": str(uuid.uuid4()), "record_id": record_id, "field_id": field_id, **to_columns(value)}

    def insert_attribute(self, record_id: str, field_id: str, value: AttributeValue) -> None:
        with self._lock:
            if record_id not in self._records or field_id not in self._fields:
                raise KeyError("record or field not found")
            self._insert_attribute(record_id, field_id, value)

    def create_record(self, tenant_id: str, definition_id: str, actor: str | None, attributes: List[Tuple[str, AttributeValue]]) -> dict:
        with self._lock:
            if definition_id not in self._definitions:
                raise KeyError("definition not found")
            now = _now()
            record = {
                "id": str(uuid.uuid4()),
                "tenant_id": tenant_id,
                "object_definition_id": definition_id,
                "created_at": now,
                "created_by": actor,
                "updated_at": now,
                "updated_by": actor,
                "seq": self._next_seq(),
            }
            self._records[record["id"]] = record
            try:
                for field_id, value in attributes:
                    self._insert_attribute(record["id"], field_id, value)
            except UniqueViolation:
                self._delete_record(record["id"])
                raise
            return copy.deepcopy(record)

    def get_record(self, tenant_id: str, record_id: str) -> dict | None:
        record = self._records.get(record_id)
        if not record or record["tenant_id"] != tenant_id:
            return None
        return copy.deepcopy(record)

    def update_record(self, tenant_id: str, record_id: str, actor: str | None, attributes: List[Tuple[str, AttributeValue]]) -> dict | None:
        with self._lock:
            record = self._records.get(record_id)
            if not record or record["tenant_id"] != tenant_id:
                return None
            for field_id, value in attributes:
                existing = self._attributes.get((record_id, field_id))
                if existing is None:
                    self._insert_attribute(record_id, field_id, value)
                else:
                    existing.update(to_columns(value))
            record["updated_at"] = _now()
            record["updated_by"] = actor
            return copy.deepcopy(record)

    def delete_record(self, tenant_id: str, record_id: str) -> bool:
        with self._lock:
            record = self._records.get(record_id)
            if not record or record["tenant_id"] != tenant_id:
                return False
            return self._delete_record(record_id)

    def _delete_record(self, record_id: str) -> bool:
        if self._records.pop(record_id, None) is None:
            return False
        for key in [k for k in self._attributes if k[0] == record_id]:
            del self._attributes[key]
        return True

    def list_attributes(self, record_ids: List[str]) -> Dict[str, list[dict]]:
        wanted = set(record_ids)
        out: Dict[str, list[dict]] = {rid: [] for rid in record_ids}
        for (record_id, _), attr in self._attributes.items():
            if record_id in wanted:
                out[record_id].append(copy.deepcopy(attr))
        return out

    def query_records(
        self,
        tenant_id: str,
        definition_id: str,
        filters: List[dict],
        sort: dict,
        offset: int,
        limit: int,
    ) -> Tuple[list[dict], int]:
        rows = [r for r in self._records.values() if r["tenant_id"] == tenant_id and r["object_definition_id"] == definition_id]
        for flt in filters:
            if flt["kind"] == "id":
                rows = [r for r in rows if r["id"] == flt["value"]]
            else:
                rows = [r for r in rows if _matches(self._attributes.get((r["id"], flt["field_id"])), flt)]
        total = len(rows)

        def _key(record: dict) -> Any:
            if sort.get("field_id"):
                attr = self._attributes.get((record["id"], sort["field_id"])) or {}
                return attr.get(sort["column"])
            return record.get(sort["column"])

        present = [r for r in rows if _key(r) is not None]
        missing = [r for r in rows if _key(r) is None]
        present.sort(key=lambda r: r["seq"], reverse=sort["desc"])
        present.sort(key=lambda r: _sortable(_key(r)), reverse=sort["desc"])
        ordered = present + missing
        return [copy.deepcopy(r) for r in ordered[offset : offset + limit]], total


def _sortable(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return Decimal(repr(value))
    return value
