"""Postgres-backed stores for template documents and EAV records."""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

import psycopg2.errors

from valora.attribute_value import COLUMNS, AttributeValue, to_columns

from app.db import execute, fetch_all, fetch_one, get_conn
from app.stores import UniqueViolation
from template_store import RevisionConflict, tenant_key

logger = logging.getLogger("valora.db")

_AUTO_MIGRATE = os.getenv("VALORA_AUTO_MIGRATE", "1").strip() == "1"
_SCHEMA_READY = False

_DDL = [
    (
        "platform_object_templates.ensure",
        """
        create table if not exists platform_object_templates (
          tenant_key text primary key,
          tenant_id text not null,
          document jsonb not null,
          revision integer not null default 1,
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now()
        )
        """,
    ),
    (
        "object_definition.ensure",
        """
        create table if not exists object_definition (
          id uuid primary key,
          tenant_id text not null,
          object_code text not null,
          version integer not null default 0,
          is_active boolean not null default true,
          schema_json jsonb null,
          created_at timestamptz not null default now(),
          created_by text null,
          updated_at timestamptz null,
          updated_by text null
        )
        """,
    ),
    (
        "object_definition.ensure_code_idx",
        "create unique index if not exists object_definition_tenant_code_idx on object_definition (tenant_id, lower(object_code))",
    ),
    (
        "object_field.ensure",
        """
        create table if not exists object_field (
          id uuid primary key,
          object_definition_id uuid not null references object_definition(id) on delete cascade,
          tenant_id text not null,
          field_name text not null,
          data_type text not null default 'Text',
          is_required boolean not null default false,
          created_at timestamptz not null default now(),
          created_by text null,
          updated_at timestamptz null,
          updated_by text null
        )
        """,
    ),
    (
        "object_field.ensure_name_idx",
        "create unique index if not exists object_field_definition_name_idx on object_field (object_definition_id, field_name)",
    ),
    (
        "object_record.ensure",
        """
        create table if not exists object_record (
          id uuid primary key,
          tenant_id text not null,
          object_definition_id uuid not null references object_definition(id) on delete cascade,
          created_at timestamptz not null default now(),
          created_by text null,
          updated_at timestamptz null,
          updated_by text null
        )
        """,
    ),
    (
        "object_record.ensure_list_idx",
        "create index if not exists object_record_tenant_definition_idx on object_record (tenant_id, object_definition_id, created_at desc)",
    ),
    (
        "object_record_attribute.ensure",
        """
        create table if not exists object_record_attribute (
          id uuid primary key,
          record_id uuid not null references object_record(id) on delete cascade,
          field_id uuid not null references object_field(id) on delete cascade,
          value_text text null,
          value_number numeric null,
          value_date timestamptz null,
          value_boolean boolean null
        )
        """,
    ),
    (
        "object_record_attribute.ensure_unique_idx",
        "create unique index if not exists object_record_attribute_record_field_idx on object_record_attribute (record_id, field_id)",
    ),
]


def ensure_schema() -> None:
    """Create the template and EAV tables when they are missing."""
    global _SCHEMA_READY
    if _SCHEMA_READY or not _AUTO_MIGRATE:
        return
    with get_conn() as conn:
        for query_name, sql in _DDL:
            execute(conn, sql, query_name=query_name)
    _SCHEMA_READY = True
    logger.info("auto_migration_applied tables=%s", [name.split(".")[0] for name, _ in _DDL if name.endswith(".ensure")])


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _ensure_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class DbTemplateStore:
    def __init__(self) -> None:
        ensure_schema()

    def get(self, tenant_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select tenant_id, document, revision, updated_at
                from platform_object_templates
                where tenant_key=%s
                """,
                [tenant_key(tenant_id)],
                query_name="platform_object_templates.get",
            )
        if not row:
            return None
        row["document"] = _ensure_json(row["document"])
        return row

    def insert(self, tenant_id: str, document: dict) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into platform_object_templates (tenant_key, tenant_id, document, revision)
                values (%s, %s, %s::jsonb, 1)
                on conflict (tenant_key) do nothing
                returning revision
                """,
                [tenant_key(tenant_id), tenant_id, _json_dumps(document)],
                query_name="platform_object_templates.insert",
            )
        if not row:
            raise RevisionConflict(tenant_id, None)
        return row["revision"]

    def replace(self, tenant_id: str, document: dict, expected_revision: int) -> int:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update platform_object_templates
                set document=%s::jsonb, revision=revision + 1, updated_at=now()
                where tenant_key=%s and revision=%s
                returning revision
                """,
                [_json_dumps(document), tenant_key(tenant_id), expected_revision],
                query_name="platform_object_templates.replace",
            )
        if not row:
            raise RevisionConflict(tenant_id, expected_revision)
        return row["revision"]


_DEFINITION_COLUMNS = "id::text as id, tenant_id, object_code, version, is_active, schema_json, created_at, created_by, updated_at, updated_by"
_FIELD_COLUMNS = "id::text as id, object_definition_id::text as object_definition_id, tenant_id, field_name, data_type, is_required, created_at, created_by, updated_at, updated_by"
_RECORD_COLUMNS = "r.id::text as id, r.tenant_id, r.object_definition_id::text as object_definition_id, r.created_at, r.created_by, r.updated_at, r.updated_by"
_SORT_COLUMNS = {"created_at", "updated_at"}


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _glob_to_like(pattern: str) -> str:
    return _escape_like(pattern).replace("*", "%").replace("?", "_")


def _attribute_insert(conn, record_id: str, field_id: str, value: AttributeValue, query_name: str) -> None:
    columns = to_columns(value)
    execute(
        conn,
        """
        insert into object_record_attribute (id, record_id, field_id, value_text, value_number, value_date, value_boolean)
        values (%s, %s, %s, %s, %s, %s, %s)
        """,
        [str(uuid.uuid4()), record_id, field_id] + [columns[c] for c in COLUMNS],
        query_name=query_name,
    )


class DbEntityStore:
    def __init__(self) -> None:
        ensure_schema()

    def get_definition(self, tenant_id: str, object_code: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                select {_DEFINITION_COLUMNS}
                from object_definition
                where tenant_id=%s and lower(object_code)=lower(%s) and is_active
                """,
                [tenant_id, object_code],
                query_name="object_definition.get",
            )
        if row:
            row["schema_json"] = _ensure_json(row.get("schema_json"))
        return row

    def upsert_definition(self, tenant_id: str, object_code: str, version: int, schema_json: dict, actor: str) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                insert into object_definition (id, tenant_id, object_code, version, is_active, schema_json, created_by)
                values (%s, %s, %s, %s, true, %s::jsonb, %s)
                on conflict (tenant_id, (lower(object_code))) do update
                  set version = excluded.version,
                      schema_json = excluded.schema_json,
                      is_active = true,
                      updated_at = now(),
                      updated_by = %s
                returning {_DEFINITION_COLUMNS}
                """,
                [str(uuid.uuid4()), tenant_id, object_code, version, _json_dumps(schema_json), actor, actor],
                query_name="object_definition.upsert",
            )
        row["schema_json"] = _ensure_json(row.get("schema_json"))
        return row

    def delete_definition(self, definition_id: str) -> bool:
        with get_conn() as conn:
            count = execute(conn, "delete from object_definition where id=%s", [definition_id], query_name="object_definition.delete")
        return count > 0

    def list_fields(self, definition_id: str) -> list[dict]:
        with get_conn() as conn:
            return fetch_all(
                conn,
                f"select {_FIELD_COLUMNS} from object_field where object_definition_id=%s order by created_at, field_name",
                [definition_id],
                query_name="object_field.list",
            )

    def upsert_field(
        self,
        definition_id: str,
        tenant_id: str,
        field_name: str,
        data_type: str,
        is_required: bool,
        actor: str,
    ) -> dict:
        with get_conn() as conn:
            return fetch_one(
                conn,
                f"""
                insert into object_field (id, object_definition_id, tenant_id, field_name, data_type, is_required, created_by)
                values (%s, %s, %s, %s, %s, %s, %s)
                on conflict (object_definition_id, field_name) do update
                  set data_type = excluded.data_type,
                      is_required = excluded.is_required,
                      updated_at = now(),
                      updated_by = %s
                returning {_FIELD_COLUMNS}
                """,
                [str(uuid.uuid4()), definition_id, tenant_id, field_name, data_type, is_required, actor, actor],
                query_name="object_field.upsert",
            )

    def delete_field(self, field_id: str) -> bool:
        with get_conn() as conn:
            count = execute(conn, "delete from object_field where id=%s", [field_id], query_name="object_field.delete")
        return count > 0

    def insert_attribute(self, record_id: str, field_id: str, value: AttributeValue) -> None:
        try:
            with get_conn() as conn:
                _attribute_insert(conn, record_id, field_id, value, "object_record_attribute.insert")
        except psycopg2.errors.UniqueViolation as exc:
            raise UniqueViolation(f"attribute exists for record={record_id} field={field_id}") from exc

    def create_record(self, tenant_id: str, definition_id: str, actor: str | None, attributes: List[Tuple[str, AttributeValue]]) -> dict:
        record_id = str(uuid.uuid4())
        try:
            with get_conn() as conn:
                record = fetch_one(
                    conn,
                    f"""
                    insert into object_record as r (id, tenant_id, object_definition_id, created_at, created_by, updated_at, updated_by)
                    values (%s, %s, %s, %s, %s, %s, %s)
                    returning {_RECORD_COLUMNS}
                    """,
                    [record_id, tenant_id, definition_id, _now(), actor, _now(), actor],
                    query_name="object_record.insert",
                )
                for field_id, value in attributes:
                    _attribute_insert(conn, record_id, field_id, value, "object_record_attribute.insert")
        except psycopg2.errors.UniqueViolation as exc:
            raise UniqueViolation(str(exc)) from exc
        return record

    def get_record(self, tenant_id: str, record_id: str) -> dict | None:
        with get_conn() as conn:
            return fetch_one(
                conn,
                f"select {_RECORD_COLUMNS} from object_record r where r.id=%s and r.tenant_id=%s",
                [record_id, tenant_id],
                query_name="object_record.get",
            )

    def update_record(self, tenant_id: str, record_id: str, actor: str | None, attributes: List[Tuple[str, AttributeValue]]) -> dict | None:
        with get_conn() as conn:
            record = fetch_one(
                conn,
                f"""
                update object_record as r set updated_at=%s, updated_by=%s
                where r.id=%s and r.tenant_id=%s
                returning {_RECORD_COLUMNS}
                """,
                [_now(), actor, record_id, tenant_id],
                query_name="object_record.touch",
            )
            if not record:
                return None
            for field_id, value in attributes:
                columns = to_columns(value)
                execute(
                    conn,
                    """
                    insert into object_record_attribute (id, record_id, field_id, value_text, value_number, value_date, value_boolean)
                    values (%s, %s, %s, %s, %s, %s, %s)
                    on conflict (record_id, field_id) do update
                      set value_text = excluded.value_text,
                          value_number = excluded.value_number,
                          value_date = excluded.value_date,
                          value_boolean = excluded.value_boolean
                    """,
                    [str(uuid.uuid4()), record_id, field_id] + [columns[c] for c in COLUMNS],
                    query_name="object_record_attribute.upsert",
                )
        return record

    def delete_record(self, tenant_id: str, record_id: str) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                "delete from object_record where id=%s and tenant_id=%s",
                [record_id, tenant_id],
                query_name="object_record.delete",
            )
        return count > 0

    def list_attributes(self, record_ids: List[str]) -> Dict[str, list[dict]]:
        out: Dict[str, list[dict]] = {rid: [] for rid in record_ids}
        if not record_ids:
            return out
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select id::text as id, record_id::text as record_id, field_id::text as field_id,
                       value_text, value_number, value_date, value_boolean
                from object_record_attribute
                where record_id = any(%s::uuid[])
                """,
                [list(record_ids)],
                query_name="object_record_attribute.list",
            )
        for row in rows:
            out.setdefault(row["record_id"], []).append(row)
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
        where = ["r.tenant_id=%s", "r.object_definition_id=%s"]
        params: list = [tenant_id, definition_id]
        for flt in filters:
            if flt["kind"] == "id":
                where.append("r.id::text=%s")
                params.append(flt["value"])
                continue
            column = flt["column"]
            if column not in COLUMNS:
                raise ValueError(f"unknown attribute column: {column}")
            if flt["kind"] == "prefix":
                predicate, value = f"a.{column} ilike %s", _escape_like(str(flt["value"])) + "%"
            elif flt["kind"] == "glob":
                predicate, value = f"a.{column} ilike %s", _glob_to_like(str(flt["value"]))
            else:
                predicate, value = f"a.{column} = %s", flt["value"]
            where.append(f"exists (select 1 from object_record_attribute a where a.record_id=r.id and a.field_id=%s and {predicate})")
            params.extend([flt["field_id"], value])

        direction = "desc" if sort["desc"] else "asc"
        join = ""
        join_params: list = []
        if sort.get("field_id"):
            if sort["column"] not in COLUMNS:
                raise ValueError(f"unknown attribute column: {sort['column']}")
            join = "left join object_record_attribute s on s.record_id=r.id and s.field_id=%s"
            join_params = [sort["field_id"]]
            order = f"s.{sort['column']} {direction} nulls last, r.created_at {direction}"
        else:
            if sort["column"] not in _SORT_COLUMNS:
                raise ValueError(f"unknown sort column: {sort['column']}")
            order = f"r.{sort['column']} {direction} nulls last"
        where_sql = " and ".join(where)
        with get_conn() as conn:
            total_row = fetch_one(
                conn,
                f"select count(*) as total from object_record r where {where_sql}",
                params,
                query_name="object_record.count",
            )
            rows = fetch_all(
                conn,
                f"""
                select {_RECORD_COLUMNS}
                from object_record r
                {join}
                where {where_sql}
                order by {order}, r.id
                limit %s offset %s
                """,
                join_params + params + [limit, offset],
                query_name="object_record.page",
            )
        return rows, int(total_row["total"]) if total_row else 0
