"""Keep EAV metadata in step with published screen schemas."""

from __future__ import annotations

import logging

from module_schema import parse_module_schema

logger = logging.getLogger("valora.schema_sync")

SYSTEM_ACTOR = "System"


def sync_object_definition(
    entity_store,
    tenant_id: str,
    object_code: str,
    version: int,
    document: dict,
    actor_id: str | None = None,
) -> dict:
    """Upsert the ObjectDefinition and its fields for a published schema.

    Fields that disappeared from the schema are left in place so records
    written against them stay readable.
    """
    actor = actor_id or SYSTEM_ACTOR
    schema = parse_module_schema(document, object_code)
    definition = entity_store.upsert_definition(tenant_id, object_code, version, document, actor)
    existing = {f["field_name"]: f for f in entity_store.list_fields(definition["id"])}
    added = 0
    updated = 0
    for name, rule in schema.fields.items():
        current = existing.get(name)
        if current and current["data_type"] == rule.data_type and bool(current["is_required"]) == rule.required:
            continue
        entity_store.upsert_field(definition["id"], tenant_id, name, rule.data_type, rule.required, actor)
        if current:
            updated += 1
        else:
            added += 1
    logger.info(
        "schema_synced tenant=%s object=%s version=%s fields_added=%s fields_updated=%s",
        tenant_id,
        object_code,
        version,
        added,
        updated,
    )
    return definition
