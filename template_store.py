"""Per-tenant template documents: storage, navigation and guarded writes."""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict

from valora import ci_tree
from valora.results import CONFLICT, NOT_FOUND, fail, ok
from valora.screen_versions import ScreenVersions

logger = logging.getLogger("valora.templates")

ENVIRONMENTS = "environments"
SCREENS = "screens"

MSG_OBJECT_NOT_FOUND = "Object not found"
MSG_ENVIRONMENTS_NOT_CONFIGURED = "Environments not configured"
MSG_ENVIRONMENT_NOT_FOUND = "Environment not found"
MSG_SCREENS_NOT_FOUND = "Screens not found"
MSG_SCREEN_NOT_FOUND = "Screen not found"


class RevisionConflict(Exception):
    """A write was attempted against a stale document revision."""

    def __init__(self, tenant_id: str, expected: int | None) -> None:
        super().__init__(f"template document for tenant {tenant_id!r} changed since revision {expected}")
        self.tenant_id = tenant_id
        self.expected = expected


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def tenant_key(tenant_id: str) -> str:
    return (tenant_id or "").strip().lower()


def new_document(tenant_id: str) -> dict:
    return {"tenantId": tenant_id, "tenantName": tenant_id, ENVIRONMENTS: {}}


class MemoryTemplateStore:
    """In-memory template table keyed by normalized tenant id."""

    def __init__(self) -> None:
        self._rows: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, tenant_id: str) -> dict | None:
        row = self._rows.get(tenant_key(tenant_id))
        return copy.deepcopy(row) if row else None

    def insert(self, tenant_id: str, document: dict) -> int:
        key = tenant_key(tenant_id)
        with self._lock:
            if key in self._rows:
                raise RevisionConflict(tenant_id, None)
            self._rows[key] = {
                "tenant_id": tenant_id,
                "document": copy.deepcopy(document),
                "revision": 1,
                "updated_at": _now(),
            }
        return 1

    def replace(self, tenant_id: str, document: dict, expected_revision: int) -> int:
        key = tenant_key(tenant_id)
        with self._lock:
            row = self._rows.get(key)
            if row is None or row["revision"] != expected_revision:
                raise RevisionConflict(tenant_id, expected_revision)
            row["document"] = copy.deepcopy(document)
            row["revision"] = expected_revision + 1
            row["updated_at"] = _now()
            return row["revision"]


def find_screens(document: dict | None, env: str) -> dict:
    """Navigate to an environment's screens map.

    Returns ``{"ok": True, "screens": {...}, "env_key": ...}`` or a NotFound
    result naming the missing segment.
    """
    if not isinstance(document, dict):
        return fail(NOT_FOUND, MSG_OBJECT_NOT_FOUND)
    environments = ci_tree.child(document, ENVIRONMENTS)
    if environments is None:
        return fail(NOT_FOUND, MSG_ENVIRONMENTS_NOT_CONFIGURED)
    found_env = ci_tree.lookup(environments, env)
    if found_env is None or not isinstance(found_env[1], dict):
        return fail(NOT_FOUND, MSG_ENVIRONMENT_NOT_FOUND)
    screens = ci_tree.child(found_env[1], SCREENS)
    if screens is None:
        return fail(NOT_FOUND, MSG_SCREENS_NOT_FOUND)
    return ok(None, screens=screens, env_key=found_env[0])


def find_screen(document: dict | None, env: str, object_code: str) -> dict:
    """Navigate to a screen's versions, returning ``versions`` as ScreenVersions."""
    located = find_screens(document, env)
    if not located["ok"]:
        return located
    found = ci_tree.lookup(located["screens"], object_code)
    if found is None or not isinstance(found[1], dict):
        return fail(NOT_FOUND, MSG_SCREEN_NOT_FOUND)
    return ok(
        None,
        env_key=located["env_key"],
        screen_key=found[0],
        screens=located["screens"],
        versions=ScreenVersions.from_map(found[1]),
    )


def ensure_screens(document: dict, env: str) -> dict:
    environments = ci_tree.ensure_child(document, ENVIRONMENTS)
    env_node = ci_tree.ensure_child(environments, env)
    return ci_tree.ensure_child(env_node, SCREENS)


class TemplateDocuments:
    """Read and write tenant template documents through a store.

    Writes copy the stored document, apply a mutation to the copy and
    replace it under the revision read, so concurrent writers to the same
    tenant cannot overwrite each other unnoticed.
    """

    def __init__(self, store) -> None:
        self.store = store

    def load(self, tenant_id: str) -> dict | None:
        row = self.store.get(tenant_id)
        if not row:
            return None
        return row.get("document")

    def mutate(self, tenant_id: str, apply: Callable[[dict], dict], create_missing: bool = False) -> dict:
        """Run ``apply`` on a copy of the tenant document and persist it.

        ``apply`` returns a result dict. A failed result is returned without
        writing. A stale revision returns a Conflict result.
        """
        row = self.store.get(tenant_id)
        if not row and not create_missing:
            return fail(NOT_FOUND, MSG_OBJECT_NOT_FOUND)
        document = copy.deepcopy(row["document"]) if row else new_document(tenant_id)
        result = apply(document)
        if not result.get("ok"):
            return result
        if result.get("unchanged"):
            return result
        try:
            if row:
                revision = self.store.replace(tenant_id, document, row["revision"])
            else:
                revision = self.store.insert(tenant_id, document)
                logger.info("template_created tenant=%s", tenant_id)
        except RevisionConflict as exc:
            logger.warning("template_conflict tenant=%s expected_revision=%s", tenant_id, exc.expected)
            return fail(CONFLICT, "Template document was modified concurrently; reload and retry")
        result["revision"] = revision
        return result
