"""Resolve latest, published or specific schema versions for a screen."""

from __future__ import annotations

import logging

from valora.results import NOT_FOUND, VALIDATION, fail, ok

from template_store import TemplateDocuments, find_screen, find_screens

logger = logging.getLogger("valora.templates")

MSG_VERSION_NOT_FOUND = "Version not found"
MSG_PUBLISHED_NOT_FOUND = "Published version not found"


class SchemaResolver:
    def __init__(self, documents: TemplateDocuments) -> None:
        self.documents = documents

    def _screen(self, tenant_id: str, env: str, object_code: str) -> dict:
        document = self.documents.load(tenant_id)
        return find_screen(document, env, object_code)

    def get_latest(self, tenant_id: str, env: str, object_code: str) -> dict:
        located = self._screen(tenant_id, env, object_code)
        if not located["ok"]:
            return located
        versions = located["versions"]
        latest = versions.latest()
        if latest is None:
            return fail(NOT_FOUND, MSG_VERSION_NOT_FOUND)
        return ok(
            latest.document,
            version=latest.number,
            is_published=latest.is_published,
            has_published=versions.has_published(),
        )

    def get_published(self, tenant_id: str, env: str, object_code: str) -> dict:
        located = self._screen(tenant_id, env, object_code)
        if not located["ok"]:
            return located
        published = located["versions"].published()
        if published is None:
            return fail(NOT_FOUND, MSG_PUBLISHED_NOT_FOUND)
        return ok(published.document, version=published.number, is_published=True, has_published=True)

    def get_by_version(self, tenant_id: str, env: str, object_code: str, version) -> dict:
        if isinstance(version, bool) or not isinstance(version, int) or version <= 0:
            return fail(VALIDATION, "Version must be a positive integer", field="version")
        located = self._screen(tenant_id, env, object_code)
        if not located["ok"]:
            return located
        versions = located["versions"]
        entry = versions.get(version)
        if entry is None:
            return fail(NOT_FOUND, MSG_VERSION_NOT_FOUND)
        return ok(
            entry.document,
            version=entry.number,
            is_published=entry.is_published,
            has_published=versions.has_published(),
        )

    def get_runtime(self, tenant_id: str, env: str, object_code: str) -> dict:
        """Published version when there is one, otherwise latest."""
        published = self.get_published(tenant_id, env, object_code)
        if published["ok"]:
            return published
        return self.get_latest(tenant_id, env, object_code)

    def list_object_codes(self, tenant_id: str, env: str) -> list[str]:
        located = find_screens(self.documents.load(tenant_id), env)
        if not located["ok"]:
            return []
        return sorted(key for key in located["screens"].keys() if isinstance(key, str))

    def list_versions(self, tenant_id: str, env: str, object_code: str) -> list[dict]:
        located = self._screen(tenant_id, env, object_code)
        if not located["ok"]:
            return []
        return located["versions"].listing()
