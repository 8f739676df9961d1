"""Draft, publish, unpublish and delete for screen schemas."""

from __future__ import annotations

import copy
import logging
from typing import Callable

from valora import ci_tree
from valora.canonical_json import CanonicalJsonTypeError, canonical_dumps
from valora.results import BLOCKED, FORBIDDEN, NOT_FOUND, VALIDATION, fail, ok
from valora.screen_versions import ScreenVersions, as_published_flag

from template_store import ENVIRONMENTS, TemplateDocuments, ensure_screens, find_screen, find_screens

logger = logging.getLogger("valora.publish")

ENV_ORDER = ("dev", "test", "preview", "prod")
PROD_ENV = "prod"
PUBLISH_ROLES = {"platformadmin", "tenantadmin"}


def can_publish(role: str | None) -> bool:
    return isinstance(role, str) and role.strip().lower() in PUBLISH_ROLES


def is_allowed_transition(from_env: str, to_env: str) -> bool:
    """Targets must come strictly later in ENV_ORDER; prod only from preview."""
    source = (from_env or "").strip().lower()
    target = (to_env or "").strip().lower()
    if source not in ENV_ORDER or target not in ENV_ORDER:
        return False
    if target == PROD_ENV:
        return source == "preview"
    return ENV_ORDER.index(target) > ENV_ORDER.index(source)


def _has_fields(document: dict) -> bool:
    fields = ci_tree.walk(document, "fields")
    if isinstance(fields, (dict, list)):
        return len(fields) > 0
    return False


class DraftPublishWorkflow:
    def __init__(self, documents: TemplateDocuments, on_published: Callable[..., None] | None = None) -> None:
        self.documents = documents
        self.on_published = on_published

    def save_draft(self, tenant_id: str, env: str, object_code: str, body) -> dict:
        if not isinstance(body, dict):
            return fail(VALIDATION, "Draft body must be a JSON object")
        if not tenant_id:
            return fail(VALIDATION, "Tenant id is required", field="tenantId")
        if not object_code or not object_code.strip():
            return fail(VALIDATION, "Object code is required", field="objectCode")
        try:
            canonical_dumps(body)
        except (CanonicalJsonTypeError, ValueError) as exc:
            return fail(VALIDATION, "Draft body must be plain JSON without NaN or Infinity", detail={"reason": str(exc)})

        def _apply(document: dict) -> dict:
            screens = ensure_screens(document, env)
            screen_key = ci_tree.find_key(screens, object_code) or object_code
            versions = ScreenVersions.from_map(screens.get(screen_key))
            number = versions.next_version()
            draft = copy.deepcopy(body)
            draft["version"] = number
            if "isPublished" in draft:
                draft["isPublished"] = as_published_flag(draft["isPublished"])
            else:
                draft["isPublished"] = False
            versions.add(number, draft)
            if draft["isPublished"]:
                versions.mark_published(number)
            screens[screen_key] = versions.to_map()
            return ok({"version": number})

        result = self.documents.mutate(tenant_id, _apply, create_missing=True)
        if result["ok"]:
            logger.info(
                "draft_saved tenant=%s env=%s object=%s version=%s",
                tenant_id,
                env,
                object_code,
                result["data"]["version"],
            )
        return result

    def publish(
        self,
        tenant_id: str,
        object_code: str,
        from_env: str,
        to_env: str,
        role: str | None,
        version: int | None = None,
        actor_id: str | None = None,
    ) -> dict:
        if not can_publish(role):
            logger.warning("publish_forbidden tenant=%s object=%s role=%s", tenant_id, object_code, role)
            return fail(FORBIDDEN, "Only PlatformAdmin or TenantAdmin may publish")
        if not tenant_id or not str(tenant_id).strip():
            return fail(VALIDATION, "publish.tenantIdRequired", field="tenantId")
        if not object_code or not str(object_code).strip():
            return fail(VALIDATION, "publish.objectCodeRequired", field="objectCode")
        if not is_allowed_transition(from_env, to_env):
            return fail(
                VALIDATION,
                "publish.invalidEnvironmentTransition",
                detail={"fromEnv": from_env, "toEnv": to_env, "order": list(ENV_ORDER)},
            )
        if version is not None and (isinstance(version, bool) or not isinstance(version, int) or version <= 0):
            return fail(VALIDATION, "Version must be a positive integer", field="version")
        if self.documents.load(tenant_id) is None:
            return fail(NOT_FOUND, "publish.tenantTemplateNotFound")

        published: dict = {}

        def _apply(document: dict) -> dict:
            environments = ci_tree.child(document, ENVIRONMENTS)
            if environments is None:
                return fail(NOT_FOUND, "publish.environmentsNotConfigured")
            if ci_tree.child(environments, from_env) is None:
                return fail(NOT_FOUND, "publish.sourceEnvironmentNotFound")
            if not find_screens(document, from_env)["ok"]:
                return fail(NOT_FOUND, "publish.sourceEnvironmentHasNoScreens")
            source = find_screen(document, from_env, object_code)
            if not source["ok"]:
                return fail(NOT_FOUND, "publish.screenNotFoundInSourceEnvironment")
            versions = source["versions"]
            entry = versions.get(version) if version is not None else versions.latest()
            if entry is None:
                return fail(NOT_FOUND, "publish.noValidVersionForScreen")
            if not _has_fields(entry.document):
                return fail(VALIDATION, "publish.screenHasNoFields")

            target_screens = ensure_screens(document, to_env)
            target_key = ci_tree.find_key(target_screens, object_code) or source["screen_key"]
            target = ScreenVersions.from_map(target_screens.get(target_key))
            clone = copy.deepcopy(entry.document)
            clone["version"] = entry.number
            clone["isPublished"] = True
            target.clear_published()
            target.put(entry.number, clone)
            target.mark_published(entry.number)
            target_screens[target_key] = target.to_map()
            published.update({"version": entry.number, "document": copy.deepcopy(clone), "screen_key": target_key})
            return ok({"status": "ok", "version": entry.number})

        result = self.documents.mutate(tenant_id, _apply)
        if not result["ok"]:
            return result
        logger.info(
            "screen_published tenant=%s object=%s from=%s to=%s version=%s",
            tenant_id,
            object_code,
            from_env,
            to_env,
            published["version"],
        )
        if self.on_published is not None:
            self.on_published(
                tenant_id=tenant_id,
                object_code=published["screen_key"],
                version=published["version"],
                document=published["document"],
                actor_id=actor_id,
            )
        return result

    def unpublish(self, tenant_id: str, env: str, object_code: str) -> dict:
        if (env or "").strip().lower() == PROD_ENV:
            logger.warning("unpublish_blocked tenant=%s env=%s object=%s", tenant_id, env, object_code)
            return fail(BLOCKED, "Unpublish is not allowed in the prod environment")

        def _apply(document: dict) -> dict:
            located = find_screen(document, env, object_code)
            if not located["ok"]:
                return located
            versions = located["versions"]
            cleared = versions.clear_published()
            located["screens"][located["screen_key"]] = versions.to_map()
            return ok({"status": "ok", "cleared": cleared})

        result = self.documents.mutate(tenant_id, _apply)
        if result["ok"]:
            logger.info("screen_unpublished tenant=%s env=%s object=%s", tenant_id, env, object_code)
        return result

    def delete(self, tenant_id: str, env: str, object_code: str) -> dict:
        if self.documents.load(tenant_id) is None:
            return ok({"deleted": False})

        def _apply(document: dict) -> dict:
            located = find_screens(document, env)
            if not located["ok"]:
                return ok({"deleted": False}, unchanged=True)
            if not ci_tree.remove(located["screens"], object_code):
                return ok({"deleted": False}, unchanged=True)
            return ok({"deleted": True})

        result = self.documents.mutate(tenant_id, _apply)
        if result["ok"] and result["data"]["deleted"]:
            logger.info("screen_deleted tenant=%s env=%s object=%s", tenant_id, env, object_code)
        return result
