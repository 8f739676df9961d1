"""FastAPI app for the Valora schema engine."""

from __future__ import annotations

import os
import sys
from functools import partial
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import logging
import time

from valora import ci_tree, etag
from valora.results import (
    BLOCKED,
    CALCULATION_ERROR,
    CONFIG,
    CONFLICT,
    FORBIDDEN,
    NOT_FOUND,
    SCHEMA_NOT_FOUND,
    UNEXPECTED,
    UNIQUE_VIOLATION,
    VALIDATION,
    fail,
    first_code,
    issue,
)

from app.db import get_db_ms, get_db_stats, reset_db_stats
from app.entity_service import EntityService, query_options
from app.schema_sync import sync_object_definition
from app.stores import MemoryEntityStore, get_tenant_id, reset_tenant_id, set_tenant_id
from calculation_engine import CalculationEngine
from publish_workflow import DraftPublishWorkflow
from schema_resolver import SchemaResolver
from template_store import MemoryTemplateStore, TemplateDocuments


app = FastAPI(title="Valora")
logger = logging.getLogger("valora")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
EXPOSE_ERROR_DETAIL = IS_DEV or os.getenv("VALORA_EXPOSE_ERROR_DETAIL", "").strip() == "1"
REQ_SLOW_MS = float(os.getenv("VALORA_REQ_SLOW_MS", "250"))
DEFAULT_ENV = os.getenv("VALORA_DEFAULT_ENV", "prod").strip().lower() or "prod"
DEFAULT_ROLE = os.getenv("VALORA_DEFAULT_ROLE", "TenantUser").strip() or "TenantUser"
_CORS_ORIGINS = sorted(
    {origin.strip().rstrip("/") for origin in os.getenv("VALORA_CORS_ORIGINS", "").split(",") if origin.strip()}
)
_TENANT_PREFIXES = ("/api/", "/studio/")

_STATUS_BY_CODE = {
    VALIDATION: 400,
    CONFIG: 400,
    FORBIDDEN: 403,
    NOT_FOUND: 404,
    SCHEMA_NOT_FOUND: 404,
    CONFLICT: 409,
    UNIQUE_VIOLATION: 409,
    BLOCKED: 409,
    CALCULATION_ERROR: 500,
    UNEXPECTED: 500,
}

if USE_DB:
    from app.stores_db import DbEntityStore, DbTemplateStore

    template_store = DbTemplateStore()
    entity_store = DbEntityStore()
else:
    template_store = MemoryTemplateStore()
    entity_store = MemoryEntityStore()

documents = TemplateDocuments(template_store)
resolver = SchemaResolver(documents)
workflow = DraftPublishWorkflow(documents, on_published=partial(sync_object_definition, entity_store))
calculations = CalculationEngine(resolver)
entities = EntityService(entity_store)
logger.info("valora_ready use_db=%s app_env=%s default_env=%s", USE_DB, APP_ENV, DEFAULT_ENV)


def _envelope(
    success: bool,
    tenant_id: str | None,
    resource: str,
    action: str,
    data=None,
    errors: list | None = None,
    status: int = 200,
    headers: dict | None = None,
) -> JSONResponse:
    body = {"success": success, "tenantId": tenant_id, "resource": resource, "action": action}
    if data is not None:
        body["data"] = data
    if errors:
        body["errors"] = errors
    return JSONResponse(jsonable_encoder(body), status_code=status, headers=headers)


def _status_for(result: dict) -> int:
    return _STATUS_BY_CODE.get(first_code(result), 500)


def _respond(request: Request, resource: str, action: str, result: dict, headers: dict | None = None) -> JSONResponse:
    tenant_id = getattr(request.state, "tenant_id", None)
    if result.get("ok"):
        return _envelope(True, tenant_id, resource, action, data=result.get("data"), headers=headers)
    errors = []
    for err in result.get("errors") or []:
        item = {"code": err.get("code"), "message": err.get("message")}
        if err.get("field"):
            item["field"] = err["field"]
        if err.get("detail") is not None:
            item["detail"] = err["detail"]
        errors.append(item)
    return _envelope(False, tenant_id, resource, action, errors=errors, status=_status_for(result))


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


async def _safe_json(request: Request) -> dict:
    body = await _read_json(request)
    return body if isinstance(body, dict) else {}


def _parse_version(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return value


class TenantContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)
        tenant_id = (request.headers.get("x-tenant-id") or "").strip() or None
        request.state.tenant_id = tenant_id
        request.state.env = (request.headers.get("x-environment") or DEFAULT_ENV).strip().lower()
        request.state.role = (request.headers.get("x-role") or DEFAULT_ROLE).strip()
        request.state.user_id = (request.headers.get("x-user-id") or "").strip() or None
        path = request.url.path
        if tenant_id is None and any(path.startswith(prefix) for prefix in _TENANT_PREFIXES):
            resource = path.strip("/").split("/")[1] if path.count("/") > 1 else "unknown"
            return _envelope(
                False,
                None,
                resource,
                request.method.lower(),
                errors=[{"code": VALIDATION, "message": "Tenant id is required", "field": "X-Tenant-Id"}],
                status=400,
            )
        token = set_tenant_id(tenant_id)
        try:
            return await call_next(request)
        finally:
            reset_tenant_id(token)


app.add_middleware(TenantContextMiddleware)
if _CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_ms = get_db_ms()
    db_stats = get_db_stats()
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        db_ms,
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            db_ms,
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-DB-MS"] = f"{db_ms:.1f}"
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error method=%s path=%s", request.method, request.url.path)
    detail = {"error": str(exc), "type": type(exc).__name__} if EXPOSE_ERROR_DETAIL else None
    error = issue(UNEXPECTED, "Unexpected server error", detail=detail)
    if detail is None:
        error.pop("detail", None)
    error.pop("field", None)
    tenant_id = getattr(request.state, "tenant_id", None) or get_tenant_id()
    return _envelope(False, tenant_id, "server", "error", errors=[error], status=500)


@app.get("/health")
async def health() -> dict:
    return {"ok": True, "useDb": USE_DB}


# schema reads


@app.get("/api/platform/object/list")
async def list_objects(request: Request):
    codes = resolver.list_object_codes(request.state.tenant_id, request.state.env)
    return _envelope(True, request.state.tenant_id, "object", "list", data=codes)


@app.get("/api/platform/object/list/{env}")
async def list_objects_in_env(env: str, request: Request):
    codes = resolver.list_object_codes(request.state.tenant_id, env.strip().lower())
    return _envelope(True, request.state.tenant_id, "object", "list", data=codes)


def _schema_headers(result: dict, flag: bool) -> dict:
    return {"X-Is-Published": "true" if flag else "false", "ETag": etag(result["data"])}


@app.get("/api/platform/object/{object_code}/latest")
async def get_latest(object_code: str, request: Request):
    result = resolver.get_latest(request.state.tenant_id, request.state.env, object_code)
    headers = _schema_headers(result, result["has_published"]) if result["ok"] else None
    return _respond(request, "object", "latest", result, headers=headers)


@app.get("/api/platform/object/{object_code}/version/{version}")
async def get_version(object_code: str, version: str, request: Request):
    result = resolver.get_by_version(request.state.tenant_id, request.state.env, object_code, _parse_version(version))
    headers = _schema_headers(result, result["is_published"]) if result["ok"] else None
    return _respond(request, "object", "version", result, headers=headers)


@app.get("/api/platform/object/{object_code}/published")
async def get_published(object_code: str, request: Request):
    result = resolver.get_published(request.state.tenant_id, request.state.env, object_code)
    headers = _schema_headers(result, True) if result["ok"] else None
    return _respond(request, "object", "published", result, headers=headers)


@app.get("/api/platform/object/{object_code}/versions")
async def list_versions(object_code: str, request: Request):
    versions = resolver.list_versions(request.state.tenant_id, request.state.env, object_code)
    return _envelope(True, request.state.tenant_id, "object", "versions", data=versions)


# schema writes


@app.post("/api/platform/object/{object_code}/draft")
async def save_draft(object_code: str, request: Request):
    body = await _read_json(request)
    result = workflow.save_draft(request.state.tenant_id, request.state.env, object_code, body)
    return _respond(request, "object", "draft", result)


@app.post("/studio/screens/publish")
async def publish_screen(request: Request):
    body = await _safe_json(request)
    tenant_id = request.state.tenant_id
    body_tenant = ci_tree.walk(body, "TenantId")
    if body_tenant and str(body_tenant).strip().lower() != tenant_id.lower():
        logger.warning("publish_tenant_mismatch tenant=%s body_tenant=%s", tenant_id, body_tenant)
        return _respond(
            request,
            "screen",
            "publish",
            fail(FORBIDDEN, "TenantId does not match the request tenant", field="tenantId"),
        )
    result = workflow.publish(
        tenant_id,
        ci_tree.walk(body, "ObjectCode"),
        ci_tree.walk(body, "FromEnv"),
        ci_tree.walk(body, "ToEnv"),
        request.state.role,
        version=_parse_version(ci_tree.walk(body, "Version")),
        actor_id=request.state.user_id,
    )
    return _respond(request, "screen", "publish", result)


@app.post("/api/platform/object/{object_code}/unpublish")
async def unpublish(object_code: str, request: Request):
    result = workflow.unpublish(request.state.tenant_id, request.state.env, object_code)
    return _respond(request, "object", "unpublish", result)


@app.delete("/api/platform/object/{object_code}")
async def delete_object(object_code: str, request: Request):
    result = workflow.delete(request.state.tenant_id, request.state.env, object_code)
    return _respond(request, "object", "delete", result)


# calculation


@app.post("/api/calculation/execute")
async def execute_calculation(request: Request):
    body = await _safe_json(request)
    result = calculations.execute(
        request.state.tenant_id,
        request.state.env,
        ci_tree.walk(body, "Module"),
        ci_tree.walk(body, "FormData"),
        changed_field=ci_tree.walk(body, "ChangedField"),
        temp_values=ci_tree.walk(body, "TempValues"),
    )
    return _respond(request, "calculation", "execute", result)


# entity data


@app.post("/api/data/{module}")
async def create_entity(module: str, request: Request):
    body = await _read_json(request)
    result = entities.create_entity(request.state.tenant_id, module, body, actor_id=request.state.user_id)
    return _respond(request, module, "create", result)


@app.put("/api/data/{module}/{entity_id}")
async def update_entity(module: str, entity_id: str, request: Request):
    body = await _read_json(request)
    result = entities.update_entity(request.state.tenant_id, module, entity_id, body, actor_id=request.state.user_id)
    return _respond(request, module, "update", result)


@app.delete("/api/data/{module}/{entity_id}")
async def delete_entity(module: str, entity_id: str, request: Request):
    result = entities.delete_entity(request.state.tenant_id, module, entity_id)
    return _respond(request, module, "delete", result)


@app.post("/api/query/ExecuteQuery")
async def execute_query(request: Request):
    body = await _safe_json(request)
    module = ci_tree.walk(body, "Module")
    result = entities.list_entities(request.state.tenant_id, module, **query_options(body))
    return _respond(request, module or "query", "query", result)


@app.get("/api/query/{module}")
async def list_entities(module: str, request: Request):
    params = request.query_params
    result = entities.list_entities(
        request.state.tenant_id,
        module,
        page=params.get("page"),
        page_size=params.get("pageSize"),
        sort_by=params.get("sortBy"),
        sort_desc=params.get("sortDesc"),
    )
    return _respond(request, module, "list", result)


@app.get("/api/query/{module}/{entity_id}")
async def get_entity(module: str, entity_id: str, request: Request):
    result = entities.get_entity(request.state.tenant_id, module, entity_id)
    return _respond(request, module, "get", result)
