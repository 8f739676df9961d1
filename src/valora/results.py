"""Result dicts and error codes shared by the schema engine."""

from __future__ import annotations

from typing import Any

NOT_FOUND = "NotFound"
VALIDATION = "Validation"
FORBIDDEN = "Forbidden"
CONFLICT = "Conflict"
UNIQUE_VIOLATION = "UniqueViolation"
BLOCKED = "Blocked"
CONFIG = "Config"
SCHEMA_NOT_FOUND = "SCHEMA_NOT_FOUND"
CALCULATION_ERROR = "CALCULATION_ERROR"
UNEXPECTED = "Unexpected"


def issue(code: str, message: str, field: str | None = None, detail: dict | None = None) -> dict:
    item = {"code": code, "message": message, "field": field}
    if detail is not None:
        item["detail"] = detail
    return item


def ok(data: Any = None, **extra: Any) -> dict:
    return {"ok": True, "data": data, "errors": [], **extra}


def fail(code: str, message: str, field: str | None = None, detail: dict | None = None) -> dict:
    return {"ok": False, "data": None, "errors": [issue(code, message, field, detail)]}


def fail_many(errors: list[dict]) -> dict:
    return {"ok": False, "data": None, "errors": list(errors)}


def first_code(result: dict) -> str | None:
    errors = result.get("errors") if isinstance(result, dict) else None
    if not errors:
        return None
    return errors[0].get("code")
