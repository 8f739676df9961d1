"""Staged ``temp_<Field>`` values carried alongside form data."""

from __future__ import annotations

from typing import Any

TEMP_PREFIX = "temp_"


def is_temp_field(name: Any) -> bool:
    return isinstance(name, str) and name.startswith(TEMP_PREFIX) and len(name) > len(TEMP_PREFIX)


def field_from_temp(name: str) -> str:
    return name[len(TEMP_PREFIX):] if is_temp_field(name) else name


def temp_name(field_name: str) -> str:
    return f"{TEMP_PREFIX}{field_name}"


def extract_temp_values(data: dict | None) -> dict:
    if not isinstance(data, dict):
        return {}
    return {k: v for k, v in data.items() if is_temp_field(k)}


def overlay(form_data: dict | None, temp_values: dict | None) -> dict:
    """Canonical values with staged temp values laid on top, keyed by field name."""
    view = {k: v for k, v in (form_data or {}).items() if not is_temp_field(k)}
    staged = dict(extract_temp_values(form_data))
    staged.update(extract_temp_values(temp_values))
    for key, value in staged.items():
        view[field_from_temp(key)] = value
    return view


def commit(data: dict | None) -> dict:
    """Promote temp values into missing canonical fields and drop every temp key.

    Canonical values already present win. ``commit(commit(x)) == commit(x)``.
    """
    if not isinstance(data, dict):
        return {}
    committed = {k: v for k, v in data.items() if not is_temp_field(k)}
    for key, value in data.items():
        if not is_temp_field(key):
            continue
        name = field_from_temp(key)
        if name not in committed:
            committed[name] = value
    return committed
