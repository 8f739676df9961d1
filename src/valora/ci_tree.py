"""Case-insensitive navigation over nested JSON maps.

Keys are matched exactly first, then by a linear scan comparing
case-insensitively. Stored key case is always preserved.
"""

from __future__ import annotations

from typing import Any


def _fold(key: str) -> str:
    return key.casefold()


def find_key(mapping: Any, key: str) -> str | None:
    """Return the stored key matching ``key`` or None."""
    if not isinstance(mapping, dict) or not isinstance(key, str):
        return None
    if key in mapping:
        return key
    wanted = _fold(key)
    for existing in mapping:
        if isinstance(existing, str) and _fold(existing) == wanted:
            return existing
    return None


def lookup(mapping: Any, key: str) -> tuple[str, Any] | None:
    """Return ``(stored_key, value)`` or None when missing or null."""
    stored = find_key(mapping, key)
    if stored is None:
        return None
    value = mapping[stored]
    if value is None:
        return None
    return stored, value


def child(mapping: Any, key: str) -> dict | None:
    found = lookup(mapping, key)
    if found is None or not isinstance(found[1], dict):
        return None
    return found[1]


def ensure_child(mapping: dict, key: str) -> dict:
    """Return the dict under ``key``, creating it with ``key``'s case when absent."""
    stored = find_key(mapping, key)
    if stored is not None and isinstance(mapping.get(stored), dict):
        return mapping[stored]
    node: dict = {}
    mapping[stored if stored is not None else key] = node
    return node


def remove(mapping: Any, key: str) -> bool:
    stored = find_key(mapping, key)
    if stored is None:
        return False
    del mapping[stored]
    return True


def walk(root: Any, *keys: str) -> Any:
    current = root
    for key in keys:
        found = lookup(current, key)
        if found is None:
            return None
        current = found[1]
    return current
