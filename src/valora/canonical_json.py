"""Deterministic JSON used for document revision tags."""

from __future__ import annotations

import json
import math
from decimal import Decimal
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a value has no canonical JSON form."""


def _normalize(obj: Any, path: str = "$") -> Any:
    if isinstance(obj, dict):
        out = {}
        for key, value in obj.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(f"Unsupported key type at {path}: {type(key).__name__}")
            out[key] = _normalize(value, f"{path}.{key}")
        return out
    if isinstance(obj, (list, tuple)):
        return [_normalize(item, f"{path}[{idx}]") for idx, item in enumerate(obj)]
    if obj is None or isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite float at {path}: {obj!r}")
        return obj
    if isinstance(obj, Decimal):
        if not obj.is_finite():
            raise ValueError(f"Non-finite decimal at {path}: {obj!r}")
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    raise CanonicalJsonTypeError(f"Unsupported type at {path}: {type(obj).__name__}")


def canonical_dumps(obj: Any) -> str:
    """Sorted keys, no whitespace, non-ASCII preserved."""
    return json.dumps(
        _normalize(obj),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )
