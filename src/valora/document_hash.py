"""Content hashes for schema documents."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def document_hash(document: Any) -> str:
    data = canonical_dumps(document).encode("utf-8")
    return "sha256:" + hashlib.sha256(data).hexdigest()


def etag(document: Any) -> str:
    return '"' + document_hash(document)[len("sha256:"):][:32] + '"'
