"""Valora kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps
from .document_hash import document_hash, etag

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "document_hash",
    "etag",
]
