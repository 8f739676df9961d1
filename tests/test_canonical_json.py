import os
import sys
import unittest
from decimal import Decimal


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from valora import CanonicalJsonTypeError, canonical_dumps, document_hash, etag


class TestCanonicalJson(unittest.TestCase):
    def test_key_ordering_is_deterministic(self) -> None:
        self.assertEqual(canonical_dumps({"b": 1, "a": 2}), canonical_dumps({"a": 2, "b": 1}))

    def test_nested_schema_document(self) -> None:
        doc = {"version": 2, "fields": {"Name": {"type": "text", "required": True}}}
        self.assertEqual(
            canonical_dumps(doc),
            '{"fields":{"Name":{"required":true,"type":"text"}},"version":2}',
        )

    def test_decimal_values(self) -> None:
        self.assertEqual(canonical_dumps({"n": Decimal("3")}), '{"n":3}')
        self.assertEqual(canonical_dumps({"n": Decimal("2.5")}), '{"n":2.5}')
        with self.assertRaises(ValueError):
            canonical_dumps({"n": Decimal("NaN")})

    def test_reject_non_finite_float(self) -> None:
        with self.assertRaises(ValueError):
            canonical_dumps({"bad": float("inf")})

    def test_unsupported_type_raises(self) -> None:
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({"bad": {1, 2}})
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({1: "a"})

    def test_document_hash_and_etag(self) -> None:
        a = document_hash({"a": 1, "b": [1, 2]})
        self.assertTrue(a.startswith("sha256:"))
        self.assertEqual(a, document_hash({"b": [1, 2], "a": 1}))
        tag = etag({"a": 1})
        self.assertTrue(tag.startswith('"') and tag.endswith('"'))
        self.assertEqual(len(tag), 34)


if __name__ == "__main__":
    unittest.main()
