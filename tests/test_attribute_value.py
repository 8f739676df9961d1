import os
import sys
import unittest
from datetime import datetime, timezone
from decimal import Decimal


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from valora.attribute_value import (
    AttributeCoercionError,
    Boolean,
    Date,
    Number,
    Text,
    coerce,
    from_columns,
    normalize_data_type,
    to_columns,
    to_json,
)


class TestAttributeValue(unittest.TestCase):
    def test_coerce_by_type(self) -> None:
        self.assertEqual(coerce("Text", "abc"), Text("abc"))
        self.assertEqual(coerce("number", "12.50"), Number(Decimal("12.50")))
        self.assertEqual(coerce("Number", 3), Number(Decimal(3)))
        self.assertEqual(coerce("Boolean", "yes"), Boolean(True))
        self.assertEqual(
            coerce("Date", "2024-05-01T10:00:00Z"),
            Date(datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)),
        )

    def test_coerce_rejects_mismatches(self) -> None:
        with self.assertRaises(AttributeCoercionError):
            coerce("Number", "abc")
        with self.assertRaises(AttributeCoercionError):
            coerce("Number", True)
        with self.assertRaises(AttributeCoercionError):
            coerce("Boolean", "maybe")
        with self.assertRaises(AttributeCoercionError):
            coerce("Date", "not a date")

    def test_number_must_be_finite(self) -> None:
        for value in ("NaN", "Infinity", "-inf", "sNaN", float("nan"), float("inf"), Decimal("NaN")):
            with self.assertRaises(AttributeCoercionError, msg=repr(value)):
                coerce("Number", value)

    def test_unknown_type_is_text(self) -> None:
        self.assertEqual(normalize_data_type("lookup"), "Text")
        self.assertEqual(coerce("whatever", 5), Text("5"))

    def test_columns_hold_one_value(self) -> None:
        columns = to_columns(Number(Decimal("4.5")))
        self.assertEqual(columns["value_number"], Decimal("4.5"))
        self.assertIsNone(columns["value_text"])
        self.assertIsNone(columns["value_date"])
        self.assertIsNone(columns["value_boolean"])

    def test_json_keeps_types(self) -> None:
        self.assertEqual(to_json(from_columns("Number", to_columns(coerce("Number", 7)))), 7)
        self.assertEqual(to_json(from_columns("Number", to_columns(coerce("Number", "2.5")))), 2.5)
        self.assertEqual(to_json(from_columns("Text", to_columns(coerce("Text", "7")))), "7")
        self.assertIs(to_json(from_columns("Boolean", to_columns(coerce("Boolean", False)))), False)
        self.assertEqual(to_json(coerce("Date", "2024-01-02")), "2024-01-02T00:00:00Z")
        self.assertIsNone(to_json(from_columns("Number", {})))


if __name__ == "__main__":
    unittest.main()
