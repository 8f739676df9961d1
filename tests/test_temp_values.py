import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from valora.temp_values import commit, extract_temp_values, field_from_temp, is_temp_field, overlay


class TestTempValues(unittest.TestCase):
    def test_temp_names(self) -> None:
        self.assertTrue(is_temp_field("temp_Total"))
        self.assertFalse(is_temp_field("temp_"))
        self.assertFalse(is_temp_field("Total"))
        self.assertEqual(field_from_temp("temp_Total"), "Total")
        self.assertEqual(field_from_temp("Total"), "Total")

    def test_overlay_reads_temp_as_field(self) -> None:
        view = overlay({"Qty": 1, "temp_Qty": 5, "Price": 2}, {"temp_Price": 3, "Other": 9})
        self.assertEqual(view, {"Qty": 5, "Price": 3})

    def test_extract_ignores_canonical(self) -> None:
        self.assertEqual(extract_temp_values({"a": 1, "temp_a": 2}), {"temp_a": 2})
        self.assertEqual(extract_temp_values(None), {})

    def test_commit_keeps_canonical_and_drops_temps(self) -> None:
        data = {"Name": "Ada", "temp_Name": "Grace", "temp_Email": "a@b.c"}
        committed = commit(data)
        self.assertEqual(committed, {"Name": "Ada", "Email": "a@b.c"})
        self.assertFalse(any(k.startswith("temp_") for k in committed))

    def test_commit_is_idempotent(self) -> None:
        data = {"A": 1, "temp_B": 2, "temp_A": 3}
        once = commit(data)
        self.assertEqual(commit(once), once)
        self.assertEqual(data, {"A": 1, "temp_B": 2, "temp_A": 3})


if __name__ == "__main__":
    unittest.main()
