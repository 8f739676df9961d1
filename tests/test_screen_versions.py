import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from valora.screen_versions import ScreenVersions, as_published_flag, parse_version_key, version_key


class TestScreenVersions(unittest.TestCase):
    def test_parse_version_key(self) -> None:
        self.assertEqual(parse_version_key("v12"), 12)
        self.assertEqual(parse_version_key("V3"), 3)
        self.assertEqual(parse_version_key("vX"), 0)
        self.assertEqual(parse_version_key("v"), 0)
        self.assertEqual(parse_version_key(7), 0)
        self.assertEqual(version_key(4), "v4")

    def test_latest_is_numeric_not_lexical(self) -> None:
        versions = ScreenVersions.from_map({"v2": {"n": 2}, "v10": {"n": 10}, "vX": {"n": 99}, "v9": {"n": 9}})
        self.assertEqual(versions.latest().number, 10)
        self.assertEqual(versions.next_version(), 11)
        self.assertIn("vX", versions.extras)

    def test_unparseable_keys_round_trip(self) -> None:
        raw = {"v1": {"isPublished": False}, "draft": {"keep": True}}
        self.assertEqual(ScreenVersions.from_map(raw).to_map(), raw)

    def test_published_picks_highest(self) -> None:
        versions = ScreenVersions.from_map(
            {"v1": {"isPublished": True}, "v2": {"isPublished": "true"}, "v3": {"isPublished": False}}
        )
        self.assertEqual(versions.published().number, 2)
        self.assertTrue(versions.has_published())
        self.assertEqual(
            versions.listing(),
            [
                {"version": 3, "isPublished": False},
                {"version": 2, "isPublished": True},
                {"version": 1, "isPublished": True},
            ],
        )

    def test_mark_published_leaves_one(self) -> None:
        versions = ScreenVersions.from_map({"v1": {"isPublished": True}, "v2": {}})
        versions.mark_published(2)
        self.assertEqual([e.number for e in versions.entries if e.is_published], [2])

    def test_clear_published_counts(self) -> None:
        versions = ScreenVersions.from_map({"v1": {"isPublished": True}, "v2": {"isPublished": False}})
        self.assertEqual(versions.clear_published(), 1)
        self.assertFalse(versions.has_published())
        self.assertEqual(versions.clear_published(), 0)

    def test_add_rejects_duplicates(self) -> None:
        versions = ScreenVersions.from_map({"v1": {}})
        with self.assertRaises(ValueError):
            versions.add(1, {})
        with self.assertRaises(ValueError):
            versions.add(0, {})
        versions.put(1, {"replaced": True})
        self.assertEqual(versions.get(1).document, {"replaced": True})

    def test_published_flag_coercion(self) -> None:
        self.assertTrue(as_published_flag("TRUE"))
        self.assertFalse(as_published_flag(1))
        self.assertFalse(as_published_flag(None))


if __name__ == "__main__":
    unittest.main()
