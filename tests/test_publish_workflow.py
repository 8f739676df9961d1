import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from publish_workflow import DraftPublishWorkflow, can_publish, is_allowed_transition
from schema_resolver import SchemaResolver
from template_store import MemoryTemplateStore, TemplateDocuments


def _schema(**extra) -> dict:
    return {"module": "Invoice", "fields": {"Name": {"type": "text"}}, **extra}


class _Harness:
    def __init__(self) -> None:
        self.store = MemoryTemplateStore()
        self.documents = TemplateDocuments(self.store)
        self.synced: list[dict] = []
        self.workflow = DraftPublishWorkflow(self.documents, on_published=lambda **kw: self.synced.append(kw))
        self.resolver = SchemaResolver(self.documents)


class TestTransitions(unittest.TestCase):
    def test_roles(self) -> None:
        self.assertTrue(can_publish("PlatformAdmin"))
        self.assertTrue(can_publish("tenantadmin"))
        self.assertFalse(can_publish("TenantUser"))
        self.assertFalse(can_publish(None))

    def test_environment_order(self) -> None:
        self.assertTrue(is_allowed_transition("dev", "test"))
        self.assertTrue(is_allowed_transition("DEV", "preview"))
        self.assertTrue(is_allowed_transition("preview", "prod"))
        self.assertFalse(is_allowed_transition("test", "prod"))
        self.assertFalse(is_allowed_transition("test", "dev"))
        self.assertFalse(is_allowed_transition("dev", "dev"))
        self.assertFalse(is_allowed_transition("dev", "staging"))


class TestSaveDraft(unittest.TestCase):
    def test_versions_are_monotonic_per_object(self) -> None:
        h = _Harness()
        assigned = []
        for i in range(5):
            assigned.append(h.workflow.save_draft("T1", "dev", "Invoice", _schema(n=i))["data"]["version"])
            h.workflow.save_draft("T1", "dev", f"Other{i}", _schema())
        self.assertEqual(assigned, [1, 2, 3, 4, 5])
        latest = h.resolver.get_latest("T1", "dev", "Invoice")
        self.assertEqual(latest["data"]["version"], 5)
        self.assertFalse(latest["data"]["isPublished"])

    def test_reuses_stored_key_case(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "DEV", "Invoice", _schema())
        h.workflow.save_draft("T1", "dev", "INVOICE", _schema())
        document = h.store.get("T1")["document"]
        self.assertEqual(list(document["environments"].keys()), ["DEV"])
        self.assertEqual(list(document["environments"]["DEV"]["screens"].keys()), ["Invoice"])
        self.assertEqual(sorted(document["environments"]["DEV"]["screens"]["Invoice"].keys()), ["v1", "v2"])

    def test_body_must_be_object(self) -> None:
        h = _Harness()
        self.assertEqual(h.workflow.save_draft("T1", "dev", "Invoice", [1])["errors"][0]["code"], "Validation")
        self.assertIsNone(h.store.get("T1"))

    def test_non_finite_numbers_are_rejected(self) -> None:
        h = _Harness()
        for bad in (float("nan"), float("inf"), [1, float("-inf")]):
            result = h.workflow.save_draft("T1", "dev", "Invoice", _schema(rate=bad))
            self.assertEqual(result["errors"][0]["code"], "Validation")
        self.assertIsNone(h.store.get("T1"))

    def test_declared_published_flag_kept_alone(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "dev", "Invoice", _schema(isPublished=True))
        h.workflow.save_draft("T1", "dev", "Invoice", _schema(isPublished="true"))
        published = [v for v in h.resolver.list_versions("T1", "dev", "Invoice") if v["isPublished"]]
        self.assertEqual(published, [{"version": 2, "isPublished": True}])


class TestPublish(unittest.TestCase):
    def test_end_to_end_dev_to_test(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "dev", "Invoice", _schema(title="first"))
        h.workflow.save_draft("T1", "dev", "Invoice", _schema(title="second"))
        result = h.workflow.publish("T1", "Invoice", "dev", "test", "TenantAdmin", actor_id="u1")
        self.assertTrue(result["ok"], result)
        self.assertEqual(result["data"], {"status": "ok", "version": 2})

        published = h.resolver.get_published("T1", "test", "Invoice")
        self.assertEqual(published["data"]["version"], 2)
        self.assertTrue(published["data"]["isPublished"])
        self.assertEqual(published["data"]["title"], "second")

        latest_dev = h.resolver.get_latest("T1", "dev", "Invoice")
        self.assertEqual(latest_dev["data"]["version"], 2)
        self.assertFalse(latest_dev["data"]["isPublished"])

        self.assertEqual(len(h.synced), 1)
        self.assertEqual(h.synced[0]["object_code"], "Invoice")
        self.assertEqual(h.synced[0]["version"], 2)
        self.assertEqual(h.synced[0]["actor_id"], "u1")

    def test_at_most_one_published(self) -> None:
        h = _Harness()
        for _ in range(3):
            h.workflow.save_draft("T1", "dev", "Invoice", _schema())
        h.workflow.publish("T1", "Invoice", "dev", "test", "PlatformAdmin", version=1)
        h.workflow.publish("T1", "Invoice", "dev", "test", "PlatformAdmin", version=3)
        h.workflow.publish("T1", "Invoice", "dev", "test", "PlatformAdmin", version=2)
        flags = h.resolver.list_versions("T1", "test", "Invoice")
        self.assertEqual([v["version"] for v in flags if v["isPublished"]], [2])
        self.assertEqual(h.resolver.get_published("T1", "test", "Invoice")["data"]["version"], 2)

    def test_forbidden_role(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "dev", "Invoice", _schema())
        result = h.workflow.publish("T1", "Invoice", "dev", "test", "TenantUser")
        self.assertEqual(result["errors"][0]["code"], "Forbidden")
        self.assertEqual(h.synced, [])

    def test_invalid_transition(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "dev", "Invoice", _schema())
        result = h.workflow.publish("T1", "Invoice", "dev", "prod", "TenantAdmin")
        self.assertEqual(result["errors"][0]["code"], "Validation")
        self.assertEqual(result["errors"][0]["message"], "publish.invalidEnvironmentTransition")

    def test_missing_paths(self) -> None:
        h = _Harness()
        self.assertEqual(
            h.workflow.publish("T1", "Invoice", "dev", "test", "TenantAdmin")["errors"][0]["message"],
            "publish.tenantTemplateNotFound",
        )
        h.workflow.save_draft("T1", "dev", "Invoice", _schema())
        self.assertEqual(
            h.workflow.publish("T1", "Missing", "dev", "test", "TenantAdmin")["errors"][0]["message"],
            "publish.screenNotFoundInSourceEnvironment",
        )
        self.assertEqual(
            h.workflow.publish("T1", "Invoice", "test", "preview", "TenantAdmin")["errors"][0]["message"],
            "publish.sourceEnvironmentNotFound",
        )
        self.assertEqual(
            h.workflow.publish("T1", "Invoice", "dev", "test", "TenantAdmin", version=9)["errors"][0]["message"],
            "publish.noValidVersionForScreen",
        )
        self.assertEqual(
            h.workflow.publish("", "Invoice", "dev", "test", "TenantAdmin")["errors"][0]["message"],
            "publish.tenantIdRequired",
        )

    def test_screen_without_fields(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "dev", "Invoice", {"module": "Invoice", "fields": {}})
        result = h.workflow.publish("T1", "Invoice", "dev", "test", "TenantAdmin")
        self.assertEqual(result["errors"][0]["message"], "publish.screenHasNoFields")


class TestUnpublishDelete(unittest.TestCase):
    def test_unpublish_clears_flags(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "dev", "Invoice", _schema())
        h.workflow.publish("T1", "Invoice", "dev", "test", "TenantAdmin")
        result = h.workflow.unpublish("T1", "test", "invoice")
        self.assertEqual(result["data"], {"status": "ok", "cleared": 1})
        self.assertEqual(h.workflow.unpublish("T1", "test", "invoice")["data"]["cleared"], 0)
        self.assertFalse(h.resolver.get_published("T1", "test", "Invoice")["ok"])

    def test_unpublish_blocked_in_prod(self) -> None:
        h = _Harness()
        h.store.insert("T1", {"environments": {"prod": {"screens": {"Invoice": {"v1": {"isPublished": True}}}}}})
        before = h.store.get("T1")
        result = h.workflow.unpublish("T1", "PROD", "Invoice")
        self.assertEqual(result["errors"][0]["code"], "Blocked")
        self.assertEqual(h.store.get("T1"), before)

    def test_unpublish_missing_screen(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "dev", "Invoice", _schema())
        self.assertEqual(h.workflow.unpublish("T1", "dev", "Nope")["errors"][0]["code"], "NotFound")

    def test_delete_twice(self) -> None:
        h = _Harness()
        h.workflow.save_draft("T1", "dev", "Invoice", _schema())
        first = h.workflow.delete("T1", "dev", "INVOICE")
        second = h.workflow.delete("T1", "dev", "INVOICE")
        self.assertTrue(first["ok"])
        self.assertTrue(first["data"]["deleted"])
        self.assertTrue(second["ok"])
        self.assertFalse(second["data"]["deleted"])
        self.assertEqual(h.resolver.list_object_codes("T1", "dev"), [])
        self.assertTrue(h.workflow.delete("T9", "dev", "Invoice")["ok"])


if __name__ == "__main__":
    unittest.main()
