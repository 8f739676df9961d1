import os
import sys
import unittest
import uuid
from decimal import Decimal


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from valora.attribute_value import Text

from app.entity_service import MAX_PAGE_SIZE, EntityService, query_options
from app.schema_sync import sync_object_definition
from app.stores import MemoryEntityStore, UniqueViolation


SCHEMA = {
    "module": "Customer",
    "fields": {
        "Name": {"type": "text", "required": True, "maxLength": 10},
        "Code": {"type": "text", "pattern": "^[A-Z]{3}$"},
        "Amount": {"type": "number"},
        "Since": {"type": "date"},
        "Active": {"type": "boolean"},
        "Status": {"type": "select", "options": ["Open", "Closed"]},
    },
}


class TestEntityService(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryEntityStore()
        self.definition = sync_object_definition(self.store, "T1", "Customer", 1, SCHEMA)
        self.service = EntityService(self.store)

    def _create(self, **data) -> str:
        result = self.service.create_entity("T1", "Customer", data, actor_id="u1")
        self.assertTrue(result["ok"], result)
        return result["data"]["id"]

    def test_round_trip_keeps_types(self) -> None:
        entity_id = self._create(Name="7", Amount=12.5, Active=True, Since="2024-05-01", Unknown="x")
        item = self.service.get_entity("T1", "customer", entity_id)["data"]
        self.assertEqual(item["Id"], entity_id)
        self.assertEqual(item["TenantId"], "T1")
        self.assertEqual(item["CreatedBy"], "u1")
        self.assertEqual(item["Name"], "7")
        self.assertIsInstance(item["Name"], str)
        self.assertEqual(item["Amount"], 12.5)
        self.assertIs(item["Active"], True)
        self.assertEqual(item["Since"], "2024-05-01T00:00:00Z")
        self.assertNotIn("Unknown", item)
        self.assertTrue(item["CreatedAt"].endswith("Z"))

    def test_validation_failures(self) -> None:
        cases = [
            ({"Amount": 1}, "Name"),
            ({"Name": "Ada", "Amount": "lots"}, "Amount"),
            ({"Name": "x" * 11}, "Name"),
            ({"Name": "Ada", "Code": "abc"}, "Code"),
            ({"Name": "Ada", "Status": "Pending"}, "Status"),
            ({"Name": "Ada", "Since": "yesterday"}, "Since"),
        ]
        for payload, field in cases:
            result = self.service.create_entity("T1", "Customer", payload)
            self.assertFalse(result["ok"], payload)
            self.assertEqual(result["errors"][0]["code"], "Validation")
            self.assertEqual(result["errors"][0]["field"], field)
        self.assertEqual(self.service.create_entity("T1", "Customer", [1])["errors"][0]["code"], "Validation")

    def test_missing_definition_is_config_error(self) -> None:
        result = self.service.create_entity("T1", "Vendor", {"Name": "x"})
        self.assertEqual(result["errors"][0]["code"], "Config")
        self.assertEqual(
            result["errors"][0]["message"],
            "Object definition not synced. Please publish the schema first.",
        )
        self.assertEqual(self.service.create_entity("T2", "Customer", {"Name": "x"})["errors"][0]["code"], "Config")

    def test_update_upserts_in_place(self) -> None:
        entity_id = self._create(Name="Ada")
        other = str(uuid.uuid4())
        result = self.service.update_entity(
            "T1", "Customer", entity_id, {"Id": other, "TenantId": "T9", "Name": "Grace", "Amount": "3"}, actor_id="u2"
        )
        self.assertTrue(result["ok"], result)
        item = self.service.get_entity("T1", "Customer", entity_id)["data"]
        self.assertEqual(item["Id"], entity_id)
        self.assertEqual(item["TenantId"], "T1")
        self.assertEqual(item["Name"], "Grace")
        self.assertEqual(item["Amount"], 3)
        self.assertEqual(item["UpdatedBy"], "u2")
        self.assertEqual(len(self.store.list_attributes([entity_id])[entity_id]), 2)

    def test_bad_and_missing_ids(self) -> None:
        for call in (
            lambda: self.service.get_entity("T1", "Customer", "nope"),
            lambda: self.service.update_entity("T1", "Customer", "nope", {}),
            lambda: self.service.delete_entity("T1", "Customer", "nope"),
        ):
            result = call()
            self.assertEqual(result["errors"][0]["code"], "Validation")
            self.assertEqual(result["errors"][0]["message"], "Invalid ID format")
        missing = str(uuid.uuid4())
        self.assertEqual(self.service.get_entity("T1", "Customer", missing)["errors"][0]["message"], "Entity not found")
        self.assertEqual(self.service.update_entity("T1", "Customer", missing, {})["errors"][0]["code"], "NotFound")
        self.assertEqual(self.service.delete_entity("T1", "Customer", missing)["errors"][0]["code"], "NotFound")

    def test_delete_cascades_attributes(self) -> None:
        entity_id = self._create(Name="Ada", Amount=1)
        self.assertTrue(self.service.delete_entity("T1", "Customer", entity_id)["ok"])
        self.assertEqual(self.store.list_attributes([entity_id]), {entity_id: []})
        self.assertEqual(self.service.get_entity("T1", "Customer", entity_id)["errors"][0]["code"], "NotFound")

    def test_unique_record_field_pair(self) -> None:
        entity_id = self._create(Name="Ada")
        name_field = next(f for f in self.store.list_fields(self.definition["id"]) if f["field_name"] == "Name")
        with self.assertRaises(UniqueViolation):
            self.store.insert_attribute(entity_id, name_field["id"], Text("dup"))

    def test_definition_delete_cascades(self) -> None:
        entity_id = self._create(Name="Ada")
        self.assertTrue(self.store.delete_definition(self.definition["id"]))
        self.assertIsNone(self.store.get_record("T1", entity_id))
        self.assertEqual(self.store.list_fields(self.definition["id"]), [])
        self.assertEqual(self.store.list_attributes([entity_id]), {entity_id: []})

    def test_list_filters_and_sorting(self) -> None:
        ada = self._create(Name="Ada", Amount=5, Active=True)
        self._create(Name="adam", Amount=7, Active=False)
        self._create(Name="Grace", Amount=5)

        def names(**kwargs) -> list:
            result = self.service.list_entities("T1", "Customer", **kwargs)
            self.assertTrue(result["ok"], result)
            return [item.get("Name") for item in result["data"]["items"]]

        self.assertEqual(names(), ["Grace", "adam", "Ada"])
        self.assertEqual(names(filters={"name": "AD"}, sort_by="Name", sort_desc=False), ["Ada", "adam"])
        self.assertEqual(names(filters={"Name": "*ac?"}), ["Grace"])
        self.assertEqual(names(filters={"Amount": 5}, sort_by="createdat", sort_desc=False), ["Ada", "Grace"])
        self.assertEqual(names(filters={"Active": False}), ["adam"])
        self.assertEqual(names(filters={"Id": ada}), ["Ada"])
        self.assertEqual(names(filters={"Nope": "x"}, sort_by="Amount", sort_desc=True), ["adam", "Grace", "Ada"])

        bad_sort = self.service.list_entities("T1", "Customer", sort_by="Nope")
        self.assertEqual(bad_sort["errors"][0]["code"], "Validation")
        bad_filter = self.service.list_entities("T1", "Customer", filters={"Amount": "many"})
        self.assertEqual(bad_filter["errors"][0]["code"], "Validation")

    def test_paging(self) -> None:
        for i in range(3):
            self._create(Name=f"N{i}")
        page = self.service.list_entities("T1", "Customer", page=2, page_size=2)["data"]
        self.assertEqual((page["page"], page["pageSize"], page["totalCount"]), (2, 2, 3))
        self.assertEqual(len(page["items"]), 1)
        clamped = self.service.list_entities("T1", "Customer", page=0, page_size=0)["data"]
        self.assertEqual((clamped["page"], clamped["pageSize"]), (1, 20))
        capped = self.service.list_entities("T1", "Customer", page_size=10000)["data"]
        self.assertEqual(capped["pageSize"], MAX_PAGE_SIZE)
        self.assertEqual(self.service.list_entities("T1", "Customer", page="x")["errors"][0]["code"], "Validation")

    def test_query_options(self) -> None:
        body = {"module": "Customer", "options": {"page": 2, "pageSize": 5, "filters": {"Name": "A"}, "sortBy": "Name"}}
        self.assertEqual(
            query_options(body),
            {"page": 2, "page_size": 5, "filters": {"Name": "A"}, "sort_by": "Name", "sort_desc": None},
        )
        self.assertEqual(query_options({})["page"], None)

    def test_number_filter_matches_decimal(self) -> None:
        self._create(Name="Ada", Amount="2.50")
        self.assertEqual(
            [i["Amount"] for i in self.service.list_entities("T1", "Customer", filters={"Amount": Decimal("2.5")})["data"]["items"]],
            [2.5],
        )


if __name__ == "__main__":
    unittest.main()
