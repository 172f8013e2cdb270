import json
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import bson
import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, OperationFailure

from conftest import SerializedDatabase, ticking_clock
from errors import StorageUnavailable
from product_store import (
    JsonFileProductStore,
    MemoryProductStore,
    MongoProductStore,
    max_product_id,
    resolve_identifier,
    run_with_retry,
)

PRODUCT = {
    "images": ["https://images.test/a.png"],
    "specs": [{"k": "color", "v": "red"}],
    "translations": {"en": "Red Widget"},
    "status": "published",
}


@pytest.fixture(params=["memory", "file", "mongo"])
def store(request, tmp_path, mongo_db):
    if request.param == "memory":
        return MemoryProductStore(clock=ticking_clock())
    if request.param == "file":
        return JsonFileProductStore(str(tmp_path / "products.json"), clock=ticking_clock())
    return MongoProductStore(SerializedDatabase(mongo_db), clock=ticking_clock())


class TestResolveIdentifier:
    def test_integer_text_tries_integer_then_text(self):
        assert resolve_identifier("12") == [{"id": 12}, {"id": "12"}]

    def test_plain_text_only_matches_text(self):
        assert resolve_identifier("static-3") == [{"id": "static-3"}]

    def test_object_id_text_tries_native_id_last(self):
        object_id = ObjectId()
        assert resolve_identifier(str(object_id)) == [
            {"id": str(object_id)},
            {"_id": object_id},
        ]

    def test_blank_resolves_to_nothing(self):
        assert resolve_identifier("  ") == []
        assert resolve_identifier(None) == []

    def test_short_hex_is_not_treated_as_object_id(self):
        assert resolve_identifier("abcdef") == [{"id": "abcdef"}]

    def test_integers_beyond_64_bits_only_match_text(self):
        assert resolve_identifier("99999999999999999999") == [
            {"id": "99999999999999999999"}
        ]
        assert resolve_identifier(str(2 ** 63 - 1)) == [
            {"id": 2 ** 63 - 1},
            {"id": str(2 ** 63 - 1)},
        ]

    def test_non_ascii_digits_are_not_integers(self):
        assert resolve_identifier("١٢") == [{"id": "١٢"}]


def test_max_product_id_ignores_non_numeric_ids():
    documents = [{"id": 3}, {"id": "9"}, {"id": "abc"}, {}, {"id": None}]
    assert max_product_id(documents) == 9
    assert max_product_id([{"id": "\u0667\u0667"}, {"id": "1" * 30}, {"id": 2}]) == 2
    assert max_product_id([]) == 0


class TestStoreContract:
    def test_empty_store_lists_nothing(self, store):
        assert store.list_products() == []

    def test_create_assigns_sequential_text_ids(self, store):
        first = store.create(PRODUCT)
        second = store.create(PRODUCT)

        assert first["id"] == "1"
        assert second["id"] == "2"
        assert first["createdAt"] == first["updatedAt"]
        assert "_id" not in first

    def test_create_ignores_client_supplied_identity(self, store):
        product = store.create(dict(PRODUCT, id=99, createdAt="1999-01-01T00:00:00Z"))

        assert product["id"] == "1"
        assert product["createdAt"] != "1999-01-01T00:00:00Z"

    def test_get_by_id_round_trips_created_product(self, store):
        created = store.create(PRODUCT)

        assert store.get_by_id(created["id"]) == created
        assert store.get_by_id(int(created["id"])) == created

    def test_get_unknown_id_is_not_found(self, store):
        store.create(PRODUCT)
        assert store.get_by_id("404") is None
        assert store.get_by_id("") is None

    def test_list_returns_all_products_with_text_ids(self, store):
        store.create(PRODUCT)
        store.create(PRODUCT)

        assert [product["id"] for product in store.list_products()] == ["1", "2"]

    def test_empty_patch_only_refreshes_updated_at(self, store):
        created = store.create(PRODUCT)
        updated = store.update(created["id"], {})

        assert updated["updatedAt"] > created["updatedAt"]
        assert {k: v for k, v in updated.items() if k != "updatedAt"} == {
            k: v for k, v in created.items() if k != "updatedAt"
        }

    def test_update_replaces_present_fields_only(self, store):
        created = store.create(PRODUCT)
        updated = store.update(
            created["id"],
            {"translations": {"de": "Rotes Widget"}, "id": 50, "createdAt": "x"},
        )

        assert updated["translations"] == {"de": "Rotes Widget"}
        assert updated["specs"] == PRODUCT["specs"]
        assert updated["images"] == PRODUCT["images"]
        assert updated["id"] == created["id"]
        assert updated["createdAt"] == created["createdAt"]
        assert store.get_by_id(created["id"]) == updated

    def test_update_unknown_id_is_not_found(self, store):
        assert store.update("12", {"specs": []}) is None

    def test_remove_then_get_is_not_found(self, store):
        created = store.create(PRODUCT)

        assert store.remove(created["id"]) is True
        assert store.get_by_id(created["id"]) is None
        assert store.remove(created["id"]) is False

    def test_ids_are_not_reused_after_removing_the_newest(self, store):
        store.create(PRODUCT)
        newest = store.create(PRODUCT)
        store.remove(newest["id"])

        assert store.create(PRODUCT)["id"] == "3"

    def test_returned_products_do_not_alias_stored_state(self, store):
        created = store.create(PRODUCT)
        created["specs"].append({"k": "size", "v": "L"})

        assert store.get_by_id(created["id"])["specs"] == [{"k": "color", "v": "red"}]
        assert PRODUCT["specs"] == [{"k": "color", "v": "red"}]


class TestLegacyRepresentations:
    def test_integer_id_wins_over_string_id(self):
        store = MemoryProductStore(
            [{"id": "7", "name": "string"}, {"id": 7, "name": "integer"}]
        )

        product = store.get_by_id("7")

        assert product["name"] == "integer"
        assert product["id"] == "7"

    def test_string_id_is_found(self):
        store = MemoryProductStore([{"id": "legacy-1", "name": "legacy"}])
        assert store.get_by_id("legacy-1")["name"] == "legacy"

    def test_next_id_counts_numeric_string_ids(self):
        store = MemoryProductStore([{"id": "41"}, {"id": "static-2"}])
        assert store.create(PRODUCT)["id"] == "42"

    def test_mongo_document_without_id_resolves_by_object_id(self, mongo_db):
        inserted = mongo_db.products.insert_one({"name": "native", "images": ["x"]})
        store = MongoProductStore(mongo_db, clock=ticking_clock())
        native_id = str(inserted.inserted_id)

        product = store.get_by_id(native_id)
        assert product["id"] == native_id
        assert product["name"] == "native"

        updated = store.update(native_id, {"name": "renamed"})
        assert updated["name"] == "renamed"
        assert store.remove(native_id) is True
        assert store.get_by_id(native_id) is None

    def test_mongo_mixed_id_types(self, mongo_db):
        mongo_db.products.insert_many(
            [{"id": "7", "name": "string"}, {"id": 7, "name": "integer"}, {"id": "41"}]
        )
        store = MongoProductStore(mongo_db, clock=ticking_clock())

        assert store.get_by_id("7")["name"] == "integer"
        assert store.create(PRODUCT)["id"] == "42"

    def test_mongo_lists_native_and_numeric_ids_as_text(self, mongo_db):
        inserted = mongo_db.products.insert_one({"name": "native"})
        mongo_db.products.insert_one({"id": 3, "name": "numeric"})
        store = MongoProductStore(mongo_db)

        ids = {product["id"] for product in store.list_products()}
        assert ids == {str(inserted.inserted_id), "3"}


class TestConcurrentCreates:
    def test_concurrent_creates_assign_unique_ids(self, store):
        with ThreadPoolExecutor(max_workers=8) as executor:
            products = list(executor.map(lambda _: store.create(PRODUCT), range(50)))

        ids = [product["id"] for product in products]
        assert len(set(ids)) == 50
        assert sorted(int(value) for value in ids) == list(range(1, 51))
        assert len(store.list_products()) == 50


class TestOversizedIntegerIds:
    def test_lookup_filters_stay_encodable(self):
        db = MagicMock()
        db.products.find_one.side_effect = lambda lookup: bson.encode(lookup) and None
        store = MongoProductStore(db)

        assert store.get_by_id("99999999999999999999") is None
        assert store.update("99999999999999999999", {"name": "x"}) is None
        assert store.remove("99999999999999999999") is False

    def test_oversized_id_is_not_found(self, store):
        store.create(PRODUCT)
        assert store.get_by_id("99999999999999999999") is None

    def test_oversized_text_id_is_still_found(self, mongo_db):
        mongo_db.products.insert_one({"id": "99999999999999999999", "name": "legacy"})
        store = MongoProductStore(mongo_db)

        assert store.get_by_id("99999999999999999999")["name"] == "legacy"
        assert store.create(PRODUCT)["id"] == "1"


class TestMongoFailures:
    def make_store(self, sleeps, attempts=3):
        db = MagicMock()
        store = MongoProductStore(
            db, retry_attempts=attempts, retry_delay=0.5, sleep=sleeps.append
        )
        return db, store

    def test_connection_failures_are_retried_with_linear_backoff(self):
        sleeps = []
        db, store = self.make_store(sleeps)
        db.products.find_one.side_effect = [
            AutoReconnect("down"),
            AutoReconnect("down"),
            {"_id": ObjectId(), "id": 5, "name": "found"},
        ]

        assert store.get_by_id("5")["name"] == "found"
        assert sleeps == [0.5, 1.0]

    def test_exhausted_retries_raise_storage_unavailable(self):
        sleeps = []
        db, store = self.make_store(sleeps)
        db.products.find.side_effect = AutoReconnect("down")

        with pytest.raises(StorageUnavailable):
            store.list_products()
        assert sleeps == [0.5, 1.0]
        assert db.products.find.call_count == 3

    def test_operation_errors_are_not_retried(self):
        sleeps = []
        db, store = self.make_store(sleeps)
        db.products.delete_one.side_effect = OperationFailure("not authorized")
        db.products.find_one.return_value = {"_id": ObjectId(), "id": 1}

        with pytest.raises(StorageUnavailable):
            store.remove("1")
        assert sleeps == []

    def test_run_with_retry_returns_first_success(self):
        assert run_with_retry(lambda: "ok", sleep=pytest.fail) == "ok"


def test_file_store_persists_between_instances(tmp_path):
    path = str(tmp_path / "data" / "products.json")
    JsonFileProductStore(path).create(PRODUCT)

    reopened = JsonFileProductStore(path)
    assert reopened.get_by_id("1")["specs"] == PRODUCT["specs"]
    with open(path, encoding="utf-8") as handle:
        assert json.load(handle)[0]["id"] == 1


def test_corrupt_product_file_is_storage_unavailable(tmp_path):
    path = tmp_path / "products.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StorageUnavailable):
        JsonFileProductStore(str(path)).list_products()


def test_non_object_product_entry_is_storage_unavailable(tmp_path):
    path = tmp_path / "products.json"
    path.write_text('[{"id": 1}, 1]', encoding="utf-8")

    with pytest.raises(StorageUnavailable):
        JsonFileProductStore(str(path)).get_by_id("1")
