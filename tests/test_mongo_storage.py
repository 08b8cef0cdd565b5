from __future__ import annotations

from bson import ObjectId
from pymongo.errors import AutoReconnect, DuplicateKeyError, NetworkTimeout

from grant_ingest.adapters.mongo_storage import MongoOpportunityStorage, MongoRunStore, convert_mongo_error
from grant_ingest.errors import DatabaseError, ErrorCategory


class DummyUpdateResult:
    def __init__(self, matched_count: int, upserted_id=None) -> None:
        self.matched_count = matched_count
        self.upserted_id = upserted_id


class DummyInsertResult:
    def __init__(self, inserted_id) -> None:
        self.inserted_id = inserted_id


def _matches(doc: dict, query: dict) -> bool:
    for key, expected in query.items():
        value = doc.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if value not in expected["$in"]:
                return False
        elif value != expected:
            return False
    return True


def _project(doc: dict, projection: "dict | None") -> dict:
    if not projection:
        return dict(doc)
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        result = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1):
            result["_id"] = doc["_id"]
        return result
    return {k: v for k, v in doc.items() if projection.get(k, 1)}


class FakeCollection:
    def __init__(self, name: str) -> None:
        self.name = name
        self.docs = []
        self.indexes = []
        self.error = None

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name", "index")

    def find(self, query, projection=None):
        self._check()
        return [_project(d, projection) for d in self.docs if _matches(d, query)]

    def find_one(self, query, projection=None):
        found = self.find(query, projection)
        return found[0] if found else None

    def insert_one(self, doc):
        self._check()
        doc = dict(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return DummyInsertResult(doc["_id"])

    def update_one(self, query, update, upsert=False):
        self._check()
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(update.get("$set", {}))
                return DummyUpdateResult(1)
        if not upsert:
            return DummyUpdateResult(0)
        doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
        doc.update(update.get("$set", {}))
        doc.update(update.get("$setOnInsert", {}))
        doc["_id"] = ObjectId()
        self.docs.append(doc)
        return DummyUpdateResult(0, doc["_id"])


class FakeDatabase:
    def __init__(self) -> None:
        self.collections = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection(name))


def new_row(opportunity_id: "str | None" = "X1", title: str = "Solar Grant 2024") -> dict:
    return {"source_id": "grants-gov", "opportunity_id": opportunity_id, "title": title, "maximum_award": 500000.0}


def test_insert_then_find_by_id_and_title() -> None:
    storage = MongoOpportunityStorage(FakeDatabase())
    inserted = storage.insert(new_row())
    assert inserted.ok

    [by_id] = storage.find_by_ids("grants-gov", ["X1", "X9"]).data
    assert by_id["id"] == inserted.data[0]["id"]
    assert by_id["title_key"] == "solar grant 2024"
    assert "created_at" in by_id

    assert len(storage.find_by_titles("grants-gov", ["  SOLAR grant 2024"]).data) == 1
    assert storage.find_by_titles("other-source", ["Solar Grant 2024"]).data == []


def test_insert_never_overwrites_a_stored_program() -> None:
    storage = MongoOpportunityStorage(FakeDatabase())
    first = storage.insert(new_row())
    reused = storage.insert(new_row(title="Rural Broadband Wiring Program"))

    assert reused.ok
    assert reused.data[0]["conflict"] is True
    assert reused.data[0]["id"] == first.data[0]["id"]
    assert "conflict" not in first.data[0]

    [doc] = storage.collection.docs
    assert doc["title"] == "Solar Grant 2024"
    assert doc["title_key"] == "solar grant 2024"
    assert doc["maximum_award"] == 500000.0


def test_rows_without_opportunity_id_are_plain_inserts() -> None:
    storage = MongoOpportunityStorage(FakeDatabase())
    storage.insert(new_row(opportunity_id=None))
    storage.insert(new_row(opportunity_id=None))
    assert len(storage.collection.docs) == 2


def test_update_sets_fields_and_title_key() -> None:
    storage = MongoOpportunityStorage(FakeDatabase())
    opportunity_id = storage.insert(new_row()).data[0]["id"]

    result = storage.update(opportunity_id, {"title": "Solar Grant 2025", "maximum_award": 750000.0})
    assert result.ok
    doc = storage.collection.docs[0]
    assert doc["maximum_award"] == 750000.0
    assert doc["title_key"] == "solar grant 2025"


def test_update_of_missing_document_is_an_error_result() -> None:
    storage = MongoOpportunityStorage(FakeDatabase())
    result = storage.update(str(ObjectId()), {"maximum_award": 1.0})
    assert not result.ok
    assert result.error.code == "NOT_FOUND"
    assert not result.error.retryable


def test_driver_errors_become_error_results() -> None:
    storage = MongoOpportunityStorage(FakeDatabase())
    storage.collection.error = AutoReconnect("connection pool reset")
    result = storage.find_by_ids("grants-gov", ["X1"])
    assert isinstance(result.error, DatabaseError)
    assert result.error.retryable


def test_driver_error_conversion() -> None:
    duplicate = convert_mongo_error(DuplicateKeyError("E11000 duplicate key error"))
    assert duplicate.code == "DUPLICATE_KEY"
    assert not duplicate.retryable
    assert convert_mongo_error(NetworkTimeout("socket timed out")).category == ErrorCategory.TIMEOUT


def test_indexes() -> None:
    storage = MongoOpportunityStorage(FakeDatabase())
    storage.ensure_indexes()
    keys, options = storage.collection.indexes[0]
    assert keys == [("source_id", 1), ("opportunity_id", 1)]
    assert options["unique"] is True


def test_run_store_checkpoints_and_stages() -> None:
    store = MongoRunStore(FakeDatabase())
    store.insert_run({"run_id": "run-1", "status": "processing"})
    store.save_checkpoint_data("run-1", {"last_stage": "data_extraction", "checkpoints": []})
    store.update_run("run-1", {"status": "completed"})

    assert store.load_checkpoint_data("run-1")["last_stage"] == "data_extraction"
    assert store.load_checkpoint_data("missing") is None
    assert store.get_run("run-1")["status"] == "completed"

    store.insert_stage({"run_id": "run-1", "stage_name": "storage", "stage_order": 5, "chunk_index": 0})
    store.insert_stage({"run_id": "run-1", "stage_name": "data_extraction", "stage_order": 1, "chunk_index": None})
    assert [s["stage_name"] for s in store.find_stages("run-1")] == ["data_extraction", "storage"]
    assert "_id" not in store.find_stages("run-1")[0]


def test_run_store_raises_classified_errors() -> None:
    store = MongoRunStore(FakeDatabase())
    store.runs.error = AutoReconnect("primary stepped down")
    try:
        store.load_checkpoint_data("run-1")
    except DatabaseError as e:
        assert e.retryable
    else:
        raise AssertionError("expected DatabaseError")
