from datetime import datetime, timezone

import pytest
from bson import ObjectId

from schemamongo.errors import DuplicateKeyError, InvalidQueryError, InvalidUpdateError
from schemamongo.store import Client, apply_update, match_query


@pytest.fixture
def coll(db):
    return db["items"]


class TestUpdateEngine:

    def test_push_each_position_sort_slice(self):
        doc = {"tags": ["a", "b"]}
        assert apply_update(doc, {"$push": {"tags": {"$each": ["c"], "$position": 1}}})["tags"] == ["a", "c", "b"]
        assert apply_update(doc, {"$push": {"tags": {"$each": ["c"], "$sort": -1}}})["tags"] == ["c", "b", "a"]
        assert apply_update(doc, {"$push": {"tags": {"$each": ["c"], "$slice": -2}}})["tags"] == ["b", "c"]
        assert apply_update(doc, {"$push": {"tags": {"$each": ["c"], "$position": -1}}})["tags"] == ["a", "c", "b"]

    def test_push_sort_by_field(self):
        doc = {"tags": [{"n": 2}, {"n": 1}]}
        out = apply_update(doc, {"$push": {"tags": {"$each": [{"n": 3}], "$sort": {"n": 1}}}})
        assert out["tags"] == [{"n": 1}, {"n": 2}, {"n": 3}]

    def test_pop(self):
        doc = {"scores": [1, 2, 3]}
        assert apply_update(doc, {"$pop": {"scores": 1}})["scores"] == [1, 2]
        assert apply_update(doc, {"$pop": {"scores": -1}})["scores"] == [2, 3]
        assert apply_update({"scores": []}, {"$pop": {"scores": 1}})["scores"] == []
        with pytest.raises(InvalidUpdateError):
            apply_update(doc, {"$pop": {"scores": 2}})

    def test_pull_with_condition(self):
        doc = {"scores": [1, 5, 9], "tags": [{"n": "a"}, {"n": "b"}]}
        assert apply_update(doc, {"$pull": {"scores": {"$gte": 5}}})["scores"] == [1]
        assert apply_update(doc, {"$pull": {"tags": {"n": "a"}}})["tags"] == [{"n": "b"}]

    def test_inc_through_array_index(self):
        doc = {"transactions": [{"amount": 1}, {"amount": 2}]}
        out = apply_update(doc, {"$inc": {"transactions.0.amount": 10}})
        assert out["transactions"] == [{"amount": 11}, {"amount": 2}]

    def test_set_on_insert_only_on_upsert(self):
        assert apply_update({}, {"$setOnInsert": {"a": 1}}) == {}
        assert apply_update({}, {"$setOnInsert": {"a": 1}}, is_upsert=True) == {"a": 1}

    def test_replacement_keeps_id(self):
        assert apply_update({"_id": 1, "a": 1}, {"b": 2}) == {"b": 2, "_id": 1}

    def test_rejected_updates(self):
        with pytest.raises(InvalidUpdateError):
            apply_update({}, {"$set": {"a": 1}, "b": 2})
        with pytest.raises(InvalidUpdateError):
            apply_update({}, {"$set": {"tags.$.name": "x"}})
        with pytest.raises(InvalidUpdateError):
            apply_update({}, {"$bit": {"a": {"and": 1}}})
        with pytest.raises(InvalidUpdateError):
            apply_update({"a": "x"}, {"$push": {"a": 1}})


class TestQueries:

    def test_array_contains(self):
        assert match_query({"tags": ["a", "b"]}, {"tags": "a"})
        assert not match_query({"tags": ["a", "b"]}, {"tags": "c"})

    def test_operators(self):
        doc = {"age": 30, "name": "John"}
        assert match_query(doc, {"age": {"$gt": 20, "$lt": 40}})
        assert match_query(doc, {"$or": [{"age": 1}, {"name": "John"}]})
        assert not match_query(doc, {"age": {"$in": [1, 2]}})
        assert match_query(doc, {"missing": {"$exists": False}})

    def test_array_operators(self):
        doc = {"tags": ["a", "b", "c"], "items": [{"n": 1, "kind": "x"}, {"n": 5, "kind": "y"}], "scores": [3, 8]}
        assert match_query(doc, {"tags": {"$all": ["a", "c"]}})
        assert not match_query(doc, {"tags": {"$all": ["a", "z"]}})
        assert match_query(doc, {"tags": {"$size": 3}})
        assert not match_query(doc, {"name": {"$size": 0}})
        assert match_query(doc, {"items": {"$elemMatch": {"n": {"$gt": 2}, "kind": "y"}}})
        assert not match_query(doc, {"items": {"$elemMatch": {"n": {"$gt": 2}, "kind": "x"}}})
        assert match_query(doc, {"scores": {"$elemMatch": {"$gte": 8}}})

    def test_regex(self):
        doc = {"name": "John Smith", "age": 3}
        assert match_query(doc, {"name": {"$regex": "^John"}})
        assert match_query(doc, {"name": {"$regex": {"pattern": "smith", "options": "i"}}})
        assert not match_query(doc, {"age": {"$regex": "3"}})
        with pytest.raises(InvalidQueryError):
            match_query(doc, {"name": {"$regex": 5}})

    def test_not_and_negations(self):
        doc = {"age": 30, "name": "John"}
        assert match_query(doc, {"$not": {"age": {"$lt": 18}}})
        assert not match_query(doc, {"$not": {"name": "John"}})
        assert match_query(doc, {"age": {"$ne": 31, "$nin": [1, 2], "$lte": 30}})
        assert match_query(doc, {"$and": [{"age": 30}, {"name": {"$eq": "John"}}]})

    def test_values_of_different_types_never_compare(self):
        assert not match_query({"age": "30"}, {"age": {"$gt": 20}})

    def test_invalid_queries(self):
        with pytest.raises(InvalidQueryError):
            match_query({}, {"a": {"$near": 1}})
        with pytest.raises(InvalidQueryError):
            match_query({}, {"$or": {"a": 1}})


class TestCollection:

    def test_insert_generates_object_id(self, coll):
        inserted_id = coll.insert_one({"a": 1}).inserted_id
        assert isinstance(inserted_id, ObjectId)
        assert coll.find_one(inserted_id)["a"] == 1

    def test_duplicate_id(self, coll):
        coll.insert_one({"_id": "x"})
        with pytest.raises(DuplicateKeyError):
            coll.insert_one({"_id": "x"})

    def test_dates_come_back_aware(self, coll):
        when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        coll.insert_one({"_id": "d", "when": when})
        assert coll.find_one("d")["when"] == when

    def test_upsert_seeds_from_filter(self, coll):
        result = coll.update_one({"name": "John", "age": {"$gt": 1}}, {"$set": {"city": "Paris"}}, upsert=True)
        assert result.upserted_id is not None
        doc = coll.find_one(result.upserted_id)
        assert doc["name"] == "John"
        assert doc["city"] == "Paris"
        assert "age" not in doc

    def test_update_many_and_delete(self, coll):
        for n in range(3):
            coll.insert_one({"n": n, "kind": "a"})
        assert coll.update_many({"kind": "a"}, {"$inc": {"n": 1}}).modified_count == 3
        assert [d["n"] for d in coll.find(sort=[("n", -1)], limit=2)] == [3, 2]
        assert coll.delete_one({"n": 1}).deleted_count == 1
        assert coll.count_documents({"kind": "a"}) == 2


def test_database_lists_collections(db):
    db["people"]
    db["tasks"]
    assert db.list_collection_names() == ["people", "tasks"]


def test_client_uses_data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("SCHEMAMONGO_DATA_DIR", str(tmp_path))
    client = Client()
    client["app"]["items"].insert_one({"a": 1})
    client.close()
    assert (tmp_path / "app.db").exists()
