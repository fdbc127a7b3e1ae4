"""Tests for the operator translator, without storage."""
import pytest

from schemamongo.errors import DocumentValidationError
from schemamongo.hooks import WriteKind, WriteRequest
from schemamongo.schema import array, document, number, string
from schemamongo.validation import (
    Mode,
    SchemaViews,
    derive_mode,
    validate_insert,
    validate_update,
    validate_upsert,
    validate_write,
)


@pytest.fixture
def views():
    return SchemaViews.of(document({
        "name": string(),
        "count": number(),
        "profile": document({
            "age": number(gt=0),
            "address": document({"city": string()}).optional(),
        }).optional(),
        "tags": array(document({"name": string()})).optional(),
        "scores": array(number()).optional(),
    }))


def update(views, modifier, kind=WriteKind.UPDATE, filter=None):
    request = WriteRequest(kind, filter=filter or {}, modifier=modifier)
    return validate_write(views, request, "test").modifier


def issues_of(views, modifier, kind=WriteKind.UPDATE, filter=None):
    with pytest.raises(DocumentValidationError) as exc_info:
        update(views, modifier, kind, filter)
    return [(i.path, i.kind) for i in exc_info.value.issues]


def test_derive_mode():
    assert derive_mode(WriteKind.INSERT) is Mode.STRICT
    assert derive_mode(WriteKind.UPDATE) is Mode.DEEP_PARTIAL
    assert derive_mode(WriteKind.UPSERT) is Mode.UPSERT


class TestInsert:

    def test_strips_unknown_fields_and_keeps_id(self, views):
        request = WriteRequest(WriteKind.INSERT, document={"_id": "a", "name": "x", "count": 1, "miaw": 2})
        assert validate_write(views, request).document == {"_id": "a", "name": "x", "count": 1}

    def test_missing_required(self, views):
        request = WriteRequest(WriteKind.INSERT, document={"name": "x"})
        with pytest.raises(DocumentValidationError) as exc_info:
            validate_write(views, request, "test")
        assert exc_info.value.issues[0].path == "count"
        assert "Collection schema validation error" in str(exc_info.value)


class TestSet:

    def test_partial_update(self, views):
        assert update(views, {"$set": {"count": 3}}) == {"$set": {"count": 3}}

    def test_unknown_paths_are_dropped(self, views):
        modifier = update(views, {"$set": {"profile.address.city": "Paris", "profile.miaw": 1, "miaw": 2}})
        assert modifier == {"$set": {"profile.address.city": "Paris"}}

    def test_nested_document_strips_unknown_keys(self, views):
        modifier = update(views, {"$set": {"profile": {"age": 3, "miaw": 1}}})
        assert modifier == {"$set": {"profile": {"age": 3}}}

    def test_issues_are_reported_in_order(self, views):
        assert issues_of(views, {"$set": {"profile.address.city": 123, "profile.age": -21}}) == [
            ("profile.address.city", "invalid_type"),
            ("profile.age", "too_small"),
        ]

    def test_operand_must_be_a_document(self, views):
        assert issues_of(views, {"$set": "x"}) == [("$set", "invalid_type")]

    def test_issues_collected_across_operators(self, views):
        assert issues_of(views, {"$set": {"count": "x"}, "$push": {"name": "y"}}) == [
            ("count", "invalid_type"),
            ("name", "invalid_array_field"),
        ]

    def test_unvalidated_operators_pass_through(self, views):
        modifier = {"$inc": {"count": "x"}, "$unset": {"miaw": 1}}
        assert update(views, dict(modifier)) == modifier


class TestArrays:

    def test_push_element_is_checked_and_stripped(self, views):
        modifier = update(views, {"$push": {"tags": {"name": "a", "miaw": 1}}})
        assert modifier == {"$push": {"tags": {"name": "a"}}}

    def test_push_element_issues(self, views):
        assert issues_of(views, {"$push": {"tags": 1}}) == [("tags", "invalid_type")]
        assert issues_of(views, {"$push": {"tags": {"miaw": "miaw"}}}) == [("tags.name", "invalid_type")]

    def test_push_targets(self, views):
        assert issues_of(views, {"$push": {"name": "x"}}) == [("name", "invalid_array_field")]
        assert issues_of(views, {"$push": {"miaw.tags": "x"}}) == [("miaw.tags", "invalid_field")]

    def test_each_with_modifiers(self, views):
        modifier = update(views, {"$push": {"scores": {"$each": [1, 2], "$sort": -1, "$slice": 3, "$position": 0}}})
        assert modifier == {"$push": {"scores": {"$each": [1, 2], "$position": 0, "$slice": 3, "$sort": -1}}}

    def test_each_item_issues(self, views):
        assert issues_of(views, {"$push": {"scores": {"$each": [1, "x"]}}}) == [("scores.$each.1", "invalid_type")]

    def test_each_modifier_issues(self, views):
        assert issues_of(views, {"$push": {"scores": {"$each": [1], "$slice": "x", "$sort": 2}}}) == [
            ("scores.$slice", "invalid_type"),
            ("scores.$sort", "invalid_sort"),
        ]

    def test_add_to_set_ignores_push_modifiers(self, views):
        modifier = update(views, {"$addToSet": {"scores": {"$each": [1], "$slice": 2}}})
        assert modifier == {"$addToSet": {"scores": {"$each": [1]}}}

    def test_pop(self, views):
        assert update(views, {"$pop": {"scores": -1}}) == {"$pop": {"scores": -1}}
        assert issues_of(views, {"$pop": {"scores": 2}}) == [("scores", "invalid_array_pop_operation")]
        assert issues_of(views, {"$pop": {"miaw.tags": 1}}) == [("miaw.tags", "invalid_field")]
        assert issues_of(views, {"$pop": {"name": 1}}) == [("name", "invalid_array_field")]


class TestUpsert:

    def test_required_fields_from_set_set_on_insert_and_filter(self, views):
        modifier = update(views, {"$set": {"name": "x"}, "$setOnInsert": {"miaw": 1}},
                          WriteKind.UPSERT, filter={"count": 2})
        assert modifier == {"$set": {"name": "x"}, "$setOnInsert": {}}

    def test_missing_required_fields(self, views):
        assert issues_of(views, {"$setOnInsert": {"name": "x"}}, WriteKind.UPSERT,
                         filter={"count": {"$gt": 2}}) == [("count", "invalid_type")]

    def test_set_on_insert_is_checked(self, views):
        assert issues_of(views, {"$setOnInsert": {"name": "x", "count": "y"}}, WriteKind.UPSERT) == [
            ("count", "invalid_type"),
        ]


class TestEntryPoints:

    @pytest.fixture
    def schema(self):
        return document({"name": string(), "tags": array(string()).optional()})

    def test_validate_insert(self, schema):
        assert validate_insert(schema, {"name": "x", "miaw": 1}) == {"name": "x"}

    def test_validate_update(self, schema):
        assert validate_update(schema, {"$push": {"tags": "a"}}) == {"$push": {"tags": "a"}}
        with pytest.raises(DocumentValidationError) as exc_info:
            validate_update(schema, {"$push": {"tags": 1}}, "things")
        assert exc_info.value.collection == "things"

    def test_validate_upsert(self, schema):
        assert validate_upsert(schema, {"name": "x"}, {"$setOnInsert": {"tags": []}}) == {"$setOnInsert": {"tags": []}}
