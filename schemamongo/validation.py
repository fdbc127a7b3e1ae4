"""Validation and rewriting of writes against a collection schema.

Inserts are checked as whole documents. Updates are checked operator by
operator, and every problem found anywhere in one write is collected before
a single DocumentValidationError is raised, so a rejected write never
reaches storage.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from pydantic import ValidationError

from .errors import DocumentValidationError, Issue, issues_from_errors, join_path
from .hooks import WriteKind, WriteRequest
from .paths import array_element, resolve_path
from .schema import Schema, integer

logger = logging.getLogger(__name__)

ARRAY_OPERATORS = ("$push", "$addToSet")

# their results cannot be described by the schema, callers own correctness
UNVALIDATED_OPERATORS = frozenset([
    "$unset", "$inc", "$mul", "$rename", "$min", "$max", "$currentDate",
    "$", "$[]", "$pull", "$pullAll", "$bit",
])

PUSH_MODIFIERS = ("$each", "$position", "$slice", "$sort")
ADD_TO_SET_MODIFIERS = ("$each",)

_INTEGER = integer()


class Mode(str, Enum):
    STRICT = "strict"
    DEEP_PARTIAL = "deep_partial"
    UPSERT = "upsert"


def derive_mode(kind: WriteKind) -> Mode:
    """Which schema view applies to a write.

    insert -> strict whole-document check
    update -> deep-partial operands, leaf checks for dotted and array paths
    upsert -> deep-partial $set, partial $setOnInsert
    """
    if kind is WriteKind.INSERT:
        return Mode.STRICT
    if kind is WriteKind.UPSERT:
        return Mode.UPSERT
    return Mode.DEEP_PARTIAL


class SchemaViews(NamedTuple):
    strict: Schema
    partial: Schema
    deep_partial: Schema

    @classmethod
    def of(cls, schema: Schema) -> "SchemaViews":
        return cls(schema, schema.partial(), schema.deep_partial())


class IssueCollector:
    """Gathers the issues of one write and raises them together."""

    def __init__(self, collection: Optional[str] = None):
        self.collection = collection
        self.issues: List[Issue] = []

    def add(self, path: str, kind: str, message: str):
        self.issues.append(Issue(path, kind, message))

    def check(self, node: Schema, value, prefix: Sequence = ()) -> Tuple[bool, Any]:
        try:
            return True, node.parse(value)
        except ValidationError as exc:
            self.issues.extend(issues_from_errors(exc.errors(), prefix))
            return False, None

    def raise_if_any(self):
        if self.issues:
            logger.warning("Rejected write on '%s' with %d issue(s)", self.collection, len(self.issues))
            raise DocumentValidationError(self.collection, self.issues)


def _is_direction(value) -> bool:
    return not isinstance(value, bool) and value in (1, -1)

def _is_sort_spec(value) -> bool:
    if isinstance(value, dict):
        return bool(value) and all(isinstance(k, str) and _is_direction(v) for k, v in value.items())
    return _is_direction(value)

def _is_equality(condition) -> bool:
    if not isinstance(condition, dict):
        return True
    return not any(key.startswith("$") for key in condition) or list(condition) == ["$eq"]


class OperatorTranslator:
    """Validates and rewrites the arguments of one write.

    Each method returns the rewritten argument; problems are recorded on
    ``self.errors`` instead of raised so that a whole write is checked in
    one pass.
    """

    def __init__(self, views: SchemaViews, collection: Optional[str] = None):
        self.views = views
        self.errors = IssueCollector(collection)

    # ----- Whole documents -----
    def document(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Strict check; unknown top-level keys are dropped, ``_id`` is kept."""
        body = {k: v for k, v in document.items() if k != "_id"}
        ok, data = self.errors.check(self.views.strict, body)
        if not ok:
            return document
        if "_id" in document:
            data = {"_id": document["_id"], **data}
        return data

    # ----- Updates -----
    def update(self, modifier: Dict[str, Any]) -> Dict[str, Any]:
        for op, operand in list(modifier.items()):
            if op in UNVALIDATED_OPERATORS:
                logger.debug("Passing %s through without validation", op)
            elif not self._expect_fields(op, operand):
                continue
            elif op in ARRAY_OPERATORS:
                self._array_insert(op, operand)
            elif op == "$pop":
                self._pop(operand)
            else:
                modifier[op] = self._assign(op, operand, self.views.deep_partial)
        return modifier

    def upsert(self, filter, modifier: Dict[str, Any]) -> Dict[str, Any]:
        if "$set" in modifier and self._expect_fields("$set", modifier["$set"]):
            modifier["$set"] = self._assign("$set", modifier["$set"], self.views.deep_partial)
        if "$setOnInsert" in modifier and self._expect_fields("$setOnInsert", modifier["$setOnInsert"]):
            ok, data = self.errors.check(self.views.partial, modifier["$setOnInsert"])
            if ok:
                modifier["$setOnInsert"] = data
        self._require_on_insert(filter, modifier)
        return modifier

    def _expect_fields(self, op: str, operand) -> bool:
        if isinstance(operand, dict):
            return True
        self.errors.add(op, "invalid_type", f"{op} expects a document of fields")
        return False

    def _assign(self, op: str, fields: Dict[str, Any], view: Schema) -> Dict[str, Any]:
        out = {}
        for path, value in fields.items():
            node = resolve_path(view, path)
            if node is None:
                logger.debug("Dropping %s.%s: not a schema field", op, path)
                continue
            ok, data = self.errors.check(node, value, [path])
            if ok:
                out[path] = data
        return out

    def _array_target(self, op: str, path: str) -> Optional[Schema]:
        node = resolve_path(self.views.strict, path)
        if node is None:
            self.errors.add(path, "invalid_field", f"{path} is not a field of the schema")
            return None
        element = array_element(node)
        if element is None:
            self.errors.add(path, "invalid_array_field", f"{op} needs an array field, {path} is not one")
        return element

    def _array_insert(self, op: str, fields: Dict[str, Any]):
        for path, value in list(fields.items()):
            element = self._array_target(op, path)
            if element is None:
                continue
            if isinstance(value, dict) and "$each" in value:
                allowed = PUSH_MODIFIERS if op == "$push" else ADD_TO_SET_MODIFIERS
                fields[path] = self._each(path, element, value, allowed)
            else:
                ok, data = self.errors.check(element, value, [path])
                if ok:
                    fields[path] = data

    def _each(self, path: str, element: Schema, spec: Dict[str, Any], allowed) -> Dict[str, Any]:
        out = {}
        items = spec["$each"]
        if isinstance(items, list):
            checked = [self.errors.check(element, item, [path, "$each", i]) for i, item in enumerate(items)]
            out["$each"] = [data for _, data in checked]
        else:
            self.errors.add(join_path([path, "$each"]), "invalid_type", "$each expects an array")
        for key in ("$position", "$slice"):
            if key in spec and key in allowed:
                ok, data = self.errors.check(_INTEGER, spec[key], [path, key])
                if ok:
                    out[key] = data
        if "$sort" in spec and "$sort" in allowed:
            if _is_sort_spec(spec["$sort"]):
                out["$sort"] = spec["$sort"]
            else:
                self.errors.add(join_path([path, "$sort"]), "invalid_sort",
                                "$sort expects 1, -1 or a document of field directions")
        return out

    def _pop(self, fields: Dict[str, Any]):
        for path, direction in fields.items():
            if self._array_target("$pop", path) is None:
                continue
            if not _is_direction(direction):
                self.errors.add(path, "invalid_array_pop_operation", "$pop expects 1 or -1")

    def _require_on_insert(self, filter, modifier: Dict[str, Any]):
        supplied = set()
        for op in ("$set", "$setOnInsert"):
            if isinstance(modifier.get(op), dict):
                supplied.update(path.split(".")[0] for path in modifier[op])
        if isinstance(filter, dict):
            supplied.update(
                path.split(".")[0] for path, condition in filter.items()
                if not path.startswith("$") and _is_equality(condition)
            )
        for name in self.views.strict.required_fields():
            if name not in supplied:
                self.errors.add(name, "invalid_type", "Required")


def _run(schema: Schema, collection: Optional[str], step):
    translator = OperatorTranslator(SchemaViews.of(schema), collection)
    result = step(translator)
    translator.errors.raise_if_any()
    return result

def validate_insert(schema: Schema, document: Dict[str, Any], collection: Optional[str] = None) -> Dict[str, Any]:
    return _run(schema, collection, lambda t: t.document(document))

def validate_update(schema: Schema, modifier: Dict[str, Any], collection: Optional[str] = None) -> Dict[str, Any]:
    return _run(schema, collection, lambda t: t.update(modifier))

def validate_upsert(schema: Schema, filter, modifier: Dict[str, Any],
                    collection: Optional[str] = None) -> Dict[str, Any]:
    return _run(schema, collection, lambda t: t.upsert(filter, modifier))


def validate_write(views: SchemaViews, request: WriteRequest, collection: Optional[str] = None) -> WriteRequest:
    """Validate and rewrite ``request`` in place.

    Raises DocumentValidationError carrying every issue found.
    """
    translator = OperatorTranslator(views, collection)
    mode = derive_mode(request.kind)
    if mode is Mode.STRICT:
        request.document = translator.document(request.document)
    elif request.is_replacement:
        request.modifier = translator.document(request.modifier)
    elif mode is Mode.UPSERT:
        request.modifier = translator.upsert(request.filter, request.modifier)
    else:
        request.modifier = translator.update(request.modifier)
    translator.errors.raise_if_any()
    return request
