"""Document schemas.

A schema is an immutable tree of ``Schema`` nodes. Every node carries an
explicit ``kind`` discriminant and only the payload that kind needs:

    document  -> entries (ordered field name / node pairs)
    array     -> element
    optional, nullable, default -> inner (and value for default)
    union     -> options
    literal   -> value
    string, number, integer, boolean, date -> constraints

Validation is delegated to pydantic: each node is compiled once into a
``TypeAdapter`` and the validated result is converted back into plain
Python values (dicts, lists, scalars).
"""
import dataclasses
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, NamedTuple, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    Strict,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    WrapValidator,
    create_model,
)
from pydantic_core import PydanticCustomError

from .errors import Issue, issues_from_errors


class Kind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DATE = "date"
    LITERAL = "literal"
    DOCUMENT = "document"
    ARRAY = "array"
    OPTIONAL = "optional"
    NULLABLE = "nullable"
    DEFAULT = "default"
    UNION = "union"


WRAPPER_KINDS = (Kind.OPTIONAL, Kind.NULLABLE, Kind.DEFAULT)


class ParseResult(NamedTuple):
    success: bool
    data: Any
    issues: List[Issue]


class _Absent:
    """Default of optional document fields; never reaches parsed output."""

    def __repr__(self):
        return "<absent>"

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

_ABSENT = _Absent()


class _DocumentModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


@dataclass(frozen=True)
class Schema:
    kind: Kind
    entries: Tuple[Tuple[str, "Schema"], ...] = ()
    element: Optional["Schema"] = None
    inner: Optional["Schema"] = None
    options: Tuple["Schema", ...] = ()
    value: Any = None
    constraints: Tuple[Tuple[str, Any], ...] = ()
    _adapter: Any = dataclasses.field(default=None, init=False, repr=False, compare=False)

    # ----- Fluent wrappers -----
    def optional(self) -> "Schema":
        return optional(self)

    def nullable(self) -> "Schema":
        return nullable(self)

    def default(self, value) -> "Schema":
        return Schema(Kind.DEFAULT, inner=self, value=value)

    def array(self) -> "Schema":
        return array(self)

    # ----- Document helpers -----
    @property
    def shape(self) -> Dict[str, "Schema"]:
        self._expect_document("shape")
        return dict(self.entries)

    def field(self, name: str) -> Optional["Schema"]:
        self._expect_document("field")
        for key, node in self.entries:
            if key == name:
                return node
        return None

    def required_fields(self) -> List[str]:
        """Names of fields that must be present for a strict parse to succeed."""
        self._expect_document("required_fields")
        return [key for key, node in self.entries if node.kind not in (Kind.OPTIONAL, Kind.DEFAULT)]

    def extend(self, fields: Dict[str, "Schema"]) -> "Schema":
        merged = self.shape
        merged.update(fields)
        return document(merged)

    def partial(self) -> "Schema":
        """Every top-level field becomes optional."""
        self._expect_document("partial")
        return document({key: _make_optional(node) for key, node in self.entries})

    def deep_partial(self) -> "Schema":
        """Every field at every depth becomes optional."""
        self._expect_document("deep_partial")
        return _deep_partial(self)

    # ----- Validation -----
    def parse(self, value):
        """Validate ``value`` and return its rewritten form.

        Raises pydantic.ValidationError when the value does not match.
        """
        adapter = self._type_adapter()
        return _plain(adapter.validate_python(value))

    def safe_parse(self, value) -> ParseResult:
        try:
            return ParseResult(True, self.parse(value), [])
        except ValidationError as exc:
            return ParseResult(False, None, issues_from_errors(exc.errors()))

    def _type_adapter(self) -> TypeAdapter:
        if self._adapter is None:
            object.__setattr__(self, "_adapter", TypeAdapter(_annotation(self)))
        return self._adapter

    def _expect_document(self, what: str):
        if self.kind is not Kind.DOCUMENT:
            raise TypeError(f"{what} is only available on document schemas, not {self.kind.value}")


# =========================
# Constructors
# =========================
def _constraints(**kwargs) -> Tuple[Tuple[str, Any], ...]:
    return tuple((k, v) for k, v in kwargs.items() if v is not None)

def string(min_length: Optional[int] = None, max_length: Optional[int] = None,
           length: Optional[int] = None, pattern: Optional[str] = None) -> Schema:
    if length is not None:
        min_length = max_length = length
    return Schema(Kind.STRING, constraints=_constraints(min_length=min_length, max_length=max_length, pattern=pattern))

def number(gt=None, ge=None, lt=None, le=None) -> Schema:
    return Schema(Kind.NUMBER, constraints=_constraints(gt=gt, ge=ge, lt=lt, le=le))

def integer(gt=None, ge=None, lt=None, le=None) -> Schema:
    return Schema(Kind.INTEGER, constraints=_constraints(gt=gt, ge=ge, lt=lt, le=le))

def boolean() -> Schema:
    return Schema(Kind.BOOLEAN)

def date() -> Schema:
    return Schema(Kind.DATE)

def literal(*values) -> Schema:
    if not values:
        raise TypeError("literal() needs at least one value")
    return Schema(Kind.LITERAL, value=values)

def document(fields: Dict[str, Schema]) -> Schema:
    for key, node in fields.items():
        if not isinstance(node, Schema):
            raise TypeError(f"Field '{key}' must be a Schema, got {type(node).__name__}")
    return Schema(Kind.DOCUMENT, entries=tuple(fields.items()))

def array(element: Schema) -> Schema:
    return Schema(Kind.ARRAY, element=element)

def optional(node: Schema) -> Schema:
    return Schema(Kind.OPTIONAL, inner=node)

def nullable(node: Schema) -> Schema:
    return Schema(Kind.NULLABLE, inner=node)

def union(*options: Schema) -> Schema:
    if not options:
        raise TypeError("union() needs at least one option")
    return Schema(Kind.UNION, options=options)


# =========================
# Derived views
# =========================
def _make_optional(node: Schema) -> Schema:
    return node if node.kind is Kind.OPTIONAL else optional(node)

def _deep_partial(node: Schema) -> Schema:
    if node.kind is Kind.DOCUMENT:
        return document({key: _make_optional(_deep_partial(child)) for key, child in node.entries})
    if node.kind is Kind.ARRAY:
        return array(_deep_partial(node.element))
    if node.kind in WRAPPER_KINDS:
        return dataclasses.replace(node, inner=_deep_partial(node.inner))
    return node


# =========================
# Compilation to pydantic
# =========================
def _keep_int(value, handler):
    result = handler(value)
    # numbers accept ints without turning them into floats
    return value if isinstance(value, int) else result

def _single_union_issue(value, handler):
    # one issue at the union itself instead of one per option
    try:
        return handler(value)
    except ValidationError:
        raise PydanticCustomError("invalid_union", "Input matches none of the union options") from None

def _annotation(node: Schema):
    kind = node.kind
    params = dict(node.constraints)
    if kind is Kind.STRING:
        return Annotated[StrictStr, Field(**params)] if params else StrictStr
    if kind is Kind.NUMBER:
        return Annotated[StrictFloat, Field(**params), WrapValidator(_keep_int)]
    if kind is Kind.INTEGER:
        return Annotated[StrictInt, Field(**params)] if params else StrictInt
    if kind is Kind.BOOLEAN:
        return StrictBool
    if kind is Kind.DATE:
        return Annotated[datetime, Strict()]
    if kind is Kind.LITERAL:
        return Literal[node.value]
    if kind is Kind.DOCUMENT:
        return _document_model(node)
    if kind is Kind.ARRAY:
        return List[_annotation(node.element)]
    if kind in (Kind.OPTIONAL, Kind.NULLABLE):
        return Optional[_annotation(node.inner)]
    if kind is Kind.DEFAULT:
        return _annotation(node.inner)
    if kind is Kind.UNION:
        members = tuple(_annotation(option) for option in node.options)
        if len(members) == 1:
            return members[0]
        return Annotated[Union[members], Field(union_mode="left_to_right"), WrapValidator(_single_union_issue)]
    raise TypeError(f"Unknown schema kind: {kind!r}")

def _field_definition(key: str, node: Schema):
    if node.kind is Kind.OPTIONAL:
        inner = node.inner.inner if node.inner.kind is Kind.DEFAULT else node.inner
        return _annotation(inner), Field(default=_ABSENT, alias=key)
    if node.kind is Kind.DEFAULT:
        return _annotation(node.inner), Field(default=node.value, alias=key)
    return _annotation(node), Field(..., alias=key)

def _document_model(node: Schema):
    # attribute names are positional so that any document key (``_id``,
    # ``model_config``, ...) can be used as a field through its alias
    definitions = {
        f"field_{index}": _field_definition(key, child)
        for index, (key, child) in enumerate(node.entries)
    }
    return create_model("Document", __base__=_DocumentModel, **definitions)

def _plain(value):
    if isinstance(value, BaseModel):
        out = {}
        fields_set = value.model_fields_set
        for name, info in type(value).model_fields.items():
            if name in fields_set or (not info.is_required() and info.default is not _ABSENT):
                out[info.alias] = _plain(getattr(value, name))
        return out
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value
