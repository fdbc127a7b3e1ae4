from typing import Iterable, List, NamedTuple, Optional, Sequence


# =========================
# Errors
# =========================
class SchemaMongoError(Exception):
    """Base class for schemamongo errors."""
    pass

class InvalidQueryError(SchemaMongoError):
    """Raised when query syntax is invalid."""
    pass

class InvalidUpdateError(SchemaMongoError):
    """Raised when update operator is invalid."""
    pass

class DuplicateKeyError(SchemaMongoError):
    """Raised when violating unique key (_id) constraint."""
    pass

class InvalidDocumentError(SchemaMongoError):
    """Raised when a document or modifier is not a dict."""
    pass

class ConfigurationError(SchemaMongoError):
    """Raised when a collection is used in a way its declarations do not allow."""

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(f"[{code}] {message}")


# =========================
# Validation issues
# =========================
class Issue(NamedTuple):
    path: str
    kind: str
    message: str


class DocumentValidationError(SchemaMongoError):
    """Raised when a write does not satisfy the collection schema.

    Attributes:
        collection: Collection the write was aimed at
        issues: Every issue found while validating the write, in visit order
    """

    summary = "Collection schema validation error"

    def __init__(self, collection: Optional[str], issues: Sequence[Issue]):
        self.collection = collection
        self.issues = list(issues)
        details = "; ".join(f"{i.path or '<root>'}: {i.message}" for i in self.issues)
        where = f" for '{collection}'" if collection else ""
        super().__init__(f"{self.summary}{where}: {details}")


_KIND_ALIASES = {
    "missing": "invalid_type",
    "literal_error": "invalid_literal",
    "greater_than": "too_small",
    "greater_than_equal": "too_small",
    "string_too_short": "too_small",
    "too_short": "too_small",
    "less_than": "too_big",
    "less_than_equal": "too_big",
    "string_too_long": "too_big",
    "too_long": "too_big",
    "string_pattern_mismatch": "invalid_string",
}

def issue_kind(error_type: str) -> str:
    """Map a pydantic error type onto the issue kind reported to callers."""
    if error_type in _KIND_ALIASES:
        return _KIND_ALIASES[error_type]
    if error_type.endswith("_type"):
        return "invalid_type"
    return error_type

def join_path(parts: Iterable) -> str:
    return ".".join(str(p) for p in parts)

def issues_from_errors(errors: Iterable[dict], prefix: Sequence = ()) -> List[Issue]:
    """Translate pydantic error dicts into issues rooted at ``prefix``."""
    return [
        Issue(join_path(list(prefix) + list(err.get("loc", ()))), issue_kind(err["type"]), err["msg"])
        for err in errors
    ]
