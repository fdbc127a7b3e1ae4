"""Schema-enforced writes for MongoDB-style document collections."""
from .collection import SchemaCollection
from .errors import (
    ConfigurationError,
    DocumentValidationError,
    DuplicateKeyError,
    InvalidDocumentError,
    InvalidQueryError,
    InvalidUpdateError,
    Issue,
    SchemaMongoError,
)
from .hooks import WriteContext
from .paths import resolve_path
from .schema import (
    Kind,
    Schema,
    array,
    boolean,
    date,
    document,
    integer,
    literal,
    nullable,
    number,
    optional,
    string,
    union,
)
from .store import Client, Database

__version__ = "0.1.0"
